"""Main Quart application for docqa."""
import logging
import time
from typing import List

from pydantic import ValidationError
from quart import Quart, request, jsonify
import structlog

from docqa import config, db
from docqa.errors import RetrievalFailure, GenerationFailure
from docqa.llm_client import OllamaClient
from docqa.rag.embeddings import EmbeddingClient
from docqa.rag.formatter import ResponseFormatter
from docqa.rag.ingest import IngestPipeline
from docqa.rag.pipeline import RagPipeline
from docqa.rag.store import SimilarityIndex, SearchHit
from docqa.schemas import (
    AskRequest,
    DocumentListQuery,
    DocumentRequest,
    DocumentSearchRequest,
    SearchRequest,
    SimilarChunksQuery,
    describe_errors,
)

# Configure structured logging
logging.basicConfig(format="%(message)s", level=config.LOG_LEVEL)
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()

app = Quart(__name__)

# Collaborators are wired once here and passed in explicitly
llm_client = OllamaClient()
embedding_client = EmbeddingClient(llm_client)
similarity_index = SimilarityIndex()
rag_pipeline = RagPipeline(embedding_client, similarity_index, llm_client)
ingest_pipeline = IngestPipeline(embedding_client, index=similarity_index)
formatter = ResponseFormatter()

DOCUMENT_CHUNK_PREVIEW = 10


@app.before_serving
async def startup():
    db.init_database()


def _hit_to_dict(hit: SearchHit) -> dict:
    return {
        "chunk_id": hit.chunk.id,
        "document_id": hit.chunk.document_id,
        "document_filename": hit.chunk.document_filename,
        "chunk_index": hit.chunk.chunk_index,
        "content": hit.chunk.content,
        "char_start": hit.chunk.char_start,
        "char_end": hit.chunk.char_end,
        "similarity": hit.similarity,
        "distance": hit.distance,
    }


def _invalid(error: ValidationError):
    logger.warning("invalid_request", path=request.path, errors=describe_errors(error))
    return jsonify({"error": "Invalid request", "details": describe_errors(error)}), 400


@app.route("/api/ask", methods=["POST"])
async def ask():
    """Answer a question from the indexed documents.

    Expects JSON body:
    {
        "question": "question text",
        "mode": "quick" | "detailed" | "auto",      // optional, default auto
        "max_context_chunks": 5,                      // optional override
        "similarity_threshold": 0.3,                  // optional override
        "style": "concise" | "detailed" | "bullet_points" | "academic",
        "language": "en" | "ru" | "auto",
        "user_id": "optional caller id"
    }

    Returns the answer result plus a "formatted" chat-ready block.
    Retrieval and generation failures return 502 with the failing "stage".
    """
    try:
        ask_request = AskRequest.model_validate(await request.get_json() or {})
    except ValidationError as e:
        return _invalid(e)

    try:
        result = await rag_pipeline.generate_answer(
            ask_request.question,
            mode=ask_request.mode,
            max_context_chunks=ask_request.max_context_chunks,
            similarity_threshold=ask_request.similarity_threshold,
            user_id=ask_request.user_id,
            style=ask_request.style,
            language=ask_request.language,
        )
    except (RetrievalFailure, GenerationFailure) as e:
        return jsonify({"error": str(e), "stage": e.stage}), 502

    formatted = formatter.format(result)
    response_data = result.to_dict()
    response_data["formatted"] = {
        "text": formatted.render(),
        "quotes": formatted.quotes,
        "sources": formatted.sources,
        "confidence_tier": formatted.confidence_tier,
        "language": formatted.language,
    }

    return jsonify(response_data)


@app.route("/api/search", methods=["POST"])
async def search():
    """Semantic search over all embedded chunks.

    Expects JSON body: {"query": "...", "limit": 5, "threshold": 0.7}
    """
    try:
        search_request = SearchRequest.model_validate(await request.get_json() or {})
    except ValidationError as e:
        return _invalid(e)

    started = time.perf_counter()
    try:
        query_vector = await embedding_client.embed(search_request.query)
        hits = await similarity_index.search(
            query_vector,
            limit=search_request.limit,
            threshold=search_request.threshold,
        )
    except Exception as e:
        logger.error("search_endpoint_error", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Search failed", "stage": "retrieval"}), 502

    processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
    _log_search(search_request.query, hits, processing_time_ms)

    return jsonify({
        "query": search_request.query,
        "results": [_hit_to_dict(hit) for hit in hits],
        "total_found": len(hits),
        "processing_time_ms": processing_time_ms,
    })


def _log_search(query: str, hits: List[SearchHit], processing_time_ms: float) -> None:
    """Record a plain search; a failed write only produces a warning."""
    try:
        db.insert_search_log(
            query=query,
            results={"results_count": len(hits)},
            response_time=processing_time_ms,
            kind=db.SEARCH_LOG,
        )
    except Exception as e:
        logger.warning("search_log_failed", error=str(e))


@app.route("/api/search/analytics", methods=["GET"])
async def search_analytics():
    """Plain search statistics and the most frequent queries of the last 30 days."""
    return jsonify(db.get_search_analytics())


@app.route("/api/documents/<document_id>/search", methods=["POST"])
async def search_document(document_id: str):
    """Semantic search restricted to one document."""
    try:
        search_request = DocumentSearchRequest.model_validate(await request.get_json() or {})
    except ValidationError as e:
        return _invalid(e)

    if db.get_document(document_id) is None:
        return jsonify({"error": "Document not found"}), 404

    try:
        query_vector = await embedding_client.embed(search_request.query)
        hits = await similarity_index.search_within_document(
            document_id,
            query_vector,
            limit=search_request.limit,
            threshold=search_request.threshold,
        )
    except Exception as e:
        logger.error(
            "document_search_endpoint_error",
            error=str(e),
            document_id=document_id,
        )
        return jsonify({"error": "Search failed", "stage": "retrieval"}), 502

    return jsonify({
        "query": search_request.query,
        "document_id": document_id,
        "results": [_hit_to_dict(hit) for hit in hits],
        "total_found": len(hits),
    })


@app.route("/api/chunks/<int:chunk_id>/similar", methods=["GET"])
async def similar_chunks(chunk_id: int):
    """Chunks similar to an existing chunk (query string: limit, threshold)."""
    try:
        query = SimilarChunksQuery.model_validate(request.args.to_dict())
    except ValidationError as e:
        return _invalid(e)

    try:
        hits = await similarity_index.find_similar_to_chunk(
            chunk_id, limit=query.limit, threshold=query.threshold
        )
    except LookupError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({
        "chunk_id": chunk_id,
        "results": [_hit_to_dict(hit) for hit in hits],
        "total_found": len(hits),
    })


@app.route("/api/documents", methods=["POST"])
async def create_document():
    """Store an extracted document and chunk it.

    Expects JSON body:
    {
        "document_id": "source id",
        "filename": "name.pdf",
        "content": "extracted text",
        "file_type": "pdf",          // optional
        "metadata": {...}            // optional
    }

    Returns 201 for a new document, 200 when an existing one was replaced.
    """
    try:
        document = DocumentRequest.model_validate(await request.get_json() or {})
    except ValidationError as e:
        return _invalid(e)

    try:
        result = ingest_pipeline.ingest_document(
            document_id=document.document_id,
            filename=document.filename,
            content=document.content,
            file_type=document.file_type,
            metadata=document.metadata,
        )
    except Exception as e:
        logger.error("document_create_error", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to store document"}), 500

    return jsonify(result), 201 if result["created"] else 200


@app.route("/api/documents", methods=["GET"])
async def list_documents():
    """Page through stored documents (query string: page, limit)."""
    try:
        query = DocumentListQuery.model_validate(request.args.to_dict())
    except ValidationError as e:
        return _invalid(e)

    return jsonify(db.list_documents(page=query.page, limit=query.limit))


@app.route("/api/documents/by-type/<file_type>", methods=["GET"])
async def documents_by_type(file_type: str):
    """Documents of one file type; "pdf" and ".pdf" are equivalent."""
    file_type = file_type.lstrip(".").lower()
    documents = db.get_documents_by_type(file_type)
    return jsonify({
        "file_type": file_type,
        "documents": documents,
        "count": len(documents),
    })


@app.route("/api/documents/<document_id>", methods=["GET"])
async def get_document(document_id: str):
    """A document with an overview of its first chunks."""
    document = db.get_document(document_id)
    if document is None:
        return jsonify({"error": "Document not found"}), 404

    chunks = db.get_document_chunks(document_id)
    document["chunk_count"] = len(chunks)
    document["chunks"] = [
        {
            "chunk_id": chunk["id"],
            "chunk_index": chunk["chunk_index"],
            "content": chunk["content"],
            "char_start": chunk["char_start"],
            "char_end": chunk["char_end"],
            "has_embedding": chunk["embedding"] is not None,
        }
        for chunk in chunks[:DOCUMENT_CHUNK_PREVIEW]
    ]
    return jsonify(document)


@app.route("/api/documents/<document_id>", methods=["DELETE"])
async def delete_document_endpoint(document_id: str):
    """Delete a document and its chunks.

    Returns:
        204 No Content if successful
        404 Not Found if the document doesn't exist
    """
    if ingest_pipeline.delete_document(document_id):
        return "", 204
    return jsonify({"error": "Document not found"}), 404


@app.route("/api/embeddings/generate", methods=["POST"])
async def generate_embeddings():
    """Embed every chunk that has no vector yet."""
    result = await ingest_pipeline.generate_missing_embeddings()
    return jsonify(result)


@app.route("/api/embeddings/status", methods=["GET"])
async def embeddings_status():
    return jsonify(ingest_pipeline.embedding_status())


@app.route("/api/analytics", methods=["GET"])
async def analytics():
    """Aggregated interaction log statistics (query string: recent)."""
    try:
        recent = int(request.args.get("recent", 10))
    except ValueError:
        return jsonify({"error": "recent must be an integer"}), 400

    return jsonify(rag_pipeline.get_analytics(recent=recent))


@app.route("/api/stats", methods=["GET"])
async def stats():
    """Document, chunk, embedding and index statistics."""
    return jsonify({
        "processing": db.get_processing_stats(),
        "embeddings": db.get_embedding_status(),
        "index": similarity_index.get_stats(),
    })


@app.route("/health/ready")
async def health_ready():
    """Readiness probe - check if app can serve requests.

    Checks:
    - Ollama service is reachable
    - Required models are available
    - The embedding model answers a round-trip
    """
    checks = {
        "status": "healthy",
        "ollama": False,
        "models": False,
        "embedding": None,
    }

    try:
        models = await llm_client.list_models()
        checks["ollama"] = True

        missing = [m for m in (config.CHAT_MODEL, config.EMBEDDING_MODEL) if m not in models]
        if missing:
            checks["status"] = "unhealthy"
            checks["error"] = f"Missing models: {', '.join(missing)}"
        else:
            checks["models"] = True
            checks["embedding"] = await embedding_client.health_check()

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503


@app.route("/health/rag")
async def health_rag():
    """End-to-end probe of search, embeddings and answer generation.

    Runs a low-threshold search and a one-chunk answer; neither is written
    to the interaction log.
    """
    try:
        started = time.perf_counter()
        query_vector = await embedding_client.embed("health test")
        hits = await similarity_index.search(query_vector, limit=1, threshold=0.1)
        search_time_ms = round((time.perf_counter() - started) * 1000, 2)

        embedding = await embedding_client.health_check()

        result = await rag_pipeline.generate_answer(
            "What is health?",
            max_context_chunks=1,
            similarity_threshold=0.1,
            style="concise",
            record=False,
        )

        return jsonify({
            "status": "healthy",
            "components": {
                "search": {
                    "status": "ok",
                    "results_found": len(hits),
                    "response_time_ms": search_time_ms,
                },
                "embeddings": {
                    "status": embedding["status"],
                    "model": embedding["model"],
                },
                "rag": {
                    "status": "ok",
                    "state": result.state,
                    "response_generated": len(result.answer) > 0,
                    "total_time_ms": result.total_time_ms,
                    "confidence": result.confidence,
                },
            },
        }), 200

    except Exception as e:
        logger.error("rag_health_check_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({"status": "unhealthy", "error": str(e)}), 503


@app.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


@app.errorhandler(404)
async def not_found(error):
    """Handle 404 errors."""
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
async def internal_error(error):
    """Handle 500 errors."""
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
