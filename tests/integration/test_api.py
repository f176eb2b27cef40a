"""End-to-end tests of the HTTP API with the model server mocked out."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from docqa import config, db, main
from docqa.errors import GenerationFailure, RetrievalFailure
from docqa.rag.chunker import TextChunker
from docqa.rag.embeddings import EmbeddingClient
from docqa.rag.ingest import IngestPipeline
from docqa.rag.pipeline import RagPipeline
from docqa.rag.store import SimilarityIndex

SLEEP_TEXT = (
    "Sleep is the foundation of recovery. Deep sleep clears waste from the brain "
    "and sleep pressure builds with every waking hour.\n"
    "Exercise late in the evening can delay sleep onset for some people. "
    "Morning light exposure helps keep the sleep schedule stable."
)
EXERCISE_TEXT = (
    "Exercise capacity is one of the strongest predictors of lifespan. "
    "Zone 2 exercise builds aerobic base; interval exercise raises peak output."
)


def keyword_vectors(texts, model=None):
    """Deterministic three-dimensional vectors from keyword counts."""
    vectors = []
    for text in texts:
        lowered = text.lower()
        vectors.append([lowered.count("sleep") + 0.01, lowered.count("exercise") + 0.01, 0.01])
    return vectors


@pytest.fixture
def llm():
    client = MagicMock()
    client.embed = AsyncMock(side_effect=keyword_vectors)
    client.chat = AsyncMock(return_value={"message": {"content": "Sleep clears waste [Source 1]."}})
    client.list_models = AsyncMock(return_value=[config.CHAT_MODEL, config.EMBEDDING_MODEL])
    return client


@pytest.fixture
def client(temp_db, llm, monkeypatch):
    """Quart test client with freshly wired collaborators."""
    embedding_client = EmbeddingClient(llm, model="test-embed")
    index = SimilarityIndex()

    monkeypatch.setattr(main, "llm_client", llm)
    monkeypatch.setattr(main, "embedding_client", embedding_client)
    monkeypatch.setattr(main, "similarity_index", index)
    monkeypatch.setattr(main, "rag_pipeline", RagPipeline(embedding_client, index, llm))
    monkeypatch.setattr(
        main,
        "ingest_pipeline",
        IngestPipeline(
            embedding_client,
            index=index,
            chunker=TextChunker(max_chunk_size=150, overlap=20, min_chunk_length=10),
            batch_delay=0,
        ),
    )
    return main.app.test_client()


async def load_corpus(client):
    for document_id, filename, content in [
        ("doc-sleep", "#101 Sleep basics.pdf", SLEEP_TEXT),
        ("doc-exercise", "Exercise notes.docx", EXERCISE_TEXT),
    ]:
        response = await client.post(
            "/api/documents",
            json={"document_id": document_id, "filename": filename, "content": content},
        )
        assert response.status_code == 201

    response = await client.post("/api/embeddings/generate")
    assert response.status_code == 200
    return await response.get_json()


class TestHealth:
    """Tests for the health probes."""

    @pytest.mark.asyncio
    async def test_live(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert (await response.get_json())["status"] == "alive"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        response = await client.get("/health/ready")
        data = await response.get_json()

        assert response.status_code == 200
        assert data["models"] is True
        assert data["embedding"]["dimension"] == 3

    @pytest.mark.asyncio
    async def test_not_ready_when_model_missing(self, client, llm):
        llm.list_models.return_value = [config.CHAT_MODEL]

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert config.EMBEDDING_MODEL in (await response.get_json())["error"]


class TestDocumentsAndEmbeddings:
    """Tests for document ingestion and embedding endpoints."""

    @pytest.mark.asyncio
    async def test_ingest_and_embed(self, client):
        result = await load_corpus(client)

        assert result["processed"] == result["total_chunks"]
        assert result["failed"] == 0

        status = await (await client.get("/api/embeddings/status")).get_json()
        assert status["completion_percentage"] == 100

    @pytest.mark.asyncio
    async def test_replacing_document_returns_200(self, client):
        payload = {"document_id": "doc-1", "filename": "a.pdf", "content": SLEEP_TEXT}

        first = await client.post("/api/documents", json=payload)
        second = await client.post("/api/documents", json=payload)

        assert first.status_code == 201
        assert second.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, client):
        response = await client.post("/api/documents", json={"document_id": "doc-1"})

        assert response.status_code == 400
        details = (await response.get_json())["details"]
        assert any(d.startswith("filename") for d in details)

    @pytest.mark.asyncio
    async def test_delete_document(self, client):
        await load_corpus(client)

        assert (await client.delete("/api/documents/doc-exercise")).status_code == 204
        assert (await client.delete("/api/documents/doc-exercise")).status_code == 404

        response = await client.post("/api/search", json={"query": "exercise", "threshold": 0.5})
        results = (await response.get_json())["results"]
        assert all(r["document_id"] != "doc-exercise" for r in results)


class TestSearch:
    """Tests for the search endpoints."""

    @pytest.mark.asyncio
    async def test_search_ranks_matching_chunks(self, client):
        await load_corpus(client)

        response = await client.post("/api/search", json={"query": "sleep", "threshold": 0.9})
        data = await response.get_json()

        assert response.status_code == 200
        assert data["total_found"] >= 1
        assert all(r["document_id"] == "doc-sleep" for r in data["results"])
        similarities = [r["similarity"] for r in data["results"]]
        assert similarities == sorted(similarities, reverse=True)

    @pytest.mark.asyncio
    async def test_search_within_document(self, client):
        await load_corpus(client)

        response = await client.post(
            "/api/documents/doc-exercise/search", json={"query": "sleep", "threshold": -1.0}
        )
        data = await response.get_json()

        assert response.status_code == 200
        assert data["total_found"] >= 1
        assert {r["document_id"] for r in data["results"]} == {"doc-exercise"}

    @pytest.mark.asyncio
    async def test_search_unknown_document(self, client):
        response = await client.post("/api/documents/missing/search", json={"query": "sleep"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_similar_chunks(self, client):
        await load_corpus(client)
        search = await client.post("/api/search", json={"query": "sleep", "limit": 1})
        chunk_id = (await search.get_json())["results"][0]["chunk_id"]

        response = await client.get(f"/api/chunks/{chunk_id}/similar?threshold=0.5&limit=3")
        data = await response.get_json()

        assert response.status_code == 200
        assert chunk_id not in [r["chunk_id"] for r in data["results"]]
        assert len(data["results"]) <= 3

    @pytest.mark.asyncio
    async def test_similar_chunks_unknown(self, client):
        response = await client.get("/api/chunks/9999/similar")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_limit(self, client):
        response = await client.post("/api/search", json={"query": "sleep", "limit": 0})

        assert response.status_code == 400


class TestAsk:
    """Tests for the question answering endpoint."""

    @pytest.mark.asyncio
    async def test_answer_with_formatting(self, client, llm):
        await load_corpus(client)

        response = await client.post(
            "/api/ask", json={"question": "Why is sleep important?", "mode": "quick"}
        )
        data = await response.get_json()

        assert response.status_code == 200
        assert data["state"] == "responded"
        assert data["answer"] == "Sleep clears waste [Source 1]."
        assert data["sources"][0] == "#101 Sleep basics.pdf"
        assert data["mode"] == "quick"
        assert 0.0 < data["confidence"] <= 1.0
        assert "Episode #101: Sleep basics" in data["formatted"]["sources"]
        assert "🎯 Quick" in data["formatted"]["text"]
        llm.chat.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_context_answer(self, client, llm):
        response = await client.post("/api/ask", json={"question": "zone 2 training"})
        data = await response.get_json()

        assert response.status_code == 200
        assert data["state"] == "no_context"
        assert data["confidence"] == 0
        assert data["sources"] == []
        llm.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_question(self, client):
        response = await client.post("/api/ask", json={})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_mode(self, client):
        response = await client.post("/api/ask", json={"question": "sleep?", "mode": "thorough"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,stage",
        [
            (RetrievalFailure("Search failed: down"), "retrieval"),
            (GenerationFailure("Generation model returned no completion"), "generation"),
        ],
    )
    async def test_typed_failures_return_502(self, client, monkeypatch, error, stage):
        failing = MagicMock()
        failing.generate_answer = AsyncMock(side_effect=error)
        monkeypatch.setattr(main, "rag_pipeline", failing)

        response = await client.post("/api/ask", json={"question": "sleep?"})

        assert response.status_code == 502
        assert (await response.get_json())["stage"] == stage


class TestAnalytics:
    """Tests for analytics and stats endpoints."""

    @pytest.mark.asyncio
    async def test_analytics_after_questions(self, client):
        await load_corpus(client)
        await client.post("/api/ask", json={"question": "Why is sleep important?", "mode": "quick"})
        await client.post("/api/ask", json={"question": "zone 2 training"})

        data = await (await client.get("/api/analytics?recent=5")).get_json()

        assert data["total_queries"] == 2
        assert data["mode_counts"] == {"quick": 1, "auto": 1}
        assert data["top_documents"][0]["filename"] == "#101 Sleep basics.pdf"
        assert data["recent_questions"][0] == "zone 2 training"

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await load_corpus(client)

        data = await (await client.get("/api/stats")).get_json()

        assert data["processing"]["total_documents"] == 2
        assert data["embeddings"]["chunks_without_embeddings"] == 0
        assert "vector_count" in data["index"]


class TestDocumentQueries:
    """Tests for document listing and lookup endpoints."""

    @pytest.mark.asyncio
    async def test_list_documents(self, client):
        await load_corpus(client)

        response = await client.get("/api/documents?page=1&limit=1")
        data = await response.get_json()

        assert response.status_code == 200
        assert data["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert len(data["documents"]) == 1
        assert data["documents"][0]["chunk_count"] >= 1

    @pytest.mark.asyncio
    async def test_list_documents_invalid_page(self, client):
        response = await client.get("/api/documents?page=0")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_get_document(self, client):
        await load_corpus(client)

        response = await client.get("/api/documents/doc-sleep")
        data = await response.get_json()

        assert response.status_code == 200
        assert data["filename"] == "#101 Sleep basics.pdf"
        assert data["content"] == SLEEP_TEXT
        assert data["chunk_count"] == len(data["chunks"])
        assert all(chunk["has_embedding"] for chunk in data["chunks"])

    @pytest.mark.asyncio
    async def test_get_unknown_document(self, client):
        response = await client.get("/api/documents/missing")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_documents_by_type(self, client):
        for document_id, file_type in [("doc-1", ".PDF"), ("doc-2", "docx")]:
            await client.post(
                "/api/documents",
                json={
                    "document_id": document_id,
                    "filename": f"{document_id}.{file_type.lstrip('.').lower()}",
                    "content": SLEEP_TEXT,
                    "file_type": file_type,
                },
            )

        response = await client.get("/api/documents/by-type/.pdf")
        data = await response.get_json()

        assert response.status_code == 200
        assert data["file_type"] == "pdf"
        assert data["count"] == 1
        assert data["documents"][0]["id"] == "doc-1"


class TestSearchAnalytics:
    """Tests for plain search logging and its analytics."""

    @pytest.mark.asyncio
    async def test_searches_are_logged_separately(self, client):
        await load_corpus(client)
        for query in ["sleep", "sleep", "exercise"]:
            response = await client.post("/api/search", json={"query": query, "threshold": 0.5})
            assert "processing_time_ms" in await response.get_json()
        await client.post("/api/ask", json={"question": "Why is sleep important?"})

        data = await (await client.get("/api/search/analytics")).get_json()

        assert data["total_searches"] == 3
        assert data["top_queries"][0] == {"query": "sleep", "count": 2}
        analytics = await (await client.get("/api/analytics")).get_json()
        assert analytics["total_queries"] == 1

    @pytest.mark.asyncio
    async def test_search_log_failure_does_not_fail_search(self, client, monkeypatch):
        await load_corpus(client)

        def broken_insert(**kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(db, "insert_search_log", broken_insert)

        response = await client.post("/api/search", json={"query": "sleep"})

        assert response.status_code == 200


class TestRagHealth:
    """Tests for the end-to-end health probe."""

    @pytest.mark.asyncio
    async def test_healthy(self, client, llm):
        await load_corpus(client)

        response = await client.get("/health/rag")
        data = await response.get_json()

        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert data["components"]["embeddings"]["model"] == "test-embed"
        assert data["components"]["rag"]["response_generated"] is True
        analytics = await (await client.get("/api/analytics")).get_json()
        assert analytics["total_queries"] == 0

    @pytest.mark.asyncio
    async def test_unhealthy_when_model_fails(self, client, llm):
        llm.embed.side_effect = RuntimeError("connection refused")

        response = await client.get("/health/rag")
        data = await response.get_json()

        assert response.status_code == 503
        assert data["status"] == "unhealthy"
