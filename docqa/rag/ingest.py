"""Ingest pipeline for extracted documents.

Orchestrates:
- Document storage (create or replace)
- Text chunking
- Batched embedding of chunks that have no vector yet
- Similarity index invalidation
"""
from typing import List, Dict, Any, Optional, Callable
import asyncio
import time
import structlog

from docqa import config, db
from docqa.rag.chunker import TextChunker
from docqa.rag.embeddings import EmbeddingClient
from docqa.rag.store import SimilarityIndex

logger = structlog.get_logger()

PROGRESS_LOG_INTERVAL = 100


class IngestPipeline:
    """Turns extracted document text into embedded, searchable chunks."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        index: Optional[SimilarityIndex] = None,
        chunker: Optional[TextChunker] = None,
        batch_size: int = None,
        batch_delay: float = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            embedding_client: Embeds chunk batches
            index: Similarity index to invalidate when chunks change
            chunker: Text chunker (default chunker from config)
            batch_size: Chunks per embedding request (default from config)
            batch_delay: Seconds to wait between batches (default from config)
        """
        self.embedding_client = embedding_client
        self.index = index
        self.chunker = chunker or TextChunker()
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.batch_delay = config.EMBEDDING_BATCH_DELAY if batch_delay is None else batch_delay

    def _invalidate_index(self) -> None:
        if self.index is not None:
            self.index.invalidate()

    def ingest_document(
        self,
        document_id: str,
        filename: str,
        content: str,
        file_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Store a document and (re)create its chunks without vectors.

        The document and its chunks are written in one transaction; replacing
        an existing document swaps its old chunks for the new ones atomically.

        Args:
            document_id: Identifier assigned by the document source
            filename: Display name of the document
            content: Full extracted text
            file_type: Source type, e.g. "pdf"
            metadata: Free-form metadata; word_count is filled in if missing

        Returns:
            Dictionary with document_id, created flag and chunk statistics
        """
        metadata = dict(metadata or {})
        metadata.setdefault("word_count", len(content.split()))

        chunks = self.chunker.chunk_text(content)

        created, _ = db.replace_document(
            document_id=document_id,
            filename=filename,
            content=content,
            chunks=[
                {
                    "chunk_index": chunk.chunk_index,
                    "content": chunk.content,
                    "char_start": chunk.char_start,
                    "char_end": chunk.char_end,
                }
                for chunk in chunks
            ],
            file_type=file_type,
            metadata=metadata,
        )

        self._invalidate_index()

        stats = self.chunker.get_chunk_stats(chunks)
        logger.info(
            "document_ingested",
            document_id=document_id,
            filename=filename,
            created=created,
            chunk_count=stats["chunk_count"],
        )

        return {
            "document_id": document_id,
            "created": created,
            "chunks_created": stats["chunk_count"],
            "chunk_stats": stats,
        }

    def delete_document(self, document_id: str) -> bool:
        """Delete a document together with its chunks."""
        deleted = db.delete_document(document_id)
        if deleted:
            self._invalidate_index()
        return deleted

    async def generate_missing_embeddings(
        self,
        progress_callback: Optional[Callable[[int, int, int], None]] = None,
    ) -> Dict[str, Any]:
        """Embed every chunk that has no vector yet, in batches.

        A failed batch is counted and skipped; later batches still run.

        Args:
            progress_callback: Called as (processed, failed, total) after each batch

        Returns:
            Dictionary with total_chunks, processed, failed, remaining and
            elapsed_seconds
        """
        started = time.perf_counter()
        pending = db.get_chunks_without_embeddings()
        total = len(pending)

        logger.info(
            "embedding_generation_started",
            total_chunks=total,
            batch_size=self.batch_size,
            model=self.embedding_client.model,
        )

        processed = 0
        failed = 0
        next_progress_log = PROGRESS_LOG_INTERVAL

        for i in range(0, total, self.batch_size):
            batch = pending[i : i + self.batch_size]

            try:
                vectors = await self.embedding_client.embed_batch(
                    [chunk["content"] for chunk in batch]
                )
            except Exception as e:
                failed += len(batch)
                logger.error(
                    "embedding_batch_failed",
                    batch_start=i,
                    batch_size=len(batch),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                attached = self._attach_batch(batch, vectors)
                processed += attached
                failed += len(batch) - attached

            done = processed + failed
            if done >= next_progress_log:
                logger.info(
                    "embedding_generation_progress",
                    processed=processed,
                    failed=failed,
                    total_chunks=total,
                )
                next_progress_log = (done // PROGRESS_LOG_INTERVAL + 1) * PROGRESS_LOG_INTERVAL

            if progress_callback:
                progress_callback(processed, failed, total)

            if i + self.batch_size < total and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        if processed:
            self._invalidate_index()

        elapsed = time.perf_counter() - started
        result = {
            "total_chunks": total,
            "processed": processed,
            "failed": failed,
            "remaining": db.get_embedding_status()["chunks_without_embeddings"],
            "elapsed_seconds": round(elapsed, 2),
        }

        logger.info("embedding_generation_completed", **result)
        return result

    def _attach_batch(self, batch: List[Dict[str, Any]], vectors: List[List[float]]) -> int:
        attached = 0
        for chunk, vector in zip(batch, vectors):
            try:
                if db.attach_embedding(chunk["id"], vector, self.embedding_client.model):
                    attached += 1
            except Exception as e:
                logger.error("embedding_attach_failed", chunk_id=chunk["id"], error=str(e))
        return attached

    def embedding_status(self) -> Dict[str, Any]:
        """Totals of chunks with and without vectors."""
        return db.get_embedding_status()
