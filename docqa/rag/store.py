"""FAISS similarity index over chunk vectors stored in the database.

Handles:
- Lazy (re)building of an in-memory index from stored vectors
- Cosine similarity search with limit and threshold
- Similar-chunk lookup and per-document search

Vectors are L2-normalised before they enter an inner-product index, so the
scores FAISS returns are cosine similarities.
"""
from dataclasses import dataclass
from typing import List, Tuple, Optional, Dict, Any
import numpy as np
import faiss
import structlog

from docqa import config, db

logger = structlog.get_logger()

# float32 scores of identical vectors land just below 1.0
SIMILARITY_DECIMALS = 6


@dataclass
class StoredChunk:
    """A chunk row as returned by a search."""

    id: int
    document_id: str
    document_filename: str
    chunk_index: int
    content: str
    char_start: int
    char_end: int
    embedding_model: Optional[str] = None


@dataclass
class SearchHit:
    """A chunk with its cosine distance and similarity to the query."""

    chunk: StoredChunk
    distance: float
    similarity: float


def _build_index(rows: List[Tuple[int, List[float]]]) -> Tuple[Optional[faiss.Index], Optional[int]]:
    """Build an ID-mapped inner-product index from (chunk_id, vector) pairs.

    Raises:
        ValueError: If the vectors do not all have the same dimension
    """
    if not rows:
        return None, None

    dimensions = {len(vector) for _, vector in rows}
    if len(dimensions) > 1:
        raise ValueError(f"Stored vectors have inconsistent dimensions: {sorted(dimensions)}")
    dimension = dimensions.pop()

    ids = np.array([chunk_id for chunk_id, _ in rows], dtype=np.int64)
    vectors = np.array([vector for _, vector in rows], dtype=np.float32)
    faiss.normalize_L2(vectors)

    index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
    index.add_with_ids(vectors, ids)
    return index, dimension


class SimilarityIndex:
    """Nearest-neighbour search over embedded chunks.

    Chunks without a vector are never loaded, so they never show up in
    results. The index is rebuilt from the database on the next search after
    invalidate(), or when the stored vectors changed in any process.
    """

    def __init__(self):
        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = None
        self._stale = True
        self._watermark: Optional[Tuple[int, int, Optional[str]]] = None

    def invalidate(self) -> None:
        self._stale = True

    def _ensure_loaded(self) -> None:
        # Vectors written by another process only show up in the watermark
        watermark = db.get_vector_watermark()
        if not self._stale and watermark == self._watermark:
            return

        rows = db.get_embedded_vectors()
        self.index, self.dimension = _build_index(rows)
        self._watermark = watermark
        self._stale = False

        logger.info(
            "similarity_index_loaded",
            vector_count=len(rows),
            dimension=self.dimension,
        )

    async def search(
        self,
        query_vector: List[float],
        limit: int = None,
        threshold: float = None,
    ) -> List[SearchHit]:
        """Find the chunks closest to a query vector.

        Args:
            query_vector: Query embedding
            limit: Maximum number of hits (default from config)
            threshold: Minimum cosine similarity (default from config)

        Returns:
            Hits ordered by ascending distance, all with similarity >= threshold

        Raises:
            ValueError: If the query dimension does not match the stored vectors
        """
        limit = config.SEARCH_LIMIT if limit is None else limit
        threshold = config.SEARCH_THRESHOLD if threshold is None else threshold

        self._ensure_loaded()
        hits = _query(self.index, self.dimension, query_vector, limit, threshold)

        logger.info(
            "vector_search_completed",
            limit=limit,
            threshold=threshold,
            results_found=len(hits),
        )
        return hits

    async def find_similar_to_chunk(
        self,
        chunk_id: int,
        limit: int = 5,
        threshold: float = 0.8,
    ) -> List[SearchHit]:
        """Find chunks similar to an existing chunk, excluding the chunk itself.

        Raises:
            LookupError: If the chunk does not exist or has no vector
        """
        chunk = db.get_chunk(chunk_id)
        if chunk is None:
            raise LookupError(f"Chunk {chunk_id} not found")
        if chunk["embedding"] is None:
            raise LookupError(f"Chunk {chunk_id} has no embedding")

        self._ensure_loaded()
        hits = _query(
            self.index,
            self.dimension,
            chunk["embedding"],
            limit + 1,
            threshold,
        )
        return [hit for hit in hits if hit.chunk.id != chunk_id][:limit]

    async def search_within_document(
        self,
        document_id: str,
        query_vector: List[float],
        limit: int = 10,
        threshold: float = 0.7,
    ) -> List[SearchHit]:
        """Search only among the chunks of one document."""
        rows = db.get_embedded_vectors(document_id=document_id)
        index, dimension = _build_index(rows)
        hits = _query(index, dimension, query_vector, limit, threshold)

        logger.info(
            "document_search_completed",
            document_id=document_id,
            candidates=len(rows),
            results_found=len(hits),
        )
        return hits

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the in-memory index."""
        if self.index is None:
            return {
                "initialized": not self._stale,
                "vector_count": 0,
                "dimension": None,
                "stale": self._stale,
            }

        return {
            "initialized": True,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "index_type": "IndexIDMap2(IndexFlatIP)",
            "stale": self._stale,
        }


def _query(
    index: Optional[faiss.Index],
    dimension: Optional[int],
    query_vector: List[float],
    limit: int,
    threshold: float,
) -> List[SearchHit]:
    if index is None or limit <= 0:
        return []

    if len(query_vector) != dimension:
        raise ValueError(
            f"Query dimension mismatch: expected {dimension}, got {len(query_vector)}"
        )

    top_k = min(limit, index.ntotal)
    if top_k == 0:
        return []

    query = np.array([query_vector], dtype=np.float32)
    faiss.normalize_L2(query)
    scores, ids = index.search(query, top_k)

    matches = []
    for chunk_id, score in zip(ids[0].tolist(), scores[0].tolist()):
        if chunk_id < 0:
            continue
        similarity = round(max(-1.0, min(1.0, score)), SIMILARITY_DECIMALS)
        if similarity >= threshold:
            matches.append((chunk_id, similarity))

    if not matches:
        return []

    # Rows deleted since the index was built are skipped
    rows = {row["id"]: row for row in db.get_chunks_by_ids([chunk_id for chunk_id, _ in matches])}

    hits = []
    for chunk_id, similarity in matches:
        row = rows.get(chunk_id)
        if row is None:
            continue
        chunk = StoredChunk(
            id=row["id"],
            document_id=row["document_id"],
            document_filename=row["document_filename"],
            chunk_index=row["chunk_index"],
            content=row["content"],
            char_start=row["char_start"],
            char_end=row["char_end"],
            embedding_model=row["embedding_model"],
        )
        hits.append(SearchHit(chunk=chunk, distance=1.0 - similarity, similarity=similarity))

    return hits
