"""Database initialization and helpers for docqa.

SQLite database for storing:
- Documents supplied by the ingestion collaborator
- Text chunks with character offsets and (optionally) embedding vectors
- Append-only interaction logs for answered questions and searches
"""
import sqlite3
import json
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta, timezone
import structlog

from docqa import config

logger = structlog.get_logger()

DB_PATH = config.DB_PATH


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row and
        foreign key enforcement enabled (chunk rows cascade with documents)
    """
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_database() -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - documents: extracted document text and metadata
    - chunks: document fragments, offsets and embedding vectors
    - search_logs: one row per answered question or plain search
    """
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                file_type TEXT,
                content TEXT NOT NULL,
                metadata_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_id TEXT NOT NULL
                    REFERENCES documents(id) ON DELETE CASCADE,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                char_start INTEGER NOT NULL,
                char_end INTEGER NOT NULL,
                embedding_json TEXT,
                embedding_model TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(document_id, chunk_index)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS search_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL DEFAULT 'answer',
                user_id TEXT,
                query TEXT NOT NULL,
                results_json TEXT,
                response_time REAL NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunks_document_id
            ON chunks(document_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_search_logs_kind_created_at
            ON search_logs(kind, created_at)
        """)

        conn.commit()
        logger.info("database_initialized", db_path=str(DB_PATH))

    except Exception as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def _document_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    document = dict(row)
    metadata_json = document.pop("metadata_json", None)
    document["metadata"] = json.loads(metadata_json) if metadata_json else {}
    return document


def _chunk_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    chunk = dict(row)
    embedding_json = chunk.pop("embedding_json", None)
    chunk["embedding"] = json.loads(embedding_json) if embedding_json else None
    return chunk


# ==================== DOCUMENTS ====================


def _write_document(
    cursor: sqlite3.Cursor,
    document_id: str,
    filename: str,
    content: str,
    file_type: Optional[str],
    metadata: Optional[Dict[str, Any]],
) -> bool:
    now = _now()
    metadata_json = json.dumps(metadata) if metadata else None

    cursor.execute("SELECT id FROM documents WHERE id = ?", (document_id,))
    exists = cursor.fetchone() is not None

    if exists:
        cursor.execute("""
            UPDATE documents
            SET filename = ?, file_type = ?, content = ?,
                metadata_json = ?, updated_at = ?
            WHERE id = ?
        """, (filename, file_type, content, metadata_json, now, document_id))
        cursor.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
    else:
        cursor.execute("""
            INSERT INTO documents (
                id, filename, file_type, content,
                metadata_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (document_id, filename, file_type, content, metadata_json, now, now))

    return not exists


def _write_chunk(
    cursor: sqlite3.Cursor,
    document_id: str,
    chunk_index: int,
    content: str,
    char_start: int,
    char_end: int,
) -> int:
    now = _now()
    cursor.execute("""
        INSERT INTO chunks (
            document_id, chunk_index, content,
            char_start, char_end, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (document_id, chunk_index, content, char_start, char_end, now, now))
    return cursor.lastrowid


def upsert_document(
    document_id: str,
    filename: str,
    content: str,
    file_type: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """Create a document or replace the content of an existing one.

    Replacing the content deletes the document's chunks in the same
    transaction, since their offsets no longer match the new text.

    Args:
        document_id: Identifier assigned by the document source
        filename: Display name of the document
        content: Full extracted text
        file_type: Source type, e.g. "pdf"
        metadata: Free-form metadata (word count, parse duration, ...)

    Returns:
        True if a new document was created, False if an existing one was updated
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        created = _write_document(cursor, document_id, filename, content, file_type, metadata)
        conn.commit()
        logger.debug("document_upserted", document_id=document_id, created=created)
        return created

    except Exception as e:
        conn.rollback()
        logger.error("document_upsert_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def replace_document(
    document_id: str,
    filename: str,
    content: str,
    chunks: List[Dict[str, Any]],
    file_type: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[bool, List[int]]:
    """Store a document together with its full set of chunks.

    The document row, the removal of old chunks and every chunk insert
    share one transaction: on any failure the previous document and its
    chunks are left exactly as they were.

    Args:
        document_id: Identifier assigned by the document source
        filename: Display name of the document
        content: Full extracted text
        chunks: Dicts with chunk_index, content, char_start and char_end
        file_type: Source type, e.g. "pdf"
        metadata: Free-form metadata

    Returns:
        (created, chunk_ids) where created is False if the document existed
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        created = _write_document(cursor, document_id, filename, content, file_type, metadata)
        chunk_ids = [
            _write_chunk(
                cursor,
                document_id,
                chunk["chunk_index"],
                chunk["content"],
                chunk["char_start"],
                chunk["char_end"],
            )
            for chunk in chunks
        ]
        conn.commit()
        logger.debug(
            "document_replaced",
            document_id=document_id,
            created=created,
            chunk_count=len(chunk_ids),
        )
        return created, chunk_ids

    except Exception as e:
        conn.rollback()
        logger.error("document_replace_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def get_document(document_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a document by id, or None if it does not exist."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
        row = cursor.fetchone()
        return _document_from_row(row) if row else None

    except Exception as e:
        logger.error("document_retrieval_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def delete_document(document_id: str) -> bool:
    """Delete a document; its chunks are removed by the cascade.

    Returns:
        True if a document was deleted
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        conn.commit()
        deleted = cursor.rowcount > 0
        logger.info("document_deleted", document_id=document_id, deleted=deleted)
        return deleted

    except Exception as e:
        conn.rollback()
        logger.error("document_delete_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


DOCUMENT_SUMMARY_SQL = """
    SELECT
        d.id, d.filename, d.file_type, d.metadata_json,
        d.created_at, d.updated_at,
        (SELECT COUNT(*) FROM chunks c WHERE c.document_id = d.id) AS chunk_count
    FROM documents d
"""


def list_documents(page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Page through documents, newest first, without their content.

    Args:
        page: 1-based page number
        limit: Documents per page

    Returns:
        Dictionary with documents and pagination (page, limit, total, pages)
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT COUNT(*) FROM documents")
        total = cursor.fetchone()[0]

        cursor.execute(
            DOCUMENT_SUMMARY_SQL + " ORDER BY d.created_at DESC, d.id ASC LIMIT ? OFFSET ?",
            (limit, (page - 1) * limit),
        )
        documents = [_document_from_row(row) for row in cursor.fetchall()]

        return {
            "documents": documents,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": -(-total // limit),
            },
        }

    except Exception as e:
        logger.error("documents_list_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_documents_by_type(file_type: str) -> List[Dict[str, Any]]:
    """Documents of one file type (without content), oldest first."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute(
            DOCUMENT_SUMMARY_SQL + " WHERE d.file_type = ? ORDER BY d.created_at ASC, d.id ASC",
            (file_type,),
        )
        return [_document_from_row(row) for row in cursor.fetchall()]

    except Exception as e:
        logger.error("documents_by_type_failed", error=str(e), file_type=file_type)
        raise
    finally:
        conn.close()


# ==================== CHUNKS ====================


def insert_chunk(
    document_id: str,
    chunk_index: int,
    content: str,
    char_start: int,
    char_end: int,
) -> int:
    """Insert a text chunk without an embedding.

    Args:
        document_id: Owning document
        chunk_index: Sequential index of this chunk within the document
        content: Chunk text, equal to document content[char_start:char_end]
        char_start: Starting character position in the document text
        char_end: Ending character position in the document text

    Returns:
        ID of the inserted chunk row
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        chunk_id = _write_chunk(cursor, document_id, chunk_index, content, char_start, char_end)
        conn.commit()
        return chunk_id

    except Exception as e:
        conn.rollback()
        logger.error("chunk_insert_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def get_chunk(chunk_id: int) -> Optional[Dict[str, Any]]:
    """Fetch one chunk (with its parsed embedding, if any)."""
    chunks = get_chunks_by_ids([chunk_id])
    return chunks[0] if chunks else None


def get_chunks_by_ids(chunk_ids: List[int]) -> List[Dict[str, Any]]:
    """Retrieve chunks joined with their document filename.

    Args:
        chunk_ids: Chunk row IDs to retrieve

    Returns:
        List of chunk dictionaries; IDs that no longer exist are skipped
    """
    if not chunk_ids:
        return []

    conn = get_connection()
    cursor = conn.cursor()

    try:
        placeholders = ",".join("?" * len(chunk_ids))
        cursor.execute(f"""
            SELECT
                c.id, c.document_id, c.chunk_index, c.content,
                c.char_start, c.char_end, c.embedding_json,
                c.embedding_model, d.filename AS document_filename
            FROM chunks c
            JOIN documents d ON c.document_id = d.id
            WHERE c.id IN ({placeholders})
        """, list(chunk_ids))

        return [_chunk_from_row(row) for row in cursor.fetchall()]

    except Exception as e:
        logger.error("chunks_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_document_chunks(document_id: str) -> List[Dict[str, Any]]:
    """All chunks of a document ordered by chunk index."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT id, document_id, chunk_index, content, char_start,
                   char_end, embedding_json, embedding_model
            FROM chunks
            WHERE document_id = ?
            ORDER BY chunk_index ASC
        """, (document_id,))
        return [_chunk_from_row(row) for row in cursor.fetchall()]

    except Exception as e:
        logger.error("document_chunks_retrieval_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def get_chunks_without_embeddings() -> List[Dict[str, Any]]:
    """Chunks still waiting for a vector, oldest first."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT id, document_id, chunk_index, content
            FROM chunks
            WHERE embedding_json IS NULL
            ORDER BY created_at ASC, id ASC
        """)
        return [dict(row) for row in cursor.fetchall()]

    except Exception as e:
        logger.error("pending_chunks_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def attach_embedding(chunk_id: int, embedding: List[float], model: str) -> bool:
    """Store the vector for a chunk that has none yet.

    Vectors are immutable once attached; a chunk that already carries one is
    left untouched.

    Args:
        chunk_id: Target chunk
        embedding: Embedding vector
        model: Identifier of the model that produced the vector

    Returns:
        True if the vector was attached
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            UPDATE chunks
            SET embedding_json = ?, embedding_model = ?, updated_at = ?
            WHERE id = ? AND embedding_json IS NULL
        """, (json.dumps(embedding), model, _now(), chunk_id))
        conn.commit()
        return cursor.rowcount > 0

    except Exception as e:
        conn.rollback()
        logger.error("embedding_attach_failed", error=str(e), chunk_id=chunk_id)
        raise
    finally:
        conn.close()


def get_embedded_vectors(document_id: Optional[str] = None) -> List[Tuple[int, List[float]]]:
    """Load (chunk_id, vector) pairs for every chunk that has a vector.

    Args:
        document_id: Restrict to one document's chunks

    Returns:
        List of (chunk_id, embedding) tuples
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        if document_id is None:
            cursor.execute("""
                SELECT id, embedding_json FROM chunks
                WHERE embedding_json IS NOT NULL
            """)
        else:
            cursor.execute("""
                SELECT id, embedding_json FROM chunks
                WHERE embedding_json IS NOT NULL AND document_id = ?
            """, (document_id,))

        return [(row["id"], json.loads(row["embedding_json"])) for row in cursor.fetchall()]

    except Exception as e:
        logger.error("vectors_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_vector_watermark() -> Tuple[int, int, Optional[str]]:
    """Fingerprint of the stored vectors.

    Changes whenever a vector is attached or an embedded chunk is removed,
    whichever process made the change.

    Returns:
        (vector count, sum of embedded chunk ids, latest vector update time)
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT COUNT(*), COALESCE(SUM(id), 0), MAX(updated_at)
            FROM chunks
            WHERE embedding_json IS NOT NULL
        """)
        count, id_sum, latest = cursor.fetchone()
        return count, id_sum, latest

    except Exception as e:
        logger.error("vector_watermark_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_embedding_status() -> Dict[str, Any]:
    """Count chunks with and without vectors.

    Returns:
        Dictionary with totals and completion percentage
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT
                COUNT(*) AS total,
                COUNT(embedding_json) AS embedded
            FROM chunks
        """)
        row = cursor.fetchone()
        total, embedded = row["total"], row["embedded"]

        return {
            "total_chunks": total,
            "chunks_with_embeddings": embedded,
            "chunks_without_embeddings": total - embedded,
            "completion_percentage": round(embedded / total * 100) if total else 0,
        }

    except Exception as e:
        logger.error("embedding_status_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_processing_stats() -> Dict[str, Any]:
    """Document and chunk totals, grouped by file type."""
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT COUNT(*) FROM documents")
        total_docs = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM chunks")
        total_chunks = cursor.fetchone()[0]

        cursor.execute("""
            SELECT COALESCE(file_type, 'unknown') AS file_type, COUNT(*) AS count
            FROM documents
            GROUP BY COALESCE(file_type, 'unknown')
        """)
        by_type = {row["file_type"]: row["count"] for row in cursor.fetchall()}

        return {
            "total_documents": total_docs,
            "total_chunks": total_chunks,
            "average_chunks_per_document": round(total_chunks / total_docs) if total_docs else 0,
            "documents_by_type": by_type,
        }

    except Exception as e:
        logger.error("processing_stats_failed", error=str(e))
        raise
    finally:
        conn.close()


# ==================== INTERACTION LOGS ====================

ANSWER_LOG = "answer"
SEARCH_LOG = "search"


def insert_search_log(
    query: str,
    results: Dict[str, Any],
    response_time: float,
    user_id: Optional[str] = None,
    kind: str = ANSWER_LOG,
) -> int:
    """Append one interaction log entry.

    Args:
        query: The question or search query as submitted
        results: Flattened result metadata (context count, confidence, ...)
        response_time: Total response time in milliseconds
        user_id: Optional caller identifier
        kind: "answer" for generated answers, "search" for plain searches

    Returns:
        ID of the inserted log row
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            INSERT INTO search_logs (
                kind, user_id, query, results_json, response_time, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
        """, (kind, user_id, query, json.dumps(results), response_time, _now()))

        conn.commit()
        return cursor.lastrowid

    except Exception as e:
        conn.rollback()
        logger.error("search_log_insert_failed", error=str(e), kind=kind)
        raise
    finally:
        conn.close()


def get_search_logs(limit: Optional[int] = None, kind: Optional[str] = None) -> List[Dict[str, Any]]:
    """Interaction logs, newest first.

    Args:
        limit: Maximum number of rows (all rows if None)
        kind: Only entries of this kind (all kinds if None)
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        sql = "SELECT * FROM search_logs"
        params: List[Any] = []
        if kind is not None:
            sql += " WHERE kind = ?"
            params.append(kind)
        sql += " ORDER BY id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cursor.execute(sql, params)

        logs = []
        for row in cursor.fetchall():
            entry = dict(row)
            results_json = entry.pop("results_json", None)
            entry["results"] = json.loads(results_json) if results_json else {}
            logs.append(entry)
        return logs

    except Exception as e:
        logger.error("search_logs_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_answer_analytics(recent: int = 10, top: int = 10) -> Dict[str, Any]:
    """Aggregate the answer log entries in SQL.

    Args:
        recent: Number of most recent questions to return
        top: Number of most cited documents to return

    Returns:
        Dictionary with total_queries, average_response_time_ms,
        average_confidence, mode_counts, top_documents and recent_questions
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT
                COUNT(*) AS total,
                AVG(response_time) AS avg_time,
                AVG(json_extract(results_json, '$.confidence')) AS avg_confidence
            FROM search_logs
            WHERE kind = ?
        """, (ANSWER_LOG,))
        totals = cursor.fetchone()

        cursor.execute("""
            SELECT json_extract(results_json, '$.mode') AS mode, COUNT(*) AS count
            FROM search_logs
            WHERE kind = ? AND json_extract(results_json, '$.mode') IS NOT NULL
            GROUP BY mode
            ORDER BY count DESC, MIN(id) ASC
        """, (ANSWER_LOG,))
        mode_counts = {row["mode"]: row["count"] for row in cursor.fetchall()}

        cursor.execute("""
            SELECT source.value AS filename, COUNT(*) AS count
            FROM search_logs, json_each(search_logs.results_json, '$.sources') AS source
            WHERE search_logs.kind = ?
            GROUP BY source.value
            ORDER BY count DESC, MIN(search_logs.id) ASC
            LIMIT ?
        """, (ANSWER_LOG, top))
        top_documents = [dict(row) for row in cursor.fetchall()]

        cursor.execute("""
            SELECT query FROM search_logs
            WHERE kind = ?
            ORDER BY id DESC
            LIMIT ?
        """, (ANSWER_LOG, recent))
        recent_questions = [row["query"] for row in cursor.fetchall()]

        return {
            "total_queries": totals["total"],
            "average_response_time_ms": round(totals["avg_time"] or 0),
            "average_confidence": round(totals["avg_confidence"] or 0.0, 3),
            "mode_counts": mode_counts,
            "top_documents": top_documents,
            "recent_questions": recent_questions,
        }

    except Exception as e:
        logger.error("answer_analytics_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_search_analytics(days: int = 30, top: int = 10) -> Dict[str, Any]:
    """Aggregate the plain search log entries in SQL.

    Args:
        days: Window for the top queries ranking
        top: Number of top queries to return

    Returns:
        Dictionary with total_searches, average_response_time_ms,
        average_results_count and top_queries
    """
    since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT
                COUNT(*) AS total,
                AVG(response_time) AS avg_time,
                AVG(json_extract(results_json, '$.results_count')) AS avg_results
            FROM search_logs
            WHERE kind = ?
        """, (SEARCH_LOG,))
        totals = cursor.fetchone()

        cursor.execute("""
            SELECT query, COUNT(*) AS count
            FROM search_logs
            WHERE kind = ? AND created_at >= ?
            GROUP BY query
            ORDER BY count DESC, MAX(id) DESC
            LIMIT ?
        """, (SEARCH_LOG, since, top))
        top_queries = [dict(row) for row in cursor.fetchall()]

        return {
            "total_searches": totals["total"],
            "average_response_time_ms": round(totals["avg_time"] or 0),
            "average_results_count": round(totals["avg_results"] or 0.0, 2),
            "top_queries": top_queries,
        }

    except Exception as e:
        logger.error("search_analytics_failed", error=str(e))
        raise
    finally:
        conn.close()
