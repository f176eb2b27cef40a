"""Pytest configuration and shared fixtures for the test suite."""

from typing import Callable, List, Optional, Sequence, Tuple

import pytest

from docqa import db


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the database module at a fresh SQLite file.

    Returns:
        Path of the temporary database
    """
    db_path = tmp_path / "test.sqlite"
    monkeypatch.setattr(db, "DB_PATH", db_path)
    db.init_database()
    return db_path


@pytest.fixture
def seed_document(temp_db) -> Callable[..., List[int]]:
    """Create a document whose chunks are the given texts.

    The document content is the texts joined by single spaces, so every
    chunk's offsets point at its text inside the document.

    Returns:
        Function(document_id, filename, entries, model) -> chunk ids, where
        entries are (text, vector or None) pairs
    """

    def _seed(
        document_id: str,
        filename: str,
        entries: Sequence[Tuple[str, Optional[List[float]]]],
        model: str = "test-embed",
    ) -> List[int]:
        content = " ".join(text for text, _ in entries)
        db.upsert_document(document_id, filename, content, file_type="pdf")

        chunk_ids = []
        position = 0
        for index, (text, vector) in enumerate(entries):
            start = content.index(text, position)
            position = start + len(text)
            chunk_id = db.insert_chunk(document_id, index, text, start, position)
            if vector is not None:
                db.attach_embedding(chunk_id, vector, model)
            chunk_ids.append(chunk_id)
        return chunk_ids

    return _seed
