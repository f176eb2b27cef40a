"""Request models for the HTTP API, validated with Pydantic."""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from docqa import config
from docqa.rag.pipeline import Language, Mode, ResponseStyle

MAX_QUESTION_LENGTH = 2000


class AskRequest(BaseModel):
    """Input for answering a question."""
    model_config = ConfigDict(str_strip_whitespace=True)

    question: str = Field(..., min_length=1, max_length=MAX_QUESTION_LENGTH)
    mode: Mode = Mode.AUTO
    max_context_chunks: Optional[int] = Field(None, ge=1, description="Overrides the mode default")
    similarity_threshold: Optional[float] = Field(
        None, ge=-1.0, le=1.0, description="Overrides the mode default"
    )
    style: Optional[ResponseStyle] = None
    language: Language = Language.AUTO
    user_id: Optional[str] = None


class SearchRequest(BaseModel):
    """Input for a semantic search over all chunks."""
    model_config = ConfigDict(str_strip_whitespace=True)

    query: str = Field(..., min_length=1, max_length=MAX_QUESTION_LENGTH)
    limit: int = Field(config.SEARCH_LIMIT, ge=1)
    threshold: float = Field(config.SEARCH_THRESHOLD, ge=-1.0, le=1.0)


class DocumentSearchRequest(SearchRequest):
    """Input for a semantic search within one document."""
    limit: int = Field(10, ge=1)


class SimilarChunksQuery(BaseModel):
    """Query string for similar-chunk lookup."""
    limit: int = Field(5, ge=1)
    threshold: float = Field(0.8, ge=-1.0, le=1.0)


class DocumentListQuery(BaseModel):
    """Query string for paging through documents."""
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)


class DocumentRequest(BaseModel):
    """An extracted document handed over by the document source."""

    document_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    file_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("file_type")
    @classmethod
    def normalize_file_type(cls, value: Optional[str]) -> Optional[str]:
        """Store "PDF" and ".pdf" alike as "pdf"."""
        if value is None:
            return None
        return value.strip().lstrip(".").lower() or None


def describe_errors(error: ValidationError) -> List[str]:
    """Flatten a ValidationError into "field: message" strings."""
    return [
        f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
        for err in error.errors()
    ]
