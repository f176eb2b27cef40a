"""Retrieval-augmented answer generation.

Flow per question:
1. Resolve mode into retrieval parameters and an answer style
2. Embed the question and search the similarity index
3. Return a templated answer when nothing relevant is found
4. Otherwise prompt the chat model with the retrieved context
5. Score confidence, collect sources and log the interaction
"""
import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional
import structlog

from docqa import config, db
from docqa.errors import RetrievalFailure, GenerationFailure, LoggingFailure
from docqa.llm_client import OllamaClient
from docqa.rag.embeddings import EmbeddingClient
from docqa.rag.formatter import detect_language
from docqa.rag.store import SimilarityIndex, SearchHit

logger = structlog.get_logger()


class Mode(str, Enum):
    QUICK = "quick"
    DETAILED = "detailed"
    AUTO = "auto"


class ResponseStyle(str, Enum):
    CONCISE = "concise"
    DETAILED = "detailed"
    BULLET_POINTS = "bullet_points"
    ACADEMIC = "academic"


class Language(str, Enum):
    ENGLISH = "en"
    RUSSIAN = "ru"
    AUTO = "auto"


class PipelineState(str, Enum):
    RECEIVED = "received"
    SEARCHING = "searching"
    NO_CONTEXT = "no_context"
    CONTEXT_FOUND = "context_found"
    GENERATING = "generating"
    RESPONDED = "responded"
    FAILED = "failed"


# Questions shorter than this are answered like quick mode under auto
AUTO_MODE_LENGTH_CUTOFF = 50

MAX_TOKENS_BY_STYLE = {
    ResponseStyle.CONCISE: 200,
    ResponseStyle.BULLET_POINTS: 600,
    ResponseStyle.ACADEMIC: 800,
    ResponseStyle.DETAILED: 1000,
}
DEFAULT_MAX_TOKENS = 800

NO_CONTEXT_ANSWERS = {
    Language.ENGLISH: (
        "I'm sorry, I couldn't find relevant information in the knowledge base "
        "to answer your question. Please try rephrasing it or asking something "
        "more specific."
    ),
    Language.RUSSIAN: (
        "Извините, я не нашёл в базе знаний информации, достаточной для ответа "
        "на ваш вопрос. Попробуйте переформулировать вопрос или сделать его "
        "более конкретным."
    ),
}

SYSTEM_PROMPT = """You are a knowledgeable assistant that answers questions about a collection of documents. Provide accurate answers using only the provided context.

CRITICAL INSTRUCTIONS:
- Use ONLY the information provided in the context chunks
- If the context doesn't contain enough information to answer the question, or some part of it, say so clearly
- Always cite specific sources when making claims
- Be precise and avoid speculation"""

STYLE_INSTRUCTIONS = {
    ResponseStyle.CONCISE: [
        "Provide concise, direct answers (2-3 sentences maximum)",
        "Focus on the most important points only",
    ],
    ResponseStyle.DETAILED: [
        "Provide comprehensive, detailed explanations",
        "Include relevant background information from the context",
        "Explain mechanisms and reasoning when available",
    ],
    ResponseStyle.BULLET_POINTS: [
        "Format your response as clear bullet points",
        "Each point should be concise but informative",
    ],
    ResponseStyle.ACADEMIC: [
        "Use an academic tone and precise terminology",
        "Refer to specific studies or data when the context mentions them",
    ],
}

LANGUAGE_INSTRUCTIONS = {
    Language.ENGLISH: ["Respond in English"],
    Language.RUSSIAN: [
        "Respond in Russian",
        "Use appropriate Russian terminology",
    ],
    Language.AUTO: ["Detect the language of the question and respond in the same language"],
}


@dataclass
class RetrievalSettings:
    """Retrieval parameters and answer style a mode resolves to."""

    max_context_chunks: int
    similarity_threshold: float
    style: ResponseStyle


@dataclass
class ContextChunk:
    """A retrieved chunk as handed to the generation model."""

    content: str
    similarity: float
    document_filename: str
    chunk_index: int
    document_id: str
    chunk_id: int


@dataclass
class AnswerResult:
    """Outcome of one question, either answered or without context."""

    answer: str
    question: str
    context: List[ContextChunk]
    context_count: int
    search_time_ms: float
    generation_time_ms: float
    total_time_ms: float
    confidence: float
    sources: List[str]
    mode: str
    style: str
    language: str
    state: str
    response_id: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_mode(
    question: str,
    mode: Mode,
    max_context_chunks: Optional[int] = None,
    similarity_threshold: Optional[float] = None,
    style: Optional[ResponseStyle] = None,
) -> RetrievalSettings:
    """Map a mode to retrieval parameters; explicit values always win.

    | mode                      | chunks | threshold | style    |
    |---------------------------|--------|-----------|----------|
    | quick                     | 3      | 0.3       | concise  |
    | detailed                  | 8      | 0.2       | detailed |
    | auto, question < 50 chars | 3      | 0.3       | concise  |
    | auto, otherwise           | 5      | 0.25      | detailed |
    """
    mode = Mode(mode)

    if mode == Mode.QUICK:
        defaults = RetrievalSettings(3, 0.3, ResponseStyle.CONCISE)
    elif mode == Mode.DETAILED:
        defaults = RetrievalSettings(8, 0.2, ResponseStyle.DETAILED)
    elif len(question) < AUTO_MODE_LENGTH_CUTOFF:
        defaults = RetrievalSettings(3, 0.3, ResponseStyle.CONCISE)
    else:
        defaults = RetrievalSettings(5, 0.25, ResponseStyle.DETAILED)

    return RetrievalSettings(
        max_context_chunks=(
            defaults.max_context_chunks if max_context_chunks is None else max_context_chunks
        ),
        similarity_threshold=(
            defaults.similarity_threshold if similarity_threshold is None else similarity_threshold
        ),
        style=defaults.style if style is None else ResponseStyle(style),
    )


def calculate_confidence(similarities: List[float]) -> float:
    """Average similarity plus up to 0.2 for corroborating hits, capped at 1.0.

    Zero hits score 0. Negative averages are clamped so the score stays in [0, 1].
    """
    if not similarities:
        return 0.0

    avg_similarity = sum(similarities) / len(similarities)
    count_bonus = min(len(similarities), 5) / 5 * 0.2
    return max(0.0, min(avg_similarity + count_bonus, 1.0))


def extract_sources(context: List[ContextChunk]) -> List[str]:
    """Unique document filenames in first-seen order."""
    return list(dict.fromkeys(chunk.document_filename for chunk in context))


def build_system_prompt(style: ResponseStyle, language: Language) -> str:
    lines = STYLE_INSTRUCTIONS.get(style, []) + LANGUAGE_INSTRUCTIONS[language]
    return SYSTEM_PROMPT + "".join(f"\n- {line}" for line in lines)


def build_user_prompt(question: str, context: List[ContextChunk]) -> str:
    parts = []
    for i, chunk in enumerate(context, start=1):
        parts.append(f"[Source {i}: {chunk.document_filename}]\n{chunk.content}\n")

    parts.append(f"Question: {question}\n")
    parts.append(
        "Based on the above context, answer the question. Remember to:\n"
        "- Use only the information provided in the context\n"
        "- Cite sources when making specific claims\n"
        "- Say clearly when the context doesn't cover some aspect of the question"
    )
    return "\n".join(parts)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RagPipeline:
    """Answers questions from retrieved document context."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        index: SimilarityIndex,
        llm_client: OllamaClient,
        chat_model: str = None,
    ):
        """Initialize the pipeline.

        Args:
            embedding_client: Embeds questions
            index: Similarity index searched for context
            llm_client: Model server client used for generation
            chat_model: Generation model name (default from config)
        """
        self.embedding_client = embedding_client
        self.index = index
        self.llm_client = llm_client
        self.chat_model = chat_model or config.CHAT_MODEL

    async def generate_answer(
        self,
        question: str,
        mode: str = "auto",
        max_context_chunks: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        user_id: Optional[str] = None,
        style: Optional[str] = None,
        language: str = "auto",
        record: bool = True,
    ) -> AnswerResult:
        """Answer a question from the indexed documents.

        Args:
            question: Natural-language question
            mode: quick, detailed or auto
            max_context_chunks: Overrides the mode's chunk count
            similarity_threshold: Overrides the mode's similarity threshold
            user_id: Caller identifier recorded in the interaction log
            style: Overrides the mode's answer style
            language: en, ru or auto (answer in the question's language)
            record: Write the interaction log entry (off for health probes)

        Returns:
            AnswerResult in the responded or no_context state

        Raises:
            ValueError: If the question is empty or mode/style/language is unknown
            RetrievalFailure: If embedding the question or searching fails
            GenerationFailure: If the chat model errors or returns nothing
        """
        if not question or not question.strip():
            raise ValueError("Question must not be empty")

        mode = Mode(mode)
        language = Language(language)
        settings = resolve_mode(
            question, mode, max_context_chunks, similarity_threshold, style
        )

        started = time.perf_counter()
        response_id = f"rag_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        self._transition(response_id, PipelineState.RECEIVED, mode=mode.value)

        # Search
        self._transition(response_id, PipelineState.SEARCHING)
        search_started = time.perf_counter()
        try:
            query_vector = await self.embedding_client.embed(question)
            hits = await self.index.search(
                query_vector,
                limit=settings.max_context_chunks,
                threshold=settings.similarity_threshold,
            )
        except Exception as e:
            self._transition(response_id, PipelineState.FAILED, stage="retrieval")
            logger.error(
                "retrieval_failed",
                response_id=response_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RetrievalFailure(f"Search failed: {e}") from e
        search_time = _elapsed_ms(search_started)

        if not hits:
            self._transition(response_id, PipelineState.NO_CONTEXT)
            result = AnswerResult(
                answer=self._no_context_answer(question, language),
                question=question,
                context=[],
                context_count=0,
                search_time_ms=search_time,
                generation_time_ms=0.0,
                total_time_ms=_elapsed_ms(started),
                confidence=0.0,
                sources=[],
                mode=mode.value,
                style=settings.style.value,
                language=language.value,
                state=PipelineState.NO_CONTEXT.value,
                response_id=response_id,
            )
            if record:
                self._record(result, user_id)
            return result

        self._transition(response_id, PipelineState.CONTEXT_FOUND, hit_count=len(hits))
        context = [self._to_context(hit) for hit in hits]

        # Generation
        self._transition(response_id, PipelineState.GENERATING)
        generation_started = time.perf_counter()
        answer = await self._generate(response_id, question, context, settings.style, language)
        generation_time = _elapsed_ms(generation_started)

        result = AnswerResult(
            answer=answer,
            question=question,
            context=context,
            context_count=len(context),
            search_time_ms=search_time,
            generation_time_ms=generation_time,
            total_time_ms=_elapsed_ms(started),
            confidence=calculate_confidence([hit.similarity for hit in hits]),
            sources=extract_sources(context),
            mode=mode.value,
            style=settings.style.value,
            language=language.value,
            state=PipelineState.RESPONDED.value,
            response_id=response_id,
        )

        if record:
            self._record(result, user_id)
        self._transition(
            response_id,
            PipelineState.RESPONDED,
            total_time_ms=result.total_time_ms,
            confidence=round(result.confidence, 3),
        )
        return result

    async def _generate(
        self,
        response_id: str,
        question: str,
        context: List[ContextChunk],
        style: ResponseStyle,
        language: Language,
    ) -> str:
        messages = [
            {"role": "system", "content": build_system_prompt(style, language)},
            {"role": "user", "content": build_user_prompt(question, context)},
        ]

        try:
            response = await self.llm_client.chat(
                messages,
                model=self.chat_model,
                temperature=config.GENERATION_TEMPERATURE,
                max_tokens=MAX_TOKENS_BY_STYLE.get(style, DEFAULT_MAX_TOKENS),
            )
        except Exception as e:
            self._transition(response_id, PipelineState.FAILED, stage="generation")
            logger.error(
                "generation_failed",
                response_id=response_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GenerationFailure(f"Generation failed: {e}") from e

        content = ((response or {}).get("message") or {}).get("content") or ""
        if not content.strip():
            self._transition(response_id, PipelineState.FAILED, stage="generation")
            logger.error("generation_empty", response_id=response_id, model=self.chat_model)
            raise GenerationFailure("Generation model returned no completion")

        return content.strip()

    @staticmethod
    def _to_context(hit: SearchHit) -> ContextChunk:
        return ContextChunk(
            content=hit.chunk.content,
            similarity=hit.similarity,
            document_filename=hit.chunk.document_filename,
            chunk_index=hit.chunk.chunk_index,
            document_id=hit.chunk.document_id,
            chunk_id=hit.chunk.id,
        )

    @staticmethod
    def _no_context_answer(question: str, language: Language) -> str:
        if language == Language.AUTO:
            language = Language(detect_language(question))
        return NO_CONTEXT_ANSWERS[language]

    @staticmethod
    def _transition(response_id: str, state: PipelineState, **kwargs) -> None:
        logger.info("pipeline_state", response_id=response_id, state=state.value, **kwargs)

    def _record(self, result: AnswerResult, user_id: Optional[str]) -> None:
        """Write the interaction log entry; failures only produce a warning."""
        try:
            self._log_interaction(result, user_id)
        except LoggingFailure as e:
            logger.warning(
                "interaction_log_failed",
                response_id=result.response_id,
                error=str(e),
            )

    @staticmethod
    def _log_interaction(result: AnswerResult, user_id: Optional[str]) -> None:
        try:
            db.insert_search_log(
                query=result.question,
                user_id=user_id,
                kind=db.ANSWER_LOG,
                response_time=result.total_time_ms,
                results={
                    "response_id": result.response_id,
                    "context_count": result.context_count,
                    "confidence": result.confidence,
                    "sources": result.sources,
                    "mode": result.mode,
                    "style": result.style,
                    "language": result.language,
                    "state": result.state,
                },
            )
        except Exception as e:
            raise LoggingFailure(f"Could not record interaction: {e}") from e

    def get_analytics(self, recent: int = 10) -> Dict[str, Any]:
        """Aggregate the answer log entries.

        Args:
            recent: Number of most recent questions to include

        Returns:
            Totals, averages, per-mode counts and most cited documents
        """
        return db.get_answer_analytics(recent=recent)
