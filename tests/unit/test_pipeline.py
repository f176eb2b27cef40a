"""Tests for the answer pipeline."""

import sqlite3
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from docqa import db
from docqa.errors import GenerationFailure, RetrievalFailure
from docqa.rag.pipeline import (
    NO_CONTEXT_ANSWERS,
    Language,
    Mode,
    RagPipeline,
    ResponseStyle,
    calculate_confidence,
    extract_sources,
    resolve_mode,
)
from docqa.rag.store import SearchHit, StoredChunk


def make_hit(chunk_id: int, filename: str, similarity: float, content: str = "Context text.") -> SearchHit:
    chunk = StoredChunk(
        id=chunk_id,
        document_id=f"doc-{filename}",
        document_filename=filename,
        chunk_index=chunk_id,
        content=content,
        char_start=0,
        char_end=len(content),
    )
    return SearchHit(chunk=chunk, distance=1.0 - similarity, similarity=similarity)


@pytest.fixture
def components(temp_db):
    """Mocked embedding client, index and chat model."""
    embedding_client = MagicMock()
    embedding_client.embed = AsyncMock(return_value=[1.0, 0.0, 0.0])

    index = MagicMock()
    index.search = AsyncMock(return_value=[])

    llm = MagicMock()
    llm.chat = AsyncMock(return_value={"message": {"content": "Answer citing [Source 1]."}})

    pipeline = RagPipeline(embedding_client, index, llm, chat_model="test-chat")
    return pipeline, embedding_client, index, llm


class TestResolveMode:
    """Tests for resolve_mode."""

    def test_quick_mode_on_30_character_question(self):
        question = "How does deep sleep help rest?"
        assert len(question) == 30

        settings = resolve_mode(question, Mode.QUICK)

        assert settings.max_context_chunks == 3
        assert settings.similarity_threshold == 0.3
        assert settings.style == ResponseStyle.CONCISE

    def test_detailed_mode(self):
        settings = resolve_mode("short", "detailed")

        assert (settings.max_context_chunks, settings.similarity_threshold) == (8, 0.2)
        assert settings.style == ResponseStyle.DETAILED

    def test_auto_mode_short_question(self):
        settings = resolve_mode("x" * 49, Mode.AUTO)

        assert (settings.max_context_chunks, settings.similarity_threshold) == (3, 0.3)
        assert settings.style == ResponseStyle.CONCISE

    def test_auto_mode_long_question(self):
        settings = resolve_mode("x" * 50, Mode.AUTO)

        assert (settings.max_context_chunks, settings.similarity_threshold) == (5, 0.25)
        assert settings.style == ResponseStyle.DETAILED

    def test_explicit_values_override_mode(self):
        settings = resolve_mode(
            "short", Mode.QUICK, max_context_chunks=7, similarity_threshold=0.9, style="academic"
        )

        assert settings.max_context_chunks == 7
        assert settings.similarity_threshold == 0.9
        assert settings.style == ResponseStyle.ACADEMIC

    def test_unknown_mode_raises(self):
        with pytest.raises(ValueError):
            resolve_mode("question", "thorough")


class TestConfidence:
    """Tests for calculate_confidence."""

    def test_no_hits_is_zero(self):
        assert calculate_confidence([]) == 0.0

    def test_average_plus_breadth_bonus(self):
        assert calculate_confidence([0.9, 0.7]) == pytest.approx(0.88)

    def test_bonus_caps_at_five_hits(self):
        assert calculate_confidence([0.5] * 8) == pytest.approx(0.7)

    def test_capped_at_one(self):
        assert calculate_confidence([0.95] * 5) == 1.0

    @pytest.mark.parametrize("similarities", [[-0.9], [0.0, 0.1], [1.0] * 10, [0.42]])
    def test_always_within_unit_interval(self, similarities):
        assert 0.0 <= calculate_confidence(similarities) <= 1.0


class TestExtractSources:
    """Tests for extract_sources."""

    def test_unique_in_first_seen_order(self, components):
        pipeline = components[0]
        context = [
            pipeline._to_context(make_hit(1, "b.pdf", 0.9)),
            pipeline._to_context(make_hit(2, "a.pdf", 0.8)),
            pipeline._to_context(make_hit(3, "b.pdf", 0.7)),
        ]

        assert extract_sources(context) == ["b.pdf", "a.pdf"]


class TestGenerateAnswer:
    """Tests for RagPipeline.generate_answer."""

    @pytest.mark.asyncio
    async def test_no_context_skips_generation(self, components):
        pipeline, _, index, llm = components

        result = await pipeline.generate_answer("zone 2 training", similarity_threshold=0.9)

        assert result.state == "no_context"
        assert result.confidence == 0
        assert result.sources == []
        assert result.context == []
        assert result.context_count == 0
        assert result.generation_time_ms == 0
        assert result.answer == NO_CONTEXT_ANSWERS[Language.ENGLISH]
        assert llm.chat.call_count == 0
        assert index.search.await_args.kwargs["threshold"] == 0.9

    @pytest.mark.asyncio
    async def test_no_context_answer_follows_question_language(self, components):
        pipeline = components[0]

        result = await pipeline.generate_answer("Как улучшить качество сна?")

        assert result.answer == NO_CONTEXT_ANSWERS[Language.RUSSIAN]

    @pytest.mark.asyncio
    async def test_quick_mode_search_parameters(self, components):
        pipeline, _, index, _ = components

        await pipeline.generate_answer("How does deep sleep help rest?", mode="quick")

        kwargs = index.search.await_args.kwargs
        assert kwargs["limit"] == 3
        assert kwargs["threshold"] == 0.3

    @pytest.mark.asyncio
    async def test_answer_with_context(self, components):
        pipeline, embedding_client, index, llm = components
        index.search.return_value = [
            make_hit(1, "a.pdf", 0.9, "Deep sleep clears waste."),
            make_hit(2, "b.pdf", 0.7, "REM sleep consolidates memory."),
            make_hit(3, "a.pdf", 0.8, "Alcohol fragments sleep."),
        ]

        result = await pipeline.generate_answer("What happens during deep sleep?", mode="quick")

        assert result.state == "responded"
        assert result.answer == "Answer citing [Source 1]."
        assert result.context_count == 3
        assert result.sources == ["a.pdf", "b.pdf"]
        assert result.confidence == pytest.approx(0.8 + 0.12)
        assert result.context[0].chunk_id == 1
        assert result.context[1].document_filename == "b.pdf"
        assert result.total_time_ms >= result.search_time_ms
        embedding_client.embed.assert_awaited_once_with("What happens during deep sleep?")

    @pytest.mark.asyncio
    async def test_generation_parameters(self, components):
        pipeline, _, index, llm = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9, "Deep sleep clears waste.")]

        await pipeline.generate_answer("question?", mode="quick", language="ru")

        call = llm.chat.await_args
        messages = call.args[0]
        assert call.kwargs["model"] == "test-chat"
        assert call.kwargs["temperature"] == 0.1
        assert call.kwargs["max_tokens"] == 200
        assert messages[0]["role"] == "system"
        assert "Respond in Russian" in messages[0]["content"]
        assert "[Source 1: a.pdf]" in messages[1]["content"]
        assert "Deep sleep clears waste." in messages[1]["content"]
        assert "Question: question?" in messages[1]["content"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "style,max_tokens",
        [("concise", 200), ("bullet_points", 600), ("academic", 800), ("detailed", 1000)],
    )
    async def test_max_tokens_by_style(self, components, style, max_tokens):
        pipeline, _, index, llm = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9)]

        result = await pipeline.generate_answer("question?", style=style)

        assert llm.chat.await_args.kwargs["max_tokens"] == max_tokens
        assert result.style == style

    @pytest.mark.asyncio
    async def test_interaction_is_logged(self, components):
        pipeline, _, index, _ = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9)]

        result = await pipeline.generate_answer("question?", mode="detailed", user_id="u-1")

        logs = db.get_search_logs()
        assert len(logs) == 1
        assert logs[0]["query"] == "question?"
        assert logs[0]["user_id"] == "u-1"
        assert logs[0]["results"]["response_id"] == result.response_id
        assert logs[0]["results"]["mode"] == "detailed"
        assert logs[0]["results"]["sources"] == ["a.pdf"]

    @pytest.mark.asyncio
    async def test_unrecorded_answer_leaves_no_log(self, components):
        pipeline, _, index, _ = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9)]

        result = await pipeline.generate_answer("question?", record=False)

        assert result.state == "responded"
        assert db.get_search_logs() == []

    @pytest.mark.asyncio
    async def test_logging_failure_does_not_affect_result(self, components, monkeypatch):
        pipeline, _, index, _ = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9)]

        def broken_insert(**kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "insert_search_log", broken_insert)

        result = await pipeline.generate_answer("question?")

        assert result.state == "responded"
        assert result.answer == "Answer citing [Source 1]."

    @pytest.mark.asyncio
    async def test_embedding_error_is_retrieval_failure(self, components):
        pipeline, embedding_client, _, llm = components
        embedding_client.embed.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(RetrievalFailure) as exc_info:
            await pipeline.generate_answer("question?")

        assert exc_info.value.stage == "retrieval"
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        llm.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_index_error_is_retrieval_failure(self, components):
        pipeline, _, index, _ = components
        index.search.side_effect = ValueError("Query dimension mismatch")

        with pytest.raises(RetrievalFailure):
            await pipeline.generate_answer("question?")

    @pytest.mark.asyncio
    async def test_generation_error_is_generation_failure(self, components):
        pipeline, _, index, llm = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9)]
        llm.chat.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(GenerationFailure) as exc_info:
            await pipeline.generate_answer("question?")

        assert exc_info.value.stage == "generation"
        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_empty_completion_is_generation_failure(self, components):
        pipeline, _, index, llm = components
        index.search.return_value = [make_hit(1, "a.pdf", 0.9)]
        llm.chat.return_value = {"message": {"content": "   "}}

        with pytest.raises(GenerationFailure):
            await pipeline.generate_answer("question?")

        assert db.get_search_logs() == []

    @pytest.mark.asyncio
    async def test_empty_question_rejected(self, components):
        with pytest.raises(ValueError):
            await components[0].generate_answer("   ")


class TestAnalytics:
    """Tests for RagPipeline.get_analytics."""

    def test_empty_logs(self, components):
        analytics = components[0].get_analytics()

        assert analytics["total_queries"] == 0
        assert analytics["top_documents"] == []

    def test_aggregates_logs(self, components):
        db.insert_search_log(
            "first?", {"confidence": 0.9, "mode": "quick", "sources": ["a.pdf", "b.pdf"]}, 100.0
        )
        db.insert_search_log(
            "second?", {"confidence": 0.5, "mode": "quick", "sources": ["a.pdf"]}, 300.0
        )
        db.insert_search_log(
            "third?", {"confidence": 0.0, "mode": "detailed", "sources": []}, 200.0
        )

        analytics = components[0].get_analytics(recent=2)

        assert analytics["total_queries"] == 3
        assert analytics["average_response_time_ms"] == 200
        assert analytics["average_confidence"] == pytest.approx(0.467, abs=1e-3)
        assert analytics["mode_counts"] == {"quick": 2, "detailed": 1}
        assert analytics["top_documents"][0] == {"filename": "a.pdf", "count": 2}
        assert analytics["recent_questions"] == ["third?", "second?"]
