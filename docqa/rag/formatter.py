"""Presentation formatting of answers for chat front-ends.

Adds illustrative quotes, shortened source names, a confidence tier and
elapsed time to an answer without changing the answer itself.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING
import structlog

if TYPE_CHECKING:
    from docqa.rag.pipeline import AnswerResult, ContextChunk

logger = structlog.get_logger()

CYRILLIC_PATTERN = re.compile(r"[\u0400-\u04FF]")
SENTENCE_SPLIT = re.compile(r"[.!?]+")
EPISODE_PATTERN = re.compile(r"^#?(\d+(?:-\d+)?)")
DOCUMENT_EXTENSIONS = re.compile(r"\.(pdf|docx|doc|txt|xlsx|xls|zip)$", re.IGNORECASE)

MAX_QUOTES = 3
MAX_SOURCES = 3
MIN_QUOTE_LENGTH = 30
MAX_QUOTE_LENGTH = 150
MAX_EPISODE_TITLE = 50
MAX_SOURCE_NAME = 60

CONFIDENCE_MARKERS = {"high": "🟢", "medium": "🟡", "low": "🔴"}

LABELS = {
    "en": {
        "quotes": "Quotes",
        "sources": "Sources",
        "confidence": "Confidence",
        "seconds": "s",
        "quick": "Quick",
        "detailed": "Detailed",
    },
    "ru": {
        "quotes": "Цитаты",
        "sources": "Источники",
        "confidence": "Уверенность",
        "seconds": "с",
        "quick": "Быстро",
        "detailed": "Подробно",
    },
}


def detect_language(text: str) -> str:
    """Return "ru" when more than 30% of the characters are Cyrillic, else "en"."""
    if not text:
        return "en"
    ratio = len(CYRILLIC_PATTERN.findall(text)) / len(text)
    return "ru" if ratio > 0.3 else "en"


def confidence_tier(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "medium"
    return "low"


def normalize_source(filename: str) -> str:
    """Shorten a document filename for display.

    "#250 Sleep and recovery.pdf" becomes "Episode #250: Sleep and recovery";
    long names are cut and end with "...".
    """
    name = DOCUMENT_EXTENSIONS.sub("", filename)

    match = EPISODE_PATTERN.match(name)
    if match:
        title = name[match.end():].strip()
        if len(title) > MAX_EPISODE_TITLE:
            title = title[:MAX_EPISODE_TITLE] + "..."
        return f"Episode #{match.group(1)}" + (f": {title}" if title else "")

    if len(name) > MAX_SOURCE_NAME:
        return name[:MAX_SOURCE_NAME] + "..."
    return name


def _clean_sentence(sentence: str) -> str:
    cleaned = re.sub(r"^\s*[-•]\s*", "", sentence.strip())
    cleaned = re.sub(r"\s+", " ", cleaned)
    return re.sub(r"^[^A-Za-zА-Яа-я]*", "", cleaned)


def extract_quotes(context: List["ContextChunk"], question: str) -> List[str]:
    """Pick up to three context sentences that mention question keywords.

    Keywords are the lowercased question words longer than three characters.
    Without any keyword match, the first two long sentences of the top
    chunk are used instead.
    """
    keywords = [word for word in question.lower().split(" ") if len(word) > 3]
    quotes = []

    for chunk in context:
        for sentence in SENTENCE_SPLIT.split(chunk.content or ""):
            if len(quotes) >= MAX_QUOTES:
                return quotes

            stripped = sentence.strip()
            if len(stripped) <= 20 or len(stripped) > MAX_QUOTE_LENGTH:
                continue

            lowered = sentence.lower()
            if not any(keyword in lowered for keyword in keywords):
                continue

            cleaned = _clean_sentence(sentence)
            if MIN_QUOTE_LENGTH < len(cleaned) <= MAX_QUOTE_LENGTH:
                quotes.append(cleaned)

    if not quotes and context:
        candidates = [
            s for s in SENTENCE_SPLIT.split(context[0].content or "")
            if len(s.strip()) > MIN_QUOTE_LENGTH
        ]
        for sentence in candidates[:2]:
            cleaned = re.sub(r"\s+", " ", sentence.strip())
            if len(cleaned) <= MAX_QUOTE_LENGTH:
                quotes.append(cleaned)

    return quotes


@dataclass
class FormattedAnswer:
    """A chat-ready view of an answer."""

    answer: str
    quotes: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    confidence_tier: str = "low"
    confidence_percent: int = 0
    elapsed_seconds: int = 0
    language: str = "en"
    mode: Optional[str] = None

    def render(self) -> str:
        """Render as a plain text message with localised labels."""
        labels = LABELS[self.language]
        message = self.answer

        if self.quotes:
            message += f"\n\n💬 {labels['quotes']}:\n"
            message += "".join(f'{i}. "{quote}"\n' for i, quote in enumerate(self.quotes, 1))

        if self.sources:
            message += f"\n📚 {labels['sources']}:\n"
            message += "".join(f"{i}. {source}\n" for i, source in enumerate(self.sources, 1))

        message += (
            f"\n\n{CONFIDENCE_MARKERS[self.confidence_tier]} {labels['confidence']}: "
            f"{self.confidence_percent}% | ⏱️ {self.elapsed_seconds}{labels['seconds']}"
        )

        if self.mode and self.mode != "auto":
            message += f" | 🎯 {labels.get(self.mode, self.mode)}"

        return message


class ResponseFormatter:
    """Turns an AnswerResult into a FormattedAnswer."""

    def format(self, result: "AnswerResult") -> FormattedAnswer:
        language = detect_language(result.question or "")

        formatted = FormattedAnswer(
            answer=result.answer,
            quotes=extract_quotes(result.context, result.question or "") if result.context else [],
            sources=[normalize_source(s) for s in result.sources[:MAX_SOURCES]],
            confidence_tier=confidence_tier(result.confidence),
            confidence_percent=round(result.confidence * 100),
            elapsed_seconds=round(result.total_time_ms / 1000),
            language=language,
            mode=result.mode,
        )

        logger.debug(
            "answer_formatted",
            response_id=result.response_id,
            quote_count=len(formatted.quotes),
            language=language,
        )
        return formatted
