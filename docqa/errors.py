"""Failure types raised by the answer pipeline.

Finding no context for a question is not an error: the pipeline returns a
regular result in the ``no_context`` state instead.
"""


class DocQAError(RuntimeError):
    """Base class for pipeline failures."""


class RetrievalFailure(DocQAError):
    """Embedding the question or querying the index failed."""

    stage = "retrieval"


class GenerationFailure(DocQAError):
    """The generation model errored or returned no completion."""

    stage = "generation"


class EmbeddingCountMismatch(DocQAError):
    """The embedding model returned a different number of vectors than inputs."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Expected {expected} embeddings, got {received}")
        self.expected = expected
        self.received = received


class LoggingFailure(DocQAError):
    """Writing an interaction log entry failed. Never propagated to callers."""
