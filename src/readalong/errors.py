"""
Exception taxonomy shared by the retrieval layer and the engines.
"""
from __future__ import annotations


class ReadalongError(Exception):
    """Base class for every error raised by the package."""


class OperationCancelled(ReadalongError):
    """The user cancelled the operation; nothing is marked failed."""


class RetrievalError(ReadalongError):
    """Similarity search failed. Always absorbed by the retriever."""


class GenerationError(ReadalongError):
    """A model call or its parse failed; no partial entity was created."""


class CommentError(GenerationError):
    """The quiz overall-comment call failed."""


class ConfigurationError(ReadalongError):
    """Required input is missing or invalid; rejected before any model call."""


class EntityNotFoundError(ConfigurationError):
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class NoReadableContextError(ConfigurationError):
    """None of the requested books yields reading context."""
