"""
Exception hierarchy for the retrieval engine.

Chunking and store errors are fatal to the enclosing call. Embedding errors
(`EmbeddingError` and subclasses) are absorbed by the indexing service, which
keeps documents searchable by keyword when vectors cannot be computed.
"""

from typing import Optional


class RAGError(Exception):
    """Base class for all retrieval engine errors."""


class ValidationError(RAGError):
    """Input rejected before any persistence took place."""


class NotFoundError(RAGError):
    """An unknown document or chunk id was referenced."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConfigError(RAGError):
    """A configuration update was malformed; the previous config is kept."""


class EmbeddingError(RAGError):
    """An embedding could not be computed."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        self.provider = provider
        super().__init__(message)


class ProviderUnavailableError(EmbeddingError):
    """The provider runtime, model, credentials or endpoint are missing."""


class ProviderRequestError(EmbeddingError):
    """A remote embedding call failed (network, timeout, non-2xx, bad payload)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, provider=provider)
