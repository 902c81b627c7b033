"""
Pytest configuration and shared fixtures.

Provides common fixtures for:
    - Settings isolated from the developer's environment
    - Deterministic fake embedding providers
    - In-memory stores and services wired to those providers
    - Sample project context payloads
"""

import re
import zlib
from pathlib import Path
from typing import Generator

import numpy as np
import pytest
from numpy.typing import NDArray

from cortexflow.exceptions import ProviderRequestError, ProviderUnavailableError
from cortexflow.retrieval.service import RAGService
from cortexflow.retrieval.store import RAGStore


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def test_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Provide settings pointing at a temporary data dir, without API keys."""
    monkeypatch.setenv("CORTEXFLOW_DATA_DIR", str(tmp_path / "data"))
    for key in ("OPENAI_API_KEY", "VOYAGE_API_KEY", "COHERE_API_KEY"):
        monkeypatch.delenv(key, raising=False)

    from cortexflow.config import Settings

    return Settings(_env_file=None)


@pytest.fixture
def no_api_keys(test_settings, monkeypatch: pytest.MonkeyPatch):
    """Make remote providers see no environment API keys."""
    monkeypatch.setattr("cortexflow.retrieval.embeddings.settings", test_settings)
    return test_settings


# =============================================================================
# Fake Embedding Providers
# =============================================================================

class FakeEmbeddingProvider:
    """
    Deterministic bag-of-words embedder.

    Each lower-cased word is hashed into one of `dimensions` buckets, so texts
    sharing words have a positive cosine similarity.
    """

    def __init__(self, name: str = "fake", dimensions: int = 32, max_batch_size: int = 4) -> None:
        self.name = name
        self.dimensions = dimensions
        self.max_batch_size = max_batch_size
        self.calls: list[list[str]] = []

    def is_available(self) -> bool:
        return True

    def vector(self, text: str) -> NDArray[np.float32]:
        vec = np.zeros(self.dimensions, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(word.encode()) % self.dimensions] += 1.0
        return vec

    def embed(self, text: str) -> NDArray[np.float32]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        self.calls.append(list(texts))
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)
        return np.vstack([self.vector(text) for text in texts])


class FailingEmbeddingProvider(FakeEmbeddingProvider):
    """Provider whose every call fails like an unreachable remote API."""

    def __init__(self, error: Exception | None = None) -> None:
        super().__init__(name="failing")
        self.error = error or ProviderRequestError("Custom API error: 503 - unavailable", provider="custom")

    def is_available(self) -> bool:
        return not isinstance(self.error, ProviderUnavailableError)

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        self.calls.append(list(texts))
        raise self.error


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_provider_cls() -> type[FakeEmbeddingProvider]:
    """Provide the fake provider class for tests that build their own instances."""
    return FakeEmbeddingProvider


@pytest.fixture
def failing_provider() -> FailingEmbeddingProvider:
    return FailingEmbeddingProvider()


# =============================================================================
# Store and Service Fixtures
# =============================================================================

@pytest.fixture
def store() -> Generator[RAGStore, None, None]:
    """Provide an in-memory store."""
    rag_store = RAGStore()
    yield rag_store
    rag_store.close()


@pytest.fixture
def service(store: RAGStore, fake_provider: FakeEmbeddingProvider) -> RAGService:
    """Provide a service embedding with the fake provider."""
    return RAGService(store, provider_factory=lambda config: fake_provider)


@pytest.fixture
def failing_service(store: RAGStore, failing_provider: FailingEmbeddingProvider) -> RAGService:
    """Provide a service whose embedding calls always fail."""
    return RAGService(store, provider_factory=lambda config: failing_provider)


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_project() -> dict:
    """Provide a project context as exported by the coordination tool."""
    return {
        "id": "proj-1",
        "name": "Checkout Revamp",
        "description": "Rebuild the checkout flow with a single-page payment form.",
        "phase": "execution",
        "version": 3,
        "tags": ["payments", "frontend"],
        "createdAt": "2024-05-01T10:00:00Z",
        "updatedAt": "2024-05-02T10:00:00Z",
        "tasks": [
            {
                "id": "task-1",
                "title": "Integrate payment provider",
                "description": "Wire the card form to the payment provider SDK.",
                "status": "in_progress",
                "priority": 1,
                "assignedTo": "developer",
                "notes": ["Use the sandbox keys for staging"],
                "dependencies": ["task-2"],
            },
            {
                "id": "task-2",
                "title": "Design payment form",
                "description": "Layout for card number, expiry and CVC fields.",
                "status": "completed",
                "priority": 2,
                "assignedTo": None,
                "notes": [],
                "dependencies": [],
            },
        ],
        "notes": [
            {
                "id": "note-1",
                "agent": "architect",
                "content": "Card data must never touch our servers; tokenise in the browser before submit.",
                "timestamp": "2024-05-01T12:00:00Z",
                "category": "decision",
            },
            {
                "id": "note-2",
                "agent": "qa",
                "content": "Looks fine.",
                "timestamp": "2024-05-01T13:00:00Z",
                "category": "general",
            },
        ],
    }
