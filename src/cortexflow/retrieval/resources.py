"""
Singleton resource management for the retrieval store and service.

Provides cached instances so the SQLite engine and the embedding provider
(which may hold a sentence-transformers model in memory) are created once
per process. Uses the same @lru_cache pattern as config.py.

Usage:
    # In the CLI or an embedding host
    service = get_rag_service()  # First call opens the store
    service.search("login flow")

    # In tests (reset cache)
    clear_resource_cache()  # Closes the store and drops cached instances
"""

import logging
from functools import lru_cache

from cortexflow.config import get_settings
from cortexflow.retrieval.service import RAGService
from cortexflow.retrieval.store import RAGStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_rag_store() -> RAGStore:
    """
    Get or create the global RAGStore.

    Opens (and creates if needed) the database at settings.rag_db_path.

    Returns:
        RAGStore: Open store ready for use
    """
    db_path = get_settings().rag_db_path
    logger.info(f"Opening RAG store at {db_path}")
    return RAGStore(db_path)


@lru_cache(maxsize=1)
def get_rag_service() -> RAGService:
    """
    Get or create the global RAGService bound to get_rag_store().

    Returns:
        RAGService: Service sharing the cached store
    """
    return RAGService(get_rag_store())


def clear_resource_cache() -> None:
    """
    Close the cached store and clear all cached resources.

    Used in tests to reset state between test cases.
    """
    if get_rag_service.cache_info().currsize:
        get_rag_service().reset_embedding_provider()
    if get_rag_store.cache_info().currsize:
        get_rag_store().close()
    get_rag_service.cache_clear()
    get_rag_store.cache_clear()
    logger.debug("Resource cache cleared")
