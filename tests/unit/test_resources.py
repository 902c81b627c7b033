"""
Unit tests for resource caching in retrieval.resources module.

Tests the singleton caching behavior of:
    - get_rag_store()
    - get_rag_service()
    - clear_resource_cache()
"""

from unittest.mock import patch

import pytest

from cortexflow.retrieval.resources import (
    clear_resource_cache,
    get_rag_service,
    get_rag_store,
)


@pytest.fixture
def cached_resources(test_settings):
    """Point the resource getters at a temporary database and reset caches."""
    clear_resource_cache()
    with patch("cortexflow.retrieval.resources.get_settings", return_value=test_settings):
        yield test_settings
    clear_resource_cache()


@pytest.mark.unit
class TestResourceCaching:
    """Test that resource getters implement proper caching."""

    def test_get_rag_store_caches_result(self, cached_resources):
        """Test that get_rag_store returns the same instance on multiple calls."""
        store1 = get_rag_store()
        store2 = get_rag_store()

        assert store1 is store2
        assert store1.db_path == cached_resources.rag_db_path
        assert cached_resources.rag_db_path.exists()

    def test_get_rag_service_shares_store(self, cached_resources):
        """Test that the cached service is bound to the cached store."""
        service1 = get_rag_service()
        service2 = get_rag_service()

        assert service1 is service2
        assert service1.store is get_rag_store()

    def test_clear_resource_cache_closes_store(self, cached_resources):
        """Test that clearing closes the store and yields fresh instances."""
        store1 = get_rag_store()
        service1 = get_rag_service()

        with patch.object(store1, "close", wraps=store1.close) as close:
            clear_resource_cache()
            close.assert_called_once()

        assert get_rag_store() is not store1
        assert get_rag_service() is not service1

    def test_clear_resource_cache_when_empty(self):
        """Test that clearing an empty cache is a no-op."""
        clear_resource_cache()
        clear_resource_cache()

        assert get_rag_store.cache_info().currsize == 0
        assert get_rag_service.cache_info().currsize == 0
