"""
Integration tests for the retrieval pipeline.

These tests run indexing and search against a file-backed store to verify
that the chunker, provider, store and service work correctly together.
"""

import pytest

from cortexflow.retrieval.service import RAGService
from cortexflow.retrieval.store import RAGStore

DOCS = {
    "Auth": "Users log in with OAuth tokens issued by the gateway.\n\n"
    "Refresh tokens rotate every hour and are stored server side.",
    "Billing": "Invoices are generated monthly from usage records.\n\n"
    "Failed card payments are retried three times before suspension.",
    "Deploy": "Releases ship through a blue green rollout.\n\n"
    "Database migrations run before traffic is switched.",
}


@pytest.fixture
def file_service(tmp_path, fake_provider_cls):
    store = RAGStore(tmp_path / "rag" / "cortexflow.db")
    provider = fake_provider_cls(dimensions=512)
    rag_service = RAGService(store, provider_factory=lambda config: provider)
    yield rag_service
    rag_service.close()


@pytest.mark.integration
class TestIndexAndSearch:
    """Tests for indexing followed by each search mode."""

    def test_each_mode_finds_the_right_document(self, file_service):
        ids = {title: file_service.index_document(title, text).id for title, text in DOCS.items()}

        for search_type in ("vector", "keyword", "hybrid"):
            result = file_service.search(
                "refresh tokens gateway", search_type=search_type, min_score=0.0
            )
            assert result.results, search_type
            assert result.results[0].document.id == ids["Auth"], search_type

    def test_data_survives_reopen(self, tmp_path, fake_provider):
        path = tmp_path / "reopen.db"
        first = RAGService(RAGStore(path), provider_factory=lambda config: fake_provider)
        document = first.index_document("Auth", DOCS["Auth"], project_id="p1")
        first.update_rag_config({"search": {"top_k": 3}})
        first.close()

        second = RAGService(RAGStore(path), provider_factory=lambda config: fake_provider)
        try:
            assert second.get_document(document.id).chunk_count == document.chunk_count
            assert second.get_rag_config().search.top_k == 3
            assert second.search("oauth", search_type="keyword").results[0].document.id == document.id
        finally:
            second.close()

    def test_project_context_roundtrip(self, file_service, sample_project):
        indexed = file_service.index_project_context(sample_project)

        context = file_service.build_context_from_search(
            "payment provider sandbox keys",
            project_id="proj-1",
            search_type="keyword",
            max_context_length=2000,
        )

        assert len(indexed.documents) == 4
        assert context.sources
        assert context.sources[0].title == "Task: Integrate payment provider"
        assert len(context.context) <= 2000
        assert "[status: in_progress, priority: 1, assigned_to: developer]" in context.context

    def test_delete_cascades_to_chunks(self, file_service):
        document = file_service.index_document("Billing", DOCS["Billing"])

        assert file_service.delete_document(document.id)
        assert file_service.store.get_chunks(document.id) == []
        assert file_service.search("invoices", search_type="keyword").results == []
        assert file_service.get_rag_stats().total_chunks == 0

    def test_rechunk_and_reembed(self, file_service):
        document = file_service.index_document("Deploy", DOCS["Deploy"], skip_embedding=True)
        assert file_service.store.get_stats().indexed_chunks == 0

        file_service.update_rag_config({"chunking": {"max_chunk_size": 60}})
        reindexed = file_service.reindex_document(document.id)

        assert reindexed.chunk_count == 2
        assert file_service.store.get_stats().indexed_chunks == 2
        file_service.vacuum_database()
