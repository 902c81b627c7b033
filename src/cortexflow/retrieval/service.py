"""
Indexing and query orchestration.

RAGService composes the chunker, the embedding provider and the store:

    index_document ──► chunk_document ──► store (document + chunks, one txn)
                                      └─► provider.embed_batch (best effort)
    search ──► provider.embed(query) ──► store.vector/keyword/hybrid_search
    build_context_from_search ──► search ──► bounded context string

Embedding failures never fail an indexing call: affected chunks keep a null
embedding, stay searchable by keyword, and can be embedded later with
update_document_embeddings or reindex_all.
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from cortexflow.exceptions import EmbeddingError, NotFoundError, ValidationError
from cortexflow.retrieval.chunker import chunk_document
from cortexflow.retrieval.embeddings import EmbeddingProvider, create_embedding_provider
from cortexflow.retrieval.models import (
    ContextResult,
    ContextSource,
    ProjectIndexResult,
    RAGChunk,
    RAGDocument,
    RAGQueryResult,
    RAGSearchResult,
    RAGStats,
    ReindexResult,
    SearchType,
    SourceType,
)
from cortexflow.retrieval.project import (
    ProjectContext,
    render_note,
    render_project,
    render_task,
)
from cortexflow.retrieval.rag_config import EmbeddingConfig, RAGConfig
from cortexflow.retrieval.store import RAGStore

logger = logging.getLogger(__name__)

REINDEX_ALL_LIMIT = 10000

ProviderFactory = Callable[[EmbeddingConfig], EmbeddingProvider]


class RAGService:
    """
    Public surface of the retrieval engine.

    The service owns the embedding provider instance: it is built lazily from
    the stored embedding config, rebuilt whenever that config changes, and
    dropped on reset_embedding_provider().

    Example:
        >>> service = RAGService(RAGStore())
        >>> doc = service.index_document("Auth", "Users log in with OAuth tokens.")
        >>> service.search("oauth", search_type="keyword").total_found
        1
    """

    def __init__(
        self,
        store: RAGStore,
        provider_factory: ProviderFactory = create_embedding_provider,
    ) -> None:
        """
        Initialize the service.

        Args:
            store: Retrieval store to index into and search
            provider_factory: Builds a provider from an embedding config
        """
        self.store = store
        self._provider_factory = provider_factory
        self._provider: Optional[EmbeddingProvider] = None
        self._provider_config: Optional[EmbeddingConfig] = None
        self._provider_lock = threading.Lock()

    # =========================================================================
    # Embedding provider
    # =========================================================================

    def get_embedding_provider(self) -> EmbeddingProvider:
        """Return the provider for the stored embedding config, building it if needed."""
        embedding_config = self.store.get_config().embedding
        with self._provider_lock:
            if self._provider is None or self._provider_config != embedding_config:
                self._provider = self._provider_factory(embedding_config)
                self._provider_config = embedding_config
                logger.info(f"Embedding provider initialized: {self._provider.name}")
            return self._provider

    def reset_embedding_provider(self) -> None:
        with self._provider_lock:
            self._provider = None
            self._provider_config = None
        logger.debug("Embedding provider reset")

    def _embed_chunks(self, chunks: Sequence[RAGChunk], config: RAGConfig) -> int:
        """
        Embed chunks in provider-sized batches on a bounded thread pool.

        A failed batch is logged and skipped; its chunks keep whatever
        embedding they had.

        Returns:
            Number of chunks whose embedding was written
        """
        if not chunks:
            return 0

        provider = self.get_embedding_provider()
        batch_size = max(1, provider.max_batch_size)
        batches = [chunks[i : i + batch_size] for i in range(0, len(chunks), batch_size)]

        def embed_batch(batch: Sequence[RAGChunk]) -> int:
            try:
                vectors = provider.embed_batch([chunk.content for chunk in batch])
                return self.store.update_chunk_embeddings(
                    {chunk.id: vector for chunk, vector in zip(batch, vectors)}
                )
            except (EmbeddingError, NotFoundError) as e:
                logger.warning(f"Embedding generation failed for {len(batch)} chunks: {e}")
                return 0

        workers = min(config.indexing.max_concurrent_batches, len(batches))
        if workers == 1:
            return sum(embed_batch(batch) for batch in batches)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rag-embed") as pool:
            return sum(pool.map(embed_batch, batches))

    # =========================================================================
    # Indexing
    # =========================================================================

    def index_document(
        self,
        title: str,
        content: str,
        project_id: Optional[str] = None,
        source_type: Union[SourceType, str] = SourceType.CUSTOM_DOCUMENT,
        source_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        skip_embedding: bool = False,
    ) -> RAGDocument:
        """
        Chunk, persist and (best-effort) embed a document.

        Args:
            title: Document title
            content: Document text
            project_id: Owning project, if any
            source_type: Origin of the text
            source_id: Id of the originating entity
            metadata: Free-form metadata rendered into context blocks
            skip_embedding: Persist chunks without computing embeddings

        Returns:
            The stored document, with chunk_count set

        Raises:
            ValidationError: If title or content is empty, or source_type unknown
        """
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Document title must not be empty")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Document content must not be empty")
        try:
            source = SourceType(source_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown source type: {source_type}") from exc

        config = self.store.get_config()
        spans = chunk_document(content, config.chunking)

        document = RAGDocument(
            title=title,
            content=content,
            project_id=project_id,
            source_type=source,
            source_id=source_id,
            metadata=dict(metadata or {}),
        )
        chunks = [
            RAGChunk(
                document_id=document.id,
                content=span.content,
                chunk_index=span.index,
                start_offset=span.start_offset,
                end_offset=span.end_offset,
                metadata={"document_title": title},
            )
            for span in spans
        ]
        saved = self.store.save_indexed_document(document, chunks)

        embedded = 0
        if chunks and not skip_embedding and config.indexing.auto_embed:
            embedded = self._embed_chunks(chunks, config)

        logger.info(
            f"Indexed document {saved.id} '{title}' "
            f"({saved.chunk_count} chunks, {embedded} embedded)"
        )
        return saved

    def index_project_context(
        self,
        project: Union[ProjectContext, Mapping[str, Any]],
        replace_existing: bool = False,
    ) -> ProjectIndexResult:
        """
        Index a project, its tasks and its significant notes.

        Args:
            project: ProjectContext or its JSON mapping
            replace_existing: Delete the project's existing documents first

        Returns:
            The created documents and their total chunk count
        """
        if not isinstance(project, ProjectContext):
            try:
                project = ProjectContext.model_validate(project)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid project context: {exc}") from exc

        config = self.store.get_config()
        if replace_existing:
            removed = self.store.delete_project_documents(project.id)
            logger.info(f"Removed {removed} existing documents of project {project.id}")

        documents: list[RAGDocument] = []

        title, content, metadata = render_project(project)
        documents.append(
            self.index_document(
                title,
                content,
                project_id=project.id,
                source_type=SourceType.PROJECT_CONTEXT,
                source_id=project.id,
                metadata=metadata,
            )
        )

        if config.indexing.include_tasks:
            for task in project.tasks:
                title, content, metadata = render_task(task)
                documents.append(
                    self.index_document(
                        title,
                        content,
                        project_id=project.id,
                        source_type=SourceType.TASK,
                        source_id=task.id,
                        metadata=metadata,
                    )
                )

        if config.indexing.include_notes:
            for note in project.notes:
                if len(note.content) <= config.indexing.min_note_length:
                    continue
                title, content, metadata = render_note(note)
                documents.append(
                    self.index_document(
                        title,
                        content,
                        project_id=project.id,
                        source_type=SourceType.NOTE,
                        source_id=note.id,
                        metadata=metadata,
                    )
                )

        total_chunks = sum(document.chunk_count for document in documents)
        logger.info(
            f"Indexed project {project.id}: {len(documents)} documents, {total_chunks} chunks"
        )
        return ProjectIndexResult(documents=documents, total_chunks=total_chunks)

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        project_id: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        search_type: Union[SearchType, str] = SearchType.HYBRID,
        vector_weight: Optional[float] = None,
    ) -> RAGQueryResult:
        """
        Search indexed chunks.

        Unset options fall back to the stored search config. Keyword search
        never touches the embedding provider. When the query cannot be
        embedded, vector search returns nothing and hybrid search keeps only
        the keyword contribution; embedding_provider is then "none".

        Raises:
            ValidationError: If the query is blank, search_type unknown, top_k
                below 1 or vector_weight outside [0, 1]
        """
        started = time.perf_counter()
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Search query must not be empty")
        try:
            mode = SearchType(search_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown search type: {search_type}") from exc

        config = self.store.get_config()
        top_k = top_k if top_k is not None else config.search.top_k
        min_score = min_score if min_score is not None else config.search.min_score
        if top_k < 1:
            raise ValidationError(f"top_k must be at least 1, got {top_k}")
        if vector_weight is not None and not 0.0 <= vector_weight <= 1.0:
            raise ValidationError(f"vector_weight must be between 0 and 1, got {vector_weight}")

        provider_name = "none"
        results: list[RAGSearchResult]

        if mode is SearchType.KEYWORD:
            results = self.store.keyword_search(query, project_id=project_id, limit=top_k)
        else:
            query_vector = None
            try:
                provider = self.get_embedding_provider()
                query_vector = provider.embed(query)
                provider_name = provider.name
            except EmbeddingError as e:
                logger.warning(f"Query embedding failed, degrading {mode.value} search: {e}")

            if mode is SearchType.VECTOR:
                results = []
                if query_vector is not None:
                    results = self.store.vector_search(
                        query_vector, project_id=project_id, top_k=top_k, min_score=min_score
                    )
            else:
                weight = (
                    vector_weight
                    if vector_weight is not None
                    else config.search.hybrid_vector_weight
                )
                results = self.store.hybrid_search(
                    query,
                    query_vector,
                    project_id=project_id,
                    top_k=top_k,
                    min_score=min_score,
                    vector_weight=weight,
                )

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"{mode.value} search for '{query}' found {len(results)} results in {elapsed_ms:.1f}ms")
        return RAGQueryResult(
            query=query,
            results=results,
            total_found=len(results),
            search_time_ms=elapsed_ms,
            embedding_provider=provider_name,
        )

    def build_context_from_search(
        self,
        query: str,
        max_context_length: int = 4000,
        include_metadata: bool = True,
        **search_options: Any,
    ) -> ContextResult:
        """
        Search and assemble a prompt context no longer than max_context_length.

        Each result becomes a block ``--- title ---\\ncontent\\n`` optionally
        followed by ``[key: value, ...]\\n``; blocks are joined with a newline.
        Assembly stops at the first block that would not fit.

        Args:
            query: Search query
            max_context_length: Upper bound on len(context)
            include_metadata: Append the document metadata line to each block
            **search_options: Forwarded to search()
        """
        search_result = self.search(query, **search_options)

        parts: list[str] = []
        sources: list[ContextSource] = []
        length = 0

        for result in search_result.results:
            entry = f"--- {result.document.title} ---\n{result.chunk.content}\n"
            if include_metadata:
                rendered = _render_metadata(result.document.metadata)
                if rendered:
                    entry += f"[{rendered}]\n"

            added = len(entry) + (1 if parts else 0)
            if length + added > max_context_length:
                break

            parts.append(entry)
            sources.append(
                ContextSource(
                    title=result.document.title,
                    score=result.score,
                    document_id=result.document.id,
                )
            )
            length += added

        return ContextResult(context="\n".join(parts), sources=sources, search_result=search_result)

    # =========================================================================
    # Document management
    # =========================================================================

    def get_document(self, document_id: str) -> RAGDocument:
        """
        Raises:
            NotFoundError: If the document does not exist
        """
        document = self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    def list_documents(
        self,
        project_id: Optional[str] = None,
        source_type: Optional[Union[SourceType, str]] = None,
        limit: int = 100,
    ) -> list[RAGDocument]:
        if source_type is not None:
            try:
                source_type = SourceType(source_type)
            except ValueError as exc:
                raise ValidationError(f"Unknown source type: {source_type}") from exc
        return self.store.list_documents(project_id=project_id, source_type=source_type, limit=limit)

    def delete_document(self, document_id: str) -> bool:
        deleted = self.store.delete_document(document_id)
        if deleted:
            logger.info(f"Deleted document {document_id}")
        return deleted

    def delete_project_documents(self, project_id: str) -> int:
        deleted = self.store.delete_project_documents(project_id)
        logger.info(f"Deleted {deleted} documents of project {project_id}")
        return deleted

    def reindex_document(self, document_id: str) -> RAGDocument:
        """
        Re-chunk a document with the current chunking config and re-embed it.

        The document keeps its id, source fields and created_at; its chunks
        are swapped atomically and updated_at is touched.

        Raises:
            NotFoundError: If the document does not exist
        """
        document = self.get_document(document_id)
        config = self.store.get_config()

        chunks = [
            RAGChunk(
                document_id=document.id,
                content=span.content,
                chunk_index=span.index,
                start_offset=span.start_offset,
                end_offset=span.end_offset,
                metadata={"document_title": document.title},
            )
            for span in chunk_document(document.content, config.chunking)
        ]
        updated = self.store.replace_chunks(document.id, chunks)

        if chunks and config.indexing.auto_embed:
            self._embed_chunks(chunks, config)

        logger.info(f"Reindexed document {document.id} ({updated.chunk_count} chunks)")
        return updated

    def update_document_embeddings(self, document_id: str) -> int:
        """
        Re-embed a document's existing chunks without re-chunking.

        Returns:
            Number of chunks whose embedding was written

        Raises:
            NotFoundError: If the document does not exist
        """
        self.get_document(document_id)
        chunks = self.store.get_chunks(document_id)
        return self._embed_chunks(chunks, self.store.get_config())

    def reindex_all(self, project_id: Optional[str] = None) -> ReindexResult:
        """Re-embed every document (optionally of one project)."""
        documents = self.store.list_documents(project_id=project_id, limit=REINDEX_ALL_LIMIT)
        config = self.store.get_config()

        chunks_updated = 0
        for document in documents:
            chunks_updated += self._embed_chunks(self.store.get_chunks(document.id), config)

        logger.info(f"Re-embedded {chunks_updated} chunks across {len(documents)} documents")
        return ReindexResult(documents_processed=len(documents), chunks_updated=chunks_updated)

    # =========================================================================
    # Stats, config and maintenance
    # =========================================================================

    def get_rag_stats(self) -> RAGStats:
        stats = self.store.get_stats()
        provider = self.get_embedding_provider()
        return RAGStats(
            total_documents=stats.total_documents,
            total_chunks=stats.total_chunks,
            indexed_chunks=stats.indexed_chunks,
            project_breakdown=stats.project_breakdown,
            embedding_provider=provider.name,
            embedding_dimensions=provider.dimensions,
        )

    def get_rag_config(self) -> RAGConfig:
        return self.store.get_config()

    def update_rag_config(self, updates: Mapping[str, Any]) -> RAGConfig:
        """
        Merge a partial config update; an embedding update resets the provider.

        Raises:
            ConfigError: If the update is invalid; the stored config is kept
        """
        config = self.store.update_config(updates)
        if updates.get("embedding") is not None:
            self.reset_embedding_provider()
        return config

    def rebuild_fts_index(self) -> int:
        return self.store.rebuild_fts()

    def vacuum_database(self) -> None:
        self.store.vacuum()

    def close(self) -> None:
        self.reset_embedding_provider()
        self.store.close()


def _render_metadata(metadata: Mapping[str, Any]) -> str:
    """Render metadata as ``key: value`` pairs, skipping None values."""
    pairs = []
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(item) for item in value)
        pairs.append(f"{key}: {value}")
    return ", ".join(pairs)
