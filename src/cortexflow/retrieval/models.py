"""
Records exchanged with the retrieval engine.

Documents and chunks are what the store persists; the search, context and
statistics records are what the indexing service hands back to callers.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


class SourceType(str, enum.Enum):
    """
    Origin of an indexed document.

    PROJECT_CONTEXT: Project name, description, phase and tags
    TASK: A single task record
    NOTE: An agent note
    CUSTOM_DOCUMENT: Free text indexed directly by a caller
    """

    PROJECT_CONTEXT = "project_context"
    TASK = "task"
    NOTE = "note"
    CUSTOM_DOCUMENT = "custom_document"


class SearchType(str, enum.Enum):
    """Ranking mode used by a search."""

    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class RAGDocument:
    """A top-level indexed unit of source text."""

    title: str
    """Display title, used as the header of context blocks."""

    content: str
    """Full original text."""

    id: str = field(default_factory=new_id)
    """Opaque unique key."""

    project_id: Optional[str] = None
    """Back-reference to the owning project, if any (not owned)."""

    source_type: SourceType = SourceType.CUSTOM_DOCUMENT
    """What kind of entity the text came from."""

    source_id: Optional[str] = None
    """Id of the originating external entity."""

    metadata: dict[str, Any] = field(default_factory=dict)
    """Open key-value map, rendered into context blocks."""

    chunk_count: int = 0
    """Number of chunks currently owned by this document."""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RAGChunk:
    """A contiguous span of a document's content, the unit of search."""

    document_id: str
    """Owning document."""

    content: str
    """Span text (trimmed, so not always identical to the raw slice)."""

    chunk_index: int
    """0-based dense position within the document."""

    start_offset: int
    end_offset: int
    """Character offsets into the owning document's content."""

    id: str = field(default_factory=new_id)
    embedding: Optional[list[float]] = None
    """Vector, present only once successfully computed."""

    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass
class RAGSearchResult:
    """A ranked chunk together with its owning document."""

    chunk: RAGChunk
    document: RAGDocument
    score: float
    highlights: list[str] = field(default_factory=list)


@dataclass
class RAGQueryResult:
    """Outcome of a search call."""

    query: str
    results: list[RAGSearchResult]
    total_found: int
    search_time_ms: float
    embedding_provider: str
    """Name of the provider that embedded the query, or "none"."""


@dataclass
class StoreStats:
    """Counts reported by the store."""

    total_documents: int
    total_chunks: int
    indexed_chunks: int
    """Chunks with a non-null embedding."""

    project_breakdown: dict[str, int] = field(default_factory=dict)
    """Document count per project id ("standalone" for documents without one)."""


@dataclass
class RAGStats(StoreStats):
    """Store counts plus the active embedding provider."""

    embedding_provider: str = "none"
    embedding_dimensions: int = 0


@dataclass
class ContextSource:
    """A document that contributed a block to a built context."""

    title: str
    score: float
    document_id: str


@dataclass
class ContextResult:
    """A bounded prompt-context string and the sources it was built from."""

    context: str
    sources: list[ContextSource]
    search_result: RAGQueryResult


@dataclass
class ProjectIndexResult:
    """Documents created by indexing one project."""

    documents: list[RAGDocument]
    total_chunks: int


@dataclass
class ReindexResult:
    """Outcome of a batch re-embedding pass."""

    documents_processed: int
    chunks_updated: int
