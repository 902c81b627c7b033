"""
Retrieval store backed by SQLite through SQLAlchemy.

Persists documents, chunks (with optional embeddings) and the RAG
configuration, and answers vector, keyword and hybrid searches.

Tables:
    - rag_documents: one row per indexed document
    - rag_chunks: chunks, FK to rag_documents with ON DELETE CASCADE
    - rag_config: the single persisted RAGConfig (key "main")

Vector search is a linear cosine scan over the stored embeddings; keyword
search ranks chunks with BM25 (see `cortexflow.retrieval.keyword`).

Usage:
    store = RAGStore(settings.rag_db_path)
    store.save_indexed_document(document, chunks)
    results = store.hybrid_search("login flow", query_vector, top_k=5)
"""

import json
import logging
import re
import threading
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import numpy as np
from numpy.typing import ArrayLike
from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from cortexflow.exceptions import NotFoundError
from cortexflow.retrieval.keyword import KeywordIndex, tokenize
from cortexflow.retrieval.models import (
    RAGChunk,
    RAGDocument,
    RAGSearchResult,
    SourceType,
    StoreStats,
    utcnow,
)
from cortexflow.retrieval.rag_config import RAGConfig, merge_config

logger = logging.getLogger(__name__)

CONFIG_KEY = "main"
STANDALONE_PROJECT = "standalone"
HIGHLIGHT_LENGTH = 200
SNIPPET_RADIUS = 60
MAX_HIGHLIGHTS = 3


# =============================================================================
# ORM models
# =============================================================================

class Base(DeclarativeBase):
    """Declarative base for the retrieval tables."""

    pass


class DocumentRecord(Base):
    __tablename__ = "rag_documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[Optional[str]] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ChunkRecord(Base):
    __tablename__ = "rag_chunks"
    __table_args__ = (Index("ix_rag_chunks_document_index", "document_id", "chunk_index"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("rag_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(JSON(none_as_null=True))
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ConfigRecord(Base):
    __tablename__ = "rag_config"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# =============================================================================
# Conversions
# =============================================================================

def _aware(value: datetime) -> datetime:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_document(record: DocumentRecord) -> RAGDocument:
    return RAGDocument(
        id=record.id,
        project_id=record.project_id,
        source_type=SourceType(record.source_type),
        source_id=record.source_id,
        title=record.title,
        content=record.content,
        metadata=dict(record.meta or {}),
        chunk_count=record.chunk_count,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _to_chunk(record: ChunkRecord) -> RAGChunk:
    return RAGChunk(
        id=record.id,
        document_id=record.document_id,
        content=record.content,
        embedding=list(record.embedding) if record.embedding is not None else None,
        chunk_index=record.chunk_index,
        start_offset=record.start_offset,
        end_offset=record.end_offset,
        metadata=dict(record.meta or {}),
        created_at=_aware(record.created_at),
    )


def _document_record(document: RAGDocument) -> DocumentRecord:
    return DocumentRecord(
        id=document.id,
        project_id=document.project_id,
        source_type=SourceType(document.source_type).value,
        source_id=document.source_id,
        title=document.title,
        content=document.content,
        meta=dict(document.metadata),
        chunk_count=0,
        created_at=document.created_at,
        updated_at=document.updated_at,
    )


def _chunk_record(chunk: RAGChunk) -> ChunkRecord:
    return ChunkRecord(
        id=chunk.id,
        document_id=chunk.document_id,
        content=chunk.content,
        embedding=_vector_list(chunk.embedding) if chunk.embedding is not None else None,
        chunk_index=chunk.chunk_index,
        start_offset=chunk.start_offset,
        end_offset=chunk.end_offset,
        meta=dict(chunk.metadata),
        created_at=chunk.created_at,
    )


def _vector_list(vector: ArrayLike) -> list[float]:
    return np.asarray(vector, dtype=float).ravel().tolist()


# =============================================================================
# Scoring helpers
# =============================================================================

def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """
    Cosine similarity of two vectors.

    Returns:
        dot(a, b) / (|a| * |b|), or 0.0 when either vector has zero magnitude
        or the dimensions differ
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def _max_normalize(scores: dict[str, float]) -> dict[str, float]:
    """Scale scores into [0, 1] by the best score; negative scores clip to 0."""
    clipped = {key: max(value, 0.0) for key, value in scores.items()}
    high = max(clipped.values(), default=0.0)
    if high <= 0.0:
        return {key: 0.0 for key in clipped}
    return {key: value / high for key, value in clipped.items()}


def build_highlights(content: str, query: Optional[str] = None) -> list[str]:
    """
    Snippets of content around matched query terms.

    Falls back to the first 200 characters when no query term occurs.
    """
    snippets: list[str] = []
    if query:
        seen: set[str] = set()
        for term in tokenize(query):
            if term in seen or len(snippets) >= MAX_HIGHLIGHTS:
                continue
            seen.add(term)
            match = re.search(rf"\b{re.escape(term)}\b", content, re.IGNORECASE)
            if match is None:
                continue
            start = max(0, match.start() - SNIPPET_RADIUS)
            end = min(len(content), match.end() + SNIPPET_RADIUS)
            snippet = content[start:end].strip()
            if start > 0:
                snippet = "..." + snippet
            if end < len(content):
                snippet = snippet + "..."
            if snippet not in snippets:
                snippets.append(snippet)

    if snippets:
        return snippets
    if len(content) > HIGHLIGHT_LENGTH:
        return [content[:HIGHLIGHT_LENGTH] + "..."]
    return [content]


def _rank_key(result: RAGSearchResult) -> tuple[float, int, datetime]:
    return (-result.score, result.chunk.chunk_index, result.chunk.created_at)


# =============================================================================
# Store
# =============================================================================

class RAGStore:
    """
    SQLite-backed document, chunk and config store.

    All operations are serialised by a store-wide re-entrant lock, so a
    single instance can be shared between the indexing service's embedding
    workers.

    Example:
        >>> store = RAGStore()  # in-memory
        >>> store.save_document(RAGDocument(title="Doc", content="Some text"))
        >>> store.get_stats().total_documents
        1
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        """
        Open (and create if needed) the store.

        Args:
            db_path: SQLite file path; None keeps the store in memory
        """
        self.db_path = Path(db_path) if db_path is not None else None
        self._lock = threading.RLock()
        self._keyword_index = KeywordIndex()
        self.engine = self._create_engine()
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        logger.debug(f"RAG store opened at {self.db_path or ':memory:'}")

    def _create_engine(self) -> Engine:
        if self.db_path is None:
            engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_engine(
                f"sqlite:///{self.db_path}",
                connect_args={"check_same_thread": False},
            )

        use_wal = self.db_path is not None

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if use_wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def save_document(self, document: RAGDocument) -> RAGDocument:
        """Insert or replace a document row; its chunk_count is recomputed."""
        with self._lock, self._sessions.begin() as session:
            session.merge(_document_record(document))
            session.flush()
            self._refresh_chunk_count(session, document.id)
            return _to_document(session.get(DocumentRecord, document.id))

    def get_document(self, document_id: str) -> Optional[RAGDocument]:
        with self._lock, self._sessions() as session:
            record = session.get(DocumentRecord, document_id)
            return _to_document(record) if record is not None else None

    def update_document(
        self,
        document_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> RAGDocument:
        """
        Update document fields in place; chunks are left untouched.

        Raises:
            NotFoundError: If the document does not exist
        """
        with self._lock, self._sessions.begin() as session:
            record = session.get(DocumentRecord, document_id)
            if record is None:
                raise NotFoundError("Document", document_id)
            if title is not None:
                record.title = title
            if content is not None:
                record.content = content
            if metadata is not None:
                record.meta = dict(metadata)
            record.updated_at = utcnow()
            session.flush()
            return _to_document(record)

    def delete_document(self, document_id: str) -> bool:
        """
        Delete a document and its chunks in one transaction.

        Returns:
            False if the document did not exist
        """
        with self._lock, self._sessions.begin() as session:
            session.execute(delete(ChunkRecord).where(ChunkRecord.document_id == document_id))
            result = session.execute(delete(DocumentRecord).where(DocumentRecord.id == document_id))
            deleted = result.rowcount > 0
        if deleted:
            self._keyword_index.invalidate()
        return deleted

    def delete_project_documents(self, project_id: str) -> int:
        """Delete every document of a project; returns the number removed."""
        with self._lock, self._sessions.begin() as session:
            document_ids = select(DocumentRecord.id).where(DocumentRecord.project_id == project_id)
            session.execute(delete(ChunkRecord).where(ChunkRecord.document_id.in_(document_ids)))
            result = session.execute(
                delete(DocumentRecord).where(DocumentRecord.project_id == project_id)
            )
            count = result.rowcount
        if count:
            self._keyword_index.invalidate()
        return count

    def list_documents(
        self,
        project_id: Optional[str] = None,
        source_type: Optional[SourceType | str] = None,
        limit: int = 100,
    ) -> list[RAGDocument]:
        """Documents ordered by most recently updated first."""
        stmt = select(DocumentRecord)
        if project_id is not None:
            stmt = stmt.where(DocumentRecord.project_id == project_id)
        if source_type is not None:
            stmt = stmt.where(DocumentRecord.source_type == SourceType(source_type).value)
        stmt = stmt.order_by(DocumentRecord.updated_at.desc(), DocumentRecord.created_at.desc())
        stmt = stmt.limit(limit)

        with self._lock, self._sessions() as session:
            return [_to_document(record) for record in session.scalars(stmt)]

    # -------------------------------------------------------------------------
    # Chunks
    # -------------------------------------------------------------------------

    def save_chunks(self, chunks: Sequence[RAGChunk]) -> None:
        """
        Insert chunks and recompute the owning documents' chunk counts.

        Raises:
            NotFoundError: If an owning document does not exist
        """
        if not chunks:
            return
        with self._lock, self._sessions.begin() as session:
            document_ids = {chunk.document_id for chunk in chunks}
            for document_id in document_ids:
                if session.get(DocumentRecord, document_id) is None:
                    raise NotFoundError("Document", document_id)
            session.add_all(_chunk_record(chunk) for chunk in chunks)
            session.flush()
            for document_id in document_ids:
                self._refresh_chunk_count(session, document_id)
        self._keyword_index.invalidate()

    def get_chunks(self, document_id: str) -> list[RAGChunk]:
        stmt = (
            select(ChunkRecord)
            .where(ChunkRecord.document_id == document_id)
            .order_by(ChunkRecord.chunk_index)
        )
        with self._lock, self._sessions() as session:
            return [_to_chunk(record) for record in session.scalars(stmt)]

    def get_chunk(self, chunk_id: str) -> Optional[RAGChunk]:
        with self._lock, self._sessions() as session:
            record = session.get(ChunkRecord, chunk_id)
            return _to_chunk(record) if record is not None else None

    def delete_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document; returns the number removed."""
        with self._lock, self._sessions.begin() as session:
            result = session.execute(delete(ChunkRecord).where(ChunkRecord.document_id == document_id))
            self._refresh_chunk_count(session, document_id)
            count = result.rowcount
        self._keyword_index.invalidate()
        return count

    def replace_chunks(self, document_id: str, chunks: Sequence[RAGChunk]) -> RAGDocument:
        """
        Atomically swap a document's chunks and touch its updated_at.

        Raises:
            NotFoundError: If the document does not exist
        """
        with self._lock, self._sessions.begin() as session:
            record = session.get(DocumentRecord, document_id)
            if record is None:
                raise NotFoundError("Document", document_id)
            session.execute(delete(ChunkRecord).where(ChunkRecord.document_id == document_id))
            session.add_all(_chunk_record(chunk) for chunk in chunks)
            record.updated_at = utcnow()
            session.flush()
            self._refresh_chunk_count(session, document_id)
            document = _to_document(record)
        self._keyword_index.invalidate()
        return document

    def save_indexed_document(
        self,
        document: RAGDocument,
        chunks: Sequence[RAGChunk],
    ) -> RAGDocument:
        """Persist a document and its chunks in one transaction."""
        with self._lock, self._sessions.begin() as session:
            record = session.merge(_document_record(document))
            session.flush()
            session.add_all(_chunk_record(chunk) for chunk in chunks)
            session.flush()
            self._refresh_chunk_count(session, document.id)
            saved = _to_document(record)
        self._keyword_index.invalidate()
        return saved

    def update_chunk_embedding(self, chunk_id: str, embedding: ArrayLike) -> None:
        """
        Store the embedding of one chunk.

        Raises:
            NotFoundError: If the chunk does not exist
        """
        self.update_chunk_embeddings({chunk_id: embedding})

    def update_chunk_embeddings(self, embeddings: Mapping[str, ArrayLike]) -> int:
        """
        Store several chunk embeddings in one transaction.

        Raises:
            NotFoundError: If any chunk does not exist (nothing is written)
        """
        if not embeddings:
            return 0
        with self._lock, self._sessions.begin() as session:
            for chunk_id, vector in embeddings.items():
                result = session.execute(
                    update(ChunkRecord)
                    .where(ChunkRecord.id == chunk_id)
                    .values(embedding=_vector_list(vector))
                )
                if result.rowcount == 0:
                    raise NotFoundError("Chunk", chunk_id)
        return len(embeddings)

    def _refresh_chunk_count(self, session: Session, document_id: str) -> None:
        count = session.scalar(
            select(func.count()).select_from(ChunkRecord).where(ChunkRecord.document_id == document_id)
        )
        session.execute(
            update(DocumentRecord)
            .where(DocumentRecord.id == document_id)
            .values(chunk_count=count or 0)
            .execution_options(synchronize_session="fetch")
        )

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def vector_search(
        self,
        query_vector: ArrayLike,
        project_id: Optional[str] = None,
        top_k: int = 5,
        min_score: float = 0.3,
    ) -> list[RAGSearchResult]:
        """
        Rank embedded chunks by cosine similarity to a query vector.

        Chunks without an embedding (or of a different dimensionality) never
        match. Ties are broken by chunk_index, then created_at.
        """
        stmt = (
            select(ChunkRecord, DocumentRecord)
            .join(DocumentRecord, ChunkRecord.document_id == DocumentRecord.id)
            .where(ChunkRecord.embedding.is_not(None))
        )
        if project_id is not None:
            stmt = stmt.where(DocumentRecord.project_id == project_id)

        query = np.asarray(query_vector, dtype=np.float64).ravel()
        results: list[RAGSearchResult] = []
        with self._lock, self._sessions() as session:
            for chunk_record, document_record in session.execute(stmt):
                score = cosine_similarity(query, chunk_record.embedding)
                if score < min_score:
                    continue
                chunk = _to_chunk(chunk_record)
                results.append(
                    RAGSearchResult(
                        chunk=chunk,
                        document=_to_document(document_record),
                        score=score,
                        highlights=build_highlights(chunk.content),
                    )
                )

        results.sort(key=_rank_key)
        return results[:top_k]

    def keyword_search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[RAGSearchResult]:
        """BM25 ranking of chunks sharing at least one token with the query."""
        with self._lock:
            if self._keyword_index.stale:
                self.rebuild_fts()
            ranked = self._keyword_index.search(query, project_id=project_id, limit=limit)
            if not ranked:
                return []

            scores = dict(ranked)
            stmt = (
                select(ChunkRecord, DocumentRecord)
                .join(DocumentRecord, ChunkRecord.document_id == DocumentRecord.id)
                .where(ChunkRecord.id.in_(list(scores)))
            )
            with self._sessions() as session:
                rows = {chunk.id: (chunk, document) for chunk, document in session.execute(stmt)}

        results: list[RAGSearchResult] = []
        for chunk_id, score in ranked:
            if chunk_id not in rows:
                continue
            chunk_record, document_record = rows[chunk_id]
            chunk = _to_chunk(chunk_record)
            results.append(
                RAGSearchResult(
                    chunk=chunk,
                    document=_to_document(document_record),
                    score=score,
                    highlights=build_highlights(chunk.content, query),
                )
            )
        return results

    def hybrid_search(
        self,
        query: str,
        query_vector: Optional[ArrayLike] = None,
        project_id: Optional[str] = None,
        top_k: int = 5,
        min_score: float = 0.3,
        vector_weight: float = 0.7,
    ) -> list[RAGSearchResult]:
        """
        Blend vector and keyword rankings.

        Each side contributes a candidate pool of 2 * top_k, normalised to
        [0, 1] by its best score; the combined score is
        vector_weight * vector + (1 - vector_weight) * keyword, with a missing
        side contributing 0. Without a query vector the keyword score is used
        as is. min_score applies to the final score.
        """
        pool = top_k * 2
        vector_results: list[RAGSearchResult] = []
        if query_vector is not None:
            vector_results = self.vector_search(
                query_vector, project_id=project_id, top_k=pool, min_score=-1.0
            )
        keyword_results = self.keyword_search(query, project_id=project_id, limit=pool)

        vector_scores = _max_normalize({r.chunk.id: r.score for r in vector_results})
        keyword_scores = _max_normalize({r.chunk.id: r.score for r in keyword_results})

        by_id: dict[str, RAGSearchResult] = {}
        for result in vector_results + keyword_results:
            by_id.setdefault(result.chunk.id, result)

        combined: list[RAGSearchResult] = []
        for chunk_id, result in by_id.items():
            if query_vector is None:
                score = keyword_scores[chunk_id]
            else:
                score = (
                    vector_weight * vector_scores.get(chunk_id, 0.0)
                    + (1.0 - vector_weight) * keyword_scores.get(chunk_id, 0.0)
                )
            if score < min_score:
                continue
            combined.append(
                RAGSearchResult(
                    chunk=result.chunk,
                    document=result.document,
                    score=score,
                    highlights=build_highlights(result.chunk.content, query),
                )
            )

        combined.sort(key=_rank_key)
        return combined[:top_k]

    def rebuild_fts(self) -> int:
        """Rebuild the keyword index from stored chunk content."""
        stmt = (
            select(ChunkRecord.id, DocumentRecord.project_id, ChunkRecord.content)
            .join(DocumentRecord, ChunkRecord.document_id == DocumentRecord.id)
            .order_by(DocumentRecord.created_at, ChunkRecord.document_id, ChunkRecord.chunk_index)
        )
        with self._lock, self._sessions() as session:
            rows = [tuple(row) for row in session.execute(stmt)]
            self._keyword_index.build(rows)
        logger.info(f"Keyword index rebuilt over {len(rows)} chunks")
        return len(rows)

    # -------------------------------------------------------------------------
    # Stats and config
    # -------------------------------------------------------------------------

    def get_stats(self) -> StoreStats:
        with self._lock, self._sessions() as session:
            total_documents = session.scalar(select(func.count()).select_from(DocumentRecord)) or 0
            total_chunks = session.scalar(select(func.count()).select_from(ChunkRecord)) or 0
            indexed_chunks = session.scalar(
                select(func.count())
                .select_from(ChunkRecord)
                .where(ChunkRecord.embedding.is_not(None))
            ) or 0
            breakdown_rows = session.execute(
                select(DocumentRecord.project_id, func.count()).group_by(DocumentRecord.project_id)
            ).all()

        project_breakdown = {
            (project_id if project_id is not None else STANDALONE_PROJECT): count
            for project_id, count in breakdown_rows
        }
        return StoreStats(
            total_documents=total_documents,
            total_chunks=total_chunks,
            indexed_chunks=indexed_chunks,
            project_breakdown=project_breakdown,
        )

    def get_config(self) -> RAGConfig:
        """The persisted config, or defaults if none has been saved."""
        with self._lock, self._sessions() as session:
            record = session.get(ConfigRecord, CONFIG_KEY)
            if record is None:
                return RAGConfig()
            return RAGConfig.model_validate(json.loads(record.value))

    def update_config(self, updates: Mapping[str, Any]) -> RAGConfig:
        """
        Merge a partial update into the persisted config.

        Raises:
            ConfigError: If the update is invalid; the stored config is kept
        """
        with self._lock:
            merged = merge_config(self.get_config(), updates)
            payload = json.dumps(merged.model_dump(mode="json"))
            with self._sessions.begin() as session:
                session.merge(ConfigRecord(key=CONFIG_KEY, value=payload, updated_at=utcnow()))
        logger.info(f"RAG config updated: sections={sorted(k for k, v in updates.items() if v is not None)}")
        return merged

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def vacuum(self) -> None:
        with self._lock:
            with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                conn.exec_driver_sql("VACUUM")
        logger.info("RAG database vacuumed")

    def close(self) -> None:
        with self._lock:
            self.engine.dispose()
        logger.debug("RAG store closed")
