"""
Retrieval engine components.

Components:
    - chunker: Split document text into offset-tracked chunks
    - embeddings: Local and remote embedding providers
    - store: SQLite document/chunk store with vector, keyword and hybrid search
    - service: Indexing and query orchestration
"""

from cortexflow.retrieval.chunker import ChunkSpan, chunk_document
from cortexflow.retrieval.embeddings import EmbeddingProvider, create_embedding_provider
from cortexflow.retrieval.rag_config import RAGConfig
from cortexflow.retrieval.service import RAGService
from cortexflow.retrieval.store import RAGStore

__all__ = [
    "ChunkSpan",
    "chunk_document",
    "EmbeddingProvider",
    "create_embedding_provider",
    "RAGConfig",
    "RAGService",
    "RAGStore",
]
