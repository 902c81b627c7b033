"""
CortexFlow: Retrieval engine for a multi-agent task-coordination tool

This package indexes documents, project descriptions, task records and agent
notes, and answers relevance queries by vector similarity, keyword match, or
a blend of both. Results can be assembled into bounded-length context strings
for prompting.

Key Components:
    - retrieval: Chunking, embedding providers, SQLite store and orchestration
    - cli: Maintenance command-line tool (cortexflow-rag)

Example:
    >>> from cortexflow.retrieval.resources import get_rag_service
    >>> service = get_rag_service()
    >>> service.index_document("Auth design", "Users log in with OAuth tokens.")
    >>> print(service.build_context_from_search("how do users log in?").context)
"""

__version__ = "0.1.0"

from cortexflow.config import settings

__all__ = [
    "__version__",
    "settings",
]
