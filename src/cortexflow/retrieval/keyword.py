"""
In-memory BM25 keyword index over stored chunk content.

The store owns one KeywordIndex, marks it stale on every chunk write and
rebuilds it from the database on the next keyword query.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import numpy as np
from rank_bm25 import BM25Plus

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens."""
    return _TOKEN.findall(text.lower())


@dataclass
class KeywordEntry:
    """One indexed chunk."""

    chunk_id: str
    project_id: Optional[str]
    tokens: list[str]


class KeywordIndex:
    """
    BM25Plus ranking over chunk tokens.

    A chunk is a candidate only if it shares at least one token with the
    query; candidate scores are divided by the best candidate's score so the
    top match scores 1.0.
    """

    def __init__(self) -> None:
        self._entries: list[KeywordEntry] = []
        self._token_sets: list[set[str]] = []
        self._bm25: Optional[BM25Plus] = None
        self.stale = True

    @property
    def size(self) -> int:
        return len(self._entries)

    def invalidate(self) -> None:
        self.stale = True

    def build(self, rows: list[tuple[str, Optional[str], str]]) -> None:
        """
        Rebuild the index.

        Args:
            rows: (chunk_id, project_id, content) for every stored chunk
        """
        self._entries = [
            KeywordEntry(chunk_id, project_id, tokenize(content))
            for chunk_id, project_id, content in rows
        ]
        self._token_sets = [set(entry.tokens) for entry in self._entries]
        # BM25Plus needs at least one non-empty document
        if self._entries and any(entry.tokens for entry in self._entries):
            self._bm25 = BM25Plus([entry.tokens for entry in self._entries])
        else:
            self._bm25 = None
        self.stale = False
        logger.debug(f"Keyword index rebuilt ({len(self._entries)} chunks)")

    def search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[tuple[str, float]]:
        """
        Rank chunks against a query.

        Args:
            query: Free-text query
            project_id: Restrict to chunks of this project
            limit: Maximum number of results

        Returns:
            (chunk_id, score) pairs, best first, scores in (0, 1]
        """
        query_tokens = tokenize(query)
        if not query_tokens or self._bm25 is None:
            return []

        wanted = set(query_tokens)
        candidates = [
            i
            for i, (entry, token_set) in enumerate(zip(self._entries, self._token_sets))
            if token_set & wanted and (project_id is None or entry.project_id == project_id)
        ]
        if not candidates:
            return []

        scores = np.asarray(self._bm25.get_batch_scores(query_tokens, candidates), dtype=float)
        best = float(scores.max())
        if best <= 0:
            normalized = np.ones_like(scores)
        else:
            normalized = scores / best

        # Stable sort keeps corpus order (chunk insertion order) among ties
        order = np.argsort(-normalized, kind="stable")[:limit]
        return [(self._entries[candidates[i]].chunk_id, float(normalized[i])) for i in order]
