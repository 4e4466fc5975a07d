"""
Hybrid retrieval over scoped memories.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.errors import EmbeddingProviderError
from core.models import Memory
from core.services.embedding_provider import EmbeddingProvider
from core.services.memory_backends import ScoredMemory, SqlMemoryBackend
from core.services.memory_scopes import ScopeFilter
from core.services.memory_shared import logger

MODE_RECENT = "recent"
MODE_HYBRID = "hybrid"
MODE_KEYWORD = "keyword"
MODE_KEYWORD_FALLBACK = "keyword_fallback"


@dataclass
class RecallResult:
    mode: str
    items: List[ScoredMemory] = field(default_factory=list)

    @property
    def memory_ids(self) -> List[str]:
        return [memory.id for memory, _ in self.items]


def metadata_matches_tags(memory_tags: Optional[Sequence[str]], tags: Optional[Sequence[str]]) -> bool:
    if not tags:
        return True
    return bool(set(memory_tags or []) & set(tags))


class HybridRetrieval:
    def __init__(
        self,
        backend: SqlMemoryBackend,
        provider: EmbeddingProvider,
        max_candidates: int = config.MAX_RESULT_LIMIT,
    ):
        self.backend = backend
        self.provider = provider
        self.max_candidates = max_candidates

    def _criteria(self, scope_filter: ScopeFilter, embedding_status: Optional[str], chat_id: Optional[str]):
        criteria = [scope_filter.clause()]
        if embedding_status == "none":
            criteria.append(Memory.embedding_status.is_(None))
        elif embedding_status:
            criteria.append(Memory.embedding_status == embedding_status)
        if chat_id:
            criteria.append(Memory.chat_id == chat_id)
        return criteria

    def _ranked(self, db, criteria, query: str, fetch: int) -> RecallResult:
        if not (self.backend.supports_vectors and self.provider.available):
            return RecallResult(MODE_KEYWORD, self.backend.keyword_search(db, criteria, query, fetch))
        try:
            vector = self.provider.embed(query)
            return RecallResult(MODE_HYBRID, self.backend.hybrid_search(db, criteria, query, vector, fetch))
        except (EmbeddingProviderError, ValueError) as exc:
            logger.info("hybrid_search_degraded", extra={"reason": "embedding", "error": str(exc)})
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("hybrid_search_degraded", extra={"reason": "query", "error": str(exc)})
        return RecallResult(MODE_KEYWORD_FALLBACK, self.backend.keyword_search(db, criteria, query, fetch))

    def search(
        self,
        db,
        scope_filter: ScopeFilter,
        *,
        query: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        embedding_status: Optional[str] = None,
        chat_id: Optional[str] = None,
        limit: int = config.DEFAULT_RECALL_LIMIT,
    ) -> RecallResult:
        """
        Visible, non-superseded memories for the caller.

        No query returns the most recent first. With a query, the vector tier
        ranks by the weighted blend of cosine similarity and full-text rank;
        the keyword tier, or a failed query embedding, falls back to substring
        matching ordered by recency. Tags are matched afterwards (any tag).
        """
        if scope_filter.empty:
            return RecallResult(MODE_RECENT if not query else MODE_KEYWORD)

        criteria = self._criteria(scope_filter, embedding_status, chat_id)
        fetch = max(limit, self.max_candidates) if tags else limit

        if not query:
            result = RecallResult(MODE_RECENT, self.backend.recent(db, criteria, fetch))
        else:
            result = self._ranked(db, criteria, query, fetch)

        if tags:
            result.items = [item for item in result.items if metadata_matches_tags(item[0].tags, tags)]
        result.items = result.items[:limit]
        return result


__all__ = [
    "HybridRetrieval",
    "RecallResult",
    "metadata_matches_tags",
    "MODE_RECENT",
    "MODE_HYBRID",
    "MODE_KEYWORD",
    "MODE_KEYWORD_FALLBACK",
]
