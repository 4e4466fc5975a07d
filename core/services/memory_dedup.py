"""
Dedup on write.

Before a memory is inserted, the engine looks for the closest existing,
non-superseded memory in the same scope. A match above the similarity
threshold is superseded by the new memory in the same transaction as the
insert. Detection and insert are not serialized, so two near-identical
concurrent writes can both survive.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.errors import EmbeddingProviderError, NotFound, ValidationIssue
from core.models import Memory
from core.services.embedding_provider import EmbeddingProvider
from core.services.memory_backends import SqlMemoryBackend
from core.services.memory_scopes import PERSONAL, ScopeFilter
from core.services.memory_shared import logger


@dataclass(frozen=True)
class DedupOutcome:
    supersedes_id: Optional[str] = None
    similarity: Optional[float] = None
    explicit: bool = False
    embedding: Optional[List[float]] = None


class DedupEngine:
    def __init__(
        self,
        backend: SqlMemoryBackend,
        provider: EmbeddingProvider,
        threshold: float = config.DEDUP_SIMILARITY_THRESHOLD,
    ):
        self.backend = backend
        self.provider = provider
        self.threshold = threshold

    @property
    def enabled(self) -> bool:
        return self.backend.supports_vectors and self.provider.available

    def _embed(self, content: str) -> Optional[List[float]]:
        try:
            return self.provider.embed(content)
        except (EmbeddingProviderError, ValueError) as exc:
            logger.info("dedup_embedding_unavailable", extra={"error": str(exc)})
            return None

    def _explicit(self, db, supersedes: str, content: str, visibility: Optional[ScopeFilter]) -> DedupOutcome:
        target = self.backend.get(db, supersedes)
        if target is None or (visibility is not None and not visibility.allows(target)):
            raise NotFound(f"Memory not found: {supersedes}", field="supersedes")
        if target.superseded_by is not None:
            raise ValidationIssue(
                f"Memory {supersedes} is already superseded by {target.superseded_by}",
                field="supersedes",
                error_type="already_superseded",
            )
        embedding = self._embed(content) if self.enabled else None
        return DedupOutcome(supersedes_id=target.id, explicit=True, embedding=embedding)

    def detect(
        self,
        db,
        *,
        content: str,
        author_id: str,
        scope: str,
        scope_id: Optional[str],
        supersedes: Optional[str] = None,
        visibility: Optional[ScopeFilter] = None,
    ) -> DedupOutcome:
        """
        Decide what the new memory supersedes, if anything.

        An explicit `supersedes` id is honoured on every backend. Similarity
        search needs vectors and a provider; any failure there is logged and
        the write goes ahead without dedup.
        """
        if supersedes:
            return self._explicit(db, supersedes, content, visibility)
        if not self.enabled:
            return DedupOutcome()

        embedding = self._embed(content)
        if embedding is None:
            return DedupOutcome()

        criteria = [Memory.scope == scope]
        if scope_id is None:
            criteria.append(Memory.scope_id.is_(None))
        else:
            criteria.append(Memory.scope_id == scope_id)
        if scope == PERSONAL:
            criteria.append(Memory.author_id == author_id)

        try:
            matches = self.backend.nearest(db, criteria, embedding, limit=1)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("dedup_skipped", extra={"reason": "query_failed", "error": str(exc)})
            return DedupOutcome(embedding=embedding)

        if matches:
            match, similarity = matches[0]
            if similarity is not None and similarity > self.threshold:
                logger.info(
                    "dedup_match",
                    extra={"memory_id": match.id, "similarity": round(similarity, 4)},
                )
                return DedupOutcome(supersedes_id=match.id, similarity=similarity, embedding=embedding)
        return DedupOutcome(embedding=embedding)

    def link(self, db, outcome: DedupOutcome, new_id: str) -> bool:
        """Apply the supersede link inside the caller's insert transaction."""
        if not outcome.supersedes_id:
            return False
        linked = self.backend.link_superseded(db, outcome.supersedes_id, new_id)
        if linked:
            return True
        if outcome.explicit:
            raise ValidationIssue(
                f"Memory {outcome.supersedes_id} was superseded concurrently",
                field="supersedes",
                error_type="already_superseded",
            )
        logger.info("dedup_link_lost", extra={"memory_id": outcome.supersedes_id})
        return False


__all__ = ["DedupOutcome", "DedupEngine"]
