"""
Storage backends for scoped memories.

Two capability tiers share one SQL schema:

* KeywordMemoryBackend: substring matching ordered by recency (sqlite,
  or postgres without pgvector).
* PgVectorMemoryBackend: cosine similarity via pgvector plus postgres
  full-text rank, blended into a hybrid score.

The tier is picked once at startup by detect_backend(); services branch on
``backend.supports_vectors`` and never inspect the database dialect again.
Every method takes an explicit session so callers control the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, func, literal, or_, update

import core.config as config
from core.models import EmbeddingStatus, Memory, PGVECTOR_AVAILABLE
from core.services.memory_shared import logger, utcnow

ScoredMemory = Tuple[Memory, Optional[float]]


@dataclass(frozen=True)
class HybridWeights:
    vector: float = config.HYBRID_VECTOR_WEIGHT
    keyword: float = config.HYBRID_KEYWORD_WEIGHT

    def blend(self, similarity: Optional[float], keyword_rank: float) -> float:
        """Hybrid score; a memory without an embedding contributes 0 on the vector side."""
        vector_term = similarity if similarity is not None else 0.0
        return self.vector * vector_term + self.keyword * (keyword_rank or 0.0)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SqlMemoryBackend:
    name = "sql"
    supports_vectors = False

    def __init__(self, session_factory, weights: Optional[HybridWeights] = None):
        self._session_factory = session_factory
        self.weights = weights or HybridWeights()

    def session(self):
        return self._session_factory()

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    def insert(self, db, memory: Memory) -> Memory:
        db.add(memory)
        db.flush()
        return memory

    def get(self, db, memory_id: str) -> Optional[Memory]:
        return db.query(Memory).filter(Memory.id == memory_id).first()

    def delete(self, db, memory: Memory) -> None:
        db.delete(memory)
        db.flush()

    def link_superseded(self, db, old_id: str, new_id: str) -> bool:
        """Point old_id at new_id. Only a row that is not yet superseded is touched."""
        result = db.execute(
            update(Memory)
            .where(Memory.id == old_id, Memory.superseded_by.is_(None))
            .values(superseded_by=new_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_embedding(self, db, memory_id: str, vector: Sequence[float], model: str) -> bool:
        result = db.execute(
            update(Memory)
            .where(Memory.id == memory_id)
            .values(
                embedding=list(vector),
                embedding_status=EmbeddingStatus.completed.value,
                embedding_model=model,
                embedding_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_embedding_status(
        self,
        db,
        memory_id: str,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        result = db.execute(
            update(Memory)
            .where(Memory.id == memory_id)
            .values(embedding_status=status, embedding_error=error)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def bump_usage(self, db, memory_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        ids = list(memory_ids)
        if not ids:
            return 0
        result = db.execute(
            update(Memory)
            .where(Memory.id.in_(ids))
            .values(
                recalled_count=Memory.recalled_count + 1,
                retrieval_count=Memory.retrieval_count + 1,
                last_retrieved_at=now or utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def missing_embeddings(
        self,
        db,
        limit: int,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[Memory]:
        """Oldest-first rows without a vector, continuing after a (created_at, id) cursor."""
        query = db.query(Memory).filter(Memory.embedding.is_(None))
        if after is not None:
            created_at, memory_id = after
            query = query.filter(
                or_(
                    Memory.created_at > created_at,
                    and_(Memory.created_at == created_at, Memory.id > memory_id),
                )
            )
        return query.order_by(Memory.created_at.asc(), Memory.id.asc()).limit(limit).all()

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    def _visible(self, db, criteria: Sequence, *columns):
        query = db.query(Memory, *columns) if columns else db.query(Memory)
        return query.filter(Memory.superseded_by.is_(None), *criteria)

    def recent(self, db, criteria: Sequence, limit: int) -> List[ScoredMemory]:
        rows = (
            self._visible(db, criteria)
            .order_by(Memory.created_at.desc(), Memory.id.desc())
            .limit(limit)
            .all()
        )
        return [(row, None) for row in rows]

    def keyword_search(self, db, criteria: Sequence, query: str, limit: int) -> List[ScoredMemory]:
        rows = (
            self._visible(db, criteria)
            .filter(Memory.content.ilike(_like_pattern(query), escape="\\"))
            .order_by(Memory.created_at.desc(), Memory.id.desc())
            .limit(limit)
            .all()
        )
        return [(row, None) for row in rows]

    def nearest(self, db, criteria: Sequence, vector: Sequence[float], limit: int = 1) -> List[ScoredMemory]:
        raise NotImplementedError(f"{self.name} backend has no vector capability")

    def hybrid_search(
        self,
        db,
        criteria: Sequence,
        query: str,
        vector: Sequence[float],
        limit: int,
    ) -> List[ScoredMemory]:
        raise NotImplementedError(f"{self.name} backend has no vector capability")


class KeywordMemoryBackend(SqlMemoryBackend):
    name = "keyword"
    supports_vectors = False


class PgVectorMemoryBackend(SqlMemoryBackend):
    name = "pgvector"
    supports_vectors = True

    def nearest(self, db, criteria: Sequence, vector: Sequence[float], limit: int = 1) -> List[ScoredMemory]:
        distance = Memory.embedding.cosine_distance(list(vector))
        rows = (
            self._visible(db, criteria, (literal(1.0) - distance).label("similarity"))
            .filter(Memory.embedding.isnot(None))
            .order_by(distance.asc())
            .limit(limit)
            .all()
        )
        return [(memory, float(similarity)) for memory, similarity in rows]

    def hybrid_search(
        self,
        db,
        criteria: Sequence,
        query: str,
        vector: Sequence[float],
        limit: int,
    ) -> List[ScoredMemory]:
        keyword_rank = func.coalesce(
            func.ts_rank(
                func.to_tsvector("english", Memory.content),
                func.plainto_tsquery("english", query),
            ),
            0.0,
        )
        similarity = case(
            (Memory.embedding.isnot(None), literal(1.0) - Memory.embedding.cosine_distance(list(vector))),
            else_=literal(0.0),
        )
        score = (
            literal(self.weights.vector) * similarity + literal(self.weights.keyword) * keyword_rank
        ).label("hybrid_score")
        rows = (
            self._visible(db, criteria, score)
            .order_by(score.desc(), Memory.created_at.desc())
            .limit(limit)
            .all()
        )
        return [(memory, float(value)) for memory, value in rows]


def detect_backend(engine, session_factory, weights: Optional[HybridWeights] = None) -> SqlMemoryBackend:
    """Pick the capability tier for this database, once."""
    if engine.dialect.name == "postgresql" and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        if PGVECTOR_AVAILABLE:
            logger.info("Memory backend: pgvector (hybrid retrieval enabled)")
            return PgVectorMemoryBackend(session_factory, weights)
        logger.warning("pgvector package missing; falling back to keyword retrieval")
    logger.info("Memory backend: keyword (substring retrieval)")
    return KeywordMemoryBackend(session_factory, weights)


__all__ = [
    "HybridWeights",
    "ScoredMemory",
    "SqlMemoryBackend",
    "KeywordMemoryBackend",
    "PgVectorMemoryBackend",
    "detect_backend",
]
