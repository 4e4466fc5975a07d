"""
Memory lifecycle: create, delete, promote and usage tracking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from core.audit import log_event
from core.audit_constants import (
    EVENT_MEMORY_CREATED,
    EVENT_MEMORY_DELETED,
    EVENT_MEMORY_PROMOTED,
    EVENT_MEMORY_RECALLED,
    EVENT_MEMORY_SUPERSEDED,
)
from core.context import RequestContext, resolve_request_id
from core.errors import NotFound, ValidationIssue
from core.models import EmbeddingStatus, Memory, _uuid_default
from core.services.memory_backends import SqlMemoryBackend
from core.services.memory_dedup import DedupEngine, DedupOutcome
from core.services.memory_embeddings import EmbeddingPipeline
from core.services.memory_scopes import ScopeResolver
from core.services.memory_shared import logger, serialize_memory, utcnow


@dataclass
class WriteResult:
    memory: dict
    merged_from: Optional[str] = None
    superseded: Optional[str] = None
    similarity: Optional[float] = None


def _actor_type(context: Optional[RequestContext]) -> str:
    if context is not None and context.source == "mcp":
        return "mcp"
    return "user"


class MemoryStore:
    def __init__(
        self,
        backend: SqlMemoryBackend,
        resolver: ScopeResolver,
        pipeline: EmbeddingPipeline,
        dedup: DedupEngine,
    ):
        self.backend = backend
        self.resolver = resolver
        self.pipeline = pipeline
        self.dedup = dedup

    def _initial_embedding_state(self, memory: Memory, embedding: Optional[Sequence[float]], model: Optional[str]) -> None:
        if not self.backend.supports_vectors:
            return
        if embedding is not None:
            memory.embedding = list(embedding)
            memory.embedding_status = EmbeddingStatus.completed.value
            memory.embedding_model = model
        else:
            memory.embedding_status = EmbeddingStatus.pending.value

    def _schedule_if_pending(self, payload: dict) -> dict:
        if payload.get("embedding_status") != EmbeddingStatus.pending.value:
            return payload
        status, error = self.pipeline.schedule(payload["id"])
        payload["embedding_status"] = status
        payload["embedding_error"] = error
        return payload

    def _detect(self, user_id: str, content: str, scope: str, scope_id: Optional[str],
                supersedes: Optional[str], context: Optional[RequestContext]) -> DedupOutcome:
        visibility = self.resolver.read_filter(user_id, context=context) if supersedes else None
        db = self.backend.session()
        try:
            return self.dedup.detect(
                db,
                content=content,
                author_id=user_id,
                scope=scope,
                scope_id=scope_id,
                supersedes=supersedes,
                visibility=visibility,
            )
        finally:
            db.close()

    def create(
        self,
        user_id: str,
        content: str,
        *,
        tags: Optional[List[str]] = None,
        scope: Optional[str] = None,
        scope_id: Optional[str] = None,
        classification: Optional[str] = None,
        chat_id: Optional[str] = None,
        supersedes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> WriteResult:
        resolved = self.resolver.resolve_and_authorize(user_id, scope, scope_id, context)
        outcome = self._detect(user_id, content, resolved.scope, resolved.scope_id, supersedes, context)

        db = self.backend.session()
        try:
            memory = Memory(
                id=_uuid_default(),
                author_id=user_id,
                content=content,
                tags=list(tags or []),
                classification=classification,
                chat_id=chat_id,
                scope=resolved.scope,
                scope_id=resolved.scope_id,
                created_at=utcnow(),
            )
            self._initial_embedding_state(memory, outcome.embedding, self.pipeline.provider.model)
            self.backend.insert(db, memory)
            linked = self.dedup.link(db, outcome, memory.id)

            request_id = resolve_request_id(context)
            log_event(
                db,
                event_type=EVENT_MEMORY_CREATED,
                actor_type=_actor_type(context),
                actor_id=user_id,
                user_id=user_id,
                scope=memory.scope,
                scope_id=memory.scope_id,
                target_ids=[memory.id],
                count_affected=1,
                request_id=request_id,
                metadata={"tag_count": len(memory.tags), "classification": classification},
            )
            if linked:
                log_event(
                    db,
                    event_type=EVENT_MEMORY_SUPERSEDED,
                    actor_type=_actor_type(context),
                    actor_id=user_id,
                    user_id=user_id,
                    scope=memory.scope,
                    scope_id=memory.scope_id,
                    target_ids=[outcome.supersedes_id, memory.id],
                    count_affected=1,
                    reason="explicit" if outcome.explicit else "similarity",
                    request_id=request_id,
                    metadata={"similarity": round(outcome.similarity, 4) if outcome.similarity else None},
                )
            db.commit()
            payload = serialize_memory(memory)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        result = WriteResult(memory=self._schedule_if_pending(payload))
        if linked and outcome.explicit:
            result.superseded = outcome.supersedes_id
        elif linked:
            result.merged_from = outcome.supersedes_id
            result.similarity = outcome.similarity
        return result

    def delete(self, user_id: str, memory_id: str, context: Optional[RequestContext] = None) -> None:
        db = self.backend.session()
        try:
            memory = self.backend.get(db, memory_id)
            if memory is None:
                raise NotFound(f"Memory not found: {memory_id}", field="memory_id")
            self.resolver.authorize_delete(memory, user_id, context)
            log_event(
                db,
                event_type=EVENT_MEMORY_DELETED,
                actor_type=_actor_type(context),
                actor_id=user_id,
                user_id=user_id,
                scope=memory.scope,
                scope_id=memory.scope_id,
                target_ids=[memory.id],
                count_affected=1,
                request_id=resolve_request_id(context),
                metadata={"author_id": memory.author_id},
            )
            self.backend.delete(db, memory)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def promote(
        self,
        user_id: str,
        memory_id: str,
        target_scope: str,
        target_scope_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> WriteResult:
        """Copy a memory into another scope. The source is left untouched."""
        if not target_scope:
            raise ValidationIssue("target_scope is required", field="target_scope", error_type="required")
        visibility = self.resolver.read_filter(user_id, context=context)

        db = self.backend.session()
        try:
            source = self.backend.get(db, memory_id)
            if source is None or not visibility.allows(source):
                raise NotFound(f"Memory not found: {memory_id}", field="memory_id")
            resolved = self.resolver.resolve_and_authorize(
                user_id,
                target_scope,
                target_scope_id,
                context,
                field_name="target_scope",
            )
            copy = Memory(
                id=_uuid_default(),
                author_id=user_id,
                content=source.content,
                tags=list(source.tags or []),
                classification=source.classification,
                scope=resolved.scope,
                scope_id=resolved.scope_id,
                promoted_from=source.id,
                created_at=utcnow(),
            )
            if source.embedding is not None:
                copy.embedding = list(source.embedding)
                copy.embedding_status = source.embedding_status
                copy.embedding_model = source.embedding_model
            else:
                self._initial_embedding_state(copy, None, None)
            self.backend.insert(db, copy)
            log_event(
                db,
                event_type=EVENT_MEMORY_PROMOTED,
                actor_type=_actor_type(context),
                actor_id=user_id,
                user_id=user_id,
                scope=copy.scope,
                scope_id=copy.scope_id,
                target_ids=[source.id, copy.id],
                count_affected=1,
                request_id=resolve_request_id(context),
                metadata={"from_scope": source.scope, "from_scope_id": source.scope_id},
            )
            db.commit()
            payload = serialize_memory(copy)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return WriteResult(memory=self._schedule_if_pending(payload))

    def record_retrieval(
        self,
        user_id: str,
        memory_ids: Sequence[str],
        *,
        mode: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> bool:
        """
        Bump usage counters and audit each returned memory.

        Runs in its own transaction after the read; a failure is logged and
        never surfaces to the caller.
        """
        ids = list(memory_ids)
        if not ids:
            return True
        db = self.backend.session()
        try:
            self.backend.bump_usage(db, ids, utcnow())
            request_id = resolve_request_id(context)
            for rank, memory_id in enumerate(ids, start=1):
                log_event(
                    db,
                    event_type=EVENT_MEMORY_RECALLED,
                    actor_type=_actor_type(context),
                    actor_id=user_id,
                    user_id=user_id,
                    target_ids=[memory_id],
                    count_affected=1,
                    request_id=request_id,
                    metadata={"mode": mode, "rank": rank},
                )
            db.commit()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("retrieval_usage_update_failed", extra={"count": len(ids), "error": str(exc)})
            return False
        finally:
            db.close()


__all__ = ["MemoryStore", "WriteResult"]
