"""
Memory service: remember, recall, forget, promote and list_scopes.

Every operation returns a plain dict. Caller errors (validation, permission,
not found) come back as {"status": "error", ...} payloads via service_tool;
embedding failures never fail an operation and only show on embedding_status.
"""

from __future__ import annotations

from typing import List, Optional

from core.context import RequestContext
from core.services.embedding_jobs import JobDispatcher, build_dispatcher
from core.services.embedding_provider import EmbeddingProvider, build_embedding_provider
from core.services.memory_backends import HybridWeights, SqlMemoryBackend, detect_backend
from core.services.memory_dedup import DedupEngine
from core.services.memory_embeddings import EmbeddingPipeline
from core.services.memory_scopes import MembershipDirectory, ScopeResolver, SqlMembershipDirectory
from core.services.memory_search import HybridRetrieval
from core.services.memory_shared import (
    DEDUP_SIMILARITY_THRESHOLD,
    DEFAULT_RECALL_LIMIT,
    MAX_LIST_ITEM_LENGTH,
    MAX_QUERY_LENGTH,
    MAX_RESULT_LIMIT,
    MAX_SHORT_TEXT_LENGTH,
    MAX_TAG_ITEMS,
    MAX_TEXT_LENGTH,
    serialize_memory,
    service_tool,
    _validate_classification,
    _validate_embedding_status_filter,
    _validate_limit,
    _validate_optional_text,
    _validate_required_text,
    _validate_scope,
    _validate_string_list,
)
from core.services.memory_store import MemoryStore


def _validate_user_id(user_id: str) -> None:
    _validate_required_text(user_id, "user_id", MAX_SHORT_TEXT_LENGTH)


def _validate_scope_args(scope: Optional[str], scope_id: Optional[str], field: str = "scope") -> None:
    _validate_scope(scope, field)
    _validate_optional_text(scope_id, "scope_id" if field == "scope" else "target_scope_id", MAX_SHORT_TEXT_LENGTH)


class MemoryService:
    def __init__(
        self,
        backend: SqlMemoryBackend,
        resolver: ScopeResolver,
        pipeline: EmbeddingPipeline,
        dedup: DedupEngine,
        retrieval: HybridRetrieval,
    ):
        self.backend = backend
        self.resolver = resolver
        self.pipeline = pipeline
        self.dedup = dedup
        self.retrieval = retrieval
        self.store = MemoryStore(backend, resolver, pipeline, dedup)

    @property
    def capabilities(self) -> dict:
        return {
            "backend": self.backend.name,
            "vector_search": self.backend.supports_vectors,
            "embedding_provider": self.pipeline.provider.name,
            "embeddings_enabled": self.pipeline.enabled,
            "dispatcher": self.pipeline.dispatcher.name,
            "durable_jobs": self.pipeline.dispatcher.durable,
        }

    @service_tool
    def remember(
        self,
        user_id: str,
        content: str,
        tags: Optional[List[str]] = None,
        scope: Optional[str] = None,
        scope_id: Optional[str] = None,
        classification: Optional[str] = None,
        supersedes: Optional[str] = None,
        chat_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> dict:
        """
        Store a memory in the caller's effective scope.

        Args:
            user_id: Author of the memory
            content: Memory text
            tags: Optional labels, matched by recall(tags=...)
            scope: personal | team | application | global (defaults from the credential)
            scope_id: Team or application id for team/application scope
            classification: foundational | tactical | observational
            supersedes: Id of a memory this one replaces
            chat_id: Conversation the memory was written in

        Returns:
            status "stored", the memory, and merged_from when a near-duplicate
            in the same scope was superseded.
        """
        _validate_user_id(user_id)
        _validate_required_text(content, "content", MAX_TEXT_LENGTH)
        _validate_string_list(tags, "tags", MAX_TAG_ITEMS, MAX_LIST_ITEM_LENGTH)
        _validate_scope_args(scope, scope_id)
        _validate_classification(classification)
        _validate_optional_text(supersedes, "supersedes", MAX_SHORT_TEXT_LENGTH)
        _validate_optional_text(chat_id, "chat_id", MAX_SHORT_TEXT_LENGTH)

        result = self.store.create(
            user_id,
            content,
            tags=tags,
            scope=scope,
            scope_id=scope_id,
            classification=classification,
            chat_id=chat_id,
            supersedes=supersedes,
            context=context,
        )
        payload = {"status": "stored", "memory": result.memory}
        if result.merged_from:
            payload["merged_from"] = result.merged_from
            payload["similarity"] = round(result.similarity, 4)
        if result.superseded:
            payload["superseded"] = result.superseded
        return payload

    @service_tool
    def recall(
        self,
        user_id: str,
        query: Optional[str] = None,
        tags: Optional[List[str]] = None,
        scope: Optional[str] = None,
        scope_id: Optional[str] = None,
        embedding_status: Optional[str] = None,
        chat_id: Optional[str] = None,
        limit: int = DEFAULT_RECALL_LIMIT,
        context: Optional[RequestContext] = None,
    ) -> dict:
        """
        Retrieve visible, non-superseded memories.

        Without a query the newest come first. With a query, ranking is
        hybrid when vectors are available and substring/recency otherwise.

        Usage counters in the result (recalled_count, retrieval_count,
        last_retrieved_at) are the values read before this recall. The
        increment is written after the rows are serialized and shows on the
        next read.
        """
        _validate_user_id(user_id)
        _validate_optional_text(query, "query", MAX_QUERY_LENGTH)
        _validate_string_list(tags, "tags", MAX_TAG_ITEMS, MAX_LIST_ITEM_LENGTH)
        _validate_scope_args(scope, scope_id)
        _validate_embedding_status_filter(embedding_status)
        _validate_optional_text(chat_id, "chat_id", MAX_SHORT_TEXT_LENGTH)
        _validate_limit(limit, "limit", MAX_RESULT_LIMIT)

        query = query.strip() if query else None
        scope_filter = self.resolver.read_filter(user_id, scope, scope_id, context)

        db = self.backend.session()
        try:
            result = self.retrieval.search(
                db,
                scope_filter,
                query=query,
                tags=tags,
                embedding_status=embedding_status,
                chat_id=chat_id,
                limit=limit,
            )
            memories = [serialize_memory(memory, score) for memory, score in result.items]
        finally:
            db.close()

        self.store.record_retrieval(user_id, result.memory_ids, mode=result.mode, context=context)
        return {
            "status": "ok",
            "mode": result.mode,
            "count": len(memories),
            "memories": memories,
        }

    @service_tool
    def forget(
        self,
        user_id: str,
        memory_id: str,
        context: Optional[RequestContext] = None,
    ) -> dict:
        """Delete a memory the caller is allowed to delete."""
        _validate_user_id(user_id)
        _validate_required_text(memory_id, "memory_id", MAX_SHORT_TEXT_LENGTH)

        self.store.delete(user_id, memory_id, context)
        return {"status": "deleted", "id": memory_id}

    @service_tool
    def promote(
        self,
        user_id: str,
        memory_id: str,
        target_scope: str,
        target_scope_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> dict:
        """Copy a memory into another scope the caller may write to."""
        _validate_user_id(user_id)
        _validate_required_text(memory_id, "memory_id", MAX_SHORT_TEXT_LENGTH)
        _validate_required_text(target_scope, "target_scope", MAX_SHORT_TEXT_LENGTH)
        _validate_scope_args(target_scope, target_scope_id, field="target_scope")

        result = self.store.promote(user_id, memory_id, target_scope, target_scope_id, context)
        return {"status": "promoted", "memory": result.memory}

    @service_tool
    def list_scopes(
        self,
        user_id: str,
        context: Optional[RequestContext] = None,
    ) -> dict:
        """Scopes the caller can see: personal, their teams and applications, global."""
        _validate_user_id(user_id)
        scopes = self.resolver.list_scopes(user_id, context)
        return {"status": "ok", "count": len(scopes), "scopes": scopes}

    def shutdown(self) -> None:
        self.pipeline.dispatcher.shutdown(wait=False)
        self.pipeline.provider.close()


def build_memory_service(
    engine,
    session_factory,
    *,
    provider: Optional[EmbeddingProvider] = None,
    dispatcher: Optional[JobDispatcher] = None,
    directory: Optional[MembershipDirectory] = None,
    backend: Optional[SqlMemoryBackend] = None,
    weights: Optional[HybridWeights] = None,
    dedup_threshold: float = DEDUP_SIMILARITY_THRESHOLD,
) -> MemoryService:
    """Wire the service once at startup; tests inject their own parts."""
    backend = backend or detect_backend(engine, session_factory, weights)
    provider = provider or build_embedding_provider()
    dispatcher = dispatcher or build_dispatcher()
    resolver = ScopeResolver(directory or SqlMembershipDirectory(session_factory))
    pipeline = EmbeddingPipeline(backend, provider, dispatcher)
    return MemoryService(
        backend=backend,
        resolver=resolver,
        pipeline=pipeline,
        dedup=DedupEngine(backend, provider, threshold=dedup_threshold),
        retrieval=HybridRetrieval(backend, provider),
    )


__all__ = ["MemoryService", "build_memory_service"]
