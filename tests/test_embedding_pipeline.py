import os
import threading
from unittest.mock import MagicMock

import httpx
import redis
from sqlalchemy.exc import OperationalError

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.audit_constants import EVENT_EMBEDDING_FAILED
from core.config import MAX_EMBEDDING_TEXT_LENGTH
from core.models import AuditEvent, Memory
from core.services.embedding_jobs import InProcessJobDispatcher, RedisJobDispatcher, RetryPolicy
from core.services.embedding_provider import (
    DisabledEmbeddingProvider,
    EmbeddingCircuitBreaker,
    OpenAIEmbeddingProvider,
)
from core.services.memory_embeddings import UNAVAILABLE_PREFIX
from core.validators import validate_embedding_text


def _row(db_session, memory_id):
    db_session.expire_all()
    return db_session.query(Memory).filter(Memory.id == memory_id).one()


def test_remember_embeds_inline_when_provider_is_up(vector_service, provider, db_session):
    stored = vector_service.remember("alice", "fresh memory")["memory"]
    assert stored["embedding_status"] == "completed"
    assert stored["embedding_model"] == provider.model
    assert _row(db_session, stored["id"]).embedding is not None


def test_failed_embedding_gives_up_after_five_attempts(service_factory, provider, db_session):
    release = threading.Event()
    delays = []

    def gated_sleep(seconds):
        delays.append(seconds)
        release.wait(5)

    pool = InProcessJobDispatcher(max_workers=1, retry_policy=RetryPolicy(5, 60), sleep=gated_sleep)
    service = service_factory(dispatcher=pool)
    provider.fail = True
    try:
        stored = service.remember("alice", "provider is down")
        assert stored["status"] == "stored"
        assert stored["memory"]["embedding_status"] == "pending"
        assert len(delays) <= 1

        release.set()
        pool.drain(timeout=10)
    finally:
        pool.shutdown(wait=True)

    assert delays == [60, 120, 240, 480]
    # one inline attempt during write plus five job attempts
    assert len(provider.calls) == 6

    row = _row(db_session, stored["memory"]["id"])
    assert row.embedding_status == "failed"
    assert "provider rate limited" in row.embedding_error
    assert row.embedding is None

    event = db_session.query(AuditEvent).filter(AuditEvent.event_type == EVENT_EMBEDDING_FAILED).one()
    assert event.target_ids == [row.id]
    assert event.metadata_["attempts"] == 5


def test_retry_succeeds_after_transient_failure(vector_service, provider, dispatcher, retry_delays, db_session):
    provider.fail_on.add("flaky text")

    original_embed = provider.embed

    def embed(text):
        if text == "flaky text" and len(provider.calls) >= 2:
            provider.fail_on.discard(text)
        return original_embed(text)

    provider.embed = embed
    stored = vector_service.remember("alice", "flaky text")["memory"]
    dispatcher.drain()

    assert retry_delays == [60]
    assert _row(db_session, stored["id"]).embedding_status == "completed"


def test_unreachable_queue_marks_memory_failed(service_factory, provider, db_session):
    client = MagicMock()
    client.lpush.side_effect = redis.ConnectionError("connection refused")
    service = service_factory(dispatcher=RedisJobDispatcher(client, queue_key="test:jobs"))
    provider.fail_on.add("queued text")

    stored = service.remember("alice", "queued text")
    assert stored["status"] == "stored"
    assert stored["memory"]["embedding_status"] == "failed"
    assert stored["memory"]["embedding_error"].startswith(UNAVAILABLE_PREFIX)

    row = _row(db_session, stored["memory"]["id"])
    assert row.embedding_status == "failed"
    assert row.embedding_error.startswith(UNAVAILABLE_PREFIX)


def test_unconfigured_provider_marks_memory_failed(service_factory):
    service = service_factory(provider=DisabledEmbeddingProvider())
    stored = service.remember("alice", "nobody will embed me")
    assert stored["memory"]["embedding_status"] == "failed"
    assert stored["memory"]["embedding_error"].startswith(UNAVAILABLE_PREFIX)


def test_null_embedding_from_provider_still_stores_memory(service_factory, dispatcher, retry_delays, db_session):
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": [{"embedding": None}]}))
    )
    provider = OpenAIEmbeddingProvider(
        "test-key",
        api_url="https://embeddings.test/v1/embeddings",
        model="test-embed",
        dimension=16,
        circuit_breaker=EmbeddingCircuitBreaker(failure_threshold=100, cooldown_seconds=60),
        client=client,
    )
    service = service_factory(provider=provider)

    stored = service.remember("alice", "a memory")
    assert stored["status"] == "stored"
    assert stored["memory"]["embedding_status"] == "pending"

    dispatcher.drain()
    row = _row(db_session, stored["memory"]["id"])
    assert row.content == "a memory"
    assert row.embedding_status == "failed"
    assert "malformed response" in row.embedding_error
    assert retry_delays == [60, 120, 240, 480]


def test_oversized_embedding_text_fails_without_retry(vector_service, provider, dispatcher, retry_delays, db_session):
    original_embed = provider.embed

    def embed(text):
        validate_embedding_text(text)
        return original_embed(text)

    provider.embed = embed
    stored = vector_service.remember("alice", "x" * (MAX_EMBEDDING_TEXT_LENGTH + 1))
    assert stored["status"] == "stored"

    dispatcher.drain()
    assert retry_delays == []
    assert dispatcher.stats()["failed"] == 1
    assert _row(db_session, stored["memory"]["id"]).embedding_status == "failed"


def test_keyword_backend_leaves_status_unset(keyword_service):
    stored = keyword_service.remember("alice", "plain row")["memory"]
    assert stored["embedding_status"] is None


def test_deleted_memory_job_is_noop(vector_service, provider, dispatcher):
    from core.services.embedding_jobs import EmbeddingJob

    vector_service.pipeline.process(EmbeddingJob(memory_id="gone"))
    assert provider.calls == []


def test_backfill_embeds_rows_missing_vectors(vector_service, provider, dispatcher, db_session):
    provider.fail = True
    ids = [vector_service.remember("alice", f"backlog {n}")["memory"]["id"] for n in range(3)]
    dispatcher.drain()
    assert all(_row(db_session, memory_id).embedding_status == "failed" for memory_id in ids)

    provider.fail = False
    stats = vector_service.pipeline.backfill(batch_size=2)
    assert stats == {"status": "ok", "processed": 3, "backfilled": 3, "failed": 0}
    for memory_id in ids:
        row = _row(db_session, memory_id)
        assert row.embedding_status == "completed"
        assert row.embedding_error is None

    assert vector_service.pipeline.backfill()["processed"] == 0


def test_backfill_records_item_failures_and_limits(vector_service, provider, dispatcher, db_session):
    provider.fail = True
    first = vector_service.remember("alice", "first backlog")["memory"]["id"]
    vector_service.remember("alice", "second backlog")
    dispatcher.drain()

    provider.fail = False
    provider.fail_on.add("first backlog")
    partial = vector_service.pipeline.backfill(max_items=1)
    assert partial["status"] == "partial"
    assert partial["failed"] == 1
    assert _row(db_session, first).embedding_status == "failed"

    cancel = threading.Event()
    cancel.set()
    assert vector_service.pipeline.backfill(cancel_event=cancel)["status"] == "cancelled"


def test_backfill_continues_past_unexpected_item_errors(vector_service, provider, dispatcher, db_session, monkeypatch):
    provider.fail = True
    ids = [vector_service.remember("alice", f"stuck {n}")["memory"]["id"] for n in range(3)]
    dispatcher.drain()
    provider.fail = False

    original_embed = provider.embed

    def embed(text):
        if text == "stuck 0":
            raise RuntimeError("unexpected payload shape")
        return original_embed(text)

    backend = vector_service.pipeline.backend
    original_set = backend.set_embedding

    def set_embedding(db, memory_id, vector, model):
        if memory_id == ids[1]:
            raise OperationalError("UPDATE memories", {}, Exception("database is locked"))
        return original_set(db, memory_id, vector, model)

    provider.embed = embed
    monkeypatch.setattr(backend, "set_embedding", set_embedding)

    stats = vector_service.pipeline.backfill()
    assert stats == {"status": "ok", "processed": 3, "backfilled": 1, "failed": 2}

    first, second, third = (_row(db_session, memory_id) for memory_id in ids)
    assert first.embedding_status == "failed"
    assert "unexpected payload shape" in first.embedding_error
    assert second.embedding_status == "failed"
    assert second.embedding is None
    assert "database is locked" in second.embedding_error
    assert third.embedding_status == "completed"


def test_backfill_skipped_without_vectors(keyword_service):
    assert keyword_service.pipeline.backfill() == {"status": "skipped", "reason": "vector_disabled"}
