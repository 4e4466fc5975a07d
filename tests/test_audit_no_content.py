import json
import os

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.audit import list_audit_events, log_event
from core.audit_constants import (
    EVENT_MEMORY_CREATED,
    EVENT_MEMORY_DELETED,
    EVENT_MEMORY_RECALLED,
)
from core.models import AuditEvent


@pytest.mark.parametrize("key", ["content", "query_text", "raw_text", "Embedding-Vector"])
def test_audit_rejects_content_metadata(db_session, key):
    before = db_session.query(AuditEvent).count()
    with pytest.raises(ValueError):
        log_event(
            db_session,
            event_type=EVENT_MEMORY_CREATED,
            actor_type="system",
            target_ids=["m-1"],
            metadata={key: "should_not_log"},
        )
    db_session.rollback()
    after = db_session.query(AuditEvent).count()
    assert after == before


def test_audit_rejects_long_strings(db_session):
    before = db_session.query(AuditEvent).count()
    with pytest.raises(ValueError):
        log_event(
            db_session,
            event_type=EVENT_MEMORY_CREATED,
            actor_type="system",
            target_ids=["m-1"],
            metadata={"note": "x" * 600},
        )
    db_session.rollback()
    after = db_session.query(AuditEvent).count()
    assert after == before


def test_audit_rejects_unknown_actor(db_session):
    with pytest.raises(ValueError):
        log_event(db_session, event_type=EVENT_MEMORY_CREATED, actor_type="robot", target_ids=["m-1"])


def test_memory_operations_audit_without_text(keyword_service, db_session):
    stored = keyword_service.remember("alice", "wifi password is hunter2", tags=["net"])
    memory_id = stored["memory"]["id"]
    keyword_service.recall("alice", query="hunter2")
    keyword_service.forget("alice", memory_id)

    events = list_audit_events(db_session, user_id="alice", limit=10)["events"]
    event_types = [event["event_type"] for event in events]
    assert EVENT_MEMORY_CREATED in event_types
    assert EVENT_MEMORY_RECALLED in event_types
    assert EVENT_MEMORY_DELETED in event_types

    for event in events:
        assert event["target_ids"] == [memory_id]
        assert "hunter2" not in json.dumps(event)


def test_list_audit_events_paginates(keyword_service, db_session):
    for n in range(3):
        keyword_service.remember("alice", f"note {n}")

    first = list_audit_events(db_session, user_id="alice", event_type=EVENT_MEMORY_CREATED, limit=2)
    assert first["count"] == 2
    assert first["next_cursor"] is not None

    rest = list_audit_events(
        db_session,
        user_id="alice",
        event_type=EVENT_MEMORY_CREATED,
        limit=2,
        cursor=first["next_cursor"],
    )
    assert rest["count"] == 1
    assert rest["next_cursor"] is None
    seen = {event["event_id"] for event in first["events"] + rest["events"]}
    assert len(seen) == 3
