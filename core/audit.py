"""
Audit trail for memory operations.

Events record who did what to which memory ids, never the text involved:
metadata keys that look like they carry content, vectors or queries are
refused outright.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, or_

from core.models import AuditEvent

ACTOR_TYPES = ("user", "system", "mcp")
TARGET_TYPES = ("memory",)

# Any metadata key containing one of these fragments is rejected.
FORBIDDEN_KEY_FRAGMENTS = ("content", "embedding", "query", "raw_text")
MAX_METADATA_STRING_LENGTH = 500
MAX_TARGET_ID_LENGTH = 200


def _forbidden(key: str) -> bool:
    normalized = key.strip().lower().replace("-", "_")
    return any(fragment in normalized for fragment in FORBIDDEN_KEY_FRAGMENTS)


def _check_metadata(value: Any, path: str = "metadata") -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path} keys must be strings")
            if _forbidden(key):
                raise ValueError(f"metadata key '{key}' is not allowed")
            _check_metadata(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_metadata(item, path)
    elif isinstance(value, str) and len(value) > MAX_METADATA_STRING_LENGTH:
        raise ValueError(f"metadata value too long at '{path}'")


def _check_target_ids(target_ids: Iterable[str]) -> list[str]:
    if isinstance(target_ids, str) or not isinstance(target_ids, (list, tuple)):
        raise ValueError("target_ids must be a list of memory ids")
    ids = list(target_ids)
    for item in ids:
        if not isinstance(item, str) or len(item) > MAX_TARGET_ID_LENGTH:
            raise ValueError("target_ids must contain memory id strings")
    return ids


def log_event(
    db,
    *,
    event_type: str,
    actor_type: str,
    target_ids: list[str],
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    scope: Optional[str] = None,
    scope_id: Optional[str] = None,
    target_type: str = "memory",
    count_affected: Optional[int] = None,
    reason: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEvent:
    """
    Add an audit row to the caller's session; it commits with the operation.

    Raises ValueError for unknown actor/target types, malformed ids, or
    metadata that could leak memory text.
    """
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("event_type must be a non-empty string")
    if actor_type not in ACTOR_TYPES:
        raise ValueError(f"actor_type must be one of: {'|'.join(ACTOR_TYPES)}")
    if target_type not in TARGET_TYPES:
        raise ValueError(f"target_type must be one of: {'|'.join(TARGET_TYPES)}")
    if metadata is not None:
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be a dict")
        _check_metadata(metadata)

    event = AuditEvent(
        created_at=datetime.utcnow(),
        event_type=event_type,
        actor_type=actor_type,
        actor_id=actor_id,
        user_id=user_id,
        scope=scope,
        scope_id=scope_id,
        target_type=target_type,
        target_ids=_check_target_ids(target_ids),
        count_affected=count_affected,
        reason=reason,
        request_id=request_id,
        metadata_=metadata,
    )
    db.add(event)
    return event


def serialize_audit_event(event: AuditEvent) -> dict:
    return {
        "event_id": event.event_id,
        "created_at": event.created_at.isoformat() if event.created_at else None,
        "event_type": event.event_type,
        "actor_type": event.actor_type,
        "actor_id": event.actor_id,
        "user_id": event.user_id,
        "scope": event.scope,
        "scope_id": event.scope_id,
        "target_ids": event.target_ids,
        "count_affected": event.count_affected,
        "reason": event.reason,
        "request_id": event.request_id,
        "metadata": event.metadata_,
    }


def list_audit_events(
    db,
    *,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    scope: Optional[str] = None,
    scope_id: Optional[str] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> dict:
    """Newest first. Pass the returned next_cursor to continue."""
    if limit <= 0:
        raise ValueError("limit must be positive")

    filters = []
    if user_id:
        filters.append(AuditEvent.user_id == user_id)
    if event_type:
        filters.append(AuditEvent.event_type == event_type)
    if scope:
        filters.append(AuditEvent.scope == scope)
    if scope_id:
        filters.append(AuditEvent.scope_id == scope_id)

    if cursor:
        anchor = db.query(AuditEvent.created_at, AuditEvent.event_id).filter(AuditEvent.event_id == cursor).first()
        if anchor is not None:
            filters.append(
                or_(
                    AuditEvent.created_at < anchor.created_at,
                    and_(AuditEvent.created_at == anchor.created_at, AuditEvent.event_id < anchor.event_id),
                )
            )

    rows = (
        db.query(AuditEvent)
        .filter(*filters)
        .order_by(AuditEvent.created_at.desc(), AuditEvent.event_id.desc())
        .limit(limit)
        .all()
    )
    return {
        "status": "ok",
        "count": len(rows),
        "events": [serialize_audit_event(row) for row in rows],
        "next_cursor": rows[-1].event_id if len(rows) == limit else None,
    }


__all__ = [
    "AuditEvent",
    "log_event",
    "list_audit_events",
    "serialize_audit_event",
    "ACTOR_TYPES",
    "TARGET_TYPES",
]
