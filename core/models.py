"""
Scoped memory database models
PostgreSQL + pgvector schema, with a JSON fallback for sqlite
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, JSON, event, inspect
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

import core.config as config
from core.errors import ValidationIssue

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except Exception:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND_EFFECTIVE == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON(none_as_null=True)

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON


def _uuid_default() -> str:
    return str(uuid.uuid4())

Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class MemoryScope(str, PyEnum):
    personal = "personal"
    team = "team"
    application = "application"
    global_ = "global"


class EmbeddingStatus(str, PyEnum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class Classification(str, PyEnum):
    foundational = "foundational"
    tactical = "tactical"
    observational = "observational"


class TeamRole(str, PyEnum):
    admin = "admin"
    member = "member"


SCOPES = tuple(item.value for item in MemoryScope)
SCOPES_WITH_ID = (MemoryScope.team.value, MemoryScope.application.value)
EMBEDDING_STATUSES = tuple(item.value for item in EmbeddingStatus)
CLASSIFICATIONS = tuple(item.value for item in Classification)


def _sql_in(values) -> str:
    return ", ".join(f"'{value}'" for value in values)


# =============================================================================
# Directory (users, teams, applications)
# Owned by the administration layer; read-only here.
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(100), primary_key=True)
    name = Column(String(255))
    email = Column(String(255))
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class Team(Base):
    __tablename__ = "teams"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    created_by = Column(String(100), ForeignKey("users.id"))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)


class TeamMembership(Base):
    __tablename__ = "team_memberships"

    team_id = Column(String(100), ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(100), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String(20), nullable=False, default=TeamRole.member.value)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            f"role IN ({_sql_in(item.value for item in TeamRole)})",
            name="ck_team_memberships_role",
        ),
        Index("ix_team_memberships_user_id", "user_id"),
    )


class Application(Base):
    __tablename__ = "applications"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    team_id = Column(String(100), ForeignKey("teams.id", ondelete="SET NULL"))
    created_by = Column(String(100), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("ix_applications_created_by", "created_by"),
        Index("ix_applications_team_id", "team_id"),
    )


# =============================================================================
# Memories
# =============================================================================

class Memory(Base):
    __tablename__ = "memories"

    id = Column(String(36), primary_key=True, default=_uuid_default)
    author_id = Column(String(100), nullable=False)
    content = Column(Text, nullable=False)
    tags = Column(JSON_TYPE, default=list, nullable=False)
    classification = Column(String(20))
    chat_id = Column(String(100))
    scope = Column(String(20), nullable=False, default=MemoryScope.personal.value)
    scope_id = Column(String(100))

    embedding = Column(EMBEDDING_COLUMN_TYPE)
    embedding_status = Column(String(20))  # NULL until the pipeline touches the row
    embedding_model = Column(String(100))
    embedding_error = Column(Text)

    promoted_from = Column(String(36))
    superseded_by = Column(String(36))

    recalled_count = Column(Integer, default=0, nullable=False)
    retrieval_count = Column(Integer, default=0, nullable=False)
    last_retrieved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(f"scope IN ({_sql_in(SCOPES)})", name="ck_memories_scope"),
        CheckConstraint(
            f"(scope IN ({_sql_in(SCOPES_WITH_ID)}) AND scope_id IS NOT NULL) "
            f"OR (scope NOT IN ({_sql_in(SCOPES_WITH_ID)}) AND scope_id IS NULL)",
            name="ck_memories_scope_id",
        ),
        CheckConstraint(
            f"embedding_status IS NULL OR embedding_status IN ({_sql_in(EMBEDDING_STATUSES)})",
            name="ck_memories_embedding_status",
        ),
        CheckConstraint(
            f"classification IS NULL OR classification IN ({_sql_in(CLASSIFICATIONS)})",
            name="ck_memories_classification",
        ),
        CheckConstraint(
            "superseded_by IS NULL OR superseded_by <> id",
            name="ck_memories_not_self_superseded",
        ),
        Index("ix_memories_scope_scope_id", "scope", "scope_id"),
        Index("ix_memories_author_id", "author_id"),
        Index("ix_memories_created_at", "created_at"),
        Index("ix_memories_superseded_by", "superseded_by"),
        Index("ix_memories_embedding_status", "embedding_status"),
        Index("ix_memories_chat_id", "chat_id"),
    )


# =============================================================================
# Audit Events
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(String(36), primary_key=True, default=_uuid_default)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(Integer, default=1, nullable=False)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    user_id = Column(String(255))
    scope = Column(String(20))
    scope_id = Column(String(100))
    target_type = Column(String(50), nullable=False)
    target_ids = Column(JSON_TYPE, nullable=False)
    count_affected = Column(Integer)
    reason = Column(Text)
    request_id = Column(String(255))
    metadata_ = Column("metadata", JSON_TYPE)

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_user_id", "user_id"),
    )


IMMUTABLE_MEMORY_FIELDS = ("author_id", "content", "scope", "scope_id", "created_at")


@event.listens_for(Memory, "before_update")
def _guard_memory_immutability(mapper, connection, target) -> None:
    state = inspect(target)
    for field in IMMUTABLE_MEMORY_FIELDS:
        if state.attrs[field].history.has_changes():
            raise ValidationIssue(
                f"{field} cannot be changed after creation",
                field=field,
                error_type="immutable",
            )
    history = state.attrs["superseded_by"].history
    if history.has_changes() and history.deleted and history.deleted[0] is not None:
        raise ValidationIssue(
            "superseded_by is set once and never cleared",
            field="superseded_by",
            error_type="immutable",
        )


@event.listens_for(Memory, "before_insert")
def _validate_memory_before_insert(mapper, connection, target) -> None:
    if target.scope not in SCOPES:
        raise ValidationIssue(
            f"scope must be one of {', '.join(SCOPES)}",
            field="scope",
            error_type="invalid_value",
        )
    if (target.scope in SCOPES_WITH_ID) != (target.scope_id is not None):
        raise ValidationIssue(
            "scope_id is required for team and application scopes and forbidden otherwise",
            field="scope_id",
            error_type="invalid_combination",
        )

__all__ = [
    "Base",
    "MemoryScope",
    "EmbeddingStatus",
    "Classification",
    "TeamRole",
    "SCOPES",
    "SCOPES_WITH_ID",
    "EMBEDDING_STATUSES",
    "CLASSIFICATIONS",
    "User",
    "Team",
    "TeamMembership",
    "Application",
    "Memory",
    "AuditEvent",
    "IMMUTABLE_MEMORY_FIELDS",
    "EMBEDDING_COLUMN_TYPE",
    "PGVECTOR_AVAILABLE",
]
