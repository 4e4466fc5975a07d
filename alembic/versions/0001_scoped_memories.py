"""Scoped memories, directory tables and audit events.

Revision ID: 0001_scoped_memories
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import core.config as config


revision = "0001_scoped_memories"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return sa.JSON


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "teams",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("created_by", sa.String(length=100), sa.ForeignKey("users.id")),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "team_memberships",
        sa.Column(
            "team_id",
            sa.String(length=100),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "user_id",
            sa.String(length=100),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("role IN ('admin', 'member')", name="ck_team_memberships_role"),
    )
    op.create_index("ix_team_memberships_user_id", "team_memberships", ["user_id"])

    op.create_table(
        "applications",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("team_id", sa.String(length=100), sa.ForeignKey("teams.id", ondelete="SET NULL")),
        sa.Column("created_by", sa.String(length=100), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_applications_created_by", "applications", ["created_by"])
    op.create_index("ix_applications_team_id", "applications", ["team_id"])

    op.create_table(
        "memories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("author_id", sa.String(length=100), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tags", json_type, nullable=False),
        sa.Column("classification", sa.String(length=20)),
        sa.Column("chat_id", sa.String(length=100)),
        sa.Column("scope", sa.String(length=20), nullable=False, server_default="personal"),
        sa.Column("scope_id", sa.String(length=100)),
        sa.Column("embedding", _embedding_type(is_postgres)),
        sa.Column("embedding_status", sa.String(length=20)),
        sa.Column("embedding_model", sa.String(length=100)),
        sa.Column("embedding_error", sa.Text()),
        sa.Column("promoted_from", sa.String(length=36)),
        sa.Column("superseded_by", sa.String(length=36)),
        sa.Column("recalled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retrieval_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retrieved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "scope IN ('personal', 'team', 'application', 'global')",
            name="ck_memories_scope",
        ),
        sa.CheckConstraint(
            "(scope IN ('team', 'application') AND scope_id IS NOT NULL) "
            "OR (scope NOT IN ('team', 'application') AND scope_id IS NULL)",
            name="ck_memories_scope_id",
        ),
        sa.CheckConstraint(
            "embedding_status IS NULL OR embedding_status IN ('pending', 'completed', 'failed')",
            name="ck_memories_embedding_status",
        ),
        sa.CheckConstraint(
            "classification IS NULL OR classification IN ('foundational', 'tactical', 'observational')",
            name="ck_memories_classification",
        ),
        sa.CheckConstraint(
            "superseded_by IS NULL OR superseded_by <> id",
            name="ck_memories_not_self_superseded",
        ),
    )
    op.create_index("ix_memories_scope_scope_id", "memories", ["scope", "scope_id"])
    op.create_index("ix_memories_author_id", "memories", ["author_id"])
    op.create_index("ix_memories_created_at", "memories", ["created_at"])
    op.create_index("ix_memories_superseded_by", "memories", ["superseded_by"])
    op.create_index("ix_memories_embedding_status", "memories", ["embedding_status"])
    op.create_index("ix_memories_chat_id", "memories", ["chat_id"])
    if is_postgres:
        op.execute(
            "CREATE INDEX ix_memories_content_fts ON memories "
            "USING gin (to_tsvector('english', content))"
        )
        if config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
            op.execute(
                "CREATE INDEX ix_memories_embedding_hnsw ON memories "
                "USING hnsw (embedding vector_cosine_ops)"
            )

    op.create_table(
        "audit_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("actor_type", sa.String(length=50), nullable=False),
        sa.Column("actor_id", sa.String(length=255)),
        sa.Column("user_id", sa.String(length=255)),
        sa.Column("scope", sa.String(length=20)),
        sa.Column("scope_id", sa.String(length=100)),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_ids", json_type, nullable=False),
        sa.Column("count_affected", sa.Integer()),
        sa.Column("reason", sa.Text()),
        sa.Column("request_id", sa.String(length=255)),
        sa.Column("metadata", json_type),
    )
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_user_id", "audit_events", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_user_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP INDEX IF EXISTS ix_memories_embedding_hnsw")
        op.execute("DROP INDEX IF EXISTS ix_memories_content_fts")
    op.drop_index("ix_memories_chat_id", table_name="memories")
    op.drop_index("ix_memories_embedding_status", table_name="memories")
    op.drop_index("ix_memories_superseded_by", table_name="memories")
    op.drop_index("ix_memories_created_at", table_name="memories")
    op.drop_index("ix_memories_author_id", table_name="memories")
    op.drop_index("ix_memories_scope_scope_id", table_name="memories")
    op.drop_table("memories")

    op.drop_index("ix_applications_team_id", table_name="applications")
    op.drop_index("ix_applications_created_by", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_team_memberships_user_id", table_name="team_memberships")
    op.drop_table("team_memberships")
    op.drop_table("teams")
    op.drop_table("users")
