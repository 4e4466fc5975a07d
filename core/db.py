"""
Engine, sessions and schema migrations.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

import core.config as config

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Database state holder (avoids global scoping issues)."""

    engine = None
    SessionLocal = None


def _alembic_config(database_url: Optional[str] = None):
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(ROOT_DIR, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(ROOT_DIR, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url or config.DATABASE_URL)
    return alembic_cfg


def schema_revisions(engine) -> tuple[Optional[str], Optional[str]]:
    """(revision stamped in the database, newest revision shipped)."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(_alembic_config(str(engine.url))).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def _migrate(engine) -> None:
    from alembic import command

    current, head = schema_revisions(engine)
    if current == head:
        return
    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"Database schema out of date (current={current}, expected={head}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true for dev."
        )
    config.logger.info(f"Migrating schema {current} -> {head}")
    command.upgrade(_alembic_config(engine.url.render_as_string(hide_password=False)), "head")
    if schema_revisions(engine)[0] != head:
        raise RuntimeError("Database migration did not reach expected revision")


def _ensure_vector_extension(engine) -> None:
    if engine.dialect.name != "postgresql" or config.VECTOR_BACKEND_EFFECTIVE != "pgvector":
        return
    if not config.AUTO_CREATE_EXTENSIONS:
        config.logger.info("Skipping pgvector extension creation")
        return
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()


def build_engine(database_url: Optional[str] = None):
    url = database_url or config.DATABASE_URL
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def init_db(database_url: Optional[str] = None) -> None:
    """Connect, ensure the vector extension, and migrate the schema to head."""
    config.validate_and_prepare_config()
    DB.engine = build_engine(database_url)
    DB.SessionLocal = sessionmaker(bind=DB.engine)
    _ensure_vector_extension(DB.engine)
    _migrate(DB.engine)
    config.logger.info(f"Database ready ({DB.engine.dialect.name})")


def dispose_db() -> None:
    if DB.engine is not None:
        DB.engine.dispose()
    DB.engine = None
    DB.SessionLocal = None
