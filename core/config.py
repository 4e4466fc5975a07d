"""
Shared configuration for the scoped memory core.
"""

from __future__ import annotations

import logging
import os


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("scopemem")


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "none"} else "none"
    if db_effective == "sqlite" and vector_effective == "pgvector":
        vector_effective = "none"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/scopemem.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Embedding provider
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
EMBEDDING_API_KEY = os.environ.get("EMBEDDING_API_KEY") or OPENAI_API_KEY
EMBEDDING_API_URL = os.environ.get(
    "EMBEDDING_API_URL", "https://api.openai.com/v1/embeddings"
)
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("MAX_EMBEDDING_TEXT_LENGTH", 8000)

# Embedding jobs
REDIS_URL = os.environ.get("REDIS_URL")
EMBEDDING_QUEUE_KEY = os.environ.get("EMBEDDING_QUEUE_KEY", "scopemem:embedding_jobs")
EMBEDDING_JOB_MAX_ATTEMPTS = _get_int("EMBEDDING_JOB_MAX_ATTEMPTS", 5)
EMBEDDING_JOB_BACKOFF_SECONDS = _get_float("EMBEDDING_JOB_BACKOFF_SECONDS", 60.0)
EMBEDDING_WORKER_THREADS = _get_int("EMBEDDING_WORKER_THREADS", 2)
EMBEDDING_WORKER_POLL_SECONDS = _get_float("EMBEDDING_WORKER_POLL_SECONDS", 2.0)
EMBEDDING_BACKFILL_ENABLED = _get_bool("EMBEDDING_BACKFILL_ENABLED", False)
EMBEDDING_BACKFILL_INTERVAL_SECONDS = _get_int("EMBEDDING_BACKFILL_INTERVAL_SECONDS", 300)
EMBEDDING_BACKFILL_BATCH_SIZE = _get_int("EMBEDDING_BACKFILL_BATCH_SIZE", 100)

# Dedup & ranking
DEDUP_SIMILARITY_THRESHOLD = _get_float("DEDUP_SIMILARITY_THRESHOLD", 0.90)
HYBRID_VECTOR_WEIGHT = _get_float("HYBRID_VECTOR_WEIGHT", 0.7)
HYBRID_KEYWORD_WEIGHT = _get_float("HYBRID_KEYWORD_WEIGHT", 0.3)

# Request/input limits
DEFAULT_RECALL_LIMIT = _get_int("DEFAULT_RECALL_LIMIT", 50)
MAX_RESULT_LIMIT = _get_int("MAX_RESULT_LIMIT", 200)
MAX_QUERY_LENGTH = _get_int("MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("MAX_TEXT_LENGTH", 20000)
MAX_SHORT_TEXT_LENGTH = _get_int("MAX_SHORT_TEXT_LENGTH", 255)
MAX_TAG_ITEMS = _get_int("MAX_TAG_ITEMS", 50)
MAX_LIST_ITEM_LENGTH = _get_int("MAX_LIST_ITEM_LENGTH", 100)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if EMBEDDING_PROVIDER not in {"openai", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai' or 'none'")

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from core.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if not 0.0 < DEDUP_SIMILARITY_THRESHOLD <= 1.0:
        errors.append("DEDUP_SIMILARITY_THRESHOLD must be in (0, 1]")
    if HYBRID_VECTOR_WEIGHT < 0 or HYBRID_KEYWORD_WEIGHT < 0:
        errors.append("HYBRID_VECTOR_WEIGHT and HYBRID_KEYWORD_WEIGHT must be non-negative")
    if EMBEDDING_JOB_MAX_ATTEMPTS < 1:
        errors.append("EMBEDDING_JOB_MAX_ATTEMPTS must be at least 1")
    if EMBEDDING_BACKFILL_BATCH_SIZE < 1:
        errors.append("EMBEDDING_BACKFILL_BATCH_SIZE must be at least 1")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))

    if EMBEDDING_PROVIDER == "openai" and not EMBEDDING_API_KEY:
        logger.warning(
            "EMBEDDING_API_KEY is not set; semantic search and dedup are disabled."
        )
