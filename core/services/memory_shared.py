"""
Shared helpers and configuration for memory services.
"""

from __future__ import annotations

from datetime import datetime
from functools import wraps
from typing import Callable, Optional

import core.config as config
from core.errors import NotFound, PermissionDenied, ValidationIssue
from core.models import Memory
from core.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_string_list as _validate_string_list,
    validate_scope as _validate_scope,
    validate_classification as _validate_classification,
    validate_embedding_status_filter as _validate_embedding_status_filter,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

EMBEDDING_MODEL = config.EMBEDDING_MODEL
EMBEDDING_DIM = config.EMBEDDING_DIM

DEFAULT_RECALL_LIMIT = config.DEFAULT_RECALL_LIMIT
MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_QUERY_LENGTH = config.MAX_QUERY_LENGTH
MAX_TEXT_LENGTH = config.MAX_TEXT_LENGTH
MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH
MAX_TAG_ITEMS = config.MAX_TAG_ITEMS
MAX_LIST_ITEM_LENGTH = config.MAX_LIST_ITEM_LENGTH

DEDUP_SIMILARITY_THRESHOLD = config.DEDUP_SIMILARITY_THRESHOLD
HYBRID_VECTOR_WEIGHT = config.HYBRID_VECTOR_WEIGHT
HYBRID_KEYWORD_WEIGHT = config.HYBRID_KEYWORD_WEIGHT


def utcnow() -> datetime:
    return datetime.utcnow()


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_memory(memory: Memory, score: Optional[float] = None) -> dict:
    payload = {
        "id": memory.id,
        "author_id": memory.author_id,
        "content": memory.content,
        "tags": list(memory.tags or []),
        "classification": memory.classification,
        "chat_id": memory.chat_id,
        "scope": memory.scope,
        "scope_id": memory.scope_id,
        "embedding_status": memory.embedding_status,
        "embedding_model": memory.embedding_model,
        "embedding_error": memory.embedding_error,
        "promoted_from": memory.promoted_from,
        "superseded_by": memory.superseded_by,
        "recalled_count": memory.recalled_count or 0,
        "retrieval_count": memory.retrieval_count or 0,
        "last_retrieved_at": _isoformat(memory.last_retrieved_at),
        "created_at": _isoformat(memory.created_at),
    }
    if score is not None:
        payload["score"] = round(float(score), 6)
    return payload


# =============================================================================
# Helper Functions
# =============================================================================

def _tool_error_payload(tool_name: str, exc: Exception, error_type: str, field: str) -> dict:
    return {
        "status": "error",
        "error_type": error_type,
        "tool": tool_name,
        "field": field,
        "message": str(exc),
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc, "validation_error", exc.field)
        except PermissionDenied as exc:
            logger.info(
                "tool_permission_denied",
                extra={"tool": fn.__name__, "field": exc.field},
            )
            return _tool_error_payload(fn.__name__, exc, "permission_denied", exc.field)
        except NotFound as exc:
            logger.info("tool_not_found", extra={"tool": fn.__name__, "field": exc.field})
            return _tool_error_payload(fn.__name__, exc, "not_found", exc.field)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue, "validation_error", issue.field)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


__all__ = [
    "logger",
    "utcnow",
    "serialize_memory",
    "service_tool",
    "_validate_required_text",
    "_validate_optional_text",
    "_validate_limit",
    "_validate_string_list",
    "_validate_scope",
    "_validate_classification",
    "_validate_embedding_status_filter",
]
