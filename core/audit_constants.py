"""
Canonical audit event type strings.
"""

EVENT_MEMORY_CREATED = "memory.created"
EVENT_MEMORY_SUPERSEDED = "memory.superseded"
EVENT_MEMORY_RECALLED = "memory.recalled"
EVENT_MEMORY_DELETED = "memory.deleted"
EVENT_MEMORY_PROMOTED = "memory.promoted"
EVENT_EMBEDDING_FAILED = "memory.embedding_failed"

__all__ = [
    "EVENT_MEMORY_CREATED",
    "EVENT_MEMORY_SUPERSEDED",
    "EVENT_MEMORY_RECALLED",
    "EVENT_MEMORY_DELETED",
    "EVENT_MEMORY_PROMOTED",
    "EVENT_EMBEDDING_FAILED",
]
