"""
Embedding pipeline: job handling and backfill.

embedding_status moves none -> pending -> completed | failed. Terminal rows
only go back to pending through backfill, which re-selects anything still
missing a vector.
"""

from __future__ import annotations

import asyncio
import threading
from typing import List, Optional, Sequence, Tuple

import core.config as config
from core.audit import log_event
from core.audit_constants import EVENT_EMBEDDING_FAILED
from core.errors import PipelineUnavailable
from core.models import EmbeddingStatus
from core.services.embedding_jobs import EmbeddingJob, JobDispatcher
from core.services.embedding_provider import EmbeddingProvider
from core.services.memory_backends import SqlMemoryBackend
from core.services.memory_shared import logger

MAX_ERROR_LENGTH = 1000
UNAVAILABLE_PREFIX = "embedding pipeline unavailable"


def _error_text(exc: Exception) -> str:
    return (str(exc) or exc.__class__.__name__)[:MAX_ERROR_LENGTH]


class EmbeddingPipeline:
    def __init__(
        self,
        backend: SqlMemoryBackend,
        provider: EmbeddingProvider,
        dispatcher: JobDispatcher,
        *,
        batch_size: int = config.EMBEDDING_BACKFILL_BATCH_SIZE,
    ):
        self.backend = backend
        self.provider = provider
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        dispatcher.bind(self.process, self.fail)

    @property
    def enabled(self) -> bool:
        return self.backend.supports_vectors and self.provider.available

    def embed_now(self, text: str) -> List[float]:
        return self.provider.embed(text)

    def schedule(self, memory_id: str) -> Tuple[Optional[str], Optional[str]]:
        """Hand a committed pending row to the dispatcher. Returns (status, error)."""
        if not self.backend.supports_vectors:
            return None, None
        try:
            if not self.provider.available:
                raise PipelineUnavailable(f"provider not configured ({self.provider.name})")
            self.dispatcher.submit(EmbeddingJob(memory_id=memory_id))
        except PipelineUnavailable as exc:
            error = f"{UNAVAILABLE_PREFIX}: {exc}"[:MAX_ERROR_LENGTH]
            logger.warning("embedding_schedule_failed", extra={"memory_id": memory_id, "error": error})
            self._write_status(memory_id, EmbeddingStatus.failed.value, error)
            return EmbeddingStatus.failed.value, error
        return EmbeddingStatus.pending.value, None

    def process(self, job: EmbeddingJob) -> None:
        """Embed one memory. Raises on provider failure so the dispatcher can retry."""
        db = self.backend.session()
        try:
            memory = self.backend.get(db, job.memory_id)
            content = memory.content if memory is not None else None
        finally:
            db.close()
        if content is None:
            logger.info("embedding_job_skipped", extra={"memory_id": job.memory_id, "reason": "deleted"})
            return

        vector = self.provider.embed(content)

        db = self.backend.session()
        try:
            self.backend.set_embedding(db, job.memory_id, vector, self.provider.model)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def fail(self, job: EmbeddingJob, exc: Exception) -> None:
        """Record a job that gave up. The memory stays searchable by keyword."""
        error = _error_text(exc)
        db = self.backend.session()
        try:
            if self.backend.set_embedding_status(db, job.memory_id, EmbeddingStatus.failed.value, error):
                log_event(
                    db,
                    event_type=EVENT_EMBEDDING_FAILED,
                    actor_type="system",
                    target_ids=[job.memory_id],
                    count_affected=1,
                    reason=error,
                    metadata={"attempts": job.attempt},
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _write_status(self, memory_id: str, status: str, error: Optional[str] = None) -> None:
        db = self.backend.session()
        try:
            self.backend.set_embedding_status(db, memory_id, status, error)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _embed_and_store(self, memory_id: str, content: str) -> None:
        vector = self.provider.embed(content)
        db = self.backend.session()
        try:
            self.backend.set_embedding(db, memory_id, vector, self.provider.model)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _next_batch(self, batch_size: int, cursor) -> Sequence[tuple]:
        db = self.backend.session()
        try:
            rows = self.backend.missing_embeddings(db, batch_size, after=cursor)
            return [(row.id, row.content, row.created_at) for row in rows]
        finally:
            db.close()

    def backfill(
        self,
        batch_size: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        max_items: Optional[int] = None,
    ) -> dict:
        """
        Embed every memory that has no vector, oldest first.

        Safe to re-run: embedded rows are never selected again. A failure on
        one item (provider or storage) marks that row failed and the run
        continues. The keyset cursor guarantees each row is visited once per
        run.
        """
        if not self.backend.supports_vectors:
            return {"status": "skipped", "reason": "vector_disabled"}
        if not self.provider.available:
            return {"status": "skipped", "reason": "embedding_disabled"}

        size = batch_size or self.batch_size
        if size <= 0:
            return {"status": "skipped", "reason": "batch_size_disabled"}

        processed = 0
        backfilled = 0
        failed = 0
        cursor = None
        status = "ok"
        while True:
            batch = self._next_batch(size, cursor)
            if not batch:
                break
            for memory_id, content, created_at in batch:
                if cancel_event is not None and cancel_event.is_set():
                    status = "cancelled"
                    break
                if max_items is not None and processed >= max_items:
                    status = "partial"
                    break
                cursor = (created_at, memory_id)
                processed += 1
                self._write_status(memory_id, EmbeddingStatus.pending.value)
                try:
                    self._embed_and_store(memory_id, content)
                except Exception as exc:
                    failed += 1
                    error = _error_text(exc)
                    logger.warning(
                        "embedding_backfill_item_failed",
                        extra={"memory_id": memory_id, "error": error},
                    )
                    self._write_status(memory_id, EmbeddingStatus.failed.value, error)
                    continue
                backfilled += 1
            if status != "ok":
                break

        stats = {
            "status": status,
            "processed": processed,
            "backfilled": backfilled,
            "failed": failed,
        }
        logger.info("embedding_backfill_complete", extra=stats)
        return stats

    async def run_backfill_loop(self, interval_seconds: int = config.EMBEDDING_BACKFILL_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            return
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(self.backfill)
            except Exception as exc:
                logger.warning(f"Embedding backfill error: {exc}")


__all__ = ["EmbeddingPipeline", "UNAVAILABLE_PREFIX"]
