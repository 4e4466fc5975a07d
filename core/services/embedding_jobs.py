"""
Embedding job dispatch.

Two dispatchers share one retry contract:

* RedisJobDispatcher: durable. Jobs are LPUSHed onto a Redis list and
  consumed with RPOP by whichever process runs the worker loop; retries wait
  in a sorted set keyed by due time.
* InProcessJobDispatcher: best effort. Jobs run on a thread pool inside the
  server process and are lost on restart.

A handler raises to signal failure. Failures are retried up to
RetryPolicy.max_attempts with exponential backoff. PipelineUnavailable and
rejected input (ValueError, including ValidationIssue) are never retried. When a job gives up, the on_exhausted callback records it.
"""

from __future__ import annotations

import json
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

import redis

import core.config as config
from core.errors import PipelineUnavailable
from core.services.memory_shared import logger

JobHandler = Callable[["EmbeddingJob"], None]
ExhaustedHandler = Callable[["EmbeddingJob", Exception], None]


@dataclass(frozen=True)
class EmbeddingJob:
    memory_id: str
    attempt: int = 1
    enqueued_at: float = field(default_factory=time.time)

    def next_attempt(self) -> "EmbeddingJob":
        return replace(self, attempt=self.attempt + 1)

    def to_json(self) -> str:
        return json.dumps(
            {"memory_id": self.memory_id, "attempt": self.attempt, "enqueued_at": self.enqueued_at},
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw) -> "EmbeddingJob":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(
            memory_id=str(data["memory_id"]),
            attempt=int(data.get("attempt", 1)),
            enqueued_at=float(data.get("enqueued_at", time.time())),
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.EMBEDDING_JOB_MAX_ATTEMPTS
    base_delay_seconds: float = config.EMBEDDING_JOB_BACKOFF_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Wait after failed attempt number `attempt` (1-based)."""
        return self.base_delay_seconds * (2 ** (attempt - 1))

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


class JobDispatcher:
    name = "base"
    durable = False

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()
        self._handler: Optional[JobHandler] = None
        self._on_exhausted: Optional[ExhaustedHandler] = None
        self._stats = {"submitted": 0, "succeeded": 0, "retried": 0, "failed": 0}
        self._stats_lock = threading.Lock()

    def bind(self, handler: JobHandler, on_exhausted: ExhaustedHandler) -> None:
        self._handler = handler
        self._on_exhausted = on_exhausted

    def submit(self, job: EmbeddingJob) -> None:
        raise NotImplementedError

    def run_pending(self, limit: int = 50) -> int:
        """Process queued work in the calling thread. Returns jobs handled."""
        return 0

    def shutdown(self, wait: bool = True) -> None:
        pass

    def stats(self) -> dict:
        with self._stats_lock:
            payload = dict(self._stats)
        payload.update({"dispatcher": self.name, "durable": self.durable})
        return payload

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _ensure_bound(self) -> None:
        if self._handler is None or self._on_exhausted is None:
            raise PipelineUnavailable("embedding job handler not bound")

    def _give_up(self, job: EmbeddingJob, exc: Exception) -> None:
        self._count("failed")
        logger.warning(
            "embedding_job_failed",
            extra={"memory_id": job.memory_id, "attempt": job.attempt, "error": str(exc)},
        )
        self._on_exhausted(job, exc)

    def _attempt(self, job: EmbeddingJob) -> Optional[float]:
        """Run one attempt. Returns the retry delay, or None when the job is finished."""
        try:
            self._handler(job)
        except (PipelineUnavailable, ValueError) as exc:
            self._give_up(job, exc)
            return None
        except Exception as exc:
            if self.retry_policy.exhausted(job.attempt):
                self._give_up(job, exc)
                return None
            delay = self.retry_policy.delay_for(job.attempt)
            self._count("retried")
            logger.info(
                "embedding_job_retry",
                extra={
                    "memory_id": job.memory_id,
                    "attempt": job.attempt,
                    "delay_seconds": delay,
                    "error": str(exc),
                },
            )
            return delay
        self._count("succeeded")
        return None


class InProcessJobDispatcher(JobDispatcher):
    name = "in_process"
    durable = False

    def __init__(
        self,
        max_workers: int = config.EMBEDDING_WORKER_THREADS,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        super().__init__(retry_policy)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="embedding-job",
        )
        self._stopped = threading.Event()
        self._sleep = sleep or self._stopped.wait
        self._futures: List[Future] = []
        self._futures_lock = threading.Lock()

    def submit(self, job: EmbeddingJob) -> None:
        self._ensure_bound()
        if self._stopped.is_set():
            raise PipelineUnavailable("embedding worker pool is shut down")
        try:
            future = self._executor.submit(self._run, job)
        except RuntimeError as exc:
            raise PipelineUnavailable(f"embedding worker pool rejected job: {exc}") from exc
        self._count("submitted")
        with self._futures_lock:
            self._futures = [item for item in self._futures if not item.done()]
            self._futures.append(future)

    def _run(self, job: EmbeddingJob) -> None:
        current = job
        while True:
            delay = self._attempt(current)
            if delay is None:
                return
            self._sleep(delay)
            if self._stopped.is_set():
                logger.info("embedding_job_abandoned", extra={"memory_id": current.memory_id})
                return
            current = current.next_attempt()

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every submitted job has finished."""
        with self._futures_lock:
            pending = list(self._futures)
        wait_futures(pending, timeout=timeout)
        for future in pending:
            if future.done() and future.exception() is not None:
                raise future.exception()

    def shutdown(self, wait: bool = True) -> None:
        self._stopped.set()
        self._executor.shutdown(wait=wait)


class RedisJobDispatcher(JobDispatcher):
    name = "redis"
    durable = True

    def __init__(
        self,
        client: redis.Redis,
        queue_key: str = config.EMBEDDING_QUEUE_KEY,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(retry_policy)
        self._client = client
        self._queue_key = queue_key
        self._delayed_key = f"{queue_key}:delayed"
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisJobDispatcher":
        return cls(redis.Redis.from_url(url), **kwargs)

    def submit(self, job: EmbeddingJob) -> None:
        self._ensure_bound()
        try:
            self._client.lpush(self._queue_key, job.to_json())
        except redis.RedisError as exc:
            raise PipelineUnavailable(f"embedding queue unreachable: {exc}") from exc
        self._count("submitted")

    def promote_due(self) -> int:
        """Move retries whose backoff has elapsed back onto the ready list."""
        due = self._client.zrangebyscore(self._delayed_key, 0, self._clock())
        moved = 0
        for raw in due:
            # zrem wins for exactly one worker when several poll the same set
            if self._client.zrem(self._delayed_key, raw):
                self._client.lpush(self._queue_key, raw)
                moved += 1
        return moved

    def run_pending(self, limit: int = 50) -> int:
        self._ensure_bound()
        self.promote_due()
        handled = 0
        while handled < limit:
            raw = self._client.rpop(self._queue_key)
            if raw is None:
                break
            try:
                job = EmbeddingJob.from_json(raw)
            except (ValueError, KeyError, TypeError):
                logger.warning("embedding_job_malformed", extra={"payload": str(raw)[:200]})
                handled += 1
                continue
            delay = self._attempt(job)
            if delay is not None:
                retry = job.next_attempt()
                self._client.zadd(self._delayed_key, {retry.to_json(): self._clock() + delay})
            handled += 1
        return handled

    def queue_depth(self) -> dict:
        return {
            "ready": int(self._client.llen(self._queue_key)),
            "delayed": int(self._client.zcard(self._delayed_key)),
        }

    def stats(self) -> dict:
        payload = super().stats()
        try:
            payload.update(self.queue_depth())
        except redis.RedisError as exc:
            payload["error"] = str(exc)
        return payload

    def shutdown(self, wait: bool = True) -> None:
        self._client.close()


def build_dispatcher(redis_url: Optional[str] = None) -> JobDispatcher:
    """Durable Redis dispatcher when REDIS_URL is set, thread pool otherwise."""
    url = redis_url if redis_url is not None else config.REDIS_URL
    if url:
        logger.info("Embedding jobs: redis queue")
        return RedisJobDispatcher.from_url(url)
    logger.info("Embedding jobs: in-process worker pool (best effort)")
    return InProcessJobDispatcher()


__all__ = [
    "EmbeddingJob",
    "RetryPolicy",
    "JobDispatcher",
    "InProcessJobDispatcher",
    "RedisJobDispatcher",
    "build_dispatcher",
]
