"""
Embedding provider adapters.

A provider turns text into a fixed-dimension vector. Calls are synchronous,
bounded by EMBEDDING_TIMEOUT_SECONDS, and fail with EmbeddingProviderError,
which callers treat as retryable.
"""

from __future__ import annotations

import threading
import time
from typing import List, Optional

import httpx

import core.config as config
from core.errors import EmbeddingProviderError
from core.services.memory_shared import logger
from core.validators import validate_embedding_text

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


class EmbeddingProvider:
    """Base adapter. Subclasses implement embed()."""

    name = "base"
    model: Optional[str] = None
    dimension: int = config.EMBEDDING_DIM

    @property
    def available(self) -> bool:
        return True

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def status(self) -> dict:
        return {"provider": self.name, "model": self.model, "available": self.available}

    def close(self) -> None:
        pass


class DisabledEmbeddingProvider(EmbeddingProvider):
    """Used when no provider is configured; every call fails."""

    name = "none"

    def __init__(self, reason: str = "embedding provider disabled"):
        self.reason = reason

    @property
    def available(self) -> bool:
        return False

    def embed(self, text: str) -> List[float]:
        raise EmbeddingProviderError(self.reason)

    def status(self) -> dict:
        payload = super().status()
        payload["reason"] = self.reason
        return payload


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible /v1/embeddings client on a pooled httpx.Client."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = config.EMBEDDING_API_URL,
        model: str = config.EMBEDDING_MODEL,
        dimension: int = config.EMBEDDING_DIM,
        timeout_seconds: float = config.EMBEDDING_TIMEOUT_SECONDS,
        circuit_breaker: Optional[EmbeddingCircuitBreaker] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url
        self.model = model
        self.dimension = dimension
        self.circuit_breaker = circuit_breaker or EmbeddingCircuitBreaker(
            failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
            cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
        )
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )
        logger.info("HTTP client initialized")

    def _fail(self, detail: str) -> None:
        self.circuit_breaker.record_failure(detail)
        logger.warning("Embedding provider unavailable", extra={"detail": detail})
        raise EmbeddingProviderError(f"embedding provider unavailable: {detail}")

    def embed(self, text: str) -> List[float]:
        validate_embedding_text(text)
        if self.circuit_breaker.is_open():
            raise EmbeddingProviderError("embedding provider unavailable: circuit breaker open")

        try:
            response = self._client.post(
                self.api_url,
                json={"model": self.model, "input": text},
            )
        except httpx.TimeoutException:
            self._fail("timeout")
        except httpx.RequestError as exc:
            self._fail(f"request error ({exc.__class__.__name__})")

        if response.status_code >= 400:
            kind = "retryable" if response.status_code in RETRYABLE_STATUS_CODES else "rejected"
            self._fail(f"status {response.status_code} ({kind})")

        try:
            raw = response.json()["data"][0]["embedding"]
            if not isinstance(raw, list):
                raise TypeError("embedding is not a list")
            vector = [float(value) for value in raw]
        except (ValueError, KeyError, IndexError, TypeError):
            self._fail("malformed response")
        if len(vector) != self.dimension:
            self._fail(f"dimension mismatch (got {len(vector)}, expected {self.dimension})")

        self.circuit_breaker.record_success()
        return vector

    def status(self) -> dict:
        payload = super().status()
        payload["circuit_breaker"] = self.circuit_breaker.status()
        return payload

    def close(self) -> None:
        self._client.close()
        logger.info("HTTP client closed")


def build_embedding_provider() -> EmbeddingProvider:
    """Return the provider configured by EMBEDDING_PROVIDER / EMBEDDING_API_KEY."""
    if config.EMBEDDING_PROVIDER == "none":
        return DisabledEmbeddingProvider()
    if not config.EMBEDDING_API_KEY:
        return DisabledEmbeddingProvider("embedding provider not configured (EMBEDDING_API_KEY)")
    return OpenAIEmbeddingProvider(config.EMBEDDING_API_KEY)


__all__ = [
    "EmbeddingCircuitBreaker",
    "EmbeddingProvider",
    "DisabledEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "build_embedding_provider",
]
