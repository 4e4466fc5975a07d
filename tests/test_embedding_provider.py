import os

import httpx
import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.errors import EmbeddingProviderError
from core.services.embedding_provider import EmbeddingCircuitBreaker, OpenAIEmbeddingProvider


def _provider(handler, threshold=3, dimension=4):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAIEmbeddingProvider(
        "test-key",
        api_url="https://embeddings.test/v1/embeddings",
        model="test-embed",
        dimension=dimension,
        circuit_breaker=EmbeddingCircuitBreaker(failure_threshold=threshold, cooldown_seconds=60),
        client=client,
    )


def test_embed_returns_vector():
    seen = {}

    def handler(request):
        seen["body"] = request.read()
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3, 0.4]}]})

    provider = _provider(handler)
    assert provider.embed("hello") == [0.1, 0.2, 0.3, 0.4]
    assert b"test-embed" in seen["body"]
    assert provider.status()["circuit_breaker"]["consecutive_failures"] == 0


def test_rate_limit_raises_provider_error():
    provider = _provider(lambda request: httpx.Response(429, json={"error": "slow down"}))
    with pytest.raises(EmbeddingProviderError) as excinfo:
        provider.embed("hello")
    assert "429" in str(excinfo.value)


def test_timeout_raises_provider_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(EmbeddingProviderError):
        _provider(handler).embed("hello")


def test_dimension_mismatch_is_an_error():
    provider = _provider(lambda request: httpx.Response(200, json={"data": [{"embedding": [1.0, 2.0]}]}))
    with pytest.raises(EmbeddingProviderError):
        provider.embed("hello")


@pytest.mark.parametrize(
    "payload",
    [
        {"data": [{"embedding": None}]},
        {"data": [{"embedding": "0.1,0.2,0.3,0.4"}]},
        {"data": [{"embedding": [0.1, None, 0.3, 0.4]}]},
        {"data": None},
    ],
)
def test_malformed_embedding_payload_is_an_error(payload):
    provider = _provider(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(EmbeddingProviderError) as excinfo:
        provider.embed("hello")
    assert "malformed response" in str(excinfo.value)
    assert provider.status()["circuit_breaker"]["consecutive_failures"] == 1


def test_circuit_opens_after_repeated_failures():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    provider = _provider(handler, threshold=2)
    for _ in range(2):
        with pytest.raises(EmbeddingProviderError):
            provider.embed("hello")
    with pytest.raises(EmbeddingProviderError) as excinfo:
        provider.embed("hello")

    assert "circuit breaker open" in str(excinfo.value)
    assert len(calls) == 2
    assert provider.status()["circuit_breaker"]["open"] is True
