import os
from concurrent.futures import ThreadPoolExecutor

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("REQUIRE_MCP_AUTH", "false")


def test_remember_concurrency(keyword_service):
    texts = [f"Concurrent memory {n}" for n in range(4)]

    def _store(text):
        return keyword_service.remember("alice", text, scope="team", scope_id="t1")

    with ThreadPoolExecutor(max_workers=2) as executor:
        results = list(executor.map(_store, texts))

    assert all(result["status"] == "stored" for result in results)

    recall = keyword_service.recall("bob", query="Concurrent", limit=10)
    assert recall["count"] == 4


def test_concurrent_recall_counts_every_retrieval(keyword_service, db_session):
    from core.models import Memory

    memory_id = keyword_service.remember("alice", "popular")["memory"]["id"]

    with ThreadPoolExecutor(max_workers=2) as executor:
        results = list(executor.map(lambda _: keyword_service.recall("alice"), range(4)))

    assert all(result["count"] == 1 for result in results)
    row = db_session.query(Memory).filter(Memory.id == memory_id).one()
    assert row.recalled_count == 4
