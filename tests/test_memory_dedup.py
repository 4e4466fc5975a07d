import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.models import Memory

AXIS = [1.0] + [0.0] * 15
NEAR_AXIS = [0.99, 0.1] + [0.0] * 14
ORTHOGONAL = [0.0, 1.0] + [0.0] * 14


def test_near_duplicate_supersedes_previous(vector_service, provider, dispatcher, db_session):
    provider.vectors.update({
        "staging db lives on host alpha": AXIS,
        "the staging database is on host alpha": NEAR_AXIS,
    })
    first = vector_service.remember("alice", "staging db lives on host alpha")["memory"]
    second = vector_service.remember("alice", "the staging database is on host alpha")
    dispatcher.drain()

    assert second["merged_from"] == first["id"]
    assert second["similarity"] > 0.9
    assert second["memory"]["embedding_status"] == "completed"

    row = db_session.query(Memory).filter(Memory.id == first["id"]).one()
    assert row.superseded_by == second["memory"]["id"]

    recall = vector_service.recall("alice")
    assert [item["id"] for item in recall["memories"]] == [second["memory"]["id"]]


def test_dissimilar_memories_both_survive(vector_service, provider):
    provider.vectors.update({"cats are great": AXIS, "tax deadline is april": ORTHOGONAL})
    vector_service.remember("alice", "cats are great")
    result = vector_service.remember("alice", "tax deadline is april")
    assert "merged_from" not in result
    assert vector_service.recall("alice")["count"] == 2


def test_dedup_stays_within_scope(vector_service, provider):
    provider.vectors.update({"shared fact": AXIS, "shared fact again": NEAR_AXIS})
    vector_service.remember("alice", "shared fact")
    team = vector_service.remember("alice", "shared fact again", scope="team", scope_id="t1")
    assert "merged_from" not in team


def test_dedup_does_not_cross_personal_authors(vector_service, provider):
    provider.vectors.update({"my locker is 12": AXIS, "locker number 12": NEAR_AXIS})
    vector_service.remember("alice", "my locker is 12")
    bob = vector_service.remember("bob", "locker number 12")
    assert "merged_from" not in bob


def test_threshold_is_strict(service_factory, provider):
    service = service_factory(dedup_threshold=1.0)
    provider.vectors.update({"same words": AXIS, "same words!": AXIS})
    service.remember("alice", "same words")
    result = service.remember("alice", "same words!")
    assert "merged_from" not in result


def test_keyword_backend_never_merges(keyword_service):
    keyword_service.remember("alice", "duplicate text")
    result = keyword_service.remember("alice", "duplicate text")
    assert "merged_from" not in result
    assert keyword_service.recall("alice")["count"] == 2
