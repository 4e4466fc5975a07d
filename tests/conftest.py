import hashlib
import math
import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("REQUIRE_MCP_AUTH", "false")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.db import DB
from core.errors import EmbeddingProviderError
from core.models import Application, Base, Memory, Team, TeamMembership, User
from core.services.embedding_jobs import InProcessJobDispatcher, RetryPolicy
from core.services.embedding_provider import EmbeddingProvider
from core.services.memory_backends import KeywordMemoryBackend, SqlMemoryBackend
from core.services.memory_service import build_memory_service


def _cosine(a, b) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeEmbeddingProvider(EmbeddingProvider):
    """Deterministic vectors; known texts map to fixed vectors, the rest hash."""

    name = "fake"
    model = "fake-embed-1"
    dimension = 16

    def __init__(self, vectors=None):
        self.vectors = dict(vectors or {})
        self.fail = False
        self.fail_on = set()
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if self.fail or text in self.fail_on:
            raise EmbeddingProviderError("provider rate limited")
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(byte / 127.5) - 1.0 for byte in digest[: self.dimension]]


class JsonVectorMemoryBackend(SqlMemoryBackend):
    """Vector tier over the JSON column, ranked in Python for sqlite tests."""

    name = "json_vector"
    supports_vectors = True

    def nearest(self, db, criteria, vector, limit=1):
        rows = self._visible(db, criteria).filter(Memory.embedding.isnot(None)).all()
        scored = [(row, _cosine(row.embedding, vector)) for row in rows]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    def hybrid_search(self, db, criteria, query, vector, limit):
        rows = self._visible(db, criteria).all()
        scored = []
        for row in rows:
            similarity = _cosine(row.embedding, vector) if row.embedding is not None else None
            rank = 1.0 if query.lower() in row.content.lower() else 0.0
            scored.append((row, self.weights.blend(similarity, rank)))
        scored.sort(key=lambda item: (item[1], item[0].created_at), reverse=True)
        return scored[:limit]


def seed_directory(session_factory):
    """
    alice: admin of t1, member of t2; owns app-a (no team)
    bob, dave: members of t1
    carol: member of t3 only
    root: system administrator
    """
    db = session_factory()
    try:
        db.add_all([
            User(id="alice", name="Alice"),
            User(id="bob", name="Bob"),
            User(id="dave", name="Dave"),
            User(id="carol", name="Carol"),
            User(id="root", name="Root", is_admin=True),
        ])
        db.flush()
        db.add_all([
            Team(id="t1", name="Team One", created_by="alice"),
            Team(id="t2", name="Team Two", created_by="alice"),
            Team(id="t3", name="Team Three", created_by="carol"),
        ])
        db.flush()
        db.add_all([
            TeamMembership(team_id="t1", user_id="alice", role="admin"),
            TeamMembership(team_id="t1", user_id="bob", role="member"),
            TeamMembership(team_id="t1", user_id="dave", role="member"),
            TeamMembership(team_id="t2", user_id="alice", role="member"),
            TeamMembership(team_id="t3", user_id="carol", role="admin"),
            Application(id="app-a", name="Alice App", created_by="alice"),
            Application(id="app-t1", name="Team One App", team_id="t1", created_by="alice"),
        ])
        db.commit()
    finally:
        db.close()


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "memories.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    seed_directory(SessionLocal)
    try:
        yield SessionLocal
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = server_db()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def retry_delays():
    return []


@pytest.fixture
def dispatcher(retry_delays):
    pool = InProcessJobDispatcher(
        max_workers=1,
        retry_policy=RetryPolicy(max_attempts=5, base_delay_seconds=60),
        sleep=retry_delays.append,
    )
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def keyword_service(server_db, dispatcher, provider):
    """No vector capability: substring retrieval, no automatic dedup."""
    return build_memory_service(
        DB.engine,
        server_db,
        provider=provider,
        dispatcher=dispatcher,
        backend=KeywordMemoryBackend(server_db),
    )


@pytest.fixture
def vector_service(server_db, dispatcher, provider):
    """Vector capability with a fake provider; jobs run on a one-thread pool."""
    return build_memory_service(
        DB.engine,
        server_db,
        provider=provider,
        dispatcher=dispatcher,
        backend=JsonVectorMemoryBackend(server_db),
    )


@pytest.fixture
def service_factory(server_db, dispatcher, provider):
    def _build(**overrides):
        overrides.setdefault("provider", provider)
        overrides.setdefault("dispatcher", dispatcher)
        overrides.setdefault("backend", JsonVectorMemoryBackend(server_db))
        return build_memory_service(DB.engine, server_db, **overrides)
    return _build
