import os

import pytest

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

from core.context import AuthContext, RequestContext
from core.errors import NotFound, PermissionDenied, ValidationIssue
from core.services.memory_scopes import ScopeResolver, SqlMembershipDirectory


def _team_credential(user_id: str, team_id: str) -> RequestContext:
    return RequestContext(auth=AuthContext(user_id=user_id, scope_type="team", team_id=team_id))


@pytest.fixture
def resolver(server_db):
    return ScopeResolver(SqlMembershipDirectory(server_db))


def test_default_scope_is_personal(resolver):
    resolved = resolver.resolve_and_authorize("alice")
    assert (resolved.scope, resolved.scope_id) == ("personal", None)


def test_team_credential_defaults_to_its_team(resolver):
    resolved = resolver.resolve_and_authorize("bob", context=_team_credential("bob", "t1"))
    assert (resolved.scope, resolved.scope_id) == ("team", "t1")


def test_team_write_requires_membership(resolver):
    assert resolver.resolve_and_authorize("bob", "team", "t1").scope_id == "t1"
    with pytest.raises(PermissionDenied):
        resolver.resolve_and_authorize("bob", "team", "t3")
    with pytest.raises(NotFound):
        resolver.resolve_and_authorize("bob", "team", "missing")
    with pytest.raises(ValidationIssue):
        resolver.resolve_and_authorize("bob", "team")


def test_application_write_owner_or_team_member(resolver):
    assert resolver.resolve_and_authorize("alice", "application", "app-a").scope_id == "app-a"
    assert resolver.resolve_and_authorize("bob", "application", "app-t1").scope_id == "app-t1"
    with pytest.raises(PermissionDenied):
        resolver.resolve_and_authorize("bob", "application", "app-a")
    with pytest.raises(NotFound):
        resolver.resolve_and_authorize("bob", "application", "nope")


def test_global_write_requires_system_admin(resolver):
    with pytest.raises(PermissionDenied):
        resolver.resolve_and_authorize("alice", "global")
    assert resolver.resolve_and_authorize("root", "global").scope == "global"


def test_admin_flag_from_credential_overrides_directory(resolver):
    context = RequestContext(auth=AuthContext(user_id="alice", is_admin=True))
    assert resolver.resolve_and_authorize("alice", "global", context=context).scope == "global"


def test_scope_id_rejected_for_personal(resolver):
    with pytest.raises(ValidationIssue) as excinfo:
        resolver.resolve_and_authorize("alice", "personal", "t1")
    assert excinfo.value.error_type == "invalid_combination"


def test_read_filter_unions_visible_scopes(resolver):
    scope_filter = resolver.read_filter("alice")
    assert scope_filter.include_personal
    assert scope_filter.include_global
    assert set(scope_filter.team_ids) == {"t1", "t2"}
    assert set(scope_filter.application_ids) == {"app-a", "app-t1"}


def test_read_filter_invisible_scope_id_is_empty(resolver):
    assert resolver.read_filter("bob", "team", "t3").empty
    assert not resolver.read_filter("bob", "team", "t1").empty


def test_team_bound_credential_reads_only_its_team(resolver):
    scope_filter = resolver.read_filter("alice", context=_team_credential("alice", "t2"))
    assert tuple(scope_filter.team_ids) == ("t2",)


def test_list_scopes_marks_global_writability(resolver):
    alice = resolver.list_scopes("alice")
    assert alice[0] == {"scope": "personal"}
    assert {item["id"] for item in alice if item["scope"] == "team"} == {"t1", "t2"}
    assert alice[-1] == {"scope": "global", "writable": False}
    assert resolver.list_scopes("root")[-1] == {"scope": "global", "writable": True}
