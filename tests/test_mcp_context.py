import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("REQUIRE_MCP_AUTH", "false")

from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from core.mcp import server as mcp_server
from core.mcp.auth_middleware import MCPAuthMiddleware, context_from_headers, get_current_context


def _whoami(request):
    context = get_current_context()
    return JSONResponse({
        "user_id": context.auth.user_id,
        "team_id": context.auth.team_id,
        "team_bound": context.auth.team_bound,
        "request_id": context.request_id,
    })


def _client(require_auth: bool) -> TestClient:
    app = MCPAuthMiddleware(Starlette(routes=[Route("/whoami", _whoami)]))
    app.require_auth = require_auth
    return TestClient(app)


def test_forwarded_identity_sets_context():
    response = _client(True).get(
        "/whoami",
        headers={"x-user-id": "bob", "x-scope-type": "team", "x-team-id": "t1", "x-request-id": "req-1"},
    )
    assert response.status_code == 200
    assert response.json() == {"user_id": "bob", "team_id": "t1", "team_bound": True, "request_id": "req-1"}


def test_missing_identity_rejected_when_required():
    response = _client(True).get("/whoami")
    assert response.status_code == 401
    assert response.json()["error"] == "Authenticated identity required"


def test_missing_identity_is_anonymous_when_optional():
    response = _client(False).get("/whoami")
    assert response.json()["user_id"] is None


def test_unknown_scope_type_falls_back_to_user():
    context = context_from_headers({"x-user-id": "bob", "x-scope-type": "org", "x-user-is-admin": "yes"})
    assert context.auth.scope_type == "user"
    assert context.auth.is_admin is True
    assert context.request_id


def test_tools_call_the_bound_service(keyword_service):
    from core.context import reset_current_request_context, set_current_request_context

    mcp_server.bind_service(keyword_service)
    token = set_current_request_context(context_from_headers({"x-user-id": "alice"}))
    try:
        stored = mcp_server.remember(content="remember via tool", tags=["mcp"])
        assert stored["status"] == "stored"
        recalled = mcp_server.recall(query="via tool")
        assert recalled["count"] == 1
        assert mcp_server.list_scopes()["status"] == "ok"
        assert mcp_server.forget(memory_id=stored["memory"]["id"])["status"] == "deleted"
    finally:
        reset_current_request_context(token)
        mcp_server.bind_service(None)


def test_tools_without_identity_return_validation_error(keyword_service):
    mcp_server.bind_service(keyword_service)
    try:
        result = mcp_server.recall()
        assert result["status"] == "error"
        assert result["field"] == "user_id"
    finally:
        mcp_server.bind_service(None)
