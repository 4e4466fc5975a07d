"""
MCP request context middleware.

Authentication happens upstream; the gateway forwards the verified identity
as headers. This middleware turns them into a RequestContext for the
duration of the request using contextvars (async-safe).
"""

from __future__ import annotations

import json
import os
import uuid
from typing import Optional

import core.config as config
from core.context import (
    AuthContext,
    RequestContext,
    get_current_request_context,
    reset_current_request_context,
    set_current_request_context,
)

USER_HEADER = "x-user-id"
SCOPE_TYPE_HEADER = "x-scope-type"
TEAM_HEADER = "x-team-id"
ADMIN_HEADER = "x-user-is-admin"
REQUEST_ID_HEADER = "x-request-id"


def get_current_context() -> RequestContext:
    """Get current request context, or an anonymous one if not set."""
    ctx = get_current_request_context()
    if ctx is not None:
        return ctx
    return RequestContext(auth=AuthContext(actor="anonymous"), source="mcp")


def _parse_admin_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def context_from_headers(headers: dict) -> Optional[RequestContext]:
    user_id = (headers.get(USER_HEADER) or "").strip()
    if not user_id:
        return None
    scope_type = (headers.get(SCOPE_TYPE_HEADER) or "user").strip().lower()
    if scope_type not in {"user", "team"}:
        scope_type = "user"
    team_id = (headers.get(TEAM_HEADER) or "").strip() or None
    auth_ctx = AuthContext(
        user_id=user_id,
        actor=user_id,
        scope_type=scope_type,
        team_id=team_id,
        is_admin=_parse_admin_flag(headers.get(ADMIN_HEADER)),
    )
    return RequestContext(
        auth=auth_ctx,
        request_id=headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4()),
        source="mcp",
    )


class MCPAuthMiddleware:
    """
    ASGI middleware that requires a forwarded identity and sets request context.
    """

    def __init__(self, app):
        self.app = app
        self.require_auth = os.environ.get("REQUIRE_MCP_AUTH", "true").lower() == "true"

    def __getattr__(self, name):
        return getattr(self.app, name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = {}
        for header_name, header_value in scope.get("headers", []):
            headers[header_name.decode("latin1").lower()] = header_value.decode("latin1")

        req_ctx = context_from_headers(headers)
        if req_ctx is None:
            if self.require_auth:
                config.logger.info("mcp_auth_missing_identity")
                await self._send_error(send, 401, "Authenticated identity required")
                return
            await self.app(scope, receive, send)
            return

        token = set_current_request_context(req_ctx)
        try:
            await self.app(scope, receive, send)
        finally:
            reset_current_request_context(token)

    async def _send_error(self, send, status_code: int, detail: str):
        """Send JSON error response."""
        body = json.dumps({"error": detail}).encode("utf-8")

        await send({
            "type": "http.response.start",
            "status": status_code,
            "headers": [
                [b"content-type", b"application/json"],
                [b"content-length", str(len(body)).encode("latin1")],
            ],
        })

        await send({
            "type": "http.response.body",
            "body": body,
        })
