"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

from typing import Optional

from fastmcp import FastMCP

from core.mcp.auth_middleware import MCPAuthMiddleware, get_current_context
from core.services.memory_service import MemoryService

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP("ScopedMemory")


def mcp_tool(*args, **kwargs):
    """Register a tool with FastMCP and hand back the plain function."""
    def decorator(fn):
        mcp.tool(*args, **kwargs)(fn)
        return fn
    return decorator


class _ServiceHolder:
    service: Optional[MemoryService] = None


def bind_service(service: Optional[MemoryService]) -> None:
    _ServiceHolder.service = service


def get_service() -> MemoryService:
    if _ServiceHolder.service is None:
        raise RuntimeError("Memory service not initialized")
    return _ServiceHolder.service


def _call(method: str, **kwargs) -> dict:
    # A missing identity reaches the service as user_id=None and is rejected there
    context = get_current_context()
    user_id = context.auth.user_id if context.auth else None
    return getattr(get_service(), method)(user_id=user_id, context=context, **kwargs)


@mcp_tool()
def remember(
    content: str,
    tags: Optional[list[str]] = None,
    scope: Optional[str] = None,
    scope_id: Optional[str] = None,
    classification: Optional[str] = None,
    supersedes: Optional[str] = None,
    chat_id: Optional[str] = None,
) -> dict:
    """Store a memory. Near-duplicates in the same scope are superseded automatically."""
    return _call(
        "remember",
        content=content,
        tags=tags,
        scope=scope,
        scope_id=scope_id,
        classification=classification,
        supersedes=supersedes,
        chat_id=chat_id,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def recall(
    query: Optional[str] = None,
    tags: Optional[list[str]] = None,
    scope: Optional[str] = None,
    scope_id: Optional[str] = None,
    embedding_status: Optional[str] = None,
    chat_id: Optional[str] = None,
    limit: int = 50,
) -> dict:
    """Search memories across every scope you can see, or within one scope."""
    return _call(
        "recall",
        query=query,
        tags=tags,
        scope=scope,
        scope_id=scope_id,
        embedding_status=embedding_status,
        chat_id=chat_id,
        limit=limit,
    )


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def forget(memory_id: str) -> dict:
    """Delete a memory you authored, or one in a team you administer."""
    return _call("forget", memory_id=memory_id)


@mcp_tool()
def promote_memory(
    memory_id: str,
    target_scope: str,
    target_scope_id: Optional[str] = None,
) -> dict:
    """Copy a memory into a team, application or global scope."""
    return _call(
        "promote",
        memory_id=memory_id,
        target_scope=target_scope,
        target_scope_id=target_scope_id,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def list_scopes() -> dict:
    """List the scopes you can read from and write to."""
    return _call("list_scopes")


mcp_stream_app = MCPAuthMiddleware(mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
))


class MCPRouteNormalizerASGI:
    """Pure ASGI middleware - no response buffering."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") == "/mcp":
            scope = dict(scope)
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)
