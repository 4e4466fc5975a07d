from core.mcp.server import (
    mcp,
    mcp_stream_app,
    bind_service,
    get_service,
    MCPRouteNormalizerASGI,
)

__all__ = [
    "mcp",
    "mcp_stream_app",
    "bind_service",
    "get_service",
    "MCPRouteNormalizerASGI",
]
