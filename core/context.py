"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import contextvars


@dataclass(frozen=True)
class AuthContext:
    """Identity handed over by the auth layer.

    scope_type is "team" for credentials bound to a single team; team_id is
    then that team. is_admin is None when the auth layer did not decide it,
    in which case the user directory is consulted.
    """

    user_id: Optional[str] = None
    actor: Optional[str] = None
    scope_type: str = "user"
    team_id: Optional[str] = None
    is_admin: Optional[bool] = None

    @property
    def team_bound(self) -> bool:
        return self.scope_type == "team" and bool(self.team_id)


@dataclass(frozen=True)
class RequestContext:
    auth: AuthContext
    request_id: Optional[str] = None
    source: Optional[str] = None


_CURRENT_REQUEST_CONTEXT: contextvars.ContextVar[Optional["RequestContext"]] = contextvars.ContextVar(
    "scopemem_request_context",
    default=None,
)


def get_current_request_context() -> Optional["RequestContext"]:
    return _CURRENT_REQUEST_CONTEXT.get()


def set_current_request_context(context: Optional["RequestContext"]) -> contextvars.Token:
    return _CURRENT_REQUEST_CONTEXT.set(context)


def reset_current_request_context(token: contextvars.Token) -> None:
    _CURRENT_REQUEST_CONTEXT.reset(token)


def resolve_auth(context: Optional["RequestContext"], user_id: Optional[str] = None) -> AuthContext:
    """Return the auth context, defaulting to a plain user credential."""
    if context is not None and context.auth is not None:
        return context.auth
    return AuthContext(user_id=user_id)


def resolve_request_id(context: Optional["RequestContext"]) -> Optional[str]:
    if context is None:
        return None
    return context.request_id


__all__ = [
    "AuthContext",
    "RequestContext",
    "get_current_request_context",
    "set_current_request_context",
    "reset_current_request_context",
    "resolve_auth",
    "resolve_request_id",
]
