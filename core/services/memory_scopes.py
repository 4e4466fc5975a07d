"""
Scope resolution and authorization for memory reads and writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import and_, false, or_

from core.context import AuthContext, RequestContext, resolve_auth
from core.errors import NotFound, PermissionDenied, ValidationIssue
from core.models import (
    Application,
    Memory,
    MemoryScope,
    SCOPES,
    SCOPES_WITH_ID,
    Team,
    TeamMembership,
    TeamRole,
    User,
)

PERSONAL = MemoryScope.personal.value
TEAM = MemoryScope.team.value
APPLICATION = MemoryScope.application.value
GLOBAL = MemoryScope.global_.value


@dataclass(frozen=True)
class TeamRef:
    id: str
    name: str


@dataclass(frozen=True)
class ApplicationRef:
    id: str
    name: str
    team_id: Optional[str]
    created_by: str


@dataclass(frozen=True)
class ResolvedScope:
    scope: str
    scope_id: Optional[str] = None


# =============================================================================
# Directory
# =============================================================================

class MembershipDirectory:
    """Read-only view of users, teams and applications."""

    def is_system_admin(self, user_id: str) -> bool:
        raise NotImplementedError

    def team_exists(self, team_id: str) -> bool:
        raise NotImplementedError

    def team_role(self, user_id: str, team_id: str) -> Optional[str]:
        raise NotImplementedError

    def get_application(self, application_id: str) -> Optional[ApplicationRef]:
        raise NotImplementedError

    def list_teams(self, user_id: str) -> List[TeamRef]:
        raise NotImplementedError

    def list_applications(self, user_id: str) -> List[ApplicationRef]:
        """Applications the user owns plus those owned by the user's teams."""
        raise NotImplementedError

    def is_team_member(self, user_id: str, team_id: str) -> bool:
        return self.team_role(user_id, team_id) is not None

    def is_team_admin(self, user_id: str, team_id: str) -> bool:
        return self.team_role(user_id, team_id) == TeamRole.admin.value

    def team_ids_for(self, user_id: str) -> List[str]:
        return [team.id for team in self.list_teams(user_id)]

    def application_ids_for(self, user_id: str) -> List[str]:
        return [app.id for app in self.list_applications(user_id)]


class SqlMembershipDirectory(MembershipDirectory):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def is_system_admin(self, user_id: str) -> bool:
        db = self._session_factory()
        try:
            user = db.query(User.is_admin).filter(User.id == user_id).first()
            return bool(user and user.is_admin)
        finally:
            db.close()

    def team_exists(self, team_id: str) -> bool:
        db = self._session_factory()
        try:
            return db.query(Team.id).filter(Team.id == team_id).first() is not None
        finally:
            db.close()

    def team_role(self, user_id: str, team_id: str) -> Optional[str]:
        db = self._session_factory()
        try:
            row = (
                db.query(TeamMembership.role)
                .filter(TeamMembership.user_id == user_id, TeamMembership.team_id == team_id)
                .first()
            )
            return row.role if row else None
        finally:
            db.close()

    def get_application(self, application_id: str) -> Optional[ApplicationRef]:
        db = self._session_factory()
        try:
            app = db.query(Application).filter(Application.id == application_id).first()
            if app is None:
                return None
            return ApplicationRef(
                id=app.id,
                name=app.name,
                team_id=app.team_id,
                created_by=app.created_by,
            )
        finally:
            db.close()

    def list_teams(self, user_id: str) -> List[TeamRef]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Team.id, Team.name)
                .join(TeamMembership, TeamMembership.team_id == Team.id)
                .filter(TeamMembership.user_id == user_id)
                .order_by(Team.name.asc())
                .all()
            )
            return [TeamRef(id=row.id, name=row.name) for row in rows]
        finally:
            db.close()

    def list_applications(self, user_id: str) -> List[ApplicationRef]:
        db = self._session_factory()
        try:
            team_ids = db.query(TeamMembership.team_id).filter(TeamMembership.user_id == user_id)
            rows = (
                db.query(Application)
                .filter(
                    or_(
                        Application.created_by == user_id,
                        Application.team_id.in_(team_ids.scalar_subquery()),
                    )
                )
                .order_by(Application.name.asc())
                .all()
            )
            return [
                ApplicationRef(id=app.id, name=app.name, team_id=app.team_id, created_by=app.created_by)
                for app in rows
            ]
        finally:
            db.close()


# =============================================================================
# Read-side filter
# =============================================================================

@dataclass(frozen=True)
class ScopeFilter:
    """Which memories a caller may see. An empty filter matches nothing."""

    user_id: str
    include_personal: bool = False
    team_ids: Sequence[str] = field(default_factory=tuple)
    application_ids: Sequence[str] = field(default_factory=tuple)
    include_global: bool = False

    @property
    def empty(self) -> bool:
        return not (
            self.include_personal or self.team_ids or self.application_ids or self.include_global
        )

    def allows(self, memory: Memory) -> bool:
        if memory.scope == PERSONAL:
            return self.include_personal and memory.author_id == self.user_id
        if memory.scope == TEAM:
            return memory.scope_id in self.team_ids
        if memory.scope == APPLICATION:
            return memory.scope_id in self.application_ids
        return self.include_global

    def clause(self):
        clauses = []
        if self.include_personal:
            clauses.append(and_(Memory.scope == PERSONAL, Memory.author_id == self.user_id))
        if self.team_ids:
            clauses.append(and_(Memory.scope == TEAM, Memory.scope_id.in_(list(self.team_ids))))
        if self.application_ids:
            clauses.append(
                and_(Memory.scope == APPLICATION, Memory.scope_id.in_(list(self.application_ids)))
            )
        if self.include_global:
            clauses.append(Memory.scope == GLOBAL)
        if not clauses:
            return false()
        return or_(*clauses)


# =============================================================================
# Resolver
# =============================================================================

def _check_scope_value(scope: Optional[str], scope_id: Optional[str], field_name: str = "scope") -> None:
    if scope is None:
        return
    if scope not in SCOPES:
        raise ValidationIssue(
            f"{field_name} must be one of: {', '.join(SCOPES)}",
            field=field_name,
            error_type="invalid_value",
        )
    if scope not in SCOPES_WITH_ID and scope_id is not None:
        raise ValidationIssue(
            f"scope_id is not allowed with {scope} scope",
            field="scope_id",
            error_type="invalid_combination",
        )


class ScopeResolver:
    def __init__(self, directory: MembershipDirectory):
        self.directory = directory

    def is_system_admin(self, user_id: str, auth: AuthContext) -> bool:
        if auth.is_admin is not None:
            return auth.is_admin
        return self.directory.is_system_admin(user_id)

    def resolve_and_authorize(
        self,
        user_id: str,
        scope: Optional[str] = None,
        scope_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        *,
        field_name: str = "scope",
    ) -> ResolvedScope:
        """Effective (scope, scope_id) for a write by user_id, or raise."""
        auth = resolve_auth(context, user_id)
        _check_scope_value(scope, scope_id, field_name)

        effective = scope
        if effective is None:
            effective = TEAM if auth.team_bound else PERSONAL

        if effective == PERSONAL:
            return ResolvedScope(PERSONAL)

        if effective == GLOBAL:
            if not self.is_system_admin(user_id, auth):
                raise PermissionDenied("Only system administrators can write global memories", field=field_name)
            return ResolvedScope(GLOBAL)

        if effective == TEAM:
            team_id = scope_id or (auth.team_id if auth.team_bound else None)
            if not team_id:
                raise ValidationIssue(
                    "scope_id is required for team scope",
                    field="scope_id",
                    error_type="required",
                )
            if not self.directory.team_exists(team_id):
                raise NotFound(f"Team not found: {team_id}", field="scope_id")
            if not self.directory.is_team_member(user_id, team_id):
                raise PermissionDenied("You are not a member of this team", field="scope_id")
            return ResolvedScope(TEAM, team_id)

        if not scope_id:
            raise ValidationIssue(
                "scope_id is required for application scope",
                field="scope_id",
                error_type="required",
            )
        app = self.directory.get_application(scope_id)
        if app is None:
            raise NotFound(f"Application not found: {scope_id}", field="scope_id")
        if app.created_by != user_id and not (
            app.team_id and self.directory.is_team_member(user_id, app.team_id)
        ):
            raise PermissionDenied("You do not have access to this application", field="scope_id")
        return ResolvedScope(APPLICATION, app.id)

    def visible_team_ids(self, user_id: str, auth: AuthContext) -> List[str]:
        if auth.team_bound:
            return [auth.team_id]
        return self.directory.team_ids_for(user_id)

    def read_filter(
        self,
        user_id: str,
        scope: Optional[str] = None,
        scope_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> ScopeFilter:
        """Visibility for a read. A scope_id the caller cannot see yields an empty filter."""
        auth = resolve_auth(context, user_id)
        _check_scope_value(scope, scope_id)

        if scope == PERSONAL:
            return ScopeFilter(user_id=user_id, include_personal=True)
        if scope == GLOBAL:
            return ScopeFilter(user_id=user_id, include_global=True)

        team_ids: List[str] = []
        app_ids: List[str] = []
        if scope in (None, TEAM):
            team_ids = self.visible_team_ids(user_id, auth)
        if scope in (None, APPLICATION):
            app_ids = self.directory.application_ids_for(user_id)

        if scope == TEAM:
            if scope_id is not None:
                team_ids = [scope_id] if scope_id in team_ids else []
            return ScopeFilter(user_id=user_id, team_ids=tuple(team_ids))
        if scope == APPLICATION:
            if scope_id is not None:
                app_ids = [scope_id] if scope_id in app_ids else []
            return ScopeFilter(user_id=user_id, application_ids=tuple(app_ids))

        return ScopeFilter(
            user_id=user_id,
            include_personal=True,
            team_ids=tuple(team_ids),
            application_ids=tuple(app_ids),
            include_global=True,
        )

    def authorize_delete(self, memory: Memory, user_id: str, context: Optional[RequestContext] = None) -> None:
        auth = resolve_auth(context, user_id)
        is_author = memory.author_id == user_id

        if memory.scope == PERSONAL:
            allowed = is_author
        elif memory.scope == TEAM:
            allowed = is_author or self.directory.is_team_admin(user_id, memory.scope_id)
        elif memory.scope == APPLICATION:
            app = self.directory.get_application(memory.scope_id)
            allowed = is_author or bool(
                app and app.team_id and self.directory.is_team_admin(user_id, app.team_id)
            )
        else:
            allowed = self.is_system_admin(user_id, auth)

        if not allowed:
            raise PermissionDenied(
                f"You do not have permission to delete this {memory.scope} memory",
                field="memory_id",
            )

    def list_scopes(self, user_id: str, context: Optional[RequestContext] = None) -> List[dict]:
        auth = resolve_auth(context, user_id)
        scopes: List[dict] = [{"scope": PERSONAL}]
        teams = self.directory.list_teams(user_id)
        if auth.team_bound:
            teams = [team for team in teams if team.id == auth.team_id]
        scopes.extend({"scope": TEAM, "id": team.id, "name": team.name} for team in teams)
        scopes.extend(
            {"scope": APPLICATION, "id": app.id, "name": app.name}
            for app in self.directory.list_applications(user_id)
        )
        scopes.append({"scope": GLOBAL, "writable": self.is_system_admin(user_id, auth)})
        return scopes


__all__ = [
    "TeamRef",
    "ApplicationRef",
    "ResolvedScope",
    "MembershipDirectory",
    "SqlMembershipDirectory",
    "ScopeFilter",
    "ScopeResolver",
    "PERSONAL",
    "TEAM",
    "APPLICATION",
    "GLOBAL",
]
