"""Declarative authorization policy for ticket reads and mutations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .models import CommentType, Ticket


class Role(str, Enum):
    """Supported roles."""

    USER = "user"
    AGENT = "agent"
    ADMIN = "admin"


STAFF_ROLES: frozenset[Role] = frozenset({Role.AGENT, Role.ADMIN})

STAFF_EDITABLE_FIELDS: frozenset[str] = frozenset(
    {"status", "priority", "assigned_to", "title", "description", "category", "tags"}
)
OWNER_EDITABLE_FIELDS: frozenset[str] = frozenset({"title", "description"})


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated identity acting on tickets."""

    id: str
    name: str
    role: Role
    email: str | None = None
    is_active: bool = True

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass(frozen=True, slots=True)
class AuthorizationDecision:
    """Outcome of evaluating a field change request."""

    allowed_fields: frozenset[str]
    denied_fields: frozenset[str]
    has_standing: bool

    @property
    def forbidden(self) -> bool:
        return not self.has_standing or not self.allowed_fields


class AuthorizationPolicy:
    """Single evaluation point for every ticket entry point.

    Staff (agents and admins) may edit the full field table; the requesting
    user may edit title and description of their own tickets. Fields outside
    the actor's table are dropped rather than rejected.
    """

    _FIELD_TABLE: Mapping[str, frozenset[str]] = {
        "staff": STAFF_EDITABLE_FIELDS,
        "owner": OWNER_EDITABLE_FIELDS,
    }

    @staticmethod
    def is_owner(actor: Actor, ticket: Ticket) -> bool:
        return ticket.created_by == actor.id

    def standing(self, actor: Actor, ticket: Ticket) -> str | None:
        if actor.is_staff:
            return "staff"
        if self.is_owner(actor, ticket):
            return "owner"
        return None

    def authorize_update(
        self, actor: Actor, ticket: Ticket, requested: Mapping[str, Any]
    ) -> AuthorizationDecision:
        standing = self.standing(actor, ticket)
        if standing is None:
            return AuthorizationDecision(
                allowed_fields=frozenset(),
                denied_fields=frozenset(requested),
                has_standing=False,
            )

        editable = self._FIELD_TABLE[standing]
        allowed: set[str] = set()
        denied: set[str] = set()
        for name, value in requested.items():
            if name not in editable:
                denied.add(name)
            elif name == "assigned_to" and not self.can_assign(actor, value):
                denied.add(name)
            else:
                allowed.add(name)
        return AuthorizationDecision(
            allowed_fields=frozenset(allowed),
            denied_fields=frozenset(denied),
            has_standing=True,
        )

    @staticmethod
    def can_assign(actor: Actor, assignee_id: Any) -> bool:
        """Agents may only (un)assign themselves; admins may target anyone."""

        if actor.role == Role.ADMIN:
            return True
        if actor.role == Role.AGENT:
            return not assignee_id or str(assignee_id) == actor.id
        return False

    def can_view(self, actor: Actor, ticket: Ticket) -> bool:
        return self.standing(actor, ticket) is not None

    def can_comment(self, actor: Actor, ticket: Ticket, comment_type: CommentType) -> bool:
        if comment_type == CommentType.INTERNAL_NOTE:
            return actor.is_staff
        return self.can_view(actor, ticket)

    @staticmethod
    def can_see_internal_notes(actor: Actor) -> bool:
        return actor.is_staff

    @staticmethod
    def can_bulk_assign(actor: Actor) -> bool:
        return actor.role == Role.ADMIN
