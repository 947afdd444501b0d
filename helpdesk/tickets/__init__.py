"""Ticket lifecycle engine: models, policies, persistence and orchestration."""

from .audit import AuditLog
from .authorization import Actor, AuthorizationPolicy, Role
from .errors import (
    InvalidAssigneeError,
    InvalidTicketTransitionError,
    StaleUpdateError,
    TicketAuthorizationError,
    TicketNotFoundError,
    TicketServiceError,
    TicketValidationError,
)
from .models import Comment, Ticket, TicketAggregate, TicketPage, TicketQuery, TimelineEvent
from .repository import TicketRepository
from .service import TicketService
from .state import TicketStateMachine, TicketStatus

__all__ = [
    "Actor",
    "AuditLog",
    "AuthorizationPolicy",
    "Comment",
    "InvalidAssigneeError",
    "InvalidTicketTransitionError",
    "Role",
    "StaleUpdateError",
    "Ticket",
    "TicketAggregate",
    "TicketAuthorizationError",
    "TicketNotFoundError",
    "TicketPage",
    "TicketQuery",
    "TicketRepository",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
    "TicketValidationError",
    "TimelineEvent",
]
