from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Sequence

from .state import TicketStatus

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000
COMMENT_MAX_LENGTH = 2000
TIMELINE_DESCRIPTION_MAX_LENGTH = 500


class TicketPriority(str, Enum):
    """Urgency levels; each maps to its own SLA hour targets."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketCategory(str, Enum):
    TECHNICAL = "technical"
    BILLING = "billing"
    GENERAL = "general"
    FEATURE_REQUEST = "feature_request"


class CommentType(str, Enum):
    COMMENT = "comment"
    INTERNAL_NOTE = "internal_note"


class TimelineAction(str, Enum):
    """Action tags recorded on timeline events."""

    CREATED = "created"
    UPDATED = "updated"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    COMMENTED = "commented"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"
    SLA_BREACH = "sla_breach"


@dataclass(slots=True)
class TicketSLA:
    """Service level targets and derived breach flags for a ticket."""

    response_time_hours: int
    resolution_time_hours: int
    response_deadline: datetime
    resolution_deadline: datetime
    is_response_breached: bool = False
    is_resolution_breached: bool = False


@dataclass(slots=True)
class Ticket:
    """Aggregate root for a support ticket."""

    id: str
    title: str
    description: str
    status: TicketStatus
    priority: TicketPriority
    category: TicketCategory
    created_by: str
    assigned_to: str | None
    tags: Sequence[str]
    sla: TicketSLA
    version: int
    created_at: datetime
    updated_at: datetime
    first_response_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None


@dataclass(slots=True)
class Comment:
    """Reply or internal note attached to a ticket."""

    id: str
    ticket_id: str
    author_id: str
    content: str
    type: CommentType
    is_first_response: bool
    created_at: datetime


@dataclass(slots=True)
class TimelineEvent:
    """Immutable audit entry describing a single ticket action."""

    id: str
    ticket_id: str
    user_id: str
    action: TimelineAction
    description: str
    created_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)
    sequence: int = 0


@dataclass(slots=True)
class TicketAggregate:
    """Container bundling the ticket with its comments and timeline."""

    ticket: Ticket
    comments: Sequence[Comment]
    timeline: Sequence[TimelineEvent]


@dataclass(slots=True)
class TicketQuery:
    """Filter, sort and pagination options for ticket listings."""

    status: TicketStatus | None = None
    priority: TicketPriority | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    search: str | None = None
    breached: bool = False
    active_only: bool = False
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int | None = 20
    offset: int = 0


@dataclass(slots=True)
class TicketPage:
    tickets: Sequence[Ticket]
    total: int
    limit: int | None
    offset: int

    @property
    def next_offset(self) -> int | None:
        if self.limit is None:
            return None
        candidate = self.offset + self.limit
        return candidate if candidate < self.total else None


@dataclass(slots=True)
class DashboardStats:
    """Per-agent workload counters shown on the agent dashboard."""

    assigned_to_me: int
    in_progress: int
    breached: int
    pending_response: int
    resolved_today: int
