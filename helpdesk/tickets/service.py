from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence
from uuid import uuid4

from opentelemetry import trace

from .audit import AuditLog, build_event
from .authorization import STAFF_ROLES, Actor, AuthorizationPolicy
from .changes import (
    FieldChange,
    coerce_assignee,
    coerce_category,
    coerce_enum,
    coerce_priority,
    coerce_status,
    coerce_tags,
    coerce_text,
    diff_fields,
    normalize_changes,
)
from .clock import Clock, SystemClock
from .directory import UserDirectory, display_name
from .errors import (
    InvalidAssigneeError,
    InvalidTicketTransitionError,
    StaleUpdateError,
    TicketAuthorizationError,
    TicketNotFoundError,
    TicketValidationError,
)
from .models import (
    COMMENT_MAX_LENGTH,
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    Comment,
    CommentType,
    DashboardStats,
    Ticket,
    TicketAggregate,
    TicketCategory,
    TicketPage,
    TicketPriority,
    TicketQuery,
    TimelineAction,
    TimelineEvent,
)
from .repository import SORTABLE_FIELDS, TicketRepository
from .sla import derive_sla, with_breach_flags
from .state import TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_PAGE_SIZE = 100

_FIELD_LABELS = {
    "title": "Title",
    "description": "Description",
    "category": "Category",
    "tags": "Tags",
}


class TicketService:
    """Orchestrates ticket mutations: authorization, SLA upkeep, versioned writes and audit.

    Every write is a compare-and-swap on the ticket version read at the start
    of the operation. Losing that race surfaces as :class:`StaleUpdateError`
    and nothing is written; the caller re-reads and retries.
    """

    def __init__(
        self,
        repository: TicketRepository,
        directory: UserDirectory,
        *,
        audit_log: AuditLog | None = None,
        clock: Clock | None = None,
        policy: AuthorizationPolicy | None = None,
        state_machine: TicketStateMachine | None = None,
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.audit_log = audit_log or AuditLog(repository)
        self.clock = clock or SystemClock()
        self.policy = policy or AuthorizationPolicy()
        self.state_machine = state_machine or TicketStateMachine()

    async def ensure_schema(self) -> None:
        await self.repository.ensure_schema()

    # Reads

    async def get_ticket(self, actor: Actor, ticket_id: str) -> TicketAggregate:
        ticket = await self._load(ticket_id)
        if not self.policy.can_view(actor, ticket):
            raise TicketAuthorizationError("Access denied")

        staff_view = self.policy.can_see_internal_notes(actor)
        comments = await self.repository.list_comments(ticket_id, include_internal=staff_view)
        timeline = await self.repository.list_timeline(ticket_id)
        if not staff_view:
            timeline = [event for event in timeline if not _is_internal_note_event(event)]
        return TicketAggregate(
            ticket=with_breach_flags(ticket, self.clock.now()),
            comments=comments,
            timeline=timeline,
        )

    async def list_tickets(self, actor: Actor, query: TicketQuery) -> TicketPage:
        query = self._validate_query(query)
        if not actor.is_staff:
            query = replace(query, created_by=actor.id, breached=False)

        now = self.clock.now()
        with tracer.start_as_current_span("tickets.list"):
            tickets, total = await self.repository.query_tickets(query, now=now)
        return TicketPage(
            tickets=[with_breach_flags(ticket, now) for ticket in tickets],
            total=total,
            limit=query.limit,
            offset=query.offset,
        )

    async def list_breached(self, actor: Actor) -> list[Ticket]:
        self._require_staff(actor, "Only agents and admins can view SLA breaches")
        now = self.clock.now()
        query = TicketQuery(
            breached=True,
            active_only=True,
            sort_by="resolution_deadline",
            sort_order="asc",
            limit=None,
        )
        tickets, _ = await self.repository.query_tickets(query, now=now)
        return [with_breach_flags(ticket, now) for ticket in tickets]

    async def agent_dashboard(self, actor: Actor) -> DashboardStats:
        self._require_staff(actor, "Only agents and admins can view the dashboard")
        now = self.clock.now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.repository.dashboard_counts(actor.id, now=now, day_start=day_start)

    # Mutations

    async def create_ticket(
        self,
        actor: Actor,
        *,
        title: Any,
        description: Any,
        priority: Any = None,
        category: Any = None,
        tags: Any = None,
    ) -> Ticket:
        title = coerce_text("title", title, max_length=TITLE_MAX_LENGTH)
        description = coerce_text("description", description, max_length=DESCRIPTION_MAX_LENGTH)
        resolved_priority = TicketPriority.MEDIUM if priority is None else coerce_priority(priority)
        resolved_category = TicketCategory.GENERAL if category is None else coerce_category(category)

        now = self.clock.now()
        ticket = Ticket(
            id=str(uuid4()),
            title=title,
            description=description,
            status=self.state_machine.initial_state(),
            priority=resolved_priority,
            category=resolved_category,
            created_by=actor.id,
            assigned_to=None,
            tags=coerce_tags(tags),
            sla=derive_sla(resolved_priority, now),
            version=0,
            created_at=now,
            updated_at=now,
        )
        with tracer.start_as_current_span("tickets.create") as span:
            span.set_attribute("ticket.id", ticket.id)
            await self.repository.create_ticket(ticket)

        await self.audit_log.record(
            build_event(
                ticket_id=ticket.id,
                user_id=actor.id,
                action=TimelineAction.CREATED,
                description=f"Ticket created by {actor.name}",
                created_at=now,
                details={
                    "priority": resolved_priority.value,
                    "category": resolved_category.value,
                },
            )
        )
        logger.info("Ticket %s created by %s", ticket.id, actor.id)
        return ticket

    async def apply_update(
        self,
        actor: Actor,
        ticket_id: str,
        changes: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> Ticket:
        """Apply a partial field update on behalf of ``actor``.

        Checks run in a fixed order: missing ticket, stale ``expected_version``,
        empty ``changes``, then authorization. Fields the actor may not edit are dropped; if none
        remain the request is forbidden. A request whose typed values all equal
        the stored ones returns the ticket untouched.
        """

        ticket = await self._load(ticket_id)
        if expected_version is not None and expected_version != ticket.version:
            raise StaleUpdateError()
        if not changes:
            raise TicketValidationError("No fields to update", code="INVALID_INPUT")

        decision = self.policy.authorize_update(actor, ticket, changes)
        if decision.forbidden:
            raise TicketAuthorizationError("You do not have permission to modify this ticket")
        if decision.denied_fields:
            logger.info(
                "Dropped fields %s from update of ticket %s by %s",
                sorted(decision.denied_fields),
                ticket_id,
                actor.id,
            )

        normalized = normalize_changes(
            {name: value for name, value in changes.items() if name in decision.allowed_fields}
        )
        if "assigned_to" in normalized:
            await self._check_assignee(normalized["assigned_to"])
        return await self._commit(actor, ticket, normalized)

    async def assign(self, actor: Actor, ticket_id: str, assignee_id: Any) -> Ticket:
        self._require_staff(actor, "Only agents and admins can assign tickets")
        assignee_id = coerce_assignee(assignee_id)

        ticket = await self._load(ticket_id)
        if not self.policy.can_assign(actor, assignee_id):
            raise TicketAuthorizationError("Agents can only assign tickets to themselves")
        await self._check_assignee(assignee_id)

        now = self.clock.now()
        if _same_assignee(ticket.assigned_to, assignee_id):
            return with_breach_flags(ticket, now)
        stored = await self._write_assignment(actor, ticket, assignee_id, now)
        if stored is None:
            raise StaleUpdateError()
        return stored

    async def set_status(self, actor: Actor, ticket_id: str, status: Any) -> Ticket:
        self._require_staff(actor, "Only agents and admins can change ticket status")
        target = coerce_status(status)
        ticket = await self._load(ticket_id)
        return await self._commit(actor, ticket, {"status": target})

    async def set_priority(self, actor: Actor, ticket_id: str, priority: Any) -> Ticket:
        self._require_staff(actor, "Only agents and admins can change ticket priority")
        target = coerce_priority(priority)
        ticket = await self._load(ticket_id)
        return await self._commit(actor, ticket, {"priority": target})

    async def bulk_assign(self, actor: Actor, ticket_ids: Sequence[str], assignee_id: Any) -> int:
        """Assign every existing ticket in ``ticket_ids`` and return how many changed.

        Unknown ids, tickets already held by the target and tickets that lose a
        concurrent write are skipped.
        """

        if not self.policy.can_bulk_assign(actor):
            raise TicketAuthorizationError("Only admins can bulk assign tickets")
        if (
            not isinstance(ticket_ids, (list, tuple))
            or not ticket_ids
            or not all(isinstance(ticket_id, str) for ticket_id in ticket_ids)
        ):
            raise TicketValidationError(
                "Ticket IDs must be a non-empty array", code="INVALID_INPUT", field="ticket_ids"
            )
        assignee_id = coerce_assignee(assignee_id)
        await self._check_assignee(assignee_id)

        modified = 0
        with tracer.start_as_current_span("tickets.bulk_assign") as span:
            for ticket_id in dict.fromkeys(ticket_ids):
                ticket = await self.repository.get_ticket(ticket_id)
                if ticket is None:
                    logger.info("Bulk assignment skipped missing ticket %s", ticket_id)
                    continue
                if _same_assignee(ticket.assigned_to, assignee_id):
                    continue
                stored = await self._write_assignment(
                    actor, ticket, assignee_id, self.clock.now(), bulk=True
                )
                if stored is None:
                    logger.warning("Bulk assignment lost a concurrent write on ticket %s", ticket_id)
                    continue
                modified += 1
            span.set_attribute("tickets.modified", modified)
        logger.info("Bulk assignment by %s modified %d tickets", actor.id, modified)
        return modified

    async def add_comment(
        self,
        actor: Actor,
        ticket_id: str,
        content: Any,
        comment_type: Any = CommentType.COMMENT,
    ) -> Comment:
        content = coerce_text("content", content, max_length=COMMENT_MAX_LENGTH)
        kind = coerce_enum("type", comment_type, CommentType)

        ticket = await self._load(ticket_id)
        if not self.policy.can_view(actor, ticket):
            raise TicketAuthorizationError("Access denied")
        if not self.policy.can_comment(actor, ticket, kind):
            raise TicketAuthorizationError("Users cannot create internal notes")

        now = self.clock.now()
        draft = Comment(
            id=str(uuid4()),
            ticket_id=ticket.id,
            author_id=actor.id,
            content=content,
            type=kind,
            is_first_response=False,
            created_at=now,
        )
        with tracer.start_as_current_span("tickets.add_comment") as span:
            span.set_attribute("ticket.id", ticket.id)
            comment, claimed = await self.repository.record_comment(
                draft, claim_first_response=kind == CommentType.COMMENT
            )

        label = "Internal note" if kind == CommentType.INTERNAL_NOTE else "Comment"
        await self.audit_log.record(
            build_event(
                ticket_id=ticket.id,
                user_id=actor.id,
                action=TimelineAction.COMMENTED,
                description=f"{label} added by {actor.name}",
                created_at=now,
                details={
                    "commentId": comment.id,
                    "type": kind.value,
                    "isFirstResponse": claimed,
                },
            )
        )
        if claimed:
            logger.info("First response recorded on ticket %s by %s", ticket.id, actor.id)
        return comment

    # Internals

    async def _load(self, ticket_id: str) -> Ticket:
        ticket = await self.repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    @staticmethod
    def _require_staff(actor: Actor, message: str) -> None:
        if not actor.is_staff:
            raise TicketAuthorizationError(message)

    @staticmethod
    def _validate_query(query: TicketQuery) -> TicketQuery:
        if query.sort_by not in SORTABLE_FIELDS:
            raise TicketValidationError(
                f"Cannot sort by {query.sort_by}", code="INVALID_INPUT", field="sort_by"
            )
        if query.sort_order not in ("asc", "desc"):
            raise TicketValidationError(
                "Sort order must be asc or desc", code="INVALID_INPUT", field="sort_order"
            )
        if query.offset < 0:
            raise TicketValidationError("Offset cannot be negative", code="INVALID_INPUT", field="offset")
        if query.limit is not None:
            if query.limit < 1:
                raise TicketValidationError("Limit must be positive", code="INVALID_INPUT", field="limit")
            query = replace(query, limit=min(query.limit, MAX_PAGE_SIZE))
        return query

    async def _check_assignee(self, assignee_id: str | None) -> None:
        if assignee_id is None:
            return
        user = await self.directory.get_user(assignee_id)
        if user is None or not user.is_active or user.role not in STAFF_ROLES:
            raise InvalidAssigneeError()

    def _check_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        try:
            self.state_machine.assert_transition(current, target)
        except ValueError as exc:
            raise InvalidTicketTransitionError(str(exc)) from exc

    async def _commit(self, actor: Actor, ticket: Ticket, normalized: Mapping[str, Any]) -> Ticket:
        if "status" in normalized:
            self._check_transition(ticket.status, normalized["status"])

        now = self.clock.now()
        changes = diff_fields(ticket, normalized)
        if not changes:
            return with_breach_flags(ticket, now)

        with tracer.start_as_current_span("tickets.update") as span:
            span.set_attribute("ticket.id", ticket.id)
            span.set_attribute("ticket.fields", [change.field for change in changes])
            stored = await self.repository.update_ticket(
                _apply_changes(ticket, changes, now), expected_version=ticket.version
            )
        if stored is None:
            raise StaleUpdateError()

        events = [
            await self._describe(actor, stored, change, sequence=index)
            for index, change in enumerate(changes)
        ]
        await self.audit_log.record_many(events)
        logger.info(
            "Ticket %s updated to version %d by %s (%s)",
            stored.id,
            stored.version,
            actor.id,
            ", ".join(change.field for change in changes),
        )
        return stored

    async def _describe(
        self, actor: Actor, ticket: Ticket, change: FieldChange, *, sequence: int = 0
    ) -> TimelineEvent:
        details = change.as_details()
        if change.field == "status":
            action = TimelineAction.STATUS_CHANGED
            description = (
                f"Status changed from {change.old_value.value} to {change.new_value.value} by {actor.name}"
            )
        elif change.field == "priority":
            action = TimelineAction.PRIORITY_CHANGED
            description = (
                f"Priority changed from {change.old_value.value} to {change.new_value.value} "
                f"by {actor.name} (SLA deadlines recomputed)"
            )
            details["responseDeadline"] = ticket.sla.response_deadline.isoformat()
            details["resolutionDeadline"] = ticket.sla.resolution_deadline.isoformat()
        elif change.field == "assigned_to":
            action = TimelineAction.UPDATED
            old_name = await display_name(self.directory, change.old_value)
            new_name = await display_name(self.directory, change.new_value)
            description = f"Assignment changed from {old_name} to {new_name} by {actor.name}"
        else:
            action = TimelineAction.UPDATED
            description = f"{_FIELD_LABELS[change.field]} updated by {actor.name}"
        return build_event(
            ticket_id=ticket.id,
            user_id=actor.id,
            action=action,
            description=description,
            created_at=ticket.updated_at,
            details=details,
            sequence=sequence,
        )

    async def _write_assignment(
        self,
        actor: Actor,
        ticket: Ticket,
        assignee_id: str | None,
        now: datetime,
        *,
        bulk: bool = False,
    ) -> Ticket | None:
        updated = with_breach_flags(replace(ticket, assigned_to=assignee_id, updated_at=now), now)
        stored = await self.repository.update_ticket(updated, expected_version=ticket.version)
        if stored is None:
            return None

        old_name = await display_name(self.directory, ticket.assigned_to)
        new_name = await display_name(self.directory, assignee_id)
        if assignee_id is None:
            action = TimelineAction.UNASSIGNED
            description = f"Ticket unassigned from {old_name} by {actor.name}"
        elif ticket.assigned_to is None:
            action = TimelineAction.ASSIGNED
            description = f"Ticket assigned to {new_name} by {actor.name}"
        else:
            action = TimelineAction.ASSIGNED
            description = f"Assignment changed from {old_name} to {new_name} by {actor.name}"
        if bulk:
            description += " (bulk operation)"

        details = FieldChange("assigned_to", ticket.assigned_to, assignee_id).as_details()
        details["bulk"] = bulk
        await self.audit_log.record(
            build_event(
                ticket_id=ticket.id,
                user_id=actor.id,
                action=action,
                description=description,
                created_at=now,
                details=details,
            )
        )
        return stored


def _apply_changes(ticket: Ticket, changes: Iterable[FieldChange], now: datetime) -> Ticket:
    values = {change.field: change.new_value for change in changes}
    updated = replace(ticket, updated_at=now, **values)
    if "priority" in values:
        updated = replace(updated, sla=derive_sla(values["priority"], now))
    if "status" in values:
        if values["status"] == TicketStatus.RESOLVED and updated.resolved_at is None:
            updated = replace(updated, resolved_at=now)
        if values["status"] == TicketStatus.CLOSED and updated.closed_at is None:
            updated = replace(updated, closed_at=now)
    return with_breach_flags(updated, now)


def _same_assignee(current: str | None, target: str | None) -> bool:
    if current is None or target is None:
        return current is None and target is None
    return str(current) == str(target)


def _is_internal_note_event(event: TimelineEvent) -> bool:
    return (
        event.action == TimelineAction.COMMENTED
        and event.details.get("type") == CommentType.INTERNAL_NOTE.value
    )
