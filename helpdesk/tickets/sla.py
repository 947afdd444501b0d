"""Service level policy: priority driven deadlines and breach derivation."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Mapping

from .models import Ticket, TicketPriority, TicketSLA

RESPONSE_HOURS: Mapping[TicketPriority, int] = {
    TicketPriority.LOW: 48,
    TicketPriority.MEDIUM: 24,
    TicketPriority.HIGH: 8,
    TicketPriority.URGENT: 2,
}

RESOLUTION_HOURS: Mapping[TicketPriority, int] = {
    TicketPriority.LOW: 168,
    TicketPriority.MEDIUM: 72,
    TicketPriority.HIGH: 24,
    TicketPriority.URGENT: 8,
}


@dataclass(frozen=True, slots=True)
class BreachStatus:
    is_response_breached: bool
    is_resolution_breached: bool


def derive_sla(priority: TicketPriority, starts_at: datetime) -> TicketSLA:
    """Return SLA targets for ``priority`` counted from ``starts_at``.

    At creation ``starts_at`` is the creation time. When the priority of an
    existing ticket changes the caller passes the time of the change, so the
    SLA clock restarts from the moment of repriority.
    """

    response_hours = RESPONSE_HOURS[priority]
    resolution_hours = RESOLUTION_HOURS[priority]
    return TicketSLA(
        response_time_hours=response_hours,
        resolution_time_hours=resolution_hours,
        response_deadline=starts_at + timedelta(hours=response_hours),
        resolution_deadline=starts_at + timedelta(hours=resolution_hours),
    )


def check_breach(ticket: Ticket, now: datetime) -> BreachStatus:
    """Derive breach flags from milestones and deadlines at ``now``."""

    sla = ticket.sla
    return BreachStatus(
        is_response_breached=ticket.first_response_at is None and now > sla.response_deadline,
        is_resolution_breached=ticket.resolved_at is None and now > sla.resolution_deadline,
    )


def with_breach_flags(ticket: Ticket, now: datetime) -> Ticket:
    """Return a copy of ``ticket`` whose stored flags reflect ``now``."""

    status = check_breach(ticket, now)
    sla = replace(
        ticket.sla,
        is_response_breached=status.is_response_breached,
        is_resolution_breached=status.is_resolution_breached,
    )
    return replace(ticket, sla=sla)


def time_to_response(ticket: Ticket, now: datetime) -> timedelta | None:
    """Remaining time until the response deadline, ``None`` once responded."""

    if ticket.first_response_at is not None:
        return None
    return max(timedelta(0), ticket.sla.response_deadline - now)


def time_to_resolution(ticket: Ticket, now: datetime) -> timedelta | None:
    if ticket.resolved_at is not None:
        return None
    return max(timedelta(0), ticket.sla.resolution_deadline - now)
