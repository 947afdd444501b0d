from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    Without a transition table every status may move to every other status;
    agents reopen and revert tickets freely. Passing ``transitions`` restricts
    moves to the listed targets.
    """

    def __init__(self, transitions: Mapping[TicketStatus, Sequence[TicketStatus]] | None = None) -> None:
        self._transitions = transitions

    @staticmethod
    def initial_state() -> TicketStatus:
        return TicketStatus.OPEN

    def can_transition(self, current: TicketStatus, target: TicketStatus) -> bool:
        if current == target or self._transitions is None:
            return True
        return target in self._transitions.get(current, ())

    def assert_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        if not self.can_transition(current, target):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {target.value}")
