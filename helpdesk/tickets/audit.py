"""Append-only audit trail for ticket mutations.

Timeline entries are written after the ticket itself. A failed audit write is
logged and swallowed so the caller still sees the committed mutation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol
from uuid import uuid4

from .models import TIMELINE_DESCRIPTION_MAX_LENGTH, TimelineAction, TimelineEvent

logger = logging.getLogger(__name__)


class TimelineWriter(Protocol):
    async def add_timeline_event(self, event: TimelineEvent) -> None:
        ...


def build_event(
    *,
    ticket_id: str,
    user_id: str,
    action: TimelineAction,
    description: str,
    created_at: datetime,
    details: Mapping[str, Any] | None = None,
    sequence: int = 0,
) -> TimelineEvent:
    """Create a timeline event, truncating the description to the stored limit.

    ``sequence`` orders events written by one mutation at the same timestamp.
    """

    return TimelineEvent(
        id=str(uuid4()),
        ticket_id=ticket_id,
        user_id=user_id,
        action=action,
        description=description[:TIMELINE_DESCRIPTION_MAX_LENGTH],
        details=dict(details or {}),
        created_at=created_at,
        sequence=sequence,
    )


class AuditLog:
    def __init__(self, writer: TimelineWriter) -> None:
        self._writer = writer

    async def record(self, event: TimelineEvent) -> bool:
        try:
            await self._writer.add_timeline_event(event)
        except Exception:
            logger.exception(
                "Failed to record %s event for ticket %s", event.action.value, event.ticket_id
            )
            return False
        logger.debug("Recorded %s event for ticket %s", event.action.value, event.ticket_id)
        return True

    async def record_many(self, events: Iterable[TimelineEvent]) -> int:
        """Record ``events`` in order and return how many were written."""

        written = 0
        for event in events:
            if await self.record(event):
                written += 1
        return written
