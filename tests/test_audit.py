import logging
from datetime import datetime, timezone

import pytest

from helpdesk.tickets.audit import AuditLog, build_event
from helpdesk.tickets.models import TimelineAction

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingWriter:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.events = []
        self.fail_on = fail_on or set()

    async def add_timeline_event(self, event):
        if event.description in self.fail_on:
            raise RuntimeError("write failed")
        self.events.append(event)


def _event(description: str):
    return build_event(
        ticket_id="t-1",
        user_id="agent-1",
        action=TimelineAction.UPDATED,
        description=description,
        created_at=NOW,
    )


def test_build_event_truncates_description():
    event = build_event(
        ticket_id="t-1",
        user_id="agent-1",
        action=TimelineAction.UPDATED,
        description="x" * 900,
        created_at=NOW,
        details={"field": "title"},
    )

    assert len(event.description) == 500
    assert event.details == {"field": "title"}
    assert event.id


@pytest.mark.asyncio
async def test_record_many_continues_past_failures(caplog):
    writer = RecordingWriter(fail_on={"second"})
    audit = AuditLog(writer)

    with caplog.at_level(logging.ERROR, logger="helpdesk.tickets.audit"):
        written = await audit.record_many([_event("first"), _event("second"), _event("third")])

    assert written == 2
    assert [event.description for event in writer.events] == ["first", "third"]
    assert "Failed to record updated event for ticket t-1" in caplog.text


@pytest.mark.asyncio
async def test_record_reports_success():
    writer = RecordingWriter()

    assert await AuditLog(writer).record(_event("only")) is True
    assert len(writer.events) == 1
