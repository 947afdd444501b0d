from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from helpdesk.tickets.audit import AuditLog
from helpdesk.tickets.errors import (
    InvalidAssigneeError,
    InvalidTicketTransitionError,
    StaleUpdateError,
    TicketAuthorizationError,
    TicketNotFoundError,
    TicketValidationError,
)
from helpdesk.tickets.models import CommentType, TicketPriority, TicketQuery, TimelineAction
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.service import TicketService
from helpdesk.tickets.state import TicketStateMachine, TicketStatus
from tests.conftest import START


async def _create(service: TicketService, actor, **kwargs):
    values = {"title": "Laptop will not boot", "description": "Black screen after update"}
    values.update(kwargs)
    return await service.create_ticket(actor, **values)


async def _actions(service: TicketService, ticket_id: str) -> list[TimelineAction]:
    return [event.action for event in await service.repository.list_timeline(ticket_id)]


@pytest.mark.asyncio
async def test_create_ticket_derives_sla_and_records_event(service, actors, clock):
    ticket = await _create(service, actors["requester"], priority="high", tags=["laptop", " laptop "])

    assert ticket.version == 0
    assert ticket.status == TicketStatus.OPEN
    assert ticket.priority == TicketPriority.HIGH
    assert ticket.tags == ("laptop",)
    assert ticket.sla.response_deadline == START + timedelta(hours=8)
    assert ticket.sla.resolution_deadline == START + timedelta(hours=24)

    timeline = await service.repository.list_timeline(ticket.id)
    assert [event.action for event in timeline] == [TimelineAction.CREATED]
    assert timeline[0].description == "Ticket created by Riley Requester"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"title": ""}, "FIELD_REQUIRED"),
        ({"description": None}, "FIELD_REQUIRED"),
        ({"title": "x" * 201}, "FIELD_TOO_LONG"),
        ({"priority": "critical"}, "INVALID_PRIORITY"),
        ({"category": "hardware"}, "INVALID_CATEGORY"),
    ],
)
async def test_create_ticket_validation(service, actors, overrides, code):
    with pytest.raises(TicketValidationError) as exc:
        await _create(service, actors["requester"], **overrides)

    assert exc.value.code == code


@pytest.mark.asyncio
async def test_stale_version_is_rejected_without_writing(service, actors, clock):
    ticket = await _create(service, actors["requester"])
    clock.advance(minutes=5)
    updated = await service.apply_update(
        actors["agent"], ticket.id, {"status": "in_progress"}, expected_version=0
    )
    assert updated.version == 1

    clock.advance(minutes=5)
    with pytest.raises(StaleUpdateError) as exc:
        await service.apply_update(actors["agent"], ticket.id, {"title": "Renamed"}, expected_version=0)

    assert exc.value.status_code == 409
    stored = await service.repository.get_ticket(ticket.id)
    assert stored.title == ticket.title
    assert stored.version == 1
    assert len(await _actions(service, ticket.id)) == 2


@pytest.mark.asyncio
async def test_update_checks_not_found_then_stale_then_permission(service, actors):
    ticket = await _create(service, actors["requester"])

    with pytest.raises(TicketNotFoundError):
        await service.apply_update(actors["other_user"], "missing", {"title": "x"}, expected_version=7)
    with pytest.raises(StaleUpdateError):
        await service.apply_update(actors["other_user"], ticket.id, {"title": "x"}, expected_version=7)
    with pytest.raises(TicketAuthorizationError):
        await service.apply_update(actors["other_user"], ticket.id, {"title": "x"}, expected_version=0)


@pytest.mark.asyncio
async def test_empty_update_still_reports_missing_and_stale_first(service, actors):
    ticket = await _create(service, actors["requester"])
    await service.set_status(actors["agent"], ticket.id, "in_progress")

    with pytest.raises(TicketNotFoundError):
        await service.apply_update(actors["agent"], "missing", {}, expected_version=0)
    with pytest.raises(StaleUpdateError):
        await service.apply_update(actors["agent"], ticket.id, {}, expected_version=0)
    with pytest.raises(TicketValidationError) as exc:
        await service.apply_update(actors["agent"], ticket.id, {}, expected_version=1)

    assert exc.value.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_multi_field_update_timeline_is_deterministic(service, actors, clock):
    ticket = await _create(service, actors["requester"])
    clock.advance(minutes=5)

    await service.apply_update(
        actors["agent"], ticket.id, {"status": "in_progress", "priority": "high", "title": "Dock broken"}
    )

    timeline = await service.repository.list_timeline(ticket.id)
    assert len(timeline) == 4
    assert {event.created_at for event in timeline[:3]} == {START + timedelta(minutes=5)}
    assert [event.sequence for event in timeline[:3]] == [2, 1, 0]
    assert timeline[-1].action == TimelineAction.CREATED


@pytest.mark.asyncio
async def test_user_cannot_change_status(service, actors):
    ticket = await _create(service, actors["requester"])

    with pytest.raises(TicketAuthorizationError) as patch_exc:
        await service.apply_update(actors["requester"], ticket.id, {"status": "closed"})
    with pytest.raises(TicketAuthorizationError) as status_exc:
        await service.set_status(actors["requester"], ticket.id, "closed")

    assert patch_exc.value.code == "FORBIDDEN"
    assert status_exc.value.status_code == 403
    stored = await service.repository.get_ticket(ticket.id)
    assert stored.status == TicketStatus.OPEN
    assert stored.version == 0


@pytest.mark.asyncio
async def test_owner_update_drops_staff_fields(service, actors, clock):
    ticket = await _create(service, actors["requester"])
    clock.advance(minutes=1)

    updated = await service.apply_update(
        actors["requester"], ticket.id, {"title": "Laptop still broken", "priority": "urgent"}
    )

    assert updated.title == "Laptop still broken"
    assert updated.priority == TicketPriority.MEDIUM
    assert updated.version == 1
    timeline = await service.repository.list_timeline(ticket.id)
    assert timeline[0].action == TimelineAction.UPDATED
    assert timeline[0].description == "Title updated by Riley Requester"
    assert timeline[0].details == {
        "field": "title",
        "oldValue": "Laptop will not boot",
        "newValue": "Laptop still broken",
    }


@pytest.mark.asyncio
async def test_unchanged_values_do_not_bump_version(service, actors):
    ticket = await _create(service, actors["requester"], tags=["a", "b"])

    result = await service.apply_update(
        actors["agent"], ticket.id, {"status": "open", "tags": ["b", "a"], "assigned_to": None}
    )

    assert result.version == 0
    assert await _actions(service, ticket.id) == [TimelineAction.CREATED]


@pytest.mark.asyncio
async def test_empty_update_is_invalid(service, actors):
    ticket = await _create(service, actors["requester"])

    with pytest.raises(TicketValidationError) as exc:
        await service.apply_update(actors["agent"], ticket.id, {})

    assert exc.value.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_every_mutation_bumps_version_once_and_records_an_event(service, actors, clock):
    ticket = await _create(service, actors["requester"])

    clock.advance(minutes=1)
    multi = await service.apply_update(
        actors["admin"],
        ticket.id,
        {"status": "in_progress", "priority": "high", "category": "billing", "assigned_to": "agent-ben"},
    )

    assert multi.version == 1
    actions = await _actions(service, ticket.id)
    assert sorted(action.value for action in actions) == [
        "created",
        "priority_changed",
        "status_changed",
        "updated",
        "updated",
    ]
    descriptions = {event.description for event in await service.repository.list_timeline(ticket.id)}
    assert "Assignment changed from unassigned to Ben Agent by Cy Admin" in descriptions
    assert "Status changed from open to in_progress by Cy Admin" in descriptions


@pytest.mark.asyncio
async def test_repriority_restarts_sla_clock_from_now(service, actors, clock):
    ticket = await _create(service, actors["requester"], priority="urgent")

    clock.advance(hours=3)
    before = await service.get_ticket(actors["agent"], ticket.id)
    assert before.ticket.sla.is_response_breached

    updated = await service.set_priority(actors["agent"], ticket.id, "low")

    changed_at = START + timedelta(hours=3)
    assert updated.version == 1
    assert updated.sla.response_time_hours == 48
    assert updated.sla.response_deadline == changed_at + timedelta(hours=48)
    assert updated.sla.resolution_deadline == changed_at + timedelta(hours=168)
    assert not updated.sla.is_response_breached
    assert not updated.sla.is_resolution_breached

    after = await service.get_ticket(actors["agent"], ticket.id)
    assert not after.ticket.sla.is_response_breached

    event = after.timeline[0]
    assert event.action == TimelineAction.PRIORITY_CHANGED
    assert event.description.endswith("(SLA deadlines recomputed)")
    assert event.details["responseDeadline"] == (changed_at + timedelta(hours=48)).isoformat()


@pytest.mark.asyncio
async def test_milestones_are_first_write_wins(service, actors, clock):
    ticket = await _create(service, actors["requester"])

    clock.advance(hours=1)
    resolved = await service.set_status(actors["agent"], ticket.id, "resolved")
    first_resolution = resolved.resolved_at
    assert first_resolution == START + timedelta(hours=1)

    clock.advance(hours=1)
    await service.set_status(actors["agent"], ticket.id, "open")
    clock.advance(hours=1)
    again = await service.set_status(actors["agent"], ticket.id, "resolved")
    clock.advance(hours=1)
    closed = await service.set_status(actors["agent"], ticket.id, "closed")

    assert again.resolved_at == first_resolution
    assert closed.closed_at == START + timedelta(hours=4)
    assert closed.version == 4


@pytest.mark.asyncio
async def test_set_status_rejects_unknown_value(service, actors):
    ticket = await _create(service, actors["requester"])

    with pytest.raises(TicketValidationError) as exc:
        await service.set_status(actors["agent"], ticket.id, "archived")

    assert exc.value.code == "INVALID_STATUS"


@pytest.mark.asyncio
async def test_configured_transition_table_is_enforced(repository, directory, clock, actors):
    service = TicketService(
        repository,
        directory,
        clock=clock,
        state_machine=TicketStateMachine({TicketStatus.OPEN: (TicketStatus.IN_PROGRESS,)}),
    )
    ticket = await _create(service, actors["requester"])

    with pytest.raises(InvalidTicketTransitionError):
        await service.set_status(actors["agent"], ticket.id, "closed")


@pytest.mark.asyncio
async def test_assign_rules(service, actors, clock):
    ticket = await _create(service, actors["requester"])

    with pytest.raises(TicketAuthorizationError):
        await service.assign(actors["agent"], ticket.id, "agent-ben")
    with pytest.raises(InvalidAssigneeError) as not_staff:
        await service.assign(actors["admin"], ticket.id, actors["requester"].id)
    with pytest.raises(InvalidAssigneeError):
        await service.assign(actors["admin"], ticket.id, actors["inactive_agent"].id)
    with pytest.raises(TicketAuthorizationError):
        await service.assign(actors["requester"], ticket.id, "agent-ada")

    assert not_staff.value.status_code == 400
    assert not_staff.value.code == "INVALID_ASSIGNEE"

    clock.advance(minutes=1)
    assigned = await service.assign(actors["agent"], ticket.id, "agent-ada")
    clock.advance(minutes=1)
    unassigned = await service.assign(actors["agent"], ticket.id, None)

    assert assigned.assigned_to == "agent-ada"
    assert assigned.version == 1
    assert unassigned.assigned_to is None
    assert unassigned.version == 2

    timeline = await service.repository.list_timeline(ticket.id)
    assert [event.action for event in timeline[:2]] == [TimelineAction.UNASSIGNED, TimelineAction.ASSIGNED]
    assert timeline[1].description == "Ticket assigned to Ada Agent by Ada Agent"
    assert timeline[0].description == "Ticket unassigned from Ada Agent by Ada Agent"


@pytest.mark.asyncio
async def test_assign_missing_ticket(service, actors):
    with pytest.raises(TicketNotFoundError):
        await service.assign(actors["admin"], "missing", "agent-ada")


@pytest.mark.asyncio
async def test_bulk_assign_skips_missing_ids(service, actors, clock):
    ids = [(await _create(service, actors["requester"], title=f"Ticket {n}")).id for n in range(4)]
    clock.advance(minutes=1)

    modified = await service.bulk_assign(actors["admin"], ids[:2] + ["missing"] + ids[2:], "agent-ben")

    assert modified == 4
    for ticket_id in ids:
        ticket = await service.repository.get_ticket(ticket_id)
        assert ticket.assigned_to == "agent-ben"
        assert ticket.version == 1
        timeline = await service.repository.list_timeline(ticket_id)
        assert timeline[0].action == TimelineAction.ASSIGNED
        assert timeline[0].description.endswith("(bulk operation)")

    assert await service.bulk_assign(actors["admin"], ids, "agent-ben") == 0


@pytest.mark.asyncio
async def test_bulk_assign_requires_admin_and_ids(service, actors):
    with pytest.raises(TicketAuthorizationError):
        await service.bulk_assign(actors["agent"], ["t-1"], "agent-ada")
    with pytest.raises(TicketValidationError) as exc:
        await service.bulk_assign(actors["admin"], [], "agent-ada")
    with pytest.raises(InvalidAssigneeError):
        await service.bulk_assign(actors["admin"], ["t-1"], "user-other")

    assert exc.value.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_first_response_is_flagged_once(service, actors, clock):
    ticket = await _create(service, actors["requester"])

    clock.advance(minutes=10)
    note = await service.add_comment(actors["agent"], ticket.id, "Checking logs", CommentType.INTERNAL_NOTE)
    clock.advance(minutes=10)
    first = await service.add_comment(actors["agent"], ticket.id, "Can you try safe mode?")
    clock.advance(minutes=10)
    second = await service.add_comment(actors["requester"], ticket.id, "Tried it, no luck")

    assert not note.is_first_response
    assert first.is_first_response
    assert not second.is_first_response

    stored = await service.repository.get_ticket(ticket.id)
    assert stored.first_response_at == START + timedelta(minutes=20)
    assert stored.version == 1

    timeline = await service.repository.list_timeline(ticket.id)
    assert timeline[0].description == "Comment added by Riley Requester"
    assert timeline[2].description == "Internal note added by Ada Agent"


@pytest.mark.asyncio
async def test_comment_permissions(service, actors):
    ticket = await _create(service, actors["requester"])

    with pytest.raises(TicketAuthorizationError):
        await service.add_comment(actors["requester"], ticket.id, "secret", "internal_note")
    with pytest.raises(TicketAuthorizationError):
        await service.add_comment(actors["other_user"], ticket.id, "hello")
    with pytest.raises(TicketValidationError) as exc:
        await service.add_comment(actors["agent"], ticket.id, "   ")

    assert exc.value.code == "FIELD_REQUIRED"


@pytest.mark.asyncio
async def test_requester_view_hides_internal_notes(service, actors, clock):
    ticket = await _create(service, actors["requester"])
    clock.advance(minutes=1)
    await service.add_comment(actors["agent"], ticket.id, "Escalate to vendor", "internal_note")
    clock.advance(minutes=1)
    await service.add_comment(actors["agent"], ticket.id, "We are on it")

    requester_view = await service.get_ticket(actors["requester"], ticket.id)
    staff_view = await service.get_ticket(actors["agent"], ticket.id)

    assert [comment.content for comment in requester_view.comments] == ["We are on it"]
    assert len(staff_view.comments) == 2
    assert len(requester_view.timeline) == 2
    assert len(staff_view.timeline) == 3

    with pytest.raises(TicketAuthorizationError):
        await service.get_ticket(actors["other_user"], ticket.id)


@pytest.mark.asyncio
async def test_lost_compare_and_swap_surfaces_as_stale(repository, directory, clock, actors):
    class RacingRepository(TicketRepository):
        def __init__(self, inner: TicketRepository) -> None:
            super().__init__(inner._session_factory, engine=inner._engine)
            self.race = False

        async def get_ticket(self, ticket_id):
            ticket = await super().get_ticket(ticket_id)
            if self.race and ticket is not None:
                self.race = False
                await super().update_ticket(replace(ticket, title="Concurrent edit"), expected_version=ticket.version)
            return ticket

    racing = RacingRepository(repository)
    service = TicketService(racing, directory, clock=clock)
    ticket = await _create(service, actors["requester"])

    racing.race = True
    with pytest.raises(StaleUpdateError):
        await service.set_priority(actors["agent"], ticket.id, "urgent")

    stored = await repository.get_ticket(ticket.id)
    assert stored.title == "Concurrent edit"
    assert stored.priority == TicketPriority.MEDIUM
    assert stored.version == 1
    assert await _actions(service, ticket.id) == [TimelineAction.CREATED]


@pytest.mark.asyncio
async def test_audit_failure_does_not_roll_back_mutation(repository, directory, clock, actors, caplog):
    class BrokenWriter:
        async def add_timeline_event(self, event):
            raise RuntimeError("timeline unavailable")

    service = TicketService(repository, directory, clock=clock, audit_log=AuditLog(BrokenWriter()))
    ticket = await _create(service, actors["requester"])

    updated = await service.set_status(actors["agent"], ticket.id, "pending")

    assert updated.version == 1
    assert (await repository.get_ticket(ticket.id)).status == TicketStatus.PENDING
    assert "Failed to record" in caplog.text


@pytest.mark.asyncio
async def test_list_tickets_scopes_users_to_their_own(service, actors, clock):
    await _create(service, actors["requester"], title="Mine")
    clock.advance(minutes=1)
    await _create(service, actors["other_user"], title="Theirs")

    own = await service.list_tickets(actors["requester"], TicketQuery(created_by="user-other"))
    everything = await service.list_tickets(actors["agent"], TicketQuery(limit=500))

    assert [ticket.title for ticket in own.tickets] == ["Mine"]
    assert everything.total == 2
    assert everything.limit == 100
    assert everything.next_offset is None

    with pytest.raises(TicketValidationError) as exc:
        await service.list_tickets(actors["agent"], TicketQuery(sort_by="description"))
    assert exc.value.field == "sort_by"


@pytest.mark.asyncio
async def test_breached_list_and_dashboard(service, actors, clock):
    urgent = await _create(service, actors["requester"], priority="urgent")
    low = await _create(service, actors["requester"], priority="low")
    await service.assign(actors["agent"], urgent.id, "agent-ada")
    await service.assign(actors["agent"], low.id, "agent-ada")

    clock.advance(hours=3)
    breached = await service.list_breached(actors["agent"])
    stats = await service.agent_dashboard(actors["agent"])

    assert [ticket.id for ticket in breached] == [urgent.id]
    assert breached[0].sla.is_response_breached
    assert stats.assigned_to_me == 2
    assert stats.breached == 1
    assert stats.pending_response == 2
    assert stats.resolved_today == 0

    with pytest.raises(TicketAuthorizationError):
        await service.list_breached(actors["requester"])
    with pytest.raises(TicketAuthorizationError):
        await service.agent_dashboard(actors["requester"])
