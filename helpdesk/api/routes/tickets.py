from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel, to_snake

from helpdesk.dependencies.auth import CurrentUser
from helpdesk.dependencies.tickets import AdminUser, StaffUser, TicketServiceDep
from helpdesk.tickets.changes import coerce_priority, coerce_status
from helpdesk.tickets.models import Comment, DashboardStats, Ticket, TicketQuery, TimelineEvent
from helpdesk.tickets.sla import time_to_resolution, time_to_response

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request bodies stay loose; the engine owns field validation and error codes.


class TicketCreateRequest(ApiModel):
    title: Any = None
    description: Any = None
    priority: Any = None
    category: Any = None
    tags: Any = None


class TicketUpdateRequest(ApiModel):
    title: Any = None
    description: Any = None
    status: Any = None
    priority: Any = None
    category: Any = None
    assigned_to: Any = None
    tags: Any = None
    version: int | None = None


class CommentCreateRequest(ApiModel):
    content: Any = None
    type: Any = "comment"


class AssignRequest(ApiModel):
    assigned_to: Any = None


class StatusChangeRequest(ApiModel):
    status: Any = None


class PriorityChangeRequest(ApiModel):
    priority: Any = None


class BulkAssignRequest(ApiModel):
    ticket_ids: Any = None
    assigned_to: Any = None


class SLAModel(ApiModel):
    response_time_hours: int
    resolution_time_hours: int
    response_deadline: datetime
    resolution_deadline: datetime
    is_response_breached: bool
    is_resolution_breached: bool


class TicketModel(ApiModel):
    id: str
    title: str
    description: str
    status: str
    priority: str
    category: str
    created_by: str
    assigned_to: str | None
    tags: list[str]
    sla: SLAModel
    version: int
    created_at: datetime
    updated_at: datetime
    first_response_at: datetime | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    time_to_response_seconds: float | None = None
    time_to_resolution_seconds: float | None = None


class CommentModel(ApiModel):
    id: str
    ticket_id: str
    author_id: str
    content: str
    type: str
    is_first_response: bool
    created_at: datetime


class TimelineEventModel(ApiModel):
    id: str
    ticket_id: str
    user_id: str
    action: str
    description: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class PaginationModel(ApiModel):
    total: int
    limit: int | None
    offset: int
    next_offset: int | None


class DashboardStatsModel(ApiModel):
    assigned_to_me: int
    in_progress: int
    breached: int
    pending_response: int
    resolved_today: int


class TicketEnvelope(ApiModel):
    success: bool = True
    ticket: TicketModel


class TicketDetailEnvelope(TicketEnvelope):
    comments: list[CommentModel]
    timeline: list[TimelineEventModel]


class TicketListEnvelope(ApiModel):
    success: bool = True
    tickets: list[TicketModel]
    pagination: PaginationModel


class BreachedListEnvelope(ApiModel):
    success: bool = True
    tickets: list[TicketModel]
    count: int


class CommentEnvelope(ApiModel):
    success: bool = True
    comment: CommentModel


class DashboardEnvelope(ApiModel):
    success: bool = True
    stats: DashboardStatsModel


class BulkAssignEnvelope(ApiModel):
    success: bool = True
    modified_count: int


def _ticket_model(ticket: Ticket, now: datetime) -> TicketModel:
    response_left = time_to_response(ticket, now)
    resolution_left = time_to_resolution(ticket, now)
    sla = ticket.sla
    return TicketModel(
        id=ticket.id,
        title=ticket.title,
        description=ticket.description,
        status=ticket.status.value,
        priority=ticket.priority.value,
        category=ticket.category.value,
        created_by=ticket.created_by,
        assigned_to=ticket.assigned_to,
        tags=list(ticket.tags),
        sla=SLAModel(
            response_time_hours=sla.response_time_hours,
            resolution_time_hours=sla.resolution_time_hours,
            response_deadline=sla.response_deadline,
            resolution_deadline=sla.resolution_deadline,
            is_response_breached=sla.is_response_breached,
            is_resolution_breached=sla.is_resolution_breached,
        ),
        version=ticket.version,
        created_at=ticket.created_at,
        updated_at=ticket.updated_at,
        first_response_at=ticket.first_response_at,
        resolved_at=ticket.resolved_at,
        closed_at=ticket.closed_at,
        time_to_response_seconds=None if response_left is None else response_left.total_seconds(),
        time_to_resolution_seconds=None if resolution_left is None else resolution_left.total_seconds(),
    )


def _comment_model(comment: Comment) -> CommentModel:
    return CommentModel(
        id=comment.id,
        ticket_id=comment.ticket_id,
        author_id=comment.author_id,
        content=comment.content,
        type=comment.type.value,
        is_first_response=comment.is_first_response,
        created_at=comment.created_at,
    )


def _event_model(event: TimelineEvent) -> TimelineEventModel:
    return TimelineEventModel(
        id=event.id,
        ticket_id=event.ticket_id,
        user_id=event.user_id,
        action=event.action.value,
        description=event.description,
        details=dict(event.details),
        created_at=event.created_at,
    )


def _stats_model(stats: DashboardStats) -> DashboardStatsModel:
    return DashboardStatsModel(
        assigned_to_me=stats.assigned_to_me,
        in_progress=stats.in_progress,
        breached=stats.breached,
        pending_response=stats.pending_response,
        resolved_today=stats.resolved_today,
    )


@router.post("", response_model=TicketEnvelope, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> TicketEnvelope:
    ticket = await service.create_ticket(
        user,
        title=payload.title,
        description=payload.description,
        priority=payload.priority,
        category=payload.category,
        tags=payload.tags,
    )
    return TicketEnvelope(ticket=_ticket_model(ticket, service.clock.now()))


@router.get("", response_model=TicketListEnvelope)
async def list_tickets(
    service: TicketServiceDep,
    user: CurrentUser,
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None, alias="assignedTo"),
    created_by: str | None = Query(default=None, alias="createdBy"),
    search: str | None = Query(default=None),
    breached: bool = Query(default=False),
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder"),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
) -> TicketListEnvelope:
    query = TicketQuery(
        status=coerce_status(status_filter) if status_filter else None,
        priority=coerce_priority(priority) if priority else None,
        assigned_to=assigned_to or None,
        created_by=(created_by or None) if user.is_staff else None,
        search=search.strip() if search and search.strip() else None,
        breached=breached and user.is_staff,
        sort_by=to_snake(sort_by),
        sort_order=sort_order.lower(),
        limit=limit,
        offset=offset,
    )
    page = await service.list_tickets(user, query)
    now = service.clock.now()
    return TicketListEnvelope(
        tickets=[_ticket_model(ticket, now) for ticket in page.tickets],
        pagination=PaginationModel(
            total=page.total,
            limit=page.limit,
            offset=page.offset,
            next_offset=page.next_offset,
        ),
    )


@router.get("/agent/dashboard", response_model=DashboardEnvelope)
async def agent_dashboard(service: TicketServiceDep, user: StaffUser) -> DashboardEnvelope:
    stats = await service.agent_dashboard(user)
    return DashboardEnvelope(stats=_stats_model(stats))


@router.get("/sla/breached", response_model=BreachedListEnvelope)
async def list_breached(service: TicketServiceDep, user: StaffUser) -> BreachedListEnvelope:
    tickets = await service.list_breached(user)
    now = service.clock.now()
    return BreachedListEnvelope(tickets=[_ticket_model(ticket, now) for ticket in tickets], count=len(tickets))


@router.post("/bulk/assign", response_model=BulkAssignEnvelope)
async def bulk_assign(
    payload: BulkAssignRequest,
    service: TicketServiceDep,
    user: AdminUser,
) -> BulkAssignEnvelope:
    modified = await service.bulk_assign(user, payload.ticket_ids, payload.assigned_to)
    return BulkAssignEnvelope(modified_count=modified)


@router.get("/{ticket_id}", response_model=TicketDetailEnvelope)
async def get_ticket(ticket_id: str, service: TicketServiceDep, user: CurrentUser) -> TicketDetailEnvelope:
    aggregate = await service.get_ticket(user, ticket_id)
    return TicketDetailEnvelope(
        ticket=_ticket_model(aggregate.ticket, service.clock.now()),
        comments=[_comment_model(comment) for comment in aggregate.comments],
        timeline=[_event_model(event) for event in aggregate.timeline],
    )


@router.patch("/{ticket_id}", response_model=TicketEnvelope)
async def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> TicketEnvelope:
    changes = payload.model_dump(exclude_unset=True, exclude={"version"})
    ticket = await service.apply_update(user, ticket_id, changes, expected_version=payload.version)
    return TicketEnvelope(ticket=_ticket_model(ticket, service.clock.now()))


@router.post("/{ticket_id}/comments", response_model=CommentEnvelope, status_code=status.HTTP_201_CREATED)
async def add_comment(
    ticket_id: str,
    payload: CommentCreateRequest,
    service: TicketServiceDep,
    user: CurrentUser,
) -> CommentEnvelope:
    comment = await service.add_comment(user, ticket_id, payload.content, payload.type)
    return CommentEnvelope(comment=_comment_model(comment))


@router.post("/{ticket_id}/assign", response_model=TicketEnvelope)
async def assign_ticket(
    ticket_id: str,
    payload: AssignRequest,
    service: TicketServiceDep,
    user: StaffUser,
) -> TicketEnvelope:
    ticket = await service.assign(user, ticket_id, payload.assigned_to)
    return TicketEnvelope(ticket=_ticket_model(ticket, service.clock.now()))


@router.post("/{ticket_id}/status", response_model=TicketEnvelope)
async def change_status(
    ticket_id: str,
    payload: StatusChangeRequest,
    service: TicketServiceDep,
    user: StaffUser,
) -> TicketEnvelope:
    ticket = await service.set_status(user, ticket_id, payload.status)
    return TicketEnvelope(ticket=_ticket_model(ticket, service.clock.now()))


@router.post("/{ticket_id}/priority", response_model=TicketEnvelope)
async def change_priority(
    ticket_id: str,
    payload: PriorityChangeRequest,
    service: TicketServiceDep,
    user: StaffUser,
) -> TicketEnvelope:
    ticket = await service.set_priority(user, ticket_id, payload.priority)
    return TicketEnvelope(ticket=_ticket_model(ticket, service.clock.now()))
