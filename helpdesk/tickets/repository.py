from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, func, or_, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import TicketCommentTable, TicketTable, TimelineEventTable

from .models import (
    Comment,
    CommentType,
    DashboardStats,
    Ticket,
    TicketCategory,
    TicketPriority,
    TicketQuery,
    TicketSLA,
    TimelineAction,
    TimelineEvent,
)
from .state import TicketStatus

_SORT_COLUMNS = {
    "created_at": TicketTable.created_at,
    "updated_at": TicketTable.updated_at,
    "title": TicketTable.title,
    "status": TicketTable.status,
    "priority": TicketTable.priority,
    "response_deadline": TicketTable.response_deadline,
    "resolution_deadline": TicketTable.resolution_deadline,
}

SORTABLE_FIELDS: frozenset[str] = frozenset(_SORT_COLUMNS)

_FINISHED_STATUSES = (TicketStatus.RESOLVED.value, TicketStatus.CLOSED.value)


class TicketRepository:
    """Persistence helper wrapping `tickets`, `ticket_comments` and the timeline.

    Ticket writes go through :meth:`update_ticket`, a single conditional
    ``UPDATE`` that only matches while the stored version equals the version
    the caller read.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def create_ticket(self, ticket: Ticket) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    TicketTable(
                        id=ticket.id,
                        created_by=ticket.created_by,
                        created_at=ticket.created_at,
                        **self._mutable_values(ticket),
                    )
                )

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._session_factory() as session:
            row = await session.get(TicketTable, ticket_id)
        if row is None:
            return None
        return self._table_to_ticket(row)

    async def update_ticket(self, ticket: Ticket, *, expected_version: int) -> Ticket | None:
        """Persist ``ticket`` if the stored version still equals ``expected_version``.

        The stored version becomes ``expected_version + 1`` in the same
        statement. Returns ``None`` when no row matched, either because the
        ticket vanished or because another writer got there first.
        """

        values = self._mutable_values(ticket)
        values["version"] = expected_version + 1
        statement = (
            update(TicketTable)
            .where(TicketTable.id == ticket.id, TicketTable.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(statement)
        if result.rowcount != 1:
            return None
        return replace(ticket, version=expected_version + 1)

    async def record_comment(
        self,
        comment: Comment,
        *,
        claim_first_response: bool,
    ) -> tuple[Comment, bool]:
        """Insert ``comment``, claiming the ticket's first response milestone if unclaimed.

        The milestone is claimed only when no earlier ``comment``-type entry
        exists and ``first_response_at`` is still empty; the claim bumps the
        ticket version. Returns the stored comment and whether the claim won.
        """

        claimed = False
        async with self._session_factory() as session:
            async with session.begin():
                if claim_first_response:
                    prior = await session.scalar(
                        select(func.count())
                        .select_from(TicketCommentTable)
                        .where(
                            TicketCommentTable.ticket_id == comment.ticket_id,
                            TicketCommentTable.type == CommentType.COMMENT.value,
                        )
                    )
                    if not prior:
                        result = await session.execute(
                            update(TicketTable)
                            .where(
                                TicketTable.id == comment.ticket_id,
                                TicketTable.first_response_at.is_(None),
                            )
                            .values(
                                first_response_at=comment.created_at,
                                updated_at=comment.created_at,
                                is_response_breached=False,
                                version=TicketTable.version + 1,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        claimed = result.rowcount == 1
                session.add(
                    TicketCommentTable(
                        id=comment.id,
                        ticket_id=comment.ticket_id,
                        author_id=comment.author_id,
                        content=comment.content,
                        type=comment.type.value,
                        is_first_response=claimed,
                        created_at=comment.created_at,
                    )
                )
        return replace(comment, is_first_response=claimed), claimed

    async def list_comments(self, ticket_id: str, *, include_internal: bool = True) -> list[Comment]:
        statement = select(TicketCommentTable).where(TicketCommentTable.ticket_id == ticket_id)
        if not include_internal:
            statement = statement.where(TicketCommentTable.type == CommentType.COMMENT.value)
        async with self._session_factory() as session:
            result = await session.execute(
                statement.order_by(TicketCommentTable.created_at.asc(), TicketCommentTable.id.asc())
            )
            return [self._table_to_comment(row) for row in result.scalars().all()]

    async def add_timeline_event(self, event: TimelineEvent) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    TimelineEventTable(
                        id=event.id,
                        ticket_id=event.ticket_id,
                        user_id=event.user_id,
                        action=event.action.value,
                        description=event.description,
                        details=dict(event.details),
                        created_at=event.created_at,
                        sequence=event.sequence,
                    )
                )

    async def list_timeline(self, ticket_id: str) -> list[TimelineEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TimelineEventTable)
                .where(TimelineEventTable.ticket_id == ticket_id)
                .order_by(
                    TimelineEventTable.created_at.desc(),
                    TimelineEventTable.sequence.desc(),
                    TimelineEventTable.id.desc(),
                )
            )
            return [self._table_to_event(row) for row in result.scalars().all()]

    async def query_tickets(self, query: TicketQuery, *, now: datetime) -> tuple[list[Ticket], int]:
        conditions: list[Any] = []
        if query.status is not None:
            conditions.append(TicketTable.status == query.status.value)
        if query.priority is not None:
            conditions.append(TicketTable.priority == query.priority.value)
        if query.assigned_to is not None:
            conditions.append(TicketTable.assigned_to == query.assigned_to)
        if query.created_by is not None:
            conditions.append(TicketTable.created_by == query.created_by)
        if query.search:
            pattern = f"%{_escape_like(query.search)}%"
            conditions.append(
                or_(
                    TicketTable.title.ilike(pattern, escape="\\"),
                    TicketTable.description.ilike(pattern, escape="\\"),
                )
            )
        if query.breached:
            conditions.append(_breached_clause(now))
        if query.active_only:
            conditions.append(TicketTable.status.not_in(_FINISHED_STATUSES))

        column = _SORT_COLUMNS[query.sort_by]
        ordering = column.asc() if query.sort_order == "asc" else column.desc()
        statement = select(TicketTable).where(*conditions).order_by(ordering, TicketTable.id.asc())
        if query.offset:
            statement = statement.offset(query.offset)
        if query.limit is not None:
            statement = statement.limit(query.limit)

        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(TicketTable).where(*conditions))
            result = await session.execute(statement)
            rows = result.scalars().all()
        return [self._table_to_ticket(row) for row in rows], int(total or 0)

    async def dashboard_counts(self, agent_id: str, *, now: datetime, day_start: datetime) -> DashboardStats:
        mine = TicketTable.assigned_to == agent_id
        active = TicketTable.status.not_in(_FINISHED_STATUSES)
        async with self._session_factory() as session:
            assigned_to_me = await self._count(session, mine, active)
            in_progress = await self._count(session, mine, TicketTable.status == TicketStatus.IN_PROGRESS.value)
            breached = await self._count(session, mine, active, _breached_clause(now))
            pending_response = await self._count(
                session,
                mine,
                TicketTable.status.in_((TicketStatus.OPEN.value, TicketStatus.PENDING.value)),
                TicketTable.first_response_at.is_(None),
            )
            resolved_today = await self._count(
                session,
                mine,
                TicketTable.status == TicketStatus.RESOLVED.value,
                TicketTable.resolved_at >= day_start,
            )
        return DashboardStats(
            assigned_to_me=assigned_to_me,
            in_progress=in_progress,
            breached=breached,
            pending_response=pending_response,
            resolved_today=resolved_today,
        )

    @staticmethod
    async def _count(session: AsyncSession, *conditions: Any) -> int:
        total = await session.scalar(select(func.count()).select_from(TicketTable).where(*conditions))
        return int(total or 0)

    @staticmethod
    def _mutable_values(ticket: Ticket) -> dict[str, Any]:
        return {
            "title": ticket.title,
            "description": ticket.description,
            "status": ticket.status.value,
            "priority": ticket.priority.value,
            "category": ticket.category.value,
            "assigned_to": ticket.assigned_to,
            "tags": list(ticket.tags),
            "sla_response_hours": ticket.sla.response_time_hours,
            "sla_resolution_hours": ticket.sla.resolution_time_hours,
            "response_deadline": ticket.sla.response_deadline,
            "resolution_deadline": ticket.sla.resolution_deadline,
            "is_response_breached": ticket.sla.is_response_breached,
            "is_resolution_breached": ticket.sla.is_resolution_breached,
            "version": ticket.version,
            "updated_at": ticket.updated_at,
            "first_response_at": ticket.first_response_at,
            "resolved_at": ticket.resolved_at,
            "closed_at": ticket.closed_at,
        }

    @staticmethod
    def _table_to_ticket(row: TicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            title=row.title,
            description=row.description,
            status=TicketStatus(row.status),
            priority=TicketPriority(row.priority),
            category=TicketCategory(row.category),
            created_by=row.created_by,
            assigned_to=row.assigned_to,
            tags=tuple(row.tags or ()),
            sla=TicketSLA(
                response_time_hours=row.sla_response_hours,
                resolution_time_hours=row.sla_resolution_hours,
                response_deadline=_ensure_datetime(row.response_deadline),
                resolution_deadline=_ensure_datetime(row.resolution_deadline),
                is_response_breached=bool(row.is_response_breached),
                is_resolution_breached=bool(row.is_resolution_breached),
            ),
            version=row.version,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            first_response_at=_optional_datetime(row.first_response_at),
            resolved_at=_optional_datetime(row.resolved_at),
            closed_at=_optional_datetime(row.closed_at),
        )

    @staticmethod
    def _table_to_comment(row: TicketCommentTable) -> Comment:
        return Comment(
            id=row.id,
            ticket_id=row.ticket_id,
            author_id=row.author_id,
            content=row.content,
            type=CommentType(row.type),
            is_first_response=bool(row.is_first_response),
            created_at=_ensure_datetime(row.created_at),
        )

    @staticmethod
    def _table_to_event(row: TimelineEventTable) -> TimelineEvent:
        return TimelineEvent(
            id=row.id,
            ticket_id=row.ticket_id,
            user_id=row.user_id,
            action=TimelineAction(row.action),
            description=row.description,
            details=dict(row.details or {}),
            created_at=_ensure_datetime(row.created_at),
            sequence=row.sequence or 0,
        )


def _breached_clause(now: datetime) -> Any:
    return or_(
        and_(TicketTable.first_response_at.is_(None), TicketTable.response_deadline < now),
        and_(TicketTable.resolved_at.is_(None), TicketTable.resolution_deadline < now),
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)

