"""SQLModel table definitions for the helpdesk data layer."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, LargeBinary, String, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class UserTable(SQLModel, table=True):
    """Directory entries for requesters, agents and admins."""

    __tablename__ = "users"

    id: str = Field(primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(150), nullable=False))
    email: str | None = Field(default=None, sa_column=Column(String(255), nullable=True, unique=True))
    role: str = Field(sa_column=Column(String(20), nullable=False))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketTable(SQLModel, table=True):
    """Support tickets, versioned for optimistic concurrency."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    title: str = Field(sa_column=Column(String(200), nullable=False))
    description: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False, index=True))
    priority: str = Field(sa_column=Column(String(20), nullable=False, index=True))
    category: str = Field(sa_column=Column(String(30), nullable=False))
    created_by: str = Field(sa_column=Column(String(36), nullable=False, index=True))
    assigned_to: str | None = Field(default=None, sa_column=Column(String(36), nullable=True, index=True))
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    sla_response_hours: int = Field(sa_column=Column(Integer, nullable=False))
    sla_resolution_hours: int = Field(sa_column=Column(Integer, nullable=False))
    response_deadline: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
    resolution_deadline: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False, index=True))
    is_response_breached: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    is_resolution_breached: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    version: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    first_response_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class TicketCommentTable(SQLModel, table=True):
    """Public replies and internal notes attached to a ticket."""

    __tablename__ = "ticket_comments"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    author_id: str = Field(sa_column=Column(String(36), nullable=False))
    content: str = Field(sa_column=Column(Text, nullable=False))
    type: str = Field(sa_column=Column(String(20), nullable=False))
    is_first_response: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TimelineEventTable(SQLModel, table=True):
    """Append-only audit trail of ticket state changes."""

    __tablename__ = "ticket_timeline_events"

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    user_id: str = Field(sa_column=Column(String(36), nullable=False))
    action: str = Field(sa_column=Column(String(30), nullable=False))
    description: str = Field(sa_column=Column(String(500), nullable=False))
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    sequence: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))


class IdempotencyRecordTable(SQLModel, table=True):
    """Responses recorded for client supplied idempotency keys."""

    __tablename__ = "idempotency_records"

    actor_id: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    status_code: int = Field(sa_column=Column(Integer, nullable=False))
    body: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    content_type: str = Field(sa_column=Column(String(100), nullable=False))
    created_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
