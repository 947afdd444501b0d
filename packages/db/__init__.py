"""Database models and utilities."""

from .models import (
    IdempotencyRecordTable,
    TicketCommentTable,
    TicketTable,
    TimelineEventTable,
    UserTable,
)

__all__ = [
    "IdempotencyRecordTable",
    "TicketCommentTable",
    "TicketTable",
    "TimelineEventTable",
    "UserTable",
]
