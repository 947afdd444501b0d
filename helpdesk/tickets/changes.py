"""Typed coercion and field-level diffing for ticket updates.

Each editable field has an explicit coercer and an explicit equality check so
that, for example, an assignee reference is never compared loosely against a
differently typed value and tag order does not register as a change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from .errors import TicketValidationError
from .models import (
    DESCRIPTION_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    Ticket,
    TicketCategory,
    TicketPriority,
)
from .state import TicketStatus

EDITABLE_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "status",
    "priority",
    "category",
    "assigned_to",
    "tags",
)


@dataclass(frozen=True, slots=True)
class FieldChange:
    """Old and new value of a single field that actually changed."""

    field: str
    old_value: Any
    new_value: Any

    def as_details(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "oldValue": _plain(self.old_value),
            "newValue": _plain(self.new_value),
        }


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def coerce_text(field: str, value: Any, *, max_length: int) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise TicketValidationError(f"{field.capitalize()} is required", code="FIELD_REQUIRED", field=field)
    if not isinstance(value, str):
        raise TicketValidationError(f"{field.capitalize()} must be a string", code="INVALID_INPUT", field=field)
    text = value.strip() if field == "title" else value
    if len(text) > max_length:
        raise TicketValidationError(
            f"{field.capitalize()} cannot exceed {max_length} characters",
            code="FIELD_TOO_LONG",
            field=field,
        )
    return text


def coerce_enum(field: str, value: Any, enum_type: type[Enum]) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        raise TicketValidationError(
            f"Invalid {field} value", code=f"INVALID_{field.upper()}", field=field
        ) from exc


def coerce_status(value: Any) -> TicketStatus:
    return coerce_enum("status", value, TicketStatus)


def coerce_priority(value: Any) -> TicketPriority:
    return coerce_enum("priority", value, TicketPriority)


def coerce_category(value: Any) -> TicketCategory:
    return coerce_enum("category", value, TicketCategory)


def coerce_assignee(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise TicketValidationError("Assignee must be a user id", code="INVALID_INPUT", field="assigned_to")
    return value


def coerce_tags(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise TicketValidationError("Tags must be a list of strings", code="INVALID_INPUT", field="tags")
    tags: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise TicketValidationError("Tags must be a list of strings", code="INVALID_INPUT", field="tags")
        tag = item.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


_COERCERS: Mapping[str, Callable[[Any], Any]] = {
    "title": lambda value: coerce_text("title", value, max_length=TITLE_MAX_LENGTH),
    "description": lambda value: coerce_text("description", value, max_length=DESCRIPTION_MAX_LENGTH),
    "status": coerce_status,
    "priority": coerce_priority,
    "category": coerce_category,
    "assigned_to": coerce_assignee,
    "tags": coerce_tags,
}


def _same_reference(old: str | None, new: str | None) -> bool:
    if old is None or new is None:
        return old is None and new is None
    return str(old) == str(new)


def _same_tags(old: Iterable[str], new: Iterable[str]) -> bool:
    return frozenset(old) == frozenset(new)


def _same_member(old: Enum, new: Enum) -> bool:
    return old is new


_EQUALITY: Mapping[str, Callable[[Any, Any], bool]] = {
    "title": lambda old, new: old == new,
    "description": lambda old, new: old == new,
    "status": _same_member,
    "priority": _same_member,
    "category": _same_member,
    "assigned_to": _same_reference,
    "tags": _same_tags,
}


def normalize_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce raw request values into typed field values.

    Unknown field names raise, callers filter through the authorization
    policy first.
    """

    normalized: dict[str, Any] = {}
    for name in EDITABLE_FIELDS:
        if name in changes:
            normalized[name] = _COERCERS[name](changes[name])
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise TicketValidationError(
            f"Unknown field {sorted(unknown)[0]}", code="INVALID_INPUT", field=sorted(unknown)[0]
        )
    return normalized


def diff_fields(ticket: Ticket, normalized: Mapping[str, Any]) -> list[FieldChange]:
    """Return changes for the fields whose typed value actually differs."""

    changes: list[FieldChange] = []
    for name in EDITABLE_FIELDS:
        if name not in normalized:
            continue
        old_value = getattr(ticket, name)
        new_value = normalized[name]
        if not _EQUALITY[name](old_value, new_value):
            changes.append(FieldChange(field=name, old_value=old_value, new_value=new_value))
    return changes
