"""Uniform ``{"error": {...}}`` envelopes for every failure path."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException

from helpdesk.tickets.errors import TicketServiceError

logger = logging.getLogger(__name__)

_DEFAULT_CODES = {
    400: "INVALID_INPUT",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    503: "SERVICE_UNAVAILABLE",
}


def error_payload(code: str, message: str, field: str | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if field is not None:
        error["field"] = to_camel(field)
    return {"error": error}


def http_exception_payload(exc: HTTPException) -> dict[str, Any]:
    detail = exc.detail
    if isinstance(detail, dict) and "code" in detail:
        return error_payload(detail["code"], str(detail.get("message", "")), detail.get("field"))
    return error_payload(_DEFAULT_CODES.get(exc.status_code, "HTTP_ERROR"), str(detail))


async def ticket_error_handler(request: Request, exc: TicketServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Ticket operation failed: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc.code, exc.message, exc.field))


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=http_exception_payload(exc),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = location[-1] if location else None
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "VALIDATION_ERROR", "message": message, **({"field": field} if field else {})}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TicketServiceError, ticket_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
