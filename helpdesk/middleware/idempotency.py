"""Replay cached responses for retried mutating requests."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from helpdesk.api.errors import error_payload
from helpdesk.tickets.authorization import Actor
from helpdesk.tickets.clock import SystemClock
from helpdesk.tickets.idempotency import IDEMPOTENCY_KEY_MAX_LENGTH, CachedResponse

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replayed"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class IdempotencyMiddleware(BaseHTTPMiddleware):
    """Deduplicate mutating requests that carry an ``Idempotency-Key`` header.

    Keys are scoped by the authenticated actor, so this middleware must run
    inside :class:`~helpdesk.middleware.auth.AuthenticationMiddleware`.
    Responses with a 5xx status are never recorded.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        key = request.headers.get(IDEMPOTENCY_HEADER)
        if request.method not in MUTATING_METHODS or not key:
            return await call_next(request)

        if len(key) > IDEMPOTENCY_KEY_MAX_LENGTH:
            return JSONResponse(
                status_code=400,
                content=error_payload(
                    "INVALID_INPUT",
                    f"Idempotency key cannot exceed {IDEMPOTENCY_KEY_MAX_LENGTH} characters",
                ),
            )

        store = getattr(request.app.state, "idempotency_store", None)
        actor = getattr(request.state, "user", None)
        if store is None or not isinstance(actor, Actor):
            return await call_next(request)

        cached = await store.check_or_reserve(actor.id, key)
        if cached is not None:
            logger.info("Replaying idempotent response for key %s (actor %s)", key, actor.id)
            return Response(
                content=cached.body,
                status_code=cached.status_code,
                media_type=cached.content_type,
                headers={REPLAY_HEADER: "true"},
            )

        response = await call_next(request)
        if response.status_code >= 500:
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        clock = getattr(request.app.state, "clock", None) or SystemClock()
        await store.store(
            actor.id,
            key,
            CachedResponse(
                status_code=response.status_code,
                body=body,
                content_type=response.headers.get("content-type", "application/json"),
                created_at=clock.now(),
            ),
        )
        return Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
        )
