"""Bearer token authentication middleware for FastAPI."""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from helpdesk.api.errors import http_exception_payload
from helpdesk.core.config import get_settings
from helpdesk.dependencies.auth import resolve_user_from_token


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Populate the request state with the authenticated actor.

    Requests without an ``Authorization`` header pass through untouched; the
    route dependencies decide whether an actor is required.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        authorization = request.headers.get("Authorization")
        if not authorization:
            return await call_next(request)

        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "bearer":
            exc = HTTPException(status_code=401, detail={"code": "INVALID_TOKEN", "message": "Invalid token"})
            return JSONResponse(status_code=401, content=http_exception_payload(exc))

        try:
            user = await resolve_user_from_token(
                credentials.strip() or None,
                directory=getattr(request.app.state, "user_directory", None),
                settings=get_settings(),
            )
        except HTTPException as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content=http_exception_payload(exc),
                headers=exc.headers,
            )

        request.state.user = user
        return await call_next(request)
