from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from helpdesk.core.config import Settings, get_settings
from helpdesk.tickets.authorization import Actor, Role
from helpdesk.tickets.directory import UserDirectory

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def resolve_user_from_token(
    token: str | None, *, directory: UserDirectory | None, settings: Settings
) -> Actor:
    """Verify ``token`` and load the active user named by its ``sub`` claim."""

    if not token:
        raise _unauthorized("NO_TOKEN", "No token provided")
    if directory is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "User directory is not configured"},
        )

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise _unauthorized("INVALID_TOKEN", "Invalid token") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise _unauthorized("INVALID_TOKEN", "Invalid token")

    user = await directory.get_user(subject)
    if user is None or not user.is_active:
        raise _unauthorized("INVALID_TOKEN", "Invalid token or user inactive")
    return user


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> Actor:
    """Return the authenticated actor, reusing the one resolved by the middleware."""

    cached = getattr(request.state, "user", None)
    if isinstance(cached, Actor):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = await resolve_user_from_token(
        token,
        directory=getattr(request.app.state, "user_directory", None),
        settings=get_settings(),
    )
    request.state.user = user
    return user


def role_required(*roles: Role) -> Callable[..., Actor]:
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[Actor, Depends(get_current_user)]) -> Actor:
        if user.role not in roles:
            raise HTTPException(
                status_code=403,
                detail={"code": "FORBIDDEN", "message": "Insufficient permissions"},
            )
        return user

    return dependency


CurrentUser = Annotated[Actor, Depends(get_current_user)]
