from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from packages.db.models import UserTable

from .authorization import Actor, Role


class UserDirectory(Protocol):
    """Resolve user identities to display name, role and e-mail."""

    async def get_user(self, user_id: str) -> Actor | None:
        ...


class SqlUserDirectory:
    """Read-only view over the ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_user(self, user_id: str) -> Actor | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
        if row is None:
            return None
        return self._table_to_actor(row)

    @staticmethod
    def _table_to_actor(row: UserTable) -> Actor:
        return Actor(
            id=row.id,
            name=row.name,
            role=Role(row.role),
            email=row.email,
            is_active=bool(row.is_active),
        )


async def display_name(directory: UserDirectory, user_id: str | None, *, default: str = "unassigned") -> str:
    """Return the user's name for audit descriptions."""

    if not user_id:
        return default
    user = await directory.get_user(user_id)
    return user.name if user is not None else default
