"""Response cache for retried mutating requests.

Entries are scoped by actor and client supplied key. The store owns its expiry:
expired entries are ignored on lookup and removed by :class:`IdempotencySweeper`
running on the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from packages.db.models import IdempotencyRecordTable

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_MAX_LENGTH = 255
DEFAULT_TTL = timedelta(hours=24)


@dataclass(frozen=True, slots=True)
class CachedResponse:
    """Status code and raw body of a completed mutation."""

    status_code: int
    body: bytes
    content_type: str
    created_at: datetime


class IdempotencyStore(Protocol):
    async def check_or_reserve(self, actor_id: str, key: str) -> CachedResponse | None:
        ...

    async def store(self, actor_id: str, key: str, response: CachedResponse) -> bool:
        ...

    async def purge_expired(self) -> int:
        ...


class InMemoryIdempotencyStore:
    """Process local store, suitable for a single API instance."""

    def __init__(self, *, ttl: timedelta = DEFAULT_TTL, clock: Clock | None = None) -> None:
        self._ttl = ttl
        self._clock = clock or SystemClock()
        self._entries: dict[tuple[str, str], CachedResponse] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, response: CachedResponse, now: datetime) -> bool:
        return now - response.created_at >= self._ttl

    async def check_or_reserve(self, actor_id: str, key: str) -> CachedResponse | None:
        now = self._clock.now()
        with self._lock:
            cached = self._entries.get((actor_id, key))
            if cached is None:
                return None
            if self._expired(cached, now):
                del self._entries[(actor_id, key)]
                return None
            return cached

    async def store(self, actor_id: str, key: str, response: CachedResponse) -> bool:
        """Record ``response`` unless a live entry already exists."""

        now = self._clock.now()
        with self._lock:
            existing = self._entries.get((actor_id, key))
            if existing is not None and not self._expired(existing, now):
                return False
            self._entries[(actor_id, key)] = response
            return True

    async def purge_expired(self) -> int:
        now = self._clock.now()
        with self._lock:
            expired = [entry for entry, cached in self._entries.items() if self._expired(cached, now)]
            for entry in expired:
                del self._entries[entry]
        return len(expired)


class SqlIdempotencyStore:
    """Store backed by the ``idempotency_records`` table, shared across instances."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl
        self._clock = clock or SystemClock()

    async def check_or_reserve(self, actor_id: str, key: str) -> CachedResponse | None:
        async with self._session_factory() as session:
            row = await session.get(IdempotencyRecordTable, (actor_id, key))
        if row is None:
            return None
        created_at = row.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        if self._clock.now() - created_at >= self._ttl:
            return None
        return CachedResponse(
            status_code=row.status_code,
            body=bytes(row.body),
            content_type=row.content_type,
            created_at=created_at,
        )

    async def store(self, actor_id: str, key: str, response: CachedResponse) -> bool:
        # An expired leftover must not block the new response.
        cutoff = self._clock.now() - self._ttl
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(IdempotencyRecordTable).where(
                            IdempotencyRecordTable.actor_id == actor_id,
                            IdempotencyRecordTable.key == key,
                            IdempotencyRecordTable.created_at <= cutoff,
                        )
                    )
                    session.add(
                        IdempotencyRecordTable(
                            actor_id=actor_id,
                            key=key,
                            status_code=response.status_code,
                            body=response.body,
                            content_type=response.content_type,
                            created_at=response.created_at,
                        )
                    )
        except IntegrityError:
            logger.info("Idempotency key %s already recorded for %s", key, actor_id)
            return False
        return True

    async def purge_expired(self) -> int:
        cutoff = self._clock.now() - self._ttl
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(IdempotencyRecordTable).where(IdempotencyRecordTable.created_at <= cutoff)
                )
        return result.rowcount or 0


class IdempotencySweeper:
    """Periodically purge expired entries without blocking request handling."""

    def __init__(self, store: IdempotencyStore, *, interval_seconds: float = 3600) -> None:
        self._store = store
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="idempotency-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def sweep_once(self) -> int:
        removed = await self._store.purge_expired()
        if removed:
            logger.info("Purged %d expired idempotency entries", removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Idempotency sweep failed")
