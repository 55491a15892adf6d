"""Expiring cache of build records.

Lookups consult memory first and fall back to the ``adapt_builds`` table.
Records whose ``expires_at`` has passed are evicted on read and never
returned. ``purge_expired`` also deletes the expired rows and the build
output they point at.
"""

from __future__ import annotations

import asyncio
import shutil
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from Adaptorium import repos
from Adaptorium.db import session_scope
from Adaptorium.errors import BuildNotFoundError
from Adaptorium.metrics import inc_counter
from Adaptorium.schemas import BuildRecordData

log = structlog.get_logger()

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _remove_output(location: str) -> None:
    path = Path(location)
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists():
        path.unlink()


class BuildCache:
    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._records: dict[str, BuildRecordData] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, build_id: object) -> bool:
        return build_id in self._records

    def is_expired(self, record: BuildRecordData) -> bool:
        return record.expires_at <= self._clock()

    def put(self, record: BuildRecordData) -> None:
        if record.id is None:
            raise ValueError("build record has no id")
        self._records[record.id] = record

    def evict(self, build_id: str) -> None:
        self._records.pop(build_id, None)

    async def get(self, build_id: str) -> BuildRecordData | None:
        record = self._records.get(build_id)
        if record is None:
            async with self._session_factory() as s:
                record = await repos.get_build_record(s, build_id)
            if record is None:
                inc_counter("build.cache.miss")
                return None
        if self.is_expired(record):
            log.info("build.cache.expired", build_id=build_id)
            self.evict(build_id)
            inc_counter("build.cache.expired")
            return None
        inc_counter("build.cache.hit")
        self._records[build_id] = record
        return record

    async def require(self, build_id: str) -> BuildRecordData:
        record = await self.get(build_id)
        if record is None:
            raise BuildNotFoundError("No such build", buildId=build_id)
        return record

    async def purge_expired(self, *, remove_output: bool = True) -> int:
        """Drop expired records from memory and storage; returns how many went."""
        now = self._clock()
        for build_id in [k for k, r in self._records.items() if r.expires_at <= now]:
            self.evict(build_id)
        async with self._session_factory() as s:
            expired = await repos.delete_expired_build_records(s, now=now)
        if remove_output:
            await asyncio.gather(*(asyncio.to_thread(_remove_output, r.location) for r in expired))
        if expired:
            log.info("build.cache.purged", count=len(expired))
        return len(expired)
