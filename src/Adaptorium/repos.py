# repos.py

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from Adaptorium import models
from Adaptorium.errors import BuildRecordValidationError
from Adaptorium.manifest_validation import ManifestValidationError, validate_build_record
from Adaptorium.metrics import inc_counter
from Adaptorium.schemas import BuildRecordData
from Adaptorium.tools.ulid import generate_ulid


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: models.AdaptBuild) -> BuildRecordData:
    return BuildRecordData(
        id=row.id,
        action=row.action,  # type: ignore[arg-type]
        course_id=row.course_id,
        location=row.location,
        expires_at=_as_utc(row.expires_at),
        created_by=row.created_by,
        versions=dict(row.versions or {}),
    )


async def save_build_record(s: AsyncSession, record: BuildRecordData) -> BuildRecordData:
    """Validate and insert a build record; assigns a ULID when ``record.id`` is unset."""
    record = record.model_copy(update={"expires_at": _as_utc(record.expires_at)})
    payload = record.model_dump(mode="json", by_alias=True, exclude_none=True)
    try:
        validate_build_record(payload)
    except ManifestValidationError as exc:
        raise BuildRecordValidationError(str(exc), path=exc.path) from exc

    row = models.AdaptBuild(
        id=record.id or generate_ulid(),
        action=record.action,
        course_id=record.course_id,
        location=record.location,
        expires_at=_as_utc(record.expires_at),
        created_by=record.created_by,
        versions=dict(record.versions),
    )
    s.add(row)
    await _flush_retry(s)
    inc_counter("build.record.saved")
    return _to_record(row)


async def get_build_record(s: AsyncSession, build_id: str) -> BuildRecordData | None:
    row = await s.get(models.AdaptBuild, build_id)
    return _to_record(row) if row else None


async def list_build_records(
    s: AsyncSession, *, course_id: str, action: str | None = None
) -> list[BuildRecordData]:
    stmt = select(models.AdaptBuild).where(models.AdaptBuild.course_id == course_id)
    if action is not None:
        stmt = stmt.where(models.AdaptBuild.action == action)
    q = await s.execute(stmt.order_by(models.AdaptBuild.created_at.desc(), models.AdaptBuild.id.desc()))
    return [_to_record(r) for r in q.scalars().all()]


async def delete_build_record(s: AsyncSession, build_id: str) -> bool:
    res = await s.execute(delete(models.AdaptBuild).where(models.AdaptBuild.id == build_id))
    return bool(res.rowcount)


async def delete_expired_build_records(
    s: AsyncSession, *, now: datetime | None = None
) -> list[BuildRecordData]:
    """Delete records whose ``expires_at`` has passed; returns what was removed."""
    now = now or datetime.now(timezone.utc)
    q = await s.execute(select(models.AdaptBuild).where(models.AdaptBuild.expires_at <= now))
    expired = [_to_record(r) for r in q.scalars().all()]
    if expired:
        await s.execute(
            delete(models.AdaptBuild).where(models.AdaptBuild.id.in_([r.id for r in expired]))
        )
        inc_counter("build.record.expired", len(expired))
    return expired


async def _flush_retry(s: AsyncSession, attempts: int = 5, delay: float = 0.2) -> None:
    """Retry session.flush() on transient SQLite 'database is locked' errors.

    Exponential backoff: delay * 2^i between attempts.
    """
    for i in range(attempts):
        try:
            await s.flush()
            return
        except OperationalError as e:  # pragma: no cover - timing dependent
            msg = str(e).lower()
            if "database is locked" in msg or "database is busy" in msg:
                if i == attempts - 1:
                    raise
                await asyncio.sleep(delay * (2**i))
                continue
            raise
