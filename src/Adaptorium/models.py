# models.py

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from Adaptorium.db import Base


class AdaptBuild(Base):
    """Metadata for one course build (preview, publish or export)."""

    __tablename__ = "adapt_builds"
    id: Mapped[str] = mapped_column(String(26), primary_key=True)  # ULID
    action: Mapped[str] = mapped_column(String(16))  # preview|publish|export
    course_id: Mapped[str] = mapped_column(String(64), index=True)
    location: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_by: Mapped[str] = mapped_column(String(64))
    versions: Mapped[dict] = mapped_column(JSON, default=dict)  # plugin name -> version
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


Index("ix_adapt_builds_course_action", AdaptBuild.course_id, AdaptBuild.action)
