"""
SQLAlchemy ORM models for the orchestrator.

Tables:
- orchestration_status: the per-user "latest status" slot
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from orchestra.db.database import Base
from orchestra.models.base import utc_now


class OrchestrationStatusRow(Base):
    """
    One row per user holding the latest orchestration status document.

    The document is the camelCase dict clients read. A new request replaces
    it wholesale; the pipeline merges partials into it. Rows are never
    deleted by the service.
    """
    __tablename__ = "orchestration_status"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    document: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<OrchestrationStatusRow(user_id={self.user_id}, step={self.document.get('step')})>"
