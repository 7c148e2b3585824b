"""Durable scheduled task model.

Pending retries survive a process restart because the queue is a table,
not an in-memory timer.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, utcnow
from app.models.validators import non_negative, positive


class TaskKind(str, Enum):
    POLL_DELIVERY = "poll_delivery"
    DISPATCH_CALL = "dispatch_call"
    STATUS_REFRESH = "status_refresh"


class ScheduledTask(Base):
    """A deferred, retryable provider call tied to one delivery."""

    __tablename__ = "scheduled_tasks"
    __table_args__ = (
        UniqueConstraint("delivery_id", "kind", name="uq_scheduled_task_delivery_kind"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    delivery_id: Mapped[int] = mapped_column(
        ForeignKey("deliveries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[TaskKind] = mapped_column(SQLEnum(TaskKind), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    delivery: Mapped["Delivery"] = relationship("Delivery", back_populates="tasks")

    @validates("attempts")
    def _validate_attempts(self, key, value):
        return non_negative(key, value)

    @validates("max_attempts")
    def _validate_max_attempts(self, key, value):
        return positive(key, value)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def __repr__(self) -> str:
        return f"<ScheduledTask #{self.id} {self.kind.value} delivery={self.delivery_id} attempt={self.attempts}>"
