"""Delivery model and its status ordering."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin
from app.models.validators import non_negative


class DeliveryStatus(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    ASSIGNMENT_PENDING = "assignment_pending"
    ASSIGNED = "assigned"
    DISPATCHED = "dispatched"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Total order over the progress states. Cancelled and failed sit outside the
# progress line and are handled as terminal states by the state machine.
STATUS_RANK = {
    DeliveryStatus.CREATED: 0,
    DeliveryStatus.CONFIRMED: 1,
    DeliveryStatus.ASSIGNMENT_PENDING: 2,
    DeliveryStatus.ASSIGNED: 3,
    DeliveryStatus.DISPATCHED: 4,
    DeliveryStatus.PICKED_UP: 5,
    DeliveryStatus.DELIVERED: 6,
    DeliveryStatus.CANCELLED: 7,
    DeliveryStatus.FAILED: 7,
}

TERMINAL_STATUSES = frozenset({
    DeliveryStatus.DELIVERED,
    DeliveryStatus.CANCELLED,
    DeliveryStatus.FAILED,
})

# A rider is attached in these states
RIDER_STATUSES = frozenset({
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.DISPATCHED,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.DELIVERED,
})

# ...and counts towards the rider's load in these
ACTIVE_RIDER_STATUSES = frozenset({
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.DISPATCHED,
    DeliveryStatus.PICKED_UP,
})

# Deliveries the poll loop checks with the courier
POLLABLE_STATUSES = frozenset({
    DeliveryStatus.DISPATCHED,
    DeliveryStatus.PICKED_UP,
})


class Delivery(Base, TimestampMixin):
    """Courier fulfillment of a confirmed order.

    ``provider`` is NULL for self-fulfilled deliveries. Status is written
    only by the state machine.
    """

    __tablename__ = "deliveries"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    external_delivery_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus), default=DeliveryStatus.CREATED, nullable=False, index=True
    )
    rider_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("riders.id", ondelete="SET NULL"), nullable=True, index=True
    )

    pickup_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pickup_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dropoff_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dropoff_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Lifecycle timestamps, each set at most once
    requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Polling bookkeeping
    last_polled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    poll_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="delivery")
    restaurant: Mapped["Restaurant"] = relationship("Restaurant")
    rider: Mapped[Optional["Rider"]] = relationship("Rider")
    tasks: Mapped[list["ScheduledTask"]] = relationship(
        "ScheduledTask", back_populates="delivery", cascade="all, delete-orphan"
    )

    @validates("poll_failure_count")
    def _validate_poll_failures(self, key, value):
        return non_negative(key, value)

    def __repr__(self) -> str:
        return f"<Delivery #{self.id} order={self.order_id} {self.status.value}>"
