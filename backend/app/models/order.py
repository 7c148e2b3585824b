"""Inbound order model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, Float, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin
from app.models.validators import non_negative, validate_list_of_dicts


class OrderStatus(str, Enum):
    """Status of an inbound order."""

    RECEIVED = "received"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class FulfillmentType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class Order(Base, TimestampMixin):
    """An order received from an inbound order source.

    Unique per (provider, external_id); a re-delivered webhook finds the
    existing row instead of creating a second one. Immutable once confirmed
    except for cancellation.
    """

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_order_provider_external_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus), default=OrderStatus.RECEIVED, nullable=False, index=True
    )
    fulfillment_type: Mapped[FulfillmentType] = mapped_column(
        SQLEnum(FulfillmentType), default=FulfillmentType.DELIVERY, nullable=False
    )

    # Customer / dropoff
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    dropoff_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    dropoff_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dropoff_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Contents
    items: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    delivery: Mapped[Optional["Delivery"]] = relationship(
        "Delivery", back_populates="order", uselist=False
    )

    @validates("total_amount")
    def _validate_total(self, key, value):
        return non_negative(key, value)

    @validates("items")
    def _validate_items(self, key, value):
        return validate_list_of_dicts(key, value)

    def __repr__(self) -> str:
        return f"<Order #{self.id} {self.provider}:{self.external_id} {self.status.value}>"
