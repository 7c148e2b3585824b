"""Restaurant rider (own fleet courier) model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.db.base import Base, TimestampMixin
from app.models.validators import latitude, longitude, non_negative, positive


class Rider(Base, TimestampMixin):
    """A rider scoped to one restaurant.

    ``current_load`` is mutated only by the assignment engine (increment)
    and by terminal delivery transitions (decrement).
    """

    __tablename__ = "riders"
    __table_args__ = (
        Index("idx_rider_restaurant_available", "restaurant_id", "is_available"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    current_load: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_concurrent_deliveries: Mapped[int] = mapped_column(Integer, default=2, nullable=False)

    last_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("current_load")
    def _validate_load(self, key, value):
        return non_negative(key, value)

    @validates("max_concurrent_deliveries")
    def _validate_capacity(self, key, value):
        return positive(key, value)

    @validates("last_latitude")
    def _validate_latitude(self, key, value):
        return latitude(key, value)

    @validates("last_longitude")
    def _validate_longitude(self, key, value):
        return longitude(key, value)

    def __repr__(self) -> str:
        return f"<Rider #{self.id} {self.name} load={self.current_load}/{self.max_concurrent_deliveries}>"
