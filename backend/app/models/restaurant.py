"""Restaurant configuration models.

The restaurant store is an external collaborator of the dispatcher: these
tables hold only what dispatch reads (pickup location, provider credentials,
radius and fee settings, webhook shared secrets).
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Enum as SQLEnum, Float, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base, TimestampMixin
from app.models.validators import latitude, longitude, non_negative, positive


class ProviderPlatform(str, Enum):
    GLORIA_FOOD = "gloria_food"
    DOORDASH = "doordash"


class DistanceUnit(str, Enum):
    KM = "km"
    MI = "mi"


class Restaurant(Base, TimestampMixin):
    """A restaurant; its location is the pickup point for every delivery."""

    __tablename__ = "restaurants"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    settings: Mapped[Optional["RestaurantSettings"]] = relationship(
        "RestaurantSettings", back_populates="restaurant", uselist=False,
        cascade="all, delete-orphan",
    )
    webhook_configs: Mapped[list["WebhookConfig"]] = relationship(
        "WebhookConfig", back_populates="restaurant", cascade="all, delete-orphan"
    )

    @validates("latitude")
    def _validate_latitude(self, key, value):
        return latitude(key, value)

    @validates("longitude")
    def _validate_longitude(self, key, value):
        return longitude(key, value)


class RestaurantSettings(Base, TimestampMixin):
    """Per-restaurant integration credentials and dispatch settings."""

    __tablename__ = "restaurant_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    # Gloria Food (inbound orders)
    gloria_food_api_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    gloria_food_store_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    gloria_food_master_key: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # DoorDash Drive (outbound courier)
    doordash_developer_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    doordash_key_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    doordash_signing_secret: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    doordash_merchant_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    doordash_sandbox: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Location / dispatch
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    distance_unit: Mapped[DistanceUnit] = mapped_column(
        SQLEnum(DistanceUnit), default=DistanceUnit.KM, nullable=False
    )
    max_delivery_radius: Mapped[float] = mapped_column(Float, default=10.0, nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    auto_assign_riders: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    restaurant: Mapped["Restaurant"] = relationship("Restaurant", back_populates="settings")

    @validates("max_delivery_radius")
    def _validate_radius(self, key, value):
        return positive(key, value)

    @validates("delivery_fee")
    def _validate_fee(self, key, value):
        return non_negative(key, value)

    @property
    def is_gloria_food_connected(self) -> bool:
        return bool(self.gloria_food_api_key and self.gloria_food_store_id and self.gloria_food_master_key)

    @property
    def is_doordash_connected(self) -> bool:
        return bool(self.doordash_developer_id and self.doordash_key_id and self.doordash_signing_secret)


class WebhookConfig(Base, TimestampMixin):
    """Shared secret a provider presents when calling our webhook endpoint."""

    __tablename__ = "webhook_configs"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "platform", name="uq_webhook_config_platform"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    platform: Mapped[ProviderPlatform] = mapped_column(SQLEnum(ProviderPlatform), nullable=False)
    api_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    api_secret: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    restaurant: Mapped["Restaurant"] = relationship("Restaurant", back_populates="webhook_configs")
