"""SQLAlchemy models."""

from app.models.restaurant import (
    Restaurant,
    RestaurantSettings,
    WebhookConfig,
    ProviderPlatform,
    DistanceUnit,
)
from app.models.order import Order, OrderStatus, FulfillmentType
from app.models.rider import Rider
from app.models.delivery import (
    Delivery,
    DeliveryStatus,
    STATUS_RANK,
    TERMINAL_STATUSES,
    RIDER_STATUSES,
    ACTIVE_RIDER_STATUSES,
    POLLABLE_STATUSES,
)
from app.models.scheduled_task import ScheduledTask, TaskKind

__all__ = [
    "Restaurant",
    "RestaurantSettings",
    "WebhookConfig",
    "ProviderPlatform",
    "DistanceUnit",
    "Order",
    "OrderStatus",
    "FulfillmentType",
    "Rider",
    "Delivery",
    "DeliveryStatus",
    "STATUS_RANK",
    "TERMINAL_STATUSES",
    "RIDER_STATUSES",
    "ACTIVE_RIDER_STATUSES",
    "POLLABLE_STATUSES",
    "ScheduledTask",
    "TaskKind",
]
