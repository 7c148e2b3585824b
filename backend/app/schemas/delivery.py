"""Delivery and scheduled task schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.delivery import DeliveryStatus
from app.models.order import FulfillmentType, OrderStatus
from app.models.scheduled_task import TaskKind


class OrderSummary(BaseModel):
    id: int
    provider: str
    external_id: str
    status: OrderStatus
    fulfillment_type: FulfillmentType
    customer_name: Optional[str] = None
    dropoff_address: Optional[str] = None
    total_amount: Decimal
    currency: str
    created_at: datetime

    model_config = {"from_attributes": True}


class DeliveryResponse(BaseModel):
    id: int
    order_id: int
    restaurant_id: int
    provider: Optional[str] = None
    external_delivery_id: Optional[str] = None
    status: DeliveryStatus
    rider_id: Optional[int] = None
    tracking_url: Optional[str] = None
    pickup_latitude: Optional[float] = None
    pickup_longitude: Optional[float] = None
    dropoff_latitude: Optional[float] = None
    dropoff_longitude: Optional[float] = None
    requested_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    poll_failure_count: int = 0
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DeliveryDetail(DeliveryResponse):
    order: OrderSummary


class DeliveryList(BaseModel):
    items: List[DeliveryResponse]
    total: int


class DeliveryCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ScheduledTaskResponse(BaseModel):
    id: int
    delivery_id: int
    kind: TaskKind
    run_at: datetime
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}
