"""Inbound webhook payload and response schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Gloria Food push ("accepted orders") payload

class GloriaFoodItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    quantity: int = 1
    price: Decimal = Decimal("0")
    total_item_price: Optional[Decimal] = None
    instructions: Optional[str] = None


class GloriaFoodOrder(BaseModel):
    """One order inside a Gloria Food push. Unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore")

    id: int | str
    status: Literal["accepted", "missed", "rejected", "canceled", "cancelled"]
    type: Literal["delivery", "pickup", "table_reservation", "dine_in"] = "pickup"
    currency: str = "USD"
    total_price: Decimal = Decimal("0")
    client_first_name: Optional[str] = None
    client_last_name: Optional[str] = None
    client_phone: Optional[str] = None
    client_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    missed_reason: Optional[str] = None
    items: List[GloriaFoodItem] = Field(default_factory=list)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def blank_coordinate_is_none(cls, v: Any) -> Any:
        if v == "":
            return None
        return v

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class GloriaFoodPush(BaseModel):
    """Push envelope; each order is validated when it is submitted."""

    model_config = ConfigDict(extra="ignore")

    count: Optional[int] = None
    orders: List[Dict[str, Any]] = Field(min_length=1)


# DoorDash Drive webhook

class DoorDashWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_name: str
    external_delivery_id: str = Field(min_length=1)
    delivery_status: Optional[str] = None
    tracking_url: Optional[str] = None
    cancellation_reason: Optional[str] = None


# Responses

class WebhookResult(BaseModel):
    """Outcome of one normalized event."""

    status: str  # processed, duplicate, ignored, noop
    event: str
    order_id: Optional[int] = None
    delivery_id: Optional[int] = None
    delivery_status: Optional[str] = None
    message: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str
    message: Optional[str] = None
    results: List[WebhookResult] = Field(default_factory=list)
