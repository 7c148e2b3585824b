"""Rider schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def _check_location_pair(model) -> None:
    if (model.last_latitude is None) != (model.last_longitude is None):
        raise ValueError("last_latitude and last_longitude must be given together")


class RiderBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=50)
    is_available: bool = True
    max_concurrent_deliveries: int = Field(2, ge=1, le=20)
    last_latitude: Optional[float] = Field(None, ge=-90, le=90)
    last_longitude: Optional[float] = Field(None, ge=-180, le=180)


class RiderCreate(RiderBase):
    restaurant_id: int

    @model_validator(mode="after")
    def location_pair(self) -> "RiderCreate":
        _check_location_pair(self)
        return self


class RiderUpdate(BaseModel):
    """Availability, location and capacity changes.

    Load is owned by the dispatcher and cannot be set here.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=50)
    active: Optional[bool] = None
    is_available: Optional[bool] = None
    max_concurrent_deliveries: Optional[int] = Field(None, ge=1, le=20)
    last_latitude: Optional[float] = Field(None, ge=-90, le=90)
    last_longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def location_pair(self) -> "RiderUpdate":
        _check_location_pair(self)
        return self


class RiderResponse(RiderBase):
    id: int
    restaurant_id: int
    active: bool
    current_load: int
    location_updated_at: Optional[datetime] = None
    last_assigned_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
