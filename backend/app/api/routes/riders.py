"""Rider routes."""

from typing import List, Optional

from fastapi import APIRouter

from app.core.errors import NotFoundError
from app.db.base import utcnow
from app.db.session import DbSession
from app.models.restaurant import Restaurant
from app.models.rider import Rider
from app.schemas.rider import RiderCreate, RiderResponse, RiderUpdate

router = APIRouter()


@router.get("/", response_model=List[RiderResponse])
def list_riders(
    db: DbSession,
    restaurant_id: Optional[int] = None,
    available: Optional[bool] = None,
):
    query = db.query(Rider)
    if restaurant_id is not None:
        query = query.filter(Rider.restaurant_id == restaurant_id)
    if available is not None:
        query = query.filter(Rider.is_available == available)
    return query.order_by(Rider.id).all()


@router.post("/", response_model=RiderResponse, status_code=201)
def create_rider(db: DbSession, payload: RiderCreate):
    if not db.query(Restaurant).filter(Restaurant.id == payload.restaurant_id).first():
        raise NotFoundError(f"Restaurant {payload.restaurant_id} not found")
    rider = Rider(**payload.model_dump(), current_load=0)
    if rider.last_latitude is not None:
        rider.location_updated_at = utcnow()
    db.add(rider)
    db.commit()
    db.refresh(rider)
    return rider


@router.patch("/{rider_id}", response_model=RiderResponse)
def update_rider(db: DbSession, rider_id: int, payload: RiderUpdate):
    """Update availability, location or capacity."""
    rider = db.query(Rider).filter(Rider.id == rider_id).first()
    if not rider:
        raise NotFoundError(f"Rider {rider_id} not found")

    data = payload.model_dump(exclude_unset=True)
    for field, value in data.items():
        setattr(rider, field, value)
    if "last_latitude" in data:
        rider.location_updated_at = utcnow()
    db.commit()
    db.refresh(rider)
    return rider
