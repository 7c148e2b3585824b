"""Delivery routes: inspection and operator actions."""

from typing import List, Optional

from fastapi import APIRouter, Query

from app.core.errors import NotFoundError
from app.db.session import DbSession
from app.models.delivery import Delivery, DeliveryStatus
from app.models.scheduled_task import ScheduledTask
from app.schemas.delivery import (
    DeliveryCancel,
    DeliveryDetail,
    DeliveryList,
    DeliveryResponse,
    ScheduledTaskResponse,
)
from app.schemas.rider import RiderResponse
from app.services.dispatch_service import DispatchService

router = APIRouter()


def _get_delivery(db, delivery_id: int) -> Delivery:
    delivery = db.query(Delivery).filter(Delivery.id == delivery_id).first()
    if not delivery:
        raise NotFoundError(f"Delivery {delivery_id} not found")
    return delivery


@router.get("/", response_model=DeliveryList)
def list_deliveries(
    db: DbSession,
    restaurant_id: Optional[int] = None,
    status: Optional[DeliveryStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List deliveries, newest first."""
    query = db.query(Delivery)
    if restaurant_id is not None:
        query = query.filter(Delivery.restaurant_id == restaurant_id)
    if status is not None:
        query = query.filter(Delivery.status == status)
    total = query.count()
    items = query.order_by(Delivery.created_at.desc(), Delivery.id.desc()).offset(skip).limit(limit).all()
    return DeliveryList(items=items, total=total)


@router.get("/{delivery_id}", response_model=DeliveryDetail)
def get_delivery(db: DbSession, delivery_id: int):
    return _get_delivery(db, delivery_id)


@router.get("/{delivery_id}/tasks", response_model=List[ScheduledTaskResponse])
def list_delivery_tasks(db: DbSession, delivery_id: int):
    """Outstanding scheduled tasks for a delivery."""
    _get_delivery(db, delivery_id)
    return (
        db.query(ScheduledTask)
        .filter(ScheduledTask.delivery_id == delivery_id)
        .order_by(ScheduledTask.run_at)
        .all()
    )


@router.post("/{delivery_id}/assign", response_model=RiderResponse)
async def assign_delivery(db: DbSession, delivery_id: int):
    """Re-run rider assignment for a delivery awaiting a rider."""
    return await DispatchService(db).assign_rider(delivery_id)


@router.post("/{delivery_id}/cancel", response_model=DeliveryResponse)
async def cancel_delivery(db: DbSession, delivery_id: int, payload: Optional[DeliveryCancel] = None):
    reason = payload.reason if payload else None
    return await DispatchService(db).cancel_delivery(delivery_id, reason or "cancelled by operator")


@router.post("/{delivery_id}/complete", response_model=DeliveryResponse)
async def complete_delivery(db: DbSession, delivery_id: int):
    """Mark a self-fulfilled delivery as delivered."""
    return await DispatchService(db).complete_delivery(delivery_id)
