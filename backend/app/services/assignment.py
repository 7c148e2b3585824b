"""Rider assignment engine.

Candidate filtering and ranking are pure; reserving and releasing rider
capacity are single guarded UPDATE statements so a rider's load can never
exceed its capacity or drop below zero, whatever else runs concurrently.
"""

import logging
import math
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.errors import NoCandidateAvailable
from app.db.base import ensure_utc
from app.models.delivery import Delivery
from app.models.restaurant import DistanceUnit
from app.models.rider import Rider

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_MILE = 1.609344


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_in_unit(lat1: float, lon1: float, lat2: float, lon2: float, unit: DistanceUnit) -> float:
    km = haversine_km(lat1, lon1, lat2, lon2)
    if DistanceUnit(unit) == DistanceUnit.MI:
        return km / KM_PER_MILE
    return km


class RiderAssignmentEngine:
    """Chooses a rider for a delivery.

    Riders must be active, available, below capacity and within
    ``max_radius`` of the pickup point. Among those, the lowest current load
    wins, then the rider idle the longest (never-assigned riders first).
    Riders with no known location are not excluded by the radius check.
    """

    def __init__(self, max_radius: float, unit: DistanceUnit = DistanceUnit.KM):
        self.max_radius = max_radius
        self.unit = DistanceUnit(unit)

    def _within_radius(self, delivery: Delivery, rider: Rider) -> bool:
        if delivery.pickup_latitude is None or delivery.pickup_longitude is None:
            return True
        if rider.last_latitude is None or rider.last_longitude is None:
            return True
        distance = distance_in_unit(
            delivery.pickup_latitude, delivery.pickup_longitude,
            rider.last_latitude, rider.last_longitude,
            self.unit,
        )
        return distance <= self.max_radius

    def rank_candidates(self, delivery: Delivery, riders: Iterable[Rider]) -> List[Rider]:
        eligible = [
            r for r in riders
            if r.active
            and r.is_available
            and r.restaurant_id == delivery.restaurant_id
            and r.current_load < r.max_concurrent_deliveries
            and self._within_radius(delivery, r)
        ]
        return sorted(eligible, key=_idle_key)

    def assign(self, delivery: Delivery, riders: Iterable[Rider]) -> int:
        """Return the chosen rider id or raise NoCandidateAvailable."""
        ranked = self.rank_candidates(delivery, riders)
        if not ranked:
            raise NoCandidateAvailable(
                f"No rider available for delivery {delivery.id}", delivery_id=delivery.id
            )
        return ranked[0].id


def _idle_key(rider: Rider):
    last = ensure_utc(rider.last_assigned_at)
    # Never assigned sorts before any timestamp
    return (
        rider.current_load,
        last is not None,
        last.timestamp() if last else 0.0,
        rider.id,
    )


def load_candidates(db: Session, restaurant_id: int) -> Sequence[Rider]:
    return db.scalars(
        select(Rider)
        .where(
            Rider.restaurant_id == restaurant_id,
            Rider.active.is_(True),
            Rider.is_available.is_(True),
        )
        .order_by(Rider.id)
    ).all()


def reserve_rider(db: Session, rider_id: int, now: datetime) -> bool:
    """Increment a rider's load if it is still available and below capacity."""
    result = db.execute(
        update(Rider)
        .where(
            Rider.id == rider_id,
            Rider.active.is_(True),
            Rider.is_available.is_(True),
            Rider.current_load < Rider.max_concurrent_deliveries,
        )
        .values(current_load=Rider.current_load + 1, last_assigned_at=now)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def release_rider(db: Session, rider_id: Optional[int]) -> bool:
    """Decrement a rider's load, never below zero."""
    if rider_id is None:
        return False
    result = db.execute(
        update(Rider)
        .where(Rider.id == rider_id, Rider.current_load > 0)
        .values(current_load=Rider.current_load - 1)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        logger.warning(f"Rider {rider_id} load already zero, nothing to release")
        return False
    return True
