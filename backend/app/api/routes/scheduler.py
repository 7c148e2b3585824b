"""Background scheduler status."""

from fastapi import APIRouter
from sqlalchemy import func

from app.db.base import utcnow
from app.db.session import DbSession
from app.models.scheduled_task import ScheduledTask
from app.services.scheduler_service import scheduler

router = APIRouter()


@router.get("/status")
def scheduler_status(db: DbSession):
    """Get background loop status and task queue depth."""
    pending = db.query(func.count(ScheduledTask.id)).scalar() or 0
    due = (
        db.query(func.count(ScheduledTask.id))
        .filter(ScheduledTask.run_at <= utcnow())
        .scalar()
        or 0
    )
    by_kind = dict(
        db.query(ScheduledTask.kind, func.count(ScheduledTask.id))
        .group_by(ScheduledTask.kind)
        .all()
    )
    return {
        **scheduler.get_status(),
        "queue": {
            "pending": pending,
            "due": due,
            "by_kind": {kind.value: count for kind, count in by_kind.items()},
        },
    }
