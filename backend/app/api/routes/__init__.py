"""API routes."""

from fastapi import APIRouter

from app.api.routes import deliveries, riders, scheduler, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(deliveries.router, prefix="/deliveries", tags=["deliveries"])
api_router.include_router(riders.router, prefix="/riders", tags=["riders"])
api_router.include_router(scheduler.router, prefix="/scheduler", tags=["scheduler"])
