"""Inbound provider webhooks."""

from typing import Optional

from fastapi import APIRouter, Header, Request

from app.db.session import DbSession
from app.schemas.webhook import WebhookResponse
from app.services.dispatch_service import DispatchService

router = APIRouter()


def _api_key(authorization: Optional[str], x_api_key: Optional[str]) -> Optional[str]:
    if x_api_key:
        return x_api_key.strip()
    if authorization:
        scheme, _, token = authorization.partition(" ")
        return (token if scheme.lower() == "bearer" and token else authorization).strip()
    return None


@router.post("/{platform}", response_model=WebhookResponse)
async def handle_webhook(
    db: DbSession,
    platform: str,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
):
    """Handle an order or courier webhook.

    The caller presents its webhook API key (``X-API-Key`` or
    ``Authorization: Bearer``) and, when the key has a secret, an
    ``X-Signature`` HMAC of the body. Unauthenticated calls get 401 and
    never reach the dispatcher.
    """
    body = await request.body()
    service = DispatchService(db)
    results = await service.ingest_webhook(platform, body, _api_key(authorization, x_api_key), x_signature)

    statuses = {r.status for r in results}
    if statuses == {"duplicate"}:
        status, message = "duplicate", "Already processed"
    else:
        status, message = "success", f"Processed {len(results)} event(s)"
    return WebhookResponse(status=status, message=message, results=results)
