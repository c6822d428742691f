"""
Clerk webhook endpoint for identity synchronization.

SECURITY: Every delivery MUST carry a valid Svix signature before its body
is parsed. Verification happens against the raw bytes, before JSON decoding.

Documentation: https://clerk.com/docs/webhooks

Status codes:
- 200: event applied or skipped (duplicates, unknown types, missing rows)
- 400: invalid JSON, missing event type, or malformed event data
- 401: signature verification failed
- 500: referenced rows missing or unexpected failure (Svix will retry)
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from saas_identity.auth.webhook_signature import WebhookSignatureVerifier
from saas_identity.database.session import get_db_session
from saas_identity.services.clerk_webhook_handler import (
    MALFORMED_EVENT,
    ClerkWebhookRouter,
    MalformedEventError,
    SyncStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = "processed"
    message: Optional[str] = None


def get_webhook_verifier(request: Request) -> WebhookSignatureVerifier:
    """Verifier configured on the application at startup."""
    verifier = getattr(request.app.state, "webhook_verifier", None)
    if verifier is None:
        logger.error("Webhook verifier not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook handler not configured",
        )
    return verifier


@router.post("/clerk", response_model=WebhookResponse)
async def handle_clerk_webhook(
    request: Request,
    svix_id: Optional[str] = Header(None, alias="svix-id"),
    svix_timestamp: Optional[str] = Header(None, alias="svix-timestamp"),
    svix_signature: Optional[str] = Header(None, alias="svix-signature"),
    verifier: WebhookSignatureVerifier = Depends(get_webhook_verifier),
    db: Session = Depends(get_db_session),
):
    """
    Handle incoming Clerk webhooks.

    Security:
    - Verifies the Svix signature using CLERK_WEBHOOK_SECRET
    - Does not require gateway identity (webhooks are server-to-server)
    """
    body = await request.body()

    if not verifier.verify(svix_id, svix_timestamp, svix_signature, body):
        logger.warning(
            "Clerk webhook signature verification failed",
            extra={
                "svix_id": svix_id,
                "has_timestamp": bool(svix_timestamp),
                "has_signature": bool(svix_signature),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid JSON in webhook payload", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    event_type = payload.get("type") if isinstance(payload, dict) else None
    if not event_type:
        logger.warning("Missing event type in webhook payload", extra={"svix_id": svix_id})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing event type",
        )

    logger.info(
        "Received Clerk webhook",
        extra={"event_type": event_type, "svix_id": svix_id},
    )

    try:
        result = ClerkWebhookRouter(db).handle_event(payload, svix_id=svix_id)
    except MalformedEventError as e:
        logger.warning(
            "Malformed webhook event",
            extra={"event_type": event_type, "svix_id": svix_id, "error": e.message},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed event",
        )

    # Failure details are logged by the router, never returned
    if result.status == SyncStatus.FAILED:
        if result.reason == MALFORMED_EVENT:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Malformed event",
            )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook event",
        )

    if result.status == SyncStatus.SKIPPED:
        message = f"Event {event_type} skipped: {result.reason}"
    else:
        message = f"Event {event_type} processed successfully"

    return WebhookResponse(
        received=True,
        status=result.status.value,
        message=message,
    )


@router.get("/clerk/health")
async def clerk_webhook_health(request: Request):
    """
    Health check for the Clerk webhook endpoint.

    Does not require authentication.
    """
    verifier = getattr(request.app.state, "webhook_verifier", None)
    return {
        "status": "healthy",
        "webhook_secret_configured": bool(verifier and verifier.is_configured),
    }
