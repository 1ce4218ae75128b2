"""
Stripe webhook endpoint.

POST /api/webhooks/stripe verifies the signature, deduplicates on the
Stripe event id and applies the event to the subscriptions table.
"""
import logging
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from wishbubble.api.billing import BillingDisabledError
from wishbubble.core.errors import ValidationError
from wishbubble.features.billing.provider import BillingWebhookError
from wishbubble.features.billing.service import billing_enabled, process_webhook_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request):
    """
    Returns:
        {"received": true, "event_id": "..."}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise BillingDisabledError("Billing is not configured")

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(process_webhook_event, headers, body)
    except BillingWebhookError as e:
        logger.warning("[webhooks] rejected", extra={"error_code": "invalid_webhook"})
        raise ValidationError(str(e), code="invalid_webhook") from e
    return {"received": True, "event_id": result.event_id}
