"""
PAYSTACK WEBHOOK ROUTES

POST /api/webhooks/paystack

The raw body is read untouched so the HMAC is computed over exactly the
bytes the provider signed. Handled outcomes, including rejected signatures,
answer 200 so the provider stops redelivering.
"""

from fastapi import APIRouter, Depends, Header, Request
from typing import Optional
import logging

from delivery_core.webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/api/webhooks", tags=["Payment Webhooks"])


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


@webhook_router.post("/paystack")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(default=None),
    processor: WebhookProcessor = Depends(get_webhook_processor)
):
    """
    Receive a Paystack event.
    Invalid signatures are logged as security events and never touch a payment.
    """
    raw_body = await request.body()
    result = await processor.process(raw_body, x_paystack_signature)

    if result["status"] == "error":
        logger.warning(f"[WEBHOOK] Event not processed: {result.get('message')}")

    return result
