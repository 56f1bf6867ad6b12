"""
WEBHOOK PROCESSOR

HTTP-facing collaborator of the payment reconciler:
1. Verify the HMAC signature over the RAW body (before parsing)
2. Parse the event
3. Route charge events to PaymentReconciler.reconcile

An invalid signature short-circuits before any payment is read.
"""

from typing import Any, Dict, Optional, Union
import json
import logging

from pydantic import ValidationError

from .models import WebhookData
from .payments import PaymentReconciler
from .paystack import verify_webhook_signature

logger = logging.getLogger(__name__)

CHARGE_EVENTS = ("charge.success", "charge.failed")
ACKNOWLEDGED_EVENTS = (
    "transfer.success",
    "transfer.failed",
    "subscription.create",
    "subscription.disable",
)


class WebhookProcessor:
    def __init__(self, reconciler: PaymentReconciler, secret: str):
        self.reconciler = reconciler
        self.secret = secret

    async def process(self, raw_body: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        if not verify_webhook_signature(raw_body, signature, self.secret):
            logger.warning(
                "[WEBHOOK] Invalid signature, request rejected",
                extra={"type": "webhook_signature_invalid", "security_event": True}
            )
            return {"status": "invalid_signature"}

        try:
            payload = json.loads(raw_body)
        except (ValueError, TypeError) as e:
            logger.error(f"[WEBHOOK] Unparseable payload: {e}", extra={"type": "webhook_error"})
            return {"status": "error", "message": "Malformed payload"}

        if not isinstance(payload, dict):
            return {"status": "error", "message": "Malformed payload"}

        event = payload.get("event")
        logger.info(f"[WEBHOOK] Received event: {event}", extra={"type": "webhook_received", "event": event})

        if event in CHARGE_EVENTS:
            return await self._handle_charge(event, payload.get("data") or {})

        if event in ACKNOWLEDGED_EVENTS:
            logger.info(f"[WEBHOOK] {event} acknowledged, no payment change", extra={"type": "webhook_acknowledged", "event": event})
            return {"status": "success", "event": event}

        logger.info(f"[WEBHOOK] Unhandled event type: {event}", extra={"type": "webhook_unhandled", "event": event})
        return {"status": "ignored", "event": event}

    async def _handle_charge(self, event: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            charge = WebhookData.model_validate(data)
        except ValidationError as e:
            logger.error(f"[WEBHOOK] Invalid {event} data: {e}", extra={"type": "webhook_error", "event": event})
            return {"status": "error", "message": "Invalid event data"}

        try:
            result = await self.reconciler.reconcile(charge.reference, charge.model_dump(exclude_none=True))
        except Exception as e:
            logger.exception(
                f"[WEBHOOK] Reconciliation failed for {charge.reference}: {e}",
                extra={"type": "webhook_error", "event": event, "reference": charge.reference}
            )
            return {"status": "error", "message": "Webhook processing failed"}

        response = {"status": "success", "event": event, "outcome": result.outcome}
        if result.outcome in ("ignored", "not_found"):
            response["status"] = "ignored"
            response["reason"] = result.reason
        return response
