import json
import logging
from decimal import Decimal
from typing import Mapping, Optional

import stripe

from settlement import config
from settlement.errors import MalformedWebhook, ProviderUnavailable
from settlement.providers.base import EventOutcome, NormalizedEvent, ProviderAdapter

logger = logging.getLogger(__name__)

EVENT_OUTCOMES = {
    "payment_intent.succeeded": EventOutcome.SUCCESS,
    "payment_intent.payment_failed": EventOutcome.FAILED,
    "payment_intent.canceled": EventOutcome.CLOSED,
    "payment_intent.processing": EventOutcome.PROCESSING,
}

INTENT_OUTCOMES = {
    "succeeded": EventOutcome.SUCCESS,
    "processing": EventOutcome.PROCESSING,
    "canceled": EventOutcome.CLOSED,
}


def minor_to_major(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        return str(value)
    return str((Decimal(value) / 100).quantize(Decimal("0.01")))


def failure_message(intent) -> Optional[str]:
    error = intent.get("last_payment_error")
    return error.get("message") if isinstance(error, dict) else None


class StripeAdapter(ProviderAdapter):
    """Stripe PaymentIntent events, verified with Stripe's signature header scheme."""

    name = "stripe"
    content_type = "application/json"

    def __init__(self, webhook_secret: Optional[str] = None, api_key: Optional[str] = None):
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else config.provider_secret("STRIPE_WEBHOOK_SECRET")
        )
        self.api_key = api_key if api_key is not None else config.provider_secret("STRIPE_SECRET_KEY")

    def parse(self, raw_body: str) -> NormalizedEvent:
        try:
            event = json.loads(raw_body)
            intent = event["data"]["object"]
            event_type = event["type"]
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedWebhook("Invalid payload") from exc
        if not isinstance(intent, dict) or not isinstance(event_type, str):
            raise MalformedWebhook("Invalid payload")
        external_id = intent.get("id")
        if external_id is not None and not isinstance(external_id, str):
            raise MalformedWebhook("Invalid payment intent id")

        outcome = EVENT_OUTCOMES.get(event_type, EventOutcome.PENDING)
        return NormalizedEvent(
            external_id=external_id,
            outcome=outcome,
            external_status=event_type,
            declared_amount=minor_to_major(intent.get("amount_received") or intent.get("amount")),
            provider_reference=event.get("id"),
            failure_reason=failure_message(intent) if outcome is EventOutcome.FAILED else None,
            fields={"event_id": event.get("id", ""), "type": event_type},
        )

    def signature(self, raw_body: str, headers: Mapping[str, str]) -> Optional[str]:
        return headers.get("stripe-signature") or None

    def verify(self, raw_body: str, signature: str) -> bool:
        if not self.webhook_secret or not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(raw_body, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.debug("Stripe signature rejected: %s", exc)
            return False
        return True

    def acknowledge(self, ok: bool):
        return json.dumps({"ok": ok}), self.content_type

    def fetch_status(self, external_id: str) -> Optional[NormalizedEvent]:
        try:
            intent = stripe.PaymentIntent.retrieve(external_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"Stripe status query failed: {exc}") from exc
        last_error = getattr(intent, "last_payment_error", None)
        if intent.status in INTENT_OUTCOMES:
            outcome = INTENT_OUTCOMES[intent.status]
        elif intent.status == "requires_payment_method" and last_error:
            outcome = EventOutcome.FAILED
        else:
            outcome = EventOutcome.PENDING
        return NormalizedEvent(
            external_id=intent.id,
            outcome=outcome,
            external_status=intent.status,
            declared_amount=minor_to_major(getattr(intent, "amount_received", None) or intent.amount),
            failure_reason=getattr(last_error, "message", None) if outcome is EventOutcome.FAILED else None,
        )
