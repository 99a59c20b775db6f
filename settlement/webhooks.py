"""Webhook ingestion: raw provider callback in, at most one state change out.

Order of checks:

1. signature and external id must be present;
2. the external id must match a payment created at checkout;
3. the signature must authenticate the raw body;
4. a reported success must declare exactly the stored amount;
5. the outcome is applied under a row lock (``state_machine.apply_outcome``).

Rejections at steps 1-4 are written to the audit trail as suspicious
events and change no ledger state. So is an authentic callback that step 5
cannot apply (for example an order whose creator profile is gone); the
provider is acknowledged because redelivery would fail the same way.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from settlement.audit import RequestContext, record_rejection
from settlement.database import atomic
from settlement.errors import (
    AmountMismatch,
    InvalidSignature,
    MalformedWebhook,
    PaymentNotFound,
    Result,
    SettlementError,
)
from settlement.models import PaymentTransaction
from settlement.providers.base import EventOutcome, NormalizedEvent
from settlement.providers.registry import get_adapter
from settlement.signature import verify_amount
from settlement.state_machine import TransitionOutcome, apply_outcome

logger = logging.getLogger(__name__)


@dataclass
class WebhookReceipt:
    provider: str
    external_id: str
    payment_id: str
    transition: TransitionOutcome


def find_payment(provider: str, external_id: str) -> Optional[PaymentTransaction]:
    with atomic() as db:
        return (
            db.query(PaymentTransaction)
            .filter(PaymentTransaction.provider == provider, PaymentTransaction.external_id == external_id)
            .one_or_none()
        )


def check_amount(event: NormalizedEvent, payment: PaymentTransaction) -> None:
    if event.outcome is not EventOutcome.SUCCESS or event.declared_amount is None:
        return
    if not verify_amount(event.declared_amount, payment.amount):
        raise AmountMismatch(
            f"Declared amount {event.declared_amount} does not match payment amount {payment.amount}",
            declared=event.declared_amount,
            expected=str(payment.amount),
        )


def decode_body(raw_body: Union[bytes, str]) -> str:
    if isinstance(raw_body, str):
        return raw_body
    try:
        return raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedWebhook("Body is not valid UTF-8") from exc


def handle_webhook(
    provider: str,
    raw_body: Union[bytes, str],
    headers: Mapping[str, str],
    context: Optional[RequestContext] = None,
) -> Result[WebhookReceipt]:
    """Process one provider callback. Never raises a ``SettlementError``.

    ``raw_body`` is best passed as the bytes received: it is decoded strictly
    so the signature is checked against exactly what the provider sent.
    """
    context = context or RequestContext()
    headers = {key.lower(): value for key, value in headers.items()}
    if isinstance(raw_body, bytes):
        audit_body = raw_body.decode("utf-8", errors="replace")
    else:
        audit_body = raw_body
    external_id = None
    payment_id = None

    def reject(exc: SettlementError) -> Result[WebhookReceipt]:
        record_rejection(
            exc.kind.value,
            provider=provider,
            external_id=external_id,
            payment_id=payment_id,
            payload=audit_body,
            context=context,
            detail={"message": exc.message},
        )
        return Result.failure(exc)

    try:
        try:
            adapter = get_adapter(provider)
            body = decode_body(raw_body)
            signature = adapter.signature(body, headers)
            event = adapter.parse(body)
            external_id = event.external_id
            if not signature:
                raise MalformedWebhook("Missing signature")
            if not external_id:
                raise MalformedWebhook("Missing external transaction id")

            payment = find_payment(provider, external_id)
            if payment is None:
                raise PaymentNotFound(f"No payment transaction for {provider} id {external_id}")
            payment_id = payment.id

            if not adapter.verify(body, signature):
                raise InvalidSignature("Signature verification failed")
            check_amount(event, payment)
        except SettlementError as exc:
            if exc.transient:
                raise
            return reject(exc)

        try:
            with atomic() as db:
                transition = apply_outcome(db, payment.id, event, payload=body, context=context)
        except SettlementError as exc:
            if exc.transient:
                raise
            # authentic but not applicable: audited and acknowledged
            logger.error(
                "Authentic webhook %s/%s could not be applied: %s", provider, external_id, exc.message,
            )
            return reject(exc)

    except SettlementError as exc:
        logger.warning(
            "Webhook %s/%s not processed (%s); provider should redeliver", provider, external_id, exc.kind.value,
        )
        return Result.failure(exc)

    return Result.success(
        WebhookReceipt(provider=provider, external_id=external_id, payment_id=payment.id, transition=transition)
    )
