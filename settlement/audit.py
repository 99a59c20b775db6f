"""Append-only audit trail over PaymentEvent rows."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from settlement.database import atomic
from settlement.models import PaymentEvent, PaymentEventType, PaymentTransaction

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 64 * 1024


@dataclass
class RequestContext:
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM = RequestContext(source_ip="system", user_agent="payment-sync-service")


def record_event(
    db,
    event_type: PaymentEventType,
    *,
    payment: Optional[PaymentTransaction] = None,
    provider: Optional[str] = None,
    external_id: Optional[str] = None,
    payload: Optional[str] = None,
    detail: Optional[dict] = None,
    suspicious: bool = False,
    context: Optional[RequestContext] = None,
) -> PaymentEvent:
    """Add an event row to the caller's transaction."""
    context = context or RequestContext()
    event = PaymentEvent(
        payment_transaction_id=payment.id if payment is not None else None,
        provider=provider or (payment.provider if payment is not None else None),
        external_id=external_id or (payment.external_id if payment is not None else None),
        event_type=event_type,
        payload=payload[:MAX_PAYLOAD_CHARS] if payload else payload,
        detail=detail or {},
        suspicious=suspicious,
        source_ip=context.source_ip,
        user_agent=context.user_agent,
    )
    db.add(event)
    return event


def record_rejection(
    reason: str,
    *,
    provider: Optional[str],
    external_id: Optional[str],
    payment_id: Optional[str] = None,
    payload: Optional[str] = None,
    context: Optional[RequestContext] = None,
    detail: Optional[dict] = None,
) -> None:
    """Persist a suspicious rejected delivery in its own transaction."""
    logger.warning(
        "Rejected %s webhook for external id %s: %s", provider, external_id, reason,
    )
    with atomic() as db:
        payment = db.get(PaymentTransaction, payment_id) if payment_id else None
        record_event(
            db,
            PaymentEventType.REJECTED,
            payment=payment,
            provider=provider,
            external_id=external_id,
            payload=payload,
            detail={"reason": reason, **(detail or {})},
            suspicious=True,
            context=context,
        )


def list_events(
    db,
    payment_transaction_id: Optional[str] = None,
    external_id: Optional[str] = None,
    since: Optional[datetime] = None,
    suspicious_only: bool = False,
    limit: int = 100,
) -> List[PaymentEvent]:
    query = db.query(PaymentEvent)
    if payment_transaction_id:
        query = query.filter(PaymentEvent.payment_transaction_id == payment_transaction_id)
    if external_id:
        query = query.filter(PaymentEvent.external_id == external_id)
    if since is not None:
        query = query.filter(PaymentEvent.created_at >= since)
    if suspicious_only:
        query = query.filter(PaymentEvent.suspicious.is_(True))
    return query.order_by(PaymentEvent.created_at, PaymentEvent.id).limit(limit).all()
