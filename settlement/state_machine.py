"""Payment transaction and order state machines.

``apply_outcome`` is the only code path that moves a payment transaction
out of a pre-terminal state. It must run inside ``database.atomic()``: it
re-reads the payment row under lock, so a duplicate delivery racing the
original one either waits for it or sees the terminal status it left.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from settlement.audit import RequestContext, record_event
from settlement.database import atomic
from settlement.errors import InvalidStateTransition, OrderNotFound, PaymentNotFound
from settlement.models import (
    Order,
    OrderStatus,
    PaymentEventType,
    PaymentStatus,
    PaymentTransaction,
    utcnow,
)
from settlement.providers.base import EventOutcome, NormalizedEvent
from settlement.revenue import allocate, reverse_allocation

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED}
)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

OUTCOME_STATUS = {
    EventOutcome.SUCCESS: PaymentStatus.COMPLETED,
    EventOutcome.FAILED: PaymentStatus.FAILED,
    EventOutcome.CLOSED: PaymentStatus.CANCELLED,
    EventOutcome.PENDING: PaymentStatus.PENDING,
    EventOutcome.PROCESSING: PaymentStatus.PROCESSING,
}


@dataclass
class TransitionOutcome:
    payment_id: str
    previous_status: PaymentStatus
    status: PaymentStatus
    changed: bool = False
    order_confirmed: bool = False
    shares_created: int = 0


def is_terminal(status: PaymentStatus) -> bool:
    return status in TERMINAL_PAYMENT_STATUSES


def transition_order(order: Order, target: OrderStatus) -> None:
    if target not in ORDER_TRANSITIONS[order.status]:
        raise InvalidStateTransition(
            f"Order {order.id} cannot move from {order.status.value} to {target.value}"
        )
    logger.info("Order %s: %s -> %s", order.id, order.status.value, target.value)
    order.status = target


def lock_payment(db, payment_id: str) -> PaymentTransaction:
    payment = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.id == payment_id)
        .with_for_update()
        .one_or_none()
    )
    if payment is None:
        raise PaymentNotFound(f"Payment transaction not found: {payment_id}")
    return payment


def lock_order(db, order_id: str) -> Order:
    order = db.query(Order).filter(Order.id == order_id).with_for_update().one_or_none()
    if order is None:
        raise OrderNotFound(f"Order not found: {order_id}")
    return order


def apply_outcome(
    db,
    payment_id: str,
    event: NormalizedEvent,
    *,
    payload: Optional[str] = None,
    context: Optional[RequestContext] = None,
    changed_event_type: PaymentEventType = PaymentEventType.STATUS_CHANGED,
) -> TransitionOutcome:
    """Apply a provider-reported outcome to one payment, exactly once.

    Terminal payments are left untouched. An event row is written in every
    case, recording what was observed.
    """
    payment = lock_payment(db, payment_id)
    previous = payment.status
    target = OUTCOME_STATUS[event.outcome]
    outcome = TransitionOutcome(payment_id=payment.id, previous_status=previous, status=previous)
    detail = {
        "observed": event.outcome.value,
        "external_status": event.external_status,
        "declared_amount": event.declared_amount,
        "provider_reference": event.provider_reference,
        "previous_status": previous.value,
    }

    def audit(event_type, suspicious=False, **extra):
        record_event(
            db, event_type, payment=payment, payload=payload, detail={**detail, **extra},
            suspicious=suspicious, context=context,
        )

    if is_terminal(previous):
        logger.info("Payment %s already %s, ignoring %s", payment.id, previous.value, event.external_status)
        audit(PaymentEventType.IGNORED_TERMINAL)
        return outcome

    if target == previous or target not in PAYMENT_TRANSITIONS[previous]:
        # same status again, or a late PENDING after PROCESSING
        payment.external_status = event.external_status
        audit(PaymentEventType.STATUS_UNCHANGED)
        return outcome

    payment.status = target
    payment.external_status = event.external_status
    if target == PaymentStatus.COMPLETED:
        payment.paid_at = utcnow()
    elif target in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        payment.failure_reason = event.failure_reason
    outcome.status = target
    outcome.changed = True
    logger.info("Payment %s: %s -> %s", payment.id, previous.value, target.value)

    if target != PaymentStatus.COMPLETED:
        audit(changed_event_type, new_status=target.value)
        return outcome

    order = lock_order(db, payment.order_id)
    if order.status == OrderStatus.PENDING:
        transition_order(order, OrderStatus.CONFIRMED)
        outcome.order_confirmed = True
    elif order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        logger.error(
            "Payment %s completed for %s order %s; route to refund", payment.id, order.status.value, order.id,
        )
        audit(changed_event_type, suspicious=True, new_status=target.value, order_status=order.status.value)
        return outcome
    else:
        logger.warning(
            "Payment %s completed for already %s order %s; possible duplicate payment",
            payment.id, order.status.value, order.id,
        )

    outcome.shares_created = len(allocate(db, order.id))
    audit(
        changed_event_type,
        suspicious=not outcome.order_confirmed,
        new_status=target.value,
        order_status=order.status.value,
        shares_created=outcome.shares_created,
    )
    return outcome


def cancel_order(order_id: str) -> Order:
    """Cancel a PENDING order that has no completed payment."""
    with atomic() as db:
        order = lock_order(db, order_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateTransition(f"Only PENDING orders can be cancelled, order {order_id} is {order.status.value}")
        completed = (
            db.query(PaymentTransaction.id)
            .filter(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status == PaymentStatus.COMPLETED,
            )
            .first()
        )
        if completed is not None:
            raise InvalidStateTransition(f"Order {order_id} has a completed payment; request a refund instead")
        transition_order(order, OrderStatus.CANCELLED)
    return order


def mark_order_status(order_id: str, status: OrderStatus) -> Order:
    """Fulfilment-side moves (PROCESSING, SHIPPED, DELIVERED) validated against the order graph."""
    if status in (OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        raise InvalidStateTransition(f"{status.value} is owned by the payment flow")
    with atomic() as db:
        order = lock_order(db, order_id)
        transition_order(order, status)
    return order


def mark_refunded(payment_id: str, context: Optional[RequestContext] = None) -> PaymentTransaction:
    """Record that the refund collaborator returned a completed payment's money."""
    with atomic() as db:
        payment = lock_payment(db, payment_id)
        if PaymentStatus.REFUNDED not in PAYMENT_TRANSITIONS[payment.status]:
            raise InvalidStateTransition(f"Payment {payment_id} is {payment.status.value}, only COMPLETED can be refunded")
        order = lock_order(db, payment.order_id)
        previous = payment.status
        payment.status = PaymentStatus.REFUNDED
        other_completed = (
            db.query(PaymentTransaction.id)
            .filter(
                PaymentTransaction.order_id == order.id,
                PaymentTransaction.id != payment.id,
                PaymentTransaction.status == PaymentStatus.COMPLETED,
            )
            .first()
        )
        cancelled = []
        # refunding a duplicate payment leaves the order and its shares alone
        if other_completed is None and OrderStatus.REFUNDED in ORDER_TRANSITIONS[order.status]:
            transition_order(order, OrderStatus.REFUNDED)
            cancelled = reverse_allocation(db, order.id)
        record_event(
            db,
            PaymentEventType.REFUNDED,
            payment=payment,
            detail={
                "previous_status": previous.value,
                "new_status": PaymentStatus.REFUNDED.value,
                "cancelled_shares": [share.id for share in cancelled],
            },
            context=context,
        )
    return payment
