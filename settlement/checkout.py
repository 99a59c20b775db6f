"""Checkout boundary: orders and the payment transactions webhooks refer to."""
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from settlement import config
from settlement.database import atomic
from settlement.errors import (
    CreatorNotFound,
    InvalidRequest,
    InvalidStateTransition,
    OrderNotFound,
    PaymentNotFound,
)
from settlement.models import (
    CENT,
    CreatorProfile,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    utcnow,
)
from settlement.signature import to_decimal, verify_amount

logger = logging.getLogger(__name__)


@dataclass
class LineItem:
    solution_id: str
    creator_id: str
    unit_price: Decimal
    quantity: int = 1


def generate_order_number() -> str:
    return f"ORD{utcnow():%Y%m%d%H%M%S}{secrets.token_hex(3).upper()}"


def create_order(buyer_id: str, items: List[LineItem], currency: str = "CNY", notes: Optional[str] = None) -> Order:
    if not items:
        raise InvalidRequest("An order needs at least one line item")

    with atomic() as db:
        order = Order(
            order_number=generate_order_number(),
            buyer_id=buyer_id,
            currency=currency,
            notes=notes,
            status=OrderStatus.PENDING,
            total_amount=Decimal("0.00"),
        )
        total = Decimal("0.00")
        for item in items:
            unit_price = to_decimal(item.unit_price)
            if unit_price is None or unit_price < 0 or item.quantity < 1:
                raise InvalidRequest(f"Invalid line item for solution {item.solution_id}")
            # revenue is split per creator once paid, so each one must already exist
            if db.get(CreatorProfile, item.creator_id) is None:
                raise CreatorNotFound(f"Creator profile not found: {item.creator_id}")
            subtotal = (unit_price * item.quantity).quantize(CENT)
            total += subtotal
            order.items.append(
                OrderItem(
                    solution_id=item.solution_id,
                    creator_id=item.creator_id,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    subtotal=subtotal,
                )
            )
        order.total_amount = total
        db.add(order)

    logger.info("Created order %s for buyer %s, total %s", order.order_number, buyer_id, total)
    return order


def existing_payment(db, provider: str, external_id: str) -> Optional[PaymentTransaction]:
    return (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.provider == provider, PaymentTransaction.external_id == external_id)
        .one_or_none()
    )


def open_payment(
    order_id: str,
    amount,
    method: str,
    provider: str,
    external_id: str,
    currency: str = "CNY",
) -> PaymentTransaction:
    """Create the PENDING payment transaction a provider's webhook will later settle.

    Re-opening with the same provider and external id returns the existing row,
    also when a concurrent request inserted it first. An order that already
    has ``MAX_FAILED_PAYMENTS`` failed attempts takes no further payments.
    """
    try:
        with atomic() as db:
            existing = existing_payment(db, provider, external_id)
            if existing:
                return existing

            order = db.query(Order).filter(Order.id == order_id).with_for_update().one_or_none()
            if order is None:
                raise OrderNotFound(f"Order not found: {order_id}")
            if order.status != OrderStatus.PENDING:
                raise InvalidStateTransition(f"Order {order_id} is {order.status.value} and cannot take payments")
            if not verify_amount(amount, order.total_amount):
                raise InvalidRequest(f"Payment amount {amount} does not match order total {order.total_amount}")

            statuses = [
                status
                for (status,) in db.query(PaymentTransaction.status).filter(PaymentTransaction.order_id == order_id)
            ]
            if PaymentStatus.COMPLETED in statuses:
                raise InvalidStateTransition(f"Order {order_id} is already paid")
            if statuses.count(PaymentStatus.FAILED) >= config.MAX_FAILED_PAYMENTS:
                raise InvalidStateTransition(f"Order {order_id} reached the payment retry limit")

            payment = PaymentTransaction(
                order_id=order_id,
                amount=Decimal(order.total_amount),
                currency=currency,
                method=method,
                provider=provider,
                external_id=external_id,
                status=PaymentStatus.PENDING,
            )
            db.add(payment)
    except IntegrityError as exc:
        with atomic() as db:
            existing = existing_payment(db, provider, external_id)
        if existing is None:
            raise InvalidRequest(f"Could not open {provider} payment {external_id}") from exc
        logger.warning("Payment %s/%s was opened by a concurrent request; returning it", provider, external_id)
        return existing

    logger.info("Opened %s payment %s for order %s", provider, external_id, order_id)
    return payment


def retry_payment(payment_id: str, external_id: str) -> PaymentTransaction:
    """Open a fresh PENDING attempt for the order of a FAILED payment."""
    with atomic() as db:
        failed = db.get(PaymentTransaction, payment_id)
    if failed is None:
        raise PaymentNotFound(f"Payment not found: {payment_id}")
    if failed.status != PaymentStatus.FAILED:
        raise InvalidStateTransition(f"Only failed payments can be retried; {payment_id} is {failed.status.value}")

    return open_payment(
        failed.order_id,
        failed.amount,
        method=failed.method,
        provider=failed.provider,
        external_id=external_id,
        currency=failed.currency,
    )
