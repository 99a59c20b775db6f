from decimal import Decimal

import pytest

from settlement import checkout
from settlement.checkout import LineItem, create_order, open_payment, retry_payment
from settlement.database import atomic
from settlement.errors import (
    CreatorNotFound,
    InvalidRequest,
    InvalidStateTransition,
    OrderNotFound,
    PaymentNotFound,
)
from settlement.models import Order, OrderItem, OrderStatus, PaymentStatus, PaymentTransaction
from settlement.state_machine import cancel_order


def fail_payment(payment_id):
    with atomic() as db:
        db.get(PaymentTransaction, payment_id).status = PaymentStatus.FAILED


def test_create_order_snapshots_creator_per_item(make_creator, rows):
    alice = make_creator("user-alice")
    bob = make_creator("user-bob")

    order = create_order(
        "buyer-1",
        [
            LineItem(solution_id="sol-a", creator_id=alice.id, unit_price=Decimal("19.99"), quantity=3),
            LineItem(solution_id="sol-b", creator_id=bob.id, unit_price=Decimal("5.00")),
        ],
        notes="gift",
    )

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("64.97")
    assert order.order_number.startswith("ORD")
    items = rows(OrderItem)
    assert [(item.creator_id, item.subtotal) for item in items] == [
        (alice.id, Decimal("59.97")),
        (bob.id, Decimal("5.00")),
    ]


def test_create_order_rejects_bad_items():
    with pytest.raises(InvalidRequest):
        create_order("buyer-1", [])
    with pytest.raises(InvalidRequest):
        create_order("buyer-1", [LineItem(solution_id="sol-a", creator_id="c", unit_price=Decimal("1"), quantity=0)])
    with pytest.raises(InvalidRequest):
        create_order("buyer-1", [LineItem(solution_id="sol-a", creator_id="c", unit_price=Decimal("-1"))])


def test_create_order_requires_existing_creators(make_creator, rows):
    alice = make_creator("user-alice")
    items = [
        LineItem(solution_id="sol-a", creator_id=alice.id, unit_price=Decimal("10.00")),
        LineItem(solution_id="sol-b", creator_id="missing-creator", unit_price=Decimal("5.00")),
    ]

    with pytest.raises(CreatorNotFound):
        create_order("buyer-1", items)

    assert rows(Order) == []
    assert rows(OrderItem) == []


def test_open_payment_is_idempotent_per_external_id(pending_payment, rows):
    creator, order, payment = pending_payment

    again = open_payment(order.id, "100.00", method="alipay", provider="alipay", external_id="external-123")

    assert again.id == payment.id
    assert again.status == PaymentStatus.PENDING
    assert len(rows(PaymentTransaction)) == 1


def test_open_payment_returns_row_inserted_by_concurrent_request(mocker, pending_payment, rows):
    creator, order, payment = pending_payment
    real_lookup = checkout.existing_payment
    lookups = []

    def missing_on_first_lookup(db, provider, external_id):
        lookups.append(external_id)
        return None if len(lookups) == 1 else real_lookup(db, provider, external_id)

    mocker.patch("settlement.checkout.existing_payment", side_effect=missing_on_first_lookup)

    again = open_payment(order.id, "100.00", method="alipay", provider="alipay", external_id="external-123")

    assert again.id == payment.id
    assert lookups == ["external-123", "external-123"]
    assert len(rows(PaymentTransaction)) == 1


def test_open_payment_duplicate_insert_that_cannot_be_found_is_invalid(mocker, pending_payment, rows):
    creator, order, payment = pending_payment
    mocker.patch("settlement.checkout.existing_payment", return_value=None)

    with pytest.raises(InvalidRequest):
        open_payment(order.id, "100.00", method="alipay", provider="alipay", external_id="external-123")

    assert len(rows(PaymentTransaction)) == 1


def test_open_payment_requires_exact_total(pending_payment):
    creator, order, payment = pending_payment
    with pytest.raises(InvalidRequest):
        open_payment(order.id, "99.99", method="alipay", provider="alipay", external_id="external-456")
    with pytest.raises(OrderNotFound):
        open_payment("no-such-order", "1.00", method="alipay", provider="alipay", external_id="external-789")


def test_open_payment_refused_for_closed_order(pending_payment):
    creator, order, payment = pending_payment
    cancel_order(order.id)
    with pytest.raises(InvalidStateTransition):
        open_payment(order.id, "100.00", method="wechat", provider="wechat", external_id="wx-1")


def test_order_takes_no_payment_after_three_failed_attempts(pending_payment, rows):
    creator, order, payment = pending_payment
    fail_payment(payment.id)
    for attempt in (2, 3):
        retry = open_payment(order.id, "100.00", method="alipay", provider="alipay", external_id=f"external-{attempt}")
        fail_payment(retry.id)

    with pytest.raises(InvalidStateTransition, match="retry limit"):
        open_payment(order.id, "100.00", method="wechat", provider="wechat", external_id="wx-4")

    assert len(rows(PaymentTransaction)) == 3


def test_retry_limit_follows_configuration(monkeypatch, pending_payment):
    creator, order, payment = pending_payment
    monkeypatch.setattr(checkout.config, "MAX_FAILED_PAYMENTS", 1)
    fail_payment(payment.id)

    with pytest.raises(InvalidStateTransition):
        open_payment(order.id, "100.00", method="alipay", provider="alipay", external_id="external-2")


def test_retry_payment_opens_new_attempt_for_failed_payment(pending_payment, load):
    creator, order, payment = pending_payment
    with pytest.raises(InvalidStateTransition):
        retry_payment(payment.id, "external-124")

    fail_payment(payment.id)
    retry = retry_payment(payment.id, "external-124")

    assert retry.id != payment.id
    assert retry.status == PaymentStatus.PENDING
    assert (retry.order_id, retry.provider, retry.method) == (order.id, "alipay", "alipay")
    assert retry.amount == Decimal("100.00")
    assert load(PaymentTransaction, payment.id).status == PaymentStatus.FAILED

    with pytest.raises(PaymentNotFound):
        retry_payment("no-such-payment", "external-125")
