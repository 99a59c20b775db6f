import random
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.database import atomic
from settlement.errors import CreatorNotFound, InvalidRequest, InvalidStateTransition
from settlement.models import CENT, CreatorProfile, RevenueShare, RevenueStatus, utcnow
from settlement.revenue import (
    allocate,
    available_balance,
    creator_revenue_stats,
    promote_matured_shares,
    reconcile_creator_balance,
    settle_revenue_share,
    split_amount,
)


def allocate_order(order_id, fee_ratio=None):
    with atomic() as db:
        return allocate(db, order_id, fee_ratio)


def test_split_amount_half():
    assert split_amount(Decimal("100.00"), Decimal("0.5")) == (Decimal("50.00"), Decimal("50.00"))


def test_split_amount_rounds_fee_half_up_and_gives_remainder_to_creator():
    fee, revenue = split_amount(Decimal("0.01"), Decimal("0.5"))
    assert (fee, revenue) == (Decimal("0.01"), Decimal("0.00"))

    fee, revenue = split_amount(Decimal("33.33"), Decimal("0.3"))
    assert fee == Decimal("10.00")
    assert revenue == Decimal("23.33")


def test_split_amount_conserves_every_cent():
    rng = random.Random(20240611)
    for _ in range(500):
        total = Decimal(rng.randint(0, 10_000_000)) * CENT
        ratio = Decimal(rng.randint(0, 1000)) / Decimal(1000)
        fee, revenue = split_amount(total, ratio)
        assert fee + revenue == total
        assert fee >= 0 and revenue >= 0
        assert fee == fee.quantize(CENT)


def test_split_amount_rejects_ratio_outside_unit_interval():
    with pytest.raises(InvalidRequest):
        split_amount(Decimal("10.00"), Decimal("1.5"))
    with pytest.raises(InvalidRequest):
        split_amount(Decimal("10.00"), Decimal("-0.1"))


def test_allocate_one_share_per_creator(make_creator, make_order, load, rows):
    alice = make_creator("user-alice")
    bob = make_creator("user-bob")
    order = make_order((alice.id, "30.00", 2), (bob.id, "15.55", 1), (alice.id, "10.00", 1))

    created = allocate_order(order.id)

    assert len(created) == 2
    by_creator = {share.creator_id: share for share in rows(RevenueShare)}
    assert by_creator[alice.id].total_amount == Decimal("70.00")
    assert by_creator[alice.id].creator_revenue == Decimal("35.00")
    assert by_creator[bob.id].total_amount == Decimal("15.55")
    assert by_creator[bob.id].platform_fee == Decimal("7.78")
    assert by_creator[bob.id].creator_revenue == Decimal("7.77")
    assert sum(s.platform_fee + s.creator_revenue for s in by_creator.values()) == Decimal("85.55")

    assert load(CreatorProfile, alice.id).revenue == Decimal("35.00")
    assert load(CreatorProfile, bob.id).revenue == Decimal("7.77")


def test_allocate_twice_creates_nothing_new(make_creator, make_order, load, rows):
    creator = make_creator()
    order = make_order((creator.id, "100.00", 1))

    assert len(allocate_order(order.id)) == 1
    assert allocate_order(order.id) == []
    assert len(rows(RevenueShare)) == 1
    assert load(CreatorProfile, creator.id).revenue == Decimal("50.00")


def test_concurrent_allocation_produces_one_share_set(make_creator, make_order, load, rows):
    alice = make_creator("user-alice")
    bob = make_creator("user-bob")
    order = make_order((alice.id, "40.00", 1), (bob.id, "60.00", 1))

    with ThreadPoolExecutor(max_workers=4) as pool:
        created = list(pool.map(lambda _: len(allocate_order(order.id)), range(6)))

    assert sum(created) == 2
    assert len(rows(RevenueShare)) == 2
    assert load(CreatorProfile, alice.id).revenue == Decimal("20.00")
    assert load(CreatorProfile, bob.id).revenue == Decimal("30.00")


def test_allocate_with_custom_ratio(make_creator, make_order, rows):
    creator = make_creator()
    order = make_order((creator.id, "80.00", 1))

    allocate_order(order.id, fee_ratio=Decimal("0.2"))

    (share,) = rows(RevenueShare)
    assert share.platform_fee == Decimal("16.00")
    assert share.creator_revenue == Decimal("64.00")


def test_allocate_unknown_creator_rolls_back(make_creator, make_order, rows):
    creator = make_creator()
    order = make_order((creator.id, "10.00", 1))
    with atomic() as db:
        db.query(CreatorProfile).filter(CreatorProfile.id == creator.id).delete()

    with pytest.raises(CreatorNotFound):
        allocate_order(order.id)
    assert rows(RevenueShare) == []


def test_settle_revenue_share(make_creator, make_order, load):
    creator = make_creator()
    order = make_order((creator.id, "100.00", 1))
    (share,) = allocate_order(order.id)

    settled = settle_revenue_share(share.id)

    assert settled.status == RevenueStatus.AVAILABLE
    assert load(RevenueShare, share.id).settled_at is not None
    with pytest.raises(InvalidStateTransition):
        settle_revenue_share(share.id)
    with pytest.raises(InvalidRequest):
        settle_revenue_share("no-such-share")


def test_promote_matured_shares_respects_holding_period(make_creator, make_order, load):
    creator = make_creator()
    order = make_order((creator.id, "100.00", 1))
    (share,) = allocate_order(order.id)

    assert promote_matured_shares(hold_days=7) == 0
    assert load(RevenueShare, share.id).status == RevenueStatus.PENDING

    assert promote_matured_shares(now=utcnow() + timedelta(days=8), hold_days=7) == 1
    assert load(RevenueShare, share.id).status == RevenueStatus.AVAILABLE
    assert promote_matured_shares(now=utcnow() + timedelta(days=8), hold_days=7) == 0


def test_balance_and_stats(make_creator, make_order):
    creator = make_creator()
    first = make_order((creator.id, "100.00", 1))
    second = make_order((creator.id, "20.00", 1))
    (settled,) = allocate_order(first.id)
    allocate_order(second.id)
    settle_revenue_share(settled.id)

    with atomic() as db:
        assert available_balance(db, creator.id) == Decimal("50.00")
        stats = creator_revenue_stats(db, creator.id)

    assert stats["total_revenue"] == Decimal("60.00")
    assert stats["pending_revenue"] == Decimal("10.00")
    assert stats["available_revenue"] == Decimal("50.00")
    assert stats["withdrawn_revenue"] == Decimal("0.00")
    assert len(stats["recent_shares"]) == 2


def test_reconcile_corrects_drift(make_creator, make_order, load):
    creator = make_creator()
    order = make_order((creator.id, "100.00", 1))
    allocate_order(order.id)

    with atomic() as db:
        db.get(CreatorProfile, creator.id).revenue = Decimal("999.99")

    cached, expected = reconcile_creator_balance(creator.id)

    assert cached == Decimal("999.99")
    assert expected == Decimal("50.00")
    assert load(CreatorProfile, creator.id).revenue == Decimal("50.00")
    assert reconcile_creator_balance(creator.id) == (Decimal("50.00"), Decimal("50.00"))
