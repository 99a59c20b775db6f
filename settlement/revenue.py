"""Revenue allocation engine.

Splits a confirmed order's proceeds between the platform and each creator
represented in it, and moves the resulting shares through settlement.

A creator's running balance (``CreatorProfile.revenue``) is a cached sum of
their PENDING and AVAILABLE shares. It is adjusted in the same transaction
as every share change, and ``reconcile_creator_balance`` rebuilds it from
the rows, which remain the system of record.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from settlement import config
from settlement.database import atomic
from settlement.errors import CreatorNotFound, InvalidRequest, InvalidStateTransition, OrderNotFound
from settlement.models import CENT, CreatorProfile, Order, RevenueShare, RevenueStatus, utcnow

logger = logging.getLogger(__name__)

BALANCE_STATUSES = (RevenueStatus.PENDING, RevenueStatus.AVAILABLE)


def split_amount(total: Decimal, fee_ratio: Decimal) -> Tuple[Decimal, Decimal]:
    """Return (platform_fee, creator_revenue); they always sum to ``total``."""
    if not Decimal("0") <= fee_ratio <= Decimal("1"):
        raise InvalidRequest(f"Fee ratio {fee_ratio} outside [0, 1]")
    total = Decimal(total)
    platform_fee = (total * fee_ratio).quantize(CENT, rounding=ROUND_HALF_UP)
    return platform_fee, total - platform_fee


def lock_creator(db, creator_id: str) -> CreatorProfile:
    creator = (
        db.query(CreatorProfile)
        .filter(CreatorProfile.id == creator_id)
        .with_for_update()
        .one_or_none()
    )
    if creator is None:
        raise CreatorNotFound(f"Creator profile not found: {creator_id}")
    return creator


def creator_subtotals(order: Order) -> Dict[str, Decimal]:
    subtotals: Dict[str, Decimal] = OrderedDict()
    for item in order.items:
        subtotals[item.creator_id] = subtotals.get(item.creator_id, Decimal("0")) + Decimal(item.subtotal)
    return subtotals


def allocate(db, order_id: str, fee_ratio: Optional[Decimal] = None) -> List[RevenueShare]:
    """Create the order's revenue shares inside the caller's transaction.

    Creators that already have a share for this order are skipped, so a
    repeated call creates nothing. Returns only the shares created now.
    """
    fee_ratio = config.PLATFORM_FEE_RATIO if fee_ratio is None else Decimal(fee_ratio)

    order = db.query(Order).filter(Order.id == order_id).with_for_update().one_or_none()
    if order is None:
        raise OrderNotFound(f"Order not found: {order_id}")

    existing = {
        creator_id
        for (creator_id,) in db.query(RevenueShare.creator_id).filter(RevenueShare.order_id == order_id)
    }

    created = []
    # lock creators in id order so concurrent allocations cannot deadlock
    for creator_id, subtotal in sorted(creator_subtotals(order).items()):
        if creator_id in existing:
            logger.info("Revenue share exists for order %s creator %s, skipping", order_id, creator_id)
            continue

        platform_fee, creator_revenue = split_amount(subtotal, fee_ratio)
        creator = lock_creator(db, creator_id)
        share = RevenueShare(
            order_id=order_id,
            creator_id=creator_id,
            total_amount=subtotal,
            platform_fee=platform_fee,
            creator_revenue=creator_revenue,
            status=RevenueStatus.PENDING,
        )
        db.add(share)
        creator.revenue = Decimal(creator.revenue) + creator_revenue
        created.append(share)

        logger.info(
            "Revenue share for order %s creator %s: total=%s fee=%s creator=%s",
            order_id, creator_id, subtotal, platform_fee, creator_revenue,
        )

    db.flush()
    return created


def reverse_allocation(db, order_id: str) -> List[RevenueShare]:
    """Cancel an order's unwithdrawn shares after a refund and give back the balance."""
    creator_ids = sorted(
        {creator_id for (creator_id,) in db.query(RevenueShare.creator_id).filter(RevenueShare.order_id == order_id)}
    )
    # creators before shares, the same order withdrawals lock in
    creators = {creator_id: lock_creator(db, creator_id) for creator_id in creator_ids}
    shares = (
        db.query(RevenueShare)
        .filter(RevenueShare.order_id == order_id)
        .order_by(RevenueShare.creator_id)
        .with_for_update()
        .all()
    )
    cancelled = []
    for share in shares:
        if share.status in BALANCE_STATUSES:
            creator = creators[share.creator_id]
            creator.revenue = Decimal(creator.revenue) - Decimal(share.creator_revenue)
            share.status = RevenueStatus.CANCELLED
            cancelled.append(share)
        elif share.status == RevenueStatus.WITHDRAWN:
            logger.warning(
                "Refunded order %s has withdrawn share %s for creator %s; needs manual clawback",
                order_id, share.id, share.creator_id,
            )
    return cancelled


def settle_revenue_share(share_id: str) -> RevenueShare:
    """Manually promote one share from PENDING to AVAILABLE."""
    with atomic() as db:
        share = (
            db.query(RevenueShare)
            .filter(RevenueShare.id == share_id)
            .with_for_update()
            .one_or_none()
        )
        if share is None:
            raise InvalidRequest(f"Revenue share not found: {share_id}")
        if share.status != RevenueStatus.PENDING:
            raise InvalidStateTransition(f"Revenue share {share_id} is {share.status.value}, not PENDING")
        share.status = RevenueStatus.AVAILABLE
        share.settled_at = utcnow()
        logger.info("Settled revenue share %s for creator %s", share.id, share.creator_id)
    return share


def promote_matured_shares(now: Optional[datetime] = None, hold_days: Optional[int] = None) -> int:
    """Promote every PENDING share older than the holding period. Returns the count."""
    now = now or utcnow()
    hold_days = config.SETTLEMENT_HOLD_DAYS if hold_days is None else hold_days
    cutoff = now - timedelta(days=hold_days)

    with atomic() as db:
        shares = (
            db.query(RevenueShare)
            .filter(RevenueShare.status == RevenueStatus.PENDING, RevenueShare.created_at <= cutoff)
            .with_for_update()
            .all()
        )
        for share in shares:
            share.status = RevenueStatus.AVAILABLE
            share.settled_at = now

    logger.info("Promoted %d revenue shares held since before %s", len(shares), cutoff.isoformat())
    return len(shares)


def available_balance(db, creator_id: str) -> Decimal:
    rows = db.query(RevenueShare.creator_revenue).filter(
        RevenueShare.creator_id == creator_id, RevenueShare.status == RevenueStatus.AVAILABLE,
    )
    return sum((Decimal(amount) for (amount,) in rows), Decimal("0.00"))


def creator_revenue_stats(db, creator_id: str, recent: int = 20) -> dict:
    shares = (
        db.query(RevenueShare)
        .filter(RevenueShare.creator_id == creator_id)
        .order_by(RevenueShare.created_at.desc())
        .all()
    )
    totals = {status: Decimal("0.00") for status in RevenueStatus}
    for share in shares:
        totals[share.status] += Decimal(share.creator_revenue)
    return {
        "total_revenue": sum(totals.values(), Decimal("0.00")) - totals[RevenueStatus.CANCELLED],
        "pending_revenue": totals[RevenueStatus.PENDING],
        "available_revenue": totals[RevenueStatus.AVAILABLE],
        "withdrawn_revenue": totals[RevenueStatus.WITHDRAWN],
        "recent_shares": shares[:recent],
    }


def reconcile_creator_balance(creator_id: str) -> Tuple[Decimal, Decimal]:
    """Rebuild the cached balance from the creator's shares; returns (old, new)."""
    with atomic() as db:
        creator = lock_creator(db, creator_id)
        rows = db.query(RevenueShare.creator_revenue).filter(
            RevenueShare.creator_id == creator_id, RevenueShare.status.in_(BALANCE_STATUSES),
        )
        expected = sum((Decimal(amount) for (amount,) in rows), Decimal("0.00"))
        cached = Decimal(creator.revenue)
        if cached != expected:
            logger.warning(
                "Creator %s balance drift: cached %s, ledger %s; correcting", creator_id, cached, expected,
            )
            creator.revenue = expected
    return cached, expected
