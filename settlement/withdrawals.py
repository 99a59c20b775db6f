"""Withdrawal claims against a creator's AVAILABLE revenue shares.

Shares are claimed whole, oldest first, until they cover the requested
amount, so the claimed amount can exceed the request by up to one share.
Executing the payout is left to the payout gateway; this module only
reserves the funds.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from settlement.database import atomic
from settlement.errors import InsufficientBalance, InvalidRequest, Result, SettlementError
from settlement.models import RevenueShare, RevenueStatus, utcnow
from settlement.revenue import lock_creator
from settlement.signature import to_decimal

logger = logging.getLogger(__name__)


@dataclass
class WithdrawalResult:
    creator_id: str
    requested_amount: Decimal
    claimed_amount: Decimal
    remaining_balance: Decimal          # still AVAILABLE after this claim
    ledger_balance: Decimal             # running PENDING + AVAILABLE total
    claimed_share_ids: List[str] = field(default_factory=list)


def mask_account(account: str) -> str:
    return f"***{account[-4:]}" if len(account) > 4 else "***"


def withdraw(creator_id: str, amount, method: str, account: str) -> WithdrawalResult:
    requested = to_decimal(amount)
    if requested is None or requested <= 0:
        raise InvalidRequest("Withdrawal amount must be greater than 0")
    if not method or not account:
        raise InvalidRequest("Withdrawal method and account are required")

    with atomic() as db:
        creator = lock_creator(db, creator_id)
        shares = (
            db.query(RevenueShare)
            .filter(RevenueShare.creator_id == creator_id, RevenueShare.status == RevenueStatus.AVAILABLE)
            .order_by(RevenueShare.settled_at, RevenueShare.created_at, RevenueShare.id)
            .with_for_update()
            .all()
        )
        available = sum((Decimal(share.creator_revenue) for share in shares), Decimal("0.00"))

        claimed, claimed_amount = [], Decimal("0.00")
        for share in shares:
            if claimed_amount >= requested:
                break
            claimed.append(share)
            claimed_amount += Decimal(share.creator_revenue)

        if claimed_amount < requested:
            logger.info(
                "Withdrawal of %s by creator %s refused, available %s", requested, creator_id, available,
            )
            raise InsufficientBalance(requested, available)

        now = utcnow()
        for share in claimed:
            share.status = RevenueStatus.WITHDRAWN
            share.withdrawn_at = now
            share.withdraw_method = method
            share.withdraw_account = account
        creator.revenue = Decimal(creator.revenue) - claimed_amount

        result = WithdrawalResult(
            creator_id=creator_id,
            requested_amount=requested,
            claimed_amount=claimed_amount,
            remaining_balance=available - claimed_amount,
            ledger_balance=Decimal(creator.revenue),
            claimed_share_ids=[share.id for share in claimed],
        )

    logger.info(
        "Creator %s withdrew %s (requested %s) via %s to %s, %d shares",
        creator_id, claimed_amount, requested, method, mask_account(account), len(claimed),
    )
    return result


def request_withdrawal(creator_id: str, amount, method: str, account: str) -> Result[WithdrawalResult]:
    """Boundary wrapper for the withdrawal API."""
    try:
        return Result.success(withdraw(creator_id, amount, method, account))
    except SettlementError as exc:
        if exc.transient:
            logger.warning("Withdrawal for creator %s hit a transient error: %s", creator_id, exc.kind.value)
        return Result.failure(exc)
