"""Pull-based status sync for payments whose webhook never arrived."""
import logging
from datetime import timedelta
from typing import Optional

from settlement import config
from settlement.audit import SYSTEM
from settlement.database import atomic
from settlement.errors import PaymentNotFound, Result, SettlementError
from settlement.models import PaymentEventType, PaymentStatus, PaymentTransaction, utcnow
from settlement.providers.registry import get_adapter
from settlement.state_machine import TransitionOutcome, apply_outcome, is_terminal
from settlement.webhooks import check_amount

logger = logging.getLogger(__name__)


def sync_payment_status(payment_id: str) -> Result[Optional[TransitionOutcome]]:
    """Ask the provider for a pre-terminal payment's status and apply it.

    The value is None when nothing was applied: the payment is already
    terminal or its provider cannot be queried.
    """
    try:
        with atomic() as db:
            payment = db.get(PaymentTransaction, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment transaction not found: {payment_id}")
        if is_terminal(payment.status):
            return Result.success(None)

        event = get_adapter(payment.provider).fetch_status(payment.external_id)
        if event is None:
            logger.warning("Provider %s does not support status queries (payment %s)", payment.provider, payment_id)
            return Result.success(None)
        check_amount(event, payment)

        with atomic() as db:
            transition = apply_outcome(
                db, payment.id, event, context=SYSTEM, changed_event_type=PaymentEventType.STATUS_SYNCED,
            )
    except SettlementError as exc:
        logger.warning("Status sync for payment %s failed: %s", payment_id, exc.message)
        return Result.failure(exc)

    return Result.success(transition)


def sync_pending_payments(limit: int = 50, window_hours: Optional[int] = None) -> dict:
    window_hours = config.SYNC_WINDOW_HOURS if window_hours is None else window_hours
    since = utcnow() - timedelta(hours=window_hours)

    with atomic() as db:
        payment_ids = [
            payment_id
            for (payment_id,) in db.query(PaymentTransaction.id)
            .filter(
                PaymentTransaction.status.in_((PaymentStatus.PENDING, PaymentStatus.PROCESSING)),
                PaymentTransaction.created_at >= since,
            )
            .order_by(PaymentTransaction.created_at.desc())
            .limit(limit)
        ]

    synced = failed = 0
    for payment_id in payment_ids:
        if sync_payment_status(payment_id).ok:
            synced += 1
        else:
            failed += 1

    logger.info("Synced %d of %d pending payments (%d failed)", synced, len(payment_ids), failed)
    return {"total": len(payment_ids), "synced": synced, "failed": failed}
