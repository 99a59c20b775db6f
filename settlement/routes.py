from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from settlement.audit import RequestContext, list_events
from settlement.auth import require_admin, verify_token
from settlement.checkout import LineItem, create_order, open_payment, retry_payment
from settlement.database import atomic
from settlement.errors import ErrorKind, SettlementError
from settlement.models import CreatorProfile
from settlement.revenue import (
    creator_revenue_stats,
    promote_matured_shares,
    reconcile_creator_balance,
    settle_revenue_share,
)
from settlement.state_machine import cancel_order, mark_refunded
from settlement.sync import sync_payment_status
from settlement.withdrawals import request_withdrawal

router = APIRouter()

ERROR_STATUS = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.INSUFFICIENT_BALANCE: 400,
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.CREATOR_NOT_FOUND: 404,
    ErrorKind.PAYMENT_NOT_FOUND: 404,
    ErrorKind.INVALID_STATE_TRANSITION: 409,
    ErrorKind.AMOUNT_MISMATCH: 409,
}


def http_error(exc: SettlementError) -> HTTPException:
    if exc.transient:
        return HTTPException(
            status_code=503,
            detail={"error": exc.kind.value, "message": exc.message, "retryable": True},
            headers={"Retry-After": "1"},
        )
    detail = {"error": exc.kind.value, "message": exc.message}
    if exc.kind is ErrorKind.INSUFFICIENT_BALANCE:
        detail["available_balance"] = str(exc.available)
    return HTTPException(status_code=ERROR_STATUS.get(exc.kind, 400), detail=detail)


def authorize_creator(claims: dict, creator_id: str) -> None:
    if claims.get("role") == "admin":
        return
    with atomic() as db:
        creator = db.get(CreatorProfile, creator_id)
    if creator is None or creator.user_id != claims.get("sub"):
        raise HTTPException(status_code=403, detail="Not allowed to act for this creator")


def money(value) -> str:
    return str(Decimal(value).quantize(Decimal("0.01")))


class OrderItemRequest(BaseModel):
    solution_id: str
    creator_id: str
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class OrderRequest(BaseModel):
    buyer_id: str
    items: List[OrderItemRequest]
    currency: str = "CNY"
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    order_id: str
    amount: Decimal
    method: str
    provider: str
    external_id: str
    currency: str = "CNY"


class RetryRequest(BaseModel):
    external_id: str


class WithdrawRequest(BaseModel):
    creator_id: str
    amount: Decimal = Field(gt=0)
    method: str
    account: str


class SettleRequest(BaseModel):
    share_id: Optional[str] = None
    hold_days: Optional[int] = Field(default=None, ge=0)


@router.post("/orders")
def create_order_api(request: OrderRequest, auth=Depends(verify_token)):
    items = [
        LineItem(
            solution_id=item.solution_id,
            creator_id=item.creator_id,
            unit_price=item.unit_price,
            quantity=item.quantity,
        )
        for item in request.items
    ]
    try:
        order = create_order(request.buyer_id, items, currency=request.currency, notes=request.notes)
    except SettlementError as exc:
        raise http_error(exc)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "total_amount": money(order.total_amount),
        "status": order.status.value,
    }


@router.post("/orders/{order_id}/cancel")
def cancel_order_api(order_id: str, auth=Depends(verify_token)):
    try:
        order = cancel_order(order_id)
    except SettlementError as exc:
        raise http_error(exc)
    return {"order_id": order.id, "status": order.status.value}


@router.post("/payments")
def create_payment_api(request: PaymentRequest, auth=Depends(verify_token)):
    try:
        payment = open_payment(
            request.order_id,
            request.amount,
            method=request.method,
            provider=request.provider,
            external_id=request.external_id,
            currency=request.currency,
        )
    except SettlementError as exc:
        raise http_error(exc)
    return {"payment_id": payment.id, "external_id": payment.external_id, "status": payment.status.value}


@router.post("/payments/{payment_id}/retry")
def retry_payment_api(payment_id: str, request: RetryRequest, auth=Depends(verify_token)):
    try:
        payment = retry_payment(payment_id, request.external_id)
    except SettlementError as exc:
        raise http_error(exc)
    return {"payment_id": payment.id, "external_id": payment.external_id, "status": payment.status.value}


@router.post("/payments/{payment_id}/refund")
def refund_api(payment_id: str, auth=Depends(require_admin)):
    try:
        payment = mark_refunded(payment_id, RequestContext(user_agent=f"admin:{auth.get('sub')}"))
    except SettlementError as exc:
        raise http_error(exc)
    return {"payment_id": payment.id, "status": payment.status.value}


@router.post("/payments/{payment_id}/sync")
def sync_api(payment_id: str, auth=Depends(require_admin)):
    result = sync_payment_status(payment_id)
    if not result.ok:
        raise http_error(result.error)
    if result.value is None:
        return {"payment_id": payment_id, "synced": False}
    return {"payment_id": payment_id, "synced": True, "status": result.value.status.value}


@router.post("/revenue/withdraw")
def withdraw_api(request: WithdrawRequest, auth=Depends(verify_token)):
    authorize_creator(auth, request.creator_id)
    result = request_withdrawal(request.creator_id, request.amount, request.method, request.account)
    if not result.ok:
        raise http_error(result.error)
    withdrawal = result.value
    return {
        "claimed_amount": money(withdrawal.claimed_amount),
        "requested_amount": money(withdrawal.requested_amount),
        "claimed_share_ids": withdrawal.claimed_share_ids,
        "remaining_balance": money(withdrawal.remaining_balance),
    }


@router.get("/revenue/{creator_id}/stats")
def revenue_stats_api(creator_id: str, auth=Depends(verify_token)):
    authorize_creator(auth, creator_id)
    try:
        with atomic() as db:
            stats = creator_revenue_stats(db, creator_id)
    except SettlementError as exc:
        raise http_error(exc)
    return {
        "total_revenue": money(stats["total_revenue"]),
        "pending_revenue": money(stats["pending_revenue"]),
        "available_revenue": money(stats["available_revenue"]),
        "withdrawn_revenue": money(stats["withdrawn_revenue"]),
        "recent_shares": [
            {
                "id": share.id,
                "order_id": share.order_id,
                "creator_revenue": money(share.creator_revenue),
                "status": share.status.value,
            }
            for share in stats["recent_shares"]
        ],
    }


@router.post("/revenue/settle")
def settle_api(request: SettleRequest, auth=Depends(require_admin)):
    try:
        if request.share_id:
            share = settle_revenue_share(request.share_id)
            return {"settled": 1, "share_ids": [share.id]}
        return {"settled": promote_matured_shares(hold_days=request.hold_days)}
    except SettlementError as exc:
        raise http_error(exc)


@router.post("/revenue/{creator_id}/reconcile")
def reconcile_api(creator_id: str, auth=Depends(require_admin)):
    try:
        cached, ledger = reconcile_creator_balance(creator_id)
    except SettlementError as exc:
        raise http_error(exc)
    return {"creator_id": creator_id, "cached_balance": money(cached), "ledger_balance": money(ledger)}


@router.get("/audit/events")
def audit_events_api(
    payment_transaction_id: Optional[str] = None,
    external_id: Optional[str] = None,
    since: Optional[datetime] = None,
    suspicious_only: bool = False,
    limit: int = 100,
    auth=Depends(require_admin),
):
    try:
        with atomic() as db:
            events = list_events(
                db,
                payment_transaction_id=payment_transaction_id,
                external_id=external_id,
                since=since,
                suspicious_only=suspicious_only,
                limit=min(limit, 500),
            )
    except SettlementError as exc:
        raise http_error(exc)
    return [
        {
            "id": event.id,
            "payment_transaction_id": event.payment_transaction_id,
            "provider": event.provider,
            "external_id": event.external_id,
            "event_type": event.event_type.value,
            "suspicious": event.suspicious,
            "detail": event.detail,
            "source_ip": event.source_ip,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        }
        for event in events
    ]
