import logging
from typing import Mapping, Optional
from urllib.parse import parse_qsl

from settlement import config
from settlement.errors import MalformedWebhook
from settlement.providers.base import EventOutcome, NormalizedEvent, ProviderAdapter, canonical_content
from settlement.signature import verify

logger = logging.getLogger(__name__)

TRADE_STATUS = {
    "TRADE_SUCCESS": EventOutcome.SUCCESS,
    "TRADE_FINISHED": EventOutcome.SUCCESS,
    "TRADE_CLOSED": EventOutcome.CLOSED,
    "WAIT_BUYER_PAY": EventOutcome.PENDING,
    "TRADE_PENDING": EventOutcome.PROCESSING,
}


def parse_params(raw_body: str) -> dict:
    try:
        return dict(parse_qsl(raw_body, keep_blank_values=True, strict_parsing=bool(raw_body)))
    except ValueError as exc:
        raise MalformedWebhook("Unreadable Alipay notification body") from exc


class AlipayAdapter(ProviderAdapter):
    """Alipay asynchronous notifications: urlencoded form, RSA2 signed."""

    name = "alipay"

    def __init__(self, public_key: Optional[str] = None):
        self.public_key = public_key if public_key is not None else config.provider_secret("ALIPAY_PUBLIC_KEY")

    def parse(self, raw_body: str) -> NormalizedEvent:
        params = parse_params(raw_body)
        trade_status = params.get("trade_status", "")
        outcome = TRADE_STATUS.get(trade_status, EventOutcome.FAILED)
        return NormalizedEvent(
            external_id=params.get("out_trade_no") or None,
            outcome=outcome,
            external_status=trade_status,
            declared_amount=params.get("total_amount") or None,
            provider_reference=params.get("trade_no"),
            failure_reason="Payment closed" if outcome is EventOutcome.CLOSED else None,
            fields=params,
        )

    def signature(self, raw_body: str, headers: Mapping[str, str]) -> Optional[str]:
        try:
            return parse_params(raw_body).get("sign") or None
        except MalformedWebhook:
            return None

    def verify(self, raw_body: str, signature: str) -> bool:
        # Alipay signs the sorted parameter string, rebuilt here from the raw body
        try:
            content = canonical_content(parse_params(raw_body), exclude=("sign", "sign_type"))
        except MalformedWebhook:
            return False
        return verify(content, signature, self.public_key)

    def acknowledge(self, ok: bool):
        return ("success" if ok else "fail"), self.content_type
