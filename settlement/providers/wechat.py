import hashlib
import hmac
import logging
import xml.etree.ElementTree as ET
from decimal import Decimal
from typing import Mapping, Optional

from settlement import config
from settlement.errors import MalformedWebhook
from settlement.providers.base import EventOutcome, NormalizedEvent, ProviderAdapter, canonical_content

logger = logging.getLogger(__name__)

ACK = "<xml><return_code><![CDATA[{code}]]></return_code><return_msg><![CDATA[{msg}]]></return_msg></xml>"


def parse_xml(raw_body: str) -> dict:
    try:
        root = ET.fromstring(raw_body)
    except ET.ParseError as exc:
        raise MalformedWebhook("Unreadable WeChat Pay notification body") from exc
    return {child.tag: (child.text or "").strip() for child in root}


def fen_to_yuan(total_fee: Optional[str]) -> Optional[str]:
    if not total_fee:
        return None
    if not total_fee.isdigit():
        # left verbatim so the amount check rejects it
        return total_fee
    return str((Decimal(total_fee) / 100).quantize(Decimal("0.01")))


def sign(params: Mapping[str, str], api_key: str) -> str:
    content = canonical_content(params, exclude=("sign",))
    return hashlib.md5(f"{content}&key={api_key}".encode("utf-8")).hexdigest().upper()


class WechatAdapter(ProviderAdapter):
    """WeChat Pay v2 notifications: XML, MD5 signed with the merchant API key."""

    name = "wechat"
    content_type = "application/xml"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.provider_secret("WECHAT_PAY_KEY")

    def parse(self, raw_body: str) -> NormalizedEvent:
        params = parse_xml(raw_body)
        if params.get("return_code") != "SUCCESS":
            raise MalformedWebhook(f"WeChat Pay communication failure: {params.get('return_msg')}")

        result_code = params.get("result_code", "")
        if result_code == "SUCCESS":
            outcome, reason = EventOutcome.SUCCESS, None
        else:
            outcome = EventOutcome.FAILED
            reason = params.get("err_code_des") or params.get("err_code") or "Payment failed"
        return NormalizedEvent(
            external_id=params.get("out_trade_no") or None,
            outcome=outcome,
            external_status=result_code,
            declared_amount=fen_to_yuan(params.get("total_fee")),
            provider_reference=params.get("transaction_id"),
            failure_reason=reason,
            fields=params,
        )

    def signature(self, raw_body: str, headers: Mapping[str, str]) -> Optional[str]:
        try:
            return parse_xml(raw_body).get("sign") or None
        except MalformedWebhook:
            return None

    def verify(self, raw_body: str, signature: str) -> bool:
        if not self.api_key or not signature or not signature.isascii():
            return False
        try:
            params = parse_xml(raw_body)
        except MalformedWebhook:
            return False
        return hmac.compare_digest(sign(params, self.api_key), signature.upper())

    def acknowledge(self, ok: bool):
        body = ACK.format(code="SUCCESS", msg="OK") if ok else ACK.format(code="FAIL", msg="REJECTED")
        return body, self.content_type
