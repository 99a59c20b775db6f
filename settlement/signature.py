"""Provider callback authenticity and amount checks.

Both functions are pure: malformed input is reported as "not verified"
rather than raised.
"""
import base64
import binascii
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

logger = logging.getLogger(__name__)

PEM_HEADER = "-----BEGIN"

Amount = Union[Decimal, str, int]


def load_public_key(public_key: str):
    """Load an RSA public key given as PEM or as bare base64 DER."""
    if public_key.strip().startswith(PEM_HEADER):
        return serialization.load_pem_public_key(public_key.encode())
    der = base64.b64decode("".join(public_key.split()), validate=True)
    return serialization.load_der_public_key(der)


def verify(raw_body: Union[bytes, str], signature: Optional[str], public_key: Optional[str]) -> bool:
    """Check a base64 RSA-SHA256 (PKCS#1 v1.5) signature over the exact bytes of ``raw_body``."""
    if not signature or not public_key or raw_body is None:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    try:
        key = load_public_key(public_key)
        if not isinstance(key, rsa.RSAPublicKey):
            return False
        key.verify(
            base64.b64decode(signature, validate=True),
            raw_body,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return True
    except CryptoInvalidSignature:
        return False
    except (ValueError, TypeError, binascii.Error, UnsupportedAlgorithm) as exc:
        logger.debug("Unverifiable signature input: %s", exc)
        return False


def to_decimal(value: Amount) -> Optional[Decimal]:
    if isinstance(value, float):
        # binary floats never enter money comparisons
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def verify_amount(declared_amount: Amount, expected_amount: Amount) -> bool:
    """Exact decimal match between the provider's declared amount and ours."""
    declared = to_decimal(declared_amount)
    expected = to_decimal(expected_amount)
    if declared is None or expected is None:
        return False
    return declared == expected
