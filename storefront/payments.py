"""
Payment gateway signature handling.

The gateway signs ``"{gateway_order_id}|{gateway_payment_id}"`` with
HMAC-SHA256 using the account's key secret and hands the hex digest to the
checkout callback.
"""
from decimal import Decimal, ROUND_HALF_UP
import hashlib
import hmac


def compute_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    """
    Compute the hex HMAC-SHA256 signature the gateway sends for a payment.

    Args:
        gateway_order_id: Gateway order id (order_...)
        gateway_payment_id: Gateway payment id (pay_...)
        secret: Gateway key secret

    Returns:
        Lowercase hex digest
    """
    body = f"{gateway_order_id}|{gateway_payment_id}"
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str) -> bool:
    """Constant-time check of a callback signature."""
    if not signature or not secret:
        return False
    expected = compute_signature(gateway_order_id, gateway_payment_id, secret)
    # compare_digest rejects non-ASCII str, so compare bytes
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def to_minor_units(amount) -> int:
    """Rupees to paise, rounded half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
