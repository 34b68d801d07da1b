"""
HTTP client for the Razorpay Orders API.

Creates the remote payment intent the browser checkout completes against.
"""
import httpx
import logging
from typing import Optional
from .. import config

logger = logging.getLogger(__name__)


class GatewayNotConfigured(Exception):
    pass


async def create_gateway_order(amount: int, currency: str = "INR", receipt: Optional[str] = None) -> dict:
    """
    Create a payment order on the gateway.

    Args:
        amount: Amount in minor units (paise)
        currency: ISO currency code
        receipt: Merchant reference shown in the gateway dashboard

    Returns:
        Gateway order as returned by the API ({id, amount, currency, receipt, ...})

    Raises:
        GatewayNotConfigured: If key id or secret is missing
        httpx.HTTPError: If there's a network error or the gateway rejects the request
    """
    if not config.RAZORPAY_KEY_ID or not config.RAZORPAY_KEY_SECRET:
        raise GatewayNotConfigured("Razorpay not configured")

    payload = {
        "amount": amount,
        "currency": currency,
        "receipt": receipt,
        "payment_capture": 1,
    }
    async with httpx.AsyncClient(
        timeout=config.HTTP_TIMEOUT,
        auth=(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)
    ) as client:
        response = await client.post(f"{config.RAZORPAY_API_URL}/orders", json=payload)
        response.raise_for_status()
        order = response.json()

    logger.info(f"Razorpay order created: {order.get('id')} for {amount} {currency}")
    return order
