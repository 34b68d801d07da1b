"""
Customer notifications for order events.

Dispatch is best-effort and at-most-once: email and WhatsApp go out
concurrently, failures are logged and never reach the caller, and nothing
is retried.
"""
import asyncio
import html
import logging
from typing import Any, Dict, Optional, Tuple
from . import models
from .clients import email_client, whatsapp_client

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMATION = "payment_confirmation"
ORDER_STATUS_UPDATE = "order_status_update"
PAYMENT_REMINDER = "payment_reminder"

TEMPLATES = (PAYMENT_CONFIRMATION, ORDER_STATUS_UPDATE, PAYMENT_REMINDER)

BRAND = "Golden Threads"

STATUS_MESSAGES = {
    "pending": "We have received your order and are waiting for payment.",
    "confirmed": "Your order has been confirmed and is being prepared.",
    "processing": "Your order is being packed.",
    "shipped": "Great news! Your order has been shipped and is on its way to you.",
    "delivered": "Your order has been delivered. We hope you love your purchase!",
    "cancelled": "Your order has been cancelled. If you have any questions, please contact our support team.",
}


def order_payload(
    order: models.Order,
    status: Optional[str] = None,
    **extra: Any
) -> Dict[str, Any]:
    """
    Snapshot the order fields a notification needs.

    Built while the database session is still open, so the dispatch can run
    after the response without touching the ORM.

    Args:
        order: Order the notification is about
        status: Status to announce (defaults to the order's current status)
        **extra: Template specific values (payment_link, time_remaining, ...)

    Returns:
        Plain dict safe to hand to a background task
    """
    address = order.shipping_address or {}
    payload = {
        "order_id": order.id,
        "order_number": order.order_number,
        "user_email": order.user_email or address.get("email"),
        "phone": address.get("phone"),
        "status": status or order.status,
        "tracking_number": order.tracking_number,
        "tracking_url": order.tracking_url,
        "total_amount": str(order.total_amount),
    }
    payload.update(extra)
    return payload


def build_email(template: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """
    Render the subject and HTML body for a template.

    Args:
        template: One of TEMPLATES
        data: Payload from ``order_payload``

    Returns:
        Tuple of (subject, html)

    Raises:
        ValueError: for an unknown template
    """
    number = html.escape(str(data.get("order_number", "")))
    total = html.escape(str(data.get("total_amount", "")))

    if template == PAYMENT_CONFIRMATION:
        subject = f"Order Confirmed #{number} - {BRAND}"
        body = (
            f"<h2>Payment received</h2>"
            f"<p>Thank you for your order! Payment for order <strong>#{number}</strong> "
            f"has been received and your order is confirmed.</p>"
            f"<p><strong>Total Amount:</strong> &#8377;{total}</p>"
        )
    elif template == ORDER_STATUS_UPDATE:
        status = data.get("status", "")
        subject = f"Order Status Update #{number} - {BRAND}"
        body = (
            f"<h2>Order Status Update</h2>"
            f"<p>{html.escape(STATUS_MESSAGES.get(status, f'Your order is now {status}.'))}</p>"
        )
        if data.get("tracking_number"):
            body += f"<p><strong>Tracking Number:</strong> {html.escape(str(data['tracking_number']))}</p>"
        if data.get("tracking_url"):
            url = html.escape(str(data["tracking_url"]))
            body += f'<p><a href="{url}">Track your package</a></p>'
    elif template == PAYMENT_REMINDER:
        subject = f"Complete your payment for order #{number} - {BRAND}"
        link = html.escape(str(data.get("payment_link", "")))
        body = (
            f"<h2>Your order is waiting</h2>"
            f"<p>Payment for order <strong>#{number}</strong> is still pending. "
            f"Complete it within {data.get('time_remaining')} minutes to keep your order.</p>"
            f'<p><a href="{link}">Pay now</a></p>'
        )
    else:
        raise ValueError(f"Unknown notification template: {template}")

    return subject, f'<div style="font-family: Arial, sans-serif;">{body}<p>{BRAND} Team</p></div>'


def build_whatsapp(template: str, data: Dict[str, Any]) -> str:
    """Render the WhatsApp text for a template."""
    number = data.get("order_number", "")
    if template == PAYMENT_CONFIRMATION:
        return (
            f"*Order Confirmed!*\n\nOrder #{number}\nTotal: Rs.{data.get('total_amount')}\n\n"
            f"Your payment was received and your order is being prepared.\n\n*{BRAND}*"
        )
    if template == ORDER_STATUS_UPDATE:
        status = data.get("status", "")
        lines = [f"*Order {str(status).capitalize()}*", "", f"Order #{number}", STATUS_MESSAGES.get(status, "")]
        if data.get("tracking_number"):
            lines.append(f"Tracking: {data['tracking_number']}")
        if data.get("tracking_url"):
            lines.append(f"Track: {data['tracking_url']}")
        lines.extend(["", f"*{BRAND}*"])
        return "\n".join(lines)
    if template == PAYMENT_REMINDER:
        return (
            f"*Payment pending*\n\nOrder #{number}\nPay within {data.get('time_remaining')} minutes: "
            f"{data.get('payment_link')}\n\n*{BRAND}*"
        )
    raise ValueError(f"Unknown notification template: {template}")


async def dispatch(template: str, data: Dict[str, Any]) -> Dict[str, bool]:
    """
    Send a notification over every channel the order has an address for.

    Args:
        template: One of TEMPLATES
        data: Payload from ``order_payload``

    Returns:
        dict mapping channel name to whether it was delivered
    """
    results = {"email": False, "whatsapp": False}
    if template not in TEMPLATES:
        logger.error(f"Unknown notification template '{template}' for order {data.get('order_id')}")
        return results
    try:
        channels = []
        sends = []
        if data.get("user_email"):
            subject, body = build_email(template, data)
            channels.append("email")
            sends.append(email_client.send_email(data["user_email"], subject, body))
        if data.get("phone"):
            channels.append("whatsapp")
            sends.append(whatsapp_client.send_whatsapp(data["phone"], build_whatsapp(template, data)))

        if not sends:
            logger.info(f"No contact details for order {data.get('order_id')}; '{template}' not sent")
            return results

        outcomes = await asyncio.gather(*sends, return_exceptions=True)
        for channel, outcome in zip(channels, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"{channel} notification '{template}' failed for order {data.get('order_id')}: {outcome}")
            else:
                results[channel] = bool(outcome)
    except Exception as e:
        logger.error(f"Notification '{template}' failed for order {data.get('order_id')}: {str(e)}")
    return results
