"""
HTTP client for transactional email (Resend API).
"""
import httpx
import logging
from typing import List, Union
from .. import config

logger = logging.getLogger(__name__)


async def send_email(to: Union[str, List[str]], subject: str, html: str) -> bool:
    """
    Send an HTML email.

    Args:
        to: Recipient address or list of addresses
        subject: Subject line
        html: HTML body

    Returns:
        True if the provider accepted the message, False otherwise
    """
    if not config.RESEND_API_KEY:
        logger.warning(f"Email not configured - skipping '{subject}' to {to}")
        return False

    recipients = to if isinstance(to, list) else [to]
    try:
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT) as client:
            response = await client.post(
                config.RESEND_API_URL,
                json={
                    "from": config.FROM_EMAIL,
                    "to": recipients,
                    "subject": subject,
                    "html": html,
                },
                headers={"Authorization": f"Bearer {config.RESEND_API_KEY}"}
            )
        if response.status_code >= 400:
            logger.error(f"Email send failed for {recipients}: HTTP {response.status_code}")
            return False
        return True
    except httpx.HTTPError as e:
        logger.error(f"Email send error for {recipients}: {str(e)}")
        return False
