"""
HTTP client for WhatsApp messages through the Twilio Messages API.

Without Twilio credentials the client only logs the message.
"""
import httpx
import logging
from .. import config

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


async def send_whatsapp(to: str, body: str) -> bool:
    """
    Send a WhatsApp text message.

    Args:
        to: Recipient phone number in E.164 format
        body: Message text

    Returns:
        True if Twilio accepted the message, False otherwise
    """
    sid = config.TWILIO_ACCOUNT_SID
    token = config.TWILIO_AUTH_TOKEN
    sender = config.TWILIO_WHATSAPP_NUMBER
    if not sid or not token or not sender:
        logger.info(f"WhatsApp not configured - would send to {to}: {body[:80]!r}")
        return False

    url = f"{TWILIO_API_URL}/Accounts/{sid}/Messages.json"
    try:
        async with httpx.AsyncClient(auth=(sid, token), timeout=config.HTTP_TIMEOUT) as client:
            response = await client.post(
                url,
                data={"From": f"whatsapp:{sender}", "To": f"whatsapp:{to}", "Body": body}
            )
        if response.status_code >= 400:
            logger.error(f"Twilio WhatsApp API error for {to}: HTTP {response.status_code}")
            return False
        logger.info(f"WhatsApp message sent to {to}: {response.json().get('sid')}")
        return True
    except httpx.HTTPError as e:
        logger.error(f"WhatsApp send error for {to}: {str(e)}")
        return False
