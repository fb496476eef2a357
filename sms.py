# customer SMS over Africa's Talking
import logging
import os

import africastalking

logger = logging.getLogger(__name__)

AFRICASTALKING_USERNAME = os.getenv("AFRICASTALKING_USERNAME", "")
AFRICASTALKING_API_KEY = os.getenv("AFRICASTALKING_API_KEY", "")
AFRICASTALKING_SENDER_ID = os.getenv("AFRICASTALKING_SENDER_ID", "TechNirvor")

if AFRICASTALKING_USERNAME and AFRICASTALKING_API_KEY:
    africastalking.initialize(
        username=AFRICASTALKING_USERNAME,
        api_key=AFRICASTALKING_API_KEY,
    )
    sms = africastalking.SMS
else:
    sms = None

STATUS_TEMPLATES = {
    "confirmed": "Hi {name}, your order {order_number} is confirmed. We are preparing it now. - {business}",
    "processing": "Hi {name}, your order {order_number} is being packed. - {business}",
    "shipped": "Hi {name}, your order {order_number} has been shipped and will reach you soon. - {business}",
    "delivered": "Hi {name}, your order {order_number} was delivered. Thank you for shopping with {business}!",
    "cancelled": "Hi {name}, your order {order_number} was cancelled. Call {support} if this is unexpected. - {business}",
}


def to_international(phone: str) -> str:
    """01712345678 -> +8801712345678"""
    phone = str(phone or "").strip()
    if phone.startswith("+"):
        return phone
    if phone.startswith("880"):
        return f"+{phone}"
    if phone.startswith("0"):
        return f"+88{phone}"
    return phone


def build_status_message(status: str, order_number: str, name: str, business: str, support: str = "") -> str:
    template = STATUS_TEMPLATES.get(
        status,
        "Hi {name}, your order {order_number} is now {status}. - {business}",
    )
    return template.format(
        name=name or "Customer",
        order_number=order_number,
        status=status,
        business=business,
        support=support,
    )


def send_sms(phone, message) -> bool:
    if sms is None:
        logger.info("SMS not configured: missing AFRICASTALKING_USERNAME or AFRICASTALKING_API_KEY.")
        return False
    recipients = [to_international(phone)]
    try:
        response = sms.send(message, recipients, AFRICASTALKING_SENDER_ID)
        logger.info("SMS sent to %s: %s", recipients[0], response)
        return True
    except Exception:
        logger.exception("SMS to %s failed", recipients[0])
        return False
