"""
SMS service for one-time verification codes.

Sends real SMS via Twilio when configured, falls back to logging in mock mode.

Environment variables:
- TWILIO_ACCOUNT_SID: Twilio Account SID (starts with AC)
- TWILIO_AUTH_TOKEN: Twilio Auth Token
- TWILIO_PHONE_NUMBER: Twilio phone number to send from (e.g., +18555141417)
"""

import logging
import os

from .config import BRAND_NAME, OTP_EXPIRY_SECONDS

logger = logging.getLogger(__name__)

# Twilio configuration from environment
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")


def is_twilio_configured() -> bool:
    """Check if Twilio is properly configured."""
    return all([TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_PHONE_NUMBER])


def build_code_message(code: str) -> str:
    minutes = OTP_EXPIRY_SECONDS // 60
    return f"Your {BRAND_NAME} verification code is {code}. It expires in {minutes} minutes."


def send_verification_code_sms(phone: str, code: str) -> dict:
    """
    Send a one-time code by SMS.

    Args:
        phone: Destination in E.164 format
        code: The one-time code

    Returns:
        dict with status ("sent" or "error"), mock flag and message SID
    """
    message_body = build_code_message(code)

    if not is_twilio_configured():
        # Mock mode - the code itself only goes to DEBUG
        logger.info("MOCK SMS to %s (Twilio not configured)", phone)
        logger.debug("MOCK SMS body: %s", message_body)
        return {
            "status": "sent",
            "phone": phone,
            "mock": True,
        }

    try:
        from twilio.rest import Client

        client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)

        message = client.messages.create(
            body=message_body,
            from_=TWILIO_PHONE_NUMBER,
            to=phone,
        )

        logger.info("Verification SMS sent to %s (SID: %s)", phone, message.sid)

        return {
            "status": "sent",
            "phone": phone,
            "mock": False,
            "message_sid": message.sid,
        }

    except Exception as e:
        logger.error("Failed to send verification SMS to %s: %s", phone, str(e))
        return {
            "status": "error",
            "phone": phone,
            "error": str(e),
            "mock": False,
        }
