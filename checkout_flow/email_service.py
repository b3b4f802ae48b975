"""
Email service for one-time verification codes.

Sends real emails via SMTP when configured, falls back to logging in mock mode.

Environment variables:
- SMTP_HOST: SMTP server hostname (e.g., smtp.gmail.com)
- SMTP_PORT: SMTP server port (default: 587 for TLS)
- SMTP_USERNAME: SMTP authentication username
- SMTP_PASSWORD: SMTP authentication password (for Gmail, use App Password)
- SMTP_FROM_EMAIL: Sender email address
"""

import logging
import os
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .config import BRAND_NAME, OTP_EXPIRY_SECONDS

logger = logging.getLogger(__name__)

# SMTP configuration from environment
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")


def is_email_configured() -> bool:
    """Check if SMTP is properly configured."""
    return all([SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD, SMTP_FROM_EMAIL])


def send_verification_code_email(to_email: str, code: str) -> dict:
    """
    Send a one-time code by email.

    Args:
        to_email: Destination address
        code: The one-time code

    Returns:
        dict with status ("sent" or "error") and mock flag
    """
    minutes = OTP_EXPIRY_SECONDS // 60
    subject = f"Your {BRAND_NAME} verification code"

    body_text = f"""Hi,

Your verification code is {code}.

It expires in {minutes} minutes. If you didn't request it, you can ignore this email.

Thanks,
{BRAND_NAME}
"""

    body_html = f"""<html>
<body style="font-family: Arial, sans-serif; color: #333;">
  <p>Hi,</p>
  <p>Your verification code is</p>
  <p style="font-size: 28px; font-weight: bold; letter-spacing: 6px;">{code}</p>
  <p style="color: #666;">It expires in {minutes} minutes. If you didn't request it, you can ignore this email.</p>
  <p>Thanks,<br>{BRAND_NAME}</p>
</body>
</html>
"""

    if not is_email_configured():
        logger.info("MOCK EMAIL to %s: Subject: %s", to_email, subject)
        logger.debug("MOCK EMAIL body: %s", body_text)
        return {
            "status": "sent",
            "to_email": to_email,
            "subject": subject,
            "mock": True,
        }

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = SMTP_FROM_EMAIL
        msg["To"] = to_email

        msg.attach(MIMEText(body_text, "plain"))
        msg.attach(MIMEText(body_html, "html"))

        # Connect and send with secure SSL context
        context = ssl.create_default_context()
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls(context=context)
            server.login(SMTP_USERNAME, SMTP_PASSWORD)
            server.sendmail(SMTP_FROM_EMAIL, to_email, msg.as_string())

        logger.info("Verification email sent to %s", to_email)

        return {
            "status": "sent",
            "to_email": to_email,
            "subject": subject,
            "mock": False,
        }

    except Exception as e:
        logger.error("Failed to send verification email to %s: %s", to_email, str(e))
        return {
            "status": "error",
            "to_email": to_email,
            "error": str(e),
            "mock": False,
        }
