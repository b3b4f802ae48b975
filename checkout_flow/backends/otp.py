"""
Local one-time code provider.

Generates codes with the secrets module, stores only a salted hash with an
expiry, and delivers them through the SMS or email service. Both services
run in mock mode when not configured, so the provider works out of the box
in development.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..config import OTP_CODE_LENGTH, OTP_EXPIRY_SECONDS
from ..email_service import send_verification_code_email
from ..flow.models import OtpChannel
from ..models import OtpCodeRecord
from ..sms import send_verification_code_sms
from .sql import SessionFactory

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code(length: int = OTP_CODE_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_code(sid: str, code: str) -> str:
    return hashlib.sha256(f"{sid}:{code}".encode()).hexdigest()


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class LocalOtpProvider:
    """OtpProvider backed by the otp_codes table."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = _utcnow,
        expiry_seconds: int = OTP_EXPIRY_SECONDS,
        sms_sender: Callable[[str, str], dict] = send_verification_code_sms,
        email_sender: Callable[[str, str], dict] = send_verification_code_email,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.expiry_seconds = expiry_seconds
        self._senders = {OtpChannel.SMS: sms_sender, OtpChannel.EMAIL: email_sender}

    def send(self, channel: OtpChannel, destination: str) -> str:
        code = generate_code()
        with self._session_factory() as db:
            record = OtpCodeRecord(
                channel=channel.value,
                destination=destination,
                code_hash="",
                expires_at=self._clock() + timedelta(seconds=self.expiry_seconds),
            )
            db.add(record)
            db.flush()
            record.code_hash = hash_code(record.sid, code)

            result = self._senders[channel](destination, code)
            if result.get("status") != "sent":
                db.rollback()
                raise RuntimeError(result.get("error") or f"{channel.value} delivery failed")

            db.commit()
            return record.sid

    def check(self, channel: OtpChannel, destination: str, code: str, sid: str) -> bool:
        with self._session_factory() as db:
            record = db.get(OtpCodeRecord, sid)
            if record is None or record.consumed:
                return False
            if record.channel != channel.value or record.destination != destination:
                logger.warning("Code check for %s does not match its destination", sid)
                return False
            if self._clock() >= _aware(record.expires_at):
                return False
            if not hmac.compare_digest(record.code_hash, hash_code(sid, code)):
                return False

            record.consumed = True
            db.commit()
            return True
