"""
Authentication Coordinator.

Sends and verifies one-time codes. The coordinator never lets a provider
exception escape: every failure is translated into AuthSendFailed or
InvalidCode so the orchestrator can route it.

Attempt counting is not done here. The orchestrator owns the OTPSession
and decrements attempts_remaining when verify_code raises a definitive
InvalidCode.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..config import OTP_CODE_LENGTH, OTP_EXPIRY_SECONDS, OTP_MAX_ATTEMPTS
from .backends import AccountDirectory, OtpProvider
from .errors import AccountCreationFailed, AuthSendFailed, InvalidCode, ValidationError
from .models import ContactSnapshot, OTPSession, OtpChannel
from .validators import validate_code, validate_email_address, validate_phone_number

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_destination(destination: str) -> str:
    """Hide most of a phone number or email for logs."""
    if "@" in destination:
        local, _, domain = destination.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{destination[-4:]}"


class AuthenticationCoordinator:
    """Sends and checks one-time codes through an OtpProvider."""

    def __init__(
        self,
        provider: OtpProvider,
        directory: AccountDirectory,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: int = OTP_MAX_ATTEMPTS,
        expiry_seconds: int = OTP_EXPIRY_SECONDS,
    ):
        self._provider = provider
        self._directory = directory
        self._clock = clock
        self.max_attempts = max_attempts
        self.expiry_seconds = expiry_seconds

    def send_code(self, channel: OtpChannel, destination: str, account_id: str | None = None) -> OTPSession:
        """
        Dispatch a code and open a session for it.

        Args:
            channel: sms or email
            destination: Phone number (any parseable format) or email address
            account_id: Account the code proves ownership of. None while
                verifying a brand new account.

        Raises:
            AuthSendFailed: The destination is unusable for the channel or the
                provider failed to send.
        """
        if channel == OtpChannel.SMS:
            normalized, error = validate_phone_number(destination)
        else:
            normalized, error = validate_email_address(destination)
        if error:
            logger.warning("Refusing to send %s code: %s", channel.value, error)
            raise AuthSendFailed(f"We can't send a code to that {'number' if channel == OtpChannel.SMS else 'address'}.")

        try:
            sid = self._provider.send(channel, normalized)
        except Exception as e:
            logger.warning("Code send via %s to %s failed: %s", channel.value, mask_destination(normalized), e)
            raise AuthSendFailed() from e

        now = self._clock()
        logger.info("Sent %s code to %s", channel.value, mask_destination(normalized))
        return OTPSession(
            channel=channel,
            destination=normalized,
            sid=sid,
            code_length=OTP_CODE_LENGTH,
            attempts_remaining=self.max_attempts,
            sent_at=now,
            expires_at=now + timedelta(seconds=self.expiry_seconds),
            account_id=account_id,
        )

    def verify_code(self, session: OTPSession, code: str, new_account: ContactSnapshot | None = None) -> str:
        """
        Check a submitted code against its session.

        For a new account an approved code creates the account, and the new
        account id is returned.

        Returns:
            The verified account id.

        Raises:
            ValidationError: The code is not exactly code_length digits. The
                provider is not called.
            InvalidCode: The code was rejected or the session has expired.
            AccountCreationFailed: The code was approved but the new account
                could not be created.
        """
        cleaned = validate_code(code, session.code_length)
        if cleaned is None:
            raise ValidationError(f"Enter the {session.code_length}-digit code", {"code": "Incomplete code"})

        if session.is_expired(self._clock()):
            logger.info("Rejecting code for expired session %s", session.sid)
            raise InvalidCode("That code has expired. Please request a new one.")

        try:
            approved = self._provider.check(session.channel, session.destination, cleaned, session.sid)
        except Exception as e:
            logger.warning("Code check for session %s failed: %s", session.sid, e)
            raise InvalidCode("We couldn't check your code. Please try again.", definitive=False) from e

        if not approved:
            logger.info("Code rejected for session %s", session.sid)
            raise InvalidCode()

        if session.account_id:
            logger.info("Verified account %s", session.account_id)
            return session.account_id

        if new_account is None:
            # Nothing to attach the verification to
            raise AccountCreationFailed()
        try:
            account_id = self._directory.create_account(new_account)
        except Exception as e:
            logger.exception("Account creation failed after verification")
            raise AccountCreationFailed() from e

        logger.info("Created and verified new account %s", account_id)
        return account_id
