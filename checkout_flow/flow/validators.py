"""
Input Validation Functions.

This module contains the local validation that runs before any coordinator
call: contact form fields, email addresses, phone numbers and one-time
codes. Failures here never reach a backend.
"""

import re
import logging

import phonenumbers
from phonenumbers.phonenumberutil import NumberParseException
from email_validator import validate_email, EmailNotValidError

from ..config import DEFAULT_COUNTRY_REGION, OTP_CODE_LENGTH
from .models import ContactInfo
from .schemas import SessionRole

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^\d+$")


def validate_email_address(email: str) -> tuple[str | None, str | None]:
    """
    Validate an email address using email-validator library.

    Performs syntax validation and normalization only. Deliverability
    (DNS/MX) is not checked: a syntactically valid address is accepted and
    bounces are the code sender's problem.

    Args:
        email: The email address to validate

    Returns:
        Tuple of (normalized_email, error_message).
        If valid: (normalized_email, None)
        If invalid: (None, user-friendly error message)
    """
    email = (email or "").strip()
    if not email:
        return (None, "Email is required")

    try:
        result = validate_email(email, check_deliverability=False)
        return (result.normalized.lower(), None)
    except EmailNotValidError as e:
        error_str = str(e).lower()

        if "at sign" in error_str or "@" not in email:
            return (None, "Email address must contain an @ sign")
        elif "after the @" in error_str or "domain" in error_str:
            return (None, "Email domain looks incomplete")
        else:
            logger.debug("Email validation failed: %s", str(e))
            return (None, "Enter a valid email address")


def validate_phone_number(phone: str, region: str = DEFAULT_COUNTRY_REGION) -> tuple[str | None, str | None]:
    """
    Validate a phone number using Google's phonenumbers library.

    Numbers typed without a country code are read in the default region.

    Args:
        phone: Raw phone number string (can have various formats)
        region: ISO region assumed when the number has no country code

    Returns:
        Tuple of (validated_phone, error_message).
        - If valid: (formatted_phone, None)
        - If invalid: (None, user_friendly_error_message)

    The formatted_phone is returned in E.164 format (e.g., "+12015551234").
    """
    phone = (phone or "").strip()
    if not phone:
        return (None, "Mobile number is required")

    digits_only = re.sub(r"\D", "", phone)
    if len(digits_only) < 10:
        return (None, "Mobile number seems too short")
    if len(digits_only) > 15:
        return (None, "Mobile number seems too long")

    # A US number typed as 11 digits with the leading 1 but no plus sign
    if not phone.startswith("+") and len(digits_only) == 11 and digits_only.startswith("1"):
        phone = "+" + digits_only

    try:
        parsed_number = phonenumbers.parse(phone, None if phone.startswith("+") else region)

        if not phonenumbers.is_valid_number(parsed_number):
            return (None, "Enter a valid mobile number")

        formatted = phonenumbers.format_number(parsed_number, phonenumbers.PhoneNumberFormat.E164)
        return (formatted, None)

    except NumberParseException as e:
        logger.debug("Phone validation failed: %s", str(e))
        return (None, "Enter a valid mobile number")


def is_valid_phone_number(phone: str) -> bool:
    return validate_phone_number(phone)[0] is not None


def validate_contact_form(
    contact: ContactInfo,
    role: SessionRole = SessionRole.GUEST,
) -> tuple[str | None, str | None, dict[str, str]]:
    """
    Validate the contact form before account matching.

    Organization name is only required when the session role is host or
    organizer.

    Returns:
        Tuple of (normalized_email, e164_mobile, field_errors). The form is
        valid when field_errors is empty.
    """
    errors: dict[str, str] = {}

    if not contact.first_name.strip():
        errors["first_name"] = "First name is required"
    if not contact.last_name.strip():
        errors["last_name"] = "Last name is required"
    if role.requires_organization and not (contact.organization_name or "").strip():
        errors["organization_name"] = "Organization name is required for hosts"

    email, email_error = validate_email_address(contact.email)
    if email_error:
        errors["email"] = email_error

    mobile, mobile_error = validate_phone_number(contact.mobile_number)
    if mobile_error:
        errors["mobile_number"] = mobile_error

    return (email, mobile, errors)


def validate_code(code: str, length: int = OTP_CODE_LENGTH) -> str | None:
    """
    Check that a one-time code is exactly `length` digits.

    Whitespace the customer may have pasted in is ignored.

    Returns:
        The cleaned code, or None if it is incomplete or not numeric.
    """
    cleaned = re.sub(r"\s", "", code or "")
    if len(cleaned) != length or not CODE_PATTERN.match(cleaned):
        return None
    return cleaned
