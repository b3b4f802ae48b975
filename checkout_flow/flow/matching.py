"""
Account Matcher.

Resolves submitted contact details to zero, one or many existing accounts.
The backend search is deliberately loose (it tolerates partial and duplicate
records), so this module reconciles what comes back before the customer
sees it:

1. Flatten: the guest search answers either with full records or with a
   single {"partialMatch": [...]} envelope. Both shapes are accepted.
2. Drop records with no account id and collapse duplicates by id.
3. Keep records that share a contact channel with what was typed, or that
   match the full name plus a partial channel.
4. Rank the strongest matches first. Ties keep backend order.

Zero candidates is a valid answer and is distinct from a failed lookup,
which raises MatchLookupFailed.
"""

import logging
import re
from typing import Any

from .backends import AccountDirectory
from .errors import MatchLookupFailed
from .models import CandidateAccount, ContactInfo, ContactSnapshot
from .validators import validate_phone_number

logger = logging.getLogger(__name__)

# Backend record keys, as returned by the hosted guest search, mapped to
# CandidateAccount fields. snake_case keys are accepted as-is.
RECORD_FIELD_ALIASES = {
    "account_id": ("account_id", "Guest ID", "guest_id", "CID", "id"),
    "first_name": ("first_name", "First Name", "given_name"),
    "last_name": ("last_name", "Last Name", "family_name"),
    "organization_name": ("organization_name", "Organization Name"),
    "email": ("email", "Email", "email_address"),
    "mobile_number": ("mobile_number", "Mobile Number", "Phone", "phone_number"),
}

GAP_FILL_FIELDS = ("first_name", "last_name", "organization_name", "email", "mobile_number")


def _first_present(record: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = record.get(key)
        # Some backends wrap linked fields in single-element lists
        if isinstance(value, list):
            value = value[0] if value else None
        if value not in (None, ""):
            return str(value).strip()
    return None


def record_to_candidate(record: dict[str, Any]) -> CandidateAccount | None:
    """Convert a raw backend record. Returns None if it has no account id."""
    values = {name: _first_present(record, keys) for name, keys in RECORD_FIELD_ALIASES.items()}
    if not values["account_id"]:
        return None
    return CandidateAccount(**values)


def flatten_records(raw: list[dict[str, Any]] | dict[str, Any] | None) -> list[dict[str, Any]]:
    """Unwrap partial-match envelopes into a flat record list."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    records: list[dict[str, Any]] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        partial = entry.get("partialMatch")
        if isinstance(partial, list):
            records.extend(r for r in partial if isinstance(r, dict))
        else:
            records.append(entry)
    return records


def _normalized_email(value: str | None) -> str | None:
    return value.strip().lower() if value else None


def _normalized_phone(value: str | None) -> str | None:
    if not value:
        return None
    phone, _ = validate_phone_number(value)
    return phone


def _phone_tail(value: str | None, digits: int = 7) -> str | None:
    if not value:
        return None
    only_digits = re.sub(r"\D", "", value)
    return only_digits[-digits:] if len(only_digits) >= digits else None


def _email_local_part(value: str | None) -> str | None:
    email = _normalized_email(value)
    if not email or "@" not in email:
        return None
    return email.split("@", 1)[0]


def match_rank(candidate: CandidateAccount, contact: ContactSnapshot) -> int | None:
    """
    Rank a candidate against the submitted contact. Lower is stronger.

    0: email and mobile both match
    1: one channel matches and so does the full name
    2: one channel matches
    3: full name matches and a channel matches partially
    None: not a match, drop it
    """
    email_match = _normalized_email(candidate.email) == _normalized_email(contact.email) and candidate.email is not None
    phone_match = (
        candidate.mobile_number is not None
        and _normalized_phone(candidate.mobile_number) == contact.mobile_number
    )
    name_match = (
        (candidate.first_name or "").lower() == contact.first_name.lower()
        and (candidate.last_name or "").lower() == contact.last_name.lower()
    )

    if email_match and phone_match:
        return 0
    if (email_match or phone_match) and name_match:
        return 1
    if email_match or phone_match:
        return 2

    partial_channel = (
        (_email_local_part(candidate.email) is not None
         and _email_local_part(candidate.email) == _email_local_part(contact.email))
        or (_phone_tail(candidate.mobile_number) is not None
            and _phone_tail(candidate.mobile_number) == _phone_tail(contact.mobile_number))
    )
    if name_match and partial_channel:
        return 3
    return None


def reconcile(raw: list[dict[str, Any]] | dict[str, Any] | None, contact: ContactSnapshot) -> list[CandidateAccount]:
    """Apply the reconciliation policy to a raw search response."""
    seen: set[str] = set()
    ranked: list[tuple[int, int, CandidateAccount]] = []

    for position, record in enumerate(flatten_records(raw)):
        candidate = record_to_candidate(record)
        if candidate is None:
            logger.debug("Dropping account record without an id")
            continue
        if candidate.account_id in seen:
            continue
        seen.add(candidate.account_id)

        rank = match_rank(candidate, contact)
        if rank is None:
            logger.debug("Dropping unrelated account %s", candidate.account_id)
            continue
        ranked.append((rank, position, candidate))

    ranked.sort(key=lambda entry: (entry[0], entry[1]))
    return [candidate for _, _, candidate in ranked]


def fill_gaps(candidate: CandidateAccount, contact: ContactInfo) -> CandidateAccount:
    """
    Fill absent candidate fields with what the customer just typed.

    Only this candidate's own gaps are filled, and only from the typed
    contact. Values are never borrowed from other candidates.
    """
    updates = {}
    for field_name in GAP_FILL_FIELDS:
        if getattr(candidate, field_name) in (None, ""):
            typed = getattr(contact, field_name)
            if typed:
                updates[field_name] = typed
    return candidate.model_copy(update=updates) if updates else candidate


class AccountMatcher:
    """
    Resolves contact details to candidate accounts.

    Read-only: resolving never creates or changes a record.
    """

    def __init__(self, directory: AccountDirectory):
        self._directory = directory

    def resolve(self, contact: ContactSnapshot) -> list[CandidateAccount]:
        """
        Look up candidate accounts for a validated contact snapshot.

        The caller guarantees email and mobile number are already valid
        (mobile in E.164).

        Raises:
            MatchLookupFailed: The directory could not be queried.
        """
        try:
            raw = self._directory.search(contact)
        except Exception as e:
            logger.warning("Account search failed: %s", e)
            raise MatchLookupFailed() from e

        candidates = reconcile(raw, contact)
        logger.info("Account search returned %d candidate(s)", len(candidates))
        return candidates
