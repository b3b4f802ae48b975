"""
HTTP clients for the hosted commerce endpoints.

HttpAccountDirectory and HttpPaymentGateway implement the backend contracts
with requests. Billable calls send the caller's key in an Idempotency-Key
header so the hosted side can deduplicate retries.

Transport errors and 5xx responses propagate as requests exceptions; the
coordinators decide what they mean. A charge the processor refuses (4xx)
is returned as a DECLINED record.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import (
    CARDS_PATH,
    CHARGE_PATH,
    GUEST_CREATE_PATH,
    GUEST_SEARCH_PATH,
    HTTP_TIMEOUT_SECONDS,
    NONCE_PATH,
)
from ..flow.models import ContactSnapshot

logger = logging.getLogger(__name__)

DECLINE_STATUS_CODES = frozenset({400, 402, 422})


class _HttpClient:
    def __init__(self, base_url: str, http: Optional[requests.Session] = None, timeout: float = HTTP_TIMEOUT_SECONDS):
        if not base_url:
            raise ValueError("base_url is required for the HTTP backends")
        self.base_url = base_url.rstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _get(self, path: str) -> Any:
        response = self.http.get(self._url(path), timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _post(self, path: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> requests.Response:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        return self.http.post(self._url(path), json=payload, headers=headers, timeout=self.timeout)


class HttpAccountDirectory(_HttpClient):
    """Guest records behind the hosted guest search."""

    def search(self, contact: ContactSnapshot) -> List[Dict[str, Any]]:
        response = self._post(GUEST_SEARCH_PATH, contact.model_dump())
        response.raise_for_status()
        data = response.json()
        if isinstance(data, dict) and "results" in data:
            return data["results"]
        return data

    def create_account(self, contact: ContactSnapshot) -> str:
        response = self._post(GUEST_CREATE_PATH, contact.model_dump())
        response.raise_for_status()
        data = response.json()
        account_id = data.get("account_id") or data.get("id")
        if not account_id:
            raise ValueError("Account creation response has no id")
        return str(account_id)


class HttpPaymentGateway(_HttpClient):
    """Card vault and charges behind the hosted payment endpoints."""

    def resolve_nonce(self, nonce: str) -> Dict[str, Any]:
        return self._get(NONCE_PATH.format(nonce=nonce))

    def list_cards(self, customer_id: str) -> List[Dict[str, Any]]:
        data = self._get(CARDS_PATH.format(customer_id=customer_id))
        if isinstance(data, dict):
            return data.get("cards", [])
        return data

    def save_card(self, customer_id: str, token: str, idempotency_key: str) -> Dict[str, Any]:
        response = self._post(CARDS_PATH.format(customer_id=customer_id), {"token": token}, idempotency_key)
        response.raise_for_status()
        data = response.json()
        return data.get("card", data)

    def charge(self, customer_id: str, card_id: str, amount: float, idempotency_key: str) -> Dict[str, Any]:
        payload = {
            "customer_id": customer_id,
            "card_id": card_id,
            "amount_cents": int(round(amount * 100)),
        }
        response = self._post(CHARGE_PATH, payload, idempotency_key)
        if response.status_code in DECLINE_STATUS_CODES:
            try:
                detail = response.json().get("error")
            except ValueError:
                detail = None
            logger.info("Charge declined by processor (HTTP %d)", response.status_code)
            return {"status": "DECLINED", "error": detail}
        response.raise_for_status()
        data = response.json()
        return data.get("payment", data)
