"""
Modifier lookup for catalog items.

Fetches an item's modifier categories by SKU from the hosted catalog
endpoint (MODIFIERS_URL). Results are cached per SKU in a TTLCache owned
by the lookup instance.

Response shape:
    {
        "sku": "...",
        "hasModifiers": true,
        "modifierCategories": [
            {"id": "...", "name": "Bread", "required": true,
             "minSelections": 1, "maxSelections": 1,
             "modifiers": [{"id": "...", "name": "Rye", "price": 0.5}]}
        ]
    }
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..config import (
    HTTP_TIMEOUT_SECONDS,
    MODIFIER_CACHE_MAX_SIZE,
    MODIFIER_CACHE_TTL_SECONDS,
    MODIFIERS_URL,
)
from .cache import TTLCache

logger = logging.getLogger(__name__)


class ModifierLookupError(Exception):
    """The modifier endpoint could not be reached or answered with an error."""


class ModifierLookup:
    """Per-SKU modifier fetcher with a TTL cache."""

    def __init__(
        self,
        url: str = MODIFIERS_URL,
        http: Optional[requests.Session] = None,
        cache: Optional[TTLCache] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.http = http or requests.Session()
        self.cache = cache or TTLCache(MODIFIER_CACHE_MAX_SIZE, MODIFIER_CACHE_TTL_SECONDS)
        self.timeout = timeout

    def fetch(self, sku: str) -> Dict[str, Any]:
        """
        Return the modifier data for `sku`.

        Raises:
            ValueError: sku is empty
            ModifierLookupError: lookup not configured, or the request failed
        """
        if not sku:
            raise ValueError("sku is required")

        cached = self.cache.get(sku)
        if cached is not None:
            logger.debug("Modifier cache hit for SKU %s", sku)
            return cached

        if not self.url:
            raise ModifierLookupError("Modifier lookup is not configured")

        logger.debug("Fetching modifiers for SKU %s", sku)
        try:
            response = self.http.get(self.url, params={"sku": sku}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Failed to fetch modifiers for SKU %s: %s", sku, e)
            raise ModifierLookupError(str(e)) from e

        self.cache.set(sku, data)
        return data

    def has_modifiers(self, sku: str) -> bool:
        try:
            return bool(self.fetch(sku).get("hasModifiers"))
        except ModifierLookupError:
            return False


def validate_selections(categories: List[Dict[str, Any]], selections: Dict[str, List[str]]) -> List[str]:
    """
    Check modifier selections against each category's rules.

    Returns:
        A list of user-facing errors. Empty when the selection is valid.
    """
    errors = []
    for category in categories or []:
        count = len(selections.get(category["id"], []))
        name = category.get("name", "option")

        if category.get("required") and count == 0:
            errors.append(f"Please select a {name}")
        if category.get("minSelections") and count < category["minSelections"]:
            errors.append(f"Please select at least {category['minSelections']} for {name}")
        if category.get("maxSelections") and count > category["maxSelections"]:
            errors.append(f"Maximum {category['maxSelections']} selections for {name}")
    return errors
