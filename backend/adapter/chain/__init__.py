"""
Chain indexer adapter (Helius).

Keeps the indexer's webhook subscribed to exactly the set of tracked
wallet addresses. Transactions for those wallets are then pushed to
POST /api/v1/webhooks/transactions.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import List, Optional

import requests
from dotenv import load_dotenv

from ..errors import ProviderError, TransientProviderError

load_dotenv()

logger = logging.getLogger(__name__)

WEBHOOKS_ENDPOINT = "helius/webhooks"

# Base58 alphabet (no 0, O, I, l), 32-44 characters for a 32-byte key
_ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def is_valid_address(address: str) -> bool:
    """Check that a string looks like a Solana account address."""
    return bool(address) and bool(_ADDRESS_PATTERN.match(address))


def short_address(address: str) -> str:
    """Default display name for a wallet: first and last four characters."""
    return f"{address[:4]}...{address[-4:]}"


class ChainAdapterError(ProviderError):
    """Raised when the webhook cannot be updated."""
    pass


class HeliusAdapter:
    """
    Client for the Helius webhook management API.

    Usage:
        helius = HeliusAdapter()  # Uses HELIUS_API_KEY / HELIUS_WEBHOOK_ID
        await helius.update_webhook_addresses_async(["9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"])
    """

    BASE_URL = "https://api.helius.xyz/v0"

    def __init__(self, api_key: Optional[str] = None, webhook_id: Optional[str] = None, timeout: int = 15):
        self.api_key = api_key or os.environ.get("HELIUS_API_KEY")
        self.webhook_id = webhook_id or os.environ.get("HELIUS_WEBHOOK_ID")
        self.timeout = timeout

        if not self.is_configured:
            logger.warning("HELIUS_API_KEY or HELIUS_WEBHOOK_ID missing - wallet webhook sync disabled")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.webhook_id)

    is_valid_address = staticmethod(is_valid_address)

    def _request(self, method: str, payload: Optional[dict] = None) -> dict:
        url = f"{self.BASE_URL}/webhooks/{self.webhook_id}"
        try:
            response = requests.request(
                method,
                url,
                params={"api-key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise TransientProviderError("Helius request timed out")
        except requests.exceptions.ConnectionError:
            raise TransientProviderError("Failed to connect to Helius")

        if response.status_code == 429:
            raise TransientProviderError("Helius rate limit exceeded", status_code=429)
        if response.status_code >= 400:
            raise ChainAdapterError(f"Helius API error: {response.status_code} {response.text[:200]}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            return {}

    def update_webhook_addresses(self, addresses: List[str]) -> dict:
        """
        Replace the webhook's account list, keeping its other settings.

        Returns:
            The updated webhook as reported by Helius
        """
        if not self.is_configured:
            raise ChainAdapterError("Helius adapter not configured")

        current = self._request("GET")
        payload = {
            "webhookURL": current.get("webhookURL"),
            "transactionTypes": current.get("transactionTypes") or ["ANY"],
            "webhookType": current.get("webhookType") or "enhanced",
            "accountAddresses": sorted(set(addresses)),
        }
        updated = self._request("PUT", payload)
        logger.info(f"Helius webhook now tracking {len(payload['accountAddresses'])} addresses")
        return updated

    async def update_webhook_addresses_async(self, addresses: List[str]) -> dict:
        return await asyncio.to_thread(self.update_webhook_addresses, addresses)


__all__ = [
    "HeliusAdapter",
    "ChainAdapterError",
    "is_valid_address",
    "short_address",
    "WEBHOOKS_ENDPOINT",
]
