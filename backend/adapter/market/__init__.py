"""
Market data adapter (Birdeye public API).

Token overview lookups confirm that a string seen in a post is a real
token and supply the enrichment metrics attached to wallet alerts. The
native-asset reference price converts SOL amounts to USD.

Every failure surfaces as EnrichmentUnavailableError so callers can
degrade an alert instead of dropping it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import requests
from dotenv import load_dotenv
from pydantic import ValidationError

from ..errors import EnrichmentUnavailableError, ProviderError, TransientProviderError
from ..models import TokenInfo

load_dotenv()

logger = logging.getLogger(__name__)

TOKEN_OVERVIEW_ENDPOINT = "market/token_overview"
PRICE_ENDPOINT = "market/price"

# Wrapped SOL mint, used to quote the native asset
NATIVE_MINT = "So11111111111111111111111111111111111111112"


class MarketDataAdapter:
    """
    Client for token overview and spot price lookups.

    Usage:
        market = MarketDataAdapter(scheduler=scheduler)
        info = await market.get_token_info_async(address)
        sol_usd = await market.get_native_price_async()

    When a scheduler is given, the async methods run through it under the
    market/* endpoint keys.
    """

    BASE_URL = "https://public-api.birdeye.so"

    def __init__(self, api_key: Optional[str] = None, scheduler=None, chain: str = "solana", timeout: int = 10):
        self.api_key = api_key or os.environ.get("BIRDEYE_API_KEY")
        self.scheduler = scheduler
        self.chain = chain
        self.timeout = timeout

        if not self.api_key:
            logger.warning("No BIRDEYE_API_KEY provided - token lookups will be unavailable")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise EnrichmentUnavailableError("Market data adapter not configured - set BIRDEYE_API_KEY")

        headers = {
            "X-API-KEY": self.api_key,
            "x-chain": self.chain,
            "accept": "application/json",
        }

        try:
            response = requests.get(f"{self.BASE_URL}{path}", params=params, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TransientProviderError("Market data request timed out")
        except requests.exceptions.ConnectionError:
            raise TransientProviderError("Failed to connect to market data API")

        if response.status_code == 429:
            reset = response.headers.get("x-ratelimit-reset")
            raise TransientProviderError(
                "Market data rate limit exceeded",
                status_code=429,
                reset_time=float(reset) if reset else None,
            )
        if response.status_code >= 400:
            raise TransientProviderError(
                f"Market data API error: {response.status_code}",
                status_code=response.status_code,
                response_text=response.text,
            )

        try:
            body = response.json()
        except ValueError:
            raise EnrichmentUnavailableError("Market data API returned a non-JSON body")

        if not isinstance(body, dict):
            raise EnrichmentUnavailableError(f"Unexpected market data payload: {type(body).__name__}")
        if not body.get("success", True) or not body.get("data"):
            raise EnrichmentUnavailableError(f"No market data: {body.get('message', 'empty payload')}")
        if not isinstance(body["data"], dict):
            raise EnrichmentUnavailableError(f"Unexpected market data payload: {type(body['data']).__name__}")

        return body["data"]

    def get_token_info(self, address: str) -> TokenInfo:
        """Fetch the token overview for a mint address."""
        data = self._get("/defi/token_overview", {"address": address})

        # A non-token address comes back without symbol or price
        if not data.get("symbol") and data.get("price") is None:
            raise EnrichmentUnavailableError(f"Address {address} is not a known token")

        try:
            return TokenInfo(
                address=data.get("address", address),
                symbol=data.get("symbol"),
                name=data.get("name"),
                price=data.get("price"),
                market_cap=data.get("mc", data.get("marketCap")),
                liquidity=data.get("liquidity"),
                holders=data.get("holder"),
                volume_24h=data.get("v24hUSD"),
                price_change_1h=data.get("priceChange1hPercent"),
                price_change_24h=data.get("priceChange24hPercent"),
                trades_24h=data.get("trade24h"),
                buys_24h=data.get("buy24h"),
                sells_24h=data.get("sell24h"),
                unique_wallets_24h=data.get("uniqueWallet24h"),
            )
        except ValidationError as e:
            raise EnrichmentUnavailableError(
                f"Malformed token overview for {address}: {e.error_count()} invalid fields"
            ) from e

    def get_native_price(self) -> float:
        """Current USD price of the native asset."""
        data = self._get("/defi/price", {"address": NATIVE_MINT})
        value = data.get("value")
        if value is None:
            raise EnrichmentUnavailableError("Native price missing from response")
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise EnrichmentUnavailableError(f"Malformed native price: {value!r}") from e

    async def _run(self, endpoint: str, func, *args):
        async def operation():
            return await asyncio.to_thread(func, *args)

        try:
            if self.scheduler is None:
                return await operation()
            return await self.scheduler.schedule(operation, endpoint)
        except EnrichmentUnavailableError:
            raise
        except ProviderError as e:
            raise EnrichmentUnavailableError(str(e), status_code=e.status_code) from e

    async def get_token_info_async(self, address: str) -> TokenInfo:
        return await self._run(TOKEN_OVERVIEW_ENDPOINT, self.get_token_info, address)

    async def get_native_price_async(self) -> float:
        return await self._run(PRICE_ENDPOINT, self.get_native_price)


__all__ = [
    "MarketDataAdapter",
    "TOKEN_OVERVIEW_ENDPOINT",
    "PRICE_ENDPOINT",
    "NATIVE_MINT",
]
