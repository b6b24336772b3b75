"""
Event classifier.

Turns raw social posts and raw wallet transactions into AlertCandidate
records for the notification router.

Social posts:
- Skipped if already processed (each post id is evaluated once, even on failure)
- Scanned for possible token addresses with a permissive length heuristic
- Each candidate is confirmed with a market-data lookup; a confirmed token
  marks the post on-topic

Wallet transactions:
- Dropped if any token transfer is a stablecoin
- Valued in USD from the native amount and priced token transfers
- Enriched with live market metrics for the primary token (best effort)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from adapter.errors import EnrichmentUnavailableError
from adapter.models import Post, TimelinePage, TokenInfo, TransactionRecord

logger = logging.getLogger(__name__)


# Exact (case-insensitive) symbol match; any of these in a transaction suppresses it
STABLECOIN_SYMBOLS = frozenset({"USDC", "USDT", "DAI", "BUSD"})

ADDRESS_MIN_LENGTH = 30
ADDRESS_MAX_LENGTH = 50


class AlertKind(str, Enum):
    """What an alert is about."""
    POST = "post"
    PRIORITY_POST = "priority_post"
    TOKEN_MENTION = "token_mention"
    ONCHAIN_TRANSFER = "onchain_transfer"


class AlertCandidate(BaseModel):
    """
    A normalized, not-yet-routed alert.

    Social alerts carry the post text plus priority/on-topic tags.
    Transaction alerts carry the USD estimate and token enrichment.
    """
    kind: AlertKind
    source_id: str = Field(description="Monitored account id or wallet address")
    event_id: str = Field(description="Post id or transaction signature")
    priority: bool = False
    on_topic: bool = False
    usd_value: Optional[float] = Field(default=None, ge=0)

    text: Optional[str] = None
    addresses: List[str] = Field(default_factory=list, description="Confirmed token addresses")
    tokens: List[Dict[str, Any]] = Field(default_factory=list, description="Summary of each confirmed token")
    enrichment: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    # Social context
    author_username: Optional[str] = None
    author_name: Optional[str] = None
    reply_to_author: Optional[str] = None
    reply_to_text: Optional[str] = None

    # Transaction context
    tx_signature: Optional[str] = None
    tx_type: Optional[str] = None
    native_amount: Optional[float] = None
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None
    token_amount: Optional[float] = None
    wallet_name: Optional[str] = None
    added_by: Optional[str] = Field(default=None, description="Subscriber who registered the wallet")

    @property
    def is_social(self) -> bool:
        return self.kind != AlertKind.ONCHAIN_TRANSFER

    @property
    def url(self) -> Optional[str]:
        if self.kind == AlertKind.ONCHAIN_TRANSFER:
            return f"https://solscan.io/tx/{self.tx_signature}" if self.tx_signature else None
        if self.author_username:
            return f"https://x.com/{self.author_username}/status/{self.event_id}"
        return None


def extract_addresses(text: Optional[str]) -> List[str]:
    """
    Find strings in text that might be chain addresses.

    Any whitespace-delimited token of 30-50 characters qualifies. This is
    deliberately loose; callers confirm each candidate with a token lookup.
    """
    if not text:
        return []

    found: List[str] = []
    for token in text.split():
        if ADDRESS_MIN_LENGTH <= len(token) <= ADDRESS_MAX_LENGTH and token not in found:
            found.append(token)
    return found


def is_stablecoin(symbol: Optional[str]) -> bool:
    return bool(symbol) and symbol.upper() in STABLECOIN_SYMBOLS


def token_summary(info: TokenInfo) -> Dict[str, Any]:
    return {
        "address": info.address,
        "symbol": info.symbol,
        "price": info.price,
        "market_cap": info.market_cap,
        "volume_24h": info.volume_24h,
    }


def enrichment_fields(info: TokenInfo) -> Dict[str, Any]:
    """Market metrics for a transaction alert; absent metrics are left out."""
    fields = {
        "market_cap": info.market_cap,
        "liquidity": info.liquidity,
        "holders": info.holders,
        "volume_24h": info.volume_24h,
        "price_change_1h": info.price_change_1h,
        "price_change_24h": info.price_change_24h,
        "trades_24h": info.trades_24h,
        "buys_24h": info.buys_24h,
        "unique_wallets_24h": info.unique_wallets_24h,
    }
    if info.trades_24h and info.buys_24h:
        fields["buy_ratio"] = round(info.buys_24h / info.trades_24h, 4)
    return {k: v for k, v in fields.items() if v is not None}


class EventClassifier:
    """
    Produces AlertCandidates from raw events.

    Args:
        market: MarketDataAdapter (or anything with get_token_info_async /
            get_native_price_async raising EnrichmentUnavailableError)
        processed: Processed-event set (supports `in` and add())
        mentions: Optional token mention index with record(post_id, address)
    """

    def __init__(self, market, processed, mentions=None):
        self.market = market
        self.processed = processed
        self.mentions = mentions

    # -------------------------------------------------------------------------
    # Social posts
    # -------------------------------------------------------------------------

    async def _lookup_token(self, address: str) -> Optional[TokenInfo]:
        """Token overview for address, or None when the lookup fails in any way."""
        try:
            return await self.market.get_token_info_async(address)
        except EnrichmentUnavailableError as e:
            logger.debug(f"Not a token (or lookup failed) for {address}: {e}")
        except Exception as e:
            logger.warning(f"Unexpected market lookup failure for {address}: {e!r}")
        return None

    async def _confirm_tokens(self, addresses: List[str]) -> List[TokenInfo]:
        confirmed = []
        for address in addresses:
            info = await self._lookup_token(address)
            if info is not None:
                confirmed.append(info)
        return confirmed

    async def classify_post(self, post: Post, source, page: Optional[TimelinePage] = None) -> Optional[AlertCandidate]:
        """
        Classify one post from a monitored account.

        Args:
            post: The raw post
            source: MonitoredSource the post was fetched for
            page: Timeline page the post came from (author and referenced posts)

        Returns:
            An AlertCandidate, or None if the post was already processed
        """
        if post.id in self.processed:
            logger.debug(f"Post {post.id} already processed, skipping")
            return None

        try:
            users = page.users if page else {}
            author = users.get(post.author_id) if post.author_id else None

            reply_to_author = None
            reply_to_text = None
            if page and post.referenced_post_ids:
                referenced = page.referenced_posts.get(post.referenced_post_ids[0])
                if referenced:
                    ref_author = users.get(referenced.author_id) if referenced.author_id else None
                    if ref_author:
                        reply_to_author = ref_author.username
                        reply_to_text = referenced.text

            tokens = await self._confirm_tokens(extract_addresses(post.text))
            for info in tokens:
                if self.mentions is not None:
                    self.mentions.record(post.id, info.address)

            priority = bool(source.priority)
            on_topic = bool(tokens)
            if priority:
                kind = AlertKind.PRIORITY_POST
            elif on_topic:
                kind = AlertKind.TOKEN_MENTION
            else:
                kind = AlertKind.POST

            return AlertCandidate(
                kind=kind,
                source_id=source.id,
                event_id=post.id,
                priority=priority,
                on_topic=on_topic,
                text=post.text,
                addresses=[info.address for info in tokens],
                tokens=[token_summary(info) for info in tokens],
                created_at=post.created_at,
                author_username=author.username if author else source.username,
                author_name=author.name if author else source.display_name,
                reply_to_author=reply_to_author,
                reply_to_text=reply_to_text,
            )
        finally:
            self.processed.add(post.id)

    # -------------------------------------------------------------------------
    # Wallet transactions
    # -------------------------------------------------------------------------

    async def _native_price(self) -> float:
        try:
            return await self.market.get_native_price_async()
        except Exception as e:
            logger.warning(f"Native price unavailable, valuing native amount at 0: {e!r}")
            return 0.0

    async def classify_transaction(self, tx: TransactionRecord, wallet) -> Optional[AlertCandidate]:
        """
        Classify one webhook transaction for a tracked wallet.

        Returns:
            An AlertCandidate, or None for stablecoin transactions
        """
        transfers = tx.token_transfers or []

        if any(is_stablecoin(t.token_symbol) for t in transfers):
            logger.debug(f"Skipping stablecoin transaction {tx.signature} for {tx.account}")
            return None

        usd_value = 0.0
        native_amount = None
        if tx.amount and tx.native_transfers:
            native_amount = tx.amount
            usd_value += tx.amount * await self._native_price()

        for transfer in transfers:
            if transfer.token_price:
                usd_value += transfer.token_amount * transfer.token_price

        primary = transfers[0] if transfers else None
        enrichment: Dict[str, Any] = {}
        if primary and primary.mint:
            info = await self._lookup_token(primary.mint)
            if info is not None:
                enrichment = enrichment_fields(info)
            else:
                logger.warning(f"Enrichment unavailable for {primary.mint}")

        return AlertCandidate(
            kind=AlertKind.ONCHAIN_TRANSFER,
            source_id=tx.account,
            event_id=tx.signature or uuid.uuid4().hex,
            usd_value=max(usd_value, 0.0),
            enrichment=enrichment,
            tx_signature=tx.signature,
            tx_type=tx.type,
            native_amount=native_amount,
            token_name=primary.token_name if primary else None,
            token_symbol=primary.token_symbol if primary else None,
            token_amount=primary.token_amount if primary else None,
            wallet_name=getattr(wallet, "name", None),
            added_by=getattr(wallet, "added_by", None),
        )


__all__ = [
    "AlertKind",
    "AlertCandidate",
    "EventClassifier",
    "extract_addresses",
    "is_stablecoin",
    "STABLECOIN_SYMBOLS",
]
