"""
Unit tests for the event classifier.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

from adapter.errors import EnrichmentUnavailableError
from adapter.models import Post, PostAuthor, TimelinePage, TokenInfo, TransactionRecord
from classifier import AlertKind, EventClassifier, extract_addresses, is_stablecoin
from core import MonitoredSource, ProcessedEventSet, TokenMentionIndex, TrackedWallet
from notifier import Channel, render_sms


TOKEN_ADDRESS = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
NOT_A_TOKEN = "x" * 35


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def token_info():
    return TokenInfo(
        address=TOKEN_ADDRESS,
        symbol="POPCAT",
        name="Popcat",
        price=0.5,
        market_cap=500_000_000,
        liquidity=12_000_000,
        holders=90_000,
        volume_24h=30_000_000,
        price_change_1h=1.5,
        price_change_24h=-4.2,
        trades_24h=1000,
        buys_24h=600,
        sells_24h=400,
        unique_wallets_24h=5000,
    )


@pytest.fixture
def mock_market(token_info):
    """Market adapter that knows exactly one token."""
    market = Mock()

    async def lookup(address):
        if address == TOKEN_ADDRESS:
            return token_info
        raise EnrichmentUnavailableError(f"{address} is not a token")

    market.get_token_info_async = AsyncMock(side_effect=lookup)
    market.get_native_price_async = AsyncMock(return_value=150.0)
    return market


@pytest.fixture
def mentions():
    return TokenMentionIndex()


@pytest.fixture
def classifier(mock_market, mentions):
    return EventClassifier(mock_market, ProcessedEventSet(), mentions)


@pytest.fixture
def source():
    return MonitoredSource(id="u1", username="alice", display_name="Alice")


@pytest.fixture
def wallet():
    return TrackedWallet(address="9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin", name="whale", added_by="user-1")


def make_post(post_id="42", text="gm", referenced=None):
    return Post(
        id=post_id,
        author_id="u1",
        text=text,
        created_at=datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc),
        referenced_post_ids=referenced or [],
    )


def make_tx(**kwargs):
    payload = {"account": "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin", "type": "SWAP", "signature": "sig1"}
    payload.update(kwargs)
    return TransactionRecord.model_validate(payload)


# ============================================================================
# Address extraction
# ============================================================================

class TestExtractAddresses:

    def test_finds_long_tokens(self):
        text = f"aping into {TOKEN_ADDRESS} right now"
        assert extract_addresses(text) == [TOKEN_ADDRESS]

    def test_length_bounds(self):
        assert extract_addresses("a" * 29) == []
        assert extract_addresses("a" * 30) == ["a" * 30]
        assert extract_addresses("a" * 50) == ["a" * 50]
        assert extract_addresses("a" * 51) == []

    def test_deduplicates_in_order(self):
        text = f"{NOT_A_TOKEN} {TOKEN_ADDRESS} {NOT_A_TOKEN}"
        assert extract_addresses(text) == [NOT_A_TOKEN, TOKEN_ADDRESS]

    def test_empty(self):
        assert extract_addresses("") == []
        assert extract_addresses(None) == []

    def test_stablecoin_symbols(self):
        assert is_stablecoin("usdc")
        assert is_stablecoin("USDT")
        assert not is_stablecoin("USDCX")
        assert not is_stablecoin(None)


# ============================================================================
# Social posts
# ============================================================================

class TestClassifyPost:

    @pytest.mark.asyncio
    async def test_plain_post(self, classifier, source):
        alert = await classifier.classify_post(make_post(), source)

        assert alert.kind == AlertKind.POST
        assert alert.priority is False
        assert alert.on_topic is False
        assert alert.source_id == "u1"
        assert alert.event_id == "42"
        assert alert.author_username == "alice"

    @pytest.mark.asyncio
    async def test_same_post_twice_yields_one_alert(self, classifier, source):
        first = await classifier.classify_post(make_post("42"), source)
        second = await classifier.classify_post(make_post("42"), source)

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_priority_source(self, classifier, source):
        source.priority = True

        alert = await classifier.classify_post(make_post(), source)

        assert alert.kind == AlertKind.PRIORITY_POST
        assert alert.priority is True

    @pytest.mark.asyncio
    async def test_token_mention_on_topic(self, classifier, source, mentions):
        post = make_post(text=f"new gem {TOKEN_ADDRESS} and {NOT_A_TOKEN}")

        alert = await classifier.classify_post(post, source)

        assert alert.kind == AlertKind.TOKEN_MENTION
        assert alert.on_topic is True
        assert alert.addresses == [TOKEN_ADDRESS]
        assert alert.tokens[0]["symbol"] == "POPCAT"
        assert mentions.addresses_for("42") == [TOKEN_ADDRESS]
        assert mentions.first_mention(TOKEN_ADDRESS) == "42"

    @pytest.mark.asyncio
    async def test_topic_sms_counts_confirmed_tokens_only(self, classifier, source):
        other = "y" * 40
        post = make_post(text=f"{NOT_A_TOKEN} {TOKEN_ADDRESS} {other}")

        alert = await classifier.classify_post(post, source)

        assert render_sms(alert, Channel.TOPIC).startswith("Token Alert: @alice mentioned 1 token(s)\n")

    @pytest.mark.asyncio
    async def test_priority_and_on_topic(self, classifier, source):
        source.priority = True

        alert = await classifier.classify_post(make_post(text=TOKEN_ADDRESS), source)

        assert alert.kind == AlertKind.PRIORITY_POST
        assert alert.priority is True
        assert alert.on_topic is True

    @pytest.mark.asyncio
    async def test_lookup_failure_still_processed(self, mock_market, source):
        mock_market.get_token_info_async = AsyncMock(side_effect=EnrichmentUnavailableError("down"))
        processed = ProcessedEventSet()
        classifier = EventClassifier(mock_market, processed)

        alert = await classifier.classify_post(make_post(text=TOKEN_ADDRESS), source)

        assert alert is not None
        assert alert.on_topic is False
        assert "42" in processed

    @pytest.mark.asyncio
    async def test_unexpected_lookup_failure_degrades_alert(self, mock_market, source):
        mock_market.get_token_info_async = AsyncMock(side_effect=AttributeError("'list' object has no attribute 'get'"))
        processed = ProcessedEventSet()
        classifier = EventClassifier(mock_market, processed)
        source.priority = True

        alert = await classifier.classify_post(make_post(text=TOKEN_ADDRESS), source)

        assert alert.kind == AlertKind.PRIORITY_POST
        assert alert.on_topic is False
        assert alert.tokens == []
        assert "42" in processed
        assert await classifier.classify_post(make_post(text=TOKEN_ADDRESS), source) is None

    @pytest.mark.asyncio
    async def test_reply_context(self, classifier, source):
        page = TimelinePage(
            posts=[],
            users={
                "u1": PostAuthor(id="u1", username="alice", name="Alice A."),
                "u2": PostAuthor(id="u2", username="bob"),
            },
            referenced_posts={"900": Post(id="900", author_id="u2", text="original take")},
        )

        alert = await classifier.classify_post(make_post(referenced=["900"]), source, page)

        assert alert.author_name == "Alice A."
        assert alert.reply_to_author == "bob"
        assert alert.reply_to_text == "original take"


# ============================================================================
# Wallet transactions
# ============================================================================

class TestClassifyTransaction:

    @pytest.mark.asyncio
    async def test_stablecoin_transfer_yields_nothing(self, classifier, wallet):
        tx = make_tx(tokenTransfers=[{"tokenSymbol": "USDC", "tokenAmount": 500}])

        assert await classifier.classify_transaction(tx, wallet) is None

    @pytest.mark.asyncio
    async def test_any_stablecoin_suppresses(self, classifier, wallet):
        tx = make_tx(tokenTransfers=[
            {"mint": TOKEN_ADDRESS, "tokenSymbol": "POPCAT", "tokenAmount": 10, "tokenPrice": 0.5},
            {"tokenSymbol": "usdt", "tokenAmount": 5},
        ])

        assert await classifier.classify_transaction(tx, wallet) is None

    @pytest.mark.asyncio
    async def test_empty_transaction_alerts_with_zero(self, classifier, wallet, mock_market):
        alert = await classifier.classify_transaction(make_tx(), wallet)

        assert alert.kind == AlertKind.ONCHAIN_TRANSFER
        assert alert.usd_value == 0
        assert alert.enrichment == {}
        mock_market.get_native_price_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_native_and_token_value(self, classifier, wallet):
        tx = make_tx(
            amount=2,
            nativeTransfers=[{"fromUserAccount": "a", "toUserAccount": "b", "amount": 2}],
            tokenTransfers=[{"mint": TOKEN_ADDRESS, "tokenName": "Popcat", "tokenSymbol": "POPCAT", "tokenAmount": 1000, "tokenPrice": 0.5}],
        )

        alert = await classifier.classify_transaction(tx, wallet)

        # 2 SOL * 150 + 1000 * 0.5
        assert alert.usd_value == 800
        assert alert.native_amount == 2
        assert alert.token_symbol == "POPCAT"
        assert alert.added_by == "user-1"
        assert alert.wallet_name == "whale"
        assert alert.url == "https://solscan.io/tx/sig1"

    @pytest.mark.asyncio
    async def test_unpriced_transfer_adds_nothing(self, classifier, wallet):
        tx = make_tx(tokenTransfers=[{"mint": "unknownmint", "tokenSymbol": "???", "tokenAmount": 1_000_000}])

        alert = await classifier.classify_transaction(tx, wallet)

        assert alert.usd_value == 0

    @pytest.mark.asyncio
    async def test_enrichment(self, classifier, wallet):
        tx = make_tx(tokenTransfers=[{"mint": TOKEN_ADDRESS, "tokenSymbol": "POPCAT", "tokenAmount": 1}])

        alert = await classifier.classify_transaction(tx, wallet)

        assert alert.enrichment["market_cap"] == 500_000_000
        assert alert.enrichment["holders"] == 90_000
        assert alert.enrichment["buy_ratio"] == 0.6
        assert alert.enrichment["unique_wallets_24h"] == 5000

    @pytest.mark.asyncio
    async def test_enrichment_failure_is_not_fatal(self, classifier, wallet):
        tx = make_tx(tokenTransfers=[{"mint": "unknownmint", "tokenSymbol": "XYZ", "tokenAmount": 4, "tokenPrice": 250}])

        alert = await classifier.classify_transaction(tx, wallet)

        assert alert.usd_value == 1000
        assert alert.enrichment == {}

    @pytest.mark.asyncio
    async def test_native_price_failure_counts_zero(self, classifier, wallet, mock_market):
        mock_market.get_native_price_async = AsyncMock(side_effect=EnrichmentUnavailableError("down"))
        tx = make_tx(amount=3, nativeTransfers=[{"amount": 3}])

        alert = await classifier.classify_transaction(tx, wallet)

        assert alert.usd_value == 0
        assert alert.native_amount == 3

    @pytest.mark.asyncio
    async def test_unexpected_enrichment_failure_keeps_alert(self, classifier, wallet, mock_market):
        mock_market.get_token_info_async = AsyncMock(side_effect=ValueError("bad payload"))
        mock_market.get_native_price_async = AsyncMock(side_effect=TypeError("bad price"))
        tx = make_tx(
            amount=1,
            nativeTransfers=[{"amount": 1}],
            tokenTransfers=[{"mint": TOKEN_ADDRESS, "tokenSymbol": "BONK", "tokenAmount": 100, "tokenPrice": 2}],
        )

        alert = await classifier.classify_transaction(tx, wallet)

        assert alert.usd_value == 200
        assert alert.enrichment == {}
