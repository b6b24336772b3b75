"""
Core services for the feed and wallet monitor.
- MonitorStore: In-memory state (sources, wallets, SMS subscribers, dedup)
- FeedPoller: Background service polling monitored accounts' timelines
- TransactionIngestor: Handles pushed wallet transactions and wallet tracking

Data flow:
    FeedPoller / webhook -> RequestScheduler -> EventClassifier -> NotificationRouter

State is owned by one MonitorStore instance, created at startup and passed
to the services that need it. Nothing survives a restart.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from adapter.chain import WEBHOOKS_ENDPOINT, is_valid_address, short_address
from adapter.models import Post, TransactionRecord
from adapter.x import USER_LOOKUP_ENDPOINT, USER_TIMELINE_ENDPOINT
from classifier import EventClassifier
from monitoring import EventType
from notifier import NotificationRouter

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 60
DEFAULT_POLL_BATCH_SIZE = 5


class MonitoredSource(BaseModel):
    """A social account under observation."""
    id: str = Field(description="Account ID")
    username: str = Field(description="Handle (without @)")
    display_name: Optional[str] = Field(default=None)
    priority: bool = Field(default=False, description="Priority accounts get elevated routing")
    last_cursor: Optional[str] = Field(default=None, description="Newest post ID already fetched")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_poll: Optional[datetime] = Field(default=None)
    last_error: Optional[str] = Field(default=None)
    poll_count: int = Field(default=0)
    post_count: int = Field(default=0)


class TrackedWallet(BaseModel):
    """A wallet whose transactions are pushed to us."""
    address: str
    name: str
    added_by: Optional[str] = Field(default=None, description="Subscriber user ID that registered it")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SmsSubscriber(BaseModel):
    user_id: str
    phone: str
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProcessedEventSet:
    """
    Ids of events that have already been classified.

    Append-only for the process lifetime.
    """

    def __init__(self, ids: Iterable[str] = ()):
        self._ids = set(ids)

    def add(self, event_id: str) -> None:
        self._ids.add(event_id)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class TokenMentionIndex:
    """Which posts mentioned which token addresses."""

    def __init__(self):
        self._by_post: Dict[str, List[str]] = {}
        self._first_seen: Dict[str, str] = {}

    def record(self, post_id: str, address: str) -> None:
        addresses = self._by_post.setdefault(post_id, [])
        if address not in addresses:
            addresses.append(address)
        self._first_seen.setdefault(address, post_id)

    def addresses_for(self, post_id: str) -> List[str]:
        return list(self._by_post.get(post_id, []))

    def first_mention(self, address: str) -> Optional[str]:
        return self._first_seen.get(address)

    def __len__(self) -> int:
        return len(self._first_seen)


class MonitorStore:
    """
    Owns all mutable monitor state.

    Usage:
        store = MonitorStore()
        store.add_source(MonitoredSource(id="12", username="jack"))
        store.add_subscriber("user-1", "+15550001111")
    """

    def __init__(self):
        self._sources: Dict[str, MonitoredSource] = {}
        self._wallets: Dict[str, TrackedWallet] = {}
        self._subscribers: Dict[str, SmsSubscriber] = {}
        self.processed = ProcessedEventSet()
        self.mentions = TokenMentionIndex()

    # Sources

    def add_source(self, source: MonitoredSource) -> MonitoredSource:
        if source.id in self._sources:
            raise ValueError(f"Account @{source.username} is already monitored")
        self._sources[source.id] = source
        return source

    def remove_source(self, source_id: str) -> bool:
        return self._sources.pop(source_id, None) is not None

    def get_source(self, source_id: str) -> Optional[MonitoredSource]:
        return self._sources.get(source_id)

    def find_source_by_username(self, username: str) -> Optional[MonitoredSource]:
        username = username.lstrip("@").lower()
        for source in self._sources.values():
            if source.username.lower() == username:
                return source
        return None

    def list_sources(self) -> List[MonitoredSource]:
        return list(self._sources.values())

    # Wallets

    def add_wallet(self, wallet: TrackedWallet) -> TrackedWallet:
        if wallet.address in self._wallets:
            raise ValueError(f"Wallet {wallet.address} is already tracked")
        self._wallets[wallet.address] = wallet
        return wallet

    def remove_wallet(self, address: str) -> bool:
        return self._wallets.pop(address, None) is not None

    def get_wallet(self, address: str) -> Optional[TrackedWallet]:
        return self._wallets.get(address)

    def list_wallets(self) -> List[TrackedWallet]:
        return list(self._wallets.values())

    def wallet_addresses(self) -> List[str]:
        return list(self._wallets.keys())

    # SMS subscribers

    def add_subscriber(self, user_id: str, phone: str) -> SmsSubscriber:
        """Register (or re-activate) a subscriber."""
        subscriber = SmsSubscriber(user_id=user_id, phone=phone)
        self._subscribers[user_id] = subscriber
        return subscriber

    def remove_subscriber(self, user_id: str) -> bool:
        return self._subscribers.pop(user_id, None) is not None

    def get_subscriber(self, user_id: str) -> Optional[SmsSubscriber]:
        return self._subscribers.get(user_id)

    def active_subscribers(self) -> List[SmsSubscriber]:
        return [s for s in self._subscribers.values() if s.active]

    def list_subscribers(self) -> List[SmsSubscriber]:
        return list(self._subscribers.values())

    def get_stats(self) -> Dict[str, int]:
        return {
            "sources": len(self._sources),
            "priority_sources": sum(1 for s in self._sources.values() if s.priority),
            "wallets": len(self._wallets),
            "sms_subscribers": len(self.active_subscribers()),
            "processed_events": len(self.processed),
            "token_mentions": len(self.mentions),
        }


def _chronological_key(post: Post):
    created = post.created_at or datetime.min.replace(tzinfo=timezone.utc)
    # Post ids are numeric strings that grow over time
    return (created, len(post.id), post.id)


class FeedPoller:
    """
    Background service that polls the timelines of monitored accounts.

    Sources are processed in fixed-size groups, one source at a time, each
    timeline fetch going through the request scheduler.

    Usage:
        poller = FeedPoller(store, x_adapter, scheduler, classifier, router)
        await poller.subscribe("jack", priority=True)
        await poller.start()
        await poller.stop()
    """

    def __init__(
        self,
        store: MonitorStore,
        x_adapter,
        scheduler,
        classifier: EventClassifier,
        router: NotificationRouter,
        poll_interval: int = DEFAULT_POLL_INTERVAL,
        batch_size: int = DEFAULT_POLL_BATCH_SIZE,
        events=None,
        metrics=None,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self.store = store
        self.x_adapter = x_adapter
        self.scheduler = scheduler
        self.classifier = classifier
        self.router = router
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.events = events
        self.metrics = metrics
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def _emit(self, event_type: EventType, **details) -> None:
        if self.events is not None:
            self.events.add_event(event_type, **details)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(self, username: str, priority: bool = False) -> MonitoredSource:
        """
        Start monitoring an account, resolving its handle first.

        Raises:
            ValueError: If the account is already monitored
            QuotaExceededError: If the lookup was rate limited
        """
        username = username.lstrip("@").strip()
        if not username:
            raise ValueError("Username is required")

        existing = self.store.find_source_by_username(username)
        if existing:
            raise ValueError(f"Account @{existing.username} is already monitored")

        author = await self.scheduler.schedule(
            lambda: self.x_adapter.get_user_by_username_async(username),
            USER_LOOKUP_ENDPOINT,
        )

        source = self.store.add_source(MonitoredSource(
            id=author.id,
            username=author.username,
            display_name=author.name,
            priority=priority,
        ))
        logger.info(f"Now monitoring @{source.username} ({source.id}){' [priority]' if priority else ''}")
        self._emit(EventType.SOURCE_ADDED, source_id=source.id, username=source.username, priority=priority)
        return source

    def unsubscribe(self, source_id: str) -> bool:
        source = self.store.get_source(source_id)
        if not source:
            return False

        self.store.remove_source(source_id)
        logger.info(f"Stopped monitoring @{source.username}")
        self._emit(EventType.SOURCE_REMOVED, source_id=source_id, username=source.username)
        return True

    def set_priority(self, source_id: str, priority: bool) -> bool:
        source = self.store.get_source(source_id)
        if not source:
            return False
        source.priority = priority
        return True

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def start(self):
        """Start the background polling task."""
        if self._running:
            logger.warning("Poller already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"FeedPoller started with {self.poll_interval}s interval")

    async def stop(self):
        """Stop the background polling task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("FeedPoller stopped")

    async def _poll_loop(self):
        while self._running:
            try:
                await self._poll_all_sources()
            except Exception as e:
                logger.error(f"Error in poll loop: {e}")

            await asyncio.sleep(self.poll_interval)

    async def _poll_all_sources(self) -> int:
        """Poll every monitored source in groups. Returns the number of alerts routed."""
        sources = self.store.list_sources()
        if not sources:
            logger.debug("No monitored sources to poll")
            return 0

        total = 0
        for start in range(0, len(sources), self.batch_size):
            group = sources[start:start + self.batch_size]
            for source in group:
                # May have been unsubscribed while earlier sources were polled
                if self.store.get_source(source.id) is None:
                    continue
                try:
                    total += await self.poll_source(source)
                except Exception as e:
                    logger.error(f"Error polling @{source.username}: {e}")

        self._emit(EventType.POLL, sources=len(sources), alerts=total)
        return total

    async def poll_source(self, source: MonitoredSource) -> int:
        """
        Fetch new posts for one source, classify and route them.

        The cursor only moves forward after a successful fetch.

        Returns:
            Number of alerts routed
        """
        source.poll_count += 1
        source.last_poll = datetime.now(timezone.utc)

        try:
            page = await self.scheduler.schedule(
                lambda: self.x_adapter.get_user_timeline_async(source.id, source.last_cursor),
                USER_TIMELINE_ENDPOINT,
            )
        except Exception as e:
            source.last_error = str(e)
            raise

        source.last_error = None
        if not page.posts:
            return 0

        posts = sorted(page.posts, key=_chronological_key)
        routed = 0
        for post in posts:
            try:
                alert = await self.classifier.classify_post(post, source, page)
                if alert is None:
                    continue
                if self.metrics is not None:
                    self.metrics.record_post()
                self._emit(
                    EventType.POST_CLASSIFIED,
                    post_id=post.id,
                    source_id=source.id,
                    kind=alert.kind.value,
                    on_topic=alert.on_topic,
                )
                await self.router.route(alert)
                routed += 1
            except Exception as e:
                logger.error(f"Error processing post {post.id} from @{source.username}: {e}")
                self._emit(EventType.ERROR, post_id=post.id, source_id=source.id, error=str(e)[:200])

        source.last_cursor = posts[-1].id
        source.post_count += len(posts)
        logger.info(f"Polled @{source.username}: {len(posts)} new posts, {routed} alerts")
        return routed

    async def poll_now(self, source_id: Optional[str] = None) -> int:
        """
        Manually trigger a poll.

        Args:
            source_id: Specific source to poll, or None to poll all
        """
        if source_id:
            source = self.store.get_source(source_id)
            if not source:
                raise KeyError(source_id)
            return await self.poll_source(source)
        return await self._poll_all_sources()


class TransactionIngestor:
    """
    Receives pushed wallet transactions and manages the tracked wallet set.

    Usage:
        ingestor = TransactionIngestor(store, classifier, router, chain=helius, scheduler=scheduler)
        await ingestor.track_wallet(address, added_by="user-1")
        counts = await ingestor.handle_webhook(payload)
    """

    def __init__(
        self,
        store: MonitorStore,
        classifier: EventClassifier,
        router: NotificationRouter,
        chain=None,
        scheduler=None,
        events=None,
        metrics=None,
    ):
        self.store = store
        self.classifier = classifier
        self.router = router
        self.chain = chain
        self.scheduler = scheduler
        self.events = events
        self.metrics = metrics

    def _emit(self, event_type: EventType, **details) -> None:
        if self.events is not None:
            self.events.add_event(event_type, **details)

    # -------------------------------------------------------------------------
    # Wallet tracking
    # -------------------------------------------------------------------------

    async def sync_webhook(self) -> bool:
        """Push the current wallet list to the chain indexer. Failures are logged."""
        if self.chain is None or not self.chain.is_configured:
            logger.debug("Chain adapter not configured, skipping webhook sync")
            return False

        addresses = self.store.wallet_addresses()

        async def operation():
            return await self.chain.update_webhook_addresses_async(addresses)

        try:
            if self.scheduler is not None:
                await self.scheduler.schedule(operation, WEBHOOKS_ENDPOINT)
            else:
                await operation()
        except Exception as e:
            logger.error(f"Failed to sync wallet webhook: {e}")
            return False
        return True

    async def track_wallet(self, address: str, name: Optional[str] = None, added_by: Optional[str] = None) -> TrackedWallet:
        """
        Start tracking a wallet.

        Raises:
            ValueError: If the address is malformed or already tracked
        """
        address = address.strip()
        if not is_valid_address(address):
            raise ValueError(f"Invalid wallet address: {address}")

        wallet = self.store.add_wallet(TrackedWallet(
            address=address,
            name=name or short_address(address),
            added_by=added_by,
        ))
        logger.info(f"Tracking wallet {wallet.name} ({address})")
        self._emit(EventType.WALLET_ADDED, address=address, name=wallet.name)
        await self.sync_webhook()
        return wallet

    async def untrack_wallet(self, address: str) -> bool:
        if not self.store.remove_wallet(address):
            return False

        logger.info(f"Stopped tracking wallet {address}")
        self._emit(EventType.WALLET_REMOVED, address=address)
        await self.sync_webhook()
        return True

    # -------------------------------------------------------------------------
    # Webhook
    # -------------------------------------------------------------------------

    async def handle_webhook(self, records: List[Union[TransactionRecord, Dict[str, Any]]]) -> Dict[str, int]:
        """
        Classify and route a webhook payload.

        Records for untracked wallets and stablecoin transactions are
        skipped. A failing record is logged and does not affect the rest.

        Returns:
            Counts: received, alerts, skipped, failed
        """
        counts = {"received": len(records), "alerts": 0, "skipped": 0, "failed": 0}

        for raw in records:
            try:
                tx = raw if isinstance(raw, TransactionRecord) else TransactionRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Malformed transaction record: {e.error_count()} validation errors")
                counts["failed"] += 1
                continue

            wallet = self.store.get_wallet(tx.account)
            if wallet is None:
                logger.debug(f"Transaction for untracked wallet: {tx.account}")
                counts["skipped"] += 1
                continue

            try:
                alert = await self.classifier.classify_transaction(tx, wallet)
                if alert is None:
                    counts["skipped"] += 1
                    if self.metrics is not None:
                        self.metrics.record_transaction(skipped=True)
                    self._emit(EventType.TRANSACTION_SKIPPED, address=tx.account, signature=tx.signature)
                    continue

                if self.metrics is not None:
                    self.metrics.record_transaction()
                self._emit(
                    EventType.TRANSACTION_CLASSIFIED,
                    address=tx.account,
                    signature=tx.signature,
                    usd_value=alert.usd_value,
                )
                await self.router.route(alert)
                counts["alerts"] += 1
            except Exception as e:
                logger.error(f"Error processing transaction {tx.signature} for {tx.account}: {e}")
                self._emit(EventType.ERROR, address=tx.account, signature=tx.signature, error=str(e)[:200])
                counts["failed"] += 1

        logger.info(
            f"Webhook processed: {counts['received']} received, {counts['alerts']} alerts, "
            f"{counts['skipped']} skipped, {counts['failed']} failed"
        )
        return counts


__all__ = [
    "MonitoredSource",
    "TrackedWallet",
    "SmsSubscriber",
    "ProcessedEventSet",
    "TokenMentionIndex",
    "MonitorStore",
    "FeedPoller",
    "TransactionIngestor",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_POLL_BATCH_SIZE",
]
