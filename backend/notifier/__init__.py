"""
Notification router.

Decides where each AlertCandidate goes and dispatches it:

Social alerts:
- priority  -> priority channel + SMS to every active subscriber
- on-topic  -> topic channel + SMS to every active subscriber
- always    -> posts channel

Transaction alerts:
- always             -> wallets channel (escalated when high value)
- usd_value >= 1000  -> SMS to the subscriber who registered the wallet

Each dispatch is isolated: a failing sink is logged and skipped. A
(event, route, recipient) ledger keeps the same alert from being delivered
twice to the same destination.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from adapter.notify import ChannelMessage
from classifier import AlertCandidate, AlertKind
from monitoring import EventType

logger = logging.getLogger(__name__)

HIGH_VALUE_THRESHOLD = 1000

COLOR_POST = 0x1DA1F2
COLOR_PRIORITY = 0xFFD700
COLOR_TOKEN = 0x14F195
COLOR_WALLET = 0x9945FF
COLOR_HIGH_VALUE = 0xFF0000


class Channel(str, Enum):
    """Channel-type destinations."""
    PRIORITY = "priority"
    TOPIC = "topic"
    POSTS = "posts"
    WALLETS = "wallets"


class Severity(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


def severity_for(alert: AlertCandidate) -> Severity:
    if alert.usd_value is not None and alert.usd_value >= HIGH_VALUE_THRESHOLD:
        return Severity.HIGH
    if alert.priority:
        return Severity.HIGH
    return Severity.NORMAL


@dataclass
class Delivery:
    """Outcome of one dispatch to one sink."""
    route: str
    recipient: Optional[str] = None
    ok: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"route": self.route, "recipient": self.recipient, "ok": self.ok, "error": self.error}


@dataclass
class RouteResult:
    """All dispatches made for one alert."""
    event_id: str
    kind: AlertKind
    severity: Severity
    deliveries: List[Delivery] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for d in self.deliveries if d.ok)

    @property
    def failed(self) -> int:
        return sum(1 for d in self.deliveries if not d.ok)


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------

def format_number(value: Optional[float]) -> str:
    """Compact number formatting: 1.2K, 3.4M, 5.6B."""
    if value is None:
        return "N/A"
    value = float(value)
    for threshold, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= threshold:
            return f"{value / threshold:.2f}{suffix}"
    if 0 < abs(value) < 0.01:
        return f"{value:.8f}".rstrip("0")
    return f"{value:.2f}"


def render_channel_message(alert: AlertCandidate, severity: Severity) -> ChannelMessage:
    if alert.kind == AlertKind.ONCHAIN_TRANSFER:
        high = severity == Severity.HIGH
        fields = [("Transaction Type", alert.tx_type or "Unknown")]
        if alert.native_amount:
            fields.append(("SOL Amount", f"{format_number(alert.native_amount)} SOL"))
        fields.append(("Estimated Value", f"${format_number(alert.usd_value or 0)}"))
        if alert.token_name or alert.token_symbol:
            fields.append(("Token", alert.token_name or "Unknown Token"))
            fields.append(("Token Amount", f"{format_number(alert.token_amount)} {alert.token_symbol or ''}".strip()))

        labels = {
            "market_cap": ("Market Cap", True),
            "liquidity": ("Liquidity", True),
            "holders": ("Holders", False),
            "volume_24h": ("24h Volume", True),
            "unique_wallets_24h": ("Active Wallets 24h", False),
        }
        for key, (label, dollars) in labels.items():
            if key in alert.enrichment:
                fields.append((label, f"{'$' if dollars else ''}{format_number(alert.enrichment[key])}"))
        for key, label in (("price_change_1h", "1h Change"), ("price_change_24h", "24h Change")):
            if key in alert.enrichment:
                fields.append((label, f"{alert.enrichment[key]:+.2f}%"))
        if "buy_ratio" in alert.enrichment:
            fields.append((
                "Buy Pressure",
                f"{alert.enrichment['buy_ratio'] * 100:.1f}% "
                f"({alert.enrichment.get('buys_24h')}/{alert.enrichment.get('trades_24h')} trades)",
            ))

        wallet_label = f"wallet {alert.wallet_name}" if alert.wallet_name else "wallet"
        return ChannelMessage(
            title="High Value Transaction" if high else "New Transaction",
            description=f"Activity detected for {wallet_label}:\n`{alert.source_id}`",
            fields=fields,
            color=COLOR_HIGH_VALUE if high else COLOR_WALLET,
            url=alert.url,
        )

    fields = []
    if alert.reply_to_author:
        fields.append((f"Replying to @{alert.reply_to_author}", alert.reply_to_text or ""))
    for token in alert.tokens:
        fields.append((
            f"{token.get('symbol') or 'Unknown'} Token Info",
            f"Price: ${format_number(token.get('price'))}\n"
            f"MC: ${format_number(token.get('market_cap'))}\n"
            f"24h Volume: ${format_number(token.get('volume_24h'))}",
        ))

    color = COLOR_PRIORITY if alert.priority else (COLOR_TOKEN if alert.on_topic else COLOR_POST)
    name = alert.author_name or alert.author_username or alert.source_id
    return ChannelMessage(
        title=f"{name} (@{alert.author_username})" if alert.author_username else name,
        description=alert.text or "",
        fields=fields,
        color=color,
        url=alert.url,
    )


def render_sms(alert: AlertCandidate, route: Channel) -> str:
    if alert.kind == AlertKind.ONCHAIN_TRANSFER:
        lines = [f"High Value Transaction (${format_number(alert.usd_value or 0)})!", f"Type: {alert.tx_type or 'Unknown'}"]
        if alert.native_amount:
            lines.append(f"SOL Amount: {format_number(alert.native_amount)} SOL")
        if alert.token_symbol:
            lines.append(f"Token: {alert.token_symbol}")
        if alert.url:
            lines.append(f"\n{alert.url}")
        return "\n".join(lines)

    if route == Channel.PRIORITY:
        return f"Priority Alert: New post from @{alert.author_username}\n{alert.text or ''}"
    return (
        f"Token Alert: @{alert.author_username} mentioned {len(alert.addresses)} token(s)\n"
        f"{alert.text or ''}"
    )


# -----------------------------------------------------------------------------
# Router
# -----------------------------------------------------------------------------

class NotificationRouter:
    """
    Routes alerts to channel sinks and the SMS sink.

    Usage:
        router = NotificationRouter(channels={Channel.POSTS: posts_sink}, sms=sms_sink, subscribers=store)
        result = await router.route(alert)

    Args:
        channels: Sink per Channel; missing or unconfigured channels are skipped
        sms: SMS sink (TwilioSmsSink); SMS routes are skipped unless configured
        subscribers: Object with active_subscribers() and get_subscriber(user_id)
        events: Optional ActivityFeed for alert_routed / delivery_failed events
        metrics: Optional MetricsCollector
    """

    def __init__(self, channels=None, sms=None, subscribers=None, events=None, metrics=None):
        self.channels = dict(channels or {})
        self.sms = sms
        self.subscribers = subscribers
        self.events = events
        self.metrics = metrics
        self._delivered: Set[Tuple[str, str, str]] = set()

    @property
    def sms_enabled(self) -> bool:
        return self.sms is not None and self.sms.configured

    def _plan(self, alert: AlertCandidate, severity: Severity) -> List[Tuple[str, str, Callable[[], Awaitable]]]:
        """List of (route, recipient, send) for an alert."""
        plan = []
        message = render_channel_message(alert, severity)

        def channel_route(channel: Channel):
            sink = self.channels.get(channel)
            if sink is None or not sink.configured:
                logger.debug(f"Channel {channel.value} not configured, skipping")
                return
            plan.append((channel.value, channel.value, lambda: sink.send(message)))

        def sms_route(route: Channel, phone: str):
            body = render_sms(alert, route)
            plan.append((f"sms:{route.value}", phone, lambda: self.sms.send(phone, body)))

        if alert.is_social:
            if alert.priority:
                channel_route(Channel.PRIORITY)
                if self.sms_enabled and self.subscribers is not None:
                    for subscriber in self.subscribers.active_subscribers():
                        sms_route(Channel.PRIORITY, subscriber.phone)
            if alert.on_topic:
                channel_route(Channel.TOPIC)
                if self.sms_enabled and self.subscribers is not None:
                    for subscriber in self.subscribers.active_subscribers():
                        sms_route(Channel.TOPIC, subscriber.phone)
            channel_route(Channel.POSTS)
        else:
            channel_route(Channel.WALLETS)
            if (
                severity == Severity.HIGH
                and alert.added_by
                and self.sms_enabled
                and self.subscribers is not None
            ):
                subscriber = self.subscribers.get_subscriber(alert.added_by)
                if subscriber is not None and subscriber.active:
                    sms_route(Channel.WALLETS, subscriber.phone)

        return plan

    async def route(self, alert: AlertCandidate) -> RouteResult:
        """Dispatch an alert to every destination it qualifies for."""
        severity = severity_for(alert)
        result = RouteResult(event_id=alert.event_id, kind=alert.kind, severity=severity)

        for route, recipient, send in self._plan(alert, severity):
            key = (alert.event_id, route, recipient)
            if key in self._delivered:
                logger.debug(f"Already delivered {alert.event_id} via {route} to {recipient}")
                continue
            self._delivered.add(key)

            try:
                await send()
            except Exception as e:
                logger.error(f"Delivery of {alert.event_id} via {route} failed: {e}")
                result.deliveries.append(Delivery(route=route, recipient=recipient, ok=False, error=str(e)))
                if self.events is not None:
                    self.events.add_event(EventType.DELIVERY_FAILED, event_id=alert.event_id, route=route, error=str(e)[:200])
                if self.metrics is not None:
                    self.metrics.record_delivery(route, error=True)
                continue

            result.deliveries.append(Delivery(route=route, recipient=recipient))
            if self.metrics is not None:
                self.metrics.record_delivery(route)

        if self.metrics is not None:
            self.metrics.record_alert(alert.kind.value)
        if self.events is not None:
            self.events.add_event(
                EventType.ALERT_ROUTED,
                event_id=alert.event_id,
                kind=alert.kind.value,
                severity=severity.value,
                delivered=result.delivered,
                failed=result.failed,
            )

        logger.info(
            f"Routed {alert.kind.value} {alert.event_id}: "
            f"{result.delivered} delivered, {result.failed} failed"
        )
        return result


__all__ = [
    "Channel",
    "Severity",
    "Delivery",
    "RouteResult",
    "NotificationRouter",
    "HIGH_VALUE_THRESHOLD",
    "severity_for",
    "render_channel_message",
    "render_sms",
    "format_number",
]
