"""
Monitoring and observability module for the feed/wallet monitor.

Provides real-time metrics and insights for:
- System health
- API quota windows (X, Birdeye, Helius)
- Classification and routing throughput
- Notification delivery
- Activity feed
"""

from __future__ import annotations

import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass
from collections import Counter, deque
from itertools import islice
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of system events."""
    # Scheduler
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RATE_LIMIT_WARNING = "rate_limit_warning"
    RATE_LIMIT_RESET = "rate_limit_reset"
    REQUEST_SCHEDULED = "request_scheduled"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    # Pipeline
    POLL = "poll"
    POST_CLASSIFIED = "post_classified"
    TRANSACTION_CLASSIFIED = "transaction_classified"
    TRANSACTION_SKIPPED = "transaction_skipped"
    ALERT_ROUTED = "alert_routed"
    DELIVERY_FAILED = "delivery_failed"
    SOURCE_ADDED = "source_added"
    SOURCE_REMOVED = "source_removed"
    WALLET_ADDED = "wallet_added"
    WALLET_REMOVED = "wallet_removed"
    ERROR = "error"


@dataclass
class SystemEvent:
    """A recorded system event."""
    timestamp: datetime
    event_type: EventType
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "details": self.details,
            "age_seconds": (datetime.now(timezone.utc) - self.timestamp).total_seconds()
        }


EventSubscriber = Callable[[SystemEvent], None]


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Tracks:
    - Scheduled requests and failures per endpoint
    - Alerts produced per kind
    - Deliveries and delivery failures per sink
    """

    def __init__(self):
        self._start_time = time.time()
        self._request_counts: Dict[str, int] = {}
        self._error_counts: Dict[str, int] = {}
        self._rate_limited_counts: Dict[str, int] = {}

        self._alert_counts: Dict[str, int] = {}
        self._posts_processed = 0
        self._transactions_processed = 0
        self._transactions_skipped = 0

        self._deliveries: Dict[str, int] = {}
        self._delivery_failures: Dict[str, int] = {}

        self._http_counts: Dict[str, int] = {}
        self._http_errors: Dict[str, int] = {}
        self._http_latencies: deque = deque(maxlen=1000)

    def record_http_request(self, path: str, latency_ms: float, error: bool = False) -> None:
        """Record a request served by our own HTTP API."""
        self._http_counts[path] = self._http_counts.get(path, 0) + 1
        self._http_latencies.append(latency_ms)
        if error:
            self._http_errors[path] = self._http_errors.get(path, 0) + 1

    def record_request(self, endpoint: str, error: bool = False, rate_limited: bool = False) -> None:
        """Record a scheduled API request."""
        self._request_counts[endpoint] = self._request_counts.get(endpoint, 0) + 1
        if error:
            self._error_counts[endpoint] = self._error_counts.get(endpoint, 0) + 1
        if rate_limited:
            self._rate_limited_counts[endpoint] = self._rate_limited_counts.get(endpoint, 0) + 1

    def record_post(self) -> None:
        self._posts_processed += 1

    def record_transaction(self, skipped: bool = False) -> None:
        self._transactions_processed += 1
        if skipped:
            self._transactions_skipped += 1

    def record_alert(self, kind: str) -> None:
        self._alert_counts[kind] = self._alert_counts.get(kind, 0) + 1

    def record_delivery(self, sink: str, error: bool = False) -> None:
        """Record one dispatch attempt to a sink."""
        self._deliveries[sink] = self._deliveries.get(sink, 0) + 1
        if error:
            self._delivery_failures[sink] = self._delivery_failures.get(sink, 0) + 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        uptime = time.time() - self._start_time
        total_requests = sum(self._request_counts.values())
        total_errors = sum(self._error_counts.values())
        total_deliveries = sum(self._deliveries.values())
        total_delivery_failures = sum(self._delivery_failures.values())

        return {
            "uptime_seconds": int(uptime),
            "uptime_human": format_uptime(uptime),

            "requests": {
                "total": total_requests,
                "by_endpoint": dict(self._request_counts),
                "errors": dict(self._error_counts),
                "rate_limited": dict(self._rate_limited_counts),
                "error_rate": f"{(total_errors / total_requests if total_requests else 0):.1%}",
            },

            "pipeline": {
                "posts_processed": self._posts_processed,
                "transactions_processed": self._transactions_processed,
                "transactions_skipped": self._transactions_skipped,
                "alerts_by_kind": dict(self._alert_counts),
            },

            "delivery": {
                "total": total_deliveries,
                "by_sink": dict(self._deliveries),
                "failures": dict(self._delivery_failures),
                "failure_rate": f"{(total_delivery_failures / total_deliveries if total_deliveries else 0):.1%}",
            },

            "http": {
                "total": sum(self._http_counts.values()),
                "by_path": dict(self._http_counts),
                "errors": dict(self._http_errors),
                "avg_latency_ms": round(sum(self._http_latencies) / len(self._http_latencies), 2) if self._http_latencies else 0,
            },
        }


def format_uptime(seconds: float) -> str:
    """1h 5m / 4m 12s / 37s"""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class ActivityFeed:
    """
    Bounded activity channel for system events.

    Keeps the most recent events for live monitoring and forwards each one to
    registered subscribers. Publishing never raises into the caller.
    """

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._events: deque = deque(maxlen=max_events)
        self._subscribers: List[EventSubscriber] = []

    def subscribe(self, callback: EventSubscriber) -> None:
        """Register a callback invoked with every new event."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventSubscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def add_event(self, event_type: EventType, **details) -> None:
        """Add an event to the feed."""
        event = SystemEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            details=details
        )
        self._events.append(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Activity subscriber failed on {event_type.value}: {e}")

    def get_recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[Dict]:
        """Newest first, optionally only one event type."""
        # The deque is append-only, so reversed order is newest first
        matching = (e for e in reversed(self._events) if event_type is None or e.event_type == event_type)
        return [e.to_dict() for e in islice(matching, limit)]

    def get_event_counts(self, since_minutes: int = 5) -> Dict[str, int]:
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=since_minutes)
        return dict(Counter(e.event_type.value for e in self._events if e.timestamp >= cutoff))

    def __len__(self) -> int:
        return len(self._events)


class SystemMonitor:
    """
    Central monitoring hub.

    Aggregates metrics from all components and mirrors scheduler events into
    the request metrics.
    """

    def __init__(self, max_events: int = 500):
        self.metrics = MetricsCollector()
        self.activity = ActivityFeed(max_events=max_events)
        self.activity.subscribe(self._record_scheduler_event)
        self._component_status: Dict[str, Dict[str, Any]] = {}

    def _record_scheduler_event(self, event: SystemEvent) -> None:
        endpoint = event.details.get("endpoint")
        if endpoint is None:
            return
        if event.event_type == EventType.REQUEST_SCHEDULED:
            self.metrics.record_request(endpoint)
        elif event.event_type == EventType.REQUEST_FAILED:
            self.metrics.record_request(endpoint, error=True)
        elif event.event_type == EventType.RATE_LIMIT_EXCEEDED:
            self.metrics.record_request(endpoint, error=True, rate_limited=True)

    def set_component_status(
        self,
        component: str,
        status: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set status for a component."""
        self._component_status[component] = {
            "status": status,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "details": details or {}
        }

    def get_health_status(self) -> Dict[str, Any]:
        """
        Roll component statuses up into one.

        Any component in error makes the service "degraded", then any
        warning wins. Only an all-healthy set reports "healthy".
        """
        statuses = {c.get("status", "unknown") for c in self._component_status.values()}

        if "error" in statuses:
            overall = "degraded"
        elif "warning" in statuses:
            overall = "warning"
        elif statuses == {"healthy"}:
            overall = "healthy"
        else:
            overall = "unknown"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": self._component_status,
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Get all data needed for a monitoring dashboard."""
        return {
            "health": self.get_health_status(),
            "metrics": self.metrics.get_metrics(),
            "recent_activity": self.activity.get_recent(limit=20),
            "event_counts_5m": self.activity.get_event_counts(since_minutes=5),
        }


# Global monitor instance
monitor = SystemMonitor()


def get_rate_limit_status(scheduler) -> Dict[str, Any]:
    """
    Get detailed quota window status from a RequestScheduler instance.

    Args:
        scheduler: RequestScheduler instance

    Returns:
        Window usage for every endpoint that has been called
    """
    status = {}

    for endpoint, window in scheduler.get_window_status().items():
        safe_limit = window["safe_limit"]
        usage_pct = (window["used"] / safe_limit * 100) if safe_limit > 0 else 0

        status[endpoint] = {
            **window,
            "usage_percent": f"{usage_pct:.1f}%",
            "status": "ok" if usage_pct < 80 else ("warning" if usage_pct < 100 else "critical"),
        }

    return status


__all__ = [
    "SystemMonitor",
    "MetricsCollector",
    "ActivityFeed",
    "EventType",
    "SystemEvent",
    "monitor",
    "get_rate_limit_status",
    "format_uptime",
]
