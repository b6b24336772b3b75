"""
FastAPI routes for the feed and wallet monitor.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from adapter.errors import ProviderError, QuotaExceededError
from adapter.x import XUserNotFoundError
from core import FeedPoller, MonitoredSource, MonitorStore, SmsSubscriber, TrackedWallet, TransactionIngestor
from monitoring import EventType, get_rate_limit_status, monitor

logger = logging.getLogger(__name__)

# Router for API endpoints
router = APIRouter(prefix="/api/v1", tags=["Monitor"])


# ============================================================================
# Request/Response Models
# ============================================================================

class SubscribeRequest(BaseModel):
    """Request to start monitoring an account."""
    username: str = Field(min_length=1, description="Handle, with or without @")
    priority: bool = Field(default=False, description="Route posts to the priority channel and SMS")


class PriorityRequest(BaseModel):
    priority: bool


class SourceResponse(BaseModel):
    """Monitored account information."""
    id: str
    username: str
    display_name: Optional[str]
    priority: bool
    last_cursor: Optional[str]
    created_at: datetime
    last_poll: Optional[datetime]
    last_error: Optional[str]
    poll_count: int
    post_count: int

    @classmethod
    def from_source(cls, source: MonitoredSource) -> "SourceResponse":
        return cls(**source.model_dump())


class TrackWalletRequest(BaseModel):
    address: str = Field(description="Wallet address (base58)")
    name: Optional[str] = Field(default=None, description="Display name (defaults to abcd...wxyz)")
    added_by: Optional[str] = Field(default=None, description="Subscriber user ID for high-value SMS")


class WalletResponse(BaseModel):
    address: str
    name: str
    added_by: Optional[str]
    created_at: datetime

    @classmethod
    def from_wallet(cls, wallet: TrackedWallet) -> "WalletResponse":
        return cls(**wallet.model_dump())


class SubscriberRequest(BaseModel):
    user_id: str = Field(min_length=1)
    phone: str = Field(pattern=r"^\+[1-9]\d{6,14}$", description="E.164 phone number")


class SubscriberResponse(BaseModel):
    user_id: str
    phone: str
    active: bool
    created_at: datetime

    @classmethod
    def from_subscriber(cls, subscriber: SmsSubscriber) -> "SubscriberResponse":
        return cls(**subscriber.model_dump())


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    sources_count: int
    priority_sources: int
    wallets_count: int
    poller_running: bool


class PollResponse(BaseModel):
    """Response after triggering a poll."""
    success: bool
    message: str
    alerts: int = 0


class WebhookResponse(BaseModel):
    received: int
    alerts: int
    skipped: int
    failed: int = 0


# ============================================================================
# Dependencies
# ============================================================================

_store: Optional[MonitorStore] = None
_feed_poller: Optional[FeedPoller] = None
_ingestor: Optional[TransactionIngestor] = None


def set_dependencies(
    store: MonitorStore,
    feed_poller: FeedPoller,
    ingestor: TransactionIngestor
):
    """Set the service dependencies (called from main app)."""
    global _store, _feed_poller, _ingestor
    _store = store
    _feed_poller = feed_poller
    _ingestor = ingestor


def get_store() -> MonitorStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _store


def get_feed_poller() -> FeedPoller:
    if _feed_poller is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _feed_poller


def get_ingestor() -> TransactionIngestor:
    if _ingestor is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _ingestor


def _quota_exception(error: QuotaExceededError) -> HTTPException:
    retry_after = max(0, math.ceil(error.reset_time - time.time()))
    return HTTPException(
        status_code=429,
        detail=f"Rate limited on {error.endpoint}, retry in {retry_after}s",
        headers={"Retry-After": str(retry_after)},
    )


# ============================================================================
# Routes
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: MonitorStore = Depends(get_store),
    poller: FeedPoller = Depends(get_feed_poller)
):
    """Health check endpoint."""
    stats = store.get_stats()
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        sources_count=stats["sources"],
        priority_sources=stats["priority_sources"],
        wallets_count=stats["wallets"],
        poller_running=poller.running
    )


# ----------------------------------------------------------------------------
# Sources
# ----------------------------------------------------------------------------

@router.get("/sources", response_model=List[SourceResponse])
async def list_sources(store: MonitorStore = Depends(get_store)):
    """List all monitored accounts."""
    return [SourceResponse.from_source(s) for s in store.list_sources()]


@router.post("/sources", response_model=SourceResponse, status_code=201)
async def subscribe_source(
    request: SubscribeRequest,
    poller: FeedPoller = Depends(get_feed_poller)
):
    """Start monitoring an account by handle."""
    try:
        source = await poller.subscribe(request.username, priority=request.priority)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except XUserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except QuotaExceededError as e:
        raise _quota_exception(e)
    except ProviderError as e:
        logger.error(f"Account lookup failed for {request.username}: {e}")
        raise HTTPException(status_code=502, detail=f"Account lookup failed: {e}")
    return SourceResponse.from_source(source)


@router.get("/sources/{source_id}", response_model=SourceResponse)
async def get_source(
    source_id: str,
    store: MonitorStore = Depends(get_store)
):
    """Get a specific monitored account."""
    source = store.get_source(source_id)
    if not source:
        raise HTTPException(status_code=404, detail=f"Source '{source_id}' not found")
    return SourceResponse.from_source(source)


@router.delete("/sources/{source_id}", status_code=204)
async def unsubscribe_source(
    source_id: str,
    poller: FeedPoller = Depends(get_feed_poller)
):
    """Stop monitoring an account."""
    if not poller.unsubscribe(source_id):
        raise HTTPException(status_code=404, detail=f"Source '{source_id}' not found")


@router.patch("/sources/{source_id}/priority", response_model=SourceResponse)
async def set_source_priority(
    source_id: str,
    request: PriorityRequest,
    poller: FeedPoller = Depends(get_feed_poller),
    store: MonitorStore = Depends(get_store)
):
    """Flag or unflag an account as priority."""
    if not poller.set_priority(source_id, request.priority):
        raise HTTPException(status_code=404, detail=f"Source '{source_id}' not found")
    return SourceResponse.from_source(store.get_source(source_id))


@router.post("/sources/{source_id}/poll", response_model=PollResponse)
async def poll_source(
    source_id: str,
    poller: FeedPoller = Depends(get_feed_poller)
):
    """Manually poll one account."""
    try:
        alerts = await poller.poll_now(source_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Source '{source_id}' not found")
    except QuotaExceededError as e:
        raise _quota_exception(e)
    except ProviderError as e:
        return PollResponse(success=False, message=f"Poll failed: {e}")
    return PollResponse(success=True, message=f"Polled {source_id}", alerts=alerts)


@router.post("/poll", response_model=PollResponse)
async def poll_all(poller: FeedPoller = Depends(get_feed_poller)):
    """Manually poll every monitored account."""
    alerts = await poller.poll_now()
    return PollResponse(success=True, message="Polled all sources", alerts=alerts)


# ----------------------------------------------------------------------------
# Wallets
# ----------------------------------------------------------------------------

@router.get("/wallets", response_model=List[WalletResponse])
async def list_wallets(store: MonitorStore = Depends(get_store)):
    return [WalletResponse.from_wallet(w) for w in store.list_wallets()]


@router.post("/wallets", response_model=WalletResponse, status_code=201)
async def track_wallet(
    request: TrackWalletRequest,
    ingestor: TransactionIngestor = Depends(get_ingestor)
):
    """Start tracking a wallet's transactions."""
    try:
        wallet = await ingestor.track_wallet(request.address, name=request.name, added_by=request.added_by)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return WalletResponse.from_wallet(wallet)


@router.delete("/wallets/{address}", status_code=204)
async def untrack_wallet(
    address: str,
    ingestor: TransactionIngestor = Depends(get_ingestor)
):
    if not await ingestor.untrack_wallet(address):
        raise HTTPException(status_code=404, detail=f"Wallet '{address}' not tracked")


# ----------------------------------------------------------------------------
# SMS subscribers
# ----------------------------------------------------------------------------

@router.get("/sms/subscribers", response_model=List[SubscriberResponse])
async def list_subscribers(store: MonitorStore = Depends(get_store)):
    return [SubscriberResponse.from_subscriber(s) for s in store.list_subscribers()]


@router.post("/sms/subscribers", response_model=SubscriberResponse, status_code=201)
async def add_subscriber(
    request: SubscriberRequest,
    store: MonitorStore = Depends(get_store)
):
    """Register a phone number for SMS alerts."""
    subscriber = store.add_subscriber(request.user_id, request.phone)
    logger.info(f"SMS subscriber registered: {request.user_id}")
    return SubscriberResponse.from_subscriber(subscriber)


@router.delete("/sms/subscribers/{user_id}", status_code=204)
async def remove_subscriber(
    user_id: str,
    store: MonitorStore = Depends(get_store)
):
    if not store.remove_subscriber(user_id):
        raise HTTPException(status_code=404, detail=f"Subscriber '{user_id}' not found")


# ----------------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------------

@router.post("/webhooks/transactions", response_model=WebhookResponse, tags=["Webhooks"])
async def receive_transactions(
    payload: List[Dict[str, Any]] = Body(...),
    ingestor: TransactionIngestor = Depends(get_ingestor)
):
    """
    Receive enhanced transaction records from the chain indexer.

    Records are validated one by one so a malformed record does not reject
    the whole delivery.
    """
    counts = await ingestor.handle_webhook(payload)
    return WebhookResponse(**counts)


# ============================================================================
# Monitoring & Observability
# ============================================================================

# Store scheduler reference for monitoring
_rate_limiter = None

def set_rate_limiter(rate_limiter):
    """Set the request scheduler for monitoring."""
    global _rate_limiter
    _rate_limiter = rate_limiter


@router.get("/monitor/dashboard", tags=["Monitoring"])
async def get_dashboard():
    """
    Full monitoring dashboard data.

    Returns all metrics, health status, and recent activity in one call.
    """
    data = monitor.get_dashboard_data()
    if _store is not None:
        data["store"] = _store.get_stats()
    return data


@router.get("/monitor/health", tags=["Monitoring"])
async def get_system_health():
    """System health check with component status."""
    return monitor.get_health_status()


@router.get("/monitor/metrics", tags=["Monitoring"])
async def get_metrics():
    """
    Detailed performance metrics.

    Includes:
    - Scheduled requests, errors and rate limits per endpoint
    - Posts and transactions processed, alerts per kind
    - Deliveries and failures per sink
    """
    return monitor.metrics.get_metrics()


@router.get("/monitor/rate-limits", tags=["Monitoring"])
async def get_rate_limits():
    """Quota window usage per endpoint."""
    if _rate_limiter is None:
        return {"error": "Rate limiter not configured", "endpoints": {}}

    status = get_rate_limit_status(_rate_limiter)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": status,
        "summary": {
            "total_endpoints": len(status),
            "critical": sum(1 for s in status.values() if s["status"] == "critical"),
            "warning": sum(1 for s in status.values() if s["status"] == "warning"),
            "ok": sum(1 for s in status.values() if s["status"] == "ok"),
        }
    }


@router.get("/monitor/activity", tags=["Monitoring"])
async def get_activity_feed(
    limit: int = Query(default=50, ge=1, le=200, description="Number of events"),
    event_type: Optional[str] = Query(default=None, description="Filter by event type")
):
    """
    Real-time activity feed.

    Recent system events including:
    - Scheduler windows, waits and rate limits
    - Polls, classified posts and transactions
    - Routed alerts and delivery failures
    """
    filter_type = None
    if event_type:
        try:
            filter_type = EventType(event_type)
        except ValueError:
            valid_types = [e.value for e in EventType]
            raise HTTPException(
                status_code=400,
                detail=f"Invalid event_type. Valid options: {valid_types}"
            )

    events = monitor.activity.get_recent(limit=limit, event_type=filter_type)
    event_counts = monitor.activity.get_event_counts(since_minutes=5)

    return {
        "events": events,
        "event_counts_5m": event_counts,
        "available_types": [e.value for e in EventType],
    }
