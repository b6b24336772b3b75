"""
Feed & Wallet Monitor Backend - Main FastAPI Application

Run with:
    uvicorn main:app --reload --port 8000
"""

import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from adapter.chain import HeliusAdapter
from adapter.market import MarketDataAdapter
from adapter.notify import ChannelWebhookSink, TwilioSmsSink
from adapter.rate_limiter import BatchConfig, create_x_api_scheduler
from adapter.x import XAdapter
from api import router, set_dependencies, set_rate_limiter
from classifier import EventClassifier
from core import DEFAULT_POLL_BATCH_SIZE, DEFAULT_POLL_INTERVAL, FeedPoller, MonitorStore, TransactionIngestor
from monitoring import monitor
from notifier import Channel, NotificationRouter

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global services (initialized on startup)
store: MonitorStore = None
feed_poller: FeedPoller = None
ingestor: TransactionIngestor = None


class RequestMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware to monitor FastAPI requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in ["/", "/docs", "/redoc", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        endpoint = request.url.path.replace("/api/v1", "") or "/"

        try:
            response = await call_next(request)
        except Exception:
            monitor.metrics.record_http_request(endpoint, (time.time() - start_time) * 1000, error=True)
            raise

        latency_ms = (time.time() - start_time) * 1000
        monitor.metrics.record_http_request(endpoint, latency_ms, error=response.status_code >= 500)
        return response


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _component_status(name: str, configured: bool) -> None:
    monitor.set_component_status(name, "healthy" if configured else "warning", {"configured": configured})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - setup and teardown.
    """
    global store, feed_poller, ingestor

    logger.info("Starting monitor backend...")

    # Request scheduler shared by every outbound client
    margin_env = os.environ.get("RATE_LIMIT_SAFETY_MARGIN")
    scheduler = create_x_api_scheduler(
        safety_margin=float(margin_env) if margin_env else None,
        batch=BatchConfig(
            min_interval_ms=_env_int("BATCH_MIN_INTERVAL_MS", 1000),
            max_retries=_env_int("BATCH_MAX_RETRIES", 3),
            retry_delay_ms=_env_int("BATCH_RETRY_DELAY_MS", 5000),
        ),
        events=monitor.activity,
    )

    # Initialize adapters
    x_adapter = XAdapter(bearer_token=os.environ.get("X_BEARER_TOKEN"))
    market = MarketDataAdapter(api_key=os.environ.get("BIRDEYE_API_KEY"), scheduler=scheduler)
    chain = HeliusAdapter()
    sms = TwilioSmsSink()
    channels = {
        Channel.PRIORITY: ChannelWebhookSink("priority", os.environ.get("PRIORITY_CHANNEL_URL")),
        Channel.TOPIC: ChannelWebhookSink("topic", os.environ.get("TOPIC_CHANNEL_URL")),
        Channel.POSTS: ChannelWebhookSink("posts", os.environ.get("POSTS_CHANNEL_URL")),
        Channel.WALLETS: ChannelWebhookSink("wallets", os.environ.get("WALLETS_CHANNEL_URL")),
    }

    if x_adapter.is_configured:
        logger.info("X Adapter configured")
    else:
        logger.warning("X Adapter not configured - set X_BEARER_TOKEN")

    for channel, sink in channels.items():
        if not sink.configured:
            logger.warning(f"Channel {channel.value} has no webhook URL - its alerts are dropped")

    # Initialize core services
    store = MonitorStore()
    classifier = EventClassifier(market, store.processed, store.mentions)
    notification_router = NotificationRouter(
        channels=channels,
        sms=sms,
        subscribers=store,
        events=monitor.activity,
        metrics=monitor.metrics,
    )

    poll_interval = _env_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
    feed_poller = FeedPoller(
        store=store,
        x_adapter=x_adapter,
        scheduler=scheduler,
        classifier=classifier,
        router=notification_router,
        poll_interval=poll_interval,
        batch_size=_env_int("POLL_BATCH_SIZE", DEFAULT_POLL_BATCH_SIZE),
        events=monitor.activity,
        metrics=monitor.metrics,
    )
    ingestor = TransactionIngestor(
        store=store,
        classifier=classifier,
        router=notification_router,
        chain=chain,
        scheduler=scheduler,
        events=monitor.activity,
        metrics=monitor.metrics,
    )

    # Set dependencies for API routes
    set_dependencies(store, feed_poller, ingestor)
    set_rate_limiter(scheduler)

    # Configure monitoring
    _component_status("x_adapter", x_adapter.is_configured)
    _component_status("market_adapter", market.is_configured)
    _component_status("chain_adapter", chain.is_configured)
    _component_status("sms", sms.configured)

    # Start background services
    auto_poll = os.environ.get("AUTO_POLL", "false").lower() == "true"
    if auto_poll:
        await feed_poller.start()
        monitor.set_component_status("poller", "healthy", {"interval": poll_interval})
        logger.info(f"FeedPoller started (interval: {poll_interval}s)")
    else:
        monitor.set_component_status("poller", "warning", {"enabled": False})
        logger.info("Feed polling disabled (set AUTO_POLL=true to enable)")

    logger.info("Monitoring available at /api/v1/monitor/*")
    logger.info("Monitor backend ready!")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down monitor backend...")
    if feed_poller:
        await feed_poller.stop()
    logger.info("Goodbye!")


# Create FastAPI app
app = FastAPI(
    title="Feed & Wallet Monitor API",
    description="Rate-limited social feed and wallet activity alerts",
    version="1.0.0",
    lifespan=lifespan,
)

# Request monitoring middleware
app.add_middleware(RequestMonitoringMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


# Root endpoint
@app.get("/")
async def root():
    return {"name": "Feed & Wallet Monitor API", "version": "1.0.0", "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=True,
    )
