"""
Windowed request scheduler shared by every outbound API client.

Each logical endpoint gets its own quota window (requests per N minutes,
scaled down by a safety margin). Endpoints flagged as batch-class are also
paced by a global minimum interval and retried a bounded number of times
when the provider answers with a rate limit.

All state lives on the scheduler instance (windows and batch pacing state),
so tests can build a fresh scheduler with a fake clock.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from monitoring import EventType

from .errors import QuotaExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SAFETY_MARGIN = 0.9
DEFAULT_ENDPOINT = "default"
DEFAULT_RESET_HINT_SECONDS = 60

RATE_LIMIT_STATUS = 429
# X API v1.1 style error code for "Rate limit exceeded"
PROVIDER_RATE_LIMIT_CODES = {88}


@dataclass
class EndpointConfig:
    """Quota policy for one logical operation class."""
    requests_per_window: int
    window_size_minutes: float
    batch: bool = False

    def __post_init__(self):
        if self.requests_per_window <= 0:
            raise ValueError("requests_per_window must be > 0")
        if self.window_size_minutes <= 0:
            raise ValueError("window_size_minutes must be > 0")

    @property
    def window_seconds(self) -> float:
        return self.window_size_minutes * 60


@dataclass
class BatchConfig:
    """Pacing and retry policy applied to batch-class endpoints."""
    min_interval_ms: int = 1000
    max_retries: int = 3
    retry_delay_ms: int = 5000


@dataclass
class SchedulerConfig:
    """Endpoint quotas plus the global safety margin and batch policy."""
    endpoints: Dict[str, EndpointConfig] = field(default_factory=dict)
    default_limit: EndpointConfig = field(default_factory=lambda: EndpointConfig(60, 1))
    safety_margin: Optional[float] = DEFAULT_SAFETY_MARGIN
    batch: BatchConfig = field(default_factory=BatchConfig)

    def __post_init__(self):
        if self.safety_margin is None:
            self.safety_margin = DEFAULT_SAFETY_MARGIN
        if not 0 < self.safety_margin <= 1:
            raise ValueError("safety_margin must be in (0, 1]")

    def limits_for(self, endpoint: str) -> EndpointConfig:
        return self.endpoints.get(endpoint, self.default_limit)

    def safe_limit(self, limits: EndpointConfig) -> int:
        # Never below one request, otherwise a tiny quota would block forever
        return max(1, math.floor(limits.requests_per_window * self.safety_margin))


@dataclass
class Window:
    """Current quota-consumption period for one endpoint."""
    start_time: float
    request_count: int = 0

    def elapsed(self, now: float) -> float:
        return now - self.start_time

    def is_expired(self, now: float, window_seconds: float) -> bool:
        return self.elapsed(now) >= window_seconds


class WindowStore:
    """
    Per-endpoint windows, created lazily and replaced on reset.

    Also keeps the start time of every recent request per endpoint. A window
    reset does not clear that history, so a reset can never make room that
    the rolling window has not actually freed.
    """

    def __init__(self):
        self._windows: Dict[str, Window] = {}
        self._starts: Dict[str, List[float]] = {}

    def get(self, endpoint: str) -> Optional[Window]:
        return self._windows.get(endpoint)

    def get_or_create(self, endpoint: str, now: float) -> Window:
        window = self._windows.get(endpoint)
        if window is None:
            window = Window(start_time=now)
            self._windows[endpoint] = window
        return window

    def reset(self, endpoint: str, now: float) -> Window:
        window = Window(start_time=now)
        self._windows[endpoint] = window
        return window

    def record_start(self, endpoint: str, now: float) -> None:
        self._starts.setdefault(endpoint, []).append(now)

    def recent_starts(self, endpoint: str, now: float, window_seconds: float) -> List[float]:
        """Start times within the last window_seconds, oldest first."""
        starts = self._starts.get(endpoint)
        if not starts:
            return []
        starts[:] = [t for t in starts if now - t < window_seconds]
        return starts

    def items(self) -> Iterable[tuple[str, Window]]:
        return list(self._windows.items())

    def clear(self) -> None:
        self._windows.clear()
        self._starts.clear()

    def __len__(self) -> int:
        return len(self._windows)


@dataclass
class BatchState:
    """Global pacing state for batch-class endpoints."""
    last_batch_time: float = 0.0
    retry_counts: Dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _provider_errors(error: BaseException) -> list:
    """Collect provider error entries from the shapes clients attach to exceptions."""
    entries = []
    errors = getattr(error, "errors", None)
    if isinstance(errors, list):
        entries.extend(errors)
    data = getattr(error, "data", None)
    if isinstance(data, Mapping) and isinstance(data.get("errors"), list):
        entries.extend(data["errors"])
    return [e for e in entries if isinstance(e, Mapping)]


def _response_message(response: Any) -> str:
    if response is None:
        return ""
    try:
        payload = response.json()
    except (ValueError, AttributeError, TypeError):
        return ""
    if isinstance(payload, Mapping):
        message = payload.get("message")
        if isinstance(message, str):
            return message
    return ""


def is_rate_limit_error(error: BaseException) -> bool:
    """
    Decide whether a failure means the provider throttled us.

    Recognizes a 429 status on the error itself or on its attached response,
    provider-specific rate limit codes, and "rate limit" in the message.
    """
    if isinstance(error, QuotaExceededError):
        return True

    for attr in ("status_code", "status", "code"):
        if _as_int(getattr(error, attr, None)) == RATE_LIMIT_STATUS:
            return True

    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status_code", "status"):
            if _as_int(getattr(response, attr, None)) == RATE_LIMIT_STATUS:
                return True

    if any(_as_int(entry.get("code")) in PROVIDER_RATE_LIMIT_CODES for entry in _provider_errors(error)):
        return True

    if "rate limit" in str(error).lower():
        return True

    return "rate limit" in _response_message(response).lower()


def reset_time_hint(error: BaseException, now: float) -> float:
    """Provider-supplied reset timestamp if the error carries one, else now + 60s."""
    for attr in ("reset_time", "rate_limit_reset"):
        value = _as_float(getattr(error, attr, None))
        if value:
            return value

    headers = getattr(getattr(error, "response", None), "headers", None)
    if isinstance(headers, Mapping):
        for key in ("x-rate-limit-reset", "x-ratelimit-reset"):
            value = _as_float(headers.get(key))
            if value:
                return value

    return now + DEFAULT_RESET_HINT_SECONDS


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class RequestScheduler:
    """
    Wraps asynchronous operations and enforces per-endpoint quotas.

    Usage:
        scheduler = create_x_api_scheduler(events=monitor.activity)
        user = await scheduler.schedule(lambda: x_adapter.get_user_async("jack"), "users/by/username")

    Features:
    - Quota window per endpoint, started lazily on first use, also bounded over
      any rolling window by the start times of recent requests
    - Safety margin applied to every endpoint quota
    - Global minimum spacing and bounded retry for batch-class endpoints
    - Rate-limit classification across the error shapes our clients produce
    - Every state transition published on an optional activity channel
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        events: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        windows: Optional[WindowStore] = None,
        batch_state: Optional[BatchState] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            config: Endpoint quotas, safety margin and batch policy
            events: Observability channel exposing add_event(event_type, **details); None disables it
            clock: Returns the current time in seconds
            sleep: Coroutine used for every suspension
            windows: Window store (a fresh one by default)
            batch_state: Batch pacing state (a fresh one by default)
        """
        self.config = config or SchedulerConfig()
        self.events = events
        self._clock = clock
        self._sleep = sleep
        self.windows = windows or WindowStore()
        self.batch_state = batch_state or BatchState()

    def configure_endpoint(self, endpoint: str, config: EndpointConfig) -> None:
        """Configure the quota for a specific endpoint key."""
        self.config.endpoints[endpoint] = config
        logger.info(
            f"Configured rate limit for {endpoint}: {config.requests_per_window} req/"
            f"{config.window_size_minutes:g}min{' (batch)' if config.batch else ''}"
        )

    def is_batch_endpoint(self, endpoint: str) -> bool:
        return self.config.limits_for(endpoint).batch

    def _emit(self, event_type: EventType, endpoint: str, **details) -> None:
        if self.events is None:
            return
        self.events.add_event(event_type, endpoint=endpoint, **details)

    def reset_window(self, endpoint: str) -> Window:
        """Replace the endpoint's window with a fresh one starting now."""
        window = self.windows.reset(endpoint, self._clock())
        logger.debug(f"Rate limit window reset for {endpoint}")
        self._emit(EventType.RATE_LIMIT_RESET, endpoint)
        return window

    async def _acquire_window(self, endpoint: str, limits: EndpointConfig) -> Window:
        """
        Return a window with room for one more request, waiting out exhausted windows.

        Nothing here suspends once room is found, so the caller can count the
        request before any other task observes the window.
        """
        safe_limit = self.config.safe_limit(limits)
        window_seconds = limits.window_seconds

        while True:
            now = self._clock()
            window = self.windows.get_or_create(endpoint, now)

            if window.is_expired(now, window_seconds):
                window = self.reset_window(endpoint)

            if window.request_count < safe_limit:
                recent = self.windows.recent_starts(endpoint, now, window_seconds)
                if len(recent) < safe_limit:
                    return window
                # Room in the current window, but the last window_seconds are full
                wait_seconds = window_seconds - (now - recent[0])
            else:
                wait_seconds = window_seconds - window.elapsed(now)

            logger.info(f"Rate limit approaching for {endpoint}, waiting {wait_seconds:.2f}s")
            self._emit(
                EventType.RATE_LIMIT_WARNING,
                endpoint,
                wait_seconds=round(wait_seconds, 3),
                request_count=window.request_count,
                safe_limit=safe_limit,
            )
            await self._sleep(max(wait_seconds, 0))

    def _count_request(self, endpoint: str, window: Window) -> None:
        window.request_count += 1
        self.windows.record_start(endpoint, self._clock())

    async def schedule(self, operation: Callable[[], Awaitable[T]], endpoint: str = DEFAULT_ENDPOINT) -> T:
        """
        Run operation once the endpoint's quota allows it.

        Args:
            operation: Zero-argument coroutine function doing the actual call
            endpoint: Endpoint key selecting the quota policy

        Returns:
            Whatever the operation returns

        Raises:
            QuotaExceededError: If the provider rate limited the call
            Exception: Any other failure from operation, unchanged
        """
        limits = self.config.limits_for(endpoint)
        if limits.batch:
            return await self._schedule_batch(operation, endpoint, limits)

        window = await self._acquire_window(endpoint, limits)
        self._count_request(endpoint, window)
        logger.debug(
            f"Executing request for {endpoint} "
            f"({window.request_count}/{self.config.safe_limit(limits)})"
        )
        self._emit(EventType.REQUEST_SCHEDULED, endpoint, request_count=window.request_count)

        try:
            result = await operation()
        except Exception as error:
            quota_error = self._classify_failure(error, endpoint)
            if quota_error is not None:
                raise quota_error from error
            raise

        self._emit(EventType.REQUEST_COMPLETED, endpoint)
        return result

    async def _wait_for_batch_slot(self) -> None:
        min_interval = self.config.batch.min_interval_ms / 1000
        while True:
            elapsed = self._clock() - self.batch_state.last_batch_time
            if elapsed >= min_interval:
                return
            wait_seconds = min_interval - elapsed
            logger.debug(f"Enforcing batch interval, waiting {wait_seconds:.3f}s")
            await self._sleep(wait_seconds)

    async def _schedule_batch(
        self,
        operation: Callable[[], Awaitable[T]],
        endpoint: str,
        limits: EndpointConfig,
    ) -> T:
        batch = self.config.batch
        min_interval = batch.min_interval_ms / 1000
        request_id = uuid.uuid4().hex
        retry_counts = self.batch_state.retry_counts
        retry_counts[request_id] = 0

        try:
            while True:
                # Another batch call may start while we wait on the window, so re-check the spacing
                while True:
                    await self._wait_for_batch_slot()
                    window = await self._acquire_window(endpoint, limits)
                    if self._clock() - self.batch_state.last_batch_time >= min_interval:
                        break

                self._count_request(endpoint, window)
                self.batch_state.last_batch_time = self._clock()
                logger.debug(
                    f"Executing batch request {request_id} for {endpoint} "
                    f"({window.request_count}/{self.config.safe_limit(limits)})"
                )
                self._emit(
                    EventType.REQUEST_SCHEDULED,
                    endpoint,
                    request_id=request_id,
                    attempt=retry_counts[request_id] + 1,
                )

                try:
                    result = await operation()
                except Exception as error:
                    attempts = retry_counts[request_id]
                    if is_rate_limit_error(error) and attempts < batch.max_retries:
                        retry_counts[request_id] = attempts + 1
                        self.reset_window(endpoint)
                        self._emit(
                            EventType.RATE_LIMIT_EXCEEDED,
                            endpoint,
                            request_id=request_id,
                            retry=attempts + 1,
                        )
                        logger.info(
                            f"Retrying batch request {request_id} for {endpoint} "
                            f"(attempt {attempts + 1}/{batch.max_retries})"
                        )
                        await self._sleep(batch.retry_delay_ms / 1000)
                        continue

                    quota_error = self._classify_failure(error, endpoint)
                    if quota_error is not None:
                        raise quota_error from error
                    raise

                self._emit(EventType.REQUEST_COMPLETED, endpoint, request_id=request_id)
                return result
        finally:
            retry_counts.pop(request_id, None)

    def _classify_failure(self, error: Exception, endpoint: str) -> Optional[QuotaExceededError]:
        """
        Record a failed operation.

        Returns a normalized QuotaExceededError for rate limits (after resetting
        the endpoint window), or None when the original error should propagate.
        """
        if is_rate_limit_error(error):
            logger.warning(f"Rate limit hit for {endpoint}, resetting window")
            self._emit(EventType.RATE_LIMIT_EXCEEDED, endpoint)
            self.reset_window(endpoint)
            return QuotaExceededError(endpoint, reset_time_hint(error, self._clock()))

        logger.warning(f"Request failed for {endpoint}: {error}")
        self._emit(EventType.REQUEST_FAILED, endpoint, error=str(error)[:200])
        return None

    def get_window_status(self) -> Dict[str, Dict[str, Any]]:
        """Usage of every endpoint that has a window, keyed by endpoint."""
        now = self._clock()
        status = {}
        for endpoint, window in self.windows.items():
            limits = self.config.limits_for(endpoint)
            safe_limit = self.config.safe_limit(limits)
            status[endpoint] = {
                "requests_per_window": limits.requests_per_window,
                "window_seconds": limits.window_seconds,
                "safe_limit": safe_limit,
                "used": window.request_count,
                "rolling_used": len(self.windows.recent_starts(endpoint, now, limits.window_seconds)),
                "remaining": max(0, safe_limit - window.request_count),
                "seconds_until_reset": max(0.0, limits.window_seconds - window.elapsed(now)),
                "batch": limits.batch,
            }
        return status


def create_x_api_scheduler(
    safety_margin: Optional[float] = DEFAULT_SAFETY_MARGIN,
    batch: Optional[BatchConfig] = None,
    events: Optional[Any] = None,
) -> RequestScheduler:
    """Create a scheduler configured for the X, Birdeye and Helius endpoints we call."""
    config = SchedulerConfig(
        endpoints={
            # X API v2 (app-level limits, subject to change)
            "users/by/username": EndpointConfig(requests_per_window=300, window_size_minutes=15),
            "users/:id/tweets": EndpointConfig(requests_per_window=1500, window_size_minutes=15),
            "tweets/search/recent": EndpointConfig(requests_per_window=450, window_size_minutes=15, batch=True),
            # Birdeye public API
            "market/token_overview": EndpointConfig(requests_per_window=100, window_size_minutes=1),
            "market/price": EndpointConfig(requests_per_window=100, window_size_minutes=1),
            # Helius webhook management
            "helius/webhooks": EndpointConfig(requests_per_window=10, window_size_minutes=1),
        },
        safety_margin=safety_margin,
        batch=batch or BatchConfig(),
    )
    return RequestScheduler(config=config, events=events)


__all__ = [
    "EndpointConfig",
    "BatchConfig",
    "SchedulerConfig",
    "Window",
    "WindowStore",
    "BatchState",
    "RequestScheduler",
    "is_rate_limit_error",
    "reset_time_hint",
    "create_x_api_scheduler",
    "DEFAULT_SAFETY_MARGIN",
    "DEFAULT_ENDPOINT",
]
