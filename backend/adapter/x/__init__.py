"""
X (Twitter) API Adapter.

Provides the two calls the feed poller needs: resolving a handle to an
account and fetching an account's timeline since the last seen post.
Uses the Twitter API v2 user lookup and user timeline endpoints.

Quota enforcement is the caller's job: wrap calls in
RequestScheduler.schedule with the matching endpoint key.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests
from dotenv import load_dotenv

from ..errors import TransientProviderError
from ..models import Post, PostAuthor, TimelinePage

load_dotenv()

logger = logging.getLogger(__name__)

USER_LOOKUP_ENDPOINT = "users/by/username"
USER_TIMELINE_ENDPOINT = "users/:id/tweets"


class XAdapterError(TransientProviderError):
    """Base exception for XAdapter errors."""
    pass


class XAuthenticationError(XAdapterError):
    """Raised when authentication fails."""
    pass


def _header_int(headers, name: str) -> Optional[int]:
    value = headers.get(name)
    return int(value) if value else None


@dataclass
class QuotaSnapshot:
    """Quota figures the API reports in x-rate-limit-* response headers."""
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_time: Optional[int] = None
    observed_at: Optional[datetime] = None

    @classmethod
    def from_headers(cls, headers) -> "QuotaSnapshot":
        return cls(
            limit=_header_int(headers, "x-rate-limit-limit"),
            remaining=_header_int(headers, "x-rate-limit-remaining"),
            reset_time=_header_int(headers, "x-rate-limit-reset"),
            observed_at=datetime.now(timezone.utc),
        )

    def merge(self, newer: "QuotaSnapshot") -> None:
        # Headers are missing on some error responses; keep the last known figure
        self.limit = newer.limit if newer.limit is not None else self.limit
        self.remaining = newer.remaining if newer.remaining is not None else self.remaining
        self.reset_time = newer.reset_time if newer.reset_time is not None else self.reset_time
        self.observed_at = newer.observed_at


class XRateLimitError(XAdapterError):
    """The API answered 429."""
    def __init__(self, message: str, reset_time: int = None, remaining: int = None, limit: int = None):
        super().__init__(message, status_code=429, reset_time=reset_time)
        self.remaining = remaining
        self.limit = limit


class XAPIError(XAdapterError):
    """Non-success response, timeout or unreachable API."""
    pass


class XUserNotFoundError(XAdapterError):
    """Raised when a handle does not resolve to an account."""
    pass


class XAdapter:
    """
    Client for the X API v2 user lookup and user timeline endpoints.

    Usage:
        adapter = XAdapter()  # reads X_BEARER_TOKEN
        author = adapter.get_user_by_username("@jack")
        page = adapter.get_user_timeline(author.id, since_id=None)
    """

    BASE_URL = "https://api.x.com/2"

    FIRST_FETCH_RESULTS = 5
    UPDATE_FETCH_RESULTS = 100
    LOW_QUOTA_WARNING = 5

    def __init__(self, bearer_token: Optional[str] = None, timeout: int = 15):
        self.bearer_token = bearer_token or os.environ.get("X_BEARER_TOKEN")
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {self.bearer_token}" if self.bearer_token else ""}
        self.quota = QuotaSnapshot()

        if not self.is_configured:
            logger.warning("X_BEARER_TOKEN not set - social feed lookups will fail")

    @property
    def is_configured(self) -> bool:
        return bool(self.bearer_token)

    def get_rate_limit_status(self) -> dict:
        """Quota reported by the most recent response, plus seconds until it resets."""
        status = {
            "limit": self.quota.limit,
            "remaining": self.quota.remaining,
            "reset_time": self.quota.reset_time,
            "last_updated": self.quota.observed_at,
            "seconds_until_reset": None,
        }
        if self.quota.reset_time:
            now = datetime.now(timezone.utc).timestamp()
            status["seconds_until_reset"] = max(0, int(self.quota.reset_time - now))
        return status

    def _update_rate_limit_status(self, response) -> QuotaSnapshot:
        snapshot = QuotaSnapshot.from_headers(response.headers)
        self.quota.merge(snapshot)

        if self.quota.remaining is not None and self.quota.remaining <= self.LOW_QUOTA_WARNING:
            logger.warning(f"X API quota nearly exhausted: {self.quota.remaining} requests left")
        return snapshot

    def _get(self, path: str, params: Optional[dict] = None) -> dict:
        """GET {BASE_URL}/{path} and return the decoded JSON body."""
        if not self.is_configured:
            raise XAuthenticationError("X adapter not configured - set X_BEARER_TOKEN")

        url = f"{self.BASE_URL}/{path}"
        try:
            response = requests.get(url, headers=self.headers, params=params, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise XAPIError(f"Timed out calling {path}")
        except requests.exceptions.ConnectionError:
            raise XAPIError("X API unreachable")

        snapshot = self._update_rate_limit_status(response)
        status = response.status_code

        if status == 401:
            raise XAuthenticationError("Invalid or expired bearer token", status_code=401)
        if status == 429:
            raise XRateLimitError(
                f"X API rate limit exceeded on {path}",
                reset_time=snapshot.reset_time,
                remaining=snapshot.remaining,
                limit=snapshot.limit,
            )
        if status >= 400:
            raise XAPIError(f"X API error: {status}", status_code=status, response_text=response.text)

        try:
            return response.json()
        except ValueError:
            raise XAPIError("X API returned a non-JSON body", status_code=status)

    def _parse_post(self, raw: dict) -> Post:
        """Convert a raw tweet object to a Post."""
        created_at = raw.get("created_at")
        public_metrics = raw.get("public_metrics") or {}

        return Post(
            id=raw["id"],
            author_id=raw.get("author_id"),
            text=raw.get("text", ""),
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00")) if created_at else None,
            referenced_post_ids=[ref["id"] for ref in raw.get("referenced_tweets") or [] if "id" in ref],
            metrics={
                "like_count": public_metrics.get("like_count", 0),
                "retweet_count": public_metrics.get("retweet_count", 0),
                "reply_count": public_metrics.get("reply_count", 0),
                "quote_count": public_metrics.get("quote_count", 0),
            },
        )

    def get_user_by_username(self, username: str) -> PostAuthor:
        """
        Resolve a handle to an account.

        Raises:
            XUserNotFoundError: If the handle does not exist
        """
        clean_username = username.replace("@", "").strip()
        data = self._get(
            f"users/by/username/{clean_username}",
            params={"user.fields": "name,username,profile_image_url"}
        )

        user = data.get("data")
        if not user:
            raise XUserNotFoundError(f"No X user found for username: {clean_username}", status_code=404)

        return PostAuthor(
            id=user["id"],
            username=user.get("username", clean_username),
            name=user.get("name"),
            profile_image_url=user.get("profile_image_url"),
        )

    def get_user_timeline(self, user_id: str, since_id: Optional[str] = None) -> TimelinePage:
        """
        Fetch an account's posts newer than since_id.

        The first fetch (no cursor yet) asks for a handful of posts; later
        fetches ask for the maximum page.
        """
        params = {
            "max_results": self.UPDATE_FETCH_RESULTS if since_id else self.FIRST_FETCH_RESULTS,
            "tweet.fields": "created_at,entities,public_metrics,referenced_tweets,conversation_id",
            "expansions": "author_id,referenced_tweets.id,referenced_tweets.id.author_id",
            "user.fields": "name,username,profile_image_url",
        }
        if since_id:
            params["since_id"] = since_id

        data = self._get(f"users/{user_id}/tweets", params=params)

        includes = data.get("includes") or {}
        users = {}
        for user in includes.get("users", []):
            users[user["id"]] = PostAuthor(
                id=user["id"],
                username=user.get("username", "unknown"),
                name=user.get("name"),
                profile_image_url=user.get("profile_image_url"),
            )

        page = TimelinePage(
            posts=[self._parse_post(raw) for raw in data.get("data") or []],
            users=users,
            referenced_posts={raw["id"]: self._parse_post(raw) for raw in includes.get("tweets", [])},
            newest_id=(data.get("meta") or {}).get("newest_id"),
        )

        logger.debug(f"Fetched {len(page.posts)} posts for user {user_id} (since_id={since_id})")
        return page

    # -------------------------------------------------------------------------
    # Async versions (non-blocking)
    # -------------------------------------------------------------------------

    async def get_user_by_username_async(self, username: str) -> PostAuthor:
        return await asyncio.to_thread(self.get_user_by_username, username)

    async def get_user_timeline_async(self, user_id: str, since_id: Optional[str] = None) -> TimelinePage:
        return await asyncio.to_thread(self.get_user_timeline, user_id, since_id)


__all__ = [
    "XAdapter",
    "XAdapterError",
    "XAuthenticationError",
    "XRateLimitError",
    "XAPIError",
    "XUserNotFoundError",
    "QuotaSnapshot",
    "USER_LOOKUP_ENDPOINT",
    "USER_TIMELINE_ENDPOINT",
]
