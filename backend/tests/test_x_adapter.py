"""Unit tests for the XAdapter module."""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import requests

from adapter.rate_limiter import is_rate_limit_error
from adapter.x import (
    XAdapter,
    XAdapterError,
    XAuthenticationError,
    XRateLimitError,
    XAPIError,
    XUserNotFoundError,
)


def create_mock_response(status_code=200, json_data=None, headers=None):
    """Helper to create mock response with proper headers."""
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.json.return_value = json_data or {}
    mock_response.text = ""
    # Use a real dict for headers (not Mock) to avoid int() issues
    mock_response.headers = headers or {}
    return mock_response


TIMELINE_RESPONSE = {
    "data": [
        {
            "id": "1002",
            "text": "second",
            "author_id": "u1",
            "created_at": "2024-06-15T12:05:00.000Z",
            "referenced_tweets": [{"type": "replied_to", "id": "900"}],
            "public_metrics": {"like_count": 3, "retweet_count": 1, "reply_count": 0, "quote_count": 0},
        },
        {
            "id": "1001",
            "text": "first",
            "author_id": "u1",
            "created_at": "2024-06-15T12:00:00.000Z",
        },
    ],
    "includes": {
        "users": [
            {"id": "u1", "username": "alice", "name": "Alice"},
            {"id": "u2", "username": "bob", "name": "Bob"},
        ],
        "tweets": [{"id": "900", "text": "original", "author_id": "u2"}],
    },
    "meta": {"newest_id": "1002", "result_count": 2},
}


class TestXAdapterInit:
    """Test XAdapter initialization."""

    def test_init_with_bearer_token(self):
        adapter = XAdapter(bearer_token="test_token")

        assert adapter.is_configured is True
        assert adapter.headers["Authorization"] == "Bearer test_token"

    def test_init_without_token(self):
        with patch.dict("os.environ", {}, clear=True):
            adapter = XAdapter()

            assert adapter.bearer_token is None
            assert adapter.is_configured is False

    def test_init_with_env_token(self):
        with patch.dict("os.environ", {"X_BEARER_TOKEN": "env_token"}):
            adapter = XAdapter()

            assert adapter.bearer_token == "env_token"

    def test_unconfigured_call_fails(self):
        with patch.dict("os.environ", {}, clear=True):
            adapter = XAdapter()

        with pytest.raises(XAuthenticationError):
            adapter.get_user_by_username("jack")


class TestUserLookup:

    @patch("adapter.x.requests.get")
    def test_get_user_by_username(self, mock_get):
        mock_get.return_value = create_mock_response(json_data={
            "data": {"id": "12", "username": "jack", "name": "Jack", "profile_image_url": "http://img"}
        })
        adapter = XAdapter(bearer_token="test")

        author = adapter.get_user_by_username("@jack")

        assert author.id == "12"
        assert author.username == "jack"
        assert mock_get.call_args[0][0].endswith("/users/by/username/jack")

    @patch("adapter.x.requests.get")
    def test_unknown_user(self, mock_get):
        mock_get.return_value = create_mock_response(json_data={"errors": [{"title": "Not Found Error"}]})
        adapter = XAdapter(bearer_token="test")

        with pytest.raises(XUserNotFoundError):
            adapter.get_user_by_username("nobody_here")

    @pytest.mark.asyncio
    @patch("adapter.x.requests.get")
    async def test_async_lookup(self, mock_get):
        mock_get.return_value = create_mock_response(json_data={"data": {"id": "12", "username": "jack"}})
        adapter = XAdapter(bearer_token="test")

        author = await adapter.get_user_by_username_async("jack")

        assert author.id == "12"


class TestUserTimeline:

    @patch("adapter.x.requests.get")
    def test_parses_page(self, mock_get):
        mock_get.return_value = create_mock_response(json_data=TIMELINE_RESPONSE)
        adapter = XAdapter(bearer_token="test")

        page = adapter.get_user_timeline("u1")

        assert [p.id for p in page.posts] == ["1002", "1001"]
        assert page.posts[0].referenced_post_ids == ["900"]
        assert page.posts[0].metrics["like_count"] == 3
        assert page.posts[1].created_at == datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
        assert page.users["u2"].username == "bob"
        assert page.referenced_posts["900"].text == "original"
        assert page.newest_id == "1002"

    @patch("adapter.x.requests.get")
    def test_first_fetch_asks_for_five(self, mock_get):
        mock_get.return_value = create_mock_response(json_data={"meta": {"result_count": 0}})
        adapter = XAdapter(bearer_token="test")

        page = adapter.get_user_timeline("u1")

        params = mock_get.call_args[1]["params"]
        assert params["max_results"] == 5
        assert "since_id" not in params
        assert page.posts == []

    @patch("adapter.x.requests.get")
    def test_update_fetch_uses_cursor(self, mock_get):
        mock_get.return_value = create_mock_response(json_data={})
        adapter = XAdapter(bearer_token="test")

        adapter.get_user_timeline("u1", since_id="1002")

        params = mock_get.call_args[1]["params"]
        assert params["max_results"] == 100
        assert params["since_id"] == "1002"


class TestErrorHandling:

    @patch("adapter.x.requests.get")
    def test_rate_limit_error(self, mock_get):
        mock_get.return_value = create_mock_response(
            status_code=429,
            headers={"x-rate-limit-reset": "1700000000", "x-rate-limit-remaining": "0", "x-rate-limit-limit": "1500"},
        )
        adapter = XAdapter(bearer_token="test")

        with pytest.raises(XRateLimitError) as exc_info:
            adapter.get_user_timeline("u1")

        error = exc_info.value
        assert error.status_code == 429
        assert error.reset_time == 1700000000
        assert error.remaining == 0
        assert is_rate_limit_error(error)

    @patch("adapter.x.requests.get")
    def test_auth_error(self, mock_get):
        mock_get.return_value = create_mock_response(status_code=401)
        adapter = XAdapter(bearer_token="bad")

        with pytest.raises(XAuthenticationError):
            adapter.get_user_timeline("u1")

    @patch("adapter.x.requests.get")
    def test_server_error_not_rate_limit(self, mock_get):
        mock_get.return_value = create_mock_response(status_code=503)
        adapter = XAdapter(bearer_token="test")

        with pytest.raises(XAPIError) as exc_info:
            adapter.get_user_timeline("u1")

        assert not is_rate_limit_error(exc_info.value)

    @patch("adapter.x.requests.get")
    def test_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        adapter = XAdapter(bearer_token="test")

        with pytest.raises(XAdapterError):
            adapter.get_user_timeline("u1")

    @patch("adapter.x.requests.get")
    def test_rate_limit_status_tracked(self, mock_get):
        mock_get.return_value = create_mock_response(
            json_data={},
            headers={"x-rate-limit-remaining": "3", "x-rate-limit-limit": "1500"},
        )
        adapter = XAdapter(bearer_token="test")

        adapter.get_user_timeline("u1")
        status = adapter.get_rate_limit_status()

        assert status["remaining"] == 3
        assert status["limit"] == 1500
        assert status["seconds_until_reset"] is None

    @patch("adapter.x.requests.get")
    def test_missing_headers_keep_last_known_quota(self, mock_get):
        adapter = XAdapter(bearer_token="test")
        mock_get.return_value = create_mock_response(json_data={}, headers={"x-rate-limit-remaining": "40"})
        adapter.get_user_timeline("u1")

        mock_get.return_value = create_mock_response(status_code=503)
        with pytest.raises(XAPIError):
            adapter.get_user_timeline("u1")

        assert adapter.get_rate_limit_status()["remaining"] == 40
