"""
Notification sinks.

Two kinds of destination:
- ChannelWebhookSink: posts a rich JSON message to a chat channel webhook
- TwilioSmsSink: sends a text message through the Twilio REST API

Sinks only render and deliver. Which sink gets which alert is decided by
notifier.NotificationRouter.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import requests
from dotenv import load_dotenv

from ..errors import ProviderError

load_dotenv()

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 1600


class DeliveryError(ProviderError):
    """Raised when a sink fails to deliver a message."""
    pass


@dataclass
class ChannelMessage:
    """Sink-neutral rich message: title, body and inline fields."""
    title: str
    description: str = ""
    fields: List[Tuple[str, str]] = field(default_factory=list)
    color: int = 0x1DA1F2
    url: Optional[str] = None

    def to_payload(self) -> dict:
        embed = {
            "title": self.title[:256],
            "description": self.description[:4096],
            "color": self.color,
            "fields": [
                {"name": name[:256], "value": (value or "-")[:1024], "inline": len(value or "") < 40}
                for name, value in self.fields
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.url:
            embed["url"] = self.url
        return {"embeds": [embed]}


class ChannelWebhookSink:
    """Posts messages to one channel webhook URL."""

    def __init__(self, name: str, url: Optional[str] = None, timeout: int = 10):
        self.name = name
        self.url = url
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def send_sync(self, message: ChannelMessage) -> None:
        if not self.url:
            raise DeliveryError(f"Channel {self.name} has no webhook URL")

        try:
            response = requests.post(self.url, json=message.to_payload(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"Channel {self.name} unreachable: {e}")

        if response.status_code >= 400:
            raise DeliveryError(
                f"Channel {self.name} rejected message: {response.status_code}",
                status_code=response.status_code,
            )

    async def send(self, message: ChannelMessage) -> None:
        await asyncio.to_thread(self.send_sync, message)


class TwilioSmsSink:
    """
    Sends SMS through Twilio.

    Reads TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER
    when not given explicitly. Without all three the sink is disabled.
    """

    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: int = 10,
    ):
        self.account_sid = account_sid or os.environ.get("TWILIO_ACCOUNT_SID")
        self.auth_token = auth_token or os.environ.get("TWILIO_AUTH_TOKEN")
        self.from_number = from_number or os.environ.get("TWILIO_PHONE_NUMBER")
        self.timeout = timeout
        self.name = "sms"

        if not self.configured:
            logger.warning("Twilio credentials missing - SMS alerts disabled")

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send_sync(self, to: str, body: str) -> str:
        """Send one SMS and return the message SID."""
        if not self.configured:
            raise DeliveryError("SMS sink not configured")

        try:
            response = requests.post(
                f"{self.BASE_URL}/Accounts/{self.account_sid}/Messages.json",
                auth=(self.account_sid, self.auth_token),
                data={"To": to, "From": self.from_number, "Body": body[:SMS_MAX_LENGTH]},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"Twilio unreachable: {e}")

        if response.status_code >= 400:
            raise DeliveryError(f"Twilio rejected SMS: {response.status_code}", status_code=response.status_code)

        sid = response.json().get("sid", "")
        logger.info(f"SMS sent to {to[-4:].rjust(len(to), '*')} ({sid})")
        return sid

    async def send(self, to: str, body: str) -> str:
        return await asyncio.to_thread(self.send_sync, to, body)


__all__ = [
    "ChannelMessage",
    "ChannelWebhookSink",
    "TwilioSmsSink",
    "DeliveryError",
]
