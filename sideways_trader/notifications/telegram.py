"""
Telegram Bot API notification relay.
"""

import asyncio
import logging
from typing import Optional

import requests

from sideways_trader.models.notification import NotificationEvent, NotificationPriority
from sideways_trader.notifications.formatter import NotificationFormatter
from sideways_trader.notifications.relay import NotificationRelay

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotificationRelay(NotificationRelay):
    """
    Sends formatted events to one Telegram chat.

    Events below ``min_priority`` are dropped. Delivery failures are logged
    and swallowed; the trading core never sees them.
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        min_priority: NotificationPriority = NotificationPriority.NORMAL,
        formatter: Optional[NotificationFormatter] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ):
        if not token or not chat_id:
            raise ValueError("Telegram token and chat_id are required")
        self._url = TELEGRAM_API_URL.format(token=token)
        self.chat_id = chat_id
        self.min_priority = min_priority
        self.formatter = formatter or NotificationFormatter()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def publish(self, event: NotificationEvent) -> None:
        if event.priority.value < self.min_priority.value:
            return
        text = self.formatter.format(event)
        try:
            await asyncio.to_thread(self._send, text)
        except requests.RequestException as e:
            # Token is part of the URL, do not log the request
            self.logger.warning(
                f"Telegram delivery failed for {event.event_type.value}: {type(e).__name__}"
            )

    def _send(self, text: str) -> None:
        response = self.session.post(
            self._url,
            json={"chat_id": self.chat_id, "text": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
