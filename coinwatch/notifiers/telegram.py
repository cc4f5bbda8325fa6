"""
Telegram Bot API notifier.
"""

import logging
import time

import requests

from .base import Notifier, NotificationResult
from .formatting import Message

logger = logging.getLogger(__name__)

MARKDOWN_SPECIAL_CHARS = {
    "Markdown": "_*`[",
    "MarkdownV2": "\\_*[]()~`>#+-=|{}.!",
}


class TelegramNotifier(Notifier):
    """Sends notifications to a linked Telegram chat."""

    channel = "telegram"
    API_URL = "https://api.telegram.org"

    def __init__(self, bot_token: str, parse_mode: str = "Markdown", timeout: float = 10):
        """
        Initialize Telegram notifier.

        Args:
            bot_token: Bot API token; empty means the channel is unconfigured
            parse_mode: Telegram parse mode for message text
            timeout: Request timeout in seconds
        """
        self.bot_token = bot_token
        self.parse_mode = parse_mode
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def send(self, destination: str, message: Message) -> NotificationResult:
        """Send the message to chat id ``destination``."""
        if not self.is_configured:
            return NotificationResult(
                success=False, channel=self.channel, error="Bot token not configured"
            )

        payload = {
            "chat_id": destination,
            "text": self._create_text(message),
            "parse_mode": self.parse_mode,
        }
        try:
            response = self._post(payload)
        except requests.RequestException as e:
            return NotificationResult(
                success=False, channel=self.channel, error=f"Connection error: {e}"
            )

        if response.ok:
            return NotificationResult(success=True, channel=self.channel)
        return NotificationResult(
            success=False,
            channel=self.channel,
            error=f"HTTP {response.status_code}: {response.text}",
        )

    def _post(self, payload: dict) -> requests.Response:
        """Send with a single retry when Telegram asks us to slow down."""
        url = f"{self.API_URL}/bot{self.bot_token}/sendMessage"
        response = requests.post(url, json=payload, timeout=self.timeout)

        if response.status_code == 429:
            retry_after = self._retry_after(response)
            logger.warning(f"Telegram rate limited, retrying in {retry_after}s")
            time.sleep(retry_after)
            response = requests.post(url, json=payload, timeout=self.timeout)

        return response

    @staticmethod
    def _retry_after(response: requests.Response) -> float:
        try:
            return float(response.json()["parameters"]["retry_after"])
        except (ValueError, KeyError, TypeError):
            return 1.0

    def _create_text(self, message: Message) -> str:
        escape = self._escape
        lines = [f"*{escape(message.title)}*", escape(message.summary), ""]
        lines += [f"{escape(name)}: {escape(str(value))}" for name, value in message.fields]
        timestamp = message.timestamp.strftime('%Y-%m-%d %H:%M:%S %Z').strip()
        lines.append(f"Time: {escape(timestamp)}")
        return "\n".join(lines)

    def _escape(self, text: str) -> str:
        """Backslash-escape the characters the parse mode treats as markup."""
        special = MARKDOWN_SPECIAL_CHARS.get(self.parse_mode, "")
        return "".join(f"\\{char}" if char in special else char for char in text)
