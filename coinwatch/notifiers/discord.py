"""
Discord webhook notifier.
"""

import time
from typing import Any

import requests

from coinwatch.database.models import AlertType
from .base import Notifier, NotificationResult
from .formatting import Message


class DiscordNotifier(Notifier):
    """Sends notifications to a per-user Discord webhook."""

    channel = "discord"

    # Discord embed colors
    COLOR_ENTRANT = 0x3498DB  # Blue
    COLOR_SPIKE = 0xFFA500  # Orange

    def __init__(
        self,
        username: str = "coinwatch",
        include_chart_link: bool = True,
        timeout: float = 10,
    ):
        """
        Initialize Discord notifier.

        Args:
            username: Name the webhook posts as
            include_chart_link: Whether to include TradingView chart link
            timeout: Request timeout in seconds
        """
        self.username = username
        self.include_chart_link = include_chart_link
        self.timeout = timeout

    def send(self, destination: str, message: Message) -> NotificationResult:
        """Post the message to webhook URL ``destination``."""
        try:
            payload = self._create_payload(message)
            response = self._send_webhook(destination, payload)

            if response.ok:
                return NotificationResult(success=True, channel=self.channel)
            else:
                return NotificationResult(
                    success=False,
                    channel=self.channel,
                    error=f"HTTP {response.status_code}: {response.text}",
                )

        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=f"Connection error: {str(e)}",
            )
        except requests.RequestException as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=str(e),
            )

    def _send_webhook(self, webhook_url: str, payload: dict[str, Any]) -> requests.Response:
        """Send webhook with rate limit handling."""
        response = requests.post(webhook_url, json=payload, timeout=self.timeout)

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(webhook_url, json=payload, timeout=self.timeout)

        return response

    def _create_payload(self, message: Message) -> dict[str, Any]:
        """Create Discord webhook payload."""
        return {
            "username": self.username,
            "embeds": [self._create_embed(message)],
        }

    def _create_embed(self, message: Message) -> dict[str, Any]:
        """Create Discord embed for a message."""
        embed: dict[str, Any] = {
            "title": f"{message.title}: {message.symbol}",
            "description": message.summary,
            "color": self._get_color(message.event_type),
            "fields": [
                {"name": name, "value": value, "inline": True}
                for name, value in message.fields
            ],
            "timestamp": message.timestamp.isoformat(),
        }

        if self.include_chart_link:
            chart_url = f"https://www.tradingview.com/symbols/{message.symbol}USD/"
            embed["fields"].append({
                "name": "Chart",
                "value": f"[TradingView]({chart_url})",
                "inline": True,
            })

        return embed

    def _get_color(self, event_type: AlertType) -> int:
        """Get embed color based on alert type."""
        if event_type == AlertType.SPIKE:
            return self.COLOR_SPIKE
        return self.COLOR_ENTRANT
