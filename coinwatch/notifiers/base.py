"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from .formatting import Message


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None


class Notifier(ABC):
    """Transport for one delivery channel."""

    channel: str = ""

    @property
    def is_configured(self) -> bool:
        """Whether the transport has the credentials it needs."""
        return True

    @abstractmethod
    def send(self, destination: str, message: Message) -> NotificationResult:
        """
        Send a single message.

        Args:
            destination: Channel-specific address (chat id, webhook URL, user id)
            message: Formatted alert

        Returns:
            NotificationResult indicating success or failure
        """
        pass


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "in_app":
            from .inapp import InAppNotifier

            return InAppNotifier(max_per_user=config.get("max_per_user", 50))

        elif notifier_type == "telegram":
            from .telegram import TelegramNotifier

            return TelegramNotifier(
                bot_token=config.get("bot_token", ""),
                parse_mode=config.get("parse_mode", "Markdown"),
                timeout=config.get("timeout", 10),
            )

        elif notifier_type == "discord":
            from .discord import DiscordNotifier

            return DiscordNotifier(
                username=config.get("username", "coinwatch"),
                include_chart_link=config.get("include_chart_link", True),
                timeout=config.get("timeout", 10),
            )

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")
