"""
Routes fired alerts to the channels a user has enabled.
"""

import logging
from typing import Iterable, Optional

from coinwatch.database.base import ChannelLinkStore
from coinwatch.database.models import AlertEvent
from .base import Notifier
from .formatting import format_event
from .inapp import InAppNotifier

logger = logging.getLogger(__name__)


class NotificationRouter:
    """
    Delivers events to in-app plus every linked push channel.

    In-app delivery needs no link and is always available. Push channels
    need a registered, configured transport and an enabled ChannelLink
    carrying the destination (chat id, webhook URL).
    """

    IN_APP = InAppNotifier.channel

    def __init__(
        self,
        links: ChannelLinkStore,
        notifiers: Iterable[Notifier] = (),
        in_app: Optional[InAppNotifier] = None,
    ):
        self.links = links
        self.in_app = in_app or InAppNotifier()
        self._notifiers: dict[str, Notifier] = {}
        for notifier in notifiers:
            self.register(notifier)

    def register(self, notifier: Notifier) -> None:
        """Add or replace the transport for ``notifier.channel``."""
        if notifier.channel == self.IN_APP:
            raise ValueError("inApp transport is passed as in_app")
        self._notifiers[notifier.channel] = notifier

    def channels(self) -> list[str]:
        return [self.IN_APP] + list(self._notifiers)

    def status(self, user_id: str, channel: str) -> bool:
        """Whether ``channel`` can currently deliver to ``user_id``."""
        if channel == self.IN_APP:
            return True
        notifier = self._notifiers.get(channel)
        if notifier is None or not notifier.is_configured:
            return False
        link = self.links.get(user_id, channel)
        return link is not None and link.enabled

    def deliver(self, user_id: str, channel: str, event: AlertEvent) -> bool:
        """
        Deliver a single event over one channel.

        Never raises: unusable channels and transport failures return False.
        """
        try:
            if not self.status(user_id, channel):
                return False

            if channel == self.IN_APP:
                notifier: Notifier = self.in_app
                destination = user_id
            else:
                notifier = self._notifiers[channel]
                destination = self.links.get(user_id, channel).destination

            result = notifier.send(destination, format_event(event))
        except Exception as e:
            logger.error(f"Delivery of {event.id} via {channel} failed: {e}")
            return False

        if not result.success:
            logger.warning(f"Delivery of {event.id} via {channel} failed: {result.error}")
        return result.success

    def dispatch(self, user_id: str, event: AlertEvent) -> list[str]:
        """Deliver to in-app then every usable push channel; return successes in order."""
        return [
            channel for channel in self.channels()
            if self.deliver(user_id, channel, event)
        ]
