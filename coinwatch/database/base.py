"""
Persistence interfaces used by the evaluators.

The sqlite repositories in ``repository.py`` implement these; any other
durable store can be substituted without touching evaluator code.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from .models import (
    AlertEvent,
    AlertRule,
    AlertStatus,
    ChannelLink,
    MonitorBaseline,
)


class RuleStore(ABC):
    """CRUD for spike alert rules."""

    @abstractmethod
    def create(
        self,
        user_id: str,
        symbol: str,
        timeframes: Iterable[str],
        thresholds: Iterable[float],
        baseline_window: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
        enabled: bool = True,
    ) -> AlertRule:
        pass

    @abstractmethod
    def get(self, rule_id: str) -> Optional[AlertRule]:
        pass

    @abstractmethod
    def update(self, rule_id: str, fields: dict[str, Any]) -> AlertRule:
        pass

    @abstractmethod
    def delete(self, rule_id: str) -> None:
        pass

    @abstractmethod
    def list_by_user(self, user_id: str) -> list[AlertRule]:
        pass

    def list_enabled(self, user_id: str) -> list[AlertRule]:
        return [rule for rule in self.list_by_user(user_id) if rule.enabled]

    @abstractmethod
    def list_user_ids(self) -> list[str]:
        pass


class BaselineStore(ABC):
    """Member snapshots per (user, filter signature)."""

    @abstractmethod
    def get_or_create(self, user_id: str, filter_signature: str) -> MonitorBaseline:
        pass

    @abstractmethod
    def diff_and_replace(
        self,
        user_id: str,
        filter_signature: str,
        current_member_ids: Iterable[str],
    ) -> set[str]:
        pass

    @abstractmethod
    def set_enabled(
        self,
        user_id: str,
        filter_signature: str,
        enabled: bool,
        cooldown_seconds: Optional[int] = None,
    ) -> MonitorBaseline:
        pass


class EventLog(ABC):
    """Append-only record of fired alerts."""

    @abstractmethod
    def append(self, event: AlertEvent) -> AlertEvent:
        pass

    @abstractmethod
    def get(self, event_id: str) -> Optional[AlertEvent]:
        pass

    @abstractmethod
    def list_by_user(self, user_id: str, limit: int = 50) -> list[AlertEvent]:
        pass

    @abstractmethod
    def record_delivery(
        self,
        event_id: str,
        channels: Iterable[str],
        status: AlertStatus,
    ) -> AlertEvent:
        pass

    @abstractmethod
    def update_status(self, event_id: str, status: AlertStatus) -> AlertEvent:
        pass


class ChannelLinkStore(ABC):
    """Out-of-band links between users and push channels."""

    @abstractmethod
    def link(
        self, user_id: str, channel: str, destination: str, enabled: bool = True
    ) -> ChannelLink:
        pass

    @abstractmethod
    def get(self, user_id: str, channel: str) -> Optional[ChannelLink]:
        pass

    @abstractmethod
    def unlink(self, user_id: str, channel: str) -> None:
        pass
