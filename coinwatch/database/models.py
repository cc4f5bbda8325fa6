"""
Data models for coinwatch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# Candle timeframes a rule may watch, shortest first
TIMEFRAMES = ("1m", "5m", "15m", "30m", "1h", "4h", "1d", "1w", "1mo")


class AlertType(str, Enum):
    """Kind of fired alert."""

    ENTRANT = "ENTRANT"
    SPIKE = "SPIKE"


class AlertStatus(str, Enum):
    """Lifecycle status of a fired alert."""

    TRIGGERED = "TRIGGERED"
    DELIVERED = "DELIVERED"
    DISMISSED = "DISMISSED"
    SNOOZED = "SNOOZED"


@dataclass(frozen=True)
class FilterSet:
    """Filter configuration that defines a monitored set of coins."""

    min_market_cap: float
    max_market_cap: float
    min_volume_24h: float
    min_vol_to_mcap_pct: float

    def to_dict(self) -> dict[str, float]:
        return {
            "min_market_cap": self.min_market_cap,
            "max_market_cap": self.max_market_cap,
            "min_volume_24h": self.min_volume_24h,
            "min_vol_to_mcap_pct": self.min_vol_to_mcap_pct,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FilterSet":
        return cls(
            min_market_cap=data["min_market_cap"],
            max_market_cap=data["max_market_cap"],
            min_volume_24h=data["min_volume_24h"],
            min_vol_to_mcap_pct=data["min_vol_to_mcap_pct"],
        )


@dataclass(frozen=True)
class Member:
    """Display data for a coin in a filtered set."""

    id: str
    symbol: str
    name: str


@dataclass
class AlertRule:
    """User-defined volume spike rule for one symbol."""

    user_id: str
    symbol: str
    timeframes: list[str]
    thresholds: list[float]
    baseline_window: int = 20
    cooldown_seconds: int = 300
    enabled: bool = True
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class MonitorBaseline:
    """Last observed member set for a user and filter signature."""

    user_id: str
    filter_signature: str
    member_ids: set[str] = field(default_factory=set)
    enabled: bool = True
    cooldown_seconds: int = 600
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None  # None until the first diff


@dataclass(frozen=True)
class AlertEvent:
    """Record of a fired alert. Point-in-time fields never change."""

    id: str
    user_id: str
    type: AlertType
    symbol: str
    triggered_at: datetime
    rule_id: Optional[str] = None  # weak reference, may dangle
    timeframe: Optional[str] = None
    threshold: Optional[float] = None
    ratio: Optional[float] = None
    current_volume: Optional[float] = None
    baseline_volume: Optional[float] = None
    filter_context: Optional[FilterSet] = None
    delivered_channels: tuple[str, ...] = ()
    status: AlertStatus = AlertStatus.TRIGGERED


@dataclass
class ChannelLink:
    """Link between a user and a push channel destination."""

    user_id: str
    channel: str
    destination: str
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
