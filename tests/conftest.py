"""
Pytest configuration and shared fixtures.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from coinwatch.data.market import MarketDataPort
from coinwatch.database.connection import Database
from coinwatch.database.models import FilterSet, Member
from coinwatch.errors import SymbolNotFound
from coinwatch.notifiers.base import Notifier, NotificationResult


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMarketData(MarketDataPort):
    """In-memory volumes keyed by (symbol, timeframe)."""

    def __init__(self):
        self.volumes: dict[tuple[str, str], tuple[float, float]] = {}
        self.errors: dict[str, Exception] = {}
        self.blocked: dict[str, threading.Event] = {}
        self.calls: list[tuple[str, str]] = []

    def set(self, symbol: str, timeframe: str, baseline: float, current: float) -> None:
        self.volumes[(symbol, timeframe)] = (baseline, current)

    def _lookup(self, symbol: str, timeframe: str) -> tuple[float, float]:
        self.calls.append((symbol, timeframe))
        if symbol in self.blocked:
            self.blocked[symbol].wait(timeout=5)
        if symbol in self.errors:
            raise self.errors[symbol]
        if (symbol, timeframe) not in self.volumes:
            raise SymbolNotFound(symbol)
        return self.volumes[(symbol, timeframe)]

    def average_volume(self, symbol: str, timeframe: str, window: int) -> float:
        return self._lookup(symbol, timeframe)[0]

    def latest_volume(self, symbol: str, timeframe: str) -> float:
        return self._lookup(symbol, timeframe)[1]


class RecordingNotifier(Notifier):
    """Push transport that records sends instead of calling out."""

    def __init__(self, channel: str, configured: bool = True, succeed: bool = True):
        self.channel = channel
        self.configured = configured
        self.succeed = succeed
        self.sent: list[tuple[str, object]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    def send(self, destination, message) -> NotificationResult:
        self.sent.append((destination, message))
        if self.succeed:
            return NotificationResult(success=True, channel=self.channel)
        return NotificationResult(success=False, channel=self.channel, error="boom")


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market_data():
    return FakeMarketData()


@pytest.fixture
def filters():
    """Filter set used by most monitor tests."""
    return FilterSet(
        min_market_cap=10_000_000,
        max_market_cap=1_000_000_000,
        min_volume_24h=1_000_000,
        min_vol_to_mcap_pct=5,
    )


@pytest.fixture
def members():
    """Display data for a small coin universe."""
    return {
        "bitcoin": Member(id="bitcoin", symbol="BTC", name="Bitcoin"),
        "ethereum": Member(id="ethereum", symbol="ETH", name="Ethereum"),
        "cardano": Member(id="cardano", symbol="ADA", name="Cardano"),
        "solana": Member(id="solana", symbol="SOL", name="Solana"),
    }


@pytest.fixture
def sample_discord_webhook_url():
    """Sample Discord webhook URL for testing."""
    return "https://discord.com/api/webhooks/123456789/abcdefghijklmnop"


@pytest.fixture
def make_notifier():
    """Factory for recording push transports."""
    return RecordingNotifier
