"""
Coin universe and filtered membership.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

from coinwatch.database.models import FilterSet, Member
from coinwatch.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class MarketCoin:
    """One coin from a market listing."""

    id: str
    symbol: str
    name: str
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None

    @property
    def vol_to_mcap_pct(self) -> Optional[float]:
        """24h volume as a percentage of market cap."""
        if not self.market_cap or self.volume_24h is None:
            return None
        return self.volume_24h / self.market_cap * 100

    def passes(self, filters: FilterSet) -> bool:
        """Check the coin against a filter set. Missing data never passes."""
        if self.market_cap is None or self.volume_24h is None:
            return False
        ratio = self.vol_to_mcap_pct
        return (
            filters.min_market_cap <= self.market_cap <= filters.max_market_cap
            and self.volume_24h >= filters.min_volume_24h
            and ratio is not None
            and ratio >= filters.min_vol_to_mcap_pct
        )


@dataclass
class MembershipSnapshot:
    """Coins currently passing a filter set."""

    member_ids: set[str] = field(default_factory=set)
    lookup: dict[str, Member] = field(default_factory=dict)


class MembershipSource(ABC):
    """Supplies the current filtered member set."""

    @abstractmethod
    def fetch_members(self, filters: FilterSet) -> MembershipSnapshot:
        pass


def filter_members(coins: list[MarketCoin], filters: FilterSet) -> MembershipSnapshot:
    """Build a snapshot of the coins that pass ``filters``."""
    snapshot = MembershipSnapshot()
    for coin in coins:
        if coin.passes(filters):
            snapshot.member_ids.add(coin.id)
            snapshot.lookup[coin.id] = Member(
                id=coin.id, symbol=coin.symbol, name=coin.name
            )
    return snapshot


class CoinGeckoUniverse(MembershipSource):
    """Top coins by market cap from CoinGecko."""

    BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(
        self,
        base_url: str = BASE_URL,
        per_page: int = 250,
        pages: int = 2,
        timeout: float = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.per_page = min(max(per_page, 1), 250)
        self.pages = max(pages, 1)
        self.timeout = timeout

    def fetch_markets(self) -> list[MarketCoin]:
        """
        Fetch all configured market pages.

        Returns:
            Coins de-duplicated by id, in market cap order

        Raises:
            TransportError: If any page could not be fetched. A partial
                universe would drop members from the baseline.
        """
        coins: dict[str, MarketCoin] = {}
        for page in range(1, self.pages + 1):
            try:
                rows = self._fetch_page(page)
            except TransportError as e:
                logger.warning(f"CoinGecko markets page {page} failed: {e}")
                raise TransportError(f"CoinGecko markets page {page} failed") from e
            for row in rows:
                coin = self._parse_coin(row)
                if coin and coin.id not in coins:
                    coins[coin.id] = coin

        return list(coins.values())

    def fetch_members(self, filters: FilterSet) -> MembershipSnapshot:
        return filter_members(self.fetch_markets(), filters)

    def _fetch_page(self, page: int) -> list[dict[str, Any]]:
        params = {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": self.per_page,
            "page": page,
            "sparkline": "false",
        }
        try:
            response = requests.get(
                f"{self.base_url}/coins/markets",
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise TransportError(str(e))
        except ValueError as e:
            raise TransportError(f"Invalid JSON: {e}")

    def _parse_coin(self, row: dict[str, Any]) -> Optional[MarketCoin]:
        """Convert a markets row to MarketCoin."""
        coin_id = row.get("id")
        symbol = str(row.get("symbol") or "").strip().upper()
        if not coin_id or not symbol:
            return None
        return MarketCoin(
            id=coin_id,
            symbol=symbol,
            name=row.get("name") or symbol,
            market_cap=row.get("market_cap"),
            volume_24h=row.get("total_volume"),
        )
