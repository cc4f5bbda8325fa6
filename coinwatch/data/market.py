"""
Candle volume providers.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

import pandas as pd
import requests
import yfinance as yf
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from coinwatch.errors import SymbolNotFound, TransportError

logger = logging.getLogger(__name__)

# Binance error code for an unknown trading pair
BINANCE_INVALID_SYMBOL = -1121


class MarketDataPort(ABC):
    """Volume source used by spike evaluation."""

    @abstractmethod
    def average_volume(self, symbol: str, timeframe: str, window: int) -> float:
        """
        Average volume of the ``window`` most recent closed candles.

        Raises:
            SymbolNotFound: If the provider does not know the symbol
            TransportError: If the provider could not be reached
        """
        pass

    @abstractmethod
    def latest_volume(self, symbol: str, timeframe: str) -> float:
        """Volume of the most recent (currently forming) candle."""
        pass


class CandleMarketData(MarketDataPort):
    """Derives both volumes from an oldest-first list of candle volumes."""

    @abstractmethod
    def get_volumes(self, symbol: str, timeframe: str, limit: int) -> list[float]:
        """Return up to ``limit`` candle volumes, oldest first, last one forming."""
        pass

    def average_volume(self, symbol: str, timeframe: str, window: int) -> float:
        volumes = self.get_volumes(symbol, timeframe, window + 1)
        closed = volumes[:-1][-window:]
        if not closed:
            logger.warning(f"No closed candles for {symbol} on {timeframe}")
            return 0.0
        return sum(closed) / len(closed)

    def latest_volume(self, symbol: str, timeframe: str) -> float:
        volumes = self.get_volumes(symbol, timeframe, 1)
        if not volumes:
            logger.warning(f"No candles for {symbol} on {timeframe}")
            return 0.0
        return volumes[-1]


def to_pair(symbol: str, quote: str = "USDT") -> str:
    """
    Map a coin symbol to a Binance pair.

    "btc" -> "BTCUSDT"; "BTC/USDT" and "BTC-USDT" -> "BTCUSDT".
    """
    symbol = symbol.strip().upper()
    if "/" in symbol or "-" in symbol:
        return symbol.replace("/", "").replace("-", "")
    return f"{symbol}{quote}"


def create_session(max_retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    """Create a requests session that retries throttled and 5xx responses."""
    session = requests.Session()
    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": "coinwatch/1.0"})
    return session


class BinanceMarketData(CandleMarketData):
    """Fetches klines from the Binance public REST API."""

    BASE_URL = "https://api.binance.com"

    INTERVALS = {
        "1m": "1m",
        "5m": "5m",
        "15m": "15m",
        "30m": "30m",
        "1h": "1h",
        "4h": "4h",
        "1d": "1d",
        "1w": "1w",
        "1mo": "1M",
    }

    def __init__(
        self,
        base_url: str = BASE_URL,
        timeout: float = 10,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        cache_ttl: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Binance client.

        Args:
            base_url: REST endpoint root
            timeout: Per-request timeout in seconds
            max_retries: Retries for 429 and 5xx responses
            backoff_factor: Exponential backoff factor between retries
            cache_ttl: Seconds a kline response is reused; 0 disables
            session: Preconfigured session (mainly for tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.session = session or create_session(max_retries, backoff_factor)
        self._cache: dict[tuple[str, str, int], tuple[float, list[float]]] = {}
        self._cache_lock = threading.Lock()

    def get_volumes(self, symbol: str, timeframe: str, limit: int) -> list[float]:
        pair = to_pair(symbol)
        interval = self.INTERVALS.get(timeframe.lower())
        if interval is None:
            raise TransportError(f"Unsupported timeframe: {timeframe}")

        cache_key = (pair, interval, limit)
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        klines = self._get_klines(symbol, pair, interval, limit)
        try:
            # [open time, open, high, low, close, volume, close time, quote volume, ...]
            volumes = [float(kline[7]) for kline in klines]
        except (TypeError, ValueError, IndexError) as e:
            raise TransportError(f"Malformed klines for {pair}: {e}")

        self._cache_set(cache_key, volumes)
        return volumes

    def _get_klines(self, symbol: str, pair: str, interval: str, limit: int) -> list:
        url = f"{self.base_url}/api/v3/klines"
        params = {"symbol": pair, "interval": interval, "limit": limit}
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Binance request failed for {pair}: {e}")

        if response.status_code == 404:
            raise SymbolNotFound(symbol, pair)
        if response.status_code == 400 and self._error_code(response) == BINANCE_INVALID_SYMBOL:
            raise SymbolNotFound(symbol, pair)
        if not response.ok:
            raise TransportError(f"Binance API error: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from Binance for {pair}: {e}")

    @staticmethod
    def _error_code(response: requests.Response) -> Optional[int]:
        try:
            return response.json().get("code")
        except (ValueError, AttributeError):
            return None

    def _cache_get(self, key: tuple[str, str, int]) -> Optional[list[float]]:
        if self.cache_ttl <= 0:
            return None
        with self._cache_lock:
            entry = self._cache.get(key)
        if entry is None or entry[0] < time.monotonic():
            return None
        return entry[1]

    def _cache_set(self, key: tuple[str, str, int], volumes: list[float]) -> None:
        if self.cache_ttl <= 0:
            return
        with self._cache_lock:
            self._cache[key] = (time.monotonic() + self.cache_ttl, volumes)


class YahooMarketData(CandleMarketData):
    """Fetches candles from Yahoo Finance (``BTC`` -> ``BTC-USD``)."""

    # timeframe -> (yfinance interval, history period, resample rule)
    INTERVALS = {
        "1m": ("1m", "5d", None),
        "5m": ("5m", "1mo", None),
        "15m": ("15m", "1mo", None),
        "30m": ("30m", "1mo", None),
        "1h": ("1h", "3mo", None),
        "4h": ("1h", "6mo", "4h"),
        "1d": ("1d", "2y", None),
        "1w": ("1wk", "5y", None),
        "1mo": ("1mo", "max", None),
    }

    def __init__(self, quote: str = "USD"):
        self.quote = quote

    def to_ticker(self, symbol: str) -> str:
        symbol = symbol.strip().upper()
        if "-" in symbol:
            return symbol
        if "/" in symbol:
            return symbol.replace("/", "-")
        return f"{symbol}-{self.quote}"

    def get_volumes(self, symbol: str, timeframe: str, limit: int) -> list[float]:
        interval_spec = self.INTERVALS.get(timeframe.lower())
        if interval_spec is None:
            raise TransportError(f"Unsupported timeframe: {timeframe}")
        interval, period, resample_rule = interval_spec
        ticker = self.to_ticker(symbol)

        try:
            hist = yf.Ticker(ticker).history(period=period, interval=interval)
        except Exception as e:
            raise TransportError(f"Yahoo Finance request failed for {ticker}: {e}")

        if hist is None or hist.empty:
            raise SymbolNotFound(symbol, ticker)

        volume: pd.Series = hist["Volume"]
        if resample_rule:
            volume = volume.resample(resample_rule).sum()
        return volume.astype(float).tail(limit).tolist()
