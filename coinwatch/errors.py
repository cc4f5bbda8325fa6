"""
Exception types shared across coinwatch.
"""


class AlertError(Exception):
    """Base class for coinwatch errors."""

    pass


class ValidationError(AlertError):
    """Raised when a rule or record definition is invalid."""

    pass


class NotFoundError(AlertError):
    """Raised when a rule or record id is unknown."""

    pass


class ConcurrencyFault(AlertError):
    """Raised when a cooldown check-and-set cannot be serialized."""

    pass


class MarketDataError(AlertError):
    """Base class for market data failures."""

    pass


class TransportError(MarketDataError):
    """Provider unreachable or returned an unusable response."""

    pass


class SymbolNotFound(MarketDataError):
    """Provider does not know the requested symbol."""

    def __init__(self, symbol: str, pair: str = ""):
        self.symbol = symbol
        self.pair = pair or symbol
        super().__init__(f"Symbol not found: {symbol} ({self.pair})")
