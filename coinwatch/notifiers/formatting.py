"""
Message formatting for alert events.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from coinwatch.database.base import RuleStore
from coinwatch.database.models import AlertEvent, AlertType

RULE_DELETED = "rule deleted"


@dataclass
class Message:
    """Channel-neutral rendering of an alert event."""

    event_type: AlertType
    symbol: str
    title: str
    summary: str
    timestamp: datetime
    fields: list[tuple[str, str]] = field(default_factory=list)


def format_usd(value: Optional[float]) -> str:
    """Compact dollar amount: 1_500_000 -> "$1.5M"."""
    if value is None:
        return "n/a"
    amount = abs(value)
    sign = "-" if value < 0 else ""
    if amount >= 1e9:
        return f"{sign}${amount / 1e9:.2f}B"
    if amount >= 1e6:
        return f"{sign}${amount / 1e6:.1f}M"
    if amount >= 1e3:
        return f"{sign}${amount / 1e3:.1f}K"
    return f"{sign}${amount:,.2f}"


def format_event(event: AlertEvent) -> Message:
    """Render an event into a Message."""
    if event.type == AlertType.SPIKE:
        return _format_spike(event)
    return _format_entrant(event)


def _format_entrant(event: AlertEvent) -> Message:
    filters = event.filter_context
    fields = [("Symbol", event.symbol)]
    summary = f"🆕 New coin detected: {event.symbol}"
    if filters is not None:
        cap_range = (
            f"{format_usd(filters.min_market_cap)} - "
            f"{format_usd(filters.max_market_cap)}"
        )
        summary += f" (Market cap {cap_range})"
        fields += [
            ("Market Cap Range", cap_range),
            ("Min 24h Volume", format_usd(filters.min_volume_24h)),
            ("Min Vol/MCap", f"{filters.min_vol_to_mcap_pct:g}%"),
        ]
    return Message(
        event_type=event.type,
        symbol=event.symbol,
        title="New Coin Alert",
        summary=summary,
        timestamp=event.triggered_at,
        fields=fields,
    )


def _format_spike(event: AlertEvent) -> Message:
    threshold = f"{event.threshold:g}x" if event.threshold is not None else "n/a"
    ratio = f"{event.ratio:.2f}x" if event.ratio is not None else "n/a"
    return Message(
        event_type=event.type,
        symbol=event.symbol,
        title="Volume Spike Alert",
        summary=(
            f"⚡ {event.symbol} spiked {threshold} on {event.timeframe} "
            f"({ratio} actual)"
        ),
        timestamp=event.triggered_at,
        fields=[
            ("Symbol", event.symbol),
            ("Timeframe", event.timeframe or "n/a"),
            ("Threshold", threshold),
            ("Actual Ratio", ratio),
            ("Current Vol", format_usd(event.current_volume)),
            ("Baseline Vol", format_usd(event.baseline_volume)),
        ],
    )


def rule_label(event: AlertEvent, rules: RuleStore) -> str:
    """Describe the rule behind an event; deleted rules are a normal case."""
    if event.rule_id is None:
        return "-"
    rule = rules.get(event.rule_id)
    if rule is None:
        return RULE_DELETED
    return f"{rule.symbol} {'/'.join(rule.timeframes)}"
