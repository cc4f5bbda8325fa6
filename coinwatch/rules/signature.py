"""
Filter signatures.

A signature identifies one filter configuration so that each configuration
keeps its own member baseline.
"""

import hashlib

from coinwatch.database.models import FilterSet

SEPARATOR = "|"


def _render(value: float) -> str:
    """Render a numeric field so equal values always render identically."""
    return repr(float(value))


def compute_signature(filters: FilterSet) -> str:
    """
    Compute the SHA-256 signature of a filter set.

    Args:
        filters: Filter configuration

    Returns:
        64 character hex digest, stable across processes
    """
    text = SEPARATOR.join(
        _render(value)
        for value in (
            filters.min_market_cap,
            filters.max_market_cap,
            filters.min_volume_24h,
            filters.min_vol_to_mcap_pct,
        )
    )
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
