"""
Per-key cooldown tracking.

Each key is either open (cooled) or closed (armed). A successful
``try_fire`` closes the gate; it reopens once ``cooldown_seconds`` have
passed, checked lazily on the next call.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from coinwatch.errors import ConcurrencyFault

logger = logging.getLogger(__name__)


def entrant_key(user_id: str, symbol: str, filter_signature: str) -> str:
    """Cooldown key for a new-entrant alert."""
    return f"entrant:{user_id}:{symbol}:{filter_signature}"


def spike_key(rule_id: str, timeframe: str, threshold: float) -> str:
    """Cooldown key for a spike alert. 3 and 3.0 map to the same key."""
    return f"spike:{rule_id}:{timeframe}:{float(threshold)!r}"


class CooldownTracker:
    """Thread-safe in-memory map of key -> last fired instant."""

    def __init__(self, max_keys: Optional[int] = None, lock_timeout: float = 5.0):
        """
        Initialize tracker.

        Args:
            max_keys: Soft bound on stored keys; None disables eviction
            lock_timeout: Seconds to wait for the lock before failing
        """
        self.max_keys = max_keys
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()
        # key -> (last fired, largest cooldown ever requested for the key)
        self._records: dict[str, tuple[datetime, int]] = {}

    def try_fire(
        self,
        key: str,
        cooldown_seconds: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Open the gate for ``key`` if its cooldown has elapsed.

        Args:
            key: Cooldown key
            cooldown_seconds: Minimum seconds between two fires
            now: Evaluation instant (defaults to current UTC time)

        Returns:
            True if the caller may fire; the instant is then recorded

        Raises:
            ConcurrencyFault: If the lock could not be acquired in time
        """
        if now is None:
            now = datetime.now(timezone.utc)

        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrencyFault(f"Cooldown lock busy for key {key}")
        try:
            record = self._records.get(key)
            if record is not None:
                last_fired, max_cooldown = record
                if now - last_fired < timedelta(seconds=cooldown_seconds):
                    return False
                max_cooldown = max(max_cooldown, cooldown_seconds)
            else:
                max_cooldown = cooldown_seconds

            self._records[key] = (now, max_cooldown)
            if self.max_keys is not None and len(self._records) > self.max_keys:
                self._evict(now)
            return True
        finally:
            self._lock.release()

    def last_fired(self, key: str) -> Optional[datetime]:
        """Return the last fired instant for a key, if any."""
        with self._lock:
            record = self._records.get(key)
        return record[0] if record else None

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def _evict(self, now: datetime) -> None:
        """Drop keys whose largest requested cooldown has fully elapsed."""
        expired = [
            key
            for key, (last_fired, max_cooldown) in self._records.items()
            if now - last_fired >= timedelta(seconds=max_cooldown)
        ]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug(f"Evicted {len(expired)} cooled keys")
