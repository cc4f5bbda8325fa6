"""
Volume spike evaluation for user rules.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Optional

from coinwatch.data.market import MarketDataPort
from coinwatch.database.base import EventLog, RuleStore
from coinwatch.database.models import AlertEvent, AlertRule, AlertType
from coinwatch.database.repository import Clock, utcnow
from coinwatch.errors import SymbolNotFound, TransportError
from coinwatch.notifiers.router import NotificationRouter
from .cooldown import CooldownTracker, spike_key
from .publishing import new_event_id, publish

logger = logging.getLogger(__name__)


@dataclass
class VolumeSample:
    """Baseline and current volume for one rule timeframe."""

    baseline: float
    current: float

    @property
    def ratio(self) -> Optional[float]:
        if self.baseline <= 0:
            return None
        return self.current / self.baseline


def qualifying_threshold(thresholds: list[float], ratio: float) -> Optional[float]:
    """Highest threshold the ratio meets, or None."""
    for threshold in sorted(thresholds, reverse=True):
        if ratio >= threshold:
            return threshold
    return None


class SpikeEvaluator:
    """Compares latest candle volume to a rolling baseline per rule."""

    def __init__(
        self,
        rules: RuleStore,
        market_data: MarketDataPort,
        cooldowns: CooldownTracker,
        events: EventLog,
        router: NotificationRouter,
        fetch_workers: int = 8,
        fetch_timeout_seconds: float = 15,
        clock: Clock = utcnow,
    ):
        """
        Initialize evaluator.

        Args:
            rules: Rule store
            market_data: Candle volume source
            cooldowns: Shared cooldown tracker
            events: Event log
            router: Notification router
            fetch_workers: Threads used for market-data requests
            fetch_timeout_seconds: Time allowed for each fetch result
            clock: Source of the current time
        """
        self.rules = rules
        self.market_data = market_data
        self.cooldowns = cooldowns
        self.events = events
        self.router = router
        self.fetch_workers = fetch_workers
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.clock = clock

    def evaluate_user(self, user_id: str) -> int:
        """
        Evaluate every enabled rule of a user.

        Returns:
            Number of alerts fired
        """
        rules = self.rules.list_enabled(user_id)
        pairs = [(rule, tf) for rule in rules for tf in rule.timeframes]
        if not pairs:
            return 0

        samples = self._fetch_samples(pairs)

        fired = 0
        for rule, timeframe in pairs:
            sample = samples.get((rule.id, timeframe))
            if sample is None:
                continue
            try:
                if self._evaluate_timeframe(rule, timeframe, sample):
                    fired += 1
            except Exception as e:
                logger.error(f"Error evaluating {rule.symbol} {timeframe} ({rule.id}): {e}")
        return fired

    def _fetch_samples(
        self, pairs: list[tuple[AlertRule, str]]
    ) -> dict[tuple[str, str], VolumeSample]:
        """Fetch volumes for all pairs concurrently; failed pairs are left out."""
        samples = {}
        executor = ThreadPoolExecutor(max_workers=self.fetch_workers)
        try:
            futures = {
                (rule.id, tf): (rule, executor.submit(self._sample, rule, tf))
                for rule, tf in pairs
            }
            for (rule_id, tf), (rule, future) in futures.items():
                try:
                    samples[(rule_id, tf)] = future.result(timeout=self.fetch_timeout_seconds)
                except SymbolNotFound as e:
                    logger.warning(f"Unknown symbol {rule.symbol} for rule {rule_id}: {e}")
                except TransportError as e:
                    logger.error(f"Market data unavailable for {rule.symbol} {tf}: {e}")
                except FutureTimeout:
                    logger.error(f"Timed out fetching {rule.symbol} {tf}")
                except Exception as e:
                    logger.error(f"Error fetching {rule.symbol} {tf}: {e}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return samples

    def _sample(self, rule: AlertRule, timeframe: str) -> VolumeSample:
        baseline = self.market_data.average_volume(rule.symbol, timeframe, rule.baseline_window)
        current = self.market_data.latest_volume(rule.symbol, timeframe)
        return VolumeSample(baseline=baseline, current=current)

    def _evaluate_timeframe(self, rule: AlertRule, timeframe: str, sample: VolumeSample) -> bool:
        ratio = sample.ratio
        if ratio is None:
            logger.debug(f"No baseline volume for {rule.symbol} {timeframe}, skipping")
            return False

        threshold = qualifying_threshold(rule.thresholds, ratio)
        if threshold is None:
            return False

        now = self.clock()
        key = spike_key(rule.id, timeframe, threshold)
        if not self.cooldowns.try_fire(key, rule.cooldown_seconds, now):
            logger.debug(f"Spike {rule.symbol} {timeframe} {threshold:g}x in cooldown")
            return False

        event = AlertEvent(
            id=new_event_id(),
            user_id=rule.user_id,
            type=AlertType.SPIKE,
            symbol=rule.symbol,
            triggered_at=now,
            rule_id=rule.id,
            timeframe=timeframe,
            threshold=threshold,
            ratio=ratio,
            current_volume=sample.current,
            baseline_volume=sample.baseline,
        )
        publish(event, self.events, self.router)
        return True
