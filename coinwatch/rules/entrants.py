"""
New-entrant detection for filtered coin sets.
"""

import logging
from typing import Iterable, Mapping

from coinwatch.database.base import BaselineStore, EventLog
from coinwatch.database.models import AlertEvent, AlertType, FilterSet, Member
from coinwatch.database.repository import Clock, utcnow
from coinwatch.notifiers.router import NotificationRouter
from .cooldown import CooldownTracker, entrant_key
from .publishing import new_event_id, publish
from .signature import compute_signature

logger = logging.getLogger(__name__)


class EntrantEvaluator:
    """Alerts on coins that newly appear in a user's filtered set."""

    def __init__(
        self,
        baselines: BaselineStore,
        cooldowns: CooldownTracker,
        events: EventLog,
        router: NotificationRouter,
        seed_on_first_evaluation: bool = True,
        clock: Clock = utcnow,
    ):
        """
        Initialize evaluator.

        Args:
            baselines: Member snapshot store
            cooldowns: Shared cooldown tracker
            events: Event log
            router: Notification router
            seed_on_first_evaluation: If True the first pass for a filter
                configuration only records members and fires nothing
            clock: Source of the current time
        """
        self.baselines = baselines
        self.cooldowns = cooldowns
        self.events = events
        self.router = router
        self.seed_on_first_evaluation = seed_on_first_evaluation
        self.clock = clock

    def evaluate(
        self,
        user_id: str,
        current_member_ids: Iterable[str],
        filters: FilterSet,
        member_lookup: Mapping[str, Member],
    ) -> int:
        """
        Diff the current members against the stored baseline and alert.

        Args:
            user_id: Owner of the monitor
            current_member_ids: Ids currently passing ``filters``
            filters: Filter configuration that produced the members
            member_lookup: Display data by member id

        Returns:
            Number of alerts fired
        """
        signature = compute_signature(filters)
        baseline = self.baselines.get_or_create(user_id, signature)
        first_pass = baseline.last_evaluated_at is None

        new_ids = self.baselines.diff_and_replace(user_id, signature, current_member_ids)

        if not baseline.enabled:
            logger.debug(f"Monitor {signature[:8]} disabled for {user_id}")
            return 0
        if first_pass and self.seed_on_first_evaluation:
            logger.info(f"Seeded monitor {signature[:8]} for {user_id} with {len(new_ids)} members")
            return 0

        fired = 0
        for member_id in sorted(new_ids):
            member = member_lookup.get(member_id)
            if member is None:
                logger.warning(f"No display data for new member {member_id}, skipping")
                continue

            try:
                if self._fire(user_id, member, filters, signature, baseline.cooldown_seconds):
                    fired += 1
            except Exception as e:
                logger.error(f"Error alerting {member.symbol} for {user_id}: {e}")

        return fired

    def _fire(
        self,
        user_id: str,
        member: Member,
        filters: FilterSet,
        signature: str,
        cooldown_seconds: int,
    ) -> bool:
        now = self.clock()
        key = entrant_key(user_id, member.symbol, signature)
        if not self.cooldowns.try_fire(key, cooldown_seconds, now):
            logger.debug(f"Entrant {member.symbol} for {user_id} in cooldown")
            return False

        event = AlertEvent(
            id=new_event_id(),
            user_id=user_id,
            type=AlertType.ENTRANT,
            symbol=member.symbol,
            triggered_at=now,
            filter_context=filters,
        )
        publish(event, self.events, self.router)
        return True
