"""
Rule evaluation tests.
Tests for filter signatures, cooldowns, new-entrant and spike evaluation.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from coinwatch.database.models import AlertStatus, AlertType, FilterSet
from coinwatch.database.repository import (
    BaselineRepository,
    ChannelLinkRepository,
    EventRepository,
    RuleRepository,
)
from coinwatch.errors import ConcurrencyFault, TransportError
from coinwatch.notifiers.router import NotificationRouter
from coinwatch.rules.cooldown import CooldownTracker, entrant_key, spike_key
from coinwatch.rules.entrants import EntrantEvaluator
from coinwatch.rules.signature import compute_signature
from coinwatch.rules.spikes import SpikeEvaluator, VolumeSample, qualifying_threshold


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestFilterSignature:
    """Test filter signature computation."""

    def test_deterministic(self, filters):
        """Should return the same digest for equal filter sets."""
        copy = FilterSet(**filters.to_dict())
        assert compute_signature(filters) == compute_signature(copy)

    def test_int_and_float_are_equivalent(self):
        """Should not depend on the numeric type of a field."""
        assert compute_signature(FilterSet(1, 2, 3, 4)) == compute_signature(
            FilterSet(1.0, 2.0, 3.0, 4.0)
        )

    def test_distinct_for_any_field(self, filters):
        """Should change when any single field changes."""
        base = compute_signature(filters)
        for name, value in filters.to_dict().items():
            changed = FilterSet(**{**filters.to_dict(), name: value + 1})
            assert compute_signature(changed) != base

    def test_field_order_matters(self):
        """Should not collide when values swap places."""
        assert compute_signature(FilterSet(1, 2, 3, 4)) != compute_signature(
            FilterSet(2, 1, 3, 4)
        )

    def test_hex_digest(self, filters):
        """Should be a 64 character hex string."""
        signature = compute_signature(filters)
        assert len(signature) == 64
        int(signature, 16)


class TestCooldownKeys:
    """Test cooldown key construction."""

    def test_entrant_key(self):
        """Should include user, symbol and signature."""
        assert entrant_key("u1", "ADA", "abc") == "entrant:u1:ADA:abc"

    def test_spike_key_normalizes_threshold(self):
        """3 and 3.0 should share a key."""
        assert spike_key("ar_1", "1h", 3) == spike_key("ar_1", "1h", 3.0)
        assert spike_key("ar_1", "1h", 2.5) != spike_key("ar_1", "1h", 3)

    def test_spike_key_keeps_full_precision(self):
        """Thresholds that differ past six digits get distinct keys."""
        assert spike_key("ar_1", "1h", 2.0000001) != spike_key("ar_1", "1h", 2.0000002)


class TestCooldownTracker:
    """Test per-key cooldown gates."""

    def test_first_fire_allowed(self):
        """Should open for an unseen key and record the instant."""
        tracker = CooldownTracker()
        assert tracker.try_fire("k", 600, T0) is True
        assert tracker.last_fired("k") == T0

    def test_boundaries(self):
        """Should block before N seconds and open exactly at N."""
        tracker = CooldownTracker()
        assert tracker.try_fire("k", 600, T0)
        assert not tracker.try_fire("k", 600, T0 + timedelta(seconds=599))
        assert tracker.try_fire("k", 600, T0 + timedelta(seconds=600))

    def test_spike_key_short_cooldown(self):
        """A 5 second rule cooldown blocks immediately and reopens after 6s."""
        tracker = CooldownTracker()
        key = spike_key("ar_1", "1h", 3)
        assert tracker.try_fire(key, 5, T0)
        assert not tracker.try_fire(key, 5, T0)
        assert tracker.try_fire(key, 5, T0 + timedelta(seconds=6))

    def test_blocked_attempt_does_not_extend(self):
        """A refused attempt should leave the recorded instant untouched."""
        tracker = CooldownTracker()
        tracker.try_fire("k", 600, T0)
        tracker.try_fire("k", 600, T0 + timedelta(seconds=300))
        assert tracker.last_fired("k") == T0

    def test_zero_cooldown(self):
        """Should always open with a zero cooldown."""
        tracker = CooldownTracker()
        assert tracker.try_fire("k", 0, T0)
        assert tracker.try_fire("k", 0, T0)

    def test_keys_independent(self):
        """Should track keys separately."""
        tracker = CooldownTracker()
        assert tracker.try_fire("a", 600, T0)
        assert tracker.try_fire("b", 600, T0)
        assert len(tracker) == 2

    def test_concurrent_attempts_fire_once(self):
        """Only one of many simultaneous callers may fire."""
        tracker = CooldownTracker()
        results = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            results.append(tracker.try_fire("k", 600, T0))

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_lock_timeout_raises(self):
        """Should raise ConcurrencyFault rather than fire twice."""
        tracker = CooldownTracker(lock_timeout=0.01)
        tracker._lock.acquire()
        try:
            with pytest.raises(ConcurrencyFault):
                tracker.try_fire("k", 600, T0)
        finally:
            tracker._lock.release()

    def test_eviction_keeps_active_windows(self):
        """Should only evict keys whose cooldown has elapsed."""
        tracker = CooldownTracker(max_keys=2)
        tracker.try_fire("old", 10, T0)
        tracker.try_fire("active", 600, T0)
        tracker.try_fire("new", 600, T0 + timedelta(seconds=60))

        assert tracker.last_fired("old") is None
        assert tracker.last_fired("active") == T0
        assert not tracker.try_fire("active", 600, T0 + timedelta(seconds=61))

    def test_clear(self):
        """Should forget every key."""
        tracker = CooldownTracker()
        tracker.try_fire("k", 600, T0)
        tracker.clear()
        assert tracker.try_fire("k", 600, T0)


@pytest.fixture
def router(db):
    return NotificationRouter(ChannelLinkRepository(db))


@pytest.fixture
def events(db):
    return EventRepository(db)


class TestEntrantEvaluator:
    """Test new-entrant detection."""

    @pytest.fixture
    def baselines(self, db, clock):
        return BaselineRepository(db, clock=clock)

    @pytest.fixture
    def evaluator(self, baselines, events, router, clock):
        return EntrantEvaluator(baselines, CooldownTracker(), events, router, clock=clock)

    def test_scenario_first_pass_seeds(self, evaluator, events, filters, members, clock):
        """First pass seeds, unchanged pass is silent, new member alerts once."""
        first = {"bitcoin", "ethereum", "solana"}

        assert evaluator.evaluate("u1", first, filters, members) == 0
        clock.advance(60)
        assert evaluator.evaluate("u1", first, filters, members) == 0
        clock.advance(60)
        assert evaluator.evaluate("u1", first | {"cardano"}, filters, members) == 1

        fired = events.list_by_user("u1")
        assert len(fired) == 1
        assert fired[0].type == AlertType.ENTRANT
        assert fired[0].symbol == "ADA"
        assert fired[0].filter_context == filters
        assert fired[0].delivered_channels == ("inApp",)
        assert fired[0].status == AlertStatus.DELIVERED

    def test_seeding_disabled_alerts_everything(
        self, baselines, events, router, filters, members, clock
    ):
        """Should diff against the empty set when seeding is off."""
        evaluator = EntrantEvaluator(
            baselines,
            CooldownTracker(),
            events,
            router,
            seed_on_first_evaluation=False,
            clock=clock,
        )
        assert evaluator.evaluate("u1", {"bitcoin", "ethereum"}, filters, members) == 2

    def test_filter_change_isolated(self, evaluator, filters, members):
        """A new filter set starts its own baseline without alerting."""
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        other = FilterSet(0, 1e12, 0, 0)

        assert evaluator.evaluate("u1", {"bitcoin", "ethereum"}, other, members) == 0
        assert evaluator.evaluate("u1", {"bitcoin", "solana"}, filters, members) == 1

    def test_disabled_baseline_advances_silently(self, evaluator, baselines, filters, members):
        """Disabled monitors keep tracking members but never fire."""
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        baselines.set_enabled("u1", compute_signature(filters), False)

        assert evaluator.evaluate("u1", {"bitcoin", "cardano"}, filters, members) == 0

        baselines.set_enabled("u1", compute_signature(filters), True)
        assert evaluator.evaluate("u1", {"bitcoin", "cardano"}, filters, members) == 0

    def test_cooldown_blocks_reentry(self, evaluator, filters, members, clock):
        """A coin that leaves and re-enters within the cooldown is silent."""
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        assert evaluator.evaluate("u1", {"bitcoin", "cardano"}, filters, members) == 1
        clock.advance(60)
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        clock.advance(60)
        assert evaluator.evaluate("u1", {"bitcoin", "cardano"}, filters, members) == 0
        clock.advance(600)
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        assert evaluator.evaluate("u1", {"bitcoin", "cardano"}, filters, members) == 1

    def test_missing_display_data_skipped(self, evaluator, filters, members):
        """Should skip ids without lookup data and still alert the rest."""
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        assert evaluator.evaluate("u1", {"bitcoin", "mystery", "solana"}, filters, members) == 1

    def test_member_error_does_not_abort_siblings(
        self, baselines, events, router, filters, members, clock
    ):
        """A failure on one member should not stop the others."""

        class FlakyTracker(CooldownTracker):
            def try_fire(self, key, cooldown_seconds, now=None):
                if ":ADA:" in key:
                    raise ConcurrencyFault("busy")
                return super().try_fire(key, cooldown_seconds, now)

        evaluator = EntrantEvaluator(baselines, FlakyTracker(), events, router, clock=clock)
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)

        assert evaluator.evaluate("u1", {"bitcoin", "cardano", "solana"}, filters, members) == 1

    def test_users_isolated(self, evaluator, filters, members):
        """Should keep baselines per user."""
        evaluator.evaluate("u1", {"bitcoin"}, filters, members)
        evaluator.evaluate("u2", {"bitcoin", "cardano"}, filters, members)
        assert evaluator.evaluate("u1", {"bitcoin", "cardano"}, filters, members) == 1


class TestQualifyingThreshold:
    """Test threshold selection."""

    def test_highest_wins(self):
        """Should pick the largest threshold the ratio meets."""
        assert qualifying_threshold([2.0, 3.0], 3.5) == 3.0

    def test_equal_counts(self):
        """A ratio equal to the threshold qualifies."""
        assert qualifying_threshold([2.0, 3.0], 2.0) == 2.0

    def test_none_qualify(self):
        """Should return None below every threshold."""
        assert qualifying_threshold([2.0, 3.0], 1.9) is None

    def test_sample_ratio(self):
        """Should refuse to divide by a non-positive baseline."""
        assert VolumeSample(baseline=0, current=100).ratio is None
        assert VolumeSample(baseline=100, current=350).ratio == 3.5


class TestSpikeEvaluator:
    """Test volume spike evaluation."""

    @pytest.fixture
    def rules(self, db, clock):
        return RuleRepository(db, clock=clock)

    @pytest.fixture
    def evaluator(self, rules, market_data, events, router, clock):
        return SpikeEvaluator(
            rules, market_data, CooldownTracker(), events, router, fetch_workers=2, clock=clock
        )

    def test_tie_break_fires_highest(self, evaluator, rules, market_data, events):
        """Ratio 3.5 with thresholds 2 and 3 fires exactly one event at 3."""
        rule = rules.create("u1", "BTC", ["1h"], [2, 3])
        market_data.set("BTC", "1h", baseline=100, current=350)

        assert evaluator.evaluate_user("u1") == 1

        fired = events.list_by_user("u1")
        assert len(fired) == 1
        event = fired[0]
        assert event.type == AlertType.SPIKE
        assert event.rule_id == rule.id
        assert event.threshold == 3.0
        assert event.ratio == 3.5
        assert event.current_volume == 350
        assert event.baseline_volume == 100
        assert event.timeframe == "1h"

    def test_cooldown_blocks_fall_through(self, evaluator, rules, market_data, clock):
        """A blocked top threshold should not fall back to a lower one."""
        rules.create("u1", "BTC", ["1h"], [2, 3], cooldown_seconds=300)
        market_data.set("BTC", "1h", baseline=100, current=350)

        assert evaluator.evaluate_user("u1") == 1
        clock.advance(10)
        assert evaluator.evaluate_user("u1") == 0
        clock.advance(300)
        assert evaluator.evaluate_user("u1") == 1

    def test_lower_threshold_has_own_cooldown(self, evaluator, rules, market_data, clock):
        """Dropping to a lower band fires that band's key."""
        rules.create("u1", "BTC", ["1h"], [2, 3])
        market_data.set("BTC", "1h", baseline=100, current=350)
        evaluator.evaluate_user("u1")

        clock.advance(10)
        market_data.set("BTC", "1h", baseline=100, current=250)
        assert evaluator.evaluate_user("u1") == 1

    def test_below_thresholds(self, evaluator, rules, market_data, events):
        """Should not alert when no threshold qualifies."""
        rules.create("u1", "BTC", ["1h"], [2])
        market_data.set("BTC", "1h", baseline=100, current=150)
        assert evaluator.evaluate_user("u1") == 0
        assert events.list_by_user("u1") == []

    def test_zero_baseline_skipped(self, evaluator, rules, market_data):
        """Should skip timeframes without baseline volume."""
        rules.create("u1", "BTC", ["1h"], [2])
        market_data.set("BTC", "1h", baseline=0, current=1000)
        assert evaluator.evaluate_user("u1") == 0

    def test_each_timeframe_evaluated(self, evaluator, rules, market_data):
        """Should fire once per qualifying timeframe."""
        rules.create("u1", "BTC", ["1h", "4h"], [2])
        market_data.set("BTC", "1h", baseline=100, current=300)
        market_data.set("BTC", "4h", baseline=100, current=250)
        assert evaluator.evaluate_user("u1") == 2

    def test_unknown_symbol_continues(self, evaluator, rules, market_data):
        """A symbol the provider does not know should not stop other rules."""
        rules.create("u1", "NOPE", ["1h"], [2])
        rules.create("u1", "ETH", ["1h"], [2])
        market_data.set("ETH", "1h", baseline=100, current=300)

        assert evaluator.evaluate_user("u1") == 1

    def test_transport_error_continues(self, evaluator, rules, market_data):
        """Provider outages are isolated to their pair."""
        rules.create("u1", "BTC", ["1h"], [2])
        rules.create("u1", "ETH", ["1h"], [2])
        market_data.set("ETH", "1h", baseline=100, current=300)
        market_data.errors["BTC"] = TransportError("down")

        assert evaluator.evaluate_user("u1") == 1

    def test_slow_fetch_times_out(self, rules, market_data, events, router, clock):
        """A hanging provider call is skipped without holding up other rules."""
        evaluator = SpikeEvaluator(
            rules, market_data, CooldownTracker(), events, router,
            fetch_workers=2, fetch_timeout_seconds=0.2, clock=clock,
        )
        rules.create("u1", "BTC", ["1h"], [2])
        rules.create("u1", "ETH", ["1h"], [2])
        market_data.set("BTC", "1h", baseline=100, current=300)
        market_data.set("ETH", "1h", baseline=100, current=300)
        release = threading.Event()
        market_data.blocked["BTC"] = release

        try:
            assert evaluator.evaluate_user("u1") == 1
        finally:
            release.set()

        assert [e.symbol for e in events.list_by_user("u1")] == ["ETH"]

    def test_disabled_rules_ignored(self, evaluator, rules, market_data):
        """Should only evaluate enabled rules."""
        rules.create("u1", "BTC", ["1h"], [2], enabled=False)
        market_data.set("BTC", "1h", baseline=100, current=300)
        assert evaluator.evaluate_user("u1") == 0
        assert market_data.calls == []

    def test_no_rules(self, evaluator):
        """Should return 0 for a user without rules."""
        assert evaluator.evaluate_user("nobody") == 0

    def test_push_channel_delivery(self, db, rules, market_data, events, clock, make_notifier):
        """Should deliver to linked channels and record them."""
        links = ChannelLinkRepository(db)
        links.link("u1", "telegram", "12345")
        telegram = make_notifier("telegram")
        discord = make_notifier("discord")
        router = NotificationRouter(links, notifiers=[telegram, discord])
        evaluator = SpikeEvaluator(
            rules, market_data, CooldownTracker(), events, router, clock=clock
        )
        rules.create("u1", "BTC", ["1h"], [2])
        market_data.set("BTC", "1h", baseline=100, current=300)

        evaluator.evaluate_user("u1")

        event = events.list_by_user("u1")[0]
        assert event.delivered_channels == ("inApp", "telegram")
        assert telegram.sent[0][0] == "12345"
        assert discord.sent == []
        assert router.in_app.get_notifications("u1")[0].message.startswith("⚡ BTC")
