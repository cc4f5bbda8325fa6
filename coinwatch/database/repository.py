"""
Repository classes for CRUD operations.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from coinwatch.errors import NotFoundError, ValidationError
from .base import BaselineStore, ChannelLinkStore, EventLog, RuleStore
from .connection import Database
from .models import (
    TIMEFRAMES,
    AlertEvent,
    AlertRule,
    AlertStatus,
    AlertType,
    ChannelLink,
    FilterSet,
    MonitorBaseline,
)

DEFAULT_BASELINE_WINDOW = 20
DEFAULT_RULE_COOLDOWN_SECONDS = 300
DEFAULT_MONITOR_COOLDOWN_SECONDS = 600
MAX_EVENT_LIMIT = 500

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(value: datetime) -> str:
    """Serialize as fixed-width UTC so stored strings sort chronologically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _normalize_timeframes(timeframes: Iterable[str]) -> list[str]:
    normalized = {str(tf).strip().lower() for tf in timeframes}
    unknown = normalized - set(TIMEFRAMES)
    if unknown:
        raise ValidationError(f"Unsupported timeframes: {', '.join(sorted(unknown))}")
    return [tf for tf in TIMEFRAMES if tf in normalized]


def _normalize_thresholds(thresholds: Iterable[float]) -> list[float]:
    try:
        values = {float(t) for t in thresholds}
    except (TypeError, ValueError):
        raise ValidationError("Thresholds must be numbers")
    if any(t <= 0 for t in values):
        raise ValidationError("Thresholds must be positive")
    return sorted(values)


def validate_rule(rule: AlertRule) -> AlertRule:
    """
    Validate and normalize a rule in place.

    Raises:
        ValidationError: If any field is invalid
    """
    symbol = (rule.symbol or "").strip().upper()
    if not symbol:
        raise ValidationError("Symbol is required")
    if not rule.timeframes:
        raise ValidationError("At least one timeframe is required")
    if not rule.thresholds:
        raise ValidationError("At least one threshold is required")
    if not isinstance(rule.baseline_window, int) or rule.baseline_window <= 0:
        raise ValidationError("Baseline window must be a positive integer")
    if not isinstance(rule.cooldown_seconds, int) or rule.cooldown_seconds < 0:
        raise ValidationError("Cooldown must be a non-negative integer")

    rule.symbol = symbol
    rule.timeframes = _normalize_timeframes(rule.timeframes)
    rule.thresholds = _normalize_thresholds(rule.thresholds)
    rule.enabled = bool(rule.enabled)
    return rule


class RuleRepository(RuleStore):
    """CRUD operations for alert rules."""

    MUTABLE_FIELDS = {
        "symbol",
        "timeframes",
        "thresholds",
        "baseline_window",
        "cooldown_seconds",
        "enabled",
    }
    IMMUTABLE_FIELDS = {"id", "user_id", "created_at"}

    def __init__(
        self,
        db: Database,
        default_baseline_window: int = DEFAULT_BASELINE_WINDOW,
        default_cooldown_seconds: int = DEFAULT_RULE_COOLDOWN_SECONDS,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.default_baseline_window = default_baseline_window
        self.default_cooldown_seconds = default_cooldown_seconds
        self.clock = clock

    def create(
        self,
        user_id: str,
        symbol: str,
        timeframes: Iterable[str],
        thresholds: Iterable[float],
        baseline_window: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
        enabled: bool = True,
    ) -> AlertRule:
        """Validate and persist a new rule."""
        rule = AlertRule(
            user_id=user_id,
            symbol=symbol,
            timeframes=list(timeframes or []),
            thresholds=list(thresholds or []),
            baseline_window=(
                self.default_baseline_window
                if baseline_window is None
                else baseline_window
            ),
            cooldown_seconds=(
                self.default_cooldown_seconds
                if cooldown_seconds is None
                else cooldown_seconds
            ),
            enabled=enabled,
        )
        validate_rule(rule)

        now = self.clock()
        rule.id = f"ar_{uuid.uuid4().hex}"
        rule.created_at = now
        rule.updated_at = now

        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO alert_rules
                (id, user_id, symbol, timeframes, thresholds, baseline_window,
                 cooldown_seconds, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.user_id,
                    rule.symbol,
                    json.dumps(rule.timeframes),
                    json.dumps(rule.thresholds),
                    rule.baseline_window,
                    rule.cooldown_seconds,
                    1 if rule.enabled else 0,
                    _to_db_time(now),
                    _to_db_time(now),
                ),
            )
            self.db.connection.commit()
        return rule

    def get(self, rule_id: str) -> Optional[AlertRule]:
        """Get rule by ID."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def update(self, rule_id: str, fields: dict[str, Any]) -> AlertRule:
        """
        Merge ``fields`` into an existing rule.

        Raises:
            NotFoundError: If the rule does not exist
            ValidationError: If an immutable field changes, a field is
                unknown, or the merged rule is invalid
        """
        with self.db.lock:
            rule = self.get(rule_id)
            if rule is None:
                raise NotFoundError(f"Rule not found: {rule_id}")

            for name, value in fields.items():
                if name in self.IMMUTABLE_FIELDS:
                    if value != getattr(rule, name):
                        raise ValidationError(f"Field is immutable: {name}")
                elif name == "updated_at":
                    continue
                elif name not in self.MUTABLE_FIELDS:
                    raise ValidationError(f"Unknown rule field: {name}")
                else:
                    setattr(rule, name, value)

            validate_rule(rule)
            rule.updated_at = self.clock()

            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                UPDATE alert_rules
                SET symbol = ?, timeframes = ?, thresholds = ?, baseline_window = ?,
                    cooldown_seconds = ?, enabled = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    rule.symbol,
                    json.dumps(rule.timeframes),
                    json.dumps(rule.thresholds),
                    rule.baseline_window,
                    rule.cooldown_seconds,
                    1 if rule.enabled else 0,
                    _to_db_time(rule.updated_at),
                    rule.id,
                ),
            )
            self.db.connection.commit()
        return rule

    def delete(self, rule_id: str) -> None:
        """Delete a rule. Deleting an unknown id is a no-op."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
            self.db.connection.commit()

    def list_by_user(self, user_id: str) -> list[AlertRule]:
        """Get all rules for a user, oldest first."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM alert_rules WHERE user_id = ? ORDER BY created_at, id",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        """List users that own at least one rule."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT DISTINCT user_id FROM alert_rules ORDER BY user_id")
            rows = cursor.fetchall()
        return [row["user_id"] for row in rows]

    def _row_to_rule(self, row) -> AlertRule:
        """Convert database row to AlertRule."""
        return AlertRule(
            id=row["id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            timeframes=json.loads(row["timeframes"]),
            thresholds=json.loads(row["thresholds"]),
            baseline_window=row["baseline_window"],
            cooldown_seconds=row["cooldown_seconds"],
            enabled=bool(row["enabled"]),
            created_at=_from_db_time(row["created_at"]),
            updated_at=_from_db_time(row["updated_at"]),
        )


class BaselineRepository(BaselineStore):
    """Member snapshots keyed by user and filter signature."""

    def __init__(
        self,
        db: Database,
        default_cooldown_seconds: int = DEFAULT_MONITOR_COOLDOWN_SECONDS,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.default_cooldown_seconds = default_cooldown_seconds
        self.clock = clock

    def get_or_create(self, user_id: str, filter_signature: str) -> MonitorBaseline:
        """Return the baseline, creating an empty enabled one if missing."""
        with self.db.lock:
            row = self._fetch(user_id, filter_signature)
            if row is None:
                self._insert(user_id, filter_signature)
                self.db.connection.commit()
                row = self._fetch(user_id, filter_signature)
        return self._row_to_baseline(row)

    def diff_and_replace(
        self,
        user_id: str,
        filter_signature: str,
        current_member_ids: Iterable[str],
    ) -> set[str]:
        """
        Return members not in the stored snapshot, then store ``current``.

        The diff uses the snapshot as it was before this call. The snapshot
        always advances, whether or not anything fires downstream.
        """
        current = set(current_member_ids)
        with self.db.lock:
            row = self._fetch(user_id, filter_signature)
            if row is None:
                self._insert(user_id, filter_signature)
                previous: set[str] = set()
            else:
                previous = set(json.loads(row["member_ids"]))

            now = _to_db_time(self.clock())
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                UPDATE monitor_baselines
                SET member_ids = ?, updated_at = ?, last_evaluated_at = ?
                WHERE user_id = ? AND filter_signature = ?
                """,
                (json.dumps(sorted(current)), now, now, user_id, filter_signature),
            )
            self.db.connection.commit()
        return current - previous

    def set_enabled(
        self,
        user_id: str,
        filter_signature: str,
        enabled: bool,
        cooldown_seconds: Optional[int] = None,
    ) -> MonitorBaseline:
        """Update configuration without touching the member snapshot."""
        if cooldown_seconds is not None and cooldown_seconds < 0:
            raise ValidationError("Cooldown must be a non-negative integer")

        with self.db.lock:
            if self._fetch(user_id, filter_signature) is None:
                self._insert(user_id, filter_signature)
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                UPDATE monitor_baselines
                SET enabled = ?, cooldown_seconds = COALESCE(?, cooldown_seconds),
                    updated_at = ?
                WHERE user_id = ? AND filter_signature = ?
                """,
                (
                    1 if enabled else 0,
                    cooldown_seconds,
                    _to_db_time(self.clock()),
                    user_id,
                    filter_signature,
                ),
            )
            self.db.connection.commit()
            row = self._fetch(user_id, filter_signature)
        return self._row_to_baseline(row)

    def _fetch(self, user_id: str, filter_signature: str):
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM monitor_baselines
            WHERE user_id = ? AND filter_signature = ?
            """,
            (user_id, filter_signature),
        )
        return cursor.fetchone()

    def _insert(self, user_id: str, filter_signature: str) -> None:
        now = _to_db_time(self.clock())
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO monitor_baselines
            (user_id, filter_signature, member_ids, enabled, cooldown_seconds,
             created_at, updated_at)
            VALUES (?, ?, '[]', 1, ?, ?, ?)
            """,
            (user_id, filter_signature, self.default_cooldown_seconds, now, now),
        )

    def _row_to_baseline(self, row) -> MonitorBaseline:
        """Convert database row to MonitorBaseline."""
        return MonitorBaseline(
            user_id=row["user_id"],
            filter_signature=row["filter_signature"],
            member_ids=set(json.loads(row["member_ids"])),
            enabled=bool(row["enabled"]),
            cooldown_seconds=row["cooldown_seconds"],
            created_at=_from_db_time(row["created_at"]),
            updated_at=_from_db_time(row["updated_at"]),
            last_evaluated_at=_from_db_time(row["last_evaluated_at"]),
        )


class EventRepository(EventLog):
    """Append-only storage for fired alerts."""

    def __init__(self, db: Database, max_limit: int = MAX_EVENT_LIMIT):
        self.db = db
        self.max_limit = max_limit

    def append(self, event: AlertEvent) -> AlertEvent:
        """Store a new event."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO alert_events
                    (id, user_id, rule_id, type, symbol, timeframe, threshold, ratio,
                     current_volume, baseline_volume, filter_context, triggered_at,
                     delivered_channels, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.user_id,
                        event.rule_id,
                        event.type.value,
                        event.symbol,
                        event.timeframe,
                        event.threshold,
                        event.ratio,
                        event.current_volume,
                        event.baseline_volume,
                        (
                            json.dumps(event.filter_context.to_dict())
                            if event.filter_context
                            else None
                        ),
                        _to_db_time(event.triggered_at),
                        json.dumps(list(event.delivered_channels)),
                        event.status.value,
                    ),
                )
            except sqlite3.IntegrityError:
                raise ValidationError(f"Event already exists: {event.id}")
            self.db.connection.commit()
        return event

    def get(self, event_id: str) -> Optional[AlertEvent]:
        """Get event by ID."""
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute("SELECT * FROM alert_events WHERE id = ?", (event_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_by_user(self, user_id: str, limit: int = 50) -> list[AlertEvent]:
        """Get a user's events, newest first, at most ``max_limit``."""
        limit = max(1, min(int(limit), self.max_limit))
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                SELECT * FROM alert_events
                WHERE user_id = ?
                ORDER BY triggered_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    def record_delivery(
        self,
        event_id: str,
        channels: Iterable[str],
        status: AlertStatus,
    ) -> AlertEvent:
        """Record which channels received the event."""
        return self._amend(
            event_id,
            "delivered_channels = ?, status = ?",
            (json.dumps(list(channels)), status.value),
        )

    def update_status(self, event_id: str, status: AlertStatus) -> AlertEvent:
        """Change the status, e.g. when the user dismisses or snoozes."""
        return self._amend(event_id, "status = ?", (status.value,))

    def _amend(self, event_id: str, assignments: str, params: tuple) -> AlertEvent:
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                f"UPDATE alert_events SET {assignments} WHERE id = ?",
                (*params, event_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Event not found: {event_id}")
            self.db.connection.commit()
            return self.get(event_id)

    def _row_to_event(self, row) -> AlertEvent:
        """Convert database row to AlertEvent."""
        return AlertEvent(
            id=row["id"],
            user_id=row["user_id"],
            rule_id=row["rule_id"],
            type=AlertType(row["type"]),
            symbol=row["symbol"],
            timeframe=row["timeframe"],
            threshold=row["threshold"],
            ratio=row["ratio"],
            current_volume=row["current_volume"],
            baseline_volume=row["baseline_volume"],
            filter_context=(
                FilterSet.from_dict(json.loads(row["filter_context"]))
                if row["filter_context"]
                else None
            ),
            triggered_at=_from_db_time(row["triggered_at"]),
            delivered_channels=tuple(json.loads(row["delivered_channels"])),
            status=AlertStatus(row["status"]),
        )


class ChannelLinkRepository(ChannelLinkStore):
    """CRUD operations for channel links."""

    def __init__(self, db: Database, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def link(
        self, user_id: str, channel: str, destination: str, enabled: bool = True
    ) -> ChannelLink:
        """Link or relink a user to a channel destination."""
        if not destination:
            raise ValidationError("Destination is required")
        now = _to_db_time(self.clock())
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                INSERT INTO channel_links
                (user_id, channel, destination, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, channel) DO UPDATE SET
                    destination = excluded.destination,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (user_id, channel, destination, 1 if enabled else 0, now, now),
            )
            self.db.connection.commit()
        return self.get(user_id, channel)

    def get(self, user_id: str, channel: str) -> Optional[ChannelLink]:
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "SELECT * FROM channel_links WHERE user_id = ? AND channel = ?",
                (user_id, channel),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return ChannelLink(
            user_id=row["user_id"],
            channel=row["channel"],
            destination=row["destination"],
            enabled=bool(row["enabled"]),
            created_at=_from_db_time(row["created_at"]),
            updated_at=_from_db_time(row["updated_at"]),
        )

    def set_enabled(self, user_id: str, channel: str, enabled: bool) -> ChannelLink:
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                """
                UPDATE channel_links SET enabled = ?, updated_at = ?
                WHERE user_id = ? AND channel = ?
                """,
                (1 if enabled else 0, _to_db_time(self.clock()), user_id, channel),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"No {channel} link for user {user_id}")
            self.db.connection.commit()
        return self.get(user_id, channel)

    def unlink(self, user_id: str, channel: str) -> None:
        with self.db.lock:
            cursor = self.db.connection.cursor()
            cursor.execute(
                "DELETE FROM channel_links WHERE user_id = ? AND channel = ?",
                (user_id, channel),
            )
            self.db.connection.commit()
