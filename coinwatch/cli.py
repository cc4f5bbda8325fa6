"""
CLI commands for coinwatch.
"""

import argparse
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from coinwatch.database.connection import Database
from coinwatch.database.models import AlertEvent, AlertStatus, FilterSet
from coinwatch.database.repository import (
    BaselineRepository,
    ChannelLinkRepository,
    EventRepository,
    RuleRepository,
)
from coinwatch.errors import AlertError
from coinwatch.notifiers.formatting import format_event, rule_label
from coinwatch.rules.signature import compute_signature

PUSH_CHANNELS = ("telegram", "discord")


def _split(value: Optional[str]) -> Optional[list[str]]:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def add_rule(
    db: Database,
    user_id: str,
    symbol: str,
    timeframes: list[str],
    thresholds: list[float],
    baseline_window: Optional[int] = None,
    cooldown_seconds: Optional[int] = None,
    enabled: bool = True,
):
    """Add a new spike rule."""
    repo = RuleRepository(db)
    return repo.create(
        user_id,
        symbol,
        timeframes,
        thresholds,
        baseline_window=baseline_window,
        cooldown_seconds=cooldown_seconds,
        enabled=enabled,
    )


def update_rule(db: Database, rule_id: str, fields: dict[str, Any]):
    """Apply a partial update to a rule."""
    return RuleRepository(db).update(rule_id, fields)


def set_monitor(
    db: Database,
    user_id: str,
    filters: FilterSet,
    enabled: bool,
    cooldown_seconds: Optional[int] = None,
):
    """Enable or disable the new-coin monitor for one filter configuration."""
    repo = BaselineRepository(db)
    return repo.set_enabled(user_id, compute_signature(filters), enabled, cooldown_seconds)


def describe_event(event: AlertEvent, rules: RuleRepository) -> str:
    """One-line rendering used by ``events list``."""
    message = format_event(event)
    return (
        f"{event.id}  {event.triggered_at:%Y-%m-%d %H:%M:%S}  {event.status.value:<9}  "
        f"{message.summary}  [rule: {rule_label(event, rules)}]"
    )


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--min-market-cap", type=float, required=True)
    parser.add_argument("--max-market-cap", type=float, required=True)
    parser.add_argument("--min-volume", type=float, required=True)
    parser.add_argument("--min-vol-to-mcap", type=float, required=True)


def _filters_from_args(args: argparse.Namespace) -> FilterSet:
    return FilterSet(
        min_market_cap=args.min_market_cap,
        max_market_cap=args.max_market_cap,
        min_volume_24h=args.min_volume,
        min_vol_to_mcap_pct=args.min_vol_to_mcap,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="coinwatch CLI")
    parser.add_argument("--db", default="data/coinwatch.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Spike rule management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("--user", required=True, help="User ID")
    add_rule_parser.add_argument("--symbol", required=True, help="Coin symbol, e.g. BTC")
    add_rule_parser.add_argument(
        "--timeframes", required=True, help="Comma-separated timeframes, e.g. 1h,4h"
    )
    add_rule_parser.add_argument(
        "--thresholds", required=True, help="Comma-separated multipliers, e.g. 2,3"
    )
    add_rule_parser.add_argument("--window", type=int, help="Baseline window in candles")
    add_rule_parser.add_argument("--cooldown", type=int, help="Cooldown in seconds")
    add_rule_parser.add_argument("--disabled", action="store_true", help="Create disabled")

    list_rules_parser = rules_subparsers.add_parser("list", help="List rules")
    list_rules_parser.add_argument("--user", required=True, help="User ID")

    update_rule_parser = rules_subparsers.add_parser("update", help="Update rule")
    update_rule_parser.add_argument("--id", required=True, help="Rule ID")
    update_rule_parser.add_argument("--symbol")
    update_rule_parser.add_argument("--timeframes")
    update_rule_parser.add_argument("--thresholds")
    update_rule_parser.add_argument("--window", type=int)
    update_rule_parser.add_argument("--cooldown", type=int)
    toggle = update_rule_parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None)
    toggle.add_argument("--disable", dest="enabled", action="store_false", default=None)

    delete_rule_parser = rules_subparsers.add_parser("delete", help="Delete rule")
    delete_rule_parser.add_argument("--id", required=True, help="Rule ID")

    # Monitor commands
    monitor_parser = subparsers.add_parser("monitor", help="New-coin monitor settings")
    monitor_subparsers = monitor_parser.add_subparsers(dest="action")

    show_monitor_parser = monitor_subparsers.add_parser("show", help="Show monitor state")
    show_monitor_parser.add_argument("--user", required=True, help="User ID")
    _add_filter_args(show_monitor_parser)

    set_monitor_parser = monitor_subparsers.add_parser("set", help="Configure monitor")
    set_monitor_parser.add_argument("--user", required=True, help="User ID")
    _add_filter_args(set_monitor_parser)
    monitor_toggle = set_monitor_parser.add_mutually_exclusive_group(required=True)
    monitor_toggle.add_argument("--enable", dest="enabled", action="store_true")
    monitor_toggle.add_argument("--disable", dest="enabled", action="store_false")
    set_monitor_parser.add_argument("--cooldown", type=int, help="Cooldown in seconds")

    # Event commands
    events_parser = subparsers.add_parser("events", help="Alert history")
    events_subparsers = events_parser.add_subparsers(dest="action")

    list_events_parser = events_subparsers.add_parser("list", help="List events")
    list_events_parser.add_argument("--user", required=True, help="User ID")
    list_events_parser.add_argument("--limit", type=int, default=50)

    status_parser = events_subparsers.add_parser("status", help="Dismiss or snooze")
    status_parser.add_argument("id", help="Event ID")
    status_parser.add_argument(
        "status", choices=[s.value.lower() for s in AlertStatus], help="New status"
    )

    # Channel link commands
    link_parser = subparsers.add_parser("link", help="Push channel links")
    link_subparsers = link_parser.add_subparsers(dest="action")

    add_link_parser = link_subparsers.add_parser("add", help="Link a channel")
    add_link_parser.add_argument("--user", required=True, help="User ID")
    add_link_parser.add_argument("--channel", required=True, choices=PUSH_CHANNELS)
    add_link_parser.add_argument(
        "--destination", required=True, help="Telegram chat id or Discord webhook URL"
    )

    remove_link_parser = link_subparsers.add_parser("remove", help="Unlink a channel")
    remove_link_parser.add_argument("--user", required=True, help="User ID")
    remove_link_parser.add_argument("--channel", required=True, choices=PUSH_CHANNELS)

    link_status_parser = link_subparsers.add_parser("status", help="Show channel links")
    link_status_parser.add_argument("--user", required=True, help="User ID")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("init", help="Create tables")

    return parser


def run_command(db: Database, args: argparse.Namespace) -> None:
    """Dispatch parsed arguments."""
    if args.command == "rules":
        repo = RuleRepository(db)
        if args.action == "add":
            rule = add_rule(
                db,
                args.user,
                args.symbol,
                _split(args.timeframes),
                _split(args.thresholds),
                baseline_window=args.window,
                cooldown_seconds=args.cooldown,
                enabled=not args.disabled,
            )
            print(f"Created rule with ID: {rule.id}")
        elif args.action == "list":
            for rule in repo.list_by_user(args.user):
                state = "on" if rule.enabled else "off"
                thresholds = ",".join(f"{t:g}x" for t in rule.thresholds)
                print(
                    f"{rule.id}: {rule.symbol} {','.join(rule.timeframes)} "
                    f"[{thresholds}] window={rule.baseline_window} "
                    f"cooldown={rule.cooldown_seconds}s ({state})"
                )
        elif args.action == "update":
            fields: dict[str, Any] = {}
            if args.symbol is not None:
                fields["symbol"] = args.symbol
            if args.timeframes is not None:
                fields["timeframes"] = _split(args.timeframes)
            if args.thresholds is not None:
                fields["thresholds"] = _split(args.thresholds)
            if args.window is not None:
                fields["baseline_window"] = args.window
            if args.cooldown is not None:
                fields["cooldown_seconds"] = args.cooldown
            if args.enabled is not None:
                fields["enabled"] = args.enabled
            rule = update_rule(db, args.id, fields)
            print(f"Updated rule {rule.id}")
        elif args.action == "delete":
            repo.delete(args.id)
            print(f"Deleted rule {args.id}")

    elif args.command == "monitor":
        filters = _filters_from_args(args)
        if args.action == "show":
            baseline = BaselineRepository(db).get_or_create(
                args.user, compute_signature(filters)
            )
            state = "enabled" if baseline.enabled else "disabled"
            print(f"Signature: {baseline.filter_signature}")
            print(f"State: {state}, cooldown {baseline.cooldown_seconds}s")
            print(f"Members: {len(baseline.member_ids)}")
            if baseline.last_evaluated_at:
                print(f"Last evaluated: {baseline.last_evaluated_at:%Y-%m-%d %H:%M:%S}")
        elif args.action == "set":
            baseline = set_monitor(db, args.user, filters, args.enabled, args.cooldown)
            state = "enabled" if baseline.enabled else "disabled"
            print(f"Monitor {baseline.filter_signature[:12]} {state}")

    elif args.command == "events":
        repo = EventRepository(db)
        if args.action == "list":
            rules = RuleRepository(db)
            for event in repo.list_by_user(args.user, args.limit):
                print(describe_event(event, rules))
        elif args.action == "status":
            event = repo.update_status(args.id, AlertStatus(args.status.upper()))
            print(f"Event {event.id} is now {event.status.value}")

    elif args.command == "link":
        repo = ChannelLinkRepository(db)
        if args.action == "add":
            link = repo.link(args.user, args.channel, args.destination)
            print(f"Linked {link.channel} for {link.user_id}")
        elif args.action == "remove":
            repo.unlink(args.user, args.channel)
            print(f"Unlinked {args.channel} for {args.user}")
        elif args.action == "status":
            for channel in PUSH_CHANNELS:
                link = repo.get(args.user, channel)
                if link is None:
                    print(f"{channel}: not linked")
                else:
                    state = "enabled" if link.enabled else "disabled"
                    print(f"{channel}: {link.destination} ({state})")

    elif args.command == "db":
        if args.action == "init":
            print(f"Database initialized at {db.db_path}")


def main():
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    try:
        run_command(db, args)
    except AlertError as e:
        parser.exit(1, f"Error: {e}\n")
    finally:
        db.close()


if __name__ == "__main__":
    main()
