"""
Main application entry point.
"""

import logging
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from coinwatch.config import AppConfig
from coinwatch.data.market import BinanceMarketData, MarketDataPort, YahooMarketData
from coinwatch.data.universe import CoinGeckoUniverse, MembershipSource
from coinwatch.database.connection import Database
from coinwatch.database.models import FilterSet
from coinwatch.database.repository import (
    BaselineRepository,
    ChannelLinkRepository,
    EventRepository,
    RuleRepository,
)
from coinwatch.notifiers.base import Notifier, NotifierFactory
from coinwatch.notifiers.router import NotificationRouter
from coinwatch.rules.cooldown import CooldownTracker
from coinwatch.rules.entrants import EntrantEvaluator
from coinwatch.rules.spikes import SpikeEvaluator

logger = logging.getLogger(__name__)


def create_market_data(config: AppConfig) -> MarketDataPort:
    """Build the configured candle data provider."""
    market = config.market_data
    if market.provider == "yahoo":
        return YahooMarketData()
    return BinanceMarketData(
        base_url=market.base_url,
        timeout=market.request_timeout_seconds,
        max_retries=config.advanced.max_retries,
        backoff_factor=config.advanced.retry_backoff_seconds,
        cache_ttl=market.cache_ttl_seconds,
    )


def create_push_notifiers(config: AppConfig) -> list[Notifier]:
    """Build push transports from the notifications section."""
    notifications = config.notifications
    return [
        NotifierFactory.create({
            "type": "telegram",
            "bot_token": notifications.telegram.bot_token,
            "parse_mode": notifications.telegram.parse_mode,
            "timeout": config.market_data.request_timeout_seconds,
        }),
        NotifierFactory.create({
            "type": "discord",
            "username": notifications.discord.username,
            "include_chart_link": notifications.discord.include_chart_link,
            "timeout": config.market_data.request_timeout_seconds,
        }),
    ]


class AlertService:
    """Wires storage, market data, delivery and both evaluators."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        market_data: Optional[MarketDataPort] = None,
        universe: Optional[MembershipSource] = None,
        notifiers: Optional[list[Notifier]] = None,
        cooldowns: Optional[CooldownTracker] = None,
    ):
        """
        Initialize service.

        Args:
            config: Application configuration
            db: Initialized database
            market_data: Candle source; built from config when omitted
            universe: Membership source; CoinGecko when omitted
            notifiers: Push transports; built from config when omitted
            cooldowns: Cooldown tracker shared across runs in this process
        """
        self.config = config
        self.db = db

        # Repositories
        self.rule_repo = RuleRepository(
            db,
            default_baseline_window=config.spike.default_baseline_window,
            default_cooldown_seconds=config.spike.default_cooldown_seconds,
        )
        self.baseline_repo = BaselineRepository(
            db, default_cooldown_seconds=config.monitor.default_cooldown_seconds
        )
        self.event_repo = EventRepository(db, max_limit=config.advanced.event_limit_cap)
        self.link_repo = ChannelLinkRepository(db)

        # Services
        self.market_data = market_data or create_market_data(config)
        self.universe = universe or CoinGeckoUniverse(
            base_url=config.universe.base_url,
            per_page=config.universe.per_page,
            pages=config.universe.pages,
            timeout=config.market_data.request_timeout_seconds,
        )
        self.cooldowns = cooldowns or CooldownTracker()
        self.in_app = NotifierFactory.create({
            "type": "in_app",
            "max_per_user": config.notifications.in_app.max_per_user,
        })
        self.router = NotificationRouter(
            self.link_repo,
            notifiers=create_push_notifiers(config) if notifiers is None else notifiers,
            in_app=self.in_app,
        )

        self.entrants = EntrantEvaluator(
            self.baseline_repo,
            self.cooldowns,
            self.event_repo,
            self.router,
            seed_on_first_evaluation=config.monitor.seed_on_first_evaluation,
        )
        self.spikes = SpikeEvaluator(
            self.rule_repo,
            self.market_data,
            self.cooldowns,
            self.event_repo,
            self.router,
            fetch_workers=config.spike.fetch_workers,
            fetch_timeout_seconds=config.spike.fetch_timeout_seconds,
        )

    def run_check(self) -> int:
        """Run spike evaluation for every user with rules."""
        fired = 0
        for user_id in self.rule_repo.list_user_ids():
            try:
                fired += self.spikes.evaluate_user(user_id)
            except Exception as e:
                logger.error(f"Error checking user {user_id}: {e}")
        logger.info(f"Spike check complete, {fired} alerts fired")
        return fired

    def run_monitor(self, user_id: str, filters: FilterSet) -> int:
        """Fetch the filtered coin set and alert on new entrants."""
        snapshot = self.universe.fetch_members(filters)
        fired = self.entrants.evaluate(user_id, snapshot.member_ids, filters, snapshot.lookup)
        logger.info(
            f"Monitor for {user_id}: {len(snapshot.member_ids)} members, {fired} alerts fired"
        )
        return fired


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="coinwatch alert service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="Run without sending push notifications"
    )
    parser.add_argument("--monitor-user", help="Also run the new-coin monitor for this user")
    parser.add_argument("--min-market-cap", type=float, default=0)
    parser.add_argument("--max-market-cap", type=float, default=1e13)
    parser.add_argument("--min-volume", type=float, default=0)
    parser.add_argument("--min-vol-to-mcap", type=float, default=0)

    args = parser.parse_args()

    # Load config
    from coinwatch.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    if args.dry_run:
        logger.info("Dry run mode - alerts are recorded in-app only")

    service = AlertService(config=config, db=db, notifiers=[] if args.dry_run else None)
    try:
        service.run_check()
        if args.monitor_user:
            filters = FilterSet(
                min_market_cap=args.min_market_cap,
                max_market_cap=args.max_market_cap,
                min_volume_24h=args.min_volume,
                min_vol_to_mcap_pct=args.min_vol_to_mcap,
            )
            service.run_monitor(args.monitor_user, filters)
    finally:
        db.close()


if __name__ == "__main__":
    main()
