"""
Main application entry point.
"""

import dataclasses
import logging
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from dotenv import load_dotenv

load_dotenv()

from stockwatch.config import AlertSettings, AppConfig
from stockwatch.data.history import HistoryBackfiller
from stockwatch.data.institutional import InstitutionalFetcher
from stockwatch.data.quotes import DOMESTIC, FOREIGN, MARKET_TZ, Quote, classify, trading_date_for
from stockwatch.data.resolver import QuoteResolver
from stockwatch.database.connection import Database
from stockwatch.database.models import AlertLog, CooldownEntry, PriceHistoryPoint, Security
from stockwatch.database.repository import (
    AlertLogRepository,
    ConditionRuleRepository,
    CooldownRepository,
    InstitutionalRepository,
    PositionRepository,
    PriceHistoryRepository,
    SecurityRepository,
    SettingsRepository,
    WatchlistRepository,
)
from stockwatch.indicators.engine import TECHNICAL_MIN_POINTS, IndicatorEngine
from stockwatch.notifiers.dispatcher import CommentaryProvider, NotificationDispatcher
from stockwatch.notifiers.line import LineNotifier
from stockwatch.reports import HoldingLine, build_daily_report, build_holdings_summary
from stockwatch.rules.cooldown import CooldownLedger
from stockwatch.rules.engine import ConditionEvaluator
from stockwatch.rules.types import AlertEvent
from stockwatch.scheduler import (
    CLEANUP,
    DAILY_REPORT,
    HOLDINGS_SUMMARY,
    INSTITUTIONAL,
    INTRADAY,
    RISK,
    TECHNICAL,
    US_INTRADAY,
    SweepGuard,
    SweepScheduler,
)

logger = logging.getLogger(__name__)


class StockWatchApp:
    """Wires resolution, evaluation and delivery into the scheduled sweeps."""

    def __init__(
        self,
        db: Database,
        config: Optional[AppConfig] = None,
        notifier: Optional[LineNotifier] = None,
        resolver: Optional[QuoteResolver] = None,
        commentary: Optional[CommentaryProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ):
        """
        Initialize the app.

        Args:
            db: Initialized database
            config: Application configuration
            notifier: LINE notifier; built from config when omitted
            resolver: Quote resolver; built from config when omitted
            commentary: Optional callable adding commentary to alerts
            clock: Returns the current market-local time
            sleep: Used for pacing between securities and deliveries
            dry_run: Evaluate without dispatching or changing alert state
        """
        self.db = db
        self.config = config or AppConfig()
        self.clock = clock or (lambda: datetime.now(MARKET_TZ))
        self.sleep = sleep
        self.dry_run = dry_run

        # Repositories
        self.security_repo = SecurityRepository(db)
        self.watchlist_repo = WatchlistRepository(db)
        self.position_repo = PositionRepository(db)
        self.rule_repo = ConditionRuleRepository(db)
        self.cooldown_repo = CooldownRepository(db)
        self.history_repo = PriceHistoryRepository(db)
        self.alert_log_repo = AlertLogRepository(db)
        self.settings_repo = SettingsRepository(db)
        self.institutional_repo = InstitutionalRepository(db)

        # Services
        self.resolver = resolver or QuoteResolver(
            self.config.providers,
            clock=self.clock,
            venue_hints={s.id: s.market for s in self.security_repo.list_all()},
        )
        self.indicators = IndicatorEngine(self.history_repo)
        self.backfiller = HistoryBackfiller(self.history_repo, clock=self.clock)
        self.institutional = InstitutionalFetcher(self.institutional_repo, self.config.providers)
        self.ledger = CooldownLedger(
            self.cooldown_repo,
            self.rule_repo,
            window=timedelta(hours=self.config.advanced.technical_cooldown_hours),
            clock=self.clock,
        )
        self.evaluator = ConditionEvaluator(
            ledger=self.ledger,
            position_repo=self.position_repo,
            watchlist_repo=self.watchlist_repo,
            clock=self.clock,
            dry_run=dry_run,
        )
        self.preview_evaluator = ConditionEvaluator(
            ledger=self.ledger, clock=self.clock, dry_run=True
        )
        self.notifier = notifier or LineNotifier(
            channel_access_token=self.config.line.channel_access_token,
            user_id=self.config.line.user_id,
            timeout=self.config.providers.structured_timeout,
        )
        self.dispatcher = NotificationDispatcher(
            self.notifier,
            self.alert_log_repo,
            pace_seconds=self.config.line.dispatch_delay_seconds,
            commentary=commentary,
            sleep=sleep,
        )
        self.guard = SweepGuard()
        self.sweeps: dict[str, Callable[[], int]] = {
            INTRADAY: self.run_intraday_sweep,
            RISK: self.run_risk_sweep,
            TECHNICAL: self.run_technical_sweep,
            US_INTRADAY: self.run_us_intraday_sweep,
            DAILY_REPORT: self.send_daily_report,
            HOLDINGS_SUMMARY: self.send_holdings_summary,
            INSTITUTIONAL: self.refresh_institutional,
            CLEANUP: self.cleanup_old_data,
        }

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def load_settings(self) -> AlertSettings:
        """Parse runtime alert settings; called once per sweep."""
        settings = AlertSettings.from_rows(self.settings_repo.all())
        if settings.line_user_id:
            self.notifier.user_id = settings.line_user_id
        return settings

    def resolve_and_record(self, security_id: str) -> Optional[Quote]:
        """Resolve a quote, persist the security and today's history row."""
        quote = self.resolver.resolve(security_id)
        if quote is None:
            return None

        try:
            self.security_repo.upsert(
                Security(id=quote.security_id, name=quote.name, market=quote.market)
            )
            self.history_repo.upsert(
                PriceHistoryPoint(
                    security_id=quote.security_id,
                    trade_date=quote.trade_date,
                    open=quote.open,
                    high=quote.high,
                    low=quote.low,
                    close=quote.price,
                    volume=quote.volume,
                )
            )
        except sqlite3.Error as e:
            logger.error(f"Could not record {quote.security_id}: {e}")
        return quote

    def _market_of(self, security_id: str) -> str:
        security = self.security_repo.get(security_id)
        if security is not None:
            return security.market
        return "US" if classify(security_id) == FOREIGN else "TSE"

    def _pace(self, index: int) -> None:
        delay = self.config.advanced.per_security_delay_seconds
        if index > 0 and delay > 0:
            self.sleep(delay)

    def _deliver(self, events: list[AlertEvent]) -> int:
        if not events:
            return 0
        if self.dry_run:
            for event in events:
                logger.info(f"[dry-run] {event.alert_type.value} {event.display_name}: {event.message}")
            return 0
        return self.dispatcher.dispatch(events)

    def _push_report(self, message: Optional[dict], label: str) -> bool:
        if message is None:
            logger.info(f"Nothing to report for {label}")
            return False
        if self.dry_run:
            logger.info(f"[dry-run] {label}: {message['altText']}")
            return False
        result = self.notifier.push([message])
        if not result.success:
            logger.error(f"Failed to send {label}: {result.error}")
        return result.success

    def _tracked_security_ids(self) -> list[str]:
        """Watched, held and rule-subscribed securities, in first-seen order."""
        ids = [entry.security_id for entry in self.watchlist_repo.list_active()]
        ids += [position.security_id for position in self.position_repo.list_open()]
        ids += [rule.security_id for rule in self.rule_repo.list_active()]
        return list(dict.fromkeys(ids))

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def run_sweep(self, kind: str) -> Optional[int]:
        """
        Run one sweep kind under its single-flight guard.

        Returns:
            The sweep's result count, or None when skipped because the same
            kind is still running
        """
        if kind not in self.sweeps:
            raise ValueError(f"Unknown sweep kind: {kind}")
        if not self.guard.try_acquire(kind):
            logger.warning(f"{kind} sweep still running, skipping this tick")
            return None
        started = time.monotonic()
        try:
            result = self.sweeps[kind]()
        finally:
            self.guard.release(kind)
        logger.info(f"{kind} sweep finished in {time.monotonic() - started:.1f}s: {result}")
        return result

    def _watch_entries(self, kind: str) -> dict[str, list]:
        """Active watch entries of one identifier kind, grouped by security."""
        entries_by_security: dict[str, list] = {}
        for entry in self.watchlist_repo.list_active():
            if classify(entry.security_id) == kind:
                entries_by_security.setdefault(entry.security_id, []).append(entry)
        return entries_by_security

    def run_intraday_sweep(self) -> int:
        """Threshold, MA and high/low checks over the domestic watch list."""
        settings = self.load_settings()
        entries_by_security = self._watch_entries(DOMESTIC)

        min_points = max(settings.ma_period + 1, settings.highlow_days + 1)
        events: list[AlertEvent] = []
        for index, (security_id, entries) in enumerate(entries_by_security.items()):
            self._pace(index)
            try:
                quote = self.resolve_and_record(security_id)
                if quote is None:
                    logger.info(f"No quote for {security_id}, skipping")
                    continue
                snapshot = self.indicators.snapshot(
                    security_id,
                    ma_period=settings.ma_period,
                    high_low_days=settings.highlow_days,
                    min_points=min_points,
                    as_of=quote.trade_date,
                )
                for entry in entries:
                    events.extend(self.evaluator.evaluate_watch(quote, snapshot, entry, settings))
            except Exception:
                logger.exception(f"Intraday check failed for {security_id}")

        self._deliver(events)
        return len(events)

    def run_us_intraday_sweep(self) -> int:
        """Change threshold and target checks over foreign tickers during US hours."""
        settings = self.load_settings()
        us_settings = dataclasses.replace(settings, price_threshold=settings.us_threshold)
        events: list[AlertEvent] = []
        for index, (security_id, entries) in enumerate(self._watch_entries(FOREIGN).items()):
            self._pace(index)
            try:
                quote = self.resolve_and_record(security_id)
                if quote is None:
                    logger.info(f"No quote for {security_id}, skipping")
                    continue
                for entry in entries:
                    events.extend(self.evaluator.evaluate_watch(quote, None, entry, us_settings))
            except Exception:
                logger.exception(f"US check failed for {security_id}")

        self._deliver(events)
        return len(events)

    def run_risk_sweep(self) -> int:
        """Target price and stop-loss / take-profit checks over open positions."""
        settings = self.load_settings()
        quotes: dict[str, Optional[Quote]] = {}
        events: list[AlertEvent] = []
        for position in self.position_repo.list_notifiable():
            try:
                if position.security_id not in quotes:
                    self._pace(len(quotes))
                    quotes[position.security_id] = self.resolve_and_record(position.security_id)
                quote = quotes[position.security_id]
                if quote is None:
                    logger.info(f"No quote for {position.security_id}, skipping position {position.id}")
                    continue
                events.extend(self.evaluator.evaluate_position(quote, position, settings))
            except Exception:
                logger.exception(f"Risk check failed for position {position.id}")

        self._deliver(events)
        return len(events)

    def run_technical_sweep(self) -> int:
        """Technical-indicator checks, deduplicated by the cooldown ledger."""
        self.load_settings()
        events: list[AlertEvent] = []
        for index, security_id in enumerate(self._tracked_security_ids()):
            self._pace(index)
            try:
                if self.config.advanced.backfill_history and self.backfiller.needs_backfill(
                    security_id, TECHNICAL_MIN_POINTS
                ):
                    self.backfiller.backfill(security_id, self._market_of(security_id))

                quote = self.resolve_and_record(security_id)
                snapshot = self.indicators.snapshot(
                    security_id,
                    min_points=TECHNICAL_MIN_POINTS,
                    as_of=quote.trade_date if quote else None,
                )
                if snapshot is None:
                    logger.info(f"Not enough history for {security_id}, skipping technical checks")
                    continue
                rules = self.rule_repo.list_active(security_id)
                events.extend(self.evaluator.evaluate_technical(security_id, quote, snapshot, rules))
            except Exception:
                logger.exception(f"Technical check failed for {security_id}")

        self._deliver(events)
        return len(events)

    def send_daily_report(self) -> int:
        """Push the watch-list close report; returns the number of securities."""
        self.load_settings()
        quotes = []
        security_ids = list(dict.fromkeys(e.security_id for e in self.watchlist_repo.list_active()))
        for index, security_id in enumerate(security_ids):
            self._pace(index)
            try:
                quote = self.resolve_and_record(security_id)
            except Exception:
                logger.exception(f"Daily report quote failed for {security_id}")
                continue
            if quote is not None:
                quotes.append(quote)
        today = trading_date_for(self.clock())
        self._push_report(build_daily_report(quotes, today), "daily report")
        return len(quotes)

    def send_holdings_summary(self) -> int:
        """Push the holdings close summary; returns the number of holdings."""
        settings = self.load_settings()
        if not settings.holdings_summary_enabled:
            logger.info("Holdings summary disabled")
            return 0

        quotes: dict[str, Optional[Quote]] = {}
        lines = []
        for position in self.position_repo.list_open():
            if position.security_id not in quotes:
                self._pace(len(quotes))
                try:
                    quotes[position.security_id] = self.resolve_and_record(position.security_id)
                except Exception:
                    logger.exception(f"Holdings quote failed for {position.security_id}")
                    quotes[position.security_id] = None
            quote = quotes[position.security_id]
            if quote is not None:
                lines.append(HoldingLine(position=position, quote=quote))

        today = trading_date_for(self.clock())
        message = build_holdings_summary(lines, today, settings.holdings_card_threshold)
        self._push_report(message, "holdings summary")
        return len(lines)

    def refresh_institutional(self) -> int:
        """Store today's institutional flows for tracked domestic securities."""
        domestic = [sid for sid in self._tracked_security_ids() if classify(sid) == DOMESTIC]
        return self.institutional.refresh(trading_date_for(self.clock()), domestic)

    def cleanup_old_data(self) -> int:
        """Delete expired history, institutional and audit rows."""
        now = self.clock()
        advanced = self.config.advanced
        history_cutoff = now.date() - timedelta(days=advanced.history_retention_days)
        removed = self.history_repo.delete_before(history_cutoff)
        removed += self.institutional_repo.delete_before(history_cutoff)
        removed += self.alert_log_repo.delete_before(
            now - timedelta(days=advanced.alert_log_retention_days)
        )
        logger.info(f"Cleanup removed {removed} rows")
        return removed

    # ------------------------------------------------------------------
    # Read interface
    # ------------------------------------------------------------------

    def evaluate_security(self, security_id: str) -> list[AlertEvent]:
        """Evaluate every condition for one security without side effects."""
        settings = self.load_settings()
        quote = self.resolver.resolve(security_id)
        snapshot = self.indicators.snapshot(
            security_id,
            ma_period=settings.ma_period,
            high_low_days=settings.highlow_days,
            min_points=max(settings.ma_period + 1, settings.highlow_days + 1),
            as_of=quote.trade_date if quote else None,
        )
        subject = self.watchlist_repo.get(security_id)
        if subject is None:
            positions = [p for p in self.position_repo.list_open() if p.security_id == security_id]
            subject = positions[0] if positions else None
        rules = self.rule_repo.list_active(security_id)
        return self.preview_evaluator.evaluate(quote, snapshot, subject, rules, settings)

    def recent_alerts(self, limit: int = 50) -> list[AlertLog]:
        return self.alert_log_repo.recent(limit)

    def cooldown_state(self) -> list[CooldownEntry]:
        return self.ledger.entries()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="stockwatch alert service")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="Evaluate without sending notifications"
    )
    parser.add_argument(
        "--once",
        choices=[INTRADAY, RISK, TECHNICAL, US_INTRADAY],
        help="Run a single sweep and exit instead of starting the scheduler",
    )

    args = parser.parse_args()

    # Load config
    from stockwatch.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(
        logging, config.advanced.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    app = StockWatchApp(db=db, config=config, dry_run=args.dry_run)
    if args.dry_run:
        logger.info("Dry run mode - no notifications will be sent")

    if args.once:
        app.run_sweep(args.once)
        db.close()
        return

    scheduler = SweepScheduler(app.run_sweep, config.schedule)
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        scheduler.shutdown()
        db.close()


if __name__ == "__main__":
    main()
