"""
CLI commands for stockwatch administration.
"""

import argparse
from dataclasses import fields
from datetime import date
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from stockwatch.config import AlertSettings, ProvidersConfig
from stockwatch.data.history import HistoryBackfiller
from stockwatch.data.quotes import FOREIGN, Quote, classify
from stockwatch.data.resolver import QuoteResolver
from stockwatch.database.connection import Database
from stockwatch.database.models import SHARES_PER_LOT, ConditionRule, Position, WatchEntry
from stockwatch.database.repository import (
    AlertLogRepository,
    ConditionRuleRepository,
    CooldownRepository,
    PositionRepository,
    PriceHistoryRepository,
    SecurityRepository,
    SettingsRepository,
    WatchlistRepository,
)
from stockwatch.rules.types import TECHNICAL_TYPES, parse_alert_type


def _normalize_id(security_id: str) -> str:
    code = security_id.strip().upper()
    if classify(code) is None:
        raise ValueError(f"Not a valid security id: {security_id}")
    return code


def _ensure_security(db: Database, security_id: str) -> str:
    """Create a placeholder security row so dependent rows can reference it."""
    code = _normalize_id(security_id)
    market = "US" if classify(code) == FOREIGN else "TSE"
    SecurityRepository(db).get_or_create(code, market)
    return code


def add_to_watchlist(
    db: Database,
    security_ids: list[str],
    owner: str = "default",
    threshold: Optional[float] = None,
    target_high: Optional[float] = None,
    target_low: Optional[float] = None,
) -> dict:
    """Add securities to an owner's watch list."""
    repo = WatchlistRepository(db)
    added = []
    invalid = []
    for security_id in security_ids:
        try:
            code = _ensure_security(db, security_id)
        except ValueError:
            invalid.append(security_id)
            continue
        repo.add(
            WatchEntry(
                security_id=code,
                owner=owner,
                custom_threshold=threshold,
                target_price_high=target_high,
                target_price_low=target_low,
            )
        )
        added.append(code)
    return {"added": added, "invalid": invalid}


def add_position(
    db: Database,
    security_id: str,
    lots: int,
    odd_shares: int,
    price: float,
    owner: str = "default",
    target_high: Optional[float] = None,
    target_low: Optional[float] = None,
    notify: bool = True,
) -> Position:
    """Record a new held position."""
    if lots < 0 or odd_shares < 0 or lots * SHARES_PER_LOT + odd_shares == 0:
        raise ValueError("A position needs a positive number of shares")
    if price <= 0:
        raise ValueError("Acquisition price must be positive")
    code = _ensure_security(db, security_id)
    return PositionRepository(db).create(
        Position(
            security_id=code,
            owner=owner,
            lots=lots,
            odd_shares=odd_shares,
            won_price=price,
            target_price_high=target_high,
            target_price_low=target_low,
            notify_enabled=notify,
        )
    )


def add_rule(
    db: Database,
    security_id: str,
    condition_type: str,
    parameter: Optional[float] = None,
    owner: str = "default",
) -> ConditionRule:
    """Subscribe a security to a technical condition."""
    alert_type = parse_alert_type(condition_type)
    if alert_type not in TECHNICAL_TYPES:
        raise ValueError(f"{alert_type.value} is not a technical condition")
    code = _ensure_security(db, security_id)
    return ConditionRuleRepository(db).create(
        ConditionRule(
            security_id=code,
            owner=owner,
            condition_type=alert_type.value,
            parameter=parameter,
        )
    )


def set_setting(db: Database, key: str, value: str) -> None:
    """Store an alert setting after checking it parses."""
    AlertSettings.parse_value(key, value)
    SettingsRepository(db).set(key, value)


def lookup_quote(security_id: str, config: Optional[ProvidersConfig] = None) -> Optional[Quote]:
    """Resolve a quote without touching the database."""
    return QuoteResolver(config).resolve(_normalize_id(security_id))


def _format_quote(quote: Quote) -> str:
    prev = f"{quote.previous_close}" if quote.previous_close is not None else "-"
    return (
        f"{quote.name} ({quote.security_id}, {quote.market}) {quote.price} "
        f"{quote.change:+.2f} ({quote.change_percent:+.2f}%) prev {prev} "
        f"vol {quote.volume:,} [{quote.source}, {quote.session}]"
    )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="stockwatch admin CLI")
    parser.add_argument("--db", default="data/stockwatch.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Watchlist commands
    watchlist_parser = subparsers.add_parser("watchlist", help="Watch list management")
    watchlist_subparsers = watchlist_parser.add_subparsers(dest="action")

    add_watchlist_parser = watchlist_subparsers.add_parser("add", help="Add to watch list")
    add_watchlist_parser.add_argument("--symbols", required=True, help="Comma-separated ids")
    add_watchlist_parser.add_argument("--owner", default="default", help="Owner")
    add_watchlist_parser.add_argument("--threshold", type=float, help="Custom change threshold %%")
    add_watchlist_parser.add_argument("--high", type=float, help="Target price high")
    add_watchlist_parser.add_argument("--low", type=float, help="Target price low")

    show_watchlist_parser = watchlist_subparsers.add_parser("show", help="Show watch list")
    show_watchlist_parser.add_argument("--owner", help="Only this owner")

    remove_watchlist_parser = watchlist_subparsers.add_parser("remove", help="Stop watching")
    remove_watchlist_parser.add_argument("security_id")
    remove_watchlist_parser.add_argument("--owner", default="default", help="Owner")

    # Holdings commands
    holdings_parser = subparsers.add_parser("holdings", help="Position management")
    holdings_subparsers = holdings_parser.add_subparsers(dest="action")

    add_holding_parser = holdings_subparsers.add_parser("add", help="Record a position")
    add_holding_parser.add_argument("security_id")
    add_holding_parser.add_argument("--lots", type=int, default=0, help="Board lots")
    add_holding_parser.add_argument("--odd", type=int, default=0, help="Odd shares")
    add_holding_parser.add_argument("--price", type=float, required=True, help="Acquisition price")
    add_holding_parser.add_argument("--owner", default="default", help="Owner")
    add_holding_parser.add_argument("--high", type=float, help="Target price high")
    add_holding_parser.add_argument("--low", type=float, help="Target price low")
    add_holding_parser.add_argument("--no-notify", action="store_true", help="Mute risk alerts")

    holdings_subparsers.add_parser("show", help="List open positions")

    sell_parser = holdings_subparsers.add_parser("sell", help="Record a disposal")
    sell_parser.add_argument("position_id", type=int)
    sell_parser.add_argument("--price", type=float, required=True, help="Sold price")
    sell_parser.add_argument("--date", type=date.fromisoformat, help="Sold date (YYYY-MM-DD)")

    target_parser = holdings_subparsers.add_parser("target", help="Set or re-arm targets")
    target_parser.add_argument("position_id", type=int)
    target_parser.add_argument("--high", type=float, help="Target price high")
    target_parser.add_argument("--low", type=float, help="Target price low")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Technical rule management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("security_id")
    add_rule_parser.add_argument(
        "--type", required=True, choices=[t.value for t in TECHNICAL_TYPES]
    )
    add_rule_parser.add_argument("--parameter", type=float, help="Level override")
    add_rule_parser.add_argument("--owner", default="default", help="Owner")

    list_rules_parser = rules_subparsers.add_parser("list", help="List active rules")
    list_rules_parser.add_argument("--security", help="Only this security")

    # Settings commands
    settings_parser = subparsers.add_parser("settings", help="Alert settings")
    settings_subparsers = settings_parser.add_subparsers(dest="action")
    set_parser = settings_subparsers.add_parser("set", help="Set a value")
    set_parser.add_argument("key", choices=[f.name for f in fields(AlertSettings)])
    set_parser.add_argument("value")
    settings_subparsers.add_parser("show", help="Show effective settings")

    # Quote command
    quote_parser = subparsers.add_parser("quote", help="Resolve a quote")
    quote_parser.add_argument("security_id")

    # History commands
    history_parser = subparsers.add_parser("history", help="Price history")
    history_subparsers = history_parser.add_subparsers(dest="action")
    backfill_parser = history_subparsers.add_parser("backfill", help="Download daily history")
    backfill_parser.add_argument("security_id")

    # Alerts commands
    alerts_parser = subparsers.add_parser("alerts", help="Alert audit log")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")
    log_parser = alerts_subparsers.add_parser("log", help="Show recent alerts")
    log_parser.add_argument("--limit", type=int, default=20)

    # Cooldown commands
    cooldown_parser = subparsers.add_parser("cooldown", help="Technical alert cooldowns")
    cooldown_subparsers = cooldown_parser.add_subparsers(dest="action")
    cooldown_subparsers.add_parser("show", help="Show last firing times")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("init", help="Create tables")

    args = parser.parse_args()

    if args.command == "quote":
        quote = lookup_quote(args.security_id)
        print(_format_quote(quote) if quote else f"No quote for {args.security_id}")
        return

    # Initialize database
    db = Database(args.db)
    db.initialize()

    try:
        if args.command == "watchlist":
            if args.action == "add":
                ids = [s.strip() for s in args.symbols.split(",") if s.strip()]
                result = add_to_watchlist(
                    db, ids, owner=args.owner, threshold=args.threshold,
                    target_high=args.high, target_low=args.low,
                )
                print(f"Added: {result['added']}")
                if result["invalid"]:
                    print(f"Invalid: {result['invalid']}")
            elif args.action == "show":
                for entry in WatchlistRepository(db).list_active(args.owner):
                    threshold = f"{entry.custom_threshold}%" if entry.custom_threshold else "default"
                    print(
                        f"{entry.security_id}: {entry.security_name} [{entry.owner}] "
                        f"threshold={threshold} high={entry.target_price_high} low={entry.target_price_low}"
                    )
            elif args.action == "remove":
                WatchlistRepository(db).deactivate(args.security_id.upper(), args.owner)
                print(f"Removed {args.security_id.upper()}")

        elif args.command == "holdings":
            repo = PositionRepository(db)
            if args.action == "add":
                position = add_position(
                    db, args.security_id, args.lots, args.odd, args.price,
                    owner=args.owner, target_high=args.high, target_low=args.low,
                    notify=not args.no_notify,
                )
                print(f"Created position with ID: {position.id}")
            elif args.action == "show":
                for p in repo.list_open():
                    print(
                        f"#{p.id} {p.security_id} {p.security_name}: {p.total_shares:,} shares "
                        f"@ {p.won_price} high={p.target_price_high} low={p.target_price_low}"
                    )
            elif args.action == "sell":
                if repo.get_by_id(args.position_id) is None:
                    raise ValueError(f"No position {args.position_id}")
                repo.mark_sold(args.position_id, args.price, args.date or date.today())
                print(f"Position {args.position_id} marked sold at {args.price}")
            elif args.action == "target":
                if repo.get_by_id(args.position_id) is None:
                    raise ValueError(f"No position {args.position_id}")
                repo.set_targets(args.position_id, args.high, args.low)
                print(f"Targets for {args.position_id}: high={args.high} low={args.low}")

        elif args.command == "rules":
            if args.action == "add":
                rule = add_rule(db, args.security_id, args.type, args.parameter, args.owner)
                print(f"Created rule with ID: {rule.id}")
            elif args.action == "list":
                for rule in ConditionRuleRepository(db).list_active(
                    args.security.upper() if args.security else None
                ):
                    print(
                        f"#{rule.id} {rule.security_id} {rule.condition_type} "
                        f"parameter={rule.parameter} last={rule.last_triggered}"
                    )

        elif args.command == "settings":
            if args.action == "set":
                set_setting(db, args.key, args.value)
                print(f"{args.key} = {args.value}")
            elif args.action == "show":
                settings = AlertSettings.from_rows(SettingsRepository(db).all())
                for f in fields(AlertSettings):
                    print(f"{f.name}: {getattr(settings, f.name)}")

        elif args.command == "history":
            if args.action == "backfill":
                code = _ensure_security(db, args.security_id)
                market = SecurityRepository(db).get(code).market
                count = HistoryBackfiller(PriceHistoryRepository(db)).backfill(code, market)
                print(f"Stored {count} rows for {code}")

        elif args.command == "alerts":
            if args.action == "log":
                for log in AlertLogRepository(db).recent(args.limit):
                    status = "sent" if log.delivered else "failed"
                    print(
                        f"{log.created_at:%Y-%m-%d %H:%M} {log.security_id} "
                        f"{log.condition_type} {log.message} [{status}]"
                    )

        elif args.command == "cooldown":
            if args.action == "show":
                for entry in CooldownRepository(db).list_all():
                    print(f"{entry.security_id} {entry.condition_type}: {entry.last_fired_at}")

        elif args.command == "db":
            if args.action == "init":
                print(f"Database ready at {args.db}")

    except ValueError as e:
        parser.exit(2, f"error: {e}\n")
    finally:
        db.close()


if __name__ == "__main__":
    main()
