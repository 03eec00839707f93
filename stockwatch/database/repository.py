"""
Repository classes for CRUD operations.
"""

from datetime import date, datetime, timedelta
from typing import Optional

from .connection import Database
from .models import (
    AlertLog,
    ConditionRule,
    CooldownEntry,
    InstitutionalFlow,
    Position,
    PriceHistoryPoint,
    Security,
    WatchEntry,
)


def _to_date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _to_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class SecurityRepository:
    """CRUD operations for securities."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, security_id: str) -> Optional[Security]:
        """Get security by id."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM securities WHERE id = ?", (security_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_security(row)

    def list_all(self) -> list[Security]:
        """List all securities."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM securities ORDER BY id")
        return [self._row_to_security(row) for row in cursor.fetchall()]

    def upsert(self, security: Security) -> Security:
        """
        Create a security or refresh an existing one.

        The stored name is only replaced while it is still the placeholder
        (the id itself); the market is always taken from the caller.
        """
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO securities (id, name, market)
            VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = CASE
                    WHEN securities.name = securities.id AND excluded.name != excluded.id
                    THEN excluded.name
                    ELSE securities.name
                END,
                market = excluded.market
            """,
            (security.id, security.name or security.id, security.market),
        )
        self.db.connection.commit()
        return self.get(security.id)

    def get_or_create(self, security_id: str, market: str) -> Security:
        """Return the security, creating a placeholder row if unknown."""
        existing = self.get(security_id)
        if existing:
            return existing
        return self.upsert(Security(id=security_id, name=security_id, market=market))

    def _row_to_security(self, row) -> Security:
        """Convert database row to Security."""
        return Security(
            id=row["id"],
            name=row["name"],
            market=row["market"],
            created_at=_to_datetime(row["created_at"]),
        )


class WatchlistRepository:
    """CRUD operations for watch entries."""

    def __init__(self, db: Database):
        self.db = db

    def add(self, entry: WatchEntry) -> WatchEntry:
        """Add or re-activate a watch entry."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO watchlist
            (security_id, owner, custom_threshold, target_price_high, target_price_low, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(security_id, owner) DO UPDATE SET
                custom_threshold = excluded.custom_threshold,
                target_price_high = excluded.target_price_high,
                target_price_low = excluded.target_price_low,
                is_active = excluded.is_active
            """,
            (
                entry.security_id,
                entry.owner,
                entry.custom_threshold,
                entry.target_price_high,
                entry.target_price_low,
                1 if entry.is_active else 0,
            ),
        )
        self.db.connection.commit()
        return self.get(entry.security_id, entry.owner)

    def get(self, security_id: str, owner: str = "default") -> Optional[WatchEntry]:
        """Get a single watch entry."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT w.*, s.name AS security_name FROM watchlist w
            LEFT JOIN securities s ON s.id = w.security_id
            WHERE w.security_id = ? AND w.owner = ?
            """,
            (security_id, owner),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def deactivate(self, security_id: str, owner: str = "default") -> None:
        """Stop watching a security without losing its settings."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "UPDATE watchlist SET is_active = 0 WHERE security_id = ? AND owner = ?",
            (security_id, owner),
        )
        self.db.connection.commit()

    def clear_target(self, entry_id: int, column: str) -> None:
        """Disarm a fired watch target ("target_price_high" or "target_price_low")."""
        if column not in ("target_price_high", "target_price_low"):
            raise ValueError(f"Not a target column: {column}")
        cursor = self.db.connection.cursor()
        cursor.execute(f"UPDATE watchlist SET {column} = NULL WHERE id = ?", (entry_id,))
        self.db.connection.commit()

    def list_active(self, owner: Optional[str] = None) -> list[WatchEntry]:
        """List active watch entries, optionally for one owner."""
        cursor = self.db.connection.cursor()
        sql = """
            SELECT w.*, s.name AS security_name FROM watchlist w
            LEFT JOIN securities s ON s.id = w.security_id
            WHERE w.is_active = 1
        """
        params: tuple = ()
        if owner is not None:
            sql += " AND w.owner = ?"
            params = (owner,)
        cursor.execute(sql + " ORDER BY w.id", params)
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def _row_to_entry(self, row) -> WatchEntry:
        """Convert database row to WatchEntry."""
        return WatchEntry(
            id=row["id"],
            security_id=row["security_id"],
            owner=row["owner"],
            custom_threshold=row["custom_threshold"],
            target_price_high=row["target_price_high"],
            target_price_low=row["target_price_low"],
            is_active=bool(row["is_active"]),
            security_name=row["security_name"],
        )


class PositionRepository:
    """CRUD operations for held positions."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, position: Position) -> Position:
        """Record a new position."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO holdings
            (security_id, owner, lots, odd_shares, won_price, is_won, is_sold,
             target_price_high, target_price_low, notify_enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                position.security_id,
                position.owner,
                position.lots,
                position.odd_shares,
                position.won_price,
                1 if position.is_won else 0,
                1 if position.is_sold else 0,
                position.target_price_high,
                position.target_price_low,
                1 if position.notify_enabled else 0,
            ),
        )
        self.db.connection.commit()
        position.id = cursor.lastrowid
        return position

    def get_by_id(self, position_id: int) -> Optional[Position]:
        """Get position by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT h.*, s.name AS security_name FROM holdings h
            LEFT JOIN securities s ON s.id = h.security_id
            WHERE h.id = ?
            """,
            (position_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_position(row)

    def list_open(self, owner: Optional[str] = None) -> list[Position]:
        """List won, unsold positions."""
        cursor = self.db.connection.cursor()
        sql = """
            SELECT h.*, s.name AS security_name FROM holdings h
            LEFT JOIN securities s ON s.id = h.security_id
            WHERE h.is_won = 1 AND h.is_sold = 0
        """
        params: tuple = ()
        if owner is not None:
            sql += " AND h.owner = ?"
            params = (owner,)
        cursor.execute(sql + " ORDER BY h.id", params)
        return [self._row_to_position(row) for row in cursor.fetchall()]

    def list_notifiable(self) -> list[Position]:
        """List open positions that want risk notifications."""
        return [p for p in self.list_open() if p.notify_enabled]

    def set_targets(
        self,
        position_id: int,
        target_price_high: Optional[float],
        target_price_low: Optional[float],
    ) -> None:
        """Replace both target prices (re-arms one-shot targets)."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE holdings SET target_price_high = ?, target_price_low = ?
            WHERE id = ?
            """,
            (target_price_high, target_price_low, position_id),
        )
        self.db.connection.commit()

    def clear_target_high(self, position_id: int) -> None:
        """Disarm the high target after it fired."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "UPDATE holdings SET target_price_high = NULL WHERE id = ?", (position_id,)
        )
        self.db.connection.commit()

    def clear_target_low(self, position_id: int) -> None:
        """Disarm the low target after it fired."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "UPDATE holdings SET target_price_low = NULL WHERE id = ?", (position_id,)
        )
        self.db.connection.commit()

    def mark_sold(self, position_id: int, sold_price: float, sold_date: date) -> None:
        """Record the disposal of a position."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE holdings SET is_sold = 1, sold_price = ?, sold_date = ?
            WHERE id = ?
            """,
            (sold_price, sold_date.isoformat(), position_id),
        )
        self.db.connection.commit()

    def _row_to_position(self, row) -> Position:
        """Convert database row to Position."""
        return Position(
            id=row["id"],
            security_id=row["security_id"],
            owner=row["owner"],
            lots=row["lots"] or 0,
            odd_shares=row["odd_shares"] or 0,
            won_price=row["won_price"],
            is_won=bool(row["is_won"]),
            is_sold=bool(row["is_sold"]),
            sold_price=row["sold_price"],
            sold_date=_to_date(row["sold_date"]),
            target_price_high=row["target_price_high"],
            target_price_low=row["target_price_low"],
            notify_enabled=bool(row["notify_enabled"]),
            security_name=row["security_name"],
        )


class ConditionRuleRepository:
    """CRUD operations for technical condition rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, rule: ConditionRule) -> ConditionRule:
        """Create or re-activate a rule."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO condition_rules
            (security_id, owner, condition_type, parameter, is_active)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(security_id, owner, condition_type) DO UPDATE SET
                parameter = excluded.parameter,
                is_active = excluded.is_active
            """,
            (
                rule.security_id,
                rule.owner,
                rule.condition_type,
                rule.parameter,
                1 if rule.is_active else 0,
            ),
        )
        self.db.connection.commit()
        cursor.execute(
            """
            SELECT * FROM condition_rules
            WHERE security_id = ? AND owner = ? AND condition_type = ?
            """,
            (rule.security_id, rule.owner, rule.condition_type),
        )
        return self._row_to_rule(cursor.fetchone())

    def list_active(self, security_id: Optional[str] = None) -> list[ConditionRule]:
        """List active rules, optionally for one security."""
        cursor = self.db.connection.cursor()
        if security_id is None:
            cursor.execute("SELECT * FROM condition_rules WHERE is_active = 1 ORDER BY id")
        else:
            cursor.execute(
                """
                SELECT * FROM condition_rules
                WHERE is_active = 1 AND security_id = ?
                ORDER BY id
                """,
                (security_id,),
            )
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def deactivate(self, rule_id: int) -> None:
        """Disable a rule."""
        cursor = self.db.connection.cursor()
        cursor.execute("UPDATE condition_rules SET is_active = 0 WHERE id = ?", (rule_id,))
        self.db.connection.commit()

    def stamp_triggered(self, security_id: str, condition_type: str, when: datetime) -> None:
        """Record the last trigger time on every matching rule."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE condition_rules SET last_triggered = ?
            WHERE security_id = ? AND condition_type = ?
            """,
            (when.isoformat(), security_id, condition_type),
        )
        self.db.connection.commit()

    def _row_to_rule(self, row) -> ConditionRule:
        """Convert database row to ConditionRule."""
        return ConditionRule(
            id=row["id"],
            security_id=row["security_id"],
            owner=row["owner"],
            condition_type=row["condition_type"],
            parameter=row["parameter"],
            is_active=bool(row["is_active"]),
            last_triggered=_to_datetime(row["last_triggered"]),
        )


class CooldownRepository:
    """Persisted last-fired timestamps keyed on (security, condition type)."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, security_id: str, condition_type: str) -> Optional[CooldownEntry]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM cooldown_ledger
            WHERE security_id = ? AND condition_type = ?
            """,
            (security_id, condition_type),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def upsert(self, security_id: str, condition_type: str, when: datetime) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO cooldown_ledger (security_id, condition_type, last_fired_at)
            VALUES (?, ?, ?)
            ON CONFLICT(security_id, condition_type) DO UPDATE SET
                last_fired_at = excluded.last_fired_at
            """,
            (security_id, condition_type, when.isoformat()),
        )
        self.db.connection.commit()

    def list_all(self) -> list[CooldownEntry]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM cooldown_ledger ORDER BY last_fired_at DESC"
        )
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def _row_to_entry(self, row) -> CooldownEntry:
        return CooldownEntry(
            security_id=row["security_id"],
            condition_type=row["condition_type"],
            last_fired_at=_to_datetime(row["last_fired_at"]),
        )


class PriceHistoryRepository:
    """Daily OHLCV rows, one per security and trading date."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, point: PriceHistoryPoint) -> None:
        """Insert the day's row or overwrite it (last write of the day wins)."""
        self.bulk_upsert([point])

    def bulk_upsert(self, points: list[PriceHistoryPoint]) -> None:
        """Upsert many rows in one transaction."""
        cursor = self.db.connection.cursor()
        cursor.executemany(
            """
            INSERT INTO price_history
            (security_id, trade_date, open_price, high_price, low_price, close_price, volume)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(security_id, trade_date) DO UPDATE SET
                open_price = excluded.open_price,
                high_price = excluded.high_price,
                low_price = excluded.low_price,
                close_price = excluded.close_price,
                volume = excluded.volume
            """,
            [
                (
                    p.security_id,
                    p.trade_date.isoformat(),
                    p.open,
                    p.high,
                    p.low,
                    p.close,
                    int(p.volume or 0),
                )
                for p in points
            ],
        )
        self.db.connection.commit()

    def recent(self, security_id: str, limit: int = 60) -> list[PriceHistoryPoint]:
        """Most recent rows, newest first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM price_history
            WHERE security_id = ?
            ORDER BY trade_date DESC
            LIMIT ?
            """,
            (security_id, limit),
        )
        return [self._row_to_point(row) for row in cursor.fetchall()]

    def count(self, security_id: str) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM price_history WHERE security_id = ?", (security_id,)
        )
        return cursor.fetchone()[0]

    def delete_before(self, cutoff: date) -> int:
        """Delete rows older than the cutoff date."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM price_history WHERE trade_date < ?", (cutoff.isoformat(),)
        )
        self.db.connection.commit()
        return cursor.rowcount

    def _row_to_point(self, row) -> PriceHistoryPoint:
        return PriceHistoryPoint(
            security_id=row["security_id"],
            trade_date=_to_date(row["trade_date"]),
            open=row["open_price"],
            high=row["high_price"],
            low=row["low_price"],
            close=row["close_price"],
            volume=row["volume"] or 0,
        )


class AlertLogRepository:
    """Append-only audit log of alerts."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, log: AlertLog) -> AlertLog:
        """Append an audit row."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO alert_logs
            (security_id, security_name, condition_type, message, price,
             change_percent, commentary, delivered, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.security_id,
                log.security_name,
                log.condition_type,
                log.message,
                log.price,
                log.change_percent,
                log.commentary,
                1 if log.delivered else 0,
                log.created_at.isoformat(),
            ),
        )
        self.db.connection.commit()
        log.id = cursor.lastrowid
        return log

    def recent(self, limit: int = 50) -> list[AlertLog]:
        """Newest audit rows first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM alert_logs ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_log(row) for row in cursor.fetchall()]

    def delete_before(self, cutoff: datetime) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM alert_logs WHERE created_at < ?", (cutoff.isoformat(),)
        )
        self.db.connection.commit()
        return cursor.rowcount

    def _row_to_log(self, row) -> AlertLog:
        return AlertLog(
            id=row["id"],
            security_id=row["security_id"],
            security_name=row["security_name"],
            condition_type=row["condition_type"],
            message=row["message"],
            price=row["price"],
            change_percent=row["change_percent"],
            commentary=row["commentary"],
            delivered=bool(row["delivered"]),
            created_at=_to_datetime(row["created_at"]),
        )


class SettingsRepository:
    """String key/value settings."""

    def __init__(self, db: Database):
        self.db = db

    def all(self) -> dict[str, Optional[str]]:
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT key, value FROM settings")
        return {row["key"]: row["value"] for row in cursor.fetchall()}

    def set(self, key: str, value: str) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = CURRENT_TIMESTAMP
            """,
            (key, value),
        )
        self.db.connection.commit()


class InstitutionalRepository:
    """Daily institutional investor flows."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, flow: InstitutionalFlow) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO institutional_trading
            (security_id, trade_date, foreign_net, trust_net, dealer_net, total_net)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(security_id, trade_date) DO UPDATE SET
                foreign_net = excluded.foreign_net,
                trust_net = excluded.trust_net,
                dealer_net = excluded.dealer_net,
                total_net = excluded.total_net
            """,
            (
                flow.security_id,
                flow.trade_date.isoformat(),
                flow.foreign_net,
                flow.trust_net,
                flow.dealer_net,
                flow.total_net,
            ),
        )
        self.db.connection.commit()

    def recent(self, security_id: str, limit: int = 30) -> list[InstitutionalFlow]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM institutional_trading
            WHERE security_id = ?
            ORDER BY trade_date DESC
            LIMIT ?
            """,
            (security_id, limit),
        )
        return [
            InstitutionalFlow(
                security_id=row["security_id"],
                trade_date=_to_date(row["trade_date"]),
                foreign_net=row["foreign_net"],
                trust_net=row["trust_net"],
                dealer_net=row["dealer_net"],
                total_net=row["total_net"],
            )
            for row in cursor.fetchall()
        ]

    def delete_before(self, cutoff: date) -> int:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "DELETE FROM institutional_trading WHERE trade_date < ?",
            (cutoff.isoformat(),),
        )
        self.db.connection.commit()
        return cursor.rowcount
