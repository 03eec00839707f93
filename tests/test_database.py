"""
Database layer tests.
Tests for SQLite connection, schema creation, and CRUD operations.
"""

import pytest
import sqlite3
import threading
from datetime import date, datetime, timedelta
from pathlib import Path

from stockwatch.database.connection import Database
from stockwatch.database.models import (
    AlertLog,
    ConditionRule,
    InstitutionalFlow,
    Position,
    PriceHistoryPoint,
    Security,
    WatchEntry,
)
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


class TestDatabaseConnection:
    """Test database connection and initialization."""

    def test_create_in_memory_database(self):
        """Should create an in-memory SQLite database."""
        db = Database(":memory:")
        assert db.connection is not None

    def test_create_file_database(self, tmp_path: Path):
        """Should create a file-based SQLite database and its directory."""
        db_path = tmp_path / "nested" / "stockwatch.db"
        Database(str(db_path))
        assert db_path.exists()

    def test_initialize_schema(self, db):
        """Should create all required tables on initialization."""
        cursor = db.connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}

        expected_tables = {
            "securities",
            "watchlist",
            "holdings",
            "condition_rules",
            "cooldown_ledger",
            "price_history",
            "alert_logs",
            "settings",
            "institutional_trading",
        }
        assert expected_tables.issubset(tables)

    def test_initialize_is_idempotent(self, db):
        """Should allow initializing an existing schema again."""
        db.initialize()

    def test_close_connection(self):
        """Should properly close database connection."""
        db = Database(":memory:")
        db.close()
        with pytest.raises(sqlite3.ProgrammingError):
            db.connection.execute("SELECT 1")


class TestThreadedAccess:
    """Test connections used from scheduler worker threads."""

    def run_in_thread(self, func):
        result = {}

        def target():
            try:
                result["value"] = func()
            except Exception as e:
                result["error"] = e

        worker = threading.Thread(target=target)
        worker.start()
        worker.join()
        return result

    def test_file_database_connection_per_thread(self, tmp_path: Path):
        """Should give a worker thread its own connection to the same file."""
        db = Database(str(tmp_path / "threads.db"))
        db.initialize()
        main_connection = db.connection

        def write():
            SecurityRepository(db).upsert(Security(id="2330", name="台積電", market="TSE"))
            return db.connection

        result = self.run_in_thread(write)

        assert "error" not in result
        assert result["value"] is not main_connection
        assert SecurityRepository(db).get("2330").name == "台積電"
        db.close()

    def test_close_closes_worker_connections(self, tmp_path: Path):
        """Should close connections opened by other threads."""
        db = Database(str(tmp_path / "threads.db"))
        worker_connection = self.run_in_thread(lambda: db.connection)["value"]

        db.close()

        with pytest.raises(sqlite3.ProgrammingError):
            worker_connection.execute("SELECT 1")
        with pytest.raises(sqlite3.ProgrammingError):
            db.connection

    def test_memory_database_shared(self, db):
        """Should share the single in-memory connection across threads."""
        result = self.run_in_thread(lambda: db.connection)

        assert result["value"] is db.connection


class TestSecurityRepository:
    """Test security CRUD operations."""

    def test_get_or_create_placeholder(self, db):
        """Should create a placeholder row named after the id."""
        repo = SecurityRepository(db)

        security = repo.get_or_create("2330", "TSE")

        assert security.name == "2330"
        assert security.market == "TSE"
        assert security.created_at is not None

    def test_upsert_replaces_placeholder_name(self, db):
        """Should fill in the real name once known."""
        repo = SecurityRepository(db)
        repo.get_or_create("2330", "TSE")

        security = repo.upsert(Security(id="2330", name="台積電", market="TSE"))

        assert security.name == "台積電"

    def test_upsert_keeps_known_name(self, db):
        """Should not overwrite a real name."""
        repo = SecurityRepository(db)
        repo.upsert(Security(id="2330", name="台積電", market="TSE"))

        security = repo.upsert(Security(id="2330", name="TSMC", market="TSE"))

        assert security.name == "台積電"

    def test_upsert_updates_market(self, db):
        """Should record a venue change."""
        repo = SecurityRepository(db)
        repo.get_or_create("6488", "TSE")

        assert repo.upsert(Security(id="6488", name="環球晶", market="OTC")).market == "OTC"

    def test_list_all(self, db):
        """Should list securities ordered by id."""
        repo = SecurityRepository(db)
        repo.get_or_create("AAPL", "US")
        repo.get_or_create("2330", "TSE")

        assert [s.id for s in repo.list_all()] == ["2330", "AAPL"]


class TestWatchlistRepository:
    """Test watch entry operations."""

    def test_add_and_get(self, db, security):
        """Should add an entry joined with the security name."""
        repo = WatchlistRepository(db)

        entry = repo.add(WatchEntry(security_id="2330", custom_threshold=2.5))

        assert entry.id is not None
        assert entry.custom_threshold == 2.5
        assert entry.security_name == "台積電"

    def test_add_requires_security(self, db):
        """Should reject entries for unknown securities."""
        with pytest.raises(sqlite3.IntegrityError):
            WatchlistRepository(db).add(WatchEntry(security_id="9999"))

    def test_add_twice_updates(self, db, security):
        """Should update the existing entry instead of duplicating it."""
        repo = WatchlistRepository(db)
        repo.add(WatchEntry(security_id="2330"))
        repo.add(WatchEntry(security_id="2330", target_price_high=700.0))

        entries = repo.list_active()

        assert len(entries) == 1
        assert entries[0].target_price_high == 700.0

    def test_deactivate(self, db, security):
        """Should hide deactivated entries."""
        repo = WatchlistRepository(db)
        repo.add(WatchEntry(security_id="2330"))

        repo.deactivate("2330")

        assert repo.list_active() == []
        assert repo.get("2330").is_active is False

    def test_clear_target(self, db, security):
        """Should null one target column."""
        repo = WatchlistRepository(db)
        entry = repo.add(
            WatchEntry(security_id="2330", target_price_high=700.0, target_price_low=500.0)
        )

        repo.clear_target(entry.id, "target_price_high")

        entry = repo.get("2330")
        assert entry.target_price_high is None
        assert entry.target_price_low == 500.0

    def test_clear_target_rejects_other_columns(self, db):
        """Should refuse to touch non-target columns."""
        with pytest.raises(ValueError):
            WatchlistRepository(db).clear_target(1, "is_active")

    def test_list_active_by_owner(self, db, security):
        """Should filter by owner."""
        repo = WatchlistRepository(db)
        repo.add(WatchEntry(security_id="2330", owner="alice"))
        repo.add(WatchEntry(security_id="2330", owner="bob"))

        assert [e.owner for e in repo.list_active("bob")] == ["bob"]


class TestPositionRepository:
    """Test position operations."""

    def test_create_and_get(self, db, security):
        """Should store lots and odd shares."""
        repo = PositionRepository(db)

        position = repo.create(
            Position(security_id="2330", lots=2, odd_shares=300, won_price=550.0)
        )
        loaded = repo.get_by_id(position.id)

        assert loaded.total_shares == 2300
        assert loaded.security_name == "台積電"
        assert loaded.has_target is False

    def test_list_open_excludes_sold(self, db, security):
        """Should exclude sold positions."""
        repo = PositionRepository(db)
        kept = repo.create(Position(security_id="2330", lots=1, won_price=550.0))
        sold = repo.create(Position(security_id="2330", lots=1, won_price=500.0))

        repo.mark_sold(sold.id, 600.0, date(2026, 10, 16))

        assert [p.id for p in repo.list_open()] == [kept.id]
        assert repo.get_by_id(sold.id).sold_date == date(2026, 10, 16)

    def test_list_notifiable(self, db, security):
        """Should skip positions with notifications disabled."""
        repo = PositionRepository(db)
        repo.create(Position(security_id="2330", lots=1, won_price=550.0, notify_enabled=False))
        wanted = repo.create(Position(security_id="2330", lots=1, won_price=550.0))

        assert [p.id for p in repo.list_notifiable()] == [wanted.id]

    def test_clear_targets(self, db, security):
        """Should disarm each target independently."""
        repo = PositionRepository(db)
        position = repo.create(Position(security_id="2330", lots=1, won_price=550.0))
        repo.set_targets(position.id, 650.0, 500.0)

        repo.clear_target_high(position.id)
        loaded = repo.get_by_id(position.id)
        assert loaded.target_price_high is None
        assert loaded.target_price_low == 500.0

        repo.clear_target_low(position.id)
        assert repo.get_by_id(position.id).has_target is False

    def test_profit_percent(self):
        """Should compute unrealized profit against the won price."""
        position = Position(security_id="2330", won_price=500.0)

        assert position.profit_percent(550.0) == pytest.approx(10.0)
        assert Position(security_id="2330").profit_percent(550.0) is None


class TestConditionRuleRepository:
    """Test condition rule operations."""

    def test_create_and_list(self, db, security):
        """Should create rules and list the active ones."""
        repo = ConditionRuleRepository(db)
        repo.create(ConditionRule(security_id="2330", condition_type="RSI_OVERBOUGHT"))
        rule = repo.create(
            ConditionRule(security_id="2330", condition_type="VOLUME_SPIKE", parameter=3.0)
        )

        repo.deactivate(rule.id)

        assert [r.condition_type for r in repo.list_active("2330")] == ["RSI_OVERBOUGHT"]

    def test_stamp_triggered(self, db, security):
        """Should record the last trigger time."""
        repo = ConditionRuleRepository(db)
        repo.create(ConditionRule(security_id="2330", condition_type="MACD_GOLDEN_CROSS"))
        when = datetime(2026, 10, 19, 10, 0)

        repo.stamp_triggered("2330", "MACD_GOLDEN_CROSS", when)

        assert repo.list_active()[0].last_triggered == when


class TestCooldownRepository:
    """Test cooldown ledger persistence."""

    def test_upsert_overwrites(self, db):
        """Should keep one row per security and condition type."""
        repo = CooldownRepository(db)
        first = datetime(2026, 10, 19, 9, 30)
        repo.upsert("2330", "RSI_OVERBOUGHT", first)
        repo.upsert("2330", "RSI_OVERBOUGHT", first + timedelta(hours=5))

        assert len(repo.list_all()) == 1
        assert repo.get("2330", "RSI_OVERBOUGHT").last_fired_at == first + timedelta(hours=5)

    def test_get_missing(self, db):
        """Should return None for a pair that never fired."""
        assert CooldownRepository(db).get("2330", "RSI_OVERSOLD") is None


class TestPriceHistoryRepository:
    """Test daily history storage."""

    def test_upsert_same_day_overwrites(self, db, security):
        """Should keep a single row per trading date."""
        repo = PriceHistoryRepository(db)
        day = date(2026, 10, 19)
        repo.upsert(PriceHistoryPoint(security_id="2330", trade_date=day, close=600.0))
        repo.upsert(PriceHistoryPoint(security_id="2330", trade_date=day, close=605.0, volume=10))

        rows = repo.recent("2330")

        assert len(rows) == 1
        assert rows[0].close == 605.0
        assert rows[0].volume == 10

    def test_recent_newest_first(self, db, seed_history):
        """Should return rows newest first."""
        days = seed_history("2330", [100.0, 101.0, 102.0])

        rows = PriceHistoryRepository(db).recent("2330", limit=2)

        assert [r.trade_date for r in rows] == [days[2], days[1]]
        assert PriceHistoryRepository(db).count("2330") == 3

    def test_delete_before(self, db, seed_history):
        """Should delete rows older than the cutoff."""
        days = seed_history("2330", [100.0, 101.0, 102.0])

        deleted = PriceHistoryRepository(db).delete_before(days[1])

        assert deleted == 1
        assert PriceHistoryRepository(db).count("2330") == 2


class TestAlertLogRepository:
    """Test the alert audit log."""

    def test_recent_newest_first(self, db):
        """Should list audit rows newest first."""
        repo = AlertLogRepository(db)
        base = datetime(2026, 10, 19, 9, 0)
        for i, ct in enumerate(["PRICE_CHANGE", "STOP_LOSS"]):
            repo.create(
                AlertLog(
                    security_id="2330",
                    condition_type=ct,
                    message="msg",
                    created_at=base + timedelta(minutes=i),
                    delivered=(i == 0),
                )
            )

        logs = repo.recent()

        assert [log.condition_type for log in logs] == ["STOP_LOSS", "PRICE_CHANGE"]
        assert logs[1].delivered is True
        assert logs[0].delivered is False

    def test_delete_before(self, db):
        """Should purge rows older than the cutoff."""
        repo = AlertLogRepository(db)
        old = datetime(2026, 9, 1, 9, 0)
        repo.create(AlertLog(security_id="2330", condition_type="X", message="m", created_at=old))

        assert repo.delete_before(datetime(2026, 9, 19)) == 1
        assert repo.recent() == []


class TestSettingsRepository:
    """Test key/value settings."""

    def test_set_and_overwrite(self, db):
        """Should keep the latest value per key."""
        repo = SettingsRepository(db)
        repo.set("price_change_threshold", "3")
        repo.set("price_change_threshold", "4.5")

        assert repo.all() == {"price_change_threshold": "4.5"}


class TestInstitutionalRepository:
    """Test institutional flow storage."""

    def test_upsert_and_recent(self, db):
        """Should overwrite the same day and list newest first."""
        repo = InstitutionalRepository(db)
        repo.upsert(InstitutionalFlow("2330", date(2026, 10, 15), 100, 10, 1, 111))
        repo.upsert(InstitutionalFlow("2330", date(2026, 10, 16), 5, 5, 5, 15))
        repo.upsert(InstitutionalFlow("2330", date(2026, 10, 16), 6, 6, 6, 18))

        flows = repo.recent("2330")

        assert [f.trade_date for f in flows] == [date(2026, 10, 16), date(2026, 10, 15)]
        assert flows[0].total_net == 18
