"""
Admin CLI tests.
"""

import sys

import pytest

from stockwatch import cli
from stockwatch.database.repository import SecurityRepository, SettingsRepository


class TestHelpers:
    """Tests for the CLI's data helpers."""

    def test_add_to_watchlist_reports_invalid(self, db):
        """Should add valid ids and report the rest."""
        result = cli.add_to_watchlist(db, ["2330", "aapl", "BRK.B"])

        assert result == {"added": ["2330", "AAPL"], "invalid": ["BRK.B"]}
        assert SecurityRepository(db).get("AAPL").market == "US"

    def test_add_position_requires_shares(self, db):
        """Should reject empty positions."""
        with pytest.raises(ValueError):
            cli.add_position(db, "2330", lots=0, odd_shares=0, price=500.0)

    def test_add_position_requires_price(self, db):
        """Should reject a non-positive acquisition price."""
        with pytest.raises(ValueError):
            cli.add_position(db, "2330", lots=1, odd_shares=0, price=0)

    def test_add_rule_technical_only(self, db):
        """Should only subscribe technical condition types."""
        with pytest.raises(ValueError):
            cli.add_rule(db, "2330", "STOP_LOSS")

        rule = cli.add_rule(db, "2330", "kd_golden_cross")
        assert rule.condition_type == "KD_GOLDEN_CROSS"

    def test_set_setting_validates(self, db):
        """Should refuse values that do not parse."""
        with pytest.raises(ValueError):
            cli.set_setting(db, "price_threshold", "high")

        cli.set_setting(db, "price_threshold", "2.5")
        assert SettingsRepository(db).all()["price_threshold"] == "2.5"


class TestMain:
    """Tests for the command line entry point."""

    def run(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["stockwatch-admin", *argv])
        cli.main()

    def test_watchlist_add_and_show(self, tmp_path, monkeypatch, capsys):
        """Should persist entries between invocations."""
        db_path = str(tmp_path / "admin.db")

        self.run(monkeypatch, "--db", db_path, "watchlist", "add", "--symbols", "2330, 2317")
        self.run(monkeypatch, "--db", db_path, "watchlist", "show")

        output = capsys.readouterr().out
        assert "Added: ['2330', '2317']" in output
        assert "2317:" in output

    def test_invalid_position_exits(self, tmp_path, monkeypatch):
        """Should exit with status 2 on validation errors."""
        db_path = str(tmp_path / "admin.db")

        with pytest.raises(SystemExit) as exc:
            self.run(monkeypatch, "--db", db_path, "holdings", "add", "2330", "--price", "500")

        assert exc.value.code == 2
