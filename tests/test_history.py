"""
History backfill and institutional flow tests.
"""

from datetime import date
from unittest.mock import Mock, patch

import pandas as pd
import pytest
import requests
from yfinance.exceptions import YFException

from stockwatch.data.history import HistoryBackfiller, yahoo_symbol
from stockwatch.data.institutional import InstitutionalFetcher, parse_t86
from stockwatch.data.providers import ProviderError
from stockwatch.database.repository import InstitutionalRepository, PriceHistoryRepository


def yahoo_history():
    index = pd.DatetimeIndex(
        ["2026-10-14", "2026-10-15", "2026-10-16"], tz="Asia/Taipei"
    )
    return pd.DataFrame(
        {
            "Open": [580.0, 585.0, 590.0],
            "High": [586.0, 591.0, 596.0],
            "Low": [578.0, 583.0, 588.0],
            "Close": [585.0, float("nan"), 595.0],
            "Volume": [30_000_000, 28_000_000, 31_000_000],
        },
        index=index,
    )


class TestHistoryBackfiller:
    """Tests for Yahoo Finance history backfill."""

    def test_yahoo_symbol(self):
        """Should add the venue suffix for domestic securities."""
        assert yahoo_symbol("2330", "TSE") == "2330.TW"
        assert yahoo_symbol("6488", "OTC") == "6488.TWO"
        assert yahoo_symbol("AAPL", "US") == "AAPL"

    def test_backfill_skips_missing_closes(self, db, security, clock):
        """Should store one row per day with a usable close."""
        repo = PriceHistoryRepository(db)
        backfiller = HistoryBackfiller(repo, clock=clock)

        with patch("yfinance.Ticker") as mock_ticker:
            mock_ticker.return_value.history.return_value = yahoo_history()
            written = backfiller.backfill("2330", "TSE")

        mock_ticker.assert_called_once_with("2330.TW")
        assert written == 2
        rows = repo.recent("2330")
        assert [r.trade_date for r in rows] == [date(2026, 10, 16), date(2026, 10, 14)]
        assert rows[0].volume == 31_000_000

    def test_attempted_once_per_day(self, db, security, clock):
        """Should not retry on the same day even after a failure."""
        backfiller = HistoryBackfiller(PriceHistoryRepository(db), clock=clock)

        with patch("yfinance.Ticker") as mock_ticker:
            mock_ticker.return_value.history.side_effect = requests.ConnectionError("down")
            assert backfiller.needs_backfill("2330", 26)
            assert backfiller.backfill("2330", "TSE") == 0

        assert not backfiller.needs_backfill("2330", 26)
        clock.advance(days=1)
        assert backfiller.needs_backfill("2330", 26)

    def test_rate_limited_download(self, db, security, clock):
        """Should log and write nothing when yfinance refuses the request."""
        backfiller = HistoryBackfiller(PriceHistoryRepository(db), clock=clock)

        with patch("yfinance.Ticker") as mock_ticker:
            mock_ticker.return_value.history.side_effect = YFException("Too Many Requests")
            assert backfiller.backfill("2330", "TSE") == 0

        assert PriceHistoryRepository(db).count("2330") == 0

    def test_empty_history(self, db, security, clock):
        """Should write nothing for an empty frame."""
        backfiller = HistoryBackfiller(PriceHistoryRepository(db), clock=clock)

        with patch("yfinance.Ticker") as mock_ticker:
            mock_ticker.return_value.history.return_value = pd.DataFrame()
            assert backfiller.backfill("2330", "TSE") == 0


def t86_row(code, foreign, trust, dealer, total):
    row = [code, "name"] + ["0"] * 17
    row[4], row[10], row[11], row[18] = foreign, trust, dealer, total
    return row


class TestInstitutional:
    """Tests for the T86 report."""

    def test_parse(self):
        """Should read the net columns with thousands separators."""
        payload = {"stat": "OK", "data": [t86_row("2330 ", "12,345", "-1,000", "500", "11,845")]}

        flows = parse_t86(payload, date(2026, 10, 16))

        assert flows[0].security_id == "2330"
        assert flows[0].foreign_net == 12345
        assert flows[0].trust_net == -1000
        assert flows[0].total_net == 11845

    def test_non_trading_day(self):
        """Should return nothing when the report is unavailable."""
        assert parse_t86({"stat": "很抱歉，沒有符合條件的資料!"}, date(2026, 10, 17)) == []

    def test_short_row(self):
        """Should reject a changed column layout."""
        with pytest.raises(ProviderError):
            parse_t86({"stat": "OK", "data": [["2330", "x"]]}, date(2026, 10, 16))

    def test_refresh_stores_tracked_only(self, db):
        """Should store flows only for tracked securities."""
        repo = InstitutionalRepository(db)
        payload = {
            "stat": "OK",
            "data": [t86_row("2330", "1", "2", "3", "6"), t86_row("2317", "1", "1", "1", "3")],
        }
        response = Mock()
        response.json.return_value = payload

        with patch("requests.get", return_value=response) as mock_get:
            stored = InstitutionalFetcher(repo).refresh(date(2026, 10, 16), ["2330"])

        assert stored == 1
        assert mock_get.call_args.kwargs["params"]["date"] == "20261016"
        assert repo.recent("2317") == []
        assert repo.recent("2330")[0].total_net == 6

    def test_refresh_network_failure(self, db):
        """Should log and store nothing when the download fails."""
        with patch("requests.get", side_effect=requests.Timeout("slow")):
            assert InstitutionalFetcher(InstitutionalRepository(db)).refresh(date(2026, 10, 16), ["2330"]) == 0
