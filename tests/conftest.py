"""
Pytest configuration and shared fixtures.
"""

from datetime import date, datetime, timedelta
from unittest.mock import NonCallableMock

import pytest

from stockwatch.data.quotes import MARKET_TZ, build_quote
from stockwatch.database.connection import Database
from stockwatch.database.models import PriceHistoryPoint, Security
from stockwatch.database.repository import PriceHistoryRepository, SecurityRepository

# Monday, inside the trading session.
SESSION_TIME = datetime(2026, 10, 19, 10, 0, tzinfo=MARKET_TZ)
# Same Monday, after the close.
AFTER_CLOSE_TIME = datetime(2026, 10, 19, 15, 0, tzinfo=MARKET_TZ)


class FakeClock:
    """Controllable clock for time-dependent components."""

    def __init__(self, now: datetime = SESSION_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def http_response(json_data=None, text="", status_code=200):
    """Build a mock requests.Response."""
    response = NonCallableMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_quote():
    """Factory for quotes with sensible defaults."""

    def _make(
        security_id="2330",
        price=600.0,
        previous_close=580.0,
        name="台積電",
        market="TSE",
        volume=25_000_000,
        resolved_at=SESSION_TIME,
    ):
        return build_quote(
            security_id,
            name=name,
            price=price,
            previous_close=previous_close,
            volume=volume,
            source="test",
            market=market,
            resolved_at=resolved_at,
        )

    return _make


@pytest.fixture
def seed_history(db):
    """Insert consecutive weekday closes ending the day before ``end``."""

    def _seed(security_id, closes, end=date(2026, 10, 19), volumes=None, market="TSE"):
        SecurityRepository(db).get_or_create(security_id, market)
        days = []
        day = end - timedelta(days=1)
        while len(days) < len(closes):
            if day.weekday() < 5:
                days.append(day)
            day -= timedelta(days=1)
        days.reverse()
        points = [
            PriceHistoryPoint(
                security_id=security_id,
                trade_date=d,
                close=c,
                open=c,
                high=c,
                low=c,
                volume=(volumes[i] if volumes else 1_000_000),
            )
            for i, (d, c) in enumerate(zip(days, closes))
        ]
        PriceHistoryRepository(db).bulk_upsert(points)
        return days

    return _seed


@pytest.fixture
def security(db):
    """A known domestic security."""
    return SecurityRepository(db).upsert(Security(id="2330", name="台積電", market="TSE"))


@pytest.fixture
def mis_payload():
    """TWSE MIS live quote response for 2330."""
    return {
        "msgArray": [
            {
                "c": "2330",
                "n": "台積電",
                "z": "610.00",
                "y": "580.00",
                "o": "585.00",
                "h": "612.00",
                "l": "584.00",
                "v": "35000",
                "b": "609.00_608.00_",
                "a": "610.00_611.00_",
            }
        ],
        "rtcode": "0000",
    }
