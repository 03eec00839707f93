"""
Quote model and data-quality repair rules shared by every provider.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

MARKET_TZ = ZoneInfo("Asia/Taipei")

DOMESTIC = "domestic"
FOREIGN = "foreign"

SESSION_INTRADAY = "intraday"
SESSION_AFTER_HOURS = "after_hours"

# Markers upstream sources use for "no data".
NO_DATA_MARKERS = {"", "-", "--", "---", "N/A", "null", "None"}

_DOMESTIC_PATTERN = re.compile(r"^\d{4,6}[A-Z]?$")
_FOREIGN_PATTERN = re.compile(r"^[A-Z]{1,5}$")


@dataclass
class Quote:
    """Best-effort current or closing quote for one security."""

    security_id: str
    name: str
    price: float
    open: float
    high: float
    low: float
    previous_close: Optional[float]
    change: float
    change_percent: float
    volume: int
    source: str
    market: str  # "TSE", "OTC", "US"
    session: str = SESSION_AFTER_HOURS
    resolved_at: datetime = field(default_factory=lambda: datetime.now(MARKET_TZ))

    @property
    def is_up(self) -> bool:
        return self.change >= 0

    @property
    def trade_date(self) -> date:
        """Trading date the quote belongs to."""
        return trading_date_for(self.resolved_at)


def classify(security_id: str) -> Optional[str]:
    """
    Classify an identifier by its lexical shape.

    Digits (with at most one trailing letter, e.g. leveraged ETFs) are
    domestic, 1-5 letters are foreign tickers, anything else is unknown.
    """
    code = (security_id or "").strip().upper()
    if _DOMESTIC_PATTERN.match(code):
        return DOMESTIC
    if _FOREIGN_PATTERN.match(code):
        return FOREIGN
    return None


def trading_date_for(moment: datetime) -> date:
    """Market-local date of a moment, with weekends rolled back to Friday."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(MARKET_TZ)
    day = moment.date()
    while day.weekday() >= 5:
        day -= timedelta(days=1)
    return day


def parse_number(value: Any) -> Optional[float]:
    """
    Parse an upstream numeric field.

    Returns None for "no data" markers, unparsable text and non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if text in NO_DATA_MARKERS:
            return None
        text = text.lstrip("+$")
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def parse_positive(value: Any) -> Optional[float]:
    """Parse a price field; zero and negative values count as absent."""
    number = parse_number(value)
    if number is None or number <= 0:
        return None
    return number


def compute_change(price: float, previous_close: Optional[float]) -> tuple[float, float]:
    """
    Derive change and change percent, rounded to 2 decimals.

    Both are zero when the previous close is missing or not positive, or when
    the arithmetic would not produce a finite number.
    """
    if previous_close is None or previous_close <= 0:
        return 0.0, 0.0
    change = price - previous_close
    percent = change / previous_close * 100
    if not math.isfinite(change) or not math.isfinite(percent):
        return 0.0, 0.0
    return round(change, 2), round(percent, 2)


def build_quote(
    security_id: str,
    *,
    name: Optional[str],
    price: Any,
    previous_close: Any,
    open_price: Any = None,
    high: Any = None,
    low: Any = None,
    volume: Any = None,
    source: str,
    market: str,
    session: str = SESSION_AFTER_HOURS,
    resolved_at: Optional[datetime] = None,
) -> Optional[Quote]:
    """
    Apply the repair rules to raw provider fields and build a Quote.

    * previous close is never backfilled from price
    * price falls back to previous close only when genuinely absent
    * open/high/low fall back to price

    Returns None when neither a price nor a previous close is usable.
    """
    prev = parse_number(previous_close)
    current = parse_positive(price)
    if current is None and prev is not None and prev > 0:
        current = prev
    if current is None:
        return None

    change, change_percent = compute_change(current, prev)
    parsed_volume = parse_number(volume)

    return Quote(
        security_id=security_id,
        name=(name or "").strip() or security_id,
        price=current,
        open=parse_positive(open_price) or current,
        high=parse_positive(high) or current,
        low=parse_positive(low) or current,
        previous_close=prev,
        change=change,
        change_percent=change_percent,
        volume=int(parsed_volume) if parsed_volume and parsed_volume > 0 else 0,
        source=source,
        market=market,
        session=session,
        resolved_at=resolved_at or datetime.now(MARKET_TZ),
    )


def with_price(quote: Quote, price: float, source: str) -> Quote:
    """Copy of a quote with a substituted price and recomputed change."""
    change, change_percent = compute_change(price, quote.previous_close)
    return Quote(
        security_id=quote.security_id,
        name=quote.name,
        price=price,
        open=quote.open,
        high=max(quote.high, price),
        low=min(quote.low, price),
        previous_close=quote.previous_close,
        change=change,
        change_percent=change_percent,
        volume=quote.volume,
        source=source,
        market=quote.market,
        session=quote.session,
        resolved_at=quote.resolved_at,
    )
