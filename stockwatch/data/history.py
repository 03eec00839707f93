"""
Daily price history backfill from Yahoo Finance.
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

import pandas as pd
import requests
import yfinance as yf
from yfinance.exceptions import YFException

from stockwatch.database.models import PriceHistoryPoint
from stockwatch.database.repository import PriceHistoryRepository
from .quotes import MARKET_TZ

logger = logging.getLogger(__name__)

MARKET_SUFFIXES = {"TSE": ".TW", "OTC": ".TWO"}


def yahoo_symbol(security_id: str, market: str) -> str:
    """Map a security to its Yahoo Finance symbol (2330 -> 2330.TW)."""
    return f"{security_id}{MARKET_SUFFIXES.get(market, '')}"


class HistoryBackfiller:
    """
    Fills price history for securities that have too little of it.

    Each security is attempted at most once per market day, successful or not.
    """

    def __init__(
        self,
        history_repo: PriceHistoryRepository,
        period: str = "3mo",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.history_repo = history_repo
        self.period = period
        self.clock = clock or (lambda: datetime.now(MARKET_TZ))
        self._attempted: dict[str, date] = {}

    def needs_backfill(self, security_id: str, min_points: int) -> bool:
        """Whether history is short and no attempt was made today."""
        if self._attempted.get(security_id) == self.clock().date():
            return False
        return self.history_repo.count(security_id) < min_points

    def backfill(self, security_id: str, market: str) -> int:
        """
        Download daily bars and upsert them.

        Returns:
            Number of rows written
        """
        self._attempted[security_id] = self.clock().date()
        symbol = yahoo_symbol(security_id, market)
        try:
            hist = yf.Ticker(symbol).history(period=self.period)
        except (requests.RequestException, YFException, ValueError, KeyError) as e:
            logger.warning(f"History download failed for {symbol}: {e}")
            return 0

        if hist is None or hist.empty:
            logger.info(f"No history available for {symbol}")
            return 0

        points = []
        for index, row in hist.iterrows():
            close = row.get("Close")
            if pd.isna(close) or close <= 0:
                continue
            volume = row.get("Volume")
            points.append(
                PriceHistoryPoint(
                    security_id=security_id,
                    trade_date=pd.Timestamp(index).date(),
                    open=None if pd.isna(row.get("Open")) else float(row["Open"]),
                    high=None if pd.isna(row.get("High")) else float(row["High"]),
                    low=None if pd.isna(row.get("Low")) else float(row["Low"]),
                    close=float(close),
                    volume=0 if pd.isna(volume) else int(volume),
                )
            )

        if points:
            self.history_repo.bulk_upsert(points)
        logger.info(f"Backfilled {len(points)} history rows for {security_id} ({symbol})")
        return len(points)
