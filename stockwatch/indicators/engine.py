"""
Technical indicators computed from stored daily price history.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

import pandas as pd

from stockwatch.database.repository import PriceHistoryRepository

logger = logging.getLogger(__name__)

RSI_PERIOD = 14
KD_PERIOD = 9
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
VOLUME_WINDOW = 20
VOLUME_MIN_PRIOR = 5
TECHNICAL_MIN_POINTS = MACD_SLOW


@dataclass
class IndicatorSnapshot:
    """Indicator values for one security as of one trading date."""

    security_id: str
    as_of: date
    points: int
    latest_close: float
    previous_close: Optional[float] = None
    ma: Optional[float] = None
    ma_period: int = 20
    ma20: Optional[float] = None
    high_n: Optional[float] = None
    low_n: Optional[float] = None
    high_low_days: int = 20
    rsi: Optional[float] = None
    prev_rsi: Optional[float] = None
    k: Optional[float] = None
    d: Optional[float] = None
    prev_k: Optional[float] = None
    prev_d: Optional[float] = None
    dif: Optional[float] = None
    dea: Optional[float] = None
    histogram: Optional[float] = None
    prev_dif: Optional[float] = None
    volume_ratio: Optional[float] = None
    avg_volume: Optional[float] = None


def rsi_series(closes: pd.Series, period: int = RSI_PERIOD) -> pd.Series:
    """
    Relative strength index with Wilder smoothing.

    The first average is the simple mean of the first ``period`` moves; each
    later average is ``(prev * (period - 1) + move) / period``.
    """
    result = pd.Series(float("nan"), index=closes.index)
    if len(closes) <= period:
        return result

    delta = closes.diff()
    gains = delta.clip(lower=0).tolist()
    losses = (-delta.clip(upper=0)).tolist()

    avg_gain = sum(gains[1 : period + 1]) / period
    avg_loss = sum(losses[1 : period + 1]) / period
    for i in range(period, len(closes)):
        if i > period:
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        if avg_loss == 0:
            value = 100.0 if avg_gain > 0 else 50.0
        else:
            value = 100 - 100 / (1 + avg_gain / avg_loss)
        result.iloc[i] = value
    return result


def kd_series(
    highs: pd.Series, lows: pd.Series, closes: pd.Series, period: int = KD_PERIOD
) -> pd.DataFrame:
    """
    Stochastic K/D with 1/3 smoothing, both seeded at 50.

    RSV is 50 on days where the window's high equals its low.
    """
    highest = highs.rolling(period).max()
    lowest = lows.rolling(period).min()
    span = highest - lowest

    k_values, d_values = [], []
    k, d = 50.0, 50.0
    for i in range(len(closes)):
        if pd.isna(span.iloc[i]):
            k_values.append(float("nan"))
            d_values.append(float("nan"))
            continue
        rsv = 50.0 if span.iloc[i] == 0 else (closes.iloc[i] - lowest.iloc[i]) / span.iloc[i] * 100
        k = k * 2 / 3 + rsv / 3
        d = d * 2 / 3 + k / 3
        k_values.append(k)
        d_values.append(d)
    return pd.DataFrame({"k": k_values, "d": d_values}, index=closes.index)


def macd_series(
    closes: pd.Series,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> pd.DataFrame:
    """MACD line (DIF), signal line (DEA) and histogram."""
    ema_fast = closes.ewm(span=fast, adjust=False).mean()
    ema_slow = closes.ewm(span=slow, adjust=False).mean()
    dif = ema_fast - ema_slow
    dea = dif.ewm(span=signal, adjust=False).mean()
    return pd.DataFrame({"dif": dif, "dea": dea, "histogram": dif - dea})


def _value(series: pd.Series, offset: int = -1) -> Optional[float]:
    if len(series) < abs(offset):
        return None
    value = series.iloc[offset]
    if pd.isna(value):
        return None
    return round(float(value), 4)


class IndicatorEngine:
    """Builds indicator snapshots from the price history repository."""

    def __init__(self, history_repo: PriceHistoryRepository):
        self.history_repo = history_repo

    def load_frame(self, security_id: str, lookback: int = 60) -> pd.DataFrame:
        """History rows as an ascending DataFrame indexed by trade date."""
        points = self.history_repo.recent(security_id, limit=lookback)
        if not points:
            return pd.DataFrame(columns=["close", "high", "low", "volume"])
        frame = pd.DataFrame(
            {
                "close": [p.close for p in points],
                "high": [p.high if p.high else p.close for p in points],
                "low": [p.low if p.low else p.close for p in points],
                "volume": [p.volume or 0 for p in points],
            },
            index=[p.trade_date for p in points],
        )
        return frame.sort_index()

    def snapshot(
        self,
        security_id: str,
        ma_period: int = 20,
        high_low_days: int = 20,
        lookback: int = 60,
        min_points: int = TECHNICAL_MIN_POINTS,
        as_of: Optional[date] = None,
    ) -> Optional[IndicatorSnapshot]:
        """
        Compute indicators for a security.

        Args:
            security_id: Security to compute for
            ma_period: Moving-average period used for breakout checks
            high_low_days: Window for the N-day high/low
            lookback: Maximum number of history rows to read
            min_points: Minimum rows required, otherwise None is returned
            as_of: Evaluation date; rows after it are ignored. Defaults to
                the latest stored date.

        Returns:
            IndicatorSnapshot, or None when history is too short
        """
        frame = self.load_frame(security_id, lookback)
        if as_of is not None:
            frame = frame[frame.index <= as_of]
        if len(frame) < min_points or frame.empty:
            logger.debug(
                f"Not enough history for {security_id}: {len(frame)} < {min_points} rows"
            )
            return None

        evaluation_date = frame.index[-1] if as_of is None else as_of
        closes = frame["close"].astype(float)
        prior = closes[frame.index < evaluation_date]

        snapshot = IndicatorSnapshot(
            security_id=security_id,
            as_of=evaluation_date,
            points=len(frame),
            latest_close=float(closes.iloc[-1]),
            ma_period=ma_period,
            high_low_days=high_low_days,
        )

        if len(prior) > 0:
            snapshot.previous_close = float(prior.iloc[-1])
        if len(prior) >= ma_period:
            snapshot.ma = round(float(prior.iloc[-ma_period:].mean()), 4)
        if len(prior) >= high_low_days:
            window = prior.iloc[-high_low_days:]
            snapshot.high_n = float(window.max())
            snapshot.low_n = float(window.min())
        if len(closes) >= 20:
            snapshot.ma20 = round(float(closes.iloc[-20:].mean()), 4)

        rsi = rsi_series(closes)
        snapshot.rsi = _value(rsi)
        snapshot.prev_rsi = _value(rsi, -2)

        if len(frame) >= KD_PERIOD:
            kd = kd_series(frame["high"].astype(float), frame["low"].astype(float), closes)
            snapshot.k = _value(kd["k"])
            snapshot.d = _value(kd["d"])
            snapshot.prev_k = _value(kd["k"], -2)
            snapshot.prev_d = _value(kd["d"], -2)

        if len(closes) >= MACD_SLOW:
            macd = macd_series(closes)
            snapshot.dif = _value(macd["dif"])
            snapshot.dea = _value(macd["dea"])
            snapshot.histogram = _value(macd["histogram"])
            snapshot.prev_dif = _value(macd["dif"], -2)

        volumes = frame["volume"].astype(float)
        prior_volumes = volumes.iloc[:-1].iloc[-VOLUME_WINDOW:]
        if len(prior_volumes) >= VOLUME_MIN_PRIOR:
            average = float(prior_volumes.mean())
            snapshot.avg_volume = round(average, 2)
            if average > 0:
                snapshot.volume_ratio = round(float(volumes.iloc[-1]) / average, 4)

        return snapshot
