"""
Alert condition types and the alert event produced by evaluation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from stockwatch.data.quotes import MARKET_TZ


class AlertType(str, Enum):
    """Every condition the evaluator can report."""

    PRICE_CHANGE = "PRICE_CHANGE"
    MA_BREAKOUT = "MA_BREAKOUT"
    MA_BREAKDOWN = "MA_BREAKDOWN"
    NEW_HIGH = "NEW_HIGH"
    NEW_LOW = "NEW_LOW"
    TARGET_HIGH = "TARGET_HIGH"
    TARGET_LOW = "TARGET_LOW"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    RSI_OVERBOUGHT = "RSI_OVERBOUGHT"
    RSI_OVERSOLD = "RSI_OVERSOLD"
    KD_GOLDEN_CROSS = "KD_GOLDEN_CROSS"
    KD_DEATH_CROSS = "KD_DEATH_CROSS"
    MACD_BULLISH = "MACD_BULLISH"
    MACD_BEARISH = "MACD_BEARISH"
    VOLUME_SPIKE = "VOLUME_SPIKE"
    MA_CROSS_UP = "MA_CROSS_UP"
    MA_CROSS_DOWN = "MA_CROSS_DOWN"


# Condition types that can be subscribed to as Condition Rules and that
# are gated by the cooldown ledger.
TECHNICAL_TYPES = (
    AlertType.RSI_OVERBOUGHT,
    AlertType.RSI_OVERSOLD,
    AlertType.KD_GOLDEN_CROSS,
    AlertType.KD_DEATH_CROSS,
    AlertType.MACD_BULLISH,
    AlertType.MACD_BEARISH,
    AlertType.VOLUME_SPIKE,
    AlertType.MA_CROSS_UP,
    AlertType.MA_CROSS_DOWN,
)


class AlertTone(Enum):
    """Colour family of an alert card."""

    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


_BULLISH = {
    AlertType.MA_BREAKOUT,
    AlertType.NEW_HIGH,
    AlertType.TARGET_HIGH,
    AlertType.TAKE_PROFIT,
    AlertType.RSI_OVERSOLD,
    AlertType.KD_GOLDEN_CROSS,
    AlertType.MACD_BULLISH,
    AlertType.MA_CROSS_UP,
}
_BEARISH = {
    AlertType.MA_BREAKDOWN,
    AlertType.NEW_LOW,
    AlertType.TARGET_LOW,
    AlertType.STOP_LOSS,
    AlertType.RSI_OVERBOUGHT,
    AlertType.KD_DEATH_CROSS,
    AlertType.MACD_BEARISH,
    AlertType.MA_CROSS_DOWN,
}


def tone_for(alert_type: AlertType, change_percent: Optional[float] = None) -> AlertTone:
    """Tone of an alert; direction-neutral types follow the day's change."""
    if alert_type in _BULLISH:
        return AlertTone.BULLISH
    if alert_type in _BEARISH:
        return AlertTone.BEARISH
    if change_percent is None or change_percent == 0:
        return AlertTone.NEUTRAL
    return AlertTone.BULLISH if change_percent > 0 else AlertTone.BEARISH


def parse_alert_type(value: str) -> AlertType:
    """Parse a condition type name, raising ValueError if unknown."""
    try:
        return AlertType(value.strip().upper())
    except ValueError:
        raise ValueError(f"Unknown condition type: {value}") from None


@dataclass
class AlertEvent:
    """A condition that evaluated true for a security."""

    alert_type: AlertType
    security_id: str
    security_name: str
    title: str
    message: str
    value: Optional[float] = None
    price: Optional[float] = None
    change_percent: Optional[float] = None
    triggered_at: datetime = field(default_factory=lambda: datetime.now(MARKET_TZ))
    tone: Optional[AlertTone] = None

    def __post_init__(self):
        if self.tone is None:
            self.tone = tone_for(self.alert_type, self.change_percent)

    @property
    def display_name(self) -> str:
        if self.security_name and self.security_name != self.security_id:
            return f"{self.security_name}({self.security_id})"
        return self.security_id
