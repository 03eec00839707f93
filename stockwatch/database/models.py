"""
Data models for stockwatch.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

SHARES_PER_LOT = 1000


@dataclass
class Security:
    """Listed equity or foreign ticker."""

    id: str
    name: str
    market: str  # "TSE", "OTC", "US"
    created_at: Optional[datetime] = None


@dataclass
class WatchEntry:
    """A user's subscription to alerts for one security."""

    security_id: str
    owner: str = "default"
    custom_threshold: Optional[float] = None
    target_price_high: Optional[float] = None
    target_price_low: Optional[float] = None
    is_active: bool = True
    id: Optional[int] = None
    security_name: Optional[str] = None


@dataclass
class Position:
    """A recorded stake in a security."""

    security_id: str
    owner: str = "default"
    lots: int = 0
    odd_shares: int = 0
    won_price: Optional[float] = None
    is_won: bool = True
    is_sold: bool = False
    sold_price: Optional[float] = None
    sold_date: Optional[date] = None
    target_price_high: Optional[float] = None
    target_price_low: Optional[float] = None
    notify_enabled: bool = True
    id: Optional[int] = None
    security_name: Optional[str] = None

    @property
    def total_shares(self) -> int:
        return self.lots * SHARES_PER_LOT + self.odd_shares

    @property
    def has_target(self) -> bool:
        return self.target_price_high is not None or self.target_price_low is not None

    def profit_percent(self, price: float) -> Optional[float]:
        """Unrealized profit percent at the given price."""
        if not self.won_price or self.won_price <= 0:
            return None
        return (price - self.won_price) / self.won_price * 100


@dataclass
class ConditionRule:
    """User-configured technical-indicator alert subscription."""

    security_id: str
    condition_type: str
    owner: str = "default"
    parameter: Optional[float] = None
    is_active: bool = True
    last_triggered: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class CooldownEntry:
    """Last time a (security, condition type) pair fired."""

    security_id: str
    condition_type: str
    last_fired_at: datetime


@dataclass
class PriceHistoryPoint:
    """One trading day of OHLCV data."""

    security_id: str
    trade_date: date
    close: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: int = 0


@dataclass
class AlertLog:
    """Audit record of an evaluated-true alert."""

    security_id: str
    condition_type: str
    message: str
    created_at: datetime
    security_name: Optional[str] = None
    price: Optional[float] = None
    change_percent: Optional[float] = None
    commentary: Optional[str] = None
    delivered: bool = False
    id: Optional[int] = None


@dataclass
class InstitutionalFlow:
    """Net buy/sell of the three major institutional investors for one day."""

    security_id: str
    trade_date: date
    foreign_net: int = 0
    trust_net: int = 0
    dealer_net: int = 0
    total_net: int = 0
