"""
Condition evaluation: turns a quote and indicator snapshot into alert events.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Union

from stockwatch.config import AlertSettings
from stockwatch.data.quotes import MARKET_TZ, Quote
from stockwatch.database.models import ConditionRule, Position, WatchEntry
from stockwatch.database.repository import PositionRepository, WatchlistRepository
from stockwatch.indicators.engine import IndicatorSnapshot
from .cooldown import CooldownLedger
from .types import TECHNICAL_TYPES, AlertEvent, AlertType, parse_alert_type

logger = logging.getLogger(__name__)

RSI_OVERBOUGHT_LEVEL = 70.0
RSI_OVERSOLD_LEVEL = 30.0
KD_MIDLINE = 50.0
VOLUME_SPIKE_MULTIPLE = 2.0

TECHNICAL_TITLES = {
    AlertType.RSI_OVERBOUGHT: "📈 RSI 超買警示",
    AlertType.RSI_OVERSOLD: "📉 RSI 超賣警示",
    AlertType.KD_GOLDEN_CROSS: "✨ KD 黃金交叉",
    AlertType.KD_DEATH_CROSS: "⚠️ KD 死亡交叉",
    AlertType.MACD_BULLISH: "🔥 MACD 翻多",
    AlertType.MACD_BEARISH: "❄️ MACD 翻空",
    AlertType.VOLUME_SPIKE: "📊 成交量暴增",
    AlertType.MA_CROSS_UP: "📈 突破月線",
    AlertType.MA_CROSS_DOWN: "📉 跌破月線",
}

Subject = Union[WatchEntry, Position, None]


class ConditionEvaluator:
    """
    Evaluates alert conditions for one security at a time.

    Threshold, MA and high/low checks are stateless. Targets are one-shot:
    the fired target is cleared on its record. Technical conditions are
    recurring and gated by the cooldown ledger.
    """

    def __init__(
        self,
        ledger: Optional[CooldownLedger] = None,
        position_repo: Optional[PositionRepository] = None,
        watchlist_repo: Optional[WatchlistRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
        dry_run: bool = False,
    ):
        self.ledger = ledger
        self.position_repo = position_repo
        self.watchlist_repo = watchlist_repo
        self.clock = clock or (lambda: datetime.now(MARKET_TZ))
        # Dry runs read the ledger and targets but never write them.
        self.dry_run = dry_run

    def evaluate(
        self,
        quote: Optional[Quote],
        snapshot: Optional[IndicatorSnapshot],
        subject: Subject,
        rules: Optional[list[ConditionRule]],
        settings: AlertSettings,
        include_technical: bool = True,
    ) -> list[AlertEvent]:
        """
        Run every applicable check in definition order.

        Args:
            quote: Current quote, None disables price checks
            snapshot: Indicator snapshot, None disables indicator checks
            subject: The watch entry or position being evaluated, if any
            rules: Active condition rules for the security
            settings: Alert settings for this sweep
            include_technical: Whether to run the technical checks

        Returns:
            Events in the order the checks ran
        """
        events: list[AlertEvent] = []
        if isinstance(subject, Position):
            events.extend(self.evaluate_watch(quote, snapshot, None, settings))
            events.extend(self.evaluate_position(quote, subject, settings))
        else:
            events.extend(self.evaluate_watch(quote, snapshot, subject, settings))
        if include_technical:
            security_id = quote.security_id if quote else (snapshot.security_id if snapshot else None)
            if security_id is not None:
                events.extend(self.evaluate_technical(security_id, quote, snapshot, rules))
        return events

    def evaluate_watch(
        self,
        quote: Optional[Quote],
        snapshot: Optional[IndicatorSnapshot],
        entry: Optional[WatchEntry],
        settings: AlertSettings,
    ) -> list[AlertEvent]:
        """Price change, MA breakout/breakdown, N-day high/low and watch targets."""
        if quote is None:
            return []
        events = []

        threshold = settings.price_threshold
        if entry is not None and entry.custom_threshold:
            threshold = entry.custom_threshold
        if threshold > 0 and abs(quote.change_percent) >= threshold:
            direction = "🚀 大漲" if quote.change_percent > 0 else "📉 大跌"
            events.append(
                self._event(
                    AlertType.PRICE_CHANGE,
                    quote,
                    title="價格異動",
                    message=f"{direction} {abs(quote.change_percent):.2f}%",
                    value=quote.change_percent,
                )
            )

        if snapshot is not None and settings.enable_ma_alert:
            events.extend(self._check_ma_breakout(quote, snapshot))

        if snapshot is not None and settings.enable_highlow_alert:
            events.extend(self._check_high_low(quote, snapshot))

        if entry is not None:
            events.extend(self._check_targets(quote, entry))

        return events

    def evaluate_position(
        self, quote: Optional[Quote], position: Position, settings: AlertSettings
    ) -> list[AlertEvent]:
        """One-shot target prices, then recurring stop-loss / take-profit."""
        if quote is None:
            return []
        events = self._check_targets(quote, position)

        profit = position.profit_percent(quote.price)
        if profit is None:
            return events
        if profit <= settings.stop_loss_percent:
            events.append(
                self._event(
                    AlertType.STOP_LOSS,
                    quote,
                    title="停損警報",
                    message=f"🛑 停損警報：已虧損 {abs(profit):.2f}%",
                    value=round(profit, 2),
                )
            )
        elif profit >= settings.take_profit_percent:
            events.append(
                self._event(
                    AlertType.TAKE_PROFIT,
                    quote,
                    title="停利提醒",
                    message=f"💰 停利提醒：已獲利 {profit:.2f}%",
                    value=round(profit, 2),
                )
            )
        return events

    def evaluate_technical(
        self,
        security_id: str,
        quote: Optional[Quote],
        snapshot: Optional[IndicatorSnapshot],
        rules: Optional[list[ConditionRule]] = None,
        now: Optional[datetime] = None,
    ) -> list[AlertEvent]:
        """
        Technical-indicator conditions, each gated by the cooldown ledger.

        When the security has active rules only their types are checked and
        a rule's parameter overrides the default level.
        """
        if snapshot is None:
            return []
        now = now or self.clock()
        levels = self._requested_levels(rules)
        name = quote.name if quote else security_id
        price = quote.price if quote else snapshot.latest_close
        label = f"{name}({security_id})" if name != security_id else security_id

        candidates: list[tuple[AlertType, str, Optional[float]]] = []

        if AlertType.RSI_OVERBOUGHT in levels and snapshot.rsi is not None:
            level = levels[AlertType.RSI_OVERBOUGHT] or RSI_OVERBOUGHT_LEVEL
            if snapshot.rsi >= level:
                candidates.append(
                    (AlertType.RSI_OVERBOUGHT, f"{label} RSI={snapshot.rsi:.1f} 已進入超買區", snapshot.rsi)
                )
        if AlertType.RSI_OVERSOLD in levels and snapshot.rsi is not None:
            level = levels[AlertType.RSI_OVERSOLD] or RSI_OVERSOLD_LEVEL
            if snapshot.rsi <= level:
                candidates.append(
                    (AlertType.RSI_OVERSOLD, f"{label} RSI={snapshot.rsi:.1f} 已進入超賣區", snapshot.rsi)
                )

        if None not in (snapshot.k, snapshot.d, snapshot.prev_k, snapshot.prev_d):
            crossed_up = snapshot.prev_k <= snapshot.prev_d and snapshot.k > snapshot.d
            crossed_down = snapshot.prev_k >= snapshot.prev_d and snapshot.k < snapshot.d
            if AlertType.KD_GOLDEN_CROSS in levels and crossed_up and snapshot.k < KD_MIDLINE:
                candidates.append(
                    (
                        AlertType.KD_GOLDEN_CROSS,
                        f"{label} K={snapshot.k:.1f} 上穿 D={snapshot.d:.1f}，低檔黃金交叉",
                        snapshot.k,
                    )
                )
            if AlertType.KD_DEATH_CROSS in levels and crossed_down and snapshot.k > KD_MIDLINE:
                candidates.append(
                    (
                        AlertType.KD_DEATH_CROSS,
                        f"{label} K={snapshot.k:.1f} 下穿 D={snapshot.d:.1f}，高檔死亡交叉",
                        snapshot.k,
                    )
                )

        if snapshot.dif is not None and snapshot.prev_dif is not None:
            if AlertType.MACD_BULLISH in levels and snapshot.prev_dif <= 0 < snapshot.dif:
                candidates.append(
                    (AlertType.MACD_BULLISH, f"{label} MACD DIF 由負轉正 ({snapshot.dif:.2f})", snapshot.dif)
                )
            if AlertType.MACD_BEARISH in levels and snapshot.prev_dif >= 0 > snapshot.dif:
                candidates.append(
                    (AlertType.MACD_BEARISH, f"{label} MACD DIF 由正轉負 ({snapshot.dif:.2f})", snapshot.dif)
                )

        if AlertType.VOLUME_SPIKE in levels and snapshot.volume_ratio is not None:
            multiple = levels[AlertType.VOLUME_SPIKE] or VOLUME_SPIKE_MULTIPLE
            if snapshot.volume_ratio >= multiple:
                candidates.append(
                    (
                        AlertType.VOLUME_SPIKE,
                        f"{label} 成交量為均量的 {snapshot.volume_ratio:.1f} 倍",
                        snapshot.volume_ratio,
                    )
                )

        reference = quote.previous_close if quote else None
        if quote is not None and snapshot.ma20 is not None and reference is not None:
            if AlertType.MA_CROSS_UP in levels and reference < snapshot.ma20 <= quote.price:
                candidates.append(
                    (AlertType.MA_CROSS_UP, f"{label} 股價 {quote.price} 站上月線 {snapshot.ma20:.2f}", snapshot.ma20)
                )
            if AlertType.MA_CROSS_DOWN in levels and reference > snapshot.ma20 >= quote.price:
                candidates.append(
                    (AlertType.MA_CROSS_DOWN, f"{label} 股價 {quote.price} 跌破月線 {snapshot.ma20:.2f}", snapshot.ma20)
                )

        events = []
        for alert_type, message, value in candidates:
            if self.ledger is not None:
                if self.dry_run:
                    ready = self.ledger.should_fire(security_id, alert_type, now)
                else:
                    ready = self.ledger.fire_if_ready(security_id, alert_type, now)
                if not ready:
                    continue
            events.append(
                AlertEvent(
                    alert_type=alert_type,
                    security_id=security_id,
                    security_name=name,
                    title=TECHNICAL_TITLES[alert_type],
                    message=message,
                    value=round(value, 2) if value is not None else None,
                    price=price,
                    change_percent=quote.change_percent if quote else None,
                    triggered_at=now,
                )
            )
        return events

    def _requested_levels(
        self, rules: Optional[list[ConditionRule]]
    ) -> dict[AlertType, Optional[float]]:
        """Condition types to check, mapped to their level override."""
        if not rules:
            return {alert_type: None for alert_type in TECHNICAL_TYPES}
        levels: dict[AlertType, Optional[float]] = {}
        for rule in rules:
            if not rule.is_active:
                continue
            try:
                alert_type = parse_alert_type(rule.condition_type)
            except ValueError:
                logger.warning(f"Skipping rule {rule.id} with unknown type {rule.condition_type}")
                continue
            if alert_type in TECHNICAL_TYPES:
                levels[alert_type] = rule.parameter
        return levels

    def _check_ma_breakout(self, quote: Quote, snapshot: IndicatorSnapshot) -> list[AlertEvent]:
        ma, prev = snapshot.ma, snapshot.previous_close
        if ma is None or prev is None:
            return []
        period = snapshot.ma_period
        if prev < ma < quote.price:
            return [
                self._event(
                    AlertType.MA_BREAKOUT, quote,
                    title="均線突破", message=f"📈 突破 {period}MA", value=ma,
                )
            ]
        if prev > ma > quote.price:
            return [
                self._event(
                    AlertType.MA_BREAKDOWN, quote,
                    title="均線跌破", message=f"📉 跌破 {period}MA", value=ma,
                )
            ]
        return []

    def _check_high_low(self, quote: Quote, snapshot: IndicatorSnapshot) -> list[AlertEvent]:
        days = snapshot.high_low_days
        if snapshot.high_n is not None and quote.price > snapshot.high_n:
            return [
                self._event(
                    AlertType.NEW_HIGH, quote,
                    title="創新高", message=f"🏆 創 {days} 日新高", value=snapshot.high_n,
                )
            ]
        if snapshot.low_n is not None and quote.price < snapshot.low_n:
            return [
                self._event(
                    AlertType.NEW_LOW, quote,
                    title="創新低", message=f"⚠️ 創 {days} 日新低", value=snapshot.low_n,
                )
            ]
        return []

    def _check_targets(self, quote: Quote, subject: Union[WatchEntry, Position]) -> list[AlertEvent]:
        """Fire reached targets and clear them so they cannot fire again."""
        events = []
        high, low = subject.target_price_high, subject.target_price_low
        if high is not None and quote.price >= high:
            events.append(
                self._event(
                    AlertType.TARGET_HIGH, quote,
                    title="停利提醒", message=f"🎯 已達目標價 {high}", value=high,
                )
            )
            subject.target_price_high = None
            self._clear_target(subject, "target_price_high")
        if low is not None and quote.price <= low:
            events.append(
                self._event(
                    AlertType.TARGET_LOW, quote,
                    title="停損提醒", message=f"🎯 已跌破目標價 {low}", value=low,
                )
            )
            subject.target_price_low = None
            self._clear_target(subject, "target_price_low")
        return events

    def _clear_target(self, subject: Union[WatchEntry, Position], column: str) -> None:
        if subject.id is None or self.dry_run:
            return
        if isinstance(subject, Position) and self.position_repo is not None:
            if column == "target_price_high":
                self.position_repo.clear_target_high(subject.id)
            else:
                self.position_repo.clear_target_low(subject.id)
        elif isinstance(subject, WatchEntry) and self.watchlist_repo is not None:
            self.watchlist_repo.clear_target(subject.id, column)

    def _event(
        self, alert_type: AlertType, quote: Quote, title: str, message: str, value: Optional[float]
    ) -> AlertEvent:
        return AlertEvent(
            alert_type=alert_type,
            security_id=quote.security_id,
            security_name=quote.name,
            title=title,
            message=message,
            value=round(value, 2) if value is not None else None,
            price=quote.price,
            change_percent=quote.change_percent,
            triggered_at=self.clock(),
        )
