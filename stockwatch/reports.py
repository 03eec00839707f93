"""
End-of-day report cards: watch-list close report and holdings summary.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from stockwatch.data.quotes import Quote
from stockwatch.database.models import Position
from stockwatch.notifiers.line import (
    COLOR_DOWN,
    COLOR_MUTED,
    COLOR_UP,
    MAX_CAROUSEL_BUBBLES,
    box,
    flex_message,
    format_change,
    row,
    text,
)

HEADER_COLOR = "#2C3E50"
HOLDINGS_PAGE_SIZE = 5
REPORT_PAGE_SIZE = 10


def _color(value: Optional[float]) -> str:
    if not value:
        return COLOR_MUTED
    return COLOR_UP if value > 0 else COLOR_DOWN


def _header(title: str, subtitle: str) -> dict[str, Any]:
    return box(
        "vertical",
        [
            text(title, size="xl", weight="bold", color="#ffffff"),
            text(subtitle, size="sm", color="#ffffffaa", margin="sm"),
        ],
        backgroundColor=HEADER_COLOR,
        paddingAll="20px",
    )


def _bubble(header: dict[str, Any], contents: list[dict[str, Any]], footer: str) -> dict[str, Any]:
    return {
        "type": "bubble",
        "size": "mega",
        "header": header,
        "body": box("vertical", contents, paddingAll="15px"),
        "footer": box("horizontal", [text(footer, size="xs", color=COLOR_MUTED, align="center")], paddingAll="10px"),
    }


def _pages(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def build_daily_report(quotes: list[Quote], trade_date: date) -> Optional[dict[str, Any]]:
    """
    Close report for the watch list, strongest movers first.

    Returns None when there is nothing to report.
    """
    if not quotes:
        return None
    ordered = sorted(quotes, key=lambda q: q.change_percent, reverse=True)
    up = sum(1 for q in ordered if q.change > 0)
    down = sum(1 for q in ordered if q.change < 0)
    subtitle = f"{trade_date.isoformat()} | ↑{up} ↓{down}"

    bubbles = []
    for page in _pages(ordered, REPORT_PAGE_SIZE)[:MAX_CAROUSEL_BUBBLES]:
        lines = [
            box(
                "horizontal",
                [
                    text("股票", size="xs", color=COLOR_MUTED, flex=3),
                    text("收盤", size="xs", color=COLOR_MUTED, align="end", flex=2),
                    text("漲跌", size="xs", color=COLOR_MUTED, align="end", flex=2),
                ],
            ),
            {"type": "separator", "margin": "sm"},
        ]
        for quote in page:
            color = _color(quote.change_percent)
            lines.append(
                box(
                    "horizontal",
                    [
                        text(f"{quote.name} {quote.security_id}", size="xs", flex=3),
                        text(quote.price, size="xs", align="end", flex=2),
                        text(format_change(quote.change_percent), size="xs", color=color, align="end", flex=2),
                    ],
                    margin="sm",
                )
            )
        bubbles.append(_bubble(_header("📊 收盤日報", subtitle), lines, f"共 {len(ordered)} 檔"))

    return flex_message(f"📊 {trade_date.isoformat()} 收盤日報", bubbles)


@dataclass
class HoldingLine:
    """A position valued at its latest quote."""

    position: Position
    quote: Quote

    @property
    def cost(self) -> float:
        return (self.position.won_price or 0) * self.position.total_shares

    @property
    def market_value(self) -> float:
        return self.quote.price * self.position.total_shares

    @property
    def profit(self) -> float:
        return self.market_value - self.cost

    @property
    def profit_percent(self) -> Optional[float]:
        return self.position.profit_percent(self.quote.price)


def _holding_rows(line: HoldingLine) -> list[dict[str, Any]]:
    percent = line.profit_percent
    return [
        box(
            "horizontal",
            [
                text(f"{line.quote.name} {line.quote.security_id}", size="sm", weight="bold", flex=3),
                text(line.quote.price, size="sm", align="end", flex=2, color=_color(line.quote.change_percent)),
            ],
            margin="md",
        ),
        box(
            "horizontal",
            [
                text(f"{line.position.total_shares:,} 股", size="xs", color=COLOR_MUTED, flex=3),
                text(
                    f"{line.profit:+,.0f} ({percent:+.2f}%)" if percent is not None else "-",
                    size="xs",
                    align="end",
                    flex=3,
                    color=_color(line.profit),
                ),
            ],
        ),
    ]


def build_holdings_summary(
    lines: list[HoldingLine], trade_date: date, card_threshold: int = 8
) -> Optional[dict[str, Any]]:
    """
    Holdings close summary.

    Up to ``card_threshold`` holdings fit in one bubble. Beyond that an
    overview bubble is followed by pages of five holdings, capped at the
    carousel limit.
    """
    if not lines:
        return None
    total_cost = sum(line.cost for line in lines)
    total_value = sum(line.market_value for line in lines)
    total_profit = total_value - total_cost
    total_percent = total_profit / total_cost * 100 if total_cost > 0 else 0.0
    subtitle = f"{trade_date.isoformat()} | {len(lines)} 檔持股"

    overview = [
        row("總成本", f"{total_cost:,.0f}"),
        row("總市值", f"{total_value:,.0f}"),
        row("未實現損益", f"{total_profit:+,.0f}", _color(total_profit)),
        row("報酬率", f"{total_percent:+.2f}%", _color(total_profit)),
    ]
    alt_text = f"💼 {trade_date.isoformat()} 持股收盤摘要 {total_profit:+,.0f}"

    if len(lines) <= card_threshold:
        contents = list(overview)
        contents.append({"type": "separator", "margin": "lg"})
        for line in lines:
            contents.extend(_holding_rows(line))
        return flex_message(alt_text, [_bubble(_header("💼 持股收盤摘要", subtitle), contents, f"共 {len(lines)} 檔")])

    bubbles = [_bubble(_header("💼 持股收盤摘要", subtitle), overview, "👉 滑動看個股明細")]
    pages = _pages(lines, HOLDINGS_PAGE_SIZE)
    for number, page in enumerate(pages[: MAX_CAROUSEL_BUBBLES - 1], start=1):
        contents = []
        for line in page:
            contents.extend(_holding_rows(line))
        bubbles.append(
            _bubble(_header("💼 持股明細", f"第 {number}/{len(pages)} 頁"), contents, subtitle)
        )
    return flex_message(alt_text, bubbles)
