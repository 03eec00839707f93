"""
LINE Messaging API push notifier with flex message cards.
"""

import logging
from typing import Any, Optional

import requests

from stockwatch.rules.types import AlertEvent, AlertTone
from .base import Notifier, NotificationResult

logger = logging.getLogger(__name__)

PUSH_URL = "https://api.line.me/v2/bot/message/push"
MAX_CAROUSEL_BUBBLES = 12

# Taiwan convention: red is up, green is down.
COLOR_UP = "#D32F2F"
COLOR_DOWN = "#388E3C"
COLOR_NEUTRAL = "#546E7A"
COLOR_MUTED = "#888888"

TONE_COLORS = {
    AlertTone.BULLISH: COLOR_UP,
    AlertTone.BEARISH: COLOR_DOWN,
    AlertTone.NEUTRAL: COLOR_NEUTRAL,
}


def text(value: Any, **style: Any) -> dict[str, Any]:
    """Flex text component."""
    return {"type": "text", "text": str(value), **style}


def box(layout: str, contents: list[dict[str, Any]], **style: Any) -> dict[str, Any]:
    """Flex box component."""
    return {"type": "box", "layout": layout, "contents": contents, **style}


def row(label: str, value: Any, color: str = "#333333") -> dict[str, Any]:
    """Two-column label/value line used in card bodies."""
    return box(
        "horizontal",
        [
            text(label, size="sm", color=COLOR_MUTED, flex=2),
            text(value, size="sm", color=color, align="end", flex=3),
        ],
        margin="sm",
    )


def flex_message(alt_text: str, bubbles: list[dict[str, Any]]) -> dict[str, Any]:
    """Wrap bubbles as one flex message: a single bubble or a carousel."""
    if len(bubbles) == 1:
        contents = bubbles[0]
    else:
        contents = {"type": "carousel", "contents": bubbles[:MAX_CAROUSEL_BUBBLES]}
    return {"type": "flex", "altText": alt_text[:400], "contents": contents}


def format_change(change_percent: Optional[float]) -> str:
    if change_percent is None:
        return "-"
    arrow = "▲" if change_percent > 0 else ("▼" if change_percent < 0 else "")
    return f"{arrow} {abs(change_percent):.2f}%".strip()


class LineNotifier(Notifier):
    """Pushes alert cards to a LINE user through the Messaging API."""

    def __init__(self, channel_access_token: str, user_id: str, timeout: float = 10.0):
        """
        Initialize LINE notifier.

        Args:
            channel_access_token: Messaging API channel access token
            user_id: Recipient user id
            timeout: HTTP timeout in seconds
        """
        self.channel_access_token = channel_access_token
        self.user_id = user_id
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.channel_access_token and self.user_id)

    def send(self, event: AlertEvent, commentary: Optional[str] = None) -> NotificationResult:
        """Send one alert as a flex bubble."""
        message = flex_message(
            f"{event.display_name} {event.message}",
            [self.build_alert_bubble(event, commentary)],
        )
        return self.push([message])

    def push(self, messages: list[dict[str, Any]], to: Optional[str] = None) -> NotificationResult:
        """Push raw LINE message objects to the recipient."""
        recipient = to or self.user_id
        if not self.channel_access_token or not recipient:
            return NotificationResult(
                success=False, channel="line", error="LINE token or recipient not configured"
            )
        try:
            response = requests.post(
                PUSH_URL,
                json={"to": recipient, "messages": messages},
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.channel_access_token}",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return NotificationResult(success=False, channel="line", error=f"Connection error: {e}")

        if response.ok:
            return NotificationResult(success=True, channel="line")
        return NotificationResult(
            success=False,
            channel="line",
            error=f"HTTP {response.status_code}: {response.text}",
        )

    def build_alert_bubble(self, event: AlertEvent, commentary: Optional[str] = None) -> dict[str, Any]:
        """Header with name and title, body with price data, footer with time."""
        color = TONE_COLORS[event.tone]
        price_color = COLOR_NEUTRAL
        if event.change_percent:
            price_color = COLOR_UP if event.change_percent > 0 else COLOR_DOWN

        header = box(
            "vertical",
            [
                box(
                    "horizontal",
                    [
                        text(event.security_name, color="#ffffff", size="xl", weight="bold", flex=1),
                        text(event.security_id, color="#ffffffaa", size="sm", align="end"),
                    ],
                ),
                text(event.title, color="#ffffff", size="sm", margin="md"),
            ],
            backgroundColor=color,
            paddingAll="20px",
        )

        body_contents = [
            text(event.message, size="md", weight="bold", wrap=True, color=color),
            {"type": "separator", "margin": "lg"},
        ]
        if event.price is not None:
            body_contents.append(row("價格", event.price, price_color))
        body_contents.append(row("漲跌幅", format_change(event.change_percent), price_color))
        if event.value is not None:
            body_contents.append(row("觸發數值", event.value))
        if commentary:
            body_contents.append({"type": "separator", "margin": "lg"})
            body_contents.append(text(commentary, size="sm", wrap=True, color="#555555", margin="lg"))

        footer = box(
            "vertical",
            [text(event.triggered_at.strftime("%Y-%m-%d %H:%M:%S"), size="xs", color=COLOR_MUTED, align="center")],
        )

        return {
            "type": "bubble",
            "size": "mega",
            "header": header,
            "body": box("vertical", body_contents, paddingAll="20px"),
            "footer": footer,
        }
