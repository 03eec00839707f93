"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from stockwatch.rules.types import AlertEvent


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None


class Notifier(ABC):
    """Abstract base class for notifiers."""

    @abstractmethod
    def send(self, event: AlertEvent, commentary: Optional[str] = None) -> NotificationResult:
        """
        Send a single alert notification.

        Args:
            event: Alert event to send
            commentary: Optional commentary text shown with the alert

        Returns:
            NotificationResult indicating success or failure
        """
        pass
