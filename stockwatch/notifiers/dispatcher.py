"""
Paced delivery of alert events with an audit trail.
"""

import logging
import time
from typing import Callable, Optional

from stockwatch.database.models import AlertLog
from stockwatch.database.repository import AlertLogRepository
from stockwatch.rules.types import AlertEvent
from .base import Notifier

logger = logging.getLogger(__name__)

CommentaryProvider = Callable[[AlertEvent], Optional[str]]


class NotificationDispatcher:
    """
    Sends events one at a time with a fixed delay between deliveries.

    Every event gets an audit row whether or not it was delivered. Failed
    deliveries are not retried.
    """

    def __init__(
        self,
        notifier: Notifier,
        audit_repo: AlertLogRepository,
        pace_seconds: float = 1.0,
        commentary: Optional[CommentaryProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.notifier = notifier
        self.audit_repo = audit_repo
        self.pace_seconds = pace_seconds
        self.commentary = commentary
        self.sleep = sleep

    def dispatch(self, events: list[AlertEvent]) -> int:
        """
        Deliver events in order.

        Returns:
            Number of events delivered successfully
        """
        delivered = 0
        for index, event in enumerate(events):
            if index > 0 and self.pace_seconds > 0:
                self.sleep(self.pace_seconds)

            comment = self._commentary_for(event)
            result = self.notifier.send(event, comment)
            if result.success:
                delivered += 1
                logger.info(f"Sent {event.alert_type.value} for {event.security_id}")
            else:
                logger.error(
                    f"Failed to send {event.alert_type.value} for {event.security_id}: {result.error}"
                )

            self.audit_repo.create(
                AlertLog(
                    security_id=event.security_id,
                    security_name=event.security_name,
                    condition_type=event.alert_type.value,
                    message=event.message,
                    price=event.price,
                    change_percent=event.change_percent,
                    commentary=comment,
                    delivered=result.success,
                    created_at=event.triggered_at,
                )
            )

        if events:
            logger.info(f"Dispatched {delivered}/{len(events)} alerts")
        return delivered

    def _commentary_for(self, event: AlertEvent) -> Optional[str]:
        if self.commentary is None:
            return None
        try:
            return self.commentary(event)
        except Exception as e:
            logger.warning(f"Commentary failed for {event.security_id}, sending without it: {e}")
            return None
