"""
Persisted cooldown ledger for technical alerts.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from stockwatch.data.quotes import MARKET_TZ
from stockwatch.database.models import CooldownEntry
from stockwatch.database.repository import ConditionRuleRepository, CooldownRepository

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=4)


def _key(condition_type) -> str:
    return getattr(condition_type, "value", condition_type)


class CooldownLedger:
    """
    Suppresses repeats of a (security, condition type) pair inside a window.

    The ledger is the only state technical evaluation keeps between sweeps.
    """

    def __init__(
        self,
        repo: CooldownRepository,
        rule_repo: Optional[ConditionRuleRepository] = None,
        window: timedelta = DEFAULT_WINDOW,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.rule_repo = rule_repo
        self.window = window
        self.clock = clock or (lambda: datetime.now(MARKET_TZ))

    def should_fire(
        self, security_id: str, condition_type: str, now: Optional[datetime] = None
    ) -> bool:
        """True when the pair never fired or fired at least one window ago."""
        entry = self.repo.get(security_id, _key(condition_type))
        if entry is None:
            return True
        now = now or self.clock()
        last = entry.last_fired_at
        if last.tzinfo is None and now.tzinfo is not None:
            last = last.replace(tzinfo=now.tzinfo)
        elif last.tzinfo is not None and now.tzinfo is None:
            now = now.replace(tzinfo=last.tzinfo)
        return now - last >= self.window

    def mark_fired(
        self, security_id: str, condition_type: str, when: Optional[datetime] = None
    ) -> None:
        """Record a firing and stamp matching condition rules."""
        when = when or self.clock()
        self.repo.upsert(security_id, _key(condition_type), when)
        if self.rule_repo is not None:
            self.rule_repo.stamp_triggered(security_id, _key(condition_type), when)

    def fire_if_ready(
        self, security_id: str, condition_type: str, now: Optional[datetime] = None
    ) -> bool:
        """Check and mark in one step; returns whether the caller may fire."""
        now = now or self.clock()
        if not self.should_fire(security_id, condition_type, now):
            logger.debug(f"{_key(condition_type)} for {security_id} is cooling down")
            return False
        self.mark_fired(security_id, condition_type, now)
        return True

    def entries(self) -> list[CooldownEntry]:
        return self.repo.list_all()
