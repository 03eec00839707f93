"""
Three major institutional investors' daily net trading (TWSE T86 report).
"""

import logging
from datetime import date
from typing import Iterable, Optional

import requests

from stockwatch.config import ProvidersConfig
from stockwatch.database.models import InstitutionalFlow
from stockwatch.database.repository import InstitutionalRepository
from .providers import ProviderError
from .quotes import parse_number

logger = logging.getLogger(__name__)

T86_URL = "https://www.twse.com.tw/rwd/zh/fund/T86"

# Column positions in the T86 data rows.
COL_CODE = 0
COL_FOREIGN_NET = 4
COL_TRUST_NET = 10
COL_DEALER_NET = 11
COL_TOTAL_NET = 18


def _to_int(value) -> int:
    number = parse_number(value)
    return int(number) if number is not None else 0


def parse_t86(payload: dict, trade_date: date) -> list[InstitutionalFlow]:
    """Turn a T86 JSON document into flows; empty on non-trading days."""
    if payload.get("stat") != "OK":
        return []
    flows = []
    for row in payload.get("data") or []:
        if len(row) <= COL_TOTAL_NET:
            raise ProviderError(f"T86 row has {len(row)} columns")
        flows.append(
            InstitutionalFlow(
                security_id=str(row[COL_CODE]).strip(),
                trade_date=trade_date,
                foreign_net=_to_int(row[COL_FOREIGN_NET]),
                trust_net=_to_int(row[COL_TRUST_NET]),
                dealer_net=_to_int(row[COL_DEALER_NET]),
                total_net=_to_int(row[COL_TOTAL_NET]),
            )
        )
    return flows


class InstitutionalFetcher:
    """Downloads T86 data and stores it for tracked securities."""

    def __init__(self, repo: InstitutionalRepository, config: Optional[ProvidersConfig] = None):
        self.repo = repo
        self.config = config or ProvidersConfig()

    def fetch(self, trade_date: date) -> list[InstitutionalFlow]:
        """Fetch all flows for one trading date."""
        response = requests.get(
            T86_URL,
            params={
                "date": trade_date.strftime("%Y%m%d"),
                "selectType": "ALLBUT0999",
                "response": "json",
            },
            headers={"User-Agent": self.config.user_agent},
            timeout=self.config.structured_timeout,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"Malformed T86 payload: {e}") from e
        return parse_t86(payload, trade_date)

    def refresh(self, trade_date: date, security_ids: Iterable[str]) -> int:
        """
        Store the day's flows for the given securities.

        Returns:
            Number of rows upserted
        """
        wanted = set(security_ids)
        if not wanted:
            return 0
        try:
            flows = self.fetch(trade_date)
        except (requests.RequestException, ProviderError) as e:
            logger.warning(f"Institutional data unavailable for {trade_date}: {e}")
            return 0

        stored = 0
        for flow in flows:
            if flow.security_id in wanted:
                self.repo.upsert(flow)
                stored += 1
        logger.info(f"Stored institutional flows for {stored}/{len(wanted)} securities")
        return stored
