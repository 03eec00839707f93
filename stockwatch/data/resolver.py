"""
Quote resolution across the domestic and foreign provider ladders.
"""

import dataclasses
import logging
from datetime import datetime
from typing import Callable, Optional

import requests
from yfinance.exceptions import YFException

from stockwatch.config import ProvidersConfig, parse_hhmm
from .providers import (
    MARKET_VENUES,
    VENUE_MARKETS,
    VENUE_OTC,
    VENUE_TSE,
    MarketWatchHtmlProvider,
    Provider,
    ProviderError,
    TpexClosingProvider,
    TwseClosingProvider,
    TwseLiveProvider,
    YahooChartProvider,
    YahooHtmlProvider,
    YahooQuoteProvider,
    YahooSummaryProvider,
    YahooTwHtmlProvider,
)
from .quotes import (
    DOMESTIC,
    MARKET_TZ,
    SESSION_AFTER_HOURS,
    SESSION_INTRADAY,
    Quote,
    classify,
    with_price,
)

logger = logging.getLogger(__name__)

PROVIDER_ERRORS = (ProviderError, YFException, ValueError, KeyError, TypeError, IndexError)


class QuoteResolver:
    """
    Resolves the best available quote for a security.

    Domestic securities go through the live endpoint while the market is in
    session and through the closing-price ladder otherwise. Foreign tickers
    walk a fixed list of providers until one answers with a positive price.
    """

    def __init__(
        self,
        config: Optional[ProvidersConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        venue_hints: Optional[dict[str, str]] = None,
    ):
        """
        Args:
            config: Provider timeouts, user agent and session window
            clock: Returns the current time; defaults to market-local now
            venue_hints: Known security id -> market ("TSE"/"OTC") pairs
        """
        self.config = config or ProvidersConfig()
        self.clock = clock or (lambda: datetime.now(MARKET_TZ))
        self.session_open = parse_hhmm(self.config.session_open)
        self.session_close = parse_hhmm(self.config.session_close)

        self._venues: dict[str, str] = {}
        for security_id, market in (venue_hints or {}).items():
            self.remember_venue(security_id, market)

        self.live = {venue: TwseLiveProvider(self.config, venue) for venue in VENUE_MARKETS}
        self.closing: dict[str, Provider] = {
            VENUE_TSE: TwseClosingProvider(self.config),
            VENUE_OTC: TpexClosingProvider(self.config),
        }
        self.secondary = {venue: YahooTwHtmlProvider(self.config, venue) for venue in VENUE_MARKETS}
        self.foreign_ladder: list[Provider] = [
            YahooChartProvider(self.config),
            YahooQuoteProvider(self.config),
            YahooSummaryProvider(self.config),
            YahooHtmlProvider(self.config),
            MarketWatchHtmlProvider(self.config),
        ]

    def is_session_open(self, now: Optional[datetime] = None) -> bool:
        """Whether the domestic market is in its weekday trading session."""
        now = (now or self.clock()).astimezone(MARKET_TZ)
        if now.weekday() >= 5:
            return False
        return self.session_open <= (now.hour, now.minute) <= self.session_close

    def venue_order(self, security_id: str) -> list[str]:
        """Venues to try for a domestic security, most likely first."""
        first = self._venues.get(security_id, VENUE_TSE)
        second = VENUE_OTC if first == VENUE_TSE else VENUE_TSE
        return [first, second]

    def remember_venue(self, security_id: str, market: str) -> None:
        """Record the market a domestic security was found on."""
        venue = MARKET_VENUES.get(market, market)
        if venue in VENUE_MARKETS:
            self._venues[security_id] = venue

    def resolve(self, security_id: str) -> Optional[Quote]:
        """
        Resolve a quote, or None when no provider could supply one.

        Never raises for upstream failures.
        """
        code = (security_id or "").strip().upper()
        kind = classify(code)
        if kind is None:
            logger.info(f"Unrecognised security id {security_id!r}, skipping lookup")
            return None

        now = self.clock()
        if kind == DOMESTIC:
            quote = self._resolve_domestic(code, now)
        else:
            quote = self._resolve_foreign(code, now)

        if quote is None:
            logger.warning(f"No provider could resolve {code}")
        else:
            logger.debug(
                f"Resolved {code} via {quote.source}: {quote.price} ({quote.change_percent:+.2f}%)"
            )
        return quote

    def _attempt(self, provider: Provider, security_id: str) -> Optional[Quote]:
        try:
            quote = provider(security_id)
        except requests.RequestException as e:
            logger.warning(f"{provider.name} unavailable for {security_id}: {e}")
            return None
        except PROVIDER_ERRORS as e:
            logger.debug(f"{provider.name} could not quote {security_id}: {e}")
            return None
        if quote.price <= 0:
            return None
        return quote

    def _resolve_domestic(self, code: str, now: datetime) -> Optional[Quote]:
        intraday = self.is_session_open(now)
        order = self.venue_order(code)
        quote: Optional[Quote] = None
        found_on: Optional[str] = None

        if intraday:
            for venue in order:
                quote = self._attempt(self.live[venue], code)
                if quote is not None:
                    quote = self._repair_stale(quote, venue)
                    found_on = venue
                    break

        if quote is None:
            for venue in order:
                ladder = [self.closing[venue], self.secondary[venue]]
                if not intraday:
                    ladder.append(self.live[venue])
                for provider in ladder:
                    quote = self._attempt(provider, code)
                    if quote is not None:
                        found_on = venue
                        break
                if quote is not None:
                    break

        if quote is None:
            return None

        if found_on != order[0]:
            logger.info(f"{code} found on {found_on} rather than {order[0]}, updating venue")
        self.remember_venue(code, found_on)
        return dataclasses.replace(
            quote,
            market=VENUE_MARKETS[found_on],
            session=SESSION_INTRADAY if intraday else SESSION_AFTER_HOURS,
            resolved_at=now,
        )

    def _repair_stale(self, quote: Quote, venue: str) -> Quote:
        """
        Cross-check a live price that equals the previous close.

        The live endpoint sometimes repeats yesterday's close; when the
        closing document disagrees, its price wins.
        """
        if quote.previous_close is None or quote.price != quote.previous_close:
            return quote
        closing = self._attempt(self.closing[venue], quote.security_id)
        if closing is None or closing.price == quote.price:
            return quote
        logger.info(
            f"Stale live price for {quote.security_id} ({quote.price}), "
            f"using {closing.source} price {closing.price}"
        )
        return with_price(quote, closing.price, f"{quote.source}+{closing.source}")

    def _resolve_foreign(self, ticker: str, now: datetime) -> Optional[Quote]:
        for provider in self.foreign_ladder:
            quote = self._attempt(provider, ticker)
            if quote is not None:
                return dataclasses.replace(
                    quote, market="US", session=SESSION_AFTER_HOURS, resolved_at=now
                )
        return None
