"""
Upstream quote providers.

Each provider is a small callable: ``provider(security_id) -> Quote``. A
provider raises ``ProviderError`` (or lets ``requests.RequestException``
escape) when it cannot produce a usable quote; the resolver treats both the
same way and moves on to the next provider in its ladder.
"""

import logging
import re
import time
from typing import Any, Callable, Optional

import requests
import yfinance as yf
from yfinance.exceptions import YFException

from stockwatch.config import ProvidersConfig
from stockwatch.database.models import SHARES_PER_LOT
from .quotes import Quote, build_quote, parse_number

logger = logging.getLogger(__name__)

VENUE_TSE = "tse"
VENUE_OTC = "otc"
VENUE_MARKETS = {VENUE_TSE: "TSE", VENUE_OTC: "OTC"}
MARKET_VENUES = {market: venue for venue, market in VENUE_MARKETS.items()}
YAHOO_SUFFIXES = {VENUE_TSE: ".TW", VENUE_OTC: ".TWO"}


class ProviderError(Exception):
    """Raised when a provider answered but the payload is unusable."""

    pass


def _http_get(
    url: str,
    config: ProvidersConfig,
    timeout: float,
    params: Optional[dict[str, Any]] = None,
    accept: str = "application/json",
) -> requests.Response:
    """GET with a browser user agent and a bounded timeout."""
    response = requests.get(
        url,
        params=params,
        headers={"User-Agent": config.user_agent, "Accept": accept},
        timeout=timeout,
    )
    if not response.ok:
        raise ProviderError(f"HTTP {response.status_code} from {url}")
    return response


def _json(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(f"Malformed JSON: {e}") from e


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    """First value among keys that parses as a number."""
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, dict):
            value = value.get("raw")
        if parse_number(value) is not None:
            return value
    return None


def _require(quote: Optional[Quote], source: str, security_id: str) -> Quote:
    if quote is None:
        raise ProviderError(f"{source} has no usable price for {security_id}")
    return quote


class Provider:
    """Base class for quote providers."""

    name = "provider"

    def __init__(self, config: ProvidersConfig):
        self.config = config

    def __call__(self, security_id: str) -> Quote:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


# ---------------------------------------------------------------------------
# Domestic providers
# ---------------------------------------------------------------------------


class TwseLiveProvider(Provider):
    """TWSE MIS live quote endpoint for one venue (listed or OTC board)."""

    URL = "https://mis.twse.com.tw/stock/api/getStockInfo.jsp"

    def __init__(self, config: ProvidersConfig, venue: str):
        super().__init__(config)
        self.venue = venue
        self.name = f"twse_live_{venue}"

    def __call__(self, security_id: str) -> Quote:
        response = _http_get(
            self.URL,
            self.config,
            self.config.structured_timeout,
            params={"ex_ch": f"{self.venue}_{security_id}.tw", "json": 1, "delay": 0},
        )
        data = _json(response)
        rows = data.get("msgArray") if isinstance(data, dict) else None
        if not rows:
            raise ProviderError(f"{self.name} does not list {security_id}")
        row = rows[0]

        price = parse_number(row.get("z"))
        if price is None or price <= 0:
            # No trade yet in this tick: best bid, then best ask.
            price = self._best_level(row.get("b")) or self._best_level(row.get("a"))

        volume_lots = parse_number(row.get("v"))
        quote = build_quote(
            security_id,
            name=row.get("n"),
            price=price,
            previous_close=row.get("y"),
            open_price=row.get("o"),
            high=row.get("h"),
            low=row.get("l"),
            volume=volume_lots * SHARES_PER_LOT if volume_lots else None,
            source=self.name,
            market=VENUE_MARKETS[self.venue],
        )
        return _require(quote, self.name, security_id)

    @staticmethod
    def _best_level(levels: Optional[str]) -> Optional[float]:
        if not levels:
            return None
        value = parse_number(str(levels).split("_")[0])
        return value if value and value > 0 else None


class ClosingDocumentProvider(Provider):
    """
    Closing prices published as one whole-market document.

    The document is cached for ``closing_cache_seconds`` so a sweep over many
    securities costs one download per venue.
    """

    URL = ""
    venue = VENUE_TSE

    def __init__(self, config: ProvidersConfig, clock: Callable[[], float] = time.monotonic):
        super().__init__(config)
        self.clock = clock
        self._rows: dict[str, dict[str, Any]] = {}
        self._fetched_at: Optional[float] = None

    def _code_of(self, row: dict[str, Any]) -> str:
        raise NotImplementedError

    def _to_quote(self, security_id: str, row: dict[str, Any]) -> Optional[Quote]:
        raise NotImplementedError

    def _document(self) -> dict[str, dict[str, Any]]:
        now = self.clock()
        fresh = (
            self._fetched_at is not None
            and now - self._fetched_at < self.config.closing_cache_seconds
        )
        if not fresh:
            payload = _json(_http_get(self.URL, self.config, self.config.structured_timeout))
            if not isinstance(payload, list):
                raise ProviderError(f"{self.name} returned {type(payload).__name__}")
            self._rows = {
                self._code_of(row).strip(): row for row in payload if isinstance(row, dict)
            }
            self._fetched_at = now
            logger.debug(f"Refreshed {self.name} closing document ({len(self._rows)} rows)")
        return self._rows

    def __call__(self, security_id: str) -> Quote:
        row = self._document().get(security_id)
        if row is None:
            raise ProviderError(f"{self.name} has no row for {security_id}")
        return _require(self._to_quote(security_id, row), self.name, security_id)

    @staticmethod
    def _previous_close(close: Any, change: Any) -> Optional[float]:
        close_value = parse_number(close)
        change_value = parse_number(change)
        if close_value is None or change_value is None:
            return None
        return round(close_value - change_value, 4)


class TwseClosingProvider(ClosingDocumentProvider):
    """TWSE OpenAPI daily closing prices for listed securities."""

    URL = "https://openapi.twse.com.tw/v1/exchangeReport/STOCK_DAY_ALL"
    name = "twse_close"
    venue = VENUE_TSE

    def _code_of(self, row: dict[str, Any]) -> str:
        return str(row.get("Code", ""))

    def _to_quote(self, security_id: str, row: dict[str, Any]) -> Optional[Quote]:
        return build_quote(
            security_id,
            name=row.get("Name"),
            price=row.get("ClosingPrice"),
            previous_close=self._previous_close(row.get("ClosingPrice"), row.get("Change")),
            open_price=row.get("OpeningPrice"),
            high=row.get("HighestPrice"),
            low=row.get("LowestPrice"),
            volume=row.get("TradeVolume"),
            source=self.name,
            market="TSE",
        )


class TpexClosingProvider(ClosingDocumentProvider):
    """TPEx OpenAPI daily closing prices for OTC securities."""

    URL = "https://www.tpex.org.tw/openapi/v1/tpex_mainboard_quotes"
    name = "tpex_close"
    venue = VENUE_OTC

    def _code_of(self, row: dict[str, Any]) -> str:
        return str(row.get("SecuritiesCompanyCode", ""))

    def _to_quote(self, security_id: str, row: dict[str, Any]) -> Optional[Quote]:
        return build_quote(
            security_id,
            name=row.get("CompanyName"),
            price=row.get("Close"),
            previous_close=self._previous_close(row.get("Close"), row.get("Change")),
            open_price=row.get("Open"),
            high=row.get("High"),
            low=row.get("Low"),
            volume=row.get("TradingShares"),
            source=self.name,
            market="OTC",
        )


# Embedded-state and fin-streamer patterns used by Yahoo quote pages.
_HTML_FIELD_PATTERNS = {
    field_name: [
        re.compile(rf'"{field_name}"\s*:\s*\{{\s*"raw"\s*:\s*(-?[\d.]+)'),
        re.compile(rf'"{field_name}"\s*:\s*"?(-?[\d,.]+)'),
        re.compile(rf'data-field="{field_name}"[^>]*?value="(-?[\d,.]+)"'),
    ]
    for field_name in (
        "regularMarketPrice",
        "regularMarketPreviousClose",
        "regularMarketOpen",
        "regularMarketDayHigh",
        "regularMarketDayLow",
        "regularMarketVolume",
    )
}
_HTML_NAME_PATTERNS = [
    re.compile(r'"shortName"\s*:\s*"([^"]+)"'),
    re.compile(r'"symbolName"\s*:\s*"([^"]+)"'),
    re.compile(r"<title>\s*([^<(|]+)"),
]


def extract_html_fields(html: str) -> dict[str, Optional[str]]:
    """Pull regularMarket* fields and a display name out of a quote page."""
    fields: dict[str, Optional[str]] = {}
    for field_name, patterns in _HTML_FIELD_PATTERNS.items():
        fields[field_name] = None
        for pattern in patterns:
            match = pattern.search(html)
            if match:
                fields[field_name] = match.group(1)
                break
    fields["name"] = None
    for pattern in _HTML_NAME_PATTERNS:
        match = pattern.search(html)
        if match:
            fields["name"] = match.group(1).strip()
            break
    return fields


class HtmlQuoteProvider(Provider):
    """Scrapes a Yahoo-style quote page."""

    url_template = ""

    def __init__(self, config: ProvidersConfig, market: str):
        super().__init__(config)
        self.market = market

    def _url(self, security_id: str) -> str:
        return self.url_template.format(security_id=security_id)

    def __call__(self, security_id: str) -> Quote:
        response = _http_get(
            self._url(security_id),
            self.config,
            self.config.html_timeout,
            accept="text/html",
        )
        fields = extract_html_fields(response.text)
        if fields["regularMarketPrice"] is None:
            raise ProviderError(f"{self.name} page has no price for {security_id}")
        quote = build_quote(
            security_id,
            name=fields["name"],
            price=fields["regularMarketPrice"],
            previous_close=fields["regularMarketPreviousClose"],
            open_price=fields["regularMarketOpen"],
            high=fields["regularMarketDayHigh"],
            low=fields["regularMarketDayLow"],
            volume=fields["regularMarketVolume"],
            source=self.name,
            market=self.market,
        )
        return _require(quote, self.name, security_id)


class YahooTwHtmlProvider(HtmlQuoteProvider):
    """Yahoo Taiwan quote page, the secondary domestic closing source."""

    def __init__(self, config: ProvidersConfig, venue: str):
        super().__init__(config, VENUE_MARKETS[venue])
        self.venue = venue
        self.name = f"yahoo_tw_html_{venue}"

    def _url(self, security_id: str) -> str:
        return f"https://tw.stock.yahoo.com/quote/{security_id}{YAHOO_SUFFIXES[self.venue]}"


# ---------------------------------------------------------------------------
# Foreign providers
# ---------------------------------------------------------------------------


class YahooChartProvider(Provider):
    """Yahoo Finance chart API."""

    URL = "https://query1.finance.yahoo.com/v8/finance/chart/{security_id}"
    name = "yahoo_chart"

    def __call__(self, security_id: str) -> Quote:
        response = _http_get(
            self.URL.format(security_id=security_id),
            self.config,
            self.config.structured_timeout,
            params={"interval": "1d", "range": "5d"},
        )
        try:
            result = _json(response)["chart"]["result"][0]
            meta = result["meta"]
            bars = (result.get("indicators", {}).get("quote") or [{}])[0]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected chart payload: {e}") from e

        closes = [c for c in (bars.get("close") or []) if parse_number(c) is not None]
        # chartPreviousClose is the close before the whole range, use it last.
        previous_close = _first(meta, "previousClose", "regularMarketPreviousClose")
        if previous_close is None and len(closes) >= 2:
            previous_close = closes[-2]
        if previous_close is None:
            previous_close = meta.get("chartPreviousClose")

        quote = build_quote(
            security_id,
            name=meta.get("shortName") or meta.get("longName"),
            price=_first(meta, "regularMarketPrice") or (closes[-1] if closes else None),
            previous_close=previous_close,
            open_price=self._last(bars.get("open")),
            high=_first(meta, "regularMarketDayHigh") or self._last(bars.get("high")),
            low=_first(meta, "regularMarketDayLow") or self._last(bars.get("low")),
            volume=_first(meta, "regularMarketVolume") or self._last(bars.get("volume")),
            source=self.name,
            market="US",
        )
        return _require(quote, self.name, security_id)

    @staticmethod
    def _last(values: Optional[list]) -> Any:
        for value in reversed(values or []):
            if parse_number(value) is not None:
                return value
        return None


class YahooQuoteProvider(Provider):
    """Yahoo Finance quote API."""

    URL = "https://query1.finance.yahoo.com/v7/finance/quote"
    name = "yahoo_quote"

    def __call__(self, security_id: str) -> Quote:
        response = _http_get(
            self.URL, self.config, self.config.structured_timeout,
            params={"symbols": security_id},
        )
        try:
            row = _json(response)["quoteResponse"]["result"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected quote payload: {e}") from e
        quote = build_quote(
            security_id,
            name=row.get("shortName") or row.get("longName"),
            price=row.get("regularMarketPrice"),
            previous_close=row.get("regularMarketPreviousClose"),
            open_price=row.get("regularMarketOpen"),
            high=row.get("regularMarketDayHigh"),
            low=row.get("regularMarketDayLow"),
            volume=row.get("regularMarketVolume"),
            source=self.name,
            market="US",
        )
        return _require(quote, self.name, security_id)


class YahooSummaryProvider(Provider):
    """Yahoo Finance metadata summary, read through yfinance."""

    name = "yahoo_summary"

    def __call__(self, security_id: str) -> Quote:
        try:
            info = yf.Ticker(security_id).info
        except YFException as e:
            raise ProviderError(f"{self.name} failed for {security_id}: {e}") from e
        if not info:
            raise ProviderError(f"No summary data for {security_id}")
        quote = build_quote(
            security_id,
            name=info.get("shortName") or info.get("longName"),
            price=_first(info, "regularMarketPrice", "currentPrice"),
            previous_close=_first(info, "previousClose", "regularMarketPreviousClose"),
            open_price=_first(info, "open", "regularMarketOpen"),
            high=_first(info, "dayHigh", "regularMarketDayHigh"),
            low=_first(info, "dayLow", "regularMarketDayLow"),
            volume=_first(info, "volume", "regularMarketVolume"),
            source=self.name,
            market="US",
        )
        return _require(quote, self.name, security_id)


class YahooHtmlProvider(HtmlQuoteProvider):
    """Yahoo Finance quote page."""

    name = "yahoo_html"
    url_template = "https://finance.yahoo.com/quote/{security_id}/"

    def __init__(self, config: ProvidersConfig):
        super().__init__(config, "US")


class MarketWatchHtmlProvider(Provider):
    """MarketWatch quote page, independent of Yahoo."""

    URL = "https://www.marketwatch.com/investing/stock/{security_id}"
    name = "marketwatch_html"

    _META = re.compile(r'<meta\s+name="(price|priceChange|name)"\s+content="([^"]*)"')

    def __call__(self, security_id: str) -> Quote:
        response = _http_get(
            self.URL.format(security_id=security_id.lower()),
            self.config,
            self.config.html_timeout,
            accept="text/html",
        )
        meta = dict(self._META.findall(response.text))
        price = parse_number(meta.get("price"))
        if price is None:
            raise ProviderError(f"{self.name} page has no price for {security_id}")
        change = parse_number(meta.get("priceChange"))
        quote = build_quote(
            security_id,
            name=meta.get("name"),
            price=price,
            previous_close=round(price - change, 4) if change is not None else None,
            source=self.name,
            market="US",
        )
        return _require(quote, self.name, security_id)
