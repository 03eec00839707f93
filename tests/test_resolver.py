"""
Quote resolution tests.
Tests for the domestic and foreign provider ladders with mocked upstreams.
"""

from unittest.mock import PropertyMock, patch

import pytest
import requests
from yfinance.exceptions import YFException

from stockwatch.data.quotes import SESSION_AFTER_HOURS, SESSION_INTRADAY
from stockwatch.data.resolver import QuoteResolver
from conftest import AFTER_CLOSE_TIME, SESSION_TIME, FakeClock, http_response

TWSE_CLOSING_ROWS = [
    {"Code": "2330", "Name": "台積電", "ClosingPrice": "585.00", "Change": "5.00",
     "OpeningPrice": "581.00", "HighestPrice": "586.00", "LowestPrice": "579.00",
     "TradeVolume": "30000000"},
]


def mis_row(code="2330", name="台積電", z="580.00", y="580.00", v="20000"):
    return {"c": code, "n": name, "z": z, "y": y, "o": y, "h": z, "l": y, "v": v,
            "b": "-", "a": "-"}


def routed_get(routes):
    """requests.get side effect dispatching on URL fragments."""

    def _get(url, params=None, **kwargs):
        for fragment, handler in routes.items():
            key = url + "?" + str(params or "")
            if fragment in key:
                result = handler() if callable(handler) else handler
                if isinstance(result, Exception):
                    raise result
                return result
        raise requests.ConnectionError(f"unrouted {url}")

    return _get


@pytest.fixture
def resolver():
    return QuoteResolver(clock=FakeClock(SESSION_TIME))


class TestSession:
    """Tests for the trading session window."""

    def test_open_on_weekday_morning(self, resolver):
        """Should be open inside the session on a weekday."""
        assert resolver.is_session_open(SESSION_TIME)

    def test_closed_after_close(self, resolver):
        """Should be closed after the session ends."""
        assert not resolver.is_session_open(AFTER_CLOSE_TIME)

    def test_closed_on_weekend(self, resolver):
        """Should be closed on Saturday."""
        saturday = SESSION_TIME.replace(day=24)
        assert not resolver.is_session_open(saturday)


class TestDomesticResolution:
    """Tests for domestic securities."""

    def test_live_quote_during_session(self, resolver, mis_payload):
        """Should use the live endpoint while the market is open."""
        routes = {"getStockInfo": http_response(mis_payload)}
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("2330")

        assert quote.price == 610.0
        assert quote.session == SESSION_INTRADAY
        assert quote.source == "twse_live_tse"
        assert quote.resolved_at == SESSION_TIME

    def test_stale_live_price_repaired_from_closing(self, resolver):
        """Should replace a live price equal to previous close with the closing price."""
        routes = {
            "getStockInfo": http_response({"msgArray": [mis_row(z="580.00", y="580.00")]}),
            "STOCK_DAY_ALL": http_response(TWSE_CLOSING_ROWS),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("2330")

        assert quote.price == 585.0
        assert quote.previous_close == 580.0
        assert quote.change == 5.0
        assert quote.change_percent == pytest.approx(0.86)
        assert quote.source == "twse_live_tse+twse_close"

    def test_repair_compares_prices_only(self, resolver):
        """Should repair even when the closing document has another previous close."""
        rows = [dict(TWSE_CLOSING_ROWS[0], Change="10.00")]
        routes = {
            "getStockInfo": http_response({"msgArray": [mis_row(z="580.00", y="580.00")]}),
            "STOCK_DAY_ALL": http_response(rows),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("2330")

        assert quote.price == 585.0
        assert quote.previous_close == 580.0
        assert quote.source == "twse_live_tse+twse_close"

    def test_unchanged_price_kept_when_closing_agrees(self, resolver):
        """Should keep the live price when the closing document matches."""
        rows = [dict(TWSE_CLOSING_ROWS[0], ClosingPrice="580.00", Change="0.00")]
        routes = {
            "getStockInfo": http_response({"msgArray": [mis_row()]}),
            "STOCK_DAY_ALL": http_response(rows),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("2330")

        assert quote.price == 580.0
        assert quote.change == 0.0
        assert quote.source == "twse_live_tse"

    def test_venue_swap(self, resolver):
        """Should find an OTC security and remember its venue."""
        routes = {
            "tse_6488.tw": http_response({"msgArray": []}),
            "otc_6488.tw": http_response(
                {"msgArray": [mis_row("6488", "環球晶", z="410.00", y="400.00")]}
            ),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("6488")

        assert quote.market == "OTC"
        assert quote.change_percent == 2.5
        assert resolver.venue_order("6488") == ["otc", "tse"]

    def test_venue_hint_tried_first(self):
        """Should query the remembered venue before the other one."""
        resolver = QuoteResolver(clock=FakeClock(SESSION_TIME), venue_hints={"6488": "OTC"})
        routes = {
            "otc_6488.tw": http_response({"msgArray": [mis_row("6488", z="410", y="400")]}),
        }
        with patch("requests.get", side_effect=routed_get(routes)) as mock_get:
            quote = resolver.resolve("6488")

        assert quote.market == "OTC"
        assert mock_get.call_count == 1

    def test_after_hours_uses_closing_document(self):
        """Should prefer the closing document outside the session."""
        resolver = QuoteResolver(clock=FakeClock(AFTER_CLOSE_TIME))
        routes = {"STOCK_DAY_ALL": http_response(TWSE_CLOSING_ROWS)}
        with patch("requests.get", side_effect=routed_get(routes)) as mock_get:
            quote = resolver.resolve("2330")

        assert quote.price == 585.0
        assert quote.session == SESSION_AFTER_HOURS
        assert quote.source == "twse_close"
        assert all("getStockInfo" not in c.args[0] for c in mock_get.call_args_list)

    def test_closing_falls_back_to_html(self):
        """Should scrape the quote page when the closing document fails."""
        resolver = QuoteResolver(clock=FakeClock(AFTER_CLOSE_TIME))
        html = (
            '<script>{"regularMarketPrice":{"raw":590},'
            '"regularMarketPreviousClose":{"raw":585},"symbolName":"台積電"}</script>'
        )
        routes = {
            "STOCK_DAY_ALL": http_response({}, status_code=500),
            "tw.stock.yahoo.com/quote/2330.TW": http_response(text=html),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("2330")

        assert quote.price == 590.0
        assert quote.source == "yahoo_tw_html_tse"
        assert quote.name == "台積電"

    def test_live_failure_during_session_uses_closing(self, resolver):
        """Should fall back to the closing ladder when every live call fails."""
        routes = {
            "getStockInfo": requests.Timeout("timed out"),
            "STOCK_DAY_ALL": http_response(TWSE_CLOSING_ROWS),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("2330")

        assert quote.price == 585.0
        assert quote.session == SESSION_INTRADAY

    def test_everything_fails(self, resolver):
        """Should return None without raising."""
        with patch("requests.get", side_effect=requests.ConnectionError("down")):
            assert resolver.resolve("2330") is None


class TestForeignResolution:
    """Tests for foreign tickers."""

    def test_falls_through_to_second_provider(self, resolver):
        """Should use the quote API when the chart API fails."""
        payload = {
            "quoteResponse": {
                "result": [
                    {"shortName": "Apple Inc.", "regularMarketPrice": 190.0,
                     "regularMarketPreviousClose": 188.0}
                ]
            }
        }
        routes = {
            "v8/finance/chart": requests.Timeout("timed out"),
            "v7/finance/quote": http_response(payload),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("aapl")

        assert quote.security_id == "AAPL"
        assert quote.source == "yahoo_quote"
        assert quote.market == "US"
        assert quote.session == SESSION_AFTER_HOURS

    def test_all_providers_time_out(self, resolver):
        """Should return None when every provider times out."""
        with patch("requests.get", side_effect=requests.Timeout("timed out")), \
                patch("yfinance.Ticker", side_effect=requests.Timeout("timed out")):
            assert resolver.resolve("AAPL") is None

    def test_rate_limited_summary_falls_through(self, resolver):
        """Should move past a rate-limited yfinance lookup to MarketWatch."""
        html = '<meta name="price" content="190.50"><meta name="priceChange" content="1.50">'
        routes = {
            "v8/finance/chart": requests.Timeout("timed out"),
            "v7/finance/quote": requests.Timeout("timed out"),
            "finance.yahoo.com/quote": requests.Timeout("timed out"),
            "marketwatch.com": http_response(text=html),
        }
        with patch("requests.get", side_effect=routed_get(routes)), \
                patch("yfinance.Ticker") as mock_ticker:
            type(mock_ticker.return_value).info = PropertyMock(
                side_effect=YFException("Too Many Requests")
            )
            quote = resolver.resolve("AAPL")

        assert quote.price == 190.5
        assert quote.previous_close == 189.0
        assert quote.source == "marketwatch_html"

    def test_zero_price_skipped(self, resolver):
        """Should skip providers answering with a non-positive price."""
        chart = {"chart": {"result": [{"meta": {"regularMarketPrice": 0}, "indicators": {}}]}}
        routes = {
            "v8/finance/chart": http_response(chart),
            "v7/finance/quote": http_response(
                {"quoteResponse": {"result": [{"regularMarketPrice": 10.5}]}}
            ),
        }
        with patch("requests.get", side_effect=routed_get(routes)):
            quote = resolver.resolve("F")

        assert quote.price == 10.5


class TestUnknownIdentifiers:
    """Tests for identifiers that match neither pattern."""

    def test_no_network_call(self, resolver):
        """Should return None without querying any provider."""
        with patch("requests.get") as mock_get, patch("yfinance.Ticker") as mock_ticker:
            assert resolver.resolve("BRK.B") is None

        mock_get.assert_not_called()
        mock_ticker.assert_not_called()
