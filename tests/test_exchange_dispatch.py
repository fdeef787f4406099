"""
Tests for AsterExchange request dispatch.

Covers signed-string placement (query vs body), request pacing, rate
budget headers, error classification on the request path and the
response parsing of the account/market endpoints.
"""

from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError, Timeout

from core.exceptions import (
    ExchangeError,
    InsufficientMargin,
    NetworkError,
    RateLimited,
    ResyncRequired,
    ValidationError,
)
from core.exchange_aster import AsterExchange
from core.rate_limiter import RequestGate
from tests.helpers import http_error, make_response

REQUEST = "core.exchange_aster.requests.request"


class TestSignedSerialization:
    """Signed string must be sent byte-for-byte as signed"""

    def test_get_places_signed_string_in_query(self, exchange):
        """Test GET sends the signed string in the URL and no body."""
        with patch(REQUEST) as mock_request:
            mock_request.return_value = make_response([])

            exchange.signed_call("GET", "/fapi/v1/userTrades", {"symbol": "ADAUSDT", "limit": 10})

            method, url = mock_request.call_args.args
            kwargs = mock_request.call_args.kwargs
            assert method == "GET"
            assert url.startswith("https://fapi.test/fapi/v1/userTrades?limit=10&recvWindow=5000&symbol=ADAUSDT&timestamp=")
            assert "&signature=" in url
            assert kwargs["data"] is None
            assert kwargs["headers"]["X-MBX-APIKEY"] == "test_key"

    def test_post_places_signed_string_in_body(self, exchange):
        """Test POST sends the signed string as a form body."""
        with patch(REQUEST) as mock_request:
            mock_request.return_value = make_response({"orderId": 1})

            exchange.signed_call("POST", "/fapi/v1/order", {"symbol": "ADAUSDT", "side": "BUY"})

            method, url = mock_request.call_args.args
            kwargs = mock_request.call_args.kwargs
            assert method == "POST"
            assert url == "https://fapi.test/fapi/v1/order"
            assert kwargs["data"].startswith("recvWindow=5000&side=BUY&symbol=ADAUSDT&timestamp=")
            assert "&signature=" in kwargs["data"]
            assert kwargs["headers"]["Content-Type"] == "application/x-www-form-urlencoded"

    def test_public_call_sends_plain_params(self, exchange):
        """Test unauthenticated calls carry no signature or key header."""
        with patch(REQUEST) as mock_request:
            mock_request.return_value = make_response({"price": "1.23"})

            exchange.public_call("GET", "/fapi/v1/ticker/price", {"symbol": "ADAUSDT"})

            kwargs = mock_request.call_args.kwargs
            assert kwargs["params"] == {"symbol": "ADAUSDT"}
            assert "headers" not in kwargs

    def test_signed_call_requires_signer(self):
        """Test signed calls fail locally without credentials."""
        exchange = AsterExchange(signer=None, clock_sync_enabled=False)

        with pytest.raises(ValidationError):
            exchange.signed_call("GET", "/fapi/v2/balance")


class TestPacingAndBudget:

    def test_consecutive_signed_calls_are_spaced(self, exchange):
        """Test dispatches are at least min_request_interval apart."""
        clock = {"now": 0.0}
        dispatched = []

        def sleep(seconds):
            clock["now"] += seconds

        exchange.gate = RequestGate(0.1, sleep=sleep, monotonic=lambda: clock["now"])

        def record(*args, **kwargs):
            dispatched.append(clock["now"])
            clock["now"] += 0.01  # request latency
            return make_response([])

        with patch(REQUEST, side_effect=record):
            for _ in range(4):
                exchange.signed_call("GET", "/fapi/v1/userTrades")

        gaps = [b - a for a, b in zip(dispatched, dispatched[1:])]
        assert len(gaps) == 3
        assert all(gap >= 0.1 - 1e-9 for gap in gaps)

    def test_high_weight_header_warns_and_records(self, hmac_signer):
        """Test used-weight headers feed the budget and metrics."""
        metrics = Mock()
        exchange = AsterExchange(signer=hmac_signer, clock_sync_enabled=False,
                                 min_request_interval=0.0, metrics=metrics)

        with patch(REQUEST) as mock_request:
            mock_request.return_value = make_response([], headers={"X-MBX-USED-WEIGHT-1M": "2100"})
            exchange.signed_call("GET", "/fapi/v2/balance")

        assert exchange.rate_budget.warnings == 1
        assert exchange.used_weight == 2100
        metrics.record_used_weight.assert_called_once_with(2100)
        metrics.record_api_call.assert_called_once()

    def test_clock_synced_before_first_signed_call(self, hmac_signer):
        """Test a stale clock is resynced before signing."""
        exchange = AsterExchange(signer=hmac_signer, clock_sync_enabled=True, min_request_interval=0.0)

        with patch(REQUEST) as mock_request:
            mock_request.side_effect = [
                make_response({"serverTime": 1_700_000_000_000}),
                make_response([]),
            ]
            exchange.signed_call("GET", "/fapi/v2/balance")

        urls = [c.args[1] for c in mock_request.call_args_list]
        assert urls[0].endswith("/fapi/v1/time")
        assert "/fapi/v2/balance?" in urls[1]


class TestErrorPath:

    def test_desync_forces_exactly_one_clock_sync(self, exchange):
        """Test -1021 triggers one /time request, then surfaces a retryable error."""
        with patch(REQUEST) as mock_request:
            mock_request.side_effect = [
                http_error(-1021, "Timestamp for this request is outside of the recvWindow."),
                make_response({"serverTime": 1_700_000_000_000}),
            ]

            with pytest.raises(ResyncRequired) as exc_info:
                exchange.signed_call("POST", "/fapi/v1/order", {"symbol": "ADAUSDT"})

        assert exc_info.value.retryable is True
        assert mock_request.call_count == 2
        assert mock_request.call_args_list[1].args[1].endswith("/fapi/v1/time")
        assert exchange.clock.last_sync_age is not None

    def test_rate_limit_sleeps_cooldown(self, exchange, sleeps):
        """Test HTTP 429 sleeps one cooldown and raises RateLimited."""
        with patch(REQUEST, side_effect=http_error(-1003, "Too many requests", status=429)):
            with pytest.raises(RateLimited):
                exchange.signed_call("GET", "/fapi/v2/balance")

        assert sleeps == [1.0]

    def test_margin_error_is_fatal_and_verbatim(self, exchange):
        """Test -2019 surfaces as InsufficientMargin with the exchange message."""
        with patch(REQUEST, side_effect=http_error(-2019, "Margin is insufficient.")):
            with pytest.raises(InsufficientMargin) as exc_info:
                exchange.signed_call("POST", "/fapi/v1/order", {"symbol": "ADAUSDT"})

        assert exc_info.value.retryable is False
        assert exc_info.value.code == -2019
        assert exc_info.value.message == "Margin is insufficient."
        assert exc_info.value.__cause__ is not None

    def test_connection_error_is_network_error(self, exchange):
        """Test transport failures surface as NetworkError with the original attached."""
        original = ConnectionError("refused")
        with patch(REQUEST, side_effect=original):
            with pytest.raises(NetworkError) as exc_info:
                exchange.signed_call("GET", "/fapi/v2/balance")

        assert exc_info.value.original is original

    def test_public_timeout_is_network_error(self, exchange):
        """Test public calls classify failures the same way."""
        with patch(REQUEST, side_effect=Timeout("slow")):
            with pytest.raises(NetworkError):
                exchange.ping()


class TestEndpoints:

    def test_path_uses_prefix_overrides(self, exchange):
        """Test versioned paths honor per-endpoint overrides."""
        assert exchange.path("order") == "/fapi/v1/order"
        assert exchange.path("balance") == "/fapi/v2/balance"
        assert exchange.path("position_risk") == "/fapi/v2/positionRisk"

    def test_prefix_can_be_swapped(self, hmac_signer):
        """Test a single prefix can move every endpoint."""
        exchange = AsterExchange(signer=hmac_signer, api_prefix="/fapi/v3", prefix_overrides={})

        assert exchange.path("balance") == "/fapi/v3/balance"

    def test_usdt_balance(self, exchange):
        """Test the USDT available balance is extracted."""
        with patch(REQUEST) as mock_request:
            mock_request.return_value = make_response([
                {"asset": "BNB", "availableBalance": "1.0"},
                {"asset": "USDT", "availableBalance": "123.45", "balance": "130"},
            ])
            assert exchange.get_usdt_balance() == 123.45

    def test_usdt_missing_is_zero(self, exchange):
        """Test a wallet without USDT reports zero."""
        with patch(REQUEST, return_value=make_response([{"asset": "BNB", "availableBalance": "1"}])):
            assert exchange.get_usdt_balance() == 0.0

    def test_open_positions_skip_zero_size(self, exchange):
        """Test flat entries are filtered out and sides derived from sign."""
        raw = [
            {"symbol": "ADAUSDT", "positionAmt": "0", "positionSide": "BOTH"},
            {"symbol": "UNIUSDT", "positionAmt": "-12.5", "positionSide": "BOTH", "entryPrice": "8.1",
             "markPrice": "8.0", "unRealizedProfit": "1.25", "leverage": "20"},
        ]
        with patch(REQUEST, return_value=make_response(raw)):
            positions = exchange.get_open_positions()

        assert len(positions) == 1
        assert positions[0].symbol == "UNIUSDT"
        assert positions[0].entry_price == 8.1
        assert positions[0].unrealized_profit == 1.25
        assert positions[0].side == "SHORT"
        assert positions[0].size == 12.5
        assert positions[0].leverage == 20.0

    def test_has_open_position_matches_side(self, exchange):
        """Test has_open_position ignores flat entries and filters by side."""
        raw = [{"symbol": "ADAUSDT", "positionAmt": "0"}, {"symbol": "ADAUSDT", "positionAmt": "-4"}]
        with patch(REQUEST, return_value=make_response(raw)):
            assert exchange.has_open_position("ADAUSDT")
            assert exchange.has_open_position("ADAUSDT", "SHORT")
            assert not exchange.has_open_position("ADAUSDT", "LONG")

    def test_malformed_position_entry_raises(self, exchange):
        """Test a non-object positionRisk entry is an ExchangeError, not a crash."""
        with patch(REQUEST, return_value=make_response([None])):
            with pytest.raises(ExchangeError, match="Invalid position entry"):
                exchange.get_open_positions("ADAUSDT")

    def test_symbol_info_filters_and_cache(self, exchange):
        """Test exchangeInfo filters are parsed and the document cached."""
        info = {"symbols": [{
            "symbol": "ADAUSDT",
            "status": "TRADING",
            "pricePrecision": 4,
            "quantityPrecision": 0,
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.0001"},
                {"filterType": "LOT_SIZE", "stepSize": "1", "minQty": "1", "maxQty": "5000000"},
                {"filterType": "MIN_NOTIONAL", "notional": "5"},
            ],
        }]}
        with patch(REQUEST, return_value=make_response(info)) as mock_request:
            first = exchange.get_symbol_info("ADAUSDT")
            exchange.get_symbol_info("ADAUSDT")

        assert mock_request.call_count == 1
        assert first.tick_size == 0.0001
        assert first.step_size == 1.0
        assert first.min_qty == 1.0
        assert first.max_qty == 5000000.0
        assert first.min_notional == 5.0

    def test_unknown_symbol_rejected(self, exchange):
        """Test an unlisted symbol raises ValidationError."""
        with patch(REQUEST, return_value=make_response({"symbols": []})):
            with pytest.raises(ValidationError):
                exchange.get_symbol_info("NOPEUSDT")

    def test_connect_syncs_clock_and_checks_balance(self, exchange):
        """Test connect pings, syncs the clock and reads the balance."""
        with patch(REQUEST) as mock_request:
            mock_request.side_effect = [
                make_response({}),
                make_response({"serverTime": 1_700_000_000_000}),
                make_response([{"asset": "USDT", "availableBalance": "10"}]),
            ]
            assert exchange.connect() is True

        assert exchange.is_connected is True
        urls = [c.args[1] for c in mock_request.call_args_list]
        assert urls[0].endswith("/fapi/v1/ping")
        assert urls[1].endswith("/fapi/v1/time")
        assert "/fapi/v2/balance?" in urls[2]


class TestTimestampUniqueness:

    def test_hmac_requests_in_one_millisecond_get_distinct_timestamps(self, exchange):
        """Test back-to-back HMAC calls with a frozen clock never repeat a signed string."""
        with patch(REQUEST) as mock_request, patch("core.nonce.time.time", return_value=1_700_000_000.0):
            mock_request.return_value = make_response([])

            exchange.signed_call("GET", "/fapi/v1/userTrades", {"symbol": "ADAUSDT"})
            exchange.signed_call("GET", "/fapi/v1/userTrades", {"symbol": "ADAUSDT"})

        first, second = (call.args[1] for call in mock_request.call_args_list)
        assert "timestamp=1700000000000&" in first
        assert "timestamp=1700000000001&" in second
        assert first != second

    def test_dispatcher_runs_nonces_in_distinct_ms_mode_for_hmac(self, exchange):
        assert exchange.nonces.distinct_ms is True
