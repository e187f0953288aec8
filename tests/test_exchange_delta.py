"""
Tests for DeltaExchange

Covers:
- HMAC-SHA256 request signing
- Retry on 429/5xx/network errors, no retry on other 4xx
- Response normalization (ticker, candles, order status, positions)
- Read-only guard on writes
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError, HTTPError, Timeout

from core.exceptions import CollaboratorError
from core.exchange_delta import DeltaExchange


def _ok(result):
    response = Mock()
    response.status_code = 200
    response.raise_for_status.return_value = None
    response.json.return_value = {"success": True, "result": result}
    return response


def _http_error(status_code, text="error"):
    response = Mock()
    response.status_code = status_code
    response.text = text
    failing = Mock()
    failing.raise_for_status.side_effect = HTTPError(response=response)
    return failing


@pytest.fixture
def exchange():
    return DeltaExchange(symbol="ETHUSD", api_key="key", api_secret="secret", max_retries=3)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("core.exchange_delta.time.sleep"):
        yield


class TestSigning:
    def test_signature_covers_method_timestamp_path_query_body(self, exchange):
        with patch("core.exchange_delta.time.time", return_value=1_700_000_000.0):
            headers = exchange._headers("POST", "/v2/orders", "", '{"size":1}')

        expected = hmac.new(b"secret", b'POST1700000000/v2/orders{"size":1}', hashlib.sha256).hexdigest()
        assert headers["signature"] == expected
        assert headers["api-key"] == "key"
        assert headers["timestamp"] == "1700000000"

    def test_authenticated_request_without_credentials_fails(self):
        exchange = DeltaExchange(api_key="", api_secret="")
        with patch.dict("os.environ", {}, clear=True):
            exchange.api_key = ""
            exchange.api_secret = ""
            with pytest.raises(CollaboratorError):
                exchange.get_wallet_balance()

    def test_query_string_signed_with_question_mark(self, exchange):
        with patch("core.exchange_delta.requests.request", return_value=_ok([])) as mock_request, \
                patch.object(exchange, "_headers", wraps=exchange._headers) as headers:
            exchange._req("GET", "/v2/orders", params={"state": "open"}, authenticated=True)

        assert headers.call_args[0][2] == "?state=open"
        assert mock_request.call_args[0][1].endswith("/v2/orders?state=open")


class TestRetry:
    def test_retries_429_then_succeeds(self, exchange):
        with patch("core.exchange_delta.requests.request") as mock_request:
            mock_request.side_effect = [_http_error(429), _http_error(503), _ok({"mark_price": "2700.5"})]

            assert exchange.get_current_price() == 2700.5
            assert mock_request.call_count == 3

    def test_network_errors_retried(self, exchange):
        with patch("core.exchange_delta.requests.request") as mock_request:
            mock_request.side_effect = [Timeout("slow"), ConnectionError("reset"), _ok({"close": "2690"})]

            assert exchange.get_current_price() == 2690.0

    def test_exhausted_retries_raise_collaborator_error(self, exchange):
        with patch("core.exchange_delta.requests.request") as mock_request:
            mock_request.side_effect = lambda *a, **k: _http_error(500)

            with pytest.raises(CollaboratorError):
                exchange.get_current_price()
            assert mock_request.call_count == 3

    def test_client_error_not_retried(self, exchange):
        with patch("core.exchange_delta.requests.request") as mock_request:
            mock_request.return_value = _http_error(401, "unauthorized")

            with pytest.raises(CollaboratorError) as exc_info:
                exchange.get_wallet_balance()

            assert mock_request.call_count == 1
            assert exc_info.value.status_code == 401

    def test_unsuccessful_envelope_raises(self, exchange):
        response = _ok(None)
        response.json.return_value = {"success": False, "error": {"code": "insufficient_margin"}}
        with patch("core.exchange_delta.requests.request", return_value=response):
            with pytest.raises(CollaboratorError, match="insufficient_margin"):
                exchange.get_wallet_balance()


class TestNormalization:
    def test_candles_sorted_and_parsed(self, exchange):
        rows = [
            {"time": 600, "open": "2", "high": "3", "low": "1", "close": "2.5", "volume": "10"},
            {"time": 300, "open": "1", "high": "2", "low": "0.5", "close": "1.5", "volume": None},
            {"time": "bad"},
        ]
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        with patch("core.exchange_delta.requests.request", return_value=_ok(rows)) as mock_request:
            candles = exchange.get_ohlcv("5m", start, start)

        assert [c.time for c in candles] == [300, 600]
        assert candles[0].volume == 0.0
        assert "resolution=5m" in mock_request.call_args[0][1]

    def test_order_status_mapping(self, exchange):
        order = {"state": "closed", "size": 10, "unfilled_size": 0, "average_fill_price": "2684.0"}
        with patch("core.exchange_delta.requests.request", return_value=_ok(order)):
            status = exchange.get_order_status("42")

        assert status.state == "closed"
        assert status.filled_qty == 10
        assert status.avg_fill_price == 2684.0

    def test_cancelled_spelling_and_unknown_state(self, exchange):
        with patch("core.exchange_delta.requests.request",
                   side_effect=[_ok({"state": "canceled", "size": 5, "unfilled_size": 5}),
                                _ok({"state": "weird"})]):
            assert exchange.get_order_status("1").state == "cancelled"
            assert exchange.get_order_status("2").state == "unknown"

    def test_positions_drop_flat_rows(self, exchange):
        rows = [
            {"product_symbol": "ETHUSD", "size": -30, "entry_price": "2700"},
            {"product_symbol": "BTCUSD", "size": 0},
        ]
        with patch("core.exchange_delta.requests.request", return_value=_ok(rows)):
            positions = exchange.get_positions()

        assert positions == [{"symbol": "ETHUSD", "size": -30.0, "entry_price": "2700", "margin": None}]

    def test_orderbook_depth(self, exchange):
        book = {"buy": [{"price": "1", "size": 2}] * 20, "sell": [{"price": "2", "size": 3}]}
        with patch("core.exchange_delta.requests.request", return_value=_ok(book)):
            result = exchange.get_orderbook(depth=10)

        assert len(result["buy"]) == 10
        assert result["sell"] == [{"price": 2.0, "size": 3.0}]


class TestOrders:
    def test_market_bracket_order_body(self, exchange):
        responses = [_ok({"id": 27, "symbol": "ETHUSD", "contract_value": "0.01"}), _ok({"id": 555})]
        with patch("core.exchange_delta.requests.request", side_effect=responses) as mock_request:
            order_ref = exchange.place_market_order_with_bracket(5, "buy", 2686.5, 2727.0)

        assert order_ref == "555"
        body = json.loads(mock_request.call_args[1]["data"])
        assert body["product_id"] == 27
        assert body["order_type"] == "market_order"
        assert body["bracket_stop_loss_price"] == "2686.50"
        assert body["bracket_take_profit_price"] == "2727.00"
        assert len(body["client_order_id"]) == 32

    def test_retried_placement_reuses_client_order_id(self, exchange):
        responses = [_ok({"id": 27, "symbol": "ETHUSD"}), Timeout("response lost"), _ok({"id": 9001})]
        with patch("core.exchange_delta.requests.request", side_effect=responses) as mock_request:
            order_ref = exchange.place_market_order_with_bracket(5, "buy", 2686.5, 2727.0)

        assert order_ref == "9001"
        posts = [c for c in mock_request.call_args_list if c[0][0] == "POST"]
        ids = {json.loads(c[1]["data"])["client_order_id"] for c in posts}
        assert len(posts) == 2
        assert len(ids) == 1

    def test_each_order_gets_its_own_client_order_id(self, exchange):
        responses = [_ok({"id": 27, "symbol": "ETHUSD"}), _ok({"id": 1}), _ok({"id": 2})]
        with patch("core.exchange_delta.requests.request", side_effect=responses) as mock_request:
            exchange.place_market_order_with_bracket(5, "buy", 2686.5, 2727.0)
            exchange.place_limit_order_with_bracket(5, "sell", 2710.0, 2723.55, 2682.9)

        first, second = (json.loads(c[1]["data"])["client_order_id"] for c in mock_request.call_args_list[1:])
        assert first != second

    def test_failed_placement_recovered_by_client_order_id(self, exchange):
        responses = [_ok({"id": 27, "symbol": "ETHUSD"}),
                     Timeout("lost"), Timeout("lost"), Timeout("lost"),
                     _ok({"id": 9001, "state": "open"})]
        with patch("core.exchange_delta.requests.request", side_effect=responses) as mock_request:
            order_ref = exchange.place_market_order_with_bracket(5, "buy", 2686.5, 2727.0)

        assert order_ref == "9001"
        client_order_id = json.loads(mock_request.call_args_list[1][1]["data"])["client_order_id"]
        assert mock_request.call_args[0][1].endswith(f"/v2/orders/client_order_id/{client_order_id}")

    def test_failed_placement_without_exchange_order_raises(self, exchange):
        responses = [_ok({"id": 27, "symbol": "ETHUSD"}), _http_error(400, "insufficient_margin"),
                     _http_error(404, "not_found")]
        with patch("core.exchange_delta.requests.request", side_effect=responses):
            with pytest.raises(CollaboratorError):
                exchange.place_market_order_with_bracket(5, "buy", 2686.5, 2727.0)

    def test_product_cached(self, exchange):
        responses = [_ok({"id": 27, "symbol": "ETHUSD"})]
        with patch("core.exchange_delta.requests.request", side_effect=responses) as mock_request:
            exchange.get_products()
            exchange.get_products()

        assert mock_request.call_count == 1

    def test_read_only_blocks_writes(self):
        exchange = DeltaExchange(api_key="k", api_secret="s", read_only=True)
        with patch("core.exchange_delta.requests.request") as mock_request:
            with pytest.raises(CollaboratorError, match="read-only"):
                exchange.set_leverage(10)
            assert mock_request.call_count == 0

    def test_test_connection(self, exchange):
        with patch("core.exchange_delta.requests.request", return_value=_http_error(404)):
            assert exchange.test_connection() is False
