import base64
import datetime

import pytest
import requests

from ledger_sync.errors import NonTransientFetchError, TransientFetchError
from ledger_sync.exchange_client import KrakenClient, parse_cursor, parse_retry_after

SECRET = base64.b64encode(b"kraken-test-secret").decode()


class FakeResponse:
    def __init__(self, payload=None, status_code=200, headers=None, body_error=False):
        self.payload = payload
        self.status_code = status_code
        self.headers = headers or {}
        self.body_error = body_error

    def json(self):
        if self.body_error:
            raise ValueError("Expecting value")
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []
        self.gets = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append({"url": url, "data": data, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, timeout=None):
        self.gets.append(url)
        return self.responses.pop(0)


def _client(responses, config):
    config["api_keys"] = {"kraken_key": "key", "kraken_secret": SECRET}
    session = FakeSession(responses)
    return KrakenClient(config, session=session), session


def _ok(result):
    return FakeResponse({"error": [], "result": result})


def test_trades_then_ledgers_paging(config):
    trades = {"TA": {"pair": "XETHZEUR", "time": 1709287200.1, "type": "buy", "vol": "1", "cost": "3000",
                     "fee": "4", "price": "3000"}}
    margin = {"TB": {"pair": "XBTUSD", "time": 1709287300, "type": "sell", "vol": "0.1", "margin": "50",
                     "posstatus": "open"}}
    ledgers = {
        "L1": {"refid": "TA", "time": 1709287200.1, "type": "trade", "asset": "XETH", "amount": "1"},
        "L2": {"refid": "D1", "time": 1709280000, "type": "deposit", "asset": "ZEUR", "amount": "5000"},
    }
    client, session = _client([
        _ok({"trades": trades, "count": 2}),
        _ok({"trades": margin, "count": 2}),
        _ok({"ledger": ledgers, "count": 2}),
    ], config)

    since = datetime.datetime(2024, 3, 1, tzinfo=datetime.timezone.utc)
    page = client.fetch_page(since, None)
    assert page.next_cursor == "trades:1"
    assert page.entries[0]["exchangeRef"] == "TA"
    assert session.posts[0]["url"].endswith("/0/private/TradesHistory")
    assert session.posts[0]["data"]["start"] == int(since.timestamp())
    assert session.posts[0]["data"]["ofs"] == 0

    page = client.fetch_page(since, page.next_cursor)
    assert page.next_cursor == "ledgers:0"
    assert page.entries[0]["type"] == "margin"
    assert page.entries[0]["direction"] == "sell"

    page = client.fetch_page(since, page.next_cursor)
    assert page.next_cursor is None
    assert [e["exchangeRef"] for e in page.entries] == ["L2"]
    assert session.posts[2]["url"].endswith("/0/private/Ledgers")


def test_requests_are_signed(config):
    client, session = _client([_ok({"trades": {}, "count": 0})], config)
    client.fetch_page(None, None)
    headers = session.posts[0]["headers"]
    assert headers["API-Key"] == "key"
    assert headers["API-Sign"] == client._sign("/0/private/TradesHistory", session.posts[0]["data"])
    assert "nonce" in session.posts[0]["data"]


def test_nonces_increase(config):
    client, _ = _client([], config)
    first, second = client._nonce(), client._nonce()
    assert second > first


@pytest.mark.parametrize("response", [
    FakeResponse({}, status_code=429, headers={"Retry-After": "3"}),
    FakeResponse({}, status_code=503),
    FakeResponse({"error": ["EAPI:Rate limit exceeded"], "result": {}}),
    FakeResponse({"error": ["EService:Unavailable"]}),
    requests.Timeout("read timed out"),
    requests.ConnectionError("reset"),
])
def test_transient_failures(config, response):
    client, _ = _client([response], config)
    with pytest.raises(TransientFetchError):
        client.fetch_page(None, None)


def test_retry_after_is_carried(config):
    client, _ = _client([FakeResponse({}, status_code=429, headers={"Retry-After": "3"})], config)
    with pytest.raises(TransientFetchError) as info:
        client.fetch_page(None, None)
    assert info.value.retry_after == 3.0


@pytest.mark.parametrize("response", [
    FakeResponse({}, status_code=403),
    FakeResponse({"error": ["EAPI:Invalid key"]}),
    FakeResponse(body_error=True),
    FakeResponse({"error": [], "result": []}),
    FakeResponse({"error": [], "result": {"trades": ["not", "a", "dict"]}}),
])
def test_non_transient_failures(config, response):
    client, _ = _client([response], config)
    with pytest.raises(NonTransientFetchError):
        client.fetch_page(None, None)


def test_missing_credentials_fail_without_calling_the_api(config):
    session = FakeSession([])
    client = KrakenClient(config, session=session)
    with pytest.raises(NonTransientFetchError):
        client.fetch_page(None, None)
    assert session.posts == []


def test_test_connection(config):
    client, session = _client([_ok({"status": "online"}), _ok({"ZEUR": "10"})], config)
    assert client.test_connection() is True
    assert session.gets[0].endswith("/0/public/SystemStatus")

    client, _ = _client([FakeResponse({}, status_code=500)], config)
    assert client.test_connection() is False


def test_parse_cursor():
    assert parse_cursor(None) == ("trades", 0)
    assert parse_cursor("ledgers:150") == ("ledgers", 150)
    with pytest.raises(ValueError):
        parse_cursor("orders:1")


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("garbage") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
