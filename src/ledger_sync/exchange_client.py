"""
Exchange Client Module
Paginated, signed access to Kraken account activity (TradesHistory + Ledgers).
"""
import time
import hmac
import base64
import hashlib
import logging
import datetime
import threading
import urllib.parse
from email.utils import parsedate_to_datetime
from typing import Dict, Any, List, Optional, Protocol

import requests

from ledger_sync.errors import NonTransientFetchError, TransientFetchError
from ledger_sync.models import ActivityPage

logger = logging.getLogger(__name__)

STREAMS = ("trades", "ledgers")

# Kraken error strings that clear up on their own.
TRANSIENT_ERRORS = (
    "EAPI:Rate limit exceeded",
    "EGeneral:Temporary lockout",
    "EService:Unavailable",
    "EService:Busy",
    "EService:Deadline elapsed",
    "EGeneral:Internal error",
    "EAPI:Invalid nonce",
)

# Ledger entry types already covered by TradesHistory.
LEDGER_TYPES_FROM_TRADES = {"trade", "margin"}


class ExchangeClient(Protocol):
    """Port consumed by the sync orchestrator."""

    def fetch_page(self, since: Optional[datetime.datetime], cursor: Optional[str],
                   pairs: Optional[List[str]] = None) -> ActivityPage:
        """Return one page of raw activity and the cursor of the next page (None when exhausted)."""


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=datetime.timezone.utc)
    return max((target - datetime.datetime.now(datetime.timezone.utc)).total_seconds(), 0.0)


def parse_cursor(cursor: Optional[str]):
    if not cursor:
        return STREAMS[0], 0
    stream, _, offset = cursor.partition(":")
    if stream not in STREAMS or not offset.isdigit():
        raise ValueError(f"Invalid exchange cursor: {cursor!r}")
    return stream, int(offset)


class KrakenClient:
    """Kraken private REST client. One page = one TradesHistory or Ledgers call (max 50 rows)."""

    def __init__(self, config: Dict[str, Any], session: Optional[requests.Session] = None):
        api_config = config.get("apis", {}).get("kraken", {})
        api_keys = config.get("api_keys", {})
        self.base_url = api_config.get("base_url", "https://api.kraken.com").rstrip("/")
        self.timeout = api_config.get("timeout", 30)
        self.request_delay_ms = api_config.get("request_delay_ms", 250)
        self.api_key = api_keys.get("kraken_key")
        self.api_secret = api_keys.get("kraken_secret")
        self.session = session or requests.Session()
        self._nonce_lock = threading.Lock()
        self._last_nonce = 0

        if not self.api_key or not self.api_secret:
            logger.warning("Kraken API key/secret not found. Private endpoints will fail until configured.")

    def _nonce(self) -> int:
        with self._nonce_lock:
            nonce = max(int(time.time() * 1000), self._last_nonce + 1)
            self._last_nonce = nonce
            return nonce

    def _sign(self, url_path: str, data: Dict[str, Any]) -> str:
        postdata = urllib.parse.urlencode(data)
        encoded = (str(data["nonce"]) + postdata).encode()
        message = url_path.encode() + hashlib.sha256(encoded).digest()
        mac = hmac.new(base64.b64decode(self.api_secret), message, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    def _handle_response(self, response: requests.Response, url_path: str) -> Dict[str, Any]:
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientFetchError(
                f"Kraken {url_path} returned HTTP {response.status_code}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            raise NonTransientFetchError(f"Kraken {url_path} returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise NonTransientFetchError(f"Kraken {url_path} returned a non-JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise NonTransientFetchError(f"Kraken {url_path} returned an unexpected payload type")

        errors = payload.get("error") or []
        if errors:
            message = ", ".join(str(e) for e in errors)
            if any(str(e).startswith(t) for e in errors for t in TRANSIENT_ERRORS):
                raise TransientFetchError(f"Kraken {url_path}: {message}")
            raise NonTransientFetchError(f"Kraken {url_path}: {message}")

        result = payload.get("result")
        if not isinstance(result, dict):
            raise NonTransientFetchError(f"Kraken {url_path} response has no 'result' object")
        return result

    def _private(self, url_path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise NonTransientFetchError("Kraken API credentials are not configured")
        data = {"nonce": self._nonce(), **params}
        headers = {"API-Key": self.api_key, "API-Sign": self._sign(url_path, data)}
        try:
            response = self.session.post(f"{self.base_url}{url_path}", data=data, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientFetchError(f"Kraken {url_path} network error: {e}") from e
        finally:
            if self.request_delay_ms > 0:
                time.sleep(self.request_delay_ms / 1000.0)
        return self._handle_response(response, url_path)

    def fetch_page(self, since: Optional[datetime.datetime], cursor: Optional[str],
                   pairs: Optional[List[str]] = None) -> ActivityPage:
        """Kraken cannot filter by pair server-side; callers filter normalized records."""
        stream, offset = parse_cursor(cursor)
        params: Dict[str, Any] = {"ofs": offset}
        if since is not None:
            params["start"] = int(since.timestamp())

        if stream == "trades":
            params["trades"] = "true"
            result = self._private("/0/private/TradesHistory", params)
            raw_items = result.get("trades", {})
        else:
            result = self._private("/0/private/Ledgers", params)
            raw_items = result.get("ledger", {})
        if not isinstance(raw_items, dict):
            raise NonTransientFetchError(f"Kraken {stream} page is not an object keyed by id")

        entries = []
        for ref, item in raw_items.items():
            if not isinstance(item, dict):
                raise NonTransientFetchError(f"Kraken {stream} entry {ref} is not an object")
            if stream == "trades":
                entries.append(self._trade_entry(ref, item))
            elif str(item.get("type", "")).lower() not in LEDGER_TYPES_FROM_TRADES:
                entries.append({**item, "exchangeRef": ref})

        try:
            count = int(result.get("count", len(raw_items)))
        except (TypeError, ValueError):
            raise NonTransientFetchError(f"Kraken {stream} page has a non-numeric count")
        next_offset = offset + len(raw_items)
        if raw_items and next_offset < count:
            next_cursor = f"{stream}:{next_offset}"
        else:
            index = STREAMS.index(stream)
            next_cursor = f"{STREAMS[index + 1]}:0" if index + 1 < len(STREAMS) else None

        logger.debug(f"Kraken {stream} ofs={offset}: {len(raw_items)} rows ({len(entries)} kept), count={count}, next={next_cursor}")
        return ActivityPage(entries=entries, next_cursor=next_cursor)

    @staticmethod
    def _trade_entry(txid: str, trade: Dict[str, Any]) -> Dict[str, Any]:
        entry = {**trade, "exchangeRef": txid}
        try:
            is_margin = float(trade.get("margin") or 0) > 0
        except (TypeError, ValueError):
            is_margin = False
        if is_margin:
            entry["direction"] = trade.get("type")
            entry["type"] = "margin"
        return entry

    def test_connection(self) -> bool:
        """Check the public status endpoint and, when credentials exist, a private call."""
        try:
            response = self.session.get(f"{self.base_url}/0/public/SystemStatus", timeout=self.timeout)
            status = self._handle_response(response, "/0/public/SystemStatus").get("status")
            logger.info(f"Kraken system status: {status}")
            if self.api_key and self.api_secret:
                self._private("/0/private/Balance", {})
                logger.info("Kraken private API reachable with configured credentials.")
            return True
        except (requests.RequestException, TransientFetchError, NonTransientFetchError) as e:
            logger.error(f"Kraken connection test failed: {e}")
            return False
