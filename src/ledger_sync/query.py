"""
Query Module
Turns a caller's filter criteria into a store query: validation, sort parsing, opaque keyset
cursors and aggregate metrics over the whole filtered set.
"""
import json
import base64
import logging
import datetime
import binascii
from decimal import Decimal
from typing import Dict, Any, Optional, Tuple

from ledger_sync.database import LedgerStore, sort_key_of
from ledger_sync.errors import InvalidCursor, InvalidQuery
from ledger_sync.models import LedgerFilter, SORT_FIELDS, SortSpec, TxStatus, TxType
from ledger_sync.normalizer import split_pair

logger = logging.getLogger(__name__)

SORT_ALIASES = {"ts": "timestamp", "time": "timestamp"}


def parse_sort(value: Optional[str]) -> SortSpec:
    """Accept 'field', '-field', 'field:asc' or 'field:desc'. Default is newest first."""
    if value is None or not str(value).strip():
        return SortSpec()
    text = str(value).strip().lower()
    descending = False
    if text.startswith("-"):
        descending, text = True, text[1:]
    elif ":" in text:
        text, _, direction = text.partition(":")
        if direction not in ("asc", "desc"):
            raise InvalidQuery(f"Invalid sort direction: {direction!r}")
        descending = direction == "desc"
    field_name = SORT_ALIASES.get(text, text)
    if field_name not in SORT_FIELDS:
        raise InvalidQuery(f"Invalid sort field: {value!r}. Allowed: {', '.join(SORT_FIELDS)}")
    return SortSpec(field=field_name, descending=descending)


def encode_cursor(sort: SortSpec, position: Tuple[Any, str]) -> str:
    value, last_id = position
    payload = json.dumps({"s": str(sort), "v": value, "id": last_id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str, sort: SortSpec) -> Tuple[Any, str]:
    """Return the (sort value, id) position; the cursor must have been issued under the same sort."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        issued_sort, value, last_id = payload["s"], payload["v"], payload["id"]
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
        raise InvalidCursor(f"Cursor could not be decoded: {e}") from e
    if issued_sort != str(sort):
        raise InvalidCursor(f"Cursor was issued for sort '{issued_sort}', not '{sort}'")
    if not isinstance(last_id, str) or not isinstance(value, str):
        raise InvalidCursor("Cursor position is malformed")
    return value, last_id


def parse_bound(value: Any, name: str) -> Optional[datetime.datetime]:
    """Dates mean midnight UTC; naive datetimes are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        ts = value
    elif isinstance(value, datetime.date):
        ts = datetime.datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.datetime.fromisoformat(text)
        except ValueError:
            raise InvalidQuery(f"Invalid '{name}' date: {value!r}")
    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


def _enum_value(enum_cls, value: Any, name: str):
    if value is None or value == "":
        return None
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidQuery(f"Invalid {name}: {value!r}. Allowed: {allowed}")


class QueryFacade:
    """Filtered, paginated reads over the ledger store."""

    def __init__(self, store: LedgerStore, config: Dict[str, Any]):
        query_config = config.get("query", {})
        self.store = store
        self.default_limit = int(query_config.get("default_limit", 50))
        self.max_limit = int(query_config.get("max_limit", 500))

    def _clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise InvalidQuery(f"Invalid limit: {limit!r}")
        return max(1, min(limit, self.max_limit))

    def build_filter(self, from_=None, to=None, pair=None, type=None, status=None, q=None,
                     account=None) -> LedgerFilter:
        start, end = parse_bound(from_, "from"), parse_bound(to, "to")
        if start and end and start > end:
            raise InvalidQuery("'from' must not be after 'to'")
        pair_value = None
        if pair:
            try:
                base, quote = split_pair(pair)
            except ValueError as e:
                raise InvalidQuery(str(e)) from e
            pair_value = f"{base}/{quote}"
        return LedgerFilter(
            account=account,
            start=start,
            end=end,
            pair=pair_value,
            type=_enum_value(TxType, type, "type"),
            status=_enum_value(TxStatus, status, "status"),
            q=q.strip() if q and q.strip() else None,
        )

    def query(self, cursor: Optional[str] = None, limit: Optional[int] = None, from_=None, to=None,
              pair: Optional[str] = None, type: Optional[str] = None, status: Optional[str] = None,
              q: Optional[str] = None, sort: Optional[str] = None, account: Optional[str] = None) -> Dict[str, Any]:
        sort_spec = parse_sort(sort)
        flt = self.build_filter(from_=from_, to=to, pair=pair, type=type, status=status, q=q, account=account)
        size = self._clamp(limit)
        after = decode_cursor(cursor, sort_spec) if cursor else None

        rows, metric_rows = self.store.fetch_page(flt, sort_spec, after, size + 1, with_metrics=True)
        has_more = len(rows) > size
        rows = rows[:size]
        next_cursor = encode_cursor(sort_spec, sort_key_of(rows[-1], sort_spec)) if has_more and rows else None

        logger.debug(f"Query sort={sort_spec} limit={size} returned {len(rows)} items (more={has_more})")
        return {
            "items": [tx.to_view() for tx in rows],
            "nextCursor": next_cursor,
            "metrics": self._metrics(metric_rows),
        }

    @staticmethod
    def _metrics(rows) -> Dict[str, Any]:
        buy_volume = sell_volume = fees = Decimal("0")
        for row in rows:
            total = Decimal(row["total"]) if row["total"] is not None else None
            if total is not None and row["type"] == TxType.BUY.value:
                buy_volume += total
            elif total is not None and row["type"] == TxType.SELL.value:
                sell_volume += total
            if row["fee"] is not None:
                fees += Decimal(row["fee"])
        return {
            "count": len(rows),
            "buyVolume": str(buy_volume),
            "sellVolume": str(sell_volume),
            "fees": str(fees),
        }
