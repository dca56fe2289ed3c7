"""
Record Normalizer Module
Maps raw exchange activity entries (generic or Kraken-native shape) to canonical transactions.
Pure functions only: no network or store access.
"""
import datetime
import hashlib
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional, Tuple

from ledger_sync.errors import MalformedRecord, UnsupportedRecordType
from ledger_sync.models import Transaction, TxType, TxStatus, utc_now

logger = logging.getLogger(__name__)

REF_KEYS = ("exchangeRef", "txid", "refid", "ledger_id")
TIMESTAMP_KEYS = ("timestamp", "time", "ts")
AMOUNT_KEYS = ("amount", "vol")
TOTAL_KEYS = ("total", "cost")

# Kraken prefixes legacy asset codes with X (crypto) or Z (fiat).
ASSET_ALIASES = {
    "XXBT": "BTC", "XBT": "BTC", "XBT.M": "BTC",
    "XETH": "ETH", "XXRP": "XRP", "XLTC": "LTC", "XXLM": "XLM", "XXDG": "DOGE", "XDG": "DOGE",
    "XETC": "ETC", "XXMR": "XMR", "XZEC": "ZEC", "XREP": "REP", "XMLN": "MLN",
    "ZEUR": "EUR", "ZUSD": "USD", "ZGBP": "GBP", "ZCAD": "CAD", "ZJPY": "JPY", "ZCHF": "CHF", "ZAUD": "AUD",
}
STAKING_SUFFIXES = (".S", ".M", ".F", ".P", ".B")

# Longest first so "USDT" wins over "USD" when splitting altnames like XBTUSDT.
KNOWN_QUOTES = sorted(
    ["ZEUR", "ZUSD", "ZGBP", "ZCAD", "ZJPY", "ZCHF", "ZAUD", "XXBT", "XETH",
     "USDT", "USDC", "EUR", "USD", "GBP", "CAD", "JPY", "CHF", "AUD", "DAI", "XBT", "ETH", "DOT"],
    key=len, reverse=True,
)

DIRECT_TYPES = {
    "buy": TxType.BUY,
    "receive": TxType.BUY,
    "sell": TxType.SELL,
    "spend": TxType.SELL,
    "deposit": TxType.DEPOSIT,
    "withdrawal": TxType.WITHDRAWAL,
    "staking": TxType.STAKING,
    "reward": TxType.STAKING,
    "earn": TxType.STAKING,
    "dividend": TxType.STAKING,
    "fee": TxType.FEE,
    "rollover": TxType.FEE,
}
DIRECTIONAL_TYPES = {"trade", "margin", "settled"}
TRANSFER_TYPES = {"transfer"}
PAIR_TYPES = {TxType.BUY, TxType.SELL}
DERIVATIVE_TYPES = {"margin", "settled"}


def normalize_asset(code: str) -> str:
    """Normalize an exchange asset code to its common ticker (XXBT -> BTC, DOT.S -> DOT)."""
    asset = str(code).strip().upper()
    if asset in ASSET_ALIASES:
        return ASSET_ALIASES[asset]
    for suffix in STAKING_SUFFIXES:
        if asset.endswith(suffix):
            asset = asset[: -len(suffix)]
            break
    return ASSET_ALIASES.get(asset, asset)


def split_pair(pair: str) -> Tuple[str, str]:
    """Split a display pair (ETH/EUR, ETH-EUR) or Kraken altname (XETHZEUR, XBTUSDT) into base and quote."""
    text = str(pair).strip().upper()
    for separator in ("/", "-", "_"):
        if separator in text:
            base, quote = text.split(separator, 1)
            if base and quote:
                return normalize_asset(base), normalize_asset(quote)
            raise ValueError(f"Incomplete pair: {pair}")
    for quote in KNOWN_QUOTES:
        if text.endswith(quote) and len(text) > len(quote):
            return normalize_asset(text[: -len(quote)]), normalize_asset(quote)
    raise ValueError(f"Cannot split pair: {pair}")


def _first(raw: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_decimal(value: Any, field_name: str, raw: Dict[str, Any]) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise MalformedRecord(f"Field '{field_name}' is not a number: {value!r}", raw)
    if not result.is_finite():
        raise MalformedRecord(f"Field '{field_name}' is not finite: {value!r}", raw)
    return result


def parse_timestamp(value: Any, raw: Optional[Dict[str, Any]] = None) -> datetime.datetime:
    """Accept epoch seconds (int, float, numeric string), ISO-8601 strings and datetimes. Always returns UTC."""
    raw = raw if raw is not None else {}
    if isinstance(value, datetime.datetime):
        ts = value
    elif isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        try:
            ts = datetime.datetime.fromtimestamp(float(value), tz=datetime.timezone.utc)
        except (ValueError, OverflowError, OSError):
            raise MalformedRecord(f"Epoch timestamp out of range: {value!r}", raw)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            ts = datetime.datetime.fromtimestamp(float(text), tz=datetime.timezone.utc)
        except (ValueError, OverflowError, OSError):
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                ts = datetime.datetime.fromisoformat(text)
            except ValueError:
                raise MalformedRecord(f"Unparsable timestamp: {value!r}", raw)
    else:
        raise MalformedRecord(f"Missing or invalid timestamp: {value!r}", raw)

    if ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


def _parse_tags(value: Any) -> set:
    if not value:
        return set()
    if isinstance(value, str):
        items = value.split("|")
    else:
        items = list(value)
    return {str(t).strip() for t in items if str(t).strip()}


def _is_adjustment(raw: Dict[str, Any]) -> bool:
    if str(raw.get("subtype", "")).strip().lower() == "adjustment":
        return True
    flag = raw.get("adjustment")
    if isinstance(flag, str):
        return flag.strip().lower() in ("1", "true", "yes")
    return bool(flag)


def _direction(raw: Dict[str, Any], amount: Decimal) -> TxType:
    direction = str(raw.get("direction") or raw.get("side") or "").strip().lower()
    if direction in ("buy", "long"):
        return TxType.BUY
    if direction in ("sell", "short"):
        return TxType.SELL
    return TxType.BUY if amount > 0 else TxType.SELL


def classify_type(raw: Dict[str, Any], amount: Decimal) -> TxType:
    raw_type = raw.get("type")
    if raw_type is None or str(raw_type).strip() == "":
        raise MalformedRecord("Missing 'type' field", raw)
    key = str(raw_type).strip().lower()

    if key in DIRECT_TYPES:
        return DIRECT_TYPES[key]
    if key in DIRECTIONAL_TYPES:
        return _direction(raw, amount)
    if key in TRANSFER_TYPES:
        return TxType.DEPOSIT if amount >= 0 else TxType.WITHDRAWAL
    if amount == 0 and _is_adjustment(raw):
        return TxType.FEE
    raise UnsupportedRecordType(f"Unsupported record type: {raw_type!r}", raw)


def normalize_record(raw: Dict[str, Any], quote_currency: str, account: str = "default") -> Transaction:
    """
    Map one raw activity entry to a canonical Transaction (status new, id unassigned).

    Raises MalformedRecord when a required field is missing or unparsable and
    UnsupportedRecordType when the raw type has no canonical counterpart.
    """
    if not isinstance(raw, dict):
        raise MalformedRecord(f"Entry is not a mapping: {type(raw).__name__}", {})

    raw_amount = _first(raw, AMOUNT_KEYS)
    if raw_amount is None:
        raise MalformedRecord("Missing 'amount' field", raw)
    signed_amount = parse_decimal(raw_amount, "amount", raw)
    tx_type = classify_type(raw, signed_amount)

    ref = _first(raw, REF_KEYS)
    raw_ts = _first(raw, TIMESTAMP_KEYS)
    if raw_ts is not None:
        timestamp = parse_timestamp(raw_ts, raw)
    elif ref is not None:
        timestamp = utc_now()
    else:
        raise MalformedRecord("Missing 'timestamp' field and no exchange reference", raw)

    raw_pair = raw.get("pair")
    raw_asset = raw.get("asset")
    raw_type = str(raw.get("type")).strip().lower()
    is_trade_shape = raw_type in DIRECTIONAL_TYPES or raw_type in ("buy", "sell")
    if raw_pair:
        try:
            base, quote = split_pair(raw_pair)
        except ValueError as e:
            raise MalformedRecord(str(e), raw)
    elif is_trade_shape:
        raise MalformedRecord(f"Trade entry missing 'pair' (type={raw.get('type')!r})", raw)
    elif raw_asset:
        base, quote = normalize_asset(raw_asset), normalize_asset(quote_currency)
    else:
        raise MalformedRecord(f"Entry missing both 'pair' and 'asset' (type={raw.get('type')!r})", raw)

    fee = parse_decimal(raw.get("fee"), "fee", raw)
    # long/short from the trade direction
    side = None
    if raw_type in DERIVATIVE_TYPES:
        side = "long" if tx_type is TxType.BUY else "short"

    tx = Transaction(
        account=account,
        timestamp=timestamp,
        pair=f"{base}/{quote}",
        base=base,
        quote=quote,
        type=tx_type,
        amount=abs(signed_amount),
        price=parse_decimal(raw.get("price"), "price", raw),
        total=parse_decimal(_first(raw, TOTAL_KEYS), "total", raw),
        fee=abs(fee) if fee is not None else Decimal("0"),
        side=side,
        exchange_ref=str(ref).strip() if ref is not None else None,
        status=TxStatus.NEW,
        tags=_parse_tags(raw.get("tags")),
        notes=raw.get("notes") or None,
        timestamp_inferred=raw_ts is None,
    )
    tx.natural_key = natural_key(tx)
    return tx


def _canonical_amount(amount: Decimal) -> str:
    if amount == 0:
        return "0"
    return format(amount.normalize(), "f")


def synthetic_key(timestamp: datetime.datetime, pair: str, tx_type: TxType, amount: Decimal) -> str:
    material = "|".join([
        timestamp.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds"),
        pair.upper(),
        tx_type.value,
        _canonical_amount(amount),
    ])
    return "syn:" + hashlib.sha1(material.encode("utf-8")).hexdigest()


def natural_key(tx: Transaction) -> str:
    """Deduplication key: the exchange reference when present, else a deterministic composite."""
    if tx.exchange_ref:
        return f"ref:{tx.exchange_ref}"
    return synthetic_key(tx.timestamp, tx.pair, tx.type, tx.amount)


def is_synthetic(key: str) -> bool:
    return key.startswith("syn:")
