"""
Models Module
Canonical transaction shape, lifecycle enums and the sync run record.
"""
import datetime
import uuid
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class TxType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    STAKING = "staking"
    FEE = "fee"


class TxStatus(str, Enum):
    NEW = "new"
    PENDING = "pending"
    RECONCILED = "reconciled"
    ERROR = "error"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


# Fields an exchange may amend after the fact. Status, tags and notes belong to the user.
COMPARABLE_FIELDS = ("timestamp", "pair", "base", "quote", "type", "price", "amount", "total", "fee")


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class Transaction:
    """Canonical ledger entry."""
    account: str
    timestamp: datetime.datetime
    pair: str
    base: str
    quote: str
    type: TxType
    amount: Decimal
    price: Optional[Decimal] = None
    total: Optional[Decimal] = None
    fee: Optional[Decimal] = Decimal("0")
    side: Optional[str] = None
    exchange_ref: Optional[str] = None
    status: TxStatus = TxStatus.NEW
    tags: Set[str] = field(default_factory=set)
    notes: Optional[str] = None
    id: Optional[str] = None
    natural_key: Optional[str] = None
    # Set when the raw entry carried no timestamp and ingestion time stands in for it.
    timestamp_inferred: bool = False

    def to_view(self) -> Dict[str, Any]:
        """Flat, JSON-friendly view using the boundary field names."""
        return {
            "id": self.id,
            "account": self.account,
            "timestamp": self.timestamp.isoformat(),
            "pair": self.pair,
            "base": self.base,
            "quote": self.quote,
            "type": self.type.value,
            "side": self.side,
            "price": _decimal_str(self.price),
            "amount": _decimal_str(self.amount),
            "total": _decimal_str(self.total),
            "fee": _decimal_str(self.fee),
            "status": self.status.value,
            "tags": sorted(self.tags),
            "notes": self.notes,
            "exchangeRef": self.exchange_ref,
        }


def _decimal_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class SyncCounts:
    fetched: int = 0
    created: int = 0
    updated: int = 0
    duplicate: int = 0
    errored: int = 0
    filtered: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class SyncRun:
    """One orchestration execution. Lives for the duration of the run."""
    account: str
    since: Optional[datetime.datetime] = None
    pairs: Optional[List[str]] = None
    quote_currency: str = "USD"
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime.datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime.datetime] = None
    status: RunStatus = RunStatus.RUNNING
    counts: SyncCounts = field(default_factory=SyncCounts)
    watermark: Optional[datetime.datetime] = None
    error: Optional[str] = None
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)

    MAX_DIAGNOSTICS = 100

    def add_diagnostic(self, reference: Optional[str], message: str):
        if len(self.diagnostics) < self.MAX_DIAGNOSTICS:
            self.diagnostics.append({"exchangeRef": reference, "error": message})

    def observe(self, timestamp: datetime.datetime):
        if self.watermark is None or timestamp > self.watermark:
            self.watermark = timestamp

    def finish(self, status: RunStatus, error: Optional[str] = None):
        self.status = status
        self.error = error
        self.finished_at = utc_now()

    def summary(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "account": self.account,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "since": self.since.isoformat() if self.since else None,
            "pairs": list(self.pairs) if self.pairs else None,
            "counts": self.counts.as_dict(),
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "error": self.error,
            "diagnostics": list(self.diagnostics),
        }


@dataclass
class Account:
    account: str
    quote_currency: str
    last_sync_cursor: Optional[datetime.datetime] = None
    last_sync_at: Optional[datetime.datetime] = None


SORT_FIELDS = ("timestamp", "pair", "amount")


@dataclass(frozen=True)
class SortSpec:
    field: str = "timestamp"
    descending: bool = True

    def __str__(self) -> str:
        return f"-{self.field}" if self.descending else self.field


@dataclass
class LedgerFilter:
    """Store-level filter. All criteria are optional and combined with AND."""
    account: Optional[str] = None
    start: Optional[datetime.datetime] = None
    end: Optional[datetime.datetime] = None
    pair: Optional[str] = None
    type: Optional[TxType] = None
    status: Optional[TxStatus] = None
    q: Optional[str] = None


@dataclass
class ActivityPage:
    """One page of raw activity returned by an exchange client."""
    entries: List[Dict[str, Any]]
    next_cursor: Optional[str] = None
