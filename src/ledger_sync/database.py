import sqlite3
import json
import uuid
import logging
import datetime
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple, Iterator, Iterable

from ledger_sync.models import (
    Account, LedgerFilter, SortSpec, Transaction, TxStatus, TxType,
)

logger = logging.getLogger(__name__)

# Sort key -> SQL expression. Amounts are stored as exact decimal text, so numeric ordering needs a cast.
SORT_EXPRESSIONS = {
    "timestamp": ("timestamp", "?"),
    "pair": ("pair", "?"),
    "amount": ("CAST(amount AS REAL)", "CAST(? AS REAL)"),
}

UPDATABLE_COLUMNS = {
    "timestamp", "pair", "base", "quote", "type", "side", "price", "amount", "total", "fee",
    "status", "tags", "notes",
}


def format_timestamp(ts: datetime.datetime) -> str:
    """Fixed-width UTC text so that lexical order equals chronological order."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc).isoformat(sep=' ', timespec='microseconds')


def parse_db_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    ts = datetime.datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    return ts.astimezone(datetime.timezone.utc)


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column == "timestamp":
        return format_timestamp(value)
    if column == "tags":
        return json.dumps(sorted(value))
    if isinstance(value, (TxType, TxStatus)):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


class LedgerStore:
    """Durable keyed storage for canonical transactions, backed by SQLite."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize the ledger store"""
        self.db_config = config.get("database", {})
        self.db_path = Path(self.db_config.get("path", "data/ledger.db"))
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connection_timeout = self.db_config.get("connection_timeout", 30)

        self.ACCOUNTS_TABLE_NAME = "accounts"
        self.TRANSACTIONS_TABLE_NAME = "transactions"

        self._create_tables()
        logger.info(f"Ledger store initialized at: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection"""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.connection_timeout)
            conn.row_factory = sqlite3.Row
            return conn
        except sqlite3.Error as e:
            logger.error(f"Database connection error: {e}")
            raise

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """One unit of work: commit on success, roll back on error, always close."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_tables(self):
        """Create necessary tables if they don't exist"""
        types = ", ".join(f"'{t.value}'" for t in TxType)
        statuses = ", ".join(f"'{s.value}'" for s in TxStatus)
        commands = [
            """
            CREATE TABLE IF NOT EXISTS accounts (
                account TEXT PRIMARY KEY, quote_currency TEXT NOT NULL,
                last_sync_cursor TEXT, last_sync_at TEXT,
                active_run_id TEXT, run_heartbeat_at TEXT, cancel_requested INTEGER NOT NULL DEFAULT 0
            );""", f"""
            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY, account TEXT NOT NULL, natural_key TEXT NOT NULL, exchange_ref TEXT,
                timestamp TEXT NOT NULL, pair TEXT NOT NULL, base TEXT NOT NULL, quote TEXT NOT NULL,
                type TEXT NOT NULL CHECK (type IN ({types})), side TEXT,
                price TEXT, amount TEXT NOT NULL, total TEXT, fee TEXT,
                status TEXT NOT NULL DEFAULT 'new' CHECK (status IN ({statuses})),
                tags TEXT NOT NULL DEFAULT '[]', notes TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP, updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (account, natural_key)
            );""",
            "CREATE INDEX IF NOT EXISTS idx_transactions_account_timestamp ON transactions (account, timestamp);",
            "CREATE INDEX IF NOT EXISTS idx_transactions_pair ON transactions (pair);",
            "CREATE INDEX IF NOT EXISTS idx_transactions_type ON transactions (type);",
            "CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions (status);",
        ]
        try:
            with self._connection() as conn:
                for command in commands:
                    conn.execute(command)
            logger.info("Database tables checked/created successfully.")
        except sqlite3.Error as e:
            logger.error(f"Error creating tables: {e}")
            raise

    # ---- Accounts ----

    def ensure_account(self, account: str, quote_currency: str) -> Account:
        """Get the account record, creating it on first use."""
        with self._connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO accounts (account, quote_currency) VALUES (?, ?)",
                (account, quote_currency.upper()),
            )
        return self.get_account(account)

    def get_account(self, account: str) -> Optional[Account]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE account = ?", (account,)).fetchone()
        if not row:
            return None
        return Account(
            account=row["account"],
            quote_currency=row["quote_currency"],
            last_sync_cursor=parse_db_timestamp(row["last_sync_cursor"]),
            last_sync_at=parse_db_timestamp(row["last_sync_at"]),
        )

    def save_sync_cursor(self, account: str, cursor: Optional[datetime.datetime]):
        """Record the watermark of a successful run as the account's resume point."""
        now = format_timestamp(datetime.datetime.now(datetime.timezone.utc))
        with self._connection() as conn:
            if cursor is None:
                conn.execute("UPDATE accounts SET last_sync_at = ? WHERE account = ?", (now, account))
            else:
                conn.execute(
                    "UPDATE accounts SET last_sync_cursor = ?, last_sync_at = ? WHERE account = ?",
                    (format_timestamp(cursor), now, account),
                )
        logger.info(f"Saved sync cursor for account '{account}': {cursor}")

    # ---- Run tokens ----

    def acquire_run_token(self, account: str, run_id: str, stale_after: datetime.timedelta) -> Optional[str]:
        """
        Make `run_id` the account's active sync. A holder whose heartbeat is older than
        `stale_after` is treated as dead and replaced.
        Returns None when the token was taken, otherwise the run id that holds it.
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT active_run_id, run_heartbeat_at FROM accounts WHERE account = ?", (account,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Unknown account '{account}'")
            holder = row["active_run_id"]
            if holder is not None:
                heartbeat = parse_db_timestamp(row["run_heartbeat_at"])
                if heartbeat is not None and now - heartbeat < stale_after:
                    return holder
                logger.warning(f"Replacing stale sync token of run {holder} for account '{account}' "
                               f"(last heartbeat {heartbeat})")
            conn.execute(
                "UPDATE accounts SET active_run_id = ?, run_heartbeat_at = ?, cancel_requested = 0 WHERE account = ?",
                (run_id, format_timestamp(now), account),
            )
        return None

    def touch_run_token(self, account: str, run_id: str) -> bool:
        """Refresh the holder's heartbeat. Returns True when a cancellation has been requested."""
        now = format_timestamp(datetime.datetime.now(datetime.timezone.utc))
        with self._connection() as conn:
            conn.execute(
                "UPDATE accounts SET run_heartbeat_at = ? WHERE account = ? AND active_run_id = ?",
                (now, account, run_id),
            )
            row = conn.execute(
                "SELECT cancel_requested FROM accounts WHERE account = ? AND active_run_id = ?", (account, run_id)
            ).fetchone()
        return bool(row and row["cancel_requested"])

    def request_run_cancel(self, account: str, run_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE accounts SET cancel_requested = 1 WHERE account = ? AND active_run_id = ?", (account, run_id)
            )
        return cursor.rowcount == 1

    def release_run_token(self, account: str, run_id: str):
        with self._connection() as conn:
            conn.execute(
                "UPDATE accounts SET active_run_id = NULL, run_heartbeat_at = NULL, cancel_requested = 0 "
                "WHERE account = ? AND active_run_id = ?",
                (account, run_id),
            )

    def active_run(self, account: str, stale_after: Optional[datetime.timedelta] = None) -> Optional[str]:
        """The run holding the account's token. With `stale_after`, a holder that stopped heartbeating counts as none."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT active_run_id, run_heartbeat_at FROM accounts WHERE account = ?", (account,)
            ).fetchone()
        if row is None or row["active_run_id"] is None:
            return None
        if stale_after is not None:
            heartbeat = parse_db_timestamp(row["run_heartbeat_at"])
            if heartbeat is None or datetime.datetime.now(datetime.timezone.utc) - heartbeat >= stale_after:
                return None
        return row["active_run_id"]

    # ---- Single records ----

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            account=row["account"],
            natural_key=row["natural_key"],
            exchange_ref=row["exchange_ref"],
            timestamp=parse_db_timestamp(row["timestamp"]),
            pair=row["pair"],
            base=row["base"],
            quote=row["quote"],
            type=TxType(row["type"]),
            side=row["side"],
            price=_dec(row["price"]),
            amount=Decimal(row["amount"]),
            total=_dec(row["total"]),
            fee=_dec(row["fee"]),
            status=TxStatus(row["status"]),
            tags=set(json.loads(row["tags"] or "[]")),
            notes=row["notes"],
        )

    def get_transaction(self, tx_id: str) -> Optional[Transaction]:
        with self._connection() as conn:
            row = conn.execute(f"SELECT * FROM {self.TRANSACTIONS_TABLE_NAME} WHERE id = ?", (tx_id,)).fetchone()
        return self._row_to_transaction(row) if row else None

    def find_by_natural_key(self, account: str, natural_key: str) -> Optional[Transaction]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.TRANSACTIONS_TABLE_NAME} WHERE account = ? AND natural_key = ?",
                (account, natural_key),
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    def insert_if_absent(self, tx: Transaction) -> Optional[Transaction]:
        """
        Insert a new transaction keyed by (account, natural_key).
        Returns the stored transaction with its new id, or None if the key already exists.
        """
        if not tx.natural_key:
            raise ValueError("Transaction has no natural key")
        new_id = str(uuid.uuid4())
        sql = f"""
        INSERT INTO {self.TRANSACTIONS_TABLE_NAME}
        (id, account, natural_key, exchange_ref, timestamp, pair, base, quote, type, side,
         price, amount, total, fee, status, tags, notes)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(account, natural_key) DO NOTHING;
        """
        params = (
            new_id, tx.account, tx.natural_key, tx.exchange_ref,
            _to_db("timestamp", tx.timestamp), tx.pair, tx.base, tx.quote, tx.type.value, tx.side,
            _to_db("price", tx.price), _to_db("amount", tx.amount), _to_db("total", tx.total),
            _to_db("fee", tx.fee), tx.status.value, _to_db("tags", tx.tags), tx.notes,
        )
        with self._connection() as conn:
            cursor = conn.execute(sql, params)
            inserted = cursor.rowcount == 1
        if not inserted:
            logger.debug(f"DB: natural key {tx.natural_key} already present for account '{tx.account}'.")
            return None
        tx.id = new_id
        return tx

    def update_fields(self, tx_id: str, changes: Dict[str, Any]) -> bool:
        """Overwrite the given columns of one record. Returns False if the record does not exist."""
        if not changes:
            return self.get_transaction(tx_id) is not None
        unknown = set(changes) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        columns = sorted(changes)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        params = [_to_db(c, changes[c]) for c in columns] + [tx_id]
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {self.TRANSACTIONS_TABLE_NAME} SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                params,
            )
            return cursor.rowcount == 1

    def flag_error(self, tx_id: str, note: str) -> bool:
        """Set status to error and append a diagnostic note once."""
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(f"SELECT notes FROM {self.TRANSACTIONS_TABLE_NAME} WHERE id = ?", (tx_id,)).fetchone()
            if row is None:
                return False
            notes = row["notes"] or ""
            if note not in notes:
                notes = f"{notes}\n{note}" if notes else note
            conn.execute(
                f"UPDATE {self.TRANSACTIONS_TABLE_NAME} SET status = ?, notes = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (TxStatus.ERROR.value, notes, tx_id),
            )
            return True

    def transition_status(self, tx_id: str, target: TxStatus, allowed_from: Iterable[TxStatus]) -> str:
        """
        Atomically move one record to `target` if its current status is in `allowed_from`.
        Returns 'updated', 'skipped' or 'not_found'.
        """
        allowed = [s.value for s in allowed_from]
        placeholders = ", ".join("?" for _ in allowed)
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE {self.TRANSACTIONS_TABLE_NAME} SET status = ?, updated_at = CURRENT_TIMESTAMP "
                f"WHERE id = ? AND status IN ({placeholders})",
                [target.value, tx_id] + allowed,
            )
            if cursor.rowcount == 1:
                return "updated"
            exists = conn.execute(f"SELECT 1 FROM {self.TRANSACTIONS_TABLE_NAME} WHERE id = ?", (tx_id,)).fetchone()
        return "skipped" if exists else "not_found"

    def modify_tags(self, tx_id: str, label: str, add: bool = True) -> Optional[bool]:
        """
        Add or remove one tag. Returns None when the record is missing,
        True when the tag set changed and False when it was already in the requested state.
        """
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(f"SELECT tags FROM {self.TRANSACTIONS_TABLE_NAME} WHERE id = ?", (tx_id,)).fetchone()
            if row is None:
                return None
            tags = set(json.loads(row["tags"] or "[]"))
            if (label in tags) == add:
                return False
            if add:
                tags.add(label)
            else:
                tags.discard(label)
            conn.execute(
                f"UPDATE {self.TRANSACTIONS_TABLE_NAME} SET tags = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (_to_db("tags", tags), tx_id),
            )
            return True

    def delete_transaction(self, tx_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(f"DELETE FROM {self.TRANSACTIONS_TABLE_NAME} WHERE id = ?", (tx_id,))
            return cursor.rowcount == 1

    # ---- Filtered reads ----

    def _where(self, flt: LedgerFilter) -> Tuple[List[str], List[Any]]:
        clauses, params = [], []
        if flt.account:
            clauses.append("account = ?"); params.append(flt.account)
        if flt.start:
            clauses.append("timestamp >= ?"); params.append(format_timestamp(flt.start))
        if flt.end:
            clauses.append("timestamp < ?"); params.append(format_timestamp(flt.end))
        if flt.pair:
            clauses.append("pair = ?"); params.append(flt.pair)
        if flt.type:
            clauses.append("type = ?"); params.append(flt.type.value)
        if flt.status:
            clauses.append("status = ?"); params.append(flt.status.value)
        if flt.q:
            needle = flt.q.lower()
            clauses.append(
                "(instr(lower(coalesce(exchange_ref, '')), ?) > 0 OR instr(lower(coalesce(notes, '')), ?) > 0"
                " OR instr(lower(base), ?) > 0 OR instr(lower(quote), ?) > 0)"
            )
            params.extend([needle] * 4)
        return clauses, params

    def _page_sql(self, flt: LedgerFilter, sort: SortSpec, after: Optional[Tuple[Any, str]], limit: int) -> Tuple[str, List[Any]]:
        clauses, params = self._where(flt)
        expr, param_expr = SORT_EXPRESSIONS[sort.field]
        op = "<" if sort.descending else ">"
        if after is not None:
            value, last_id = after
            clauses.append(f"({expr} {op} {param_expr} OR ({expr} = {param_expr} AND id {op} ?))")
            params.extend([value, value, last_id])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "DESC" if sort.descending else "ASC"
        sql = f"SELECT * FROM {self.TRANSACTIONS_TABLE_NAME} {where} ORDER BY {expr} {direction}, id {direction} LIMIT ?"
        return sql, params + [limit]

    def fetch_page(self, flt: LedgerFilter, sort: SortSpec, after: Optional[Tuple[Any, str]], limit: int,
                   with_metrics: bool = False) -> Tuple[List[Transaction], List[sqlite3.Row]]:
        """
        Keyset-paginated read. `after` is the (sort value, id) of the last record already returned.
        When with_metrics is set, also returns (type, total, fee) rows for the whole filtered set,
        read in the same transaction as the page.
        """
        page_sql, page_params = self._page_sql(flt, sort, after, limit)
        clauses, params = self._where(flt)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            conn.execute("BEGIN")
            rows = conn.execute(page_sql, page_params).fetchall()
            metric_rows = []
            if with_metrics:
                metric_rows = conn.execute(
                    f"SELECT type, total, fee FROM {self.TRANSACTIONS_TABLE_NAME} {where}", params
                ).fetchall()
        return [self._row_to_transaction(r) for r in rows], metric_rows

    def iter_transactions(self, flt: Optional[LedgerFilter] = None, sort: Optional[SortSpec] = None,
                          batch_size: int = 500) -> Iterator[Transaction]:
        """Stream the full filtered result set in sort order."""
        flt = flt or LedgerFilter()
        sort = sort or SortSpec()
        after = None
        while True:
            batch, _ = self.fetch_page(flt, sort, after, batch_size)
            for tx in batch:
                yield tx
            if len(batch) < batch_size:
                return
            after = sort_key_of(batch[-1], sort)

    def count_transactions(self, account: Optional[str] = None) -> int:
        with self._connection() as conn:
            if account:
                row = conn.execute(f"SELECT COUNT(*) AS n FROM {self.TRANSACTIONS_TABLE_NAME} WHERE account = ?", (account,)).fetchone()
            else:
                row = conn.execute(f"SELECT COUNT(*) AS n FROM {self.TRANSACTIONS_TABLE_NAME}").fetchone()
        return row["n"]


def sort_key_of(tx: Transaction, sort: SortSpec) -> Tuple[Any, str]:
    """The (sort value, id) pair a keyset cursor positions after."""
    if sort.field == "timestamp":
        value = format_timestamp(tx.timestamp)
    elif sort.field == "pair":
        value = tx.pair
    else:
        value = str(tx.amount)
    return value, tx.id
