"""
Ledger Service - Main Class
Wires store, exchange client, orchestrator, job runner, reconciliation and query components
from configuration and exposes the operations used by the CLI.
"""
import threading
import random
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from ledger_sync.config import ConfigManager
from ledger_sync.database import LedgerStore
from ledger_sync.errors import SyncAlreadyInProgress
from ledger_sync.exchange_client import ExchangeClient, KrakenClient
from ledger_sync.exporters import CsvExporter, read_csv_records
from ledger_sync.job_runner import JobRunner
from ledger_sync.models import RunStatus, SortSpec, SyncRun
from ledger_sync.query import QueryFacade, parse_bound
from ledger_sync.reconciliation import ReconciliationEngine
from ledger_sync.sync_orchestrator import SyncOrchestrator, ingest_entries, wait_on_event

logger = logging.getLogger(__name__)


class LedgerService:
    """Main class for the ledger sync engine."""

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None,
                 client: Optional[ExchangeClient] = None,
                 wait: Callable[[threading.Event, float], bool] = wait_on_event,
                 rng: Callable[[], float] = random.random):
        """Initialize the service. An explicit config dict skips file and environment loading."""
        self.config = config if config is not None else ConfigManager(config_path).config
        account_config = self.config.get("account", {})
        self.account = account_config.get("name", "default")
        self.quote_currency = account_config.get("quote_currency", "USD").upper()

        self.store = LedgerStore(self.config)
        self.store.ensure_account(self.account, self.quote_currency)
        self.client = client if client is not None else KrakenClient(self.config)
        self.orchestrator = SyncOrchestrator(self.client, self.store, self.config, wait=wait, rng=rng)
        self.job_runner = JobRunner(self.orchestrator, self.config, on_finished=self._record_cursor)
        self.reconciliation = ReconciliationEngine(self.store)
        self.query_facade = QueryFacade(self.store, self.config)
        self.csv_exporter = CsvExporter(self.config)
        logger.info(f"Ledger service initialized for account '{self.account}' (quote {self.quote_currency}).")

    # ---- Sync ----

    def sync(self, since: Any = None, pairs: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Start a background sync. If one is already running for the account the
        caller joins it: {"started": False, "runId": <in-flight id>}.
        """
        since_ts = parse_bound(since, "since")
        account = self.store.get_account(self.account)
        try:
            run = self.orchestrator.begin(
                self.account, self.quote_currency, since=since_ts, pairs=pairs,
                resume_from=account.last_sync_cursor if account else None,
            )
        except SyncAlreadyInProgress as e:
            logger.info(f"Sync already in progress for '{self.account}' (run {e.run_id}); joining it.")
            return {"started": False, "runId": e.run_id}
        self.job_runner.submit(run)
        return {"started": True, "runId": run.run_id}

    def _record_cursor(self, run: SyncRun):
        """Advance the account cursor only when the run covered everything since the previous cursor."""
        if run.status is not RunStatus.SUCCEEDED:
            return
        if run.pairs:
            logger.info(f"Run {run.run_id} was limited to {run.pairs}; account cursor left unchanged.")
            return
        account = self.store.get_account(run.account)
        previous = account.last_sync_cursor if account else None
        if run.since is not None and previous is not None and run.since > previous:
            logger.info(f"Run {run.run_id} started after the stored cursor; account cursor left unchanged.")
            return
        cursor = run.watermark
        if previous is not None and (cursor is None or previous > cursor):
            cursor = previous
        self.store.save_sync_cursor(run.account, cursor)

    def cancel_sync(self, run_id: str) -> bool:
        return self.job_runner.cancel(run_id)

    def sync_status(self, run_id: str) -> Dict[str, Any]:
        return self.job_runner.status(run_id)

    def wait_for_sync(self, run_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self.job_runner.wait(run_id, timeout)

    def test_connection(self) -> bool:
        tester = getattr(self.client, "test_connection", None)
        if tester is None:
            logger.warning("Configured exchange client has no connection test.")
            return False
        return tester()

    # ---- Bulk actions ----

    def reconcile(self, ids: Iterable[str]) -> Dict[str, int]:
        return self.reconciliation.reconcile(ids)

    def tag(self, ids: Iterable[str], tag: str) -> Dict[str, int]:
        return self.reconciliation.tag(ids, tag)

    def untag(self, ids: Iterable[str], tag: str) -> Dict[str, int]:
        return self.reconciliation.untag(ids, tag)

    def delete(self, ids: Iterable[str]) -> Dict[str, int]:
        return self.reconciliation.delete(ids)

    def mark_pending(self, ids: Iterable[str]) -> Dict[str, int]:
        return self.reconciliation.mark_pending(ids)

    def reopen(self, ids: Iterable[str]) -> Dict[str, int]:
        return self.reconciliation.reopen(ids)

    def annotate(self, ids: Iterable[str], notes: str) -> Dict[str, int]:
        return self.reconciliation.annotate(ids, notes)

    # ---- Reads, import and export ----

    def query(self, cursor: Optional[str] = None, limit: Optional[int] = None, from_=None, to=None,
              pair: Optional[str] = None, type: Optional[str] = None, status: Optional[str] = None,
              q: Optional[str] = None, sort: Optional[str] = None) -> Dict[str, Any]:
        return self.query_facade.query(
            cursor=cursor, limit=limit, from_=from_, to=to, pair=pair, type=type, status=status,
            q=q, sort=sort, account=self.account,
        )

    def import_records(self, records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        """Route raw records through normalization and deduplication exactly like a sync page."""
        run = SyncRun(account=self.account, quote_currency=self.quote_currency)
        ingest_entries(self.orchestrator.dedup, records, run)
        counts = run.counts
        logger.info(f"Import finished: {counts.as_dict()}")
        return {
            "imported": counts.created,
            "updated": counts.updated,
            "duplicates": counts.duplicate,
            "errored": counts.errored,
            "errors": list(run.diagnostics),
        }

    def import_csv(self, path: str) -> Dict[str, Any]:
        return self.import_records(read_csv_records(path))

    def export_csv(self, path: Optional[str] = None, from_=None, to=None, pair: Optional[str] = None,
                   type: Optional[str] = None, status: Optional[str] = None, q: Optional[str] = None) -> str:
        """Export the filtered ledger oldest first. Returns CSV text, or the written path when `path` is given."""
        flt = self.query_facade.build_filter(
            from_=from_, to=to, pair=pair, type=type, status=status, q=q, account=self.account,
        )
        transactions = self.store.iter_transactions(flt, SortSpec(field="timestamp", descending=False))
        return self.csv_exporter.export(transactions, path)

    def account_info(self) -> Dict[str, Any]:
        account = self.store.get_account(self.account)
        return {
            "account": account.account,
            "quoteCurrency": account.quote_currency,
            "lastSyncCursor": account.last_sync_cursor.isoformat() if account.last_sync_cursor else None,
            "lastSyncAt": account.last_sync_at.isoformat() if account.last_sync_at else None,
            "transactions": self.store.count_transactions(self.account),
        }

    def close(self):
        self.job_runner.close()
