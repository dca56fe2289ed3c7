"""
Sync Orchestrator Module
Drives one synchronization run: pages through the exchange client, normalizes, deduplicates
and writes each entry, and keeps the run summary. Owns retry/backoff and the per-account run token.
"""
import random
import sqlite3
import logging
import datetime
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ledger_sync.dedup import Decision, DeduplicationIndex
from ledger_sync.database import LedgerStore
from ledger_sync.errors import (
    InvalidQuery, NonTransientFetchError, NormalizationError, SyncAlreadyInProgress, TransientFetchError,
)
from ledger_sync.exchange_client import ExchangeClient
from ledger_sync.models import ActivityPage, RunStatus, SyncRun
from ledger_sync.normalizer import normalize_record, split_pair

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Exponential backoff: base delay doubling per attempt, capped, with additive jitter."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RetryPolicy":
        sync_config = config.get("sync", {})
        return cls(
            max_attempts=int(sync_config.get("max_attempts", 5)),
            base_delay=float(sync_config.get("base_delay_sec", 1.0)),
            max_delay=float(sync_config.get("max_delay_sec", 30.0)),
            jitter=float(sync_config.get("jitter_sec", 0.5)),
        )

    def delay(self, attempt: int, retry_after: Optional[float] = None, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry number `attempt` (1-based). A server Retry-After wins if it is longer."""
        backoff = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay) + rng() * self.jitter
        if retry_after is not None:
            return max(backoff, retry_after)
        return backoff


class RunTokens:
    """At most one active sync per account. The token lives in the ledger store so every process sees it."""

    def __init__(self, store: LedgerStore, stale_after: datetime.timedelta = datetime.timedelta(minutes=10)):
        self.store = store
        self.stale_after = stale_after

    def acquire(self, account: str, run_id: str):
        holder = self.store.acquire_run_token(account, run_id, self.stale_after)
        if holder is not None:
            raise SyncAlreadyInProgress(account, holder)

    def heartbeat(self, account: str, run_id: str) -> bool:
        """Keep the token fresh. True means another caller asked the run to stop."""
        return self.store.touch_run_token(account, run_id)

    def request_cancel(self, account: str, run_id: str) -> bool:
        return self.store.request_run_cancel(account, run_id)

    def release(self, account: str, run_id: str):
        self.store.release_run_token(account, run_id)

    def active(self, account: str) -> Optional[str]:
        return self.store.active_run(account, self.stale_after)


def wait_on_event(event: threading.Event, seconds: float) -> bool:
    return event.wait(seconds)


def normalize_pairs(pairs: Optional[Iterable[str]]) -> Optional[List[str]]:
    if not pairs:
        return None
    result = []
    for pair in pairs:
        try:
            base, quote = split_pair(pair)
        except ValueError as e:
            raise InvalidQuery(str(e)) from e
        display = f"{base}/{quote}"
        if display not in result:
            result.append(display)
    return result


def ingest_entries(dedup: DeduplicationIndex, entries: Iterable[Dict[str, Any]], run: SyncRun,
                   pair_filter: Optional[Set[str]] = None):
    """
    Push raw entries through normalizer and deduplication index, accumulating counts on `run`.
    A failing entry is counted and logged; it never stops the remaining entries.
    """
    for raw in entries:
        run.counts.fetched += 1
        try:
            tx = normalize_record(raw, run.quote_currency, account=run.account)
        except NormalizationError as e:
            run.counts.errored += 1
            run.add_diagnostic(e.reference, str(e))
            logger.warning(f"Skipping entry {e.reference or '<no ref>'}: {e}")
            continue

        if pair_filter and tx.pair not in pair_filter:
            run.counts.filtered += 1
            continue

        try:
            result = dedup.ingest(tx)
        except (sqlite3.Error, RuntimeError) as e:
            run.counts.errored += 1
            run.add_diagnostic(tx.exchange_ref, f"Store write failed: {e}")
            logger.error(f"Store write failed for {tx.natural_key}: {e}")
            continue

        if not tx.timestamp_inferred:
            run.observe(tx.timestamp)
        if result.decision is Decision.CREATE:
            run.counts.created += 1
        elif result.decision is Decision.UPDATE_IN_PLACE:
            run.counts.updated += 1
        elif result.decision is Decision.DUPLICATE:
            run.counts.duplicate += 1
        else:
            run.counts.errored += 1
            run.add_diagnostic(tx.exchange_ref, result.error)


class SyncOrchestrator:
    """Runs syncs for any number of accounts, one at a time per account."""

    def __init__(self, client: ExchangeClient, store: LedgerStore, config: Optional[Dict[str, Any]] = None,
                 tokens: Optional[RunTokens] = None,
                 wait: Callable[[threading.Event, float], bool] = wait_on_event,
                 rng: Callable[[], float] = random.random):
        config = config or {}
        sync_config = config.get("sync", {})
        self.client = client
        self.store = store
        self.dedup = DeduplicationIndex(store)
        stale_after = datetime.timedelta(seconds=sync_config.get("run_token_stale_sec", 600))
        self.tokens = tokens or RunTokens(store, stale_after)
        self.retry = RetryPolicy.from_config(config)
        self.resume_overlap = datetime.timedelta(minutes=sync_config.get("resume_overlap_minutes", 60))
        self.max_pages = int(sync_config.get("max_pages", 1000))
        self.wait = wait
        self.rng = rng

    def begin(self, account: str, quote_currency: str, since: Optional[datetime.datetime] = None,
              pairs: Optional[Iterable[str]] = None,
              resume_from: Optional[datetime.datetime] = None) -> SyncRun:
        """
        Create a run and take the account's run token.

        The fetch starts at `since` when given, otherwise at the account's last
        successful cursor (`resume_from`) less the configured overlap.
        Raises SyncAlreadyInProgress if another run holds the token.
        """
        run = SyncRun(account=account, since=since, pairs=normalize_pairs(pairs), quote_currency=quote_currency.upper())
        self.store.ensure_account(account, run.quote_currency)
        self.tokens.acquire(account, run.run_id)
        if since is None and resume_from is not None:
            run.since = resume_from - self.resume_overlap
            logger.info(f"Resuming sync for '{account}' from {run.since.isoformat()} (cursor {resume_from.isoformat()})")
        logger.info(f"Sync run {run.run_id} started for '{account}' since={run.since} pairs={run.pairs}")
        return run

    def execute(self, run: SyncRun, cancel_event: Optional[threading.Event] = None,
                on_progress: Optional[Callable[[SyncRun], None]] = None) -> SyncRun:
        """
        Page through the exchange until exhausted, cancelled or failed.

        `on_progress` sees the run after every page and once more with the final state,
        before the run token is released. Always releases the run token.
        """
        cancel_event = cancel_event or threading.Event()
        pair_filter = set(run.pairs) if run.pairs else None
        cursor = None
        pages = 0
        try:
            while True:
                if self._cancel_requested(run, cancel_event):
                    logger.info(f"Sync run {run.run_id} cancelled after {pages} pages.")
                    run.finish(RunStatus.CANCELLED)
                    break
                if pages >= self.max_pages:
                    logger.error(f"Sync run {run.run_id} hit the page limit ({self.max_pages}).")
                    run.finish(RunStatus.FAILED, f"Page limit of {self.max_pages} reached")
                    break

                page = self._fetch_with_retry(run, cursor, cancel_event)
                if page is None:
                    logger.info(f"Sync run {run.run_id} cancelled while waiting to retry.")
                    run.finish(RunStatus.CANCELLED)
                    break
                pages += 1
                ingest_entries(self.dedup, page.entries, run, pair_filter)
                logger.debug(f"Sync run {run.run_id} page {pages}: {run.counts.as_dict()}")

                cursor = page.next_cursor
                if cursor is None:
                    run.finish(RunStatus.SUCCEEDED)
                    break
                if on_progress is not None:
                    on_progress(run)
        except TransientFetchError as e:
            logger.error(f"Sync run {run.run_id} failed after {self.retry.max_attempts} attempts: {e}")
            run.finish(RunStatus.FAILED, f"Retries exhausted: {e}")
        except NonTransientFetchError as e:
            logger.error(f"Sync run {run.run_id} aborted: {e}")
            run.finish(RunStatus.FAILED, str(e))
        except Exception as e:
            logger.error(f"Sync run {run.run_id} crashed: {e}", exc_info=True)
            run.finish(RunStatus.FAILED, f"Unexpected error: {e}")
        finally:
            try:
                if on_progress is not None:
                    on_progress(run)
            except Exception as e:
                logger.error(f"Could not publish final state of run {run.run_id}: {e}", exc_info=True)
            finally:
                self.tokens.release(run.account, run.run_id)

        logger.info(f"Sync run {run.run_id} {run.status.value}: {run.counts.as_dict()}")
        return run

    def run_sync(self, account: str, quote_currency: str, since: Optional[datetime.datetime] = None,
                 pairs: Optional[Iterable[str]] = None, resume_from: Optional[datetime.datetime] = None,
                 cancel_event: Optional[threading.Event] = None) -> SyncRun:
        run = self.begin(account, quote_currency, since=since, pairs=pairs, resume_from=resume_from)
        return self.execute(run, cancel_event)

    def _cancel_requested(self, run: SyncRun, cancel_event: threading.Event) -> bool:
        """Heartbeat the run token and fold a cancellation stored by another process into the local event."""
        if self.tokens.heartbeat(run.account, run.run_id):
            cancel_event.set()
        return cancel_event.is_set()

    def _fetch_with_retry(self, run: SyncRun, cursor: Optional[str],
                          cancel_event: threading.Event) -> Optional[ActivityPage]:
        """Fetch one page, retrying transient failures. Returns None if cancelled during backoff."""
        attempt = 1
        while True:
            try:
                return self.client.fetch_page(run.since, cursor, run.pairs)
            except TransientFetchError as e:
                if attempt >= self.retry.max_attempts:
                    raise
                delay = self.retry.delay(attempt, e.retry_after, self.rng)
                logger.warning(f"Transient fetch error (attempt {attempt}/{self.retry.max_attempts}): {e}. Retrying in {delay:.2f}s")
                if self.wait(cancel_event, delay) or self._cancel_requested(run, cancel_event):
                    return None
                attempt += 1
