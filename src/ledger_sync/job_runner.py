"""
Job Runner Module
Executes sync runs as cancellable background threads and publishes run summaries to a disk cache,
so that status and cancel work from any process sharing the ledger.
"""
import time
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from diskcache import Cache

from ledger_sync.errors import RunNotFound
from ledger_sync.models import RunStatus, SyncRun, utc_now
from ledger_sync.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class _Job:
    def __init__(self, run: SyncRun):
        self.run = run
        self.cancel_event = threading.Event()
        self.done = threading.Event()
        self.thread: Optional[threading.Thread] = None


class JobRunner:
    """One background thread per run. Run summaries are published to a disk cache after every page."""

    def __init__(self, orchestrator: SyncOrchestrator, config: Dict[str, Any],
                 on_finished: Optional[Callable[[SyncRun], None]] = None):
        jobs_config = config.get("jobs", {})
        self.orchestrator = orchestrator
        self.on_finished = on_finished
        self.history_path = Path(jobs_config.get("history_path", "data/cache/sync_runs"))
        self.history_path.mkdir(parents=True, exist_ok=True)
        self.history_ttl = jobs_config.get("history_ttl_days", 30) * 86400
        self.poll_interval = float(jobs_config.get("poll_interval_sec", 0.5))
        self.history = Cache(str(self.history_path))
        self._jobs: Dict[str, _Job] = {}
        self._lock = threading.Lock()
        logger.info(f"Sync run history initialized at: {self.history_path}")

    def submit(self, run: SyncRun) -> SyncRun:
        """Start executing an already-begun run (its run token is held) in the background."""
        job = _Job(run)
        job.thread = threading.Thread(target=self._execute, args=(job,), name=f"sync-{run.run_id[:8]}", daemon=True)
        with self._lock:
            self._jobs[run.run_id] = job
        self._publish(run)
        job.thread.start()
        logger.info(f"Submitted sync run {run.run_id} for account '{run.account}'")
        return run

    def _publish(self, run: SyncRun):
        self.history.set(run.run_id, run.summary(), expire=self.history_ttl)

    def _execute(self, job: _Job):
        run = job.run
        try:
            self.orchestrator.execute(run, job.cancel_event, on_progress=self._publish)
            if self.on_finished is not None:
                try:
                    self.on_finished(run)
                except Exception as e:
                    logger.error(f"Completion hook failed for run {run.run_id}: {e}", exc_info=True)
            self._publish(run)
        finally:
            with self._lock:
                self._jobs.pop(run.run_id, None)
            job.done.set()

    def _local_job(self, run_id: str) -> Optional[_Job]:
        with self._lock:
            return self._jobs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """Ask a live run to stop after its current page. Returns False if it already finished."""
        job = self._local_job(run_id)
        if job is not None:
            job.cancel_event.set()
            logger.info(f"Cancellation requested for sync run {run_id}")
            return True
        summary = self.status(run_id)
        if summary["status"] != RunStatus.RUNNING.value:
            return False
        if self.orchestrator.tokens.request_cancel(summary["account"], run_id):
            logger.info(f"Cancellation requested for sync run {run_id} owned by another process")
            return True
        return False

    def status(self, run_id: str) -> Dict[str, Any]:
        job = self._local_job(run_id)
        if job is not None:
            return job.run.summary()
        summary = self.history.get(run_id)
        if summary is None:
            raise RunNotFound(run_id)
        if summary["status"] == RunStatus.RUNNING.value:
            summary = self._check_abandoned(summary)
        return summary

    def _check_abandoned(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        """
        A run publishes its final state before releasing its token, so a running summary
        whose run no longer holds the token belongs to a process that died mid-run.
        """
        run_id = summary["runId"]
        if self.orchestrator.tokens.active(summary["account"]) == run_id:
            return summary
        latest = self.history.get(run_id, summary)
        if latest["status"] != RunStatus.RUNNING.value:
            return latest
        logger.warning(f"Sync run {run_id} stopped reporting without a final state; marking it failed.")
        latest = dict(latest, status=RunStatus.FAILED.value, finishedAt=utc_now().isoformat(),
                      error="Run ended without a final summary (owning process exited)")
        self.history.set(run_id, latest, expire=self.history_ttl)
        return latest

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until the run reaches a terminal state (or the timeout passes) and return its summary."""
        job = self._local_job(run_id)
        if job is not None:
            job.done.wait(timeout)
            return self.status(run_id)

        deadline = None if timeout is None else time.monotonic() + timeout
        summary = self.status(run_id)
        while summary["status"] == RunStatus.RUNNING.value:
            if deadline is not None and time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)
            summary = self.status(run_id)
        return summary

    def close(self):
        self.history.close()
