"""
Reconciliation Module
Bulk state transitions over sets of transaction ids. Each item is atomic, the batch is not:
every call completes and reports exactly what happened to each id.
"""
import sqlite3
import logging
from typing import Dict, Iterable, List

from ledger_sync.database import LedgerStore
from ledger_sync.errors import InvalidTag
from ledger_sync.models import TxStatus

logger = logging.getLogger(__name__)

RECONCILABLE = (TxStatus.NEW, TxStatus.PENDING)
REOPENABLE = (TxStatus.RECONCILED, TxStatus.ERROR)


def unique_ids(ids: Iterable[str]) -> List[str]:
    """Collapse duplicates and blanks, keeping first-seen order."""
    seen, result = set(), []
    for tx_id in ids or []:
        tx_id = str(tx_id).strip()
        if tx_id and tx_id not in seen:
            seen.add(tx_id)
            result.append(tx_id)
    return result


def validate_tag(label: str) -> str:
    cleaned = (label or "").strip()
    if not cleaned:
        raise InvalidTag("Tag must be non-empty after trimming")
    return cleaned


class ReconciliationEngine:
    """Applies reconcile/tag/delete style actions to the ledger store."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def _transition(self, ids: Iterable[str], target: TxStatus, allowed_from, action: str) -> Dict[str, int]:
        counts = {"updated": 0, "skipped": 0, "notFound": 0, "errored": 0}
        for tx_id in unique_ids(ids):
            try:
                outcome = self.store.transition_status(tx_id, target, allowed_from)
            except sqlite3.Error as e:
                logger.error(f"{action}: store error on {tx_id}: {e}")
                counts["errored"] += 1
                continue
            counts[{"updated": "updated", "skipped": "skipped", "not_found": "notFound"}[outcome]] += 1
        logger.info(f"{action}: {counts}")
        return counts

    def reconcile(self, ids: Iterable[str]) -> Dict[str, int]:
        """new/pending -> reconciled. Records already reconciled or in error are skipped."""
        return self._transition(ids, TxStatus.RECONCILED, RECONCILABLE, "reconcile")

    def mark_pending(self, ids: Iterable[str]) -> Dict[str, int]:
        return self._transition(ids, TxStatus.PENDING, (TxStatus.NEW,), "mark_pending")

    def reopen(self, ids: Iterable[str]) -> Dict[str, int]:
        """Explicitly reopen reconciled or errored records for another review pass."""
        return self._transition(ids, TxStatus.PENDING, REOPENABLE, "reopen")

    def _retag(self, ids: Iterable[str], label: str, add: bool) -> Dict[str, int]:
        label = validate_tag(label)
        action = "tag" if add else "untag"
        counts = {"updated": 0, "unchanged": 0, "notFound": 0, "errored": 0}
        for tx_id in unique_ids(ids):
            try:
                changed = self.store.modify_tags(tx_id, label, add=add)
            except sqlite3.Error as e:
                logger.error(f"{action}: store error on {tx_id}: {e}")
                counts["errored"] += 1
                continue
            if changed is None:
                counts["notFound"] += 1
            elif changed:
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1
        logger.info(f"{action} '{label}': {counts}")
        return counts

    def tag(self, ids: Iterable[str], label: str) -> Dict[str, int]:
        """Add a label to every record. Raises InvalidTag before touching anything if the label is blank."""
        return self._retag(ids, label, add=True)

    def untag(self, ids: Iterable[str], label: str) -> Dict[str, int]:
        return self._retag(ids, label, add=False)

    def annotate(self, ids: Iterable[str], notes: str) -> Dict[str, int]:
        counts = {"updated": 0, "notFound": 0, "errored": 0}
        for tx_id in unique_ids(ids):
            try:
                found = self.store.update_fields(tx_id, {"notes": notes or None})
            except sqlite3.Error as e:
                logger.error(f"annotate: store error on {tx_id}: {e}")
                counts["errored"] += 1
                continue
            counts["updated" if found else "notFound"] += 1
        logger.info(f"annotate: {counts}")
        return counts

    def delete(self, ids: Iterable[str]) -> Dict[str, int]:
        """Permanently remove records. Unknown ids are counted, never fatal."""
        counts = {"deleted": 0, "notFound": 0, "errored": 0}
        for tx_id in unique_ids(ids):
            try:
                removed = self.store.delete_transaction(tx_id)
            except sqlite3.Error as e:
                logger.error(f"delete: store error on {tx_id}: {e}")
                counts["errored"] += 1
                continue
            counts["deleted" if removed else "notFound"] += 1
        logger.info(f"delete: {counts}")
        return counts
