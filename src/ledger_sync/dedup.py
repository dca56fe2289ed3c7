"""
Deduplication Index Module
Decides whether a normalized transaction is new, a duplicate, or an exchange-side correction
of a stored record, and applies that decision to the ledger store.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ledger_sync.database import LedgerStore
from ledger_sync.errors import AmbiguousMatch
from ledger_sync.models import COMPARABLE_FIELDS, Transaction
from ledger_sync.normalizer import is_synthetic, natural_key

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    CREATE = "create"
    UPDATE_IN_PLACE = "update_in_place"
    DUPLICATE = "duplicate"
    AMBIGUOUS = "ambiguous"


@dataclass
class Classification:
    decision: Decision
    incoming: Transaction
    existing: Optional[Transaction] = None
    differences: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ApplyResult:
    decision: Decision
    transaction_id: Optional[str]
    error: Optional[str] = None


def diff_fields(existing: Transaction, incoming: Transaction) -> Dict[str, Any]:
    """Comparable fields whose incoming value differs from the stored one, mapped to the incoming value."""
    differences = {}
    for name in COMPARABLE_FIELDS:
        if name == "timestamp" and incoming.timestamp_inferred:
            continue
        old, new = getattr(existing, name), getattr(incoming, name)
        # Decimal equality is numeric, so 1.50 and 1.5 compare equal.
        if old != new:
            differences[name] = new
    return differences


class DeduplicationIndex:
    """Natural-key lookup and write policy in front of the ledger store."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def classify(self, tx: Transaction) -> Classification:
        if not tx.natural_key:
            tx.natural_key = natural_key(tx)
        existing = self.store.find_by_natural_key(tx.account, tx.natural_key)
        if existing is None:
            return Classification(Decision.CREATE, tx)

        differences = diff_fields(existing, tx)
        if not differences:
            return Classification(Decision.DUPLICATE, tx, existing)
        if is_synthetic(tx.natural_key):
            return Classification(Decision.AMBIGUOUS, tx, existing, differences)
        return Classification(Decision.UPDATE_IN_PLACE, tx, existing, differences)

    def apply(self, classification: Classification, _retry: bool = True) -> ApplyResult:
        """Perform the write implied by a classification. Each call touches at most one record."""
        decision = classification.decision
        tx = classification.incoming

        if decision is Decision.CREATE:
            stored = self.store.insert_if_absent(tx)
            if stored is not None:
                logger.debug(f"Created {stored.id} for {tx.natural_key}")
                return ApplyResult(decision, stored.id)
            if not _retry:
                raise RuntimeError(f"Natural key {tx.natural_key} vanished and reappeared during insert")
            # Another writer inserted the same key between lookup and insert.
            logger.info(f"Insert race on {tx.natural_key}; re-classifying.")
            return self.apply(self.classify(tx), _retry=False)

        existing = classification.existing
        if decision is Decision.DUPLICATE:
            return ApplyResult(decision, existing.id)

        if decision is Decision.UPDATE_IN_PLACE:
            if self.store.update_fields(existing.id, classification.differences):
                logger.info(f"Updated {existing.id} in place ({tx.natural_key}): {sorted(classification.differences)}")
                return ApplyResult(decision, existing.id)
            if not _retry:
                raise RuntimeError(f"Record {existing.id} disappeared during update")
            return self.apply(self.classify(tx), _retry=False)

        error = AmbiguousMatch(tx.natural_key, existing.id, classification.differences)
        note = f"[sync] ambiguous synthetic-key match; incoming values differ on: {', '.join(sorted(classification.differences))}"
        self.store.flag_error(existing.id, note)
        logger.warning(str(error))
        return ApplyResult(decision, existing.id, error=str(error))

    def ingest(self, tx: Transaction) -> ApplyResult:
        return self.apply(self.classify(tx))
