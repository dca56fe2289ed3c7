"""
Errors Module
Exception taxonomy shared by normalization, deduplication, sync and bulk mutation.
"""
from typing import Any, Dict, Optional


class LedgerSyncError(Exception):
    """Base class for all ledger sync errors."""


class NormalizationError(LedgerSyncError):
    """A raw exchange entry could not be mapped to a canonical transaction."""

    def __init__(self, message: str, raw: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.raw = raw or {}

    @property
    def reference(self) -> Optional[str]:
        for key in ("exchangeRef", "txid", "refid", "ledger_id"):
            value = self.raw.get(key)
            if value:
                return str(value)
        return None


class MalformedRecord(NormalizationError):
    """A field required to classify or quantify the entry is missing or unparsable."""


class UnsupportedRecordType(NormalizationError):
    """The raw type is not one the normalizer knows how to map."""


class AmbiguousMatch(LedgerSyncError):
    """A synthetic-key collision whose values differ from the stored record."""

    def __init__(self, natural_key: str, existing_id: str, differences: Dict[str, Any]):
        fields = ", ".join(sorted(differences))
        super().__init__(f"Synthetic key {natural_key} matches record {existing_id} but differs on: {fields}")
        self.natural_key = natural_key
        self.existing_id = existing_id
        self.differences = differences


class SyncAlreadyInProgress(LedgerSyncError):
    """A sync run already holds the run token for this account."""

    def __init__(self, account: str, run_id: str):
        super().__init__(f"Sync already in progress for account '{account}' (run {run_id})")
        self.account = account
        self.run_id = run_id


class FetchError(LedgerSyncError):
    """The exchange client failed to return a page."""


class TransientFetchError(FetchError):
    """Timeouts, rate limits and temporary outages. Safe to retry."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class NonTransientFetchError(FetchError):
    """Authentication failures and malformed responses. Retrying will not help."""


class InvalidTag(LedgerSyncError, ValueError):
    """Tag label is empty after trimming."""


class InvalidQuery(LedgerSyncError, ValueError):
    """A filter, sort or limit value is outside the accepted set."""


class InvalidCursor(InvalidQuery):
    """The pagination cursor cannot be decoded or belongs to another sort."""


class RunNotFound(LedgerSyncError, KeyError):
    """No live or logged sync run has the requested id."""
