"""Pytest fixtures shared across the ledger sync tests."""

import threading
from typing import Any, Dict, List, Optional

import pytest

from ledger_sync.database import LedgerStore
from ledger_sync.models import ActivityPage


def make_config(tmp_path) -> Dict[str, Any]:
    return {
        "account": {"name": "main", "quote_currency": "EUR"},
        "api_keys": {},
        "apis": {"kraken": {"base_url": "https://api.example.test", "timeout": 5, "request_delay_ms": 0}},
        "database": {"path": str(tmp_path / "ledger.db"), "connection_timeout": 5},
        "sync": {"max_attempts": 3, "base_delay_sec": 1.0, "max_delay_sec": 4.0, "jitter_sec": 0.0,
                 "resume_overlap_minutes": 60, "max_pages": 20},
        "query": {"default_limit": 50, "max_limit": 500},
        "jobs": {"history_path": str(tmp_path / "runs"), "history_ttl_days": 1, "poll_interval_sec": 0.05},
        "exports": {"path": str(tmp_path / "exports")},
        "logging": {"console_config": {"enabled": False},
                    "file_config": {"enabled": False, "path": str(tmp_path / "logs" / "ledger_sync.log")}},
    }


class FakeExchangeClient:
    """Serves pre-built pages keyed by cursor. Items in `failures` are raised before the page is served."""

    def __init__(self, pages: Optional[List[List[Dict[str, Any]]]] = None):
        self.pages = pages or [[]]
        self.failures: List[Exception] = []
        self.calls: List[Dict[str, Any]] = []
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def fetch_page(self, since, cursor, pairs=None) -> ActivityPage:
        self.calls.append({"since": since, "cursor": cursor, "pairs": pairs})
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.failures:
            raise self.failures.pop(0)
        index = int(cursor) if cursor else 0
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return ActivityPage(entries=list(self.pages[index]), next_cursor=next_cursor)

    def test_connection(self) -> bool:
        return True


def k1_entry(**overrides) -> Dict[str, Any]:
    entry = {
        "txid": "T1",
        "time": "2024-03-01T10:00:00Z",
        "type": "buy",
        "pair": "ETH/EUR",
        "vol": "0.5",
        "price": "3000",
        "cost": "1500",
        "fee": "2.4",
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def store(config):
    return LedgerStore(config)


@pytest.fixture
def fake_client():
    return FakeExchangeClient([[k1_entry()]])


@pytest.fixture
def sleeps():
    return []
