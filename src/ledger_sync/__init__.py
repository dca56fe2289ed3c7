"""Crypto Ledger Sync - exchange activity synchronization and reconciliation."""

__version__ = "1.0.0"
