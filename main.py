#!/usr/bin/env python3
"""
Crypto Ledger Sync - Main Entry Point
Entry point for the exchange ledger synchronization application.
"""
import sys
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from ledger_sync.cli import main


if __name__ == "__main__":
    sys.exit(main())
