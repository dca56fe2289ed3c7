"""
Exporters Module
Flat CSV export of ledger transactions and the matching CSV reader used by import.
"""
import io
import logging
import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from ledger_sync.models import Transaction

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id", "timestamp", "pair", "type", "price", "amount", "total", "fee", "status", "tags", "notes", "exchangeRef",
]


class Exporter:
    """Base class for exporters."""
    def __init__(self, config: Dict[str, Any]):
        self.config = config.get("exports", {})
        self.export_path = Path(self.config.get("path", "data/exports/"))
        self.export_path.mkdir(parents=True, exist_ok=True)

    def _get_filepath(self, name_prefix: str, extension: str) -> Path:
        """Generate a timestamped filepath."""
        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.export_path / f"{name_prefix}_{timestamp}.{extension}"

    def export(self, transactions: Iterable[Transaction], path: Optional[str] = None):
        """Main export method to be implemented by subclasses."""
        raise NotImplementedError


def transactions_to_frame(transactions: Iterable[Transaction]) -> pd.DataFrame:
    rows = []
    for tx in transactions:
        view = tx.to_view()
        view["tags"] = "|".join(view["tags"])
        rows.append({column: view.get(column) for column in EXPORT_COLUMNS})
    return pd.DataFrame(rows, columns=EXPORT_COLUMNS, dtype=object)


class CsvExporter(Exporter):
    """Exports transactions to CSV in a fixed column order. Decimals are written as exact text."""

    def export(self, transactions: Iterable[Transaction], path: Optional[str] = None) -> str:
        """
        Write the CSV to `path` (or a timestamped file in the export directory when path is "auto").
        Returns the CSV text when no path is given, otherwise the file path written.
        """
        df = transactions_to_frame(transactions)
        if path is None:
            buffer = io.StringIO()
            df.to_csv(buffer, index=False)
            return buffer.getvalue()

        filepath = self._get_filepath("transactions", "csv") if path == "auto" else Path(path)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(filepath, index=False)
        logger.info(f"Transactions CSV exported to: {filepath} ({len(df)} rows)")
        return str(filepath)


def read_csv_records(path: str) -> List[Dict[str, Any]]:
    """
    Read a CSV (the export format or any file using the accepted raw keys) into raw records.
    Every value stays a string; empty cells are dropped so they read as absent.
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    records = []
    for row in df.to_dict(orient="records"):
        records.append({key.strip(): value for key, value in row.items() if value != ""})
    logger.info(f"Read {len(records)} records from {path}")
    return records
