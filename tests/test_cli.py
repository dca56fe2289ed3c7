import json
import logging

import pytest

from conftest import make_config
from ledger_sync.cli import create_argument_parser, main


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for name in ("KRAKEN_API_KEY", "KRAKEN_API_SECRET", "LEDGER_ACCOUNT", "LEDGER_QUOTE_CURRENCY",
                 "LEDGER_DB_PATH", "LOG_LEVEL", "LOG_TO_CONSOLE", "LOG_TO_FILE"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(make_config(tmp_path)))
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    yield str(path)
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        create_argument_parser().parse_args([])


def test_import_query_tag_and_export(config_file, tmp_path, capsys):
    source = tmp_path / "in.csv"
    source.write_text(
        "exchangeRef,timestamp,type,pair,amount,price,total,fee\n"
        "A,2024-03-01T10:00:00Z,buy,ETH/EUR,0.5,3000,1500,2.4\n"
        "B,2024-03-02T10:00:00Z,sell,ETH/EUR,0.2,3100,620,1\n"
    )
    assert main(["--config", config_file, "import", str(source)]) == 0
    imported = json.loads(capsys.readouterr().out)
    assert imported["imported"] == 2

    assert main(["--config", config_file, "query", "--json", "--type", "buy"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["metrics"]["buyVolume"] == "1500"
    tx_id = result["items"][0]["id"]

    assert main(["--config", config_file, "tag", "tax", tx_id, "missing"]) == 0
    assert json.loads(capsys.readouterr().out)["notFound"] == 1

    out_path = tmp_path / "out.csv"
    assert main(["--config", config_file, "export", "--output", str(out_path)]) == 0
    assert out_path.read_text().count("\n") == 3


def test_invalid_tag_exits_non_zero(config_file, capsys):
    assert main(["--config", config_file, "tag", "   ", "some-id"]) == 2
    assert "Tag must be non-empty" in capsys.readouterr().out


def test_sync_without_credentials_reports_failure(config_file, capsys):
    assert main(["--config", config_file, "sync", "--json"]) == 1
    out = capsys.readouterr().out
    summary = json.loads(out[out.index("{"):])
    assert summary["status"] == "failed"
    assert "credentials" in summary["error"]


class InterruptedService:
    """Raises Ctrl-C on the first wait, like a user stopping a long sync."""

    def __init__(self):
        self.cancelled = []
        self.waits = 0

    def sync(self, since=None, pairs=None):
        return {"started": True, "runId": "run-1"}

    def wait_for_sync(self, run_id, timeout=None):
        self.waits += 1
        if self.waits == 1:
            raise KeyboardInterrupt
        return {"status": "cancelled", "error": None,
                "counts": {"fetched": 1, "created": 1, "updated": 0, "duplicate": 0, "errored": 0, "filtered": 0}}

    def cancel_sync(self, run_id):
        self.cancelled.append(run_id)
        return True


def test_interrupted_sync_is_cancelled_and_awaited(capsys):
    from ledger_sync.cli import run_command

    service = InterruptedService()
    args = create_argument_parser().parse_args(["sync"])
    assert run_command(service, args) == 1
    assert service.cancelled == ["run-1"]
    assert service.waits == 2
    assert "cancelled" in capsys.readouterr().out
