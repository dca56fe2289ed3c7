import datetime
import threading

import pytest

from conftest import FakeExchangeClient, k1_entry
from ledger_sync.errors import InvalidQuery, InvalidTag
from ledger_sync.ledger_service import LedgerService


@pytest.fixture
def service_factory(config):
    created = []

    def build(client):
        service = LedgerService(config=config, client=client, wait=lambda _event, _delay: False, rng=lambda: 0.0)
        created.append(service)
        return service

    yield build
    for service in created:
        service.close()


def test_sync_then_query_and_cursor_saved(service_factory):
    client = FakeExchangeClient([[k1_entry(txid="A", time="2024-03-01T10:00:00Z"),
                                  k1_entry(txid="B", time="2024-03-02T10:00:00Z")]])
    service = service_factory(client)

    started = service.sync()
    assert started["started"] is True
    summary = service.wait_for_sync(started["runId"], timeout=5)
    assert summary["status"] == "succeeded"

    result = service.query()
    assert [i["exchangeRef"] for i in result["items"]] == ["B", "A"]
    assert service.account_info()["lastSyncCursor"] == "2024-03-02T10:00:00+00:00"

    service.wait_for_sync(service.sync()["runId"], timeout=5)
    expected_since = datetime.datetime(2024, 3, 2, 9, tzinfo=datetime.timezone.utc)
    assert client.calls[-1]["since"] == expected_since


def test_second_sync_joins_the_running_one(service_factory):
    client = FakeExchangeClient([[k1_entry()]])
    client.gate = threading.Event()
    service = service_factory(client)

    first = service.sync()
    second = service.sync()
    assert second == {"started": False, "runId": first["runId"]}

    client.gate.set()
    assert service.wait_for_sync(first["runId"], timeout=5)["status"] == "succeeded"
    assert service.query()["metrics"]["count"] == 1


def test_pair_limited_sync_leaves_cursor_alone(service_factory):
    service = service_factory(FakeExchangeClient([[k1_entry()]]))
    run_id = service.sync(pairs=["ETH/EUR"])["runId"]
    service.wait_for_sync(run_id, timeout=5)
    assert service.account_info()["lastSyncCursor"] is None


def test_failed_sync_leaves_cursor_alone(service_factory):
    from ledger_sync.errors import NonTransientFetchError

    client = FakeExchangeClient([[k1_entry()]])
    client.failures = [NonTransientFetchError("EAPI:Invalid key")]
    service = service_factory(client)
    summary = service.wait_for_sync(service.sync()["runId"], timeout=5)
    assert summary["status"] == "failed"
    assert service.account_info()["lastSyncCursor"] is None


def test_sync_rejects_bad_since(service_factory):
    service = service_factory(FakeExchangeClient())
    with pytest.raises(InvalidQuery):
        service.sync(since="last tuesday")


def test_bulk_actions_through_the_service(service_factory):
    service = service_factory(FakeExchangeClient())
    service.import_records([k1_entry(txid="A"), k1_entry(txid="B")])
    ids = [item["id"] for item in service.query(sort="ts")["items"]]

    assert service.tag(ids, "tax")["updated"] == 2
    with pytest.raises(InvalidTag):
        service.tag(["id-missing"], "")
    assert service.reconcile([ids[0], "missing-id"]) == {"updated": 1, "skipped": 0, "notFound": 1, "errored": 0}
    assert service.mark_pending([ids[1]])["updated"] == 1
    assert service.query(status="pending")["metrics"]["count"] == 1
    assert service.delete([ids[1]])["deleted"] == 1
    assert service.query()["metrics"]["count"] == 1


def test_import_records_reports_per_item_outcomes(service_factory):
    service = service_factory(FakeExchangeClient())
    first = service.import_records([
        k1_entry(txid="A"),
        k1_entry(txid="B"),
        {"txid": "BAD", "type": "trade", "time": "2024-03-01T00:00:00Z", "vol": "1"},
    ])
    assert (first["imported"], first["updated"], first["duplicates"], first["errored"]) == (2, 0, 0, 1)
    assert first["errors"][0]["exchangeRef"] == "BAD"

    second = service.import_records([k1_entry(txid="A"), k1_entry(txid="B", vol="0.75")])
    assert (second["imported"], second["updated"], second["duplicates"]) == (0, 1, 1)


def test_export_and_import_csv_round_trip(service_factory, tmp_path):
    service = service_factory(FakeExchangeClient())
    service.import_records([k1_entry(txid="A", tags="tax"), {"time": "2024-03-01T11:00:00Z", "type": "fee",
                                                             "asset": "EUR", "amount": "-0.2"}])
    path = service.export_csv(str(tmp_path / "ledger.csv"))

    result = service.import_csv(path)
    assert (result["imported"], result["duplicates"], result["errored"]) == (0, 2, 0)

    csv_text = service.export_csv(type="fee")
    assert csv_text.splitlines()[0].startswith("id,timestamp,pair,type")
    assert len(csv_text.splitlines()) == 2


def test_unknown_run_is_reported(service_factory):
    from ledger_sync.errors import RunNotFound

    service = service_factory(FakeExchangeClient())
    with pytest.raises(RunNotFound):
        service.sync_status("does-not-exist")


def test_test_connection_delegates_to_client(service_factory):
    assert service_factory(FakeExchangeClient()).test_connection() is True


def test_second_service_on_the_same_ledger_joins_watches_and_cancels(service_factory):
    client = FakeExchangeClient([[k1_entry(txid="A")], [k1_entry(txid="B")]])
    client.gate = threading.Event()
    owner = service_factory(client)
    other = service_factory(FakeExchangeClient())

    started = owner.sync()
    assert client.entered.wait(5)

    assert other.sync() == {"started": False, "runId": started["runId"]}
    assert other.sync_status(started["runId"])["status"] == "running"
    assert other.cancel_sync(started["runId"]) is True

    client.gate.set()
    summary = other.wait_for_sync(started["runId"], timeout=5)
    assert summary["status"] == "cancelled"
    assert summary["counts"]["created"] == 1
    assert owner.wait_for_sync(started["runId"], timeout=5)["status"] == "cancelled"

    follow_up = other.sync()
    assert follow_up["started"] is True
    assert other.wait_for_sync(follow_up["runId"], timeout=5)["status"] == "succeeded"


def test_margin_record_survives_its_own_export(service_factory, tmp_path):
    service = service_factory(FakeExchangeClient())
    service.import_records([{"txid": "M1", "time": "2024-03-01T10:00:00Z", "type": "margin", "direction": "buy",
                             "posstatus": "closed", "pair": "XBTEUR", "vol": "0.2", "price": "60000",
                             "cost": "12000", "fee": "3"}])
    path = service.export_csv(str(tmp_path / "margin.csv"))

    result = service.import_csv(path)
    assert (result["imported"], result["updated"], result["duplicates"]) == (0, 0, 1)
    stored = service.store.find_by_natural_key("main", "ref:M1")
    assert stored.side == "long"
