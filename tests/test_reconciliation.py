import pytest

from conftest import k1_entry
from ledger_sync.errors import InvalidTag
from ledger_sync.models import TxStatus
from ledger_sync.normalizer import normalize_record
from ledger_sync.reconciliation import ReconciliationEngine, unique_ids


def _seed(store, *refs):
    return [store.insert_if_absent(normalize_record(k1_entry(txid=ref), "EUR", account="main")).id for ref in refs]


def test_reconcile_partial_success(store):
    (tx_id,) = _seed(store, "A")
    result = ReconciliationEngine(store).reconcile([tx_id, "missing-id"])
    assert result["updated"] == 1
    assert result["notFound"] == 1
    assert store.get_transaction(tx_id).status is TxStatus.RECONCILED


def test_reconcile_skips_already_reconciled_and_errored(store):
    a, b, c = _seed(store, "A", "B", "C")
    engine = ReconciliationEngine(store)
    engine.reconcile([a])
    store.flag_error(b, "broken")
    engine.mark_pending([c])

    result = engine.reconcile([a, b, c])
    assert (result["updated"], result["skipped"], result["notFound"]) == (1, 2, 0)
    assert store.get_transaction(b).status is TxStatus.ERROR
    assert store.get_transaction(c).status is TxStatus.RECONCILED


def test_duplicate_ids_are_collapsed(store):
    (tx_id,) = _seed(store, "A")
    result = ReconciliationEngine(store).reconcile([tx_id, tx_id, f" {tx_id} "])
    assert result["updated"] == 1
    assert result["skipped"] == 0


def test_tag_counts_updated_unchanged_and_missing(store):
    a, b = _seed(store, "A", "B")
    engine = ReconciliationEngine(store)
    engine.tag([a], "tax")

    result = engine.tag([a, b, "missing"], "  tax  ")
    assert (result["updated"], result["unchanged"], result["notFound"]) == (1, 1, 1)
    assert store.get_transaction(b).tags == {"tax"}


def test_empty_tag_is_rejected_without_mutation(store):
    (tx_id,) = _seed(store, "A")
    engine = ReconciliationEngine(store)
    with pytest.raises(InvalidTag):
        engine.tag(["id-missing"], "")
    with pytest.raises(InvalidTag):
        engine.tag([tx_id], "   ")
    assert store.get_transaction(tx_id).tags == set()


def test_untag(store):
    (tx_id,) = _seed(store, "A")
    engine = ReconciliationEngine(store)
    engine.tag([tx_id], "review")
    assert engine.untag([tx_id], "review")["updated"] == 1
    assert engine.untag([tx_id], "review")["unchanged"] == 1
    assert store.get_transaction(tx_id).tags == set()


def test_delete_is_per_item(store):
    a, b = _seed(store, "A", "B")
    result = ReconciliationEngine(store).delete([a, "missing", a])
    assert result == {"deleted": 1, "notFound": 1, "errored": 0}
    assert store.get_transaction(a) is None
    assert store.get_transaction(b) is not None


def test_reopen_moves_terminal_states_back_to_pending(store):
    a, b, c = _seed(store, "A", "B", "C")
    engine = ReconciliationEngine(store)
    engine.reconcile([a])
    store.flag_error(b, "broken")

    result = engine.reopen([a, b, c])
    assert (result["updated"], result["skipped"]) == (2, 1)
    assert store.get_transaction(a).status is TxStatus.PENDING
    assert store.get_transaction(b).status is TxStatus.PENDING
    assert store.get_transaction(c).status is TxStatus.NEW


def test_annotate_replaces_notes(store):
    (tx_id,) = _seed(store, "A")
    result = ReconciliationEngine(store).annotate([tx_id, "missing"], "checked against bank")
    assert (result["updated"], result["notFound"]) == (1, 1)
    assert store.get_transaction(tx_id).notes == "checked against bank"


def test_unique_ids_keeps_first_seen_order():
    assert unique_ids(["b", "a", "b", "", "c"]) == ["b", "a", "c"]
