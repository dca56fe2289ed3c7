from decimal import Decimal

from ledger_sync.dedup import Decision, DeduplicationIndex, diff_fields
from ledger_sync.models import TxStatus
from ledger_sync.normalizer import normalize_record


def _raw(**overrides):
    raw = {"txid": "T1", "time": "2024-03-01T10:00:00Z", "type": "buy", "pair": "ETH/EUR",
           "vol": "0.5", "price": "3000", "cost": "1500", "fee": "2.4"}
    raw.update(overrides)
    return raw


def _norm(raw):
    return normalize_record(raw, "EUR", account="main")


def test_new_key_creates(store):
    dedup = DeduplicationIndex(store)
    assert dedup.classify(_norm(_raw())).decision is Decision.CREATE
    result = dedup.ingest(_norm(_raw()))
    assert result.decision is Decision.CREATE
    assert store.get_transaction(result.transaction_id) is not None


def test_identical_record_is_duplicate_even_with_different_decimal_scale(store):
    dedup = DeduplicationIndex(store)
    first = dedup.ingest(_norm(_raw()))
    second = dedup.ingest(_norm(_raw(vol="0.50", price="3000.00")))
    assert second.decision is Decision.DUPLICATE
    assert second.transaction_id == first.transaction_id


def test_amended_record_updates_in_place_and_keeps_user_fields(store):
    dedup = DeduplicationIndex(store)
    tx_id = dedup.ingest(_norm(_raw())).transaction_id
    store.transition_status(tx_id, TxStatus.RECONCILED, [TxStatus.NEW])
    store.modify_tags(tx_id, "checked")
    store.update_fields(tx_id, {"notes": "ok"})

    result = dedup.ingest(_norm(_raw(vol="0.55", cost="1650")))
    assert result.decision is Decision.UPDATE_IN_PLACE
    assert result.transaction_id == tx_id

    stored = store.get_transaction(tx_id)
    assert stored.amount == Decimal("0.55")
    assert stored.total == Decimal("1650")
    assert stored.price == Decimal("3000")
    assert stored.status is TxStatus.RECONCILED
    assert stored.tags == {"checked"}
    assert stored.notes == "ok"
    assert store.count_transactions("main") == 1


def test_synthetic_collision_with_same_values_is_duplicate(store):
    dedup = DeduplicationIndex(store)
    raw = {"time": "2024-03-01T10:00:00Z", "type": "fee", "asset": "EUR", "amount": "-0.5"}
    dedup.ingest(_norm(raw))
    assert dedup.ingest(_norm(raw)).decision is Decision.DUPLICATE


def test_synthetic_collision_with_different_values_flags_existing_record(store):
    dedup = DeduplicationIndex(store)
    raw = {"time": "2024-03-01T10:00:00Z", "type": "trade", "pair": "ETH/EUR", "amount": "1", "price": "2000"}
    tx_id = dedup.ingest(_norm(raw)).transaction_id

    result = dedup.ingest(_norm(dict(raw, price="2100")))
    assert result.decision is Decision.AMBIGUOUS
    assert result.error and "price" in result.error

    stored = store.get_transaction(tx_id)
    assert stored.status is TxStatus.ERROR
    assert stored.price == Decimal("2000")
    assert "ambiguous" in stored.notes
    assert store.count_transactions("main") == 1


def test_insert_race_is_reclassified(store):
    dedup = DeduplicationIndex(store)
    stale = dedup.classify(_norm(_raw()))
    assert stale.decision is Decision.CREATE
    store.insert_if_absent(_norm(_raw()))

    result = dedup.apply(stale)
    assert result.decision is Decision.DUPLICATE
    assert store.count_transactions("main") == 1


def test_diff_fields_ignores_mutable_fields():
    a = _norm(_raw(tags="x", notes="one"))
    b = _norm(_raw(tags="y", notes="two"))
    assert diff_fields(a, b) == {}
