from __future__ import annotations

from pathlib import Path

import pytest

from core.errors import LeaseHeld, ReorgTooDeep
from schemas.checkpoint import Checkpoint, UndoRecord
from storage.checkpoint_store import CheckpointStore, UndoCapture
from storage.entity_store import EntityStore

ITEM = "MarketItemEntity"


@pytest.fixture
def stores(tmp_path: Path):
    store = EntityStore(tmp_path / "index.db")
    try:
        yield store, CheckpointStore(store, start_block=5)
    finally:
        store.close()


def _apply_block(store: EntityStore, cps: CheckpointStore, number: int, writes: list[tuple[str, dict]]) -> None:
    with store.begin_transaction() as tx:
        record = UndoRecord(block_number=number, block_hash=f"0x{number:04x}", last_log_index=len(writes) - 1)
        cap = UndoCapture(tx, record)
        for entity_id, fields in writes:
            cap.upsert(ITEM, entity_id, fields, block=number)
        cps.record_undo(number, record, tx=tx)
        cps.save(
            Checkpoint(last_processed_block=number, last_processed_log_index=record.last_log_index, block_hash=record.block_hash),
            tx=tx,
        )


def test_load_returns_genesis_until_saved(stores) -> None:
    _store, cps = stores
    cp = cps.load()
    assert cp.last_processed_block == 4
    assert not cp.has_hash

    cps.save(Checkpoint(last_processed_block=7, last_processed_log_index=2, block_hash="0x07"))
    assert cps.load() == Checkpoint(last_processed_block=7, last_processed_log_index=2, block_hash="0x07")


def test_rollback_restores_priors_and_deletes_created(stores) -> None:
    store, cps = stores
    _apply_block(store, cps, 10, [("1", {"itemId": 1, "price": 100, "sold": False})])
    _apply_block(store, cps, 11, [("1", {"sold": True}), ("2", {"itemId": 2})])
    _apply_block(store, cps, 12, [("1", {"price": 300}), ("1", {"price": 301})])

    rolled = cps.rollback_to(10)

    assert rolled == [12, 11]
    one = store.get(ITEM, "1")
    assert one.fields == {"itemId": 1, "price": 100, "sold": False}
    assert one.updated_block == 10
    assert store.get(ITEM, "2") is None
    assert cps.undo_heights() == [10]
    assert cps.load() == Checkpoint(last_processed_block=10, last_processed_log_index=0, block_hash="0x000a")


def test_rollback_to_genesis_removes_everything(stores) -> None:
    store, cps = stores
    _apply_block(store, cps, 5, [("1", {"itemId": 1})])
    _apply_block(store, cps, 6, [("2", {"itemId": 2})])

    cps.rollback_to(4)

    assert store.count() == 0
    assert cps.load() == Checkpoint.genesis(5)


def test_prune_sets_finalized_and_blocks_deeper_rollback(stores) -> None:
    store, cps = stores
    for n in (10, 11, 12):
        _apply_block(store, cps, n, [(str(n), {"itemId": n})])

    assert cps.prune(11) == 2
    assert cps.undo_heights() == [12]
    assert cps.finalized() == (11, "0x000b")

    with pytest.raises(ReorgTooDeep):
        cps.rollback_to(10)

    # Rolling back to the finalized block itself is allowed.
    cps.rollback_to(11)
    assert store.get(ITEM, "12") is None
    assert store.get(ITEM, "11") is not None
    assert cps.load().block_hash == "0x000b"


def test_rollback_to_height_without_record_leaves_hash_unknown(stores) -> None:
    store, cps = stores
    _apply_block(store, cps, 10, [("1", {"itemId": 1})])
    _apply_block(store, cps, 20, [("2", {"itemId": 2})])

    cps.rollback_to(15)

    cp = cps.load()
    assert cp.last_processed_block == 15
    assert not cp.has_hash
    assert store.get(ITEM, "2") is None


def test_lease_is_exclusive_until_expiry(stores) -> None:
    _store, cps = stores
    cps.acquire_lease("a", 10.0, now=100.0)
    # Same owner renews.
    assert cps.renew_lease("a", 10.0, now=105.0) == 115.0
    with pytest.raises(LeaseHeld) as ei:
        cps.acquire_lease("b", 10.0, now=110.0)
    assert ei.value.owner == "a"
    # Expired lease can be taken over.
    assert cps.acquire_lease("b", 10.0, now=120.0) == 130.0
    cps.release_lease("b")
    cps.acquire_lease("c", 10.0, now=121.0)
