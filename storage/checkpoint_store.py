"""Checkpoint, undo log and lease persistence.

Lives in the same SQLite file as the entities so a block's entity writes,
its undo record and the advanced checkpoint commit as one durable write.
The format is deterministic and validated via Pydantic models.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional, Tuple

import structlog

from core.errors import CheckpointMoved, LeaseHeld, LeaseLost, ReorgTooDeep
from schemas.checkpoint import Checkpoint, UndoEntry, UndoRecord
from schemas.entities import Entity
from storage.entity_store import EntityStore, Tx

logger = structlog.get_logger(__name__)

_DDL = (
    "CREATE TABLE IF NOT EXISTS checkpoint (\n"
    "  id INTEGER PRIMARY KEY CHECK (id = 1),\n"
    "  data TEXT NOT NULL\n"
    ")",
    "CREATE TABLE IF NOT EXISTS undo_log (\n"
    "  block_number INTEGER PRIMARY KEY,\n"
    "  block_hash TEXT NOT NULL,\n"
    "  data TEXT NOT NULL\n"
    ")",
    "CREATE TABLE IF NOT EXISTS meta (\n"
    "  key TEXT PRIMARY KEY,\n"
    "  value TEXT NOT NULL\n"
    ")",
    "CREATE TABLE IF NOT EXISTS lease (\n"
    "  id INTEGER PRIMARY KEY CHECK (id = 1),\n"
    "  owner TEXT NOT NULL,\n"
    "  expires_at REAL NOT NULL\n"
    ")",
)


class CheckpointStore:
    """Checkpoint/ReorgManager over an ``EntityStore``.

    Args:
        store: Entity store whose database also holds checkpoint tables.
        start_block: Block to resume from when no checkpoint was ever saved.
    """

    def __init__(self, store: EntityStore, start_block: int = 0) -> None:
        self._store = store
        self._start_block = start_block
        with store.begin_transaction() as tx:
            for ddl in _DDL:
                tx.execute(ddl)

    @contextmanager
    def _in_tx(self, tx: Optional[Tx]) -> Iterator[Tx]:
        if tx is not None:
            yield tx
            return
        with self._store.begin_transaction() as own:
            yield own

    # -----------------------------
    # Checkpoint
    # -----------------------------

    def load(self) -> Checkpoint:
        """Return the last committed checkpoint (genesis if none saved)."""
        rows = self._store.query("SELECT data FROM checkpoint WHERE id = 1")
        if not rows:
            return Checkpoint.genesis(self._start_block)
        return Checkpoint.from_json(rows[0][0])

    def save(self, checkpoint: Checkpoint, tx: Optional[Tx] = None) -> None:
        """Persist ``checkpoint``; durable once the enclosing transaction commits."""
        with self._in_tx(tx) as t:
            t.execute(
                "INSERT INTO checkpoint (id, data) VALUES (1, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data",
                (checkpoint.to_json(),),
            )

    def verify_writer(self, tx: Tx, expected: Checkpoint, owner: str) -> None:
        """Check inside ``tx`` that nothing moved since ``expected`` was loaded.

        Raises:
            CheckpointMoved: The stored checkpoint is no longer ``expected``.
            LeaseLost: Another owner holds the lease, or it was released.
        """
        row = tx.execute("SELECT data FROM checkpoint WHERE id = 1").fetchone()
        stored = Checkpoint.from_json(row[0]) if row else Checkpoint.genesis(self._start_block)
        if stored != expected:
            raise CheckpointMoved(expected.last_processed_block, stored.last_processed_block)
        lease = tx.execute("SELECT owner FROM lease WHERE id = 1").fetchone()
        holder = lease[0] if lease else None
        if holder != owner:
            raise LeaseLost(f"lease of {owner!r} is now held by {holder!r}")

    # -----------------------------
    # Undo log
    # -----------------------------

    def record_undo(self, block_height: int, record: UndoRecord, tx: Optional[Tx] = None) -> None:
        if record.block_number != block_height:
            raise ValueError(f"undo record for {record.block_number} stored at {block_height}")
        with self._in_tx(tx) as t:
            t.execute(
                "INSERT INTO undo_log (block_number, block_hash, data) VALUES (?, ?, ?)",
                (block_height, record.block_hash, record.to_json()),
            )

    def undo_record(self, block_height: int) -> Optional[UndoRecord]:
        rows = self._store.query("SELECT data FROM undo_log WHERE block_number = ?", (block_height,))
        return UndoRecord.from_json(rows[0][0]) if rows else None

    def undo_heights(self) -> List[int]:
        """Heights with a retained undo record, ascending."""
        rows = self._store.query("SELECT block_number FROM undo_log ORDER BY block_number ASC")
        return [int(r[0]) for r in rows]

    def known_hashes(self) -> List[Tuple[int, str]]:
        """``(height, hash)`` of retained blocks, highest first."""
        rows = self._store.query("SELECT block_number, block_hash FROM undo_log ORDER BY block_number DESC")
        return [(int(h), str(bh)) for h, bh in rows]

    def finalized(self) -> Optional[Tuple[int, str]]:
        """Highest pruned block ``(height, hash)``; ``None`` before any pruning."""
        rows = self._store.query("SELECT key, value FROM meta WHERE key IN ('final_block', 'final_hash')")
        meta = {k: v for k, v in rows}
        if "final_block" not in meta:
            return None
        return int(meta["final_block"]), str(meta.get("final_hash", ""))

    def prune(self, final_height: int, tx: Optional[Tx] = None) -> int:
        """Drop undo records at or below ``final_height``.

        The highest dropped record becomes the finalized watermark.

        Returns:
            Number of records removed.
        """
        with self._in_tx(tx) as t:
            row = t.execute(
                "SELECT block_number, block_hash FROM undo_log WHERE block_number <= ? "
                "ORDER BY block_number DESC LIMIT 1",
                (final_height,),
            ).fetchone()
            if row is None:
                return 0
            cur = t.execute("DELETE FROM undo_log WHERE block_number <= ?", (final_height,))
            t.execute(
                "INSERT INTO meta (key, value) VALUES ('final_block', ?), ('final_hash', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (str(int(row[0])), str(row[1])),
            )
            return int(cur.rowcount)

    def rollback_to(self, block_height: int) -> List[int]:
        """Undo every block strictly above ``block_height``.

        Undo records are replayed highest block first and, inside a block, in
        reverse write order: prior snapshots are restored and entities that did
        not exist before are deleted. The records are then removed and the
        checkpoint rewound, all in one transaction.

        Returns:
            Heights that were rolled back, highest first.

        Raises:
            ReorgTooDeep: ``block_height`` is below the finalized watermark.
        """
        final = self.finalized()
        if final is not None and block_height < final[0]:
            raise ReorgTooDeep(
                f"cannot roll back to {block_height}: blocks up to {final[0]} are final",
                checkpoint_block=self.load().last_processed_block,
            )
        current = self.load()
        rolled: List[int] = []
        with self._store.begin_transaction() as tx:
            rows = tx.execute(
                "SELECT data FROM undo_log WHERE block_number > ? ORDER BY block_number DESC",
                (block_height,),
            ).fetchall()
            for (data,) in rows:
                record = UndoRecord.from_json(data)
                for entry in reversed(record.entries):
                    if entry.prior is None:
                        tx.delete(entry.entity_type, entry.id)
                    else:
                        tx.restore(entry.prior)
                rolled.append(record.block_number)
            tx.execute("DELETE FROM undo_log WHERE block_number > ?", (block_height,))
            if current.last_processed_block > block_height:
                self.save(self._checkpoint_at(tx, block_height, final), tx=tx)
        logger.info("rolled_back", to_block=block_height, blocks=len(rolled))
        return rolled

    def _checkpoint_at(self, tx: Tx, block_height: int, final: Optional[Tuple[int, str]]) -> Checkpoint:
        row = tx.execute("SELECT data FROM undo_log WHERE block_number = ?", (block_height,)).fetchone()
        if row is not None:
            rec = UndoRecord.from_json(row[0])
            return Checkpoint(
                last_processed_block=block_height,
                last_processed_log_index=rec.last_log_index,
                block_hash=rec.block_hash,
            )
        if final is not None and final[0] == block_height:
            return Checkpoint(last_processed_block=block_height, block_hash=final[1])
        if block_height < self._start_block:
            return Checkpoint.genesis(self._start_block)
        # Height carried no events; its hash was never recorded.
        return Checkpoint(last_processed_block=block_height)

    # -----------------------------
    # Exclusive lease
    # -----------------------------

    def acquire_lease(self, owner: str, ttl_s: float, *, now: Optional[float] = None) -> float:
        """Take or extend the checkpoint lease for ``owner``.

        Returns:
            The new expiry timestamp.

        Raises:
            LeaseHeld: A different owner holds an unexpired lease.
        """
        ts = time.time() if now is None else now
        with self._store.begin_transaction() as tx:
            row = tx.execute("SELECT owner, expires_at FROM lease WHERE id = 1").fetchone()
            if row is not None and row[0] != owner and float(row[1]) > ts:
                raise LeaseHeld(str(row[0]), float(row[1]))
            expires = ts + ttl_s
            tx.execute(
                "INSERT INTO lease (id, owner, expires_at) VALUES (1, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at",
                (owner, expires),
            )
        return expires

    renew_lease = acquire_lease

    def release_lease(self, owner: str) -> None:
        with self._store.begin_transaction() as tx:
            tx.execute("DELETE FROM lease WHERE id = 1 AND owner = ?", (owner,))


class UndoCapture:
    """Entity writer that snapshots prior values into an ``UndoRecord``.

    Wraps a ``Tx`` for the duration of one block: every upsert or delete
    first appends ``(entity_type, id, prior)`` to ``record.entries``.
    """

    def __init__(self, tx: Tx, record: UndoRecord) -> None:
        self._tx = tx
        self.record = record

    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        return self._tx.get(entity_type, entity_id)

    def upsert(
        self,
        entity_type: str,
        entity_id: str,
        fields: Mapping[str, Any],
        *,
        block: Optional[int] = None,
    ) -> Entity:
        self._capture(entity_type, entity_id)
        return self._tx.upsert(entity_type, entity_id, fields, block=block)

    def delete(self, entity_type: str, entity_id: str) -> None:
        self._capture(entity_type, entity_id)
        self._tx.delete(entity_type, entity_id)

    def _capture(self, entity_type: str, entity_id: str) -> None:
        prior = self._tx.snapshot_before(entity_type, entity_id)
        self.record.entries.append(UndoEntry(entity_type=entity_type, id=entity_id, prior=prior))
