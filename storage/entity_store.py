"""SQLite-backed transactional entity store.

Maps ``(entity_type, id)`` to a typed record. All writes go through a ``Tx``
so a block's effects become visible all at once or not at all. Readers use a
separate connection and, thanks to WAL, only ever see committed state.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from blake3 import blake3

from core.errors import (
    TransactionClosed,
    UnrecoverableStorageError,
    translate_sqlite_error,
)
from schemas.entities import Entity, validate_fields

SCHEMA_VERSION = 1
BUSY_TIMEOUT_S = 5.0


def _canonical(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_checksum(entity_type: str, entity_id: str, fields_bytes: bytes, updated_block: Optional[int]) -> str:
    """Checksum of a stored row; changes if any persisted column changes."""
    h = blake3(entity_type.encode("utf-8") + b"\x00" + entity_id.encode("utf-8") + b"\x00")
    h.update(fields_bytes)
    h.update(b"\x00" + str(updated_block).encode("ascii"))
    return h.hexdigest()


def _connect(db_path: Path) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(
            str(db_path), isolation_level=None, check_same_thread=False, timeout=BUSY_TIMEOUT_S
        )
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=FULL;")
    except sqlite3.Error as exc:
        raise translate_sqlite_error(exc) from exc
    return conn


def _row_to_entity(row: Sequence[Any]) -> Entity:
    entity_type, entity_id, data, updated_block, checksum = row
    data_bytes = bytes(data) if not isinstance(data, str) else data.encode("utf-8")
    ub = int(updated_block) if updated_block is not None else None
    if compute_checksum(entity_type, entity_id, data_bytes, ub) != checksum:
        raise UnrecoverableStorageError(f"checksum mismatch for {entity_type}:{entity_id}")
    return Entity(entity_type=entity_type, id=entity_id, fields=json.loads(data_bytes), updated_block=ub)


_SELECT_ONE = (
    "SELECT entity_type, id, data, updated_block, checksum FROM entities "
    "WHERE entity_type = ? AND id = ?"
)


class Tx:
    """Write transaction on an ``EntityStore``.

    Usable as a context manager: commits on a clean exit, rolls back when the
    block raises. Any call after ``commit()``/``rollback()`` raises
    ``TransactionClosed``.
    """

    def __init__(self, store: "EntityStore", conn: sqlite3.Connection) -> None:
        self._store = store
        self._conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def _check(self) -> None:
        if not self._open:
            raise TransactionClosed("transaction already committed or rolled back")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run a statement inside this transaction, translating SQLite errors."""
        self._check()
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc

    # -----------------------------
    # Entity operations
    # -----------------------------

    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """Point lookup that sees this transaction's own uncommitted writes."""
        row = self.execute(_SELECT_ONE, (entity_type, entity_id)).fetchone()
        return _row_to_entity(row) if row else None

    def snapshot_before(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """Value of the entity before the next write, or ``None`` if absent."""
        return self.get(entity_type, entity_id)

    def upsert(
        self,
        entity_type: str,
        entity_id: str,
        fields: Mapping[str, Any],
        *,
        block: Optional[int] = None,
    ) -> Entity:
        """Create the entity or merge ``fields`` into it.

        Only the given fields are written; fields not mentioned keep their
        stored value.

        Raises:
            SchemaMismatch: ``fields`` do not fit the entity type's schema.
        """
        self._check()
        clean = validate_fields(entity_type, fields)
        current = self.get(entity_type, entity_id)
        merged = dict(current.fields) if current else {}
        merged.update(clean)
        entity = Entity(entity_type=entity_type, id=entity_id, fields=merged, updated_block=block)
        self._write(entity)
        return entity

    def restore(self, entity: Entity) -> None:
        """Write ``entity`` back verbatim (used when replaying undo records)."""
        self._write(entity)

    def delete(self, entity_type: str, entity_id: str) -> None:
        self.execute("DELETE FROM entities WHERE entity_type = ? AND id = ?", (entity_type, entity_id))

    def _write(self, entity: Entity) -> None:
        data_bytes = _canonical(entity.fields)
        checksum = compute_checksum(entity.entity_type, entity.id, data_bytes, entity.updated_block)
        self.execute(
            "INSERT INTO entities (entity_type, id, data, updated_block, checksum, schema_ver) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(entity_type, id) DO UPDATE SET "
            "data = excluded.data, updated_block = excluded.updated_block, "
            "checksum = excluded.checksum, schema_ver = excluded.schema_ver",
            (
                entity.entity_type,
                entity.id,
                data_bytes,
                entity.updated_block,
                checksum,
                SCHEMA_VERSION,
            ),
        )

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def commit(self) -> None:
        self._check()
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as exc:
            # A failed COMMIT may leave the transaction active; discard it.
            self._abort()
            raise translate_sqlite_error(exc) from exc
        self._close()

    def rollback(self) -> None:
        self._check()
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            self._close()
            raise translate_sqlite_error(exc) from exc
        self._close()

    def _abort(self) -> None:
        if self._conn.in_transaction:
            try:
                self._conn.execute("ROLLBACK")
            except sqlite3.Error:
                pass
        self._close()

    def _close(self) -> None:
        self._open = False
        self._store._release(self)

    def __enter__(self) -> "Tx":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._open:
            return
        if exc_type is None:
            self.commit()
        else:
            self._abort()


class EntityStore:
    """Transactional, versioned entity store.

    Creates the ``entities`` table if it does not exist. Uses WAL so that
    concurrent readers observe committed transactions only.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = _connect(self._db_path)
        self._reader = _connect(self._db_path)
        self._read_lock = threading.Lock()
        self._active: Optional[Tx] = None
        try:
            self._conn.execute(
                (
                    "CREATE TABLE IF NOT EXISTS entities (\n"
                    "  entity_type TEXT NOT NULL,\n"
                    "  id TEXT NOT NULL,\n"
                    "  data BLOB NOT NULL,\n"
                    "  updated_block INTEGER,\n"
                    "  checksum TEXT NOT NULL,\n"
                    "  schema_ver INTEGER NOT NULL,\n"
                    "  PRIMARY KEY (entity_type, id)\n"
                    ")"
                )
            )
        except sqlite3.Error as exc:
            raise translate_sqlite_error(exc) from exc

    @property
    def db_path(self) -> Path:
        return self._db_path

    def begin_transaction(self) -> Tx:
        """Open the single write transaction.

        Raises:
            RuntimeError: A transaction is already open on this store.
            TransientStorageError: Another writer holds the database lock.
        """
        if self._active is not None:
            raise RuntimeError("a write transaction is already open")
        tx = Tx(self, self._conn)
        self._active = tx
        return tx

    def _release(self, tx: Tx) -> None:
        if self._active is tx:
            self._active = None

    # -----------------------------
    # Read side (committed data only)
    # -----------------------------

    def query(self, sql: str, params: Sequence[Any] = ()) -> list:
        with self._read_lock:
            try:
                return self._reader.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise translate_sqlite_error(exc) from exc

    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """Return the committed entity or ``None`` if absent."""
        rows = self.query(_SELECT_ONE, (entity_type, entity_id))
        return _row_to_entity(rows[0]) if rows else None

    def snapshot_before(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        """Committed value of an entity; ``None`` if it was never upserted."""
        return self.get(entity_type, entity_id)

    def list(self, entity_type: str, *, after_id: Optional[str] = None, limit: int = 100) -> List[Entity]:
        """Range query over one entity type, ordered by id."""
        rows = self.query(
            "SELECT entity_type, id, data, updated_block, checksum FROM entities "
            "WHERE entity_type = ? AND id > ? ORDER BY id ASC LIMIT ?",
            (entity_type, after_id or "", int(limit)),
        )
        return [_row_to_entity(r) for r in rows]

    def count(self, entity_type: Optional[str] = None) -> int:
        if entity_type is None:
            rows = self.query("SELECT COUNT(*) FROM entities", ())
        else:
            rows = self.query("SELECT COUNT(*) FROM entities WHERE entity_type = ?", (entity_type,))
        return int(rows[0][0])

    # -----------------------------
    # Convenience writes
    # -----------------------------

    def upsert(
        self,
        entity_type: str,
        entity_id: str,
        fields: Mapping[str, Any],
        *,
        block: Optional[int] = None,
    ) -> Entity:
        """Upsert in a one-shot transaction."""
        with self.begin_transaction() as tx:
            return tx.upsert(entity_type, entity_id, fields, block=block)

    def close(self) -> None:
        """Close both SQLite connections, discarding any open transaction."""
        if self._active is not None:
            self._active._abort()
        for conn in (self._conn, self._reader):
            try:
                conn.close()
            except sqlite3.Error:
                pass
