"""Indexer error taxonomy.

The pipeline reacts to these classes, not to storage- or client-specific
exceptions; the storage layer translates SQLite errors at its boundary.
"""

from __future__ import annotations

import sqlite3


class IndexerError(Exception):
    """Base class for all indexer errors."""


class DecodeError(IndexerError):
    """A raw log could not be turned into a typed event. Skipped, never fatal."""


class SchemaMismatch(IndexerError):
    """Entity fields do not match the registered schema. Fatal."""


class TransactionClosed(IndexerError):
    """Operation attempted on a committed or rolled-back transaction."""


class TransientStorageError(IndexerError):
    """Storage is temporarily unavailable (lock contention, busy timeout)."""


class UnrecoverableStorageError(IndexerError):
    """Storage cannot continue safely (disk full, corruption). Fatal."""


class ReorgTooDeep(IndexerError):
    """Chain divergence exceeds what the retained undo log can roll back."""

    def __init__(self, message: str, *, checkpoint_block: int, depth: int | None = None) -> None:
        super().__init__(message)
        self.checkpoint_block = checkpoint_block
        self.depth = depth


class ChainClientError(IndexerError):
    """A chain client call failed or timed out."""


class LeaseHeld(IndexerError):
    """Another pipeline instance owns the checkpoint lease."""

    def __init__(self, owner: str, expires_at: float) -> None:
        super().__init__(f"checkpoint lease held by {owner!r} until {expires_at:.0f}")
        self.owner = owner
        self.expires_at = expires_at


class LeaseLost(IndexerError):
    """This pipeline's lease was taken over while a block was in flight."""


class CheckpointMoved(IndexerError):
    """The stored checkpoint changed under an in-flight batch."""

    def __init__(self, expected: int, stored: int) -> None:
        super().__init__(f"checkpoint moved from {expected} to {stored} during the batch")
        self.expected = expected
        self.stored = stored


_TRANSIENT_MARKERS = ("locked", "busy", "timeout")


def translate_sqlite_error(exc: sqlite3.Error) -> IndexerError:
    """Map a SQLite exception onto the taxonomy.

    ``OperationalError`` for lock contention is transient; everything else
    (disk I/O, full disk, malformed image, integrity errors) is unrecoverable.
    """
    msg = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and any(m in msg for m in _TRANSIENT_MARKERS):
        return TransientStorageError(str(exc))
    return UnrecoverableStorageError(str(exc))


__all__ = [
    "IndexerError",
    "DecodeError",
    "SchemaMismatch",
    "TransactionClosed",
    "TransientStorageError",
    "UnrecoverableStorageError",
    "ReorgTooDeep",
    "ChainClientError",
    "LeaseHeld",
    "LeaseLost",
    "CheckpointMoved",
    "translate_sqlite_error",
]
