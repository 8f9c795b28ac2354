"""Pytest configuration and shared fixtures.

Ensures the repository root is importable (so tests can import packages like
`cli`, `core`, `storage` without an editable install), and provides factories
for chain blocks and marketplace logs.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import structlog

# Make repo root importable for tests (avoid requiring `pip install -e .`).
_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from core.chain import ChainBlock, block_from_dict  # noqa: E402
from core.indexer import Indexer  # noqa: E402
from schemas.config import IndexerConfig  # noqa: E402


def block_hash(height: int, fork: int = 0) -> str:
    """Deterministic hex hash; ``fork`` distinguishes competing histories."""
    return f"0x{height:06x}{fork:02x}"


@pytest.fixture
def bh():
    return block_hash


@pytest.fixture
def make_block():
    """Factory for chain blocks carrying ``MarketItemCreated`` logs.

    Example:
        make_block(10, [{"itemId": 1, "price": 5}], fork=1)
    """

    def _make(height: int, items: list[dict] | None = None, *, fork: int = 0, event: str = "MarketItemCreated") -> ChainBlock:
        logs = []
        for idx, args in enumerate(items or []):
            logs.append(
                {
                    "logIndex": idx,
                    "transactionHash": f"0x{height:06x}{idx:04x}{fork:02x}",
                    "address": "0x00000000000000000000000000000000000000ff",
                    "event": event,
                    "args": dict(args),
                }
            )
        return block_from_dict({"number": height, "hash": block_hash(height, fork), "logs": logs})

    return _make


@pytest.fixture
def fast_config() -> IndexerConfig:
    """Config with no waiting, deep confirmations and small retry budgets."""
    return IndexerConfig(
        confirmation_depth=100,
        poll_interval_ms=0,
        max_reorg_depth=10,
        batch_size=50,
        max_retries=3,
        backoff_base_ms=0,
        backoff_max_ms=0,
        fetch_timeout_s=5.0,
    )


@pytest.fixture
def indexer(tmp_path: Path, fast_config: IndexerConfig):
    idx = Indexer(tmp_path / "index.db", config=fast_config)
    try:
        yield idx
    finally:
        idx.close()


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    return _no_sleep


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any CLI logging configuration between tests."""
    yield
    structlog.reset_defaults()
