"""Chain client contract and offline implementations.

The pipeline talks to the chain only through ``ChainClient``. ``InMemoryChain``
keeps a canonical list of blocks that can be extended or reorganized;
``JsonFileChain`` serves the same data from a JSON capture on disk and
re-reads it when the file changes, so a captured chain can be followed.

Capture format::

    {"blocks": [{"number": 10, "hash": "0x0a",
                 "logs": [{"logIndex": 0, "transactionHash": "0x01",
                           "event": "MarketItemCreated", "args": {...}}]}]}
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from schemas.events import BlockRef, RawLog


class ChainClient(Protocol):
    async def get_head_block(self) -> BlockRef:  # pragma: no cover - Protocol definition only
        ...

    async def get_events(self, from_block: int, to_block: int) -> Sequence[RawLog]:  # pragma: no cover
        ...

    async def get_block_hash(self, height: int) -> Optional[str]:  # pragma: no cover
        ...


@dataclass
class ChainBlock:
    number: int
    hash: str
    logs: List[RawLog] = field(default_factory=list)


def block_from_dict(data: Dict[str, Any]) -> ChainBlock:
    """Build a block, filling ``blockNumber``/``blockHash`` into each log."""
    number = int(data["number"])
    bhash = str(data["hash"])
    logs = []
    for raw in data.get("logs") or []:
        item = dict(raw)
        item.setdefault("blockNumber", number)
        item.setdefault("blockHash", bhash)
        logs.append(RawLog.model_validate(item))
    return ChainBlock(number=number, hash=bhash, logs=logs)


class InMemoryChain:
    """Canonical chain held in memory.

    Blocks must be contiguous; ``reorg`` replaces every block from a height
    upward with an alternate history.
    """

    def __init__(self, blocks: Sequence[ChainBlock] = ()) -> None:
        self._blocks: Dict[int, ChainBlock] = {}
        for b in blocks:
            self.append(b)

    def append(self, block: ChainBlock) -> None:
        if self._blocks and block.number != max(self._blocks) + 1:
            raise ValueError(f"block {block.number} does not extend head {max(self._blocks)}")
        self._blocks[block.number] = block

    def reorg(self, from_height: int, blocks: Sequence[ChainBlock]) -> None:
        for h in [h for h in self._blocks if h >= from_height]:
            del self._blocks[h]
        for b in blocks:
            self.append(b)

    def replace(self, blocks: Sequence[ChainBlock]) -> None:
        self._blocks = {}
        for b in blocks:
            self.append(b)

    async def get_head_block(self) -> BlockRef:
        if not self._blocks:
            raise LookupError("chain has no blocks")
        head = self._blocks[max(self._blocks)]
        return BlockRef(height=head.number, hash=head.hash)

    async def get_events(self, from_block: int, to_block: int) -> List[RawLog]:
        out: List[RawLog] = []
        for h in range(from_block, to_block + 1):
            block = self._blocks.get(h)
            if block is not None:
                out.extend(block.logs)
        return out

    async def get_block_hash(self, height: int) -> Optional[str]:
        block = self._blocks.get(height)
        return block.hash if block else None


class JsonFileChain(InMemoryChain):
    """Chain served from a JSON capture, reloaded whenever its mtime changes."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._mtime: Optional[float] = None
        self._reload()

    def _reload(self) -> None:
        mtime = self._path.stat().st_mtime
        if mtime == self._mtime:
            return
        data = json.loads(self._path.read_text(encoding="utf-8"))
        blocks = sorted((block_from_dict(b) for b in data.get("blocks") or []), key=lambda b: b.number)
        self.replace(blocks)
        self._mtime = mtime

    async def get_head_block(self) -> BlockRef:
        self._reload()
        return await super().get_head_block()

    async def get_events(self, from_block: int, to_block: int) -> List[RawLog]:
        self._reload()
        return await super().get_events(from_block, to_block)

    async def get_block_hash(self, height: int) -> Optional[str]:
        self._reload()
        return await super().get_block_hash(height)
