"""Indexer wiring.

Opens the entity store and checkpoint manager on one database and builds
ingestion pipelines over them. The CLI and tests go through this class.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import structlog

from core.chain import ChainClient
from core.errors import ReorgTooDeep
from core.pipeline import IngestionPipeline
from projections.base import Projector
from projections.marketplace import marketplace_projector
from schemas.checkpoint import Checkpoint
from schemas.config import IndexerConfig
from schemas.entities import Entity
from storage.checkpoint_store import CheckpointStore
from storage.entity_store import EntityStore

logger = structlog.get_logger(__name__)


@dataclass
class IndexStatus:
    checkpoint: Checkpoint
    finalized_block: Optional[int]
    undo_blocks: List[int]
    entities: int


class Indexer:
    """Entity store, checkpoint manager and projector for one database.

    Args:
        db_path: SQLite database file.
        config: Indexer options; ``start_block`` seeds the genesis checkpoint.
        projector: Mapping dispatch; marketplace handlers by default.
    """

    def __init__(
        self,
        db_path: Path,
        config: Optional[IndexerConfig] = None,
        projector: Optional[Projector] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.config = config or IndexerConfig()
        self.store = EntityStore(self.db_path)
        self.checkpoints = CheckpointStore(self.store, start_block=self.config.start_block)
        self.projector = projector or marketplace_projector()

    def pipeline(self, chain: ChainClient, **kwargs) -> IngestionPipeline:
        return IngestionPipeline(
            chain,
            self.store,
            self.checkpoints,
            self.projector,
            config=self.config,
            **kwargs,
        )

    def status(self) -> IndexStatus:
        final = self.checkpoints.finalized()
        return IndexStatus(
            checkpoint=self.checkpoints.load(),
            finalized_block=final[0] if final else None,
            undo_blocks=self.checkpoints.undo_heights(),
            entities=self.store.count(),
        )

    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        return self.store.get(entity_type, entity_id)

    def list(self, entity_type: str, *, after_id: Optional[str] = None, limit: int = 100) -> List[Entity]:
        return self.store.list(entity_type, after_id=after_id, limit=limit)

    def rollback(self, to_block: int) -> List[int]:
        """Operator rewind to ``to_block``.

        Holds the checkpoint lease for the duration, so it cannot interleave
        with a running pipeline.

        Raises:
            LeaseHeld: A pipeline currently owns the checkpoint.
            ReorgTooDeep: ``to_block`` is below the finalized watermark.
            ValueError: ``to_block`` is not below the current checkpoint.
        """
        owner = f"rollback-{uuid.uuid4().hex[:12]}"
        self.checkpoints.acquire_lease(owner, self.config.lease_ttl_s)
        try:
            cp = self.checkpoints.load()
            if to_block >= cp.last_processed_block:
                raise ValueError(f"checkpoint is at {cp.last_processed_block}; nothing above {to_block}")
            return self.checkpoints.rollback_to(to_block)
        except ReorgTooDeep:
            logger.error("rollback_refused", to_block=to_block)
            raise
        finally:
            self.checkpoints.release_lease(owner)

    def close(self) -> None:
        self.store.close()
