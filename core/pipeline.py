"""Async ingestion pipeline.

Pulls ordered log batches from a chain client, applies them block by block
through a projector, and keeps the checkpoint, undo log and entity store in a
single SQLite transaction per block. Detects reorgs by comparing the chain's
hash at the checkpoint height with the stored one and rolls back through the
undo log.

States::

    SYNCING --caught up for one poll interval--> LIVE
    LIVE --lag beyond tolerance--> SYNCING
    SYNCING/LIVE --checkpoint hash mismatch--> REORG_RECOVERY --> SYNCING
    any --fatal error--> HALTED
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from core.chain import ChainClient
from core.decoder import DecodedLogDecoder, EventDecoder
from core.errors import (
    ChainClientError,
    CheckpointMoved,
    DecodeError,
    IndexerError,
    LeaseLost,
    ReorgTooDeep,
    SchemaMismatch,
    TransientStorageError,
    UnrecoverableStorageError,
)
from projections.base import Projector
from schemas.checkpoint import Checkpoint, UndoRecord
from schemas.config import IndexerConfig
from schemas.events import BlockRef, Event
from storage.checkpoint_store import CheckpointStore, UndoCapture
from storage.entity_store import EntityStore

logger = structlog.get_logger(__name__)

_FATAL = (SchemaMismatch, UnrecoverableStorageError, ReorgTooDeep, ChainClientError)
_CHAIN_RETRYABLE = (asyncio.TimeoutError, ChainClientError, ConnectionError, OSError, LookupError)


class PipelineState(str, enum.Enum):
    SYNCING = "SYNCING"
    LIVE = "LIVE"
    REORG_RECOVERY = "REORG_RECOVERY"
    HALTED = "HALTED"


@dataclass
class PipelineStats:
    """Counters exposed for operators and tests."""

    blocks_committed: int = 0
    events_applied: int = 0
    events_unmapped: int = 0
    events_undecodable: int = 0
    commit_retries: int = 0
    chain_retries: int = 0
    storage_retries: int = 0
    reorgs: int = 0
    blocks_rolled_back: int = 0


@dataclass
class PipelineStatus:
    state: PipelineState
    checkpoint: Checkpoint
    head: Optional[BlockRef]
    finalized_block: Optional[int]
    undo_depth: int
    halt_reason: Optional[str]
    stats: PipelineStats = field(default_factory=PipelineStats)


class IngestionPipeline:
    """Single-writer ingestion state machine.

    Args:
        chain: Source of heads, hashes and logs.
        store: Entity store the projector writes into.
        checkpoints: Checkpoint/undo manager sharing ``store``'s database.
        projector: Event-name dispatch of mapping handlers.
        decoder: Raw log decoder; defaults to ``DecodedLogDecoder``.
        config: Indexer options.
        owner: Lease owner id; random if omitted.
        clock: Monotonic clock used for the LIVE transition.
        sleep: Awaitable sleep used for backoff.
    """

    def __init__(
        self,
        chain: ChainClient,
        store: EntityStore,
        checkpoints: CheckpointStore,
        projector: Projector,
        *,
        decoder: Optional[EventDecoder] = None,
        config: Optional[IndexerConfig] = None,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.store = store
        self.checkpoints = checkpoints
        self.projector = projector
        self.decoder = decoder or DecodedLogDecoder()
        self.config = config or IndexerConfig()
        self.owner = owner or f"pipeline-{uuid.uuid4().hex[:12]}"
        self._clock = clock
        self._sleep = sleep
        self._state = PipelineState.SYNCING
        self._halt_reason: Optional[str] = None
        self._head: Optional[BlockRef] = None
        self._stop = asyncio.Event()
        self._caught_up_since: Optional[float] = None
        self._lease_expires: Optional[float] = None
        self._storage_failures = 0
        # Hashes reported by the chain during the current detect/recover cycle.
        self._observed: Dict[int, Optional[str]] = {}
        self.stats = PipelineStats()

    # -----------------------------
    # Public surface
    # -----------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    def status(self) -> PipelineStatus:
        final = self.checkpoints.finalized()
        return PipelineStatus(
            state=self._state,
            checkpoint=self.checkpoints.load(),
            head=self._head,
            finalized_block=final[0] if final else None,
            undo_depth=len(self.checkpoints.undo_heights()),
            halt_reason=self._halt_reason,
            stats=self.stats,
        )

    def stop(self) -> None:
        """Request shutdown; the block being committed finishes first."""
        self._stop.set()

    async def run_once(self) -> PipelineState:
        """Run one poll: detect reorgs, recover, or apply the next batch.

        Fatal errors move the pipeline to HALTED; committed state and the last
        good checkpoint stay intact. Busy storage is retried on later polls
        with backoff, up to ``max_retries`` polls in a row. ``LeaseHeld``
        propagates to the caller.
        """
        if self._state is PipelineState.HALTED:
            return self._state
        try:
            await self._poll()
        except TransientStorageError as exc:
            await self._storage_busy(exc)
        except (CheckpointMoved, LeaseLost) as exc:
            # The batch was aborted before commit; the next poll starts from
            # whatever checkpoint is stored now.
            if isinstance(exc, LeaseLost):
                self._lease_expires = None
            self._caught_up_since = None
            logger.warning("batch_aborted", state=self._state.value, error=str(exc))
        except _FATAL as exc:
            self._halt(exc)
        else:
            self._storage_failures = 0
        return self._state

    async def _poll(self) -> None:
        self._ensure_lease()
        if self._state is PipelineState.REORG_RECOVERY:
            await self._recover()
            return
        self._observed.clear()
        head = await self._call(self.chain.get_head_block)
        self._head = head
        cp = self.checkpoints.load()
        if cp.has_hash and await self._diverged(cp):
            logger.warning(
                "reorg_detected",
                block=cp.last_processed_block,
                stored_hash=cp.block_hash,
                chain_hash=self._observed.get(cp.last_processed_block),
            )
            self._state = PipelineState.REORG_RECOVERY
            await self._recover()
            return
        if cp.last_processed_block < head.height:
            to_block = min(head.height, cp.last_processed_block + self.config.batch_size)
            await self._process_range(cp, to_block, head)
        self._update_sync_state(head)

    async def _storage_busy(self, exc: TransientStorageError) -> None:
        self._storage_failures += 1
        self.stats.storage_retries += 1
        if self._storage_failures >= self.config.max_retries:
            self._halt(
                UnrecoverableStorageError(f"storage busy for {self._storage_failures} polls in a row: {exc}")
            )
            return
        delay = self.config.backoff_s(self._storage_failures)
        logger.warning(
            "poll_storage_busy",
            state=self._state.value,
            attempt=self._storage_failures,
            delay_s=delay,
            error=str(exc),
        )
        await self._sleep(delay)

    async def run_forever(self) -> PipelineState:
        """Poll until ``stop()`` is called or the pipeline halts."""
        try:
            while not self._stop.is_set() and self._state is not PipelineState.HALTED:
                await self.run_once()
                if self._stop.is_set() or self._state is PipelineState.HALTED:
                    break
                if self._behind():
                    continue
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.poll_interval_ms / 1000.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.release()
        return self._state

    async def sync_to_head(self) -> PipelineState:
        """Run until caught up with the head observed at the last poll."""
        while not self._stop.is_set():
            state = await self.run_once()
            if state is PipelineState.HALTED or not self._behind():
                break
        return self._state

    def release(self) -> None:
        """Give up the checkpoint lease if this pipeline holds it."""
        if self._lease_expires is None:
            return
        try:
            self.checkpoints.release_lease(self.owner)
        except IndexerError as exc:
            logger.warning("lease_release_failed", owner=self.owner, error=str(exc))
        self._lease_expires = None

    # -----------------------------
    # Batches and blocks
    # -----------------------------

    async def _process_range(self, cp: Checkpoint, to_block: int, head: BlockRef) -> None:
        from_block = cp.last_processed_block + 1
        raw_logs = await self._call(self.chain.get_events, from_block, to_block)
        events: List[Event] = []
        for raw in raw_logs:
            try:
                events.append(self.decoder.decode(raw))
            except DecodeError as exc:
                self.stats.events_undecodable += 1
                logger.warning("event_decode_failed", block=raw.block_number, log_index=raw.log_index, error=str(exc))
        events = self._order(events, after=cp.key, to_block=to_block)

        for number, group in itertools.groupby(events, key=lambda e: e.block_number):
            if self._stop.is_set():
                return
            block_events = list(group)
            cp = await self._commit_block(cp, number, block_events[0].block_hash, block_events, head)

        if cp.last_processed_block < to_block and not self._stop.is_set():
            end_hash = await self._call(self.chain.get_block_hash, to_block)
            if end_hash is None:
                # Chain shrank under us; the next poll sees the divergence.
                return
            await self._commit_block(cp, to_block, end_hash, [], head)

    def _order(self, events: List[Event], *, after: tuple[int, int], to_block: int) -> List[Event]:
        """Sort by ``(block, log_index)``, dropping duplicates and stale events."""
        seen: set[tuple[int, int]] = set()
        out: List[Event] = []
        for e in sorted(events, key=lambda x: x.key):
            if e.key <= after or e.block_number > to_block or e.key in seen:
                continue
            seen.add(e.key)
            out.append(e)
        return out

    async def _commit_block(
        self, prev: Checkpoint, number: int, block_hash: str, events: List[Event], head: BlockRef
    ) -> Checkpoint:
        """Apply one block atomically on top of ``prev``, retrying transient storage failures.

        Entity writes, the undo record, the checkpoint and undo pruning share
        one transaction; nothing of the block is visible until it commits. The
        transaction first checks that the stored checkpoint is still ``prev``
        and that this pipeline still holds the lease.

        Returns:
            The checkpoint that was committed.
        """
        attempt = 0
        while True:
            attempt += 1
            applied = unmapped = 0
            try:
                with self.store.begin_transaction() as tx:
                    self.checkpoints.verify_writer(tx, prev, self.owner)
                    record = UndoRecord(
                        block_number=number,
                        block_hash=block_hash,
                        last_log_index=events[-1].log_index if events else -1,
                    )
                    capture = UndoCapture(tx, record)
                    for event in events:
                        if self.projector.apply(event, capture):
                            applied += 1
                        else:
                            unmapped += 1
                    self.checkpoints.record_undo(number, record, tx=tx)
                    committed = Checkpoint(
                        last_processed_block=number,
                        last_processed_log_index=record.last_log_index,
                        block_hash=block_hash,
                    )
                    self.checkpoints.save(committed, tx=tx)
                    self.checkpoints.prune(head.height - self.config.confirmation_depth, tx=tx)
                break
            except TransientStorageError as exc:
                self.stats.commit_retries += 1
                if attempt >= self.config.max_retries:
                    raise UnrecoverableStorageError(
                        f"block {number} failed to commit after {attempt} attempts: {exc}"
                    ) from exc
                delay = self.config.backoff_s(attempt)
                logger.warning("block_commit_retry", block=number, attempt=attempt, delay_s=delay, error=str(exc))
                await self._sleep(delay)
        self.stats.blocks_committed += 1
        self.stats.events_applied += applied
        self.stats.events_unmapped += unmapped
        logger.info("block_committed", block=number, hash=block_hash, events=applied, unmapped=unmapped)
        return committed

    # -----------------------------
    # Reorg handling
    # -----------------------------

    def _observe(self, height: int, block_hash: Optional[str]) -> bool:
        """Remember a reported hash; True if it contradicts an earlier report."""
        ambiguous = height in self._observed and self._observed[height] != block_hash
        self._observed[height] = block_hash
        return ambiguous

    async def _diverged(self, cp: Checkpoint) -> bool:
        chain_hash = await self._call(self.chain.get_block_hash, cp.last_processed_block)
        self._observe(cp.last_processed_block, chain_hash)
        return chain_hash != cp.block_hash

    async def _recover(self) -> None:
        cp = self.checkpoints.load()
        max_depth = self.config.max_reorg_depth
        final = self.checkpoints.finalized()
        fork: Optional[int] = None
        ambiguous = False

        for height, stored_hash in self.checkpoints.known_hashes():
            if height > cp.last_processed_block:
                continue
            if cp.last_processed_block - height > max_depth:
                break
            chain_hash = await self._call(self.chain.get_block_hash, height)
            if self._observe(height, chain_hash):
                ambiguous = True
                break
            if chain_hash == stored_hash:
                fork = height
                break

        if ambiguous:
            target = final[0] if final else self.config.start_block - 1
            logger.warning("reorg_ambiguous", block=cp.last_processed_block, rollback_to=target)
        elif fork is not None:
            target = fork
        elif final is not None:
            chain_hash = await self._call(self.chain.get_block_hash, final[0])
            if chain_hash != final[1]:
                raise ReorgTooDeep(
                    f"chain diverged below finalized block {final[0]}",
                    checkpoint_block=cp.last_processed_block,
                )
            target = final[0]
        else:
            target = self.config.start_block - 1

        depth = cp.last_processed_block - target
        if depth > max_depth:
            raise ReorgTooDeep(
                f"reorg depth {depth} exceeds max_reorg_depth {max_depth}",
                checkpoint_block=cp.last_processed_block,
                depth=depth,
            )
        rolled = await self._rollback_with_retry(target)
        self.stats.reorgs += 1
        self.stats.blocks_rolled_back += len(rolled)
        logger.warning("reorg_recovered", fork_block=target, depth=depth, blocks=len(rolled))
        self._observed.clear()
        self._caught_up_since = None
        self._state = PipelineState.SYNCING

    async def _rollback_with_retry(self, target: int) -> List[int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.checkpoints.rollback_to(target)
            except TransientStorageError as exc:
                self.stats.commit_retries += 1
                if attempt >= self.config.max_retries:
                    raise UnrecoverableStorageError(f"rollback to {target} failed: {exc}") from exc
                await self._sleep(self.config.backoff_s(attempt))

    # -----------------------------
    # Helpers
    # -----------------------------

    async def _call(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Call the chain client with a timeout and exponential backoff."""
        last: Optional[BaseException] = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                return await asyncio.wait_for(fn(*args), timeout=self.config.fetch_timeout_s)
            except _CHAIN_RETRYABLE as exc:
                last = exc
                self.stats.chain_retries += 1
                if attempt < self.config.max_retries:
                    delay = self.config.backoff_s(attempt)
                    logger.warning(
                        "chain_call_retry",
                        call=getattr(fn, "__name__", "call"),
                        attempt=attempt,
                        delay_s=delay,
                        error=repr(exc),
                    )
                    await self._sleep(delay)
        raise ChainClientError(
            f"{getattr(fn, '__name__', 'call')} failed after {self.config.max_retries} attempts: {last!r}"
        ) from last

    def _ensure_lease(self) -> None:
        now = time.time()
        ttl = self.config.lease_ttl_s
        if self._lease_expires is None or self._lease_expires - now < ttl / 2:
            self._lease_expires = self.checkpoints.acquire_lease(self.owner, ttl, now=now)

    def _behind(self) -> bool:
        if self._head is None or self._state is PipelineState.HALTED:
            return False
        if self._state is PipelineState.REORG_RECOVERY:
            return True
        return self.checkpoints.load().last_processed_block < self._head.height

    def _update_sync_state(self, head: BlockRef) -> None:
        lag = head.height - self.checkpoints.load().last_processed_block
        now = self._clock()
        if lag <= self.config.lag_tolerance:
            if self._caught_up_since is None:
                self._caught_up_since = now
            if (
                self._state is PipelineState.SYNCING
                and (now - self._caught_up_since) * 1000.0 >= self.config.poll_interval_ms
            ):
                self._state = PipelineState.LIVE
                logger.info("pipeline_live", block=head.height)
        else:
            self._caught_up_since = None
            if self._state is PipelineState.LIVE:
                self._state = PipelineState.SYNCING
                logger.info("pipeline_syncing", lag=lag)

    def _halt(self, exc: BaseException) -> None:
        self._state = PipelineState.HALTED
        self._halt_reason = f"{exc.__class__.__name__}: {exc}"
        try:
            cp: Optional[Checkpoint] = self.checkpoints.load()
        except IndexerError:
            cp = None
        logger.error(
            "pipeline_halted",
            error=self._halt_reason,
            checkpoint_block=cp.last_processed_block if cp else None,
            checkpoint_hash=cp.block_hash if cp else None,
        )
