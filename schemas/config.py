"""Indexer configuration model and loader."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field


class IndexerConfig(BaseModel):
    """Recognized indexer options.

    Attributes:
        confirmation_depth: Blocks below head after which undo records are
            pruned and a block is treated as final.
        poll_interval_ms: Delay between polls while following the head.
        max_reorg_depth: Deepest rollback performed automatically.
        batch_size: Maximum number of blocks fetched per batch.
        start_block: First block to index when no checkpoint exists.
        lag_tolerance: Blocks behind head still considered "caught up".
        max_retries: Attempts for a chain call or block commit before halting.
        backoff_base_ms: First retry delay; doubled per attempt.
        backoff_max_ms: Upper bound for a single retry delay.
        fetch_timeout_s: Timeout applied to each chain-client call.
        lease_ttl_s: Lifetime of the exclusive checkpoint lease.
        db_path: SQLite database holding entities, undo log and checkpoint.
    """

    model_config = ConfigDict(extra="forbid")

    confirmation_depth: int = Field(default=12, ge=0)
    poll_interval_ms: int = Field(default=2000, ge=0)
    max_reorg_depth: int = Field(default=64, ge=1)
    batch_size: int = Field(default=100, ge=1)
    start_block: int = Field(default=0, ge=0)
    lag_tolerance: int = Field(default=0, ge=0)
    max_retries: int = Field(default=5, ge=1)
    backoff_base_ms: int = Field(default=200, ge=0)
    backoff_max_ms: int = Field(default=10_000, ge=0)
    fetch_timeout_s: float = Field(default=30.0, gt=0)
    lease_ttl_s: float = Field(default=60.0, gt=0)
    db_path: Path | None = None

    def backoff_s(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), in seconds."""
        delay_ms = min(self.backoff_max_ms, self.backoff_base_ms * (2 ** max(0, attempt - 1)))
        return delay_ms / 1000.0


def load_config(path: Path, overrides: Mapping[str, Any] | None = None) -> IndexerConfig:
    """Load configuration from JSON or YAML.

    Behavior:
    - ``.json`` files (or content that looks like JSON) are parsed as JSON.
    - ``.yaml``/``.yml`` files need PyYAML; a clear error is raised without it.
    - ``overrides`` with non-``None`` values win over file values.
    """
    text = Path(path).read_text(encoding="utf-8")
    ext = Path(path).suffix.lower()
    looks_json = text.lstrip().startswith("{")

    if ext == ".json" or (ext not in {".yaml", ".yml"} and looks_json):
        data = json.loads(text)
    else:
        try:
            import yaml  # type: ignore
        except ModuleNotFoundError as exc:
            raise RuntimeError(
                "PyYAML is not installed; install 'pyyaml' or provide a JSON config instead"
            ) from exc
        data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise TypeError("Config must be a mapping at top-level")
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    return IndexerConfig.model_validate(data)
