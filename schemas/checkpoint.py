"""Checkpoint and undo-log schemas and JSON helpers."""

from __future__ import annotations

from typing import Optional, TypeVar

from pydantic import BaseModel, Field

from schemas.entities import Entity

T = TypeVar("T", bound="_JsonMixin")


class _JsonMixin(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls: type[T], data: str) -> T:
        return cls.model_validate_json(data)


class Checkpoint(_JsonMixin):
    last_processed_block: int = Field(ge=-1)
    last_processed_log_index: int = Field(default=-1, ge=-1)
    block_hash: str = ""

    @classmethod
    def genesis(cls, start_block: int = 0) -> "Checkpoint":
        """Checkpoint meaning "nothing processed, resume at ``start_block``"."""
        return cls(last_processed_block=start_block - 1, last_processed_log_index=-1, block_hash="")

    @property
    def has_hash(self) -> bool:
        """False for genesis and for rewinds to a height with no known hash."""
        return self.block_hash != ""

    @property
    def key(self) -> tuple[int, int]:
        return (self.last_processed_block, self.last_processed_log_index)


class UndoEntry(_JsonMixin):
    entity_type: str
    id: str
    # None means the entity did not exist before this write.
    prior: Optional[Entity] = None


class UndoRecord(_JsonMixin):
    block_number: int = Field(ge=0)
    block_hash: str
    last_log_index: int = Field(default=-1, ge=-1)
    entries: list[UndoEntry] = Field(default_factory=list)
