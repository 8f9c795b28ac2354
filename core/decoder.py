"""Event decoding contract.

ABI decoding itself happens outside the indexer; the decoder here accepts
logs the chain client already decoded (``event`` + ``args``) and validates the
arguments of known events against their parameter schemas.
"""

from __future__ import annotations

from typing import Mapping, Protocol

from pydantic import BaseModel, ValidationError

from core.errors import DecodeError
from schemas.events import EVENT_PARAM_SCHEMAS, Event, RawLog


class EventDecoder(Protocol):
    def decode(self, raw_log: RawLog) -> Event:  # pragma: no cover - Protocol definition only
        ...


class DecodedLogDecoder:
    """Turn pre-decoded logs into ``Event`` records.

    Args:
        schemas: Event name -> parameter model. Events without a schema pass
            their arguments through untouched.
    """

    def __init__(self, schemas: Mapping[str, type[BaseModel]] | None = None) -> None:
        self._schemas = dict(EVENT_PARAM_SCHEMAS if schemas is None else schemas)

    def decode(self, raw_log: RawLog) -> Event:
        if not raw_log.event:
            raise DecodeError(
                f"log {raw_log.block_number}:{raw_log.log_index} carries no decoded event name"
            )
        args = dict(raw_log.args or {})
        schema = self._schemas.get(raw_log.event)
        if schema is not None:
            try:
                params = schema.model_validate(args).model_dump(exclude_unset=True, exclude_none=True)
            except ValidationError as exc:
                raise DecodeError(
                    f"{raw_log.event} at {raw_log.block_number}:{raw_log.log_index}: {exc}"
                ) from exc
        else:
            params = args
        return Event(
            block_number=raw_log.block_number,
            log_index=raw_log.log_index,
            transaction_hash=raw_log.transaction_hash,
            block_hash=raw_log.block_hash,
            event_name=raw_log.event,
            address=raw_log.address,
            params=params,
        )
