"""Pydantic chain event models and JSON helpers.

Defines the raw log shape delivered by chain clients, the typed ``Event``
consumed by projections, and per-event parameter schemas used by the decoder.
"""

from __future__ import annotations

from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

UINT256_MAX = 2**256 - 1


def _check_uint256(value: int) -> int:
    if value < 0 or value > UINT256_MAX:
        raise ValueError("value out of uint256 range")
    return value


Uint256 = Annotated[int, AfterValidator(_check_uint256)]
Address = Annotated[str, StringConstraints(pattern=r"^0x[0-9a-fA-F]{1,40}$", to_lower=True)]
Bytes32 = Annotated[str, StringConstraints(pattern=r"^0x[0-9a-fA-F]{1,64}$", to_lower=True)]


class _JsonMixin(BaseModel):
    """Common JSON helpers for schemas.

    Uses Pydantic v2 ``model_dump_json`` / ``model_validate_json``.
    """

    def to_json(self) -> str:
        """Serialize the model to a JSON string."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str):  # type: ignore[override]
        """Deserialize a JSON string into the model type."""
        return cls.model_validate_json(data)


class BlockRef(_JsonMixin):
    height: int = Field(ge=0)
    hash: Bytes32


class RawLog(_JsonMixin):
    """Log as delivered by a chain client.

    Field names accept the camelCase keys used by JSON-RPC and web3-style
    processors. ``event``/``args`` are present when the client already ran
    ABI decoding; ``topics``/``data`` carry the undecoded payload.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    block_number: int = Field(ge=0)
    log_index: int = Field(ge=0)
    transaction_hash: Bytes32
    block_hash: Bytes32
    address: Optional[Address] = None
    event: Optional[str] = None
    args: Optional[dict[str, Any]] = None
    topics: list[str] = Field(default_factory=list)
    data: Optional[str] = None


class Event(_JsonMixin):
    """Decoded event, totally ordered by ``(block_number, log_index)``."""

    model_config = ConfigDict(frozen=True)

    block_number: int = Field(ge=0)
    log_index: int = Field(ge=0)
    transaction_hash: Bytes32
    block_hash: Bytes32
    event_name: str
    address: Optional[Address] = None
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


class MarketItemCreatedParams(BaseModel):
    """Arguments of ``MarketItemCreated``.

    Only ``itemId`` is mandatory; any other argument may be omitted by a
    partial update and is then left untouched on the stored entity.
    """

    itemId: Uint256
    nftContract: Optional[Address] = None
    tokenId: Optional[Uint256] = None
    seller: Optional[Address] = None
    owner: Optional[Address] = None
    price: Optional[Uint256] = None
    sold: Optional[bool] = None


# Event name -> parameter schema used by the decoder.
EVENT_PARAM_SCHEMAS: dict[str, type[BaseModel]] = {
    "MarketItemCreated": MarketItemCreatedParams,
}
