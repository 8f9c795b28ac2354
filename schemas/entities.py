"""Entity schemas and field validation.

Each entity type has a fixed field schema. Writes are validated strictly
(no coercion: ``"7"`` is not a uint256, ``True`` is not an int) so mapping
bugs surface as ``SchemaMismatch`` instead of silently stored garbage.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from core.errors import SchemaMismatch
from schemas.events import Address, Uint256

T = TypeVar("T", bound="_JsonMixin")


class _JsonMixin(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls: type[T], data: str) -> T:
        return cls.model_validate_json(data)


class Entity(_JsonMixin):
    """Stored entity row as seen by readers."""

    entity_type: str
    id: str
    fields: dict[str, Any]
    updated_block: Optional[int] = None


class _EntitySchema(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


class MarketItemEntity(_EntitySchema):
    itemId: Optional[Uint256] = None
    nftContract: Optional[Address] = None
    tokenId: Optional[Uint256] = None
    seller: Optional[Address] = None
    owner: Optional[Address] = None
    price: Optional[Uint256] = None
    sold: Optional[bool] = None


ENTITY_SCHEMAS: dict[str, type[_EntitySchema]] = {
    "MarketItemEntity": MarketItemEntity,
}


def validate_fields(entity_type: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a partial field set against the entity type's schema.

    Args:
        entity_type: Registered entity type name.
        fields: Fields to write; absent fields are not touched by upserts.

    Returns:
        The normalized fields (e.g. lower-cased addresses), only those given.

    Raises:
        SchemaMismatch: Unknown entity type, unknown field, ``None`` value or
            a value of the wrong type.
    """
    schema = ENTITY_SCHEMAS.get(entity_type)
    if schema is None:
        raise SchemaMismatch(f"unknown entity type {entity_type!r}")
    nulls = sorted(k for k, v in fields.items() if v is None)
    if nulls:
        raise SchemaMismatch(f"{entity_type}: null values for {', '.join(nulls)}")
    try:
        model = schema.model_validate(dict(fields))
    except ValidationError as exc:
        raise SchemaMismatch(f"{entity_type}: {exc}") from exc
    return model.model_dump(exclude_unset=True)
