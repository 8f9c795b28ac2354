"""Marketplace contract mappings."""

from __future__ import annotations

from projections.base import EntityWriter, Projector
from schemas.events import Event

MARKET_ITEM = "MarketItemEntity"
MARKET_ITEM_FIELDS = ("itemId", "nftContract", "tokenId", "seller", "owner", "price", "sold")


def handle_market_item_created(event: Event, tx: EntityWriter) -> None:
    """Upsert the market item keyed by ``str(itemId)``.

    Every listed argument present on the event is copied verbatim; arguments
    the event omits leave the stored value untouched.
    """
    entity_id = str(event.params["itemId"])
    fields = {k: event.params[k] for k in MARKET_ITEM_FIELDS if k in event.params}
    tx.upsert(MARKET_ITEM, entity_id, fields, block=event.block_number)


HANDLERS = {
    "MarketItemCreated": handle_market_item_created,
}


def marketplace_projector() -> Projector:
    return Projector(HANDLERS)
