"""Projection dispatch.

A ``Projector`` maps each decoded event onto entity writes through a handler
registered for its event name. Handlers only touch the transaction they are
given, so replaying the same events always converges to the same state.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import structlog

from schemas.entities import Entity
from schemas.events import Event

logger = structlog.get_logger(__name__)


class EntityWriter(Protocol):
    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:  # pragma: no cover
        ...

    def upsert(
        self, entity_type: str, entity_id: str, fields: Mapping[str, Any], *, block: Optional[int] = None
    ) -> Entity:  # pragma: no cover
        ...

    def delete(self, entity_type: str, entity_id: str) -> None:  # pragma: no cover
        ...


Handler = Callable[[Event, EntityWriter], None]


class Projector:
    """Event-name dispatch over mapping handlers.

    Unknown event names are ignored so newer contract versions can emit
    events this indexer does not map yet.
    """

    def __init__(self, handlers: Mapping[str, Handler] | None = None) -> None:
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, event_name: str, handler: Handler) -> None:
        self._handlers[event_name] = handler

    def handles(self, event_name: str) -> bool:
        return event_name in self._handlers

    def apply(self, event: Event, tx: EntityWriter) -> bool:
        """Apply one event inside ``tx``.

        Returns:
            True if a handler ran, False for an unmapped event.
        """
        handler = self._handlers.get(event.event_name)
        if handler is None:
            logger.debug("event_unmapped", event=event.event_name, block=event.block_number)
            return False
        handler(event, tx)
        return True
