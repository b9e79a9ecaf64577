"""Publish/subscribe channel for local document mutations.

The local store publishes one ``LocalEvent`` per create, update or delete.
Consumers such as ``RealtimeSyncListener`` subscribe explicitly and receive
events synchronously, in subscription order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .store import LocalDocument

logger = logging.getLogger(__name__)

# Options keys marking bulk operations that must not be mirrored
BULK_MARKERS = ("import", "restore")

# Key written into update fields by the reconcile pass itself
OP_MARKER_KEY = "archivist_sync_op"


class EventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class LocalEvent:
    """One mutation of the local store.

    Attributes:
        type: Kind of mutation.
        doc: The document after the mutation (before it, for deletes).
        user_id: User that caused the mutation, if known.
        changes: Field values written by an update.
        options: Free-form options passed by the caller (bulk markers).
    """

    type: EventType
    doc: LocalDocument
    user_id: str | None = None
    changes: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def is_bulk(self) -> bool:
        return any(self.options.get(marker) for marker in BULK_MARKERS)

    @property
    def has_op_marker(self) -> bool:
        return bool(
            self.changes.get(OP_MARKER_KEY) or self.options.get(OP_MARKER_KEY)
        )


Handler = Callable[[LocalEvent], None]


class EventBus:
    """Synchronous in-process event bus."""

    def __init__(self) -> None:
        self._handlers: list[Handler] = []

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register *handler* and return a function that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: LocalEvent) -> None:
        logger.debug(
            "Event %s on %s (user=%s)", event.type.value, event.doc.id, event.user_id
        )
        for handler in list(self._handlers):
            handler(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)
