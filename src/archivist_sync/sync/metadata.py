"""Typed sync metadata stored on local documents.

Each document's metadata JSON holds two versioned sections:

- ``sync``: ``SyncMeta`` -- remote binding, sheet type, fingerprint.
- ``links``: ``LinkBundle`` -- reference buckets and owned outbound edges.

Both are validated on read and on write. Malformed data read from a
document degrades to the empty default with a warning, so a single bad
document never stops a pass.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..core.client import EntityKind

if TYPE_CHECKING:
    from .store import LocalDocument, LocalStore

logger = logging.getLogger(__name__)

SYNC_KEY = "sync"
LINKS_KEY = "links"
SCHEMA_VERSION = 1

BUCKETS = (
    "characters",
    "items",
    "entries",
    "factions",
    "locations_associative",
)

# sheet type -> entity kind
SHEET_KINDS: dict[str, EntityKind] = {
    "pc": EntityKind.CHARACTER,
    "npc": EntityKind.CHARACTER,
    "character": EntityKind.CHARACTER,
    "item": EntityKind.ITEM,
    "location": EntityKind.LOCATION,
    "faction": EntityKind.FACTION,
    "recap": EntityKind.SESSION,
    "session": EntityKind.SESSION,
}


def bucket_for_type(link_type: str | None) -> str | None:
    """Reference bucket for a link ``to_type`` / ``from_type``."""
    t = str(link_type or "").lower()
    if t == "character":
        return "characters"
    if t == "item":
        return "items"
    if t == "location":
        return "locations_associative"
    if t == "faction":
        return "factions"
    if t in ("entry", "journal", "journalentry"):
        return "entries"
    return None


def type_for_bucket(bucket: str) -> str:
    """Inverse of ``bucket_for_type`` using the canonical type names."""
    return {
        "characters": "Character",
        "items": "Item",
        "locations_associative": "Location",
        "factions": "Faction",
        "entries": "Entry",
    }[bucket]


class SyncMeta(BaseModel):
    """Remote binding of one local document.

    Attributes:
        remote_id: Bound remote id; set at most once.
        world_id: World the binding belongs to.
        sheet_type: Declared sheet type (``pc``, ``npc``, ``item``,
            ``location``, ``faction``, ``recap``).
        fingerprint: Fingerprint at the time of the last sync.
        core_ref: Host reference of the native object created on import.
        parent_location_id: Remote id of the parent location.
        session_date: Session date (recap pages only).
    """

    schema_version: int = SCHEMA_VERSION
    remote_id: str | None = None
    world_id: str | None = None
    sheet_type: str | None = None
    fingerprint: str | None = None
    core_ref: str | None = None
    parent_location_id: str | None = None
    session_date: str | None = None

    model_config = {"frozen": True}

    @property
    def kind(self) -> EntityKind | None:
        return SHEET_KINDS.get(str(self.sheet_type or "").lower())

    def bind(self, remote_id: str, world_id: str | None = None) -> SyncMeta:
        """Return a copy bound to *remote_id*.

        Binding the id already bound is a no-op.

        Raises:
            ValueError: If a different remote id is already bound.
        """
        if self.remote_id == remote_id:
            return self
        if self.remote_id:
            raise ValueError(
                f"Already bound to {self.remote_id}, cannot rebind to {remote_id}"
            )
        update: dict[str, Any] = {"remote_id": remote_id}
        if world_id:
            update["world_id"] = world_id
        return self.model_copy(update=update)


class LinkRefs(BaseModel):
    """Remote ids grouped by the type of the entity they point at."""

    characters: list[str] = []
    items: list[str] = []
    entries: list[str] = []
    factions: list[str] = []
    locations_associative: list[str] = []

    model_config = {"frozen": True}

    def ids(self, bucket: str) -> list[str]:
        return list(getattr(self, bucket))

    def all_ids(self) -> set[str]:
        return {i for bucket in BUCKETS for i in getattr(self, bucket)}

    def contains(self, target_id: str) -> bool:
        return target_id in self.all_ids()

    def with_added(self, bucket: str, target_id: str) -> LinkRefs:
        current = getattr(self, bucket)
        if target_id in current:
            return self
        return self.model_copy(update={bucket: [*current, target_id]})

    def without(self, bucket: str, target_id: str) -> LinkRefs:
        current = getattr(self, bucket)
        if target_id not in current:
            return self
        return self.model_copy(
            update={bucket: [i for i in current if i != target_id]}
        )


class LinkBundle(BaseModel):
    """Link metadata of one document.

    ``refs`` records every reference involving the document, inbound or
    outbound. ``outbound`` records only the edges this document asserted;
    ``None`` means ownership was never tracked.
    """

    schema_version: int = SCHEMA_VERSION
    refs: LinkRefs = LinkRefs()
    outbound: LinkRefs | None = None

    model_config = {"frozen": True}

    @property
    def owned(self) -> LinkRefs:
        """Outbound edges when tracked, otherwise every reference."""
        return self.outbound if self.outbound is not None else self.refs


def _section(data: Any, key: str) -> Any:
    if isinstance(data, dict):
        return data.get(key)
    return None


def parse_sync_meta(data: Any, doc_id: str = "?") -> SyncMeta:
    """Validate the ``sync`` section of a metadata blob."""
    raw = _section(data, SYNC_KEY)
    if raw is None:
        return SyncMeta()
    try:
        return SyncMeta.model_validate(raw)
    except PydanticValidationError as e:
        logger.warning("Ignoring malformed sync metadata on %s: %s", doc_id, e)
        return SyncMeta()


def parse_link_bundle(data: Any, doc_id: str = "?") -> LinkBundle:
    """Validate the ``links`` section of a metadata blob."""
    raw = _section(data, LINKS_KEY)
    if raw is None:
        return LinkBundle()
    try:
        return LinkBundle.model_validate(raw)
    except PydanticValidationError as e:
        logger.warning("Ignoring malformed link metadata on %s: %s", doc_id, e)
        return LinkBundle()


def read_sync_meta(store: LocalStore, doc: LocalDocument) -> SyncMeta:
    return parse_sync_meta(store.get_metadata(doc), doc.id)


def read_link_bundle(store: LocalStore, doc: LocalDocument) -> LinkBundle:
    return parse_link_bundle(store.get_metadata(doc), doc.id)


def write_sync_meta(
    store: LocalStore,
    doc: LocalDocument,
    meta: SyncMeta,
    options: dict[str, Any] | None = None,
) -> None:
    """Replace the ``sync`` section, keeping the other sections intact."""
    data = dict(store.get_metadata(doc) or {})
    data[SYNC_KEY] = SyncMeta.model_validate(meta).model_dump(mode="json")
    store.set_metadata(doc, data, options=options)


def write_link_bundle(
    store: LocalStore,
    doc: LocalDocument,
    bundle: LinkBundle,
    options: dict[str, Any] | None = None,
) -> None:
    """Replace the ``links`` section, keeping the other sections intact."""
    data = dict(store.get_metadata(doc) or {})
    data[LINKS_KEY] = LinkBundle.model_validate(bundle).model_dump(
        mode="json"
    )
    store.set_metadata(doc, data, options=options)
