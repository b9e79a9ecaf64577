"""Local document store boundary.

The host application owns a tree of documents: actors (with owned items),
world items, scenes, and journal containers with sub-pages. The sync core
only talks to it through the ``LocalStore`` protocol defined here.

Two implementations ship with the package:

- ``InMemoryStore``: the reference implementation, used by tests and as the
  base of the file store.
- ``JsonFileStore``: persists the tree as one JSON file, written
  atomically after every mutation.

Sync entities are journal documents (or journal pages) whose ``sync``
metadata declares a sheet type. Session recaps live as pages of a single
``Recaps`` container journal.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterator, Protocol

from ..core.client import EntityKind
from .events import OP_MARKER_KEY, EventBus, EventType, LocalEvent
from .metadata import SHEET_KINDS, SYNC_KEY, parse_sync_meta

logger = logging.getLogger(__name__)

COLLECTIONS = ("actors", "items", "journals", "scenes")
MAX_DEPTH = 3
RECAPS_CONTAINER = "Recaps"
RECAPS_SHEET = "recap_container"

_UUID_PREFIX = {
    "actors": "Actor",
    "items": "Item",
    "journals": "JournalEntry",
    "scenes": "Scene",
    "pages": "JournalEntryPage",
}
_UPDATABLE = frozenset({"name", "content", "img", "folder", "system"})

_DEFAULT_SHEETS = {
    EntityKind.CHARACTER: "npc",
    EntityKind.ITEM: "item",
    EntityKind.LOCATION: "location",
    EntityKind.FACTION: "faction",
    EntityKind.SESSION: "recap",
}


def new_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class LocalDocument:
    """One node of the local document tree.

    Attributes:
        id: Unique document id.
        collection: ``actors``, ``items``, ``journals``, ``scenes`` or
            ``pages``.
        name: Display name.
        doc_type: Host type (``character``, ``npc``, ``weapon``, ``text``).
        folder: Containing folder name; empty at the root.
        img: Image path or URL.
        content: HTML body (journals, pages, scene notes).
        system: Game-system data of actors and items.
        pages: Sub-pages of a journal.
        items: Items owned by an actor.
        owners: Users with owner-level access.
        placed: True when the actor has a token on a scene.
        metadata: Sync metadata blob, see ``sync.metadata``.
        parent: Id of the containing journal or owning actor.
    """

    id: str
    collection: str
    name: str = ""
    doc_type: str = ""
    folder: str = ""
    img: str = ""
    content: str = ""
    system: dict[str, Any] = field(default_factory=dict)
    pages: list[LocalDocument] = field(default_factory=list)
    items: list[LocalDocument] = field(default_factory=list)
    owners: list[str] = field(default_factory=list)
    placed: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    parent: str | None = None

    @property
    def uuid(self) -> str:
        """Host reference used by ``@UUID[...]`` links."""
        prefix = _UUID_PREFIX.get(self.collection, self.collection)
        if self.parent and self.collection == "pages":
            return f"JournalEntry.{self.parent}.{prefix}.{self.id}"
        if self.parent and self.collection == "items":
            return f"Actor.{self.parent}.{prefix}.{self.id}"
        return f"{prefix}.{self.id}"

    @property
    def sheet_type(self) -> str | None:
        return parse_sync_meta(self.metadata, self.id).sheet_type

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], collection: str) -> LocalDocument:
        """Build a document (and its children) from plain JSON data."""
        doc_id = str(data.get("id") or new_id())
        return cls(
            id=doc_id,
            collection=str(data.get("collection") or collection),
            name=str(data.get("name") or ""),
            doc_type=str(data.get("doc_type") or data.get("type") or ""),
            folder=str(data.get("folder") or ""),
            img=str(data.get("img") or ""),
            content=str(data.get("content") or ""),
            system=dict(data.get("system") or {}),
            pages=[
                cls.from_dict({**p, "parent": doc_id}, "pages")
                for p in data.get("pages") or []
                if isinstance(p, dict)
            ],
            items=[
                cls.from_dict({**i, "parent": doc_id}, "items")
                for i in data.get("items") or []
                if isinstance(i, dict)
            ],
            owners=[str(o) for o in data.get("owners") or []],
            placed=bool(data.get("placed", False)),
            metadata=dict(data.get("metadata") or {}),
            parent=data.get("parent"),
        )


def walk(
    docs: list[LocalDocument], max_depth: int = MAX_DEPTH, depth: int = 0
) -> Iterator[LocalDocument]:
    """Yield *docs* and their sub-pages, depth first, up to *max_depth*."""
    if depth >= max_depth:
        return
    for doc in docs:
        yield doc
        yield from walk(doc.pages, max_depth, depth + 1)


class LocalStore(Protocol):
    """What the sync core needs from the host document store."""

    bus: EventBus
    current_user: str | None

    def list_documents(self, collection: str) -> list[LocalDocument]: ...

    def list_entities(self, kind: EntityKind) -> list[LocalDocument]: ...

    def get(self, doc_id: str) -> LocalDocument | None: ...

    def create_document(
        self,
        collection: str,
        fields: dict[str, Any],
        parent: LocalDocument | None = None,
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> LocalDocument: ...

    def create_entity(
        self,
        kind: EntityKind,
        fields: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> LocalDocument: ...

    def update_entity(
        self,
        doc: LocalDocument,
        fields: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None: ...

    def delete_entity(
        self,
        doc: LocalDocument,
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None: ...

    def get_metadata(self, doc: LocalDocument) -> dict[str, Any]: ...

    def set_metadata(
        self,
        doc: LocalDocument,
        data: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None: ...


class InMemoryStore:
    """Reference ``LocalStore`` keeping the whole tree in memory.

    Args:
        bus: Event bus mutations are published on; a new one by default.
        current_user: User attributed to mutations that name no user.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        current_user: str | None = None,
    ) -> None:
        self.bus = bus or EventBus()
        self.current_user = current_user
        self._collections: dict[str, list[LocalDocument]] = {
            name: [] for name in COLLECTIONS
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_documents(self, collection: str) -> list[LocalDocument]:
        if collection == "pages":
            return [
                d for d in walk(self._collections["journals"])
                if d.collection == "pages"
            ]
        if collection not in self._collections:
            raise ValueError(f"Unknown collection: {collection}")
        return list(self._collections[collection])

    def list_entities(self, kind: EntityKind) -> list[LocalDocument]:
        """Journals and pages whose declared sheet type maps to *kind*."""
        return [
            doc
            for doc in walk(self._collections["journals"])
            if SHEET_KINDS.get(str(doc.sheet_type or "").lower()) == kind
        ]

    def get(self, doc_id: str) -> LocalDocument | None:
        for doc in self._iter_all():
            if doc.id == doc_id:
                return doc
        return None

    def find_by_uuid(self, ref: str) -> LocalDocument | None:
        """Resolve a host reference such as ``Actor.abc``."""
        for doc in self._iter_all():
            if doc.uuid == ref:
                return doc
        return None

    def _iter_all(self) -> Iterator[LocalDocument]:
        for name in COLLECTIONS:
            for doc in walk(self._collections[name]):
                yield doc
                yield from doc.items

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def load(self, data: dict[str, Any]) -> None:
        """Replace the tree with *data* (``{collection: [doc, ...]}``).

        Publishes no events.
        """
        for name in COLLECTIONS:
            self._collections[name] = [
                LocalDocument.from_dict(d, name)
                for d in data.get(name) or []
                if isinstance(d, dict)
            ]

    def dump(self) -> dict[str, Any]:
        return {
            name: [d.to_dict() for d in docs]
            for name, docs in self._collections.items()
        }

    def create_document(
        self,
        collection: str,
        fields: dict[str, Any],
        parent: LocalDocument | None = None,
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> LocalDocument:
        """Create any document; pages and owned items need a *parent*."""
        if collection in ("pages", "items") and parent is not None:
            doc = LocalDocument.from_dict(
                {**fields, "parent": parent.id}, collection
            )
            if collection == "pages":
                parent.pages.append(doc)
            else:
                parent.items.append(doc)
        elif collection in self._collections:
            doc = LocalDocument.from_dict(fields, collection)
            self._collections[collection].append(doc)
        else:
            raise ValueError(f"Cannot create a document in {collection}")
        self._publish(EventType.CREATED, doc, user_id, {}, options)
        return doc

    def create_entity(
        self,
        kind: EntityKind,
        fields: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> LocalDocument:
        """Create a sheet journal for *kind* (a recap page for sessions)."""
        metadata = dict(fields.get("metadata") or {})
        sync = dict(metadata.get(SYNC_KEY) or {})
        sync.setdefault("sheet_type", fields.get("sheet_type") or _DEFAULT_SHEETS[kind])
        metadata[SYNC_KEY] = sync
        data = {
            k: v
            for k, v in fields.items()
            if k in _UPDATABLE or k == "doc_type"
        }
        data["metadata"] = metadata
        if kind is EntityKind.SESSION:
            data.setdefault("doc_type", "text")
            return self.create_document(
                "pages",
                data,
                parent=self._recaps_container(),
                user_id=user_id,
                options=options,
            )
        return self.create_document(
            "journals", data, user_id=user_id, options=options
        )

    def _recaps_container(self) -> LocalDocument:
        for doc in self._collections["journals"]:
            if doc.name == RECAPS_CONTAINER and not doc.folder:
                return doc
        doc = LocalDocument(
            id=new_id(),
            collection="journals",
            name=RECAPS_CONTAINER,
            metadata={SYNC_KEY: {"sheet_type": RECAPS_SHEET}},
        )
        self._collections["journals"].append(doc)
        return doc

    def update_entity(
        self,
        doc: LocalDocument,
        fields: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        """Write *fields* onto *doc* and publish an update event.

        Raises:
            ValueError: For a field that cannot be written.
        """
        unknown = set(fields) - _UPDATABLE - {OP_MARKER_KEY}
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        for key, value in fields.items():
            if key in _UPDATABLE:
                setattr(doc, key, value)
        self._publish(EventType.UPDATED, doc, user_id, dict(fields), options)

    def delete_entity(
        self,
        doc: LocalDocument,
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        if doc.parent:
            owner = self.get(doc.parent)
            if owner is not None:
                if doc in owner.pages:
                    owner.pages.remove(doc)
                if doc in owner.items:
                    owner.items.remove(doc)
        else:
            docs = self._collections.get(doc.collection, [])
            if doc in docs:
                docs.remove(doc)
        self._publish(EventType.DELETED, doc, user_id, {}, options)

    def get_metadata(self, doc: LocalDocument) -> dict[str, Any]:
        return doc.metadata

    def set_metadata(
        self,
        doc: LocalDocument,
        data: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> None:
        doc.metadata = dict(data)
        self._publish(
            EventType.UPDATED, doc, user_id, {"metadata": doc.metadata}, options
        )

    def _publish(
        self,
        event_type: EventType,
        doc: LocalDocument,
        user_id: str | None,
        changes: dict[str, Any],
        options: dict[str, Any] | None,
    ) -> None:
        self._after_mutation()
        self.bus.publish(
            LocalEvent(
                type=event_type,
                doc=doc,
                user_id=user_id if user_id is not None else self.current_user,
                changes=changes,
                options=dict(options or {}),
            )
        )

    def _after_mutation(self) -> None:
        """Hook for persistent subclasses."""


class JsonFileStore(InMemoryStore):
    """``InMemoryStore`` persisted to a JSON file after every mutation.

    Args:
        path: JSON file holding ``{collection: [doc, ...]}``. A missing file
            starts an empty tree.
        bus: Event bus mutations are published on.
        current_user: User attributed to mutations that name no user.
    """

    def __init__(
        self,
        path: Path | str,
        bus: EventBus | None = None,
        current_user: str | None = None,
    ) -> None:
        super().__init__(bus=bus, current_user=current_user)
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, encoding="utf-8") as fh:
                self.load(json.load(fh))
            logger.info("Loaded local store from %s", self.path)

    def _after_mutation(self) -> None:
        self.save()

    def save(self) -> None:
        """Write the tree atomically (temp file then ``os.replace``)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self.dump(), fh, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
