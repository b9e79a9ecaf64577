"""In-memory directed link graph built from local metadata or remote links.

Edges are keyed by ``(from_id, to_id, to_type)`` and never duplicated.
Outbound edges come from a document's owned ``outbound`` bucket when it
tracks ownership, otherwise from its ``refs``. References to ids that no
local entity is bound to are dropped silently.

Location hierarchy (``parent_location_id``) is indexed into children and
ancestor chains; parent cycles are cut at the first repeated id.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..core.client import EntityKind
from .metadata import (
    BUCKETS,
    LinkRefs,
    bucket_for_type,
    parse_link_bundle,
    parse_sync_meta,
    type_for_bucket,
)
from .models import Link
from .store import LocalDocument, LocalStore

logger = logging.getLogger(__name__)


class LinkIndexer:
    """Directed link graph over local entities.

    Attributes:
        by_local_id: Owner key (remote id, else local id) per local document.
        by_remote_id: Local document id per bound remote id.
        outbound_by_from_id: Owned outbound buckets per owner key.
        children_by_location_id: Child location keys per parent key.
        associates_by_location_id: Associated location ids per location.
        ancestors_by_location_id: Root-first ancestor chain per location.
    """

    def __init__(self, store: LocalStore) -> None:
        self.store = store
        self.by_local_id: dict[str, str] = {}
        self.by_remote_id: dict[str, str] = {}
        self.outbound_by_from_id: dict[str, LinkRefs] = {}
        self.children_by_location_id: dict[str, list[str]] = {}
        self.associates_by_location_id: dict[str, list[str]] = {}
        self.ancestors_by_location_id: dict[str, list[str]] = {}
        self._parent_of: dict[str, str] = {}
        self.built = False

    def _entity_docs(self) -> list[LocalDocument]:
        docs: list[LocalDocument] = []
        for kind in EntityKind:
            docs.extend(self.store.list_entities(kind))
        return docs

    def clear(self) -> None:
        self.by_local_id.clear()
        self.by_remote_id.clear()
        self.outbound_by_from_id.clear()
        self.children_by_location_id.clear()
        self.associates_by_location_id.clear()
        self.ancestors_by_location_id.clear()
        self._parent_of.clear()
        self.built = False

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def build_from_world(self) -> None:
        """Full rebuild from the metadata of every local entity."""
        self.clear()
        docs = self._entity_docs()
        for doc in docs:
            self._index_identity(doc)
        for doc in docs:
            self._index_links(doc)
        self._compute_ancestors()
        self.built = True
        logger.debug(
            "Link index built: %d entities, %d owners",
            len(self.by_local_id),
            len(self.outbound_by_from_id),
        )

    def rebuild_incremental(self, local_id: str) -> None:
        """Recompute one entity's contribution after a local mutation.

        When the entity's key appears, disappears or changes, other
        documents' edges to it may appear or dangle, so the whole index
        is rebuilt instead.
        """
        if not self.built:
            self.build_from_world()
            return
        doc = self.store.get(local_id)
        if doc is not None and not parse_sync_meta(doc.metadata, doc.id).kind:
            doc = None
        old_key = self.by_local_id.get(local_id)
        new_key = self._key(doc) if doc is not None else None
        if old_key != new_key:
            logger.debug(
                "Key of %s changed (%s -> %s); full rebuild",
                local_id,
                old_key,
                new_key,
            )
            self.build_from_world()
            return
        if doc is None:
            return

        self.outbound_by_from_id.pop(old_key, None)
        self.associates_by_location_id.pop(old_key, None)
        parent = self._parent_of.pop(old_key, None)
        if parent is not None:
            siblings = self.children_by_location_id.get(parent, [])
            if old_key in siblings:
                siblings.remove(old_key)
            if not siblings:
                self.children_by_location_id.pop(parent, None)
        self._index_identity(doc)
        self._index_links(doc)
        self._compute_ancestors()

    def build_from_links(self, links: Iterable[Link | dict[str, Any]]) -> None:
        """Rebuild outbound edges from the remote link relation.

        Identity and location maps are kept; only outbound edges are
        replaced.
        """
        self.outbound_by_from_id.clear()
        for raw in links:
            link = _coerce_link(raw)
            if link is not None:
                self.add_edge(link.from_id, link.to_id, link.to_type)
        self.built = True

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, from_id: str, to_id: str, to_type: str) -> bool:
        """Add one outbound edge; returns False when it already existed."""
        bucket = bucket_for_type(to_type)
        if not from_id or not to_id or bucket is None:
            return False
        current = self.outbound_by_from_id.get(from_id, LinkRefs())
        updated = current.with_added(bucket, to_id)
        self.outbound_by_from_id[from_id] = updated
        return updated is not current

    def outgoing(self, from_id: str) -> list[Link]:
        refs = self.outbound_by_from_id.get(from_id)
        if refs is None:
            return []
        return [
            Link(from_id=from_id, to_id=to_id, to_type=type_for_bucket(bucket))
            for bucket in BUCKETS
            for to_id in refs.ids(bucket)
        ]

    def edges(self) -> list[Link]:
        return [
            link
            for from_id in self.outbound_by_from_id
            for link in self.outgoing(from_id)
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _key(self, doc: LocalDocument) -> str:
        return parse_sync_meta(doc.metadata, doc.id).remote_id or doc.id

    def _known(self, target_id: str) -> bool:
        return target_id in self.by_remote_id or target_id in self.by_local_id

    def _index_identity(self, doc: LocalDocument) -> None:
        meta = parse_sync_meta(doc.metadata, doc.id)
        key = meta.remote_id or doc.id
        self.by_local_id[doc.id] = key
        if meta.remote_id:
            self.by_remote_id[meta.remote_id] = doc.id
        if meta.kind is EntityKind.LOCATION and meta.parent_location_id:
            self._parent_of[key] = meta.parent_location_id
            children = self.children_by_location_id.setdefault(
                meta.parent_location_id, []
            )
            if key not in children:
                children.append(key)

    def _index_links(self, doc: LocalDocument) -> None:
        key = self._key(doc)
        bundle = parse_link_bundle(doc.metadata, doc.id)
        owned = bundle.owned
        refs = LinkRefs()
        for bucket in BUCKETS:
            for to_id in owned.ids(bucket):
                if self._known(str(to_id)):
                    refs = refs.with_added(bucket, str(to_id))
                else:
                    logger.debug("Dropping dangling link %s -> %s", key, to_id)
        self.outbound_by_from_id[key] = refs
        if parse_sync_meta(doc.metadata, doc.id).kind is EntityKind.LOCATION:
            associates = [
                i
                for i in bundle.refs.locations_associative
                if self._known(i)
            ]
            if associates:
                self.associates_by_location_id[key] = associates

    def _compute_ancestors(self) -> None:
        self.ancestors_by_location_id.clear()
        ids = set(self._parent_of) | set(self._parent_of.values())
        for location_id in ids:
            chain: list[str] = []
            seen = {location_id}
            cur = self._parent_of.get(location_id)
            while cur and cur not in seen:
                chain.insert(0, cur)
                seen.add(cur)
                cur = self._parent_of.get(cur)
            self.ancestors_by_location_id[location_id] = chain


def _coerce_link(raw: Link | dict[str, Any]) -> Link | None:
    if isinstance(raw, Link):
        return raw
    if not isinstance(raw, dict):
        return None
    from_id = raw.get("from_id") or raw.get("fromId")
    to_id = raw.get("to_id") or raw.get("toId")
    to_type = raw.get("to_type") or raw.get("toType")
    if not from_id or not to_id or not to_type:
        return None
    return Link(
        from_id=str(from_id),
        from_type=str(raw.get("from_type") or raw.get("fromType") or ""),
        to_id=str(to_id),
        to_type=str(to_type),
    )


def coerce_links(raw_links: Iterable[Any]) -> list[Link]:
    """Typed links from raw API records, skipping incomplete ones."""
    links = []
    for raw in raw_links:
        link = _coerce_link(raw)
        if link is not None:
            links.append(link)
    return links
