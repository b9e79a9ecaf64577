"""Reconciliation pass between the local store and the remote world.

The ``ReconcileService`` runs one pass as:

1. Check configuration (``ConfigError`` before any network call).
2. Fetch all five kinds plus links concurrently.
3. Index local bindings and the remote link relation.
4. Diff every bound local entity against its remote record.
5. Collect remote records no local document knows as import candidates.
6. Apply the selected plan items sequentially under the suppression flag.

A fetch failure aborts the pass. A failure applying one item is recorded
as a failed ``ApplyResult`` and the pass moves on to the next item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..converters import canonical_text, markdown_to_html
from ..core.async_utils import gather_limited
from ..core.client import EntityKind
from ..errors import ArchivistSyncError, ReconcileApplyError
from .context import SyncContext
from .events import OP_MARKER_KEY
from .fingerprint import fingerprint_document
from .links import LinkIndexer, coerce_links
from .metadata import (
    BUCKETS,
    LinkBundle,
    LinkRefs,
    SyncMeta,
    bucket_for_type,
    read_link_bundle,
    read_sync_meta,
    type_for_bucket,
    write_link_bundle,
    write_sync_meta,
)
from .models import (
    ApplyAction,
    ApplyResult,
    DiffItem,
    FieldChange,
    ImportItem,
    Link,
    LinkChanges,
    LinkTarget,
    ReconcilePlan,
    ReconcileReport,
)
from .payloads import is_secure_url, remote_description, remote_name
from .store import COLLECTIONS, LocalDocument, walk

logger = logging.getLogger(__name__)

# Native host object created alongside an imported sheet
CORE_TYPES = {
    EntityKind.CHARACTER: "actor",
    EntityKind.ITEM: "item",
    EntityKind.LOCATION: "scene",
}
_CORE_COLLECTIONS = {"actor": "actors", "item": "items", "scene": "scenes"}

_OP = {OP_MARKER_KEY: True}
_IMPORT = {"import": True}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RemoteSnapshot:
    """Everything fetched from the remote world in one pass."""

    records: dict[EntityKind, list[dict[str, Any]]]
    links: list[Link] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.by_id: dict[str, tuple[EntityKind, dict[str, Any]]] = {}
        for kind, records in self.records.items():
            for record in records:
                rid = record.get("id")
                if rid:
                    self.by_id.setdefault(str(rid), (kind, record))
        self.outgoing: dict[str, list[LinkTarget]] = {}
        seen: set[tuple[str, str, str]] = set()
        for link in self.links:
            if link.key in seen:
                continue
            seen.add(link.key)
            self.outgoing.setdefault(link.from_id, []).append(
                LinkTarget(id=link.to_id, type=link.to_type)
            )


class ReconcileService:
    """Two-directional diff and apply between local and remote state.

    Args:
        context: Shared service context (client, store, suppression flag).
        indexer: Link index refreshed after each apply; one is created
            when omitted.
    """

    def __init__(
        self, context: SyncContext, indexer: LinkIndexer | None = None
    ) -> None:
        self.context = context
        self.indexer = indexer or LinkIndexer(context.store)

    @property
    def store(self):
        return self.context.store

    @property
    def client(self):
        return self.context.client

    # ------------------------------------------------------------------
    # Main entry points
    # ------------------------------------------------------------------

    async def run_full(
        self,
        apply: bool = True,
        diff_ids: set[str] | None = None,
        import_ids: set[str] | None = None,
        create_core_ids: set[str] | None = None,
    ) -> ReconcileReport:
        """Plan and (optionally) apply one reconciliation pass.

        Args:
            apply: If ``False``, only compute the plan.
            diff_ids: Diffs to apply; ``None`` keeps the defaults (all).
            import_ids: Imports to apply; ``None`` keeps the defaults (none).
            create_core_ids: Imports that also get a native host object.

        Raises:
            ConfigError: API key or world missing.
            TransportError: A fetch failed; nothing was applied.
        """
        started_at = _now()
        world_id = self.context.require_configured()
        plan = await self.plan()
        if diff_ids is not None or import_ids is not None or create_core_ids is not None:
            plan = plan.select(diff_ids, import_ids, create_core_ids)

        results: list[ApplyResult] = []
        if apply:
            results = await self.apply(plan)

        report = ReconcileReport(
            world_id=world_id,
            plan=plan,
            applied=apply,
            results=results,
            started_at=started_at,
            completed_at=_now(),
        )
        logger.info(
            "Reconcile %s: %d diffs, %d imports, %d applied, %d errors",
            world_id,
            len(plan.diffs),
            len(plan.imports),
            len(results) - len(report.errors),
            len(report.errors),
        )
        return report

    async def plan(self) -> ReconcilePlan:
        """Fetch remote state and compute diffs and import candidates."""
        world_id = self.context.require_configured()
        snapshot = await self.fetch(world_id)
        return self.diff(snapshot, world_id)

    async def fetch(self, world_id: str) -> RemoteSnapshot:
        """List every kind and the link relation concurrently."""
        limiter = self.context.limiter
        kinds = list(EntityKind)
        coros = [limiter.run(self.client.list, kind, world_id) for kind in kinds]
        coros.append(limiter.run(self.client.list_links, world_id))
        results = await gather_limited(coros)
        records = dict(zip(kinds, results[:-1]))
        links = coerce_links(results[-1])
        logger.debug(
            "Fetched %d records and %d links for %s",
            sum(len(r) for r in records.values()),
            len(links),
            world_id,
        )
        return RemoteSnapshot(records=records, links=links)

    # ------------------------------------------------------------------
    # Diff and import phases
    # ------------------------------------------------------------------

    def bound_entities(self) -> dict[str, tuple[EntityKind, LocalDocument]]:
        """Bound local entities (journals and pages) by remote id."""
        bound: dict[str, tuple[EntityKind, LocalDocument]] = {}
        for kind in EntityKind:
            for doc in self.store.list_entities(kind):
                meta = read_sync_meta(self.store, doc)
                if meta.remote_id and meta.remote_id not in bound:
                    bound[meta.remote_id] = (kind, doc)
        return bound

    def known_remote_ids(self) -> set[str]:
        """Remote ids bound anywhere locally, at any nesting level."""
        known: set[str] = set()
        for collection in COLLECTIONS:
            for doc in walk(self.store.list_documents(collection)):
                for node in (doc, *doc.items):
                    meta = read_sync_meta(self.store, node)
                    if meta.remote_id:
                        known.add(meta.remote_id)
        return known

    def diff(self, snapshot: RemoteSnapshot, world_id: str) -> ReconcilePlan:
        diffs: list[DiffItem] = []
        for remote_id, (kind, doc) in self.bound_entities().items():
            item = self._diff_one(remote_id, kind, doc, snapshot)
            if item is not None:
                diffs.append(item)

        known = self.known_remote_ids()
        imports: list[ImportItem] = []
        for kind in EntityKind:
            for record in snapshot.records.get(kind, []):
                rid = str(record.get("id") or "")
                if not rid or rid in known:
                    continue
                known.add(rid)
                imports.append(self._import_item(kind, rid, record))

        return ReconcilePlan(
            world_id=world_id,
            diffs=diffs,
            imports=imports,
            created_at=_now(),
        )

    def _diff_one(
        self,
        remote_id: str,
        kind: EntityKind,
        doc: LocalDocument,
        snapshot: RemoteSnapshot,
    ) -> DiffItem | None:
        found = snapshot.by_id.get(remote_id)
        if found is None:
            return DiffItem(
                id=remote_id,
                kind=kind,
                local_id=doc.id,
                name=doc.name,
                deleted=True,
            )
        _, record = found
        changes: dict[str, FieldChange] = {}

        local_name = doc.name.strip()
        name = remote_name(kind, record)
        if name and name != local_name:
            changes["name"] = FieldChange(from_=local_name, to=name)

        description = remote_description(kind, record)
        if description.strip() and canonical_text(doc.content) != canonical_text(
            description
        ):
            changes["description"] = FieldChange(from_=doc.content, to=description)

        image = record.get("image")
        if is_secure_url(image) and str(image).strip() != doc.img.strip():
            changes["image"] = FieldChange(from_=doc.img, to=str(image).strip())

        meta = read_sync_meta(self.store, doc)
        if kind is EntityKind.LOCATION:
            parent = record.get("parent_id") or None
            if parent != meta.parent_location_id:
                changes["parent_id"] = FieldChange(
                    from_=meta.parent_location_id, to=parent
                )

        links = self._link_changes(
            read_link_bundle(self.store, doc),
            snapshot.outgoing.get(remote_id, []),
        )
        if not changes and links.empty:
            return None
        return DiffItem(
            id=remote_id,
            kind=kind,
            local_id=doc.id,
            name=local_name,
            changes=changes,
            links=links,
        )

    @staticmethod
    def _link_changes(
        bundle: LinkBundle, desired: list[LinkTarget]
    ) -> LinkChanges:
        local_ids = bundle.refs.all_ids()
        if bundle.outbound is not None:
            local_ids |= bundle.outbound.all_ids()
        add = [
            t
            for t in desired
            if bucket_for_type(t.type) is not None and t.id not in local_ids
        ]
        remove: list[LinkTarget] = []
        if bundle.outbound is not None:
            desired_ids = {t.id for t in desired}
            for bucket in BUCKETS:
                for to_id in bundle.outbound.ids(bucket):
                    if to_id not in desired_ids:
                        remove.append(
                            LinkTarget(id=to_id, type=type_for_bucket(bucket))
                        )
        return LinkChanges(add=add, remove=remove)

    @staticmethod
    def _import_item(
        kind: EntityKind, remote_id: str, record: dict[str, Any]
    ) -> ImportItem:
        image = record.get("image")
        character_type = None
        if kind is EntityKind.CHARACTER:
            character_type = "PC" if str(record.get("type")).upper() == "PC" else "NPC"
        return ImportItem(
            id=remote_id,
            kind=kind,
            name=remote_name(kind, record),
            description=remote_description(kind, record),
            image=str(image).strip() if is_secure_url(image) else None,
            parent_id=record.get("parent_id") or None,
            session_date=record.get("session_date") or None,
            character_type=character_type,
            core_type=CORE_TYPES.get(kind),
        )

    # ------------------------------------------------------------------
    # Apply phase
    # ------------------------------------------------------------------

    async def apply(self, plan: ReconcilePlan) -> list[ApplyResult]:
        """Apply the selected items of *plan*, one at a time.

        The suppression flag is held for the whole phase and released even
        when an item fails.
        """
        world_id = self.context.require_configured()
        results: list[ApplyResult] = []
        self.context.suppression.suppress()
        try:
            for diff in plan.selected_diffs:
                results.append(self._apply_diff_guarded(diff))
            for item in plan.selected_imports:
                results.append(await self._apply_import_guarded(item, world_id))
        finally:
            self.context.suppression.resume()
        self.indexer.build_from_world()
        return results

    def _apply_diff_guarded(self, diff: DiffItem) -> ApplyResult:
        action = (
            ApplyAction.DELETE_LOCAL if diff.deleted else ApplyAction.UPDATE_LOCAL
        )
        try:
            return self._apply_diff(diff)
        except (ArchivistSyncError, ValueError, OSError) as e:
            return self._failed(diff.id, diff.kind, action, e)

    async def _apply_import_guarded(
        self, item: ImportItem, world_id: str
    ) -> ApplyResult:
        try:
            return await self._apply_import(item, world_id)
        except (ArchivistSyncError, ValueError, OSError) as e:
            return self._failed(item.id, item.kind, ApplyAction.CREATE_LOCAL, e)

    @staticmethod
    def _failed(
        item_id: str, kind: EntityKind, action: ApplyAction, exc: Exception
    ) -> ApplyResult:
        error = (
            exc
            if isinstance(exc, ReconcileApplyError)
            else ReconcileApplyError(str(exc), item_id=item_id, action=action.value)
        )
        logger.error("Failed to apply %s (%s): %s", item_id, action.value, error)
        return ApplyResult(
            id=item_id,
            kind=kind,
            action=action,
            success=False,
            error=str(error),
        )

    def _apply_diff(self, diff: DiffItem) -> ApplyResult:
        doc = self.store.get(diff.local_id)
        if doc is None:
            raise ReconcileApplyError(
                f"Local document {diff.local_id} no longer exists",
                item_id=diff.id,
                action=ApplyAction.UPDATE_LOCAL.value,
            )

        if diff.deleted:
            self.store.delete_entity(doc, options=_OP)
            logger.info("Deleted local %s (%s removed remotely)", doc.id, diff.id)
            return ApplyResult(
                id=diff.id,
                kind=diff.kind,
                action=ApplyAction.DELETE_LOCAL,
                success=True,
                local_id=doc.id,
            )

        fields: dict[str, Any] = {}
        if "name" in diff.changes:
            fields["name"] = diff.changes["name"].to
        if "description" in diff.changes:
            fields["content"] = markdown_to_html(diff.changes["description"].to)
        if "image" in diff.changes:
            fields["img"] = diff.changes["image"].to
        if fields:
            self.store.update_entity(doc, {**fields, **_OP})

        meta = read_sync_meta(self.store, doc)
        meta_update: dict[str, Any] = {}
        if "parent_id" in diff.changes:
            meta_update["parent_location_id"] = diff.changes["parent_id"].to
        if fields:
            meta_update["fingerprint"] = fingerprint_document(
                doc.name, doc.content, doc.img or None
            )
        if meta_update:
            write_sync_meta(
                self.store, doc, meta.model_copy(update=meta_update), options=_OP
            )

        if not diff.links.empty:
            bundle = read_link_bundle(self.store, doc)
            refs = bundle.refs
            outbound = bundle.outbound or LinkRefs()
            for target in diff.links.add:
                bucket = bucket_for_type(target.type)
                if bucket is None:
                    continue
                refs = refs.with_added(bucket, target.id)
                outbound = outbound.with_added(bucket, target.id)
            for target in diff.links.remove:
                bucket = bucket_for_type(target.type)
                if bucket is None:
                    continue
                refs = refs.without(bucket, target.id)
                outbound = outbound.without(bucket, target.id)
            write_link_bundle(
                self.store,
                doc,
                bundle.model_copy(update={"refs": refs, "outbound": outbound}),
                options=_OP,
            )

        return ApplyResult(
            id=diff.id,
            kind=diff.kind,
            action=ApplyAction.UPDATE_LOCAL,
            success=True,
            local_id=doc.id,
        )

    async def _apply_import(self, item: ImportItem, world_id: str) -> ApplyResult:
        sheet_type = {
            EntityKind.CHARACTER: "pc" if item.character_type == "PC" else "npc",
            EntityKind.SESSION: "recap",
        }.get(item.kind, item.kind.value.lower())
        html = markdown_to_html(item.description)
        meta = SyncMeta(
            remote_id=item.id,
            world_id=world_id,
            sheet_type=sheet_type,
            fingerprint=fingerprint_document(item.name, html, item.image),
            parent_location_id=item.parent_id,
            session_date=item.session_date,
        )
        doc = self.store.create_entity(
            item.kind,
            {
                "name": item.name,
                "content": html,
                "img": item.image or "",
                "metadata": {"sync": meta.model_dump(mode="json")},
            },
            options=_IMPORT,
        )
        logger.info("Imported %s %s as %s", item.kind.value, item.id, doc.id)

        if item.create_core and item.core_type in _CORE_COLLECTIONS:
            core = self.store.create_document(
                _CORE_COLLECTIONS[item.core_type],
                {
                    "name": item.name,
                    "img": item.image or "",
                    "doc_type": _core_doc_type(item),
                    "metadata": {
                        "sync": SyncMeta(
                            remote_id=item.id, world_id=world_id
                        ).model_dump(mode="json")
                    },
                },
                options=_IMPORT,
            )
            write_sync_meta(
                self.store,
                doc,
                meta.model_copy(update={"core_ref": core.uuid}),
                options=_IMPORT,
            )

        result = ApplyResult(
            id=item.id,
            kind=item.kind,
            action=ApplyAction.CREATE_LOCAL,
            success=True,
            local_id=doc.id,
        )
        try:
            raw_links = await self.context.limiter.run(
                self.client.list_links, world_id, item.id
            )
        except ArchivistSyncError as e:
            logger.warning("Could not hydrate links for %s: %s", item.id, e)
            return result.model_copy(update={"error": f"links not hydrated: {e}"})

        refs = LinkRefs()
        for link in coerce_links(raw_links):
            bucket = bucket_for_type(link.to_type)
            if link.from_id == item.id and bucket is not None:
                refs = refs.with_added(bucket, link.to_id)
        if refs.all_ids():
            write_link_bundle(
                self.store,
                doc,
                LinkBundle(refs=refs, outbound=refs),
                options=_IMPORT,
            )
        return result


def _core_doc_type(item: ImportItem) -> str:
    if item.kind is EntityKind.CHARACTER:
        return "character" if item.character_type == "PC" else "npc"
    if item.kind is EntityKind.ITEM:
        return "loot"
    return ""
