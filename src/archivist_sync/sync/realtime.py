"""Mirror local mutations to the remote world as they happen.

``RealtimeSyncListener`` subscribes to the store's ``EventBus``. The
``should_sync`` gate is evaluated when the event is published, so a
mutation made while the reconcile pass holds the suppression flag is
dropped even if the remote call would only run later.

Per-kind creation policy:

- Character: never auto-created remotely (local sheets are authoritative).
- Session: never created or deleted remotely.
- Item, Location, Faction: created remotely and the new id bound.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from ..core.async_utils import run_sync
from ..core.client import EntityKind
from ..errors import ArchivistSyncError
from .context import SyncContext
from .events import EventType, LocalEvent
from .fingerprint import fingerprint_document
from .links import LinkIndexer
from .metadata import read_sync_meta, write_sync_meta
from .payloads import entity_payload, to_remote_markdown
from .store import LocalDocument

logger = logging.getLogger(__name__)

AUTO_CREATE_KINDS = frozenset(
    {EntityKind.ITEM, EntityKind.LOCATION, EntityKind.FACTION}
)
NO_DELETE_KINDS = frozenset({EntityKind.SESSION})

# Fields whose change is worth a remote update
_SYNCED_FIELDS = frozenset({"name", "content", "img"})


class RealtimeSyncListener:
    """Event-driven incremental mirror of local mutations.

    Args:
        context: Shared service context; provides the client, the store,
            the current user and the suppression flag.
        indexer: Optional link index refreshed per mutation.
    """

    def __init__(
        self, context: SyncContext, indexer: LinkIndexer | None = None
    ) -> None:
        self.context = context
        self.indexer = indexer
        self.last_error: str | None = None
        self.mirrored = 0
        self._unsubscribe: Callable[[], None] | None = None
        self._pending: set[asyncio.Task] = set()

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.context.bus.subscribe(self.handle)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def should_sync(
        self,
        doc: LocalDocument,
        options: dict[str, Any] | None,
        user_id: str | None,
    ) -> bool:
        """Whether a mutation of *doc* should be mirrored remotely.

        False when another user made it, it carries a bulk marker
        (``import``/``restore``), realtime sync is disabled, or the
        reconcile pass is suppressing the listener.
        """
        opts = options or {}
        if user_id is None or user_id != self.context.user_id:
            return False
        if opts.get("import") or opts.get("restore"):
            return False
        if not self.context.sync_enabled:
            return False
        if self.context.suppression.active:
            return False
        return bool(self.context.world_id)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle(self, event: LocalEvent) -> None:
        """Bus callback: decide now, mirror now or on the running loop."""
        if self.indexer is not None and self.indexer.built:
            self.indexer.rebuild_incremental(event.doc.id)
        if not self.should_sync(event.doc, event.options, event.user_id):
            return
        if event.type is EventType.UPDATED:
            if event.has_op_marker:
                return
            if not _SYNCED_FIELDS & set(event.changes):
                return
        kind = read_sync_meta(self.context.store, event.doc).kind
        if kind is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._mirror_blocking(event, kind)
            return
        task = loop.create_task(self._mirror(event, kind))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every mirror call scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _mirror(self, event: LocalEvent, kind: EntityKind) -> None:
        try:
            remote_id = await run_sync(self._remote_call, event, kind)
        except ArchivistSyncError as e:
            self._record_failure(event, e)
            return
        if remote_id:
            self._bind(event.doc, remote_id)

    def _mirror_blocking(self, event: LocalEvent, kind: EntityKind) -> None:
        try:
            remote_id = self._remote_call(event, kind)
        except ArchivistSyncError as e:
            self._record_failure(event, e)
            return
        if remote_id:
            self._bind(event.doc, remote_id)

    def _record_failure(self, event: LocalEvent, exc: Exception) -> None:
        self.last_error = str(exc)
        logger.warning(
            "Realtime sync of %s %s failed: %s",
            event.type.value,
            event.doc.id,
            exc,
        )

    def _remote_call(self, event: LocalEvent, kind: EntityKind) -> str | None:
        """Perform the remote call; returns the new id for creations."""
        doc = event.doc
        meta = read_sync_meta(self.context.store, doc)
        client = self.context.client

        if event.type is EventType.CREATED:
            if meta.remote_id or kind not in AUTO_CREATE_KINDS:
                return None
            created = client.create(kind, self._payload(doc, kind, True))
            self.mirrored += 1
            remote_id = str(created.get("id") or "")
            logger.info("Created remote %s %s for %s", kind.value, remote_id, doc.id)
            return remote_id or None

        if not meta.remote_id:
            return None
        if event.type is EventType.UPDATED:
            client.update(kind, meta.remote_id, self._payload(doc, kind, False))
            self.mirrored += 1
            logger.debug("Updated remote %s %s", kind.value, meta.remote_id)
        elif event.type is EventType.DELETED and kind not in NO_DELETE_KINDS:
            client.delete(kind, meta.remote_id)
            self.mirrored += 1
            logger.info("Deleted remote %s %s", kind.value, meta.remote_id)
        return None

    def _payload(
        self, doc: LocalDocument, kind: EntityKind, create: bool
    ) -> dict[str, Any]:
        meta = read_sync_meta(self.context.store, doc)
        limit = self.context.import_config.ceiling_for(kind)
        return entity_payload(
            kind,
            name=doc.name.strip(),
            description=to_remote_markdown(doc.content, limit=limit),
            image=doc.img,
            world_id=self.context.world_id if create else None,
            character_type="PC" if meta.sheet_type in ("pc", "character") else "NPC",
            parent_id=meta.parent_location_id,
            session_date=meta.session_date,
        )

    def _bind(self, doc: LocalDocument, remote_id: str) -> None:
        store = self.context.store
        meta = read_sync_meta(store, doc)
        bound = meta.bind(remote_id, self.context.world_id).model_copy(
            update={
                "fingerprint": fingerprint_document(
                    doc.name, doc.content, doc.img or None
                )
            }
        )
        write_sync_meta(store, doc, bound)
