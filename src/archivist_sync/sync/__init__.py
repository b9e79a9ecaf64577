"""Reconciliation core: keep a local document tree in sync with a world.

Architecture
------------
Data flows one way through the pipeline and back through the client:

    extractor -> mapper -> fingerprint -> engine (reconcile) -> client/store

The link indexer consumes the same local metadata, and the realtime
listener mirrors single local mutations, gated by the suppression flag the
engine holds while applying a plan.

Modules:

- ``models``      -- pydantic data contracts (``Entity``, ``ReconcilePlan``...).
- ``metadata``    -- typed, versioned ``SyncMeta`` / ``LinkBundle``.
- ``store``       -- ``LocalStore`` protocol, ``InMemoryStore``, ``JsonFileStore``.
- ``events``      -- ``EventBus`` and ``LocalEvent``.
- ``context``     -- ``SyncContext`` and the suppression flag.
- ``fingerprint`` -- content hashes.
- ``extractor``   -- ``EntityExtractor``.
- ``presets``     -- per-system field paths and preset selection.
- ``mapper``      -- ``FieldMapper`` with corrections and scoring.
- ``payloads``    -- remote payload builders.
- ``links``       -- ``LinkIndexer``.
- ``engine``      -- ``ReconcileService``.
- ``realtime``    -- ``RealtimeSyncListener``.
- ``importer``    -- ``ImporterService`` (threshold import).
- ``state``       -- ``ImportConfigStore``.
- ``reporter``    -- human-readable and JSON report formatting.

Usage example
-------------
::

    from archivist_sync.config import load_config
    from archivist_sync.core.client import RemoteClient
    from archivist_sync.sync import (
        InMemoryStore,
        ReconcileService,
        SyncContext,
        format_plan_preview,
    )

    config = load_config()
    context = SyncContext(
        config=config, client=RemoteClient(config), store=InMemoryStore()
    )
    service = ReconcileService(context)

    preview = await service.run_full(apply=False)
    print(format_plan_preview(preview.plan))
"""

from .context import SuppressionFlag, SyncContext
from .engine import ReconcileService, RemoteSnapshot
from .events import EventBus, EventType, LocalEvent
from .extractor import EntityExtractor
from .fingerprint import fingerprint
from .importer import ImporterService
from .links import LinkIndexer
from .mapper import FieldMapper, classify
from .metadata import LinkBundle, LinkRefs, SyncMeta
from .models import (
    ApplyResult,
    DiffItem,
    Entity,
    ImportConfig,
    ImportItem,
    MappingProposal,
    ReconcilePlan,
    ReconcileReport,
)
from .realtime import RealtimeSyncListener
from .reporter import (
    format_import_summary,
    format_plan_preview,
    format_reconcile_report,
    format_sample,
    plan_to_json,
    report_to_json,
)
from .state import ImportConfigStore
from .store import InMemoryStore, JsonFileStore, LocalDocument, LocalStore

__all__ = [
    "ApplyResult",
    "DiffItem",
    "Entity",
    "EntityExtractor",
    "EventBus",
    "EventType",
    "FieldMapper",
    "ImportConfig",
    "ImportConfigStore",
    "ImportItem",
    "ImporterService",
    "InMemoryStore",
    "JsonFileStore",
    "LinkBundle",
    "LinkIndexer",
    "LinkRefs",
    "LocalDocument",
    "LocalEvent",
    "LocalStore",
    "MappingProposal",
    "RealtimeSyncListener",
    "ReconcilePlan",
    "ReconcileReport",
    "ReconcileService",
    "RemoteSnapshot",
    "SuppressionFlag",
    "SyncContext",
    "SyncMeta",
    "classify",
    "fingerprint",
    "format_import_summary",
    "format_plan_preview",
    "format_reconcile_report",
    "format_sample",
    "plan_to_json",
    "report_to_json",
]
