"""Pydantic models for the reconciliation core.

Defines the data contracts shared by every sync module:

- ``Entity``: a normalised local record (one of the five kinds).
- ``Link``: a directed edge asserted by its ``from`` entity.
- ``MappingProposal``: an entity mapped onto the remote schema with a score.
- ``DiffItem`` / ``ImportItem``: the two kinds of sync plan items.
- ``ReconcilePlan``: the output of the diff and import phases.
- ``ApplyResult`` / ``ReconcileReport``: outcome of applying a plan.
- ``ImportConfig``: the versioned per-world import settings.

All models are frozen (immutable); selection changes produce a new plan.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..core.client import EntityKind

__all__ = [
    "ApplyAction",
    "ApplyResult",
    "CorrectionRule",
    "Corrections",
    "DiffItem",
    "Entity",
    "EntityKind",
    "FieldChange",
    "FieldPaths",
    "ImportClass",
    "ImportConfig",
    "ImportItem",
    "ImportSummary",
    "IncludeRules",
    "Link",
    "LinkChanges",
    "LinkTarget",
    "MappingProposal",
    "ReconcilePlan",
    "ReconcileReport",
]


class Entity(BaseModel):
    """A normalised local record.

    Attributes:
        local_id: Id of the owning local document.
        remote_id: Bound remote id, if any.
        kind: One of the five entity kinds.
        subtype: Finer classification (``PC``/``NPC`` for characters,
            host item type for items, ``scene`` for scene locations).
        name: Display name.
        description_html: Rich-text description as stored locally.
        description_markdown: The same description as Markdown.
        image_url: Image reference; authoritative only when https.
        fingerprint: Content hash of name, description and image.
        parent_id: Parent location (Location only).
        folder: Containing folder name.
        source_path: Host reference (``Actor.abc``) used by crosslinks.
        tags: Lower-cased tags from folder and ``#hashtags``.
        references: Host references found in the description.
        source: Snapshot of the source document for field-path lookups.
    """

    local_id: str
    remote_id: str | None = None
    kind: EntityKind
    subtype: str = ""
    name: str = ""
    description_html: str = ""
    description_markdown: str = ""
    image_url: str | None = None
    fingerprint: str = ""
    parent_id: str | None = None
    folder: str = ""
    source_path: str = ""
    tags: list[str] = []
    references: list[str] = []
    source: dict[str, Any] = {}

    model_config = {"frozen": True}


class Link(BaseModel):
    """Directed edge ``from_id -> to_id``; identity is ``(from_id, to_id, to_type)``."""

    from_id: str
    from_type: str = ""
    to_id: str
    to_type: str

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_id, self.to_id, self.to_type)


class MappingProposal(BaseModel):
    """An entity mapped onto the remote schema.

    Attributes:
        entity: The source entity.
        target_type: Remote kind the entity should become.
        payload: Remote field values pulled through the preset paths.
        score: Confidence in ``[0, 1]``.
        labels: Extra hints such as ``PC``/``NPC``.
        preset: Name of the preset that produced the payload.
        corrected: True when a user correction was applied.
        include: False when the user excluded this entity.
    """

    entity: Entity
    target_type: EntityKind
    payload: dict[str, Any] = {}
    score: float = Field(ge=0.0, le=1.0)
    labels: list[str] = []
    preset: str = "generic"
    corrected: bool = False
    include: bool = True

    model_config = {"frozen": True}


# ------------------------------------------------------------------
# Sync plan
# ------------------------------------------------------------------


class FieldChange(BaseModel):
    """One changed field; dumps as ``{"from": ..., "to": ...}``."""

    from_: Any = Field(default=None, alias="from")
    to: Any = None

    model_config = {"frozen": True, "populate_by_name": True}


class LinkTarget(BaseModel):
    id: str
    type: str

    model_config = {"frozen": True}


class LinkChanges(BaseModel):
    """Link deltas for one diff: edges to add locally and owned edges to prune."""

    add: list[LinkTarget] = []
    remove: list[LinkTarget] = []

    model_config = {"frozen": True}

    @property
    def empty(self) -> bool:
        return not self.add and not self.remove


class DiffItem(BaseModel):
    """A bound local entity that differs from (or lost) its remote record.

    A deletion has ``deleted=True`` and no field or link changes.
    """

    id: str
    kind: EntityKind
    local_id: str
    name: str = ""
    changes: dict[str, FieldChange] = {}
    links: LinkChanges = Field(default_factory=LinkChanges)
    deleted: bool = False
    selected: bool = True

    model_config = {"frozen": True}


class ImportItem(BaseModel):
    """A remote record with no local counterpart.

    Attributes:
        create_core: Also create a native host object (actor/item/scene).
        core_type: Native object type created when ``create_core`` is set.
        character_type: ``PC`` or ``NPC`` for characters.
    """

    id: str
    kind: EntityKind
    name: str = ""
    description: str = ""
    image: str | None = None
    parent_id: str | None = None
    session_date: str | None = None
    character_type: str | None = None
    core_type: str | None = None
    create_core: bool = False
    selected: bool = False

    model_config = {"frozen": True}


class ReconcilePlan(BaseModel):
    """Diffs and import candidates produced by one reconciliation pass."""

    world_id: str
    diffs: list[DiffItem] = []
    imports: list[ImportItem] = []
    created_at: str

    model_config = {"frozen": True}

    @property
    def selected_diffs(self) -> list[DiffItem]:
        return [d for d in self.diffs if d.selected]

    @property
    def selected_imports(self) -> list[ImportItem]:
        return [i for i in self.imports if i.selected]

    @property
    def deletions(self) -> list[DiffItem]:
        return [d for d in self.diffs if d.deleted]

    def select(
        self,
        diff_ids: set[str] | None = None,
        import_ids: set[str] | None = None,
        create_core_ids: set[str] | None = None,
    ) -> ReconcilePlan:
        """Return a copy with the given selections.

        ``None`` keeps the current selection for that group; a set selects
        exactly those ids.
        """
        diffs = self.diffs
        if diff_ids is not None:
            diffs = [
                d.model_copy(update={"selected": d.id in diff_ids})
                for d in self.diffs
            ]
        imports = self.imports
        if import_ids is not None or create_core_ids is not None:
            imports = []
            for item in self.imports:
                update: dict[str, Any] = {}
                if import_ids is not None:
                    update["selected"] = item.id in import_ids
                if create_core_ids is not None:
                    update["create_core"] = item.id in create_core_ids
                imports.append(item.model_copy(update=update))
        return self.model_copy(update={"diffs": diffs, "imports": imports})


class ApplyAction(str, Enum):
    """What applying a plan item did to the local store."""

    UPDATE_LOCAL = "update_local"
    DELETE_LOCAL = "delete_local"
    CREATE_LOCAL = "create_local"


class ApplyResult(BaseModel):
    """Outcome of applying one plan item."""

    id: str
    kind: EntityKind
    action: ApplyAction
    success: bool
    local_id: str | None = None
    error: str | None = None

    model_config = {"frozen": True}


class ReconcileReport(BaseModel):
    """Aggregate outcome of a reconciliation pass.

    Attributes:
        world_id: World that was reconciled.
        plan: The plan that was computed (and possibly applied).
        applied: Whether the apply phase ran.
        results: Per-item apply results.
        started_at: ISO 8601 timestamp when the pass started.
        completed_at: ISO 8601 timestamp when the pass finished.
    """

    world_id: str
    plan: ReconcilePlan
    applied: bool = False
    results: list[ApplyResult] = []
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _by_action(self, action: ApplyAction) -> list[ApplyResult]:
        return [
            r for r in self.results if r.action == action and r.success
        ]

    @property
    def updated(self) -> list[ApplyResult]:
        """Successful in-place updates."""
        return self._by_action(ApplyAction.UPDATE_LOCAL)

    @property
    def deleted(self) -> list[ApplyResult]:
        """Successful local deletions."""
        return self._by_action(ApplyAction.DELETE_LOCAL)

    @property
    def imported(self) -> list[ApplyResult]:
        """Successful imports."""
        return self._by_action(ApplyAction.CREATE_LOCAL)

    @property
    def errors(self) -> list[ApplyResult]:
        """Results where success is False."""
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        """Format a human-readable summary of the pass.

        Returns:
            Multi-line summary string with counts.
        """
        lines = [
            f"Reconcile report for world '{self.world_id}'"
            + ("" if self.applied else " (preview)"),
            f"  Diffs:    {len(self.plan.diffs)}"
            f" ({len(self.plan.deletions)} deleted remotely)",
            f"  Imports:  {len(self.plan.imports)}",
            f"  Updated:  {len(self.updated)}",
            f"  Deleted:  {len(self.deleted)}",
            f"  Imported: {len(self.imported)}",
            f"  Errors:   {len(self.errors)}",
        ]
        return "\n".join(lines)


# ------------------------------------------------------------------
# Import configuration
# ------------------------------------------------------------------


class FieldPaths(BaseModel):
    """Explicit field paths for one source family; ``None`` defers to the preset."""

    name_path: str | None = None
    image_path: str | None = None
    description_path: str | None = None

    model_config = {"frozen": True}


class CorrectionRule(BaseModel):
    """A user correction to a mapping proposal.

    Attributes:
        target_type: Overrides the proposed remote kind.
        field_paths: Payload field -> source path overrides.
        include: False excludes the entity entirely.
    """

    target_type: EntityKind | None = None
    field_paths: dict[str, str] = {}
    include: bool | None = None

    model_config = {"frozen": True}


class Corrections(BaseModel):
    """Corrections keyed by ``kind|subtype|folder`` and by source path."""

    by_key: dict[str, CorrectionRule] = {}
    by_id: dict[str, CorrectionRule] = {}

    model_config = {"frozen": True}


class IncludeRules(BaseModel):
    """Folder, ownership and placement filters applied during extraction.

    Empty folder lists mean "no folder restriction".
    """

    pc_folders: list[str] = []
    npc_folders: list[str] = []
    item_folders: list[str] = []
    journal_folders: list[str] = []
    must_have_player_owner: bool = False
    npc_require_placed_token: bool = False
    actor_owned_items_from: str = Field(
        default="pc", pattern="^(none|pc|pc\\+npc)$"
    )

    model_config = {"frozen": True}


def _default_ceilings() -> dict[EntityKind, int]:
    return {kind: 10000 for kind in EntityKind}


class ImportConfig(BaseModel):
    """Versioned per-world import settings.

    Created once per world, changed only by replacing it wholesale
    (``model_copy``) and saving through ``ImportConfigStore``.
    """

    schema_version: int = 1
    world_id: str | None = None
    pc: FieldPaths = Field(default_factory=FieldPaths)
    npc: FieldPaths = Field(default_factory=FieldPaths)
    item: FieldPaths = Field(default_factory=FieldPaths)
    include: IncludeRules = Field(default_factory=IncludeRules)
    description_max_length: dict[EntityKind, int] = Field(
        default_factory=_default_ceilings
    )
    corrections: Corrections = Field(default_factory=Corrections)

    model_config = {"frozen": True}

    def ceiling_for(self, kind: EntityKind) -> int:
        return self.description_max_length.get(kind, 10000)

    def with_correction(
        self, key: str, rule: CorrectionRule, by_id: bool = False
    ) -> ImportConfig:
        """Return a copy with *rule* stored under *key*."""
        corrections = self.corrections
        if by_id:
            updated = corrections.model_copy(
                update={"by_id": {**corrections.by_id, key: rule}}
            )
        else:
            updated = corrections.model_copy(
                update={"by_key": {**corrections.by_key, key: rule}}
            )
        return self.model_copy(update={"corrections": updated})


class ImportClass(str, Enum):
    """Threshold band of a mapping score."""

    AUTO_IMPORT = "auto_import"
    QUEUED = "queued"
    DROPPED = "dropped"


class ImportSummary(BaseModel):
    """Counts from an import run."""

    total: int = 0
    auto_imported: int = 0
    queued: int = 0
    dropped: int = 0
    unchanged: int = 0
    errors: int = 0
    queued_ids: list[str] = []

    model_config = {"frozen": True}
