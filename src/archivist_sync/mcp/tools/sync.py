"""MCP tool handlers for world reconciliation and import.

Defines:

- ``reconcile_preview`` -- compute a plan without writing anything.
- ``reconcile_apply`` -- compute and apply a plan, optionally with an
  explicit selection.
- ``import_sample`` -- mapping proposals for a sample of local entities.
- ``import_run`` -- threshold import of local entities.
- ``import_correct`` -- store a mapping correction for the selected world.
- ``links_rebuild`` -- rebuild the link index locally or from the world.
- ``sync_status`` -- world, listener and binding summary.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Any

import mcp.types as types

from ...core.client import EntityKind
from ...sync.engine import ReconcileService
from ...sync.importer import ImporterService
from ...sync.models import CorrectionRule
from ...sync.reporter import (
    format_import_summary,
    format_plan_preview,
    format_reconcile_report,
    format_sample,
    plan_to_json,
    report_to_json,
)
from .errors import build_error_response
from .registry import ToolSpec

if TYPE_CHECKING:
    from ..lifespan import ServerContext

logger = logging.getLogger(__name__)

_KIND_VALUES = [k.value for k in EntityKind]


def _id_set(args: dict[str, Any], key: str) -> set[str] | None:
    """Optional list-of-ids argument as a set; absent means "keep defaults"."""
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list of ids")
    return {str(v) for v in value}


def _result(text: str, structured: dict[str, Any]) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
    )


# ---------------------------------------------------------------------------
# Reconcile
# ---------------------------------------------------------------------------


async def _handle_reconcile_preview(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    service = ReconcileService(ctx.sync, ctx.indexer)
    report = await service.run_full(apply=False)
    return _result(format_plan_preview(report.plan), plan_to_json(report.plan))


async def _handle_reconcile_apply(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    """Apply a fresh plan.

    Without explicit ids every diff is applied and no imports are; the ids
    from a previous ``reconcile_preview`` select exactly those items.
    """
    service = ReconcileService(ctx.sync, ctx.indexer)
    report = await service.run_full(
        apply=True,
        diff_ids=_id_set(args, "diff_ids"),
        import_ids=_id_set(args, "import_ids"),
        create_core_ids=_id_set(args, "create_core_ids"),
    )
    return _result(format_reconcile_report(report), report_to_json(report))


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


async def _handle_import_sample(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    importer = ImporterService(ctx.sync, ctx.system_id)
    proposals = importer.sample(args.get("sample_size"))
    bands = importer.classify(proposals)
    structured = {
        "proposals": [
            {
                "source_path": p.entity.source_path,
                "name": p.entity.name,
                "kind": p.entity.kind.value,
                "target_type": p.target_type.value,
                "score": p.score,
                "labels": list(p.labels),
                "preset": p.preset,
                "include": p.include,
            }
            for p in proposals
        ],
        "bands": {band.value: len(items) for band, items in bands.items()},
    }
    return _result(format_sample(proposals), structured)


async def _handle_import_run(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    importer = ImporterService(ctx.sync, ctx.system_id)
    summary = await importer.run_import(
        auto_threshold=args.get("auto_threshold"),
        queue_threshold=args.get("queue_threshold"),
    )
    return _result(format_import_summary(summary), summary.model_dump(mode="json"))


async def _handle_import_correct(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    """Store a correction and persist the world's import config."""
    world_id = ctx.sync.require_configured()
    key = str(args.get("key") or "").strip()
    if not key:
        return build_error_response(
            "validation_error",
            "key is required",
            "Pass a source path from import_sample, or a "
            "'kind|subtype|folder' group key with scope='group'.",
        )
    target = args.get("target_type")
    rule = CorrectionRule(
        target_type=EntityKind(target) if target else None,
        field_paths=dict(args.get("field_paths") or {}),
        include=args.get("include"),
    )
    by_id = args.get("scope", "source") == "source"
    updated = ctx.sync.import_config.with_correction(key, rule, by_id=by_id)
    if updated.world_id != world_id:
        updated = updated.model_copy(update={"world_id": world_id})
    path = ctx.config_store.save(updated)
    ctx.sync.import_config = updated
    logger.info("Saved correction for %s in %s", key, path)
    return _result(
        f"Saved correction for {key} ({'source' if by_id else 'group'}).",
        {"key": key, "scope": "source" if by_id else "group", "path": str(path)},
    )


# ---------------------------------------------------------------------------
# Links and status
# ---------------------------------------------------------------------------


async def _handle_links_rebuild(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    indexer = ctx.indexer
    indexer.build_from_world()
    source = "local metadata"
    if args.get("from_remote"):
        world_id = ctx.sync.require_configured()
        links = await ctx.sync.limiter.run(
            ctx.sync.client.list_links, world_id
        )
        indexer.build_from_links(links)
        source = "remote links"
    edges = indexer.edges()
    return _result(
        f"Link index rebuilt from {source}: {len(indexer.by_local_id)} "
        f"entities, {len(edges)} edges.",
        {
            "source": source,
            "entities": len(indexer.by_local_id),
            "edges": len(edges),
        },
    )


async def _handle_sync_status(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    sync = ctx.sync
    service = ReconcileService(sync, ctx.indexer)
    bound = Counter(kind.value for kind, _ in service.bound_entities().values())
    listener = ctx.listener

    lines = [
        f"World:         {sync.world_id or '(none selected)'}",
        f"User:          {sync.user_id or '(any)'}",
        f"Realtime sync: {'attached' if listener.attached else 'detached'}"
        f"{'' if sync.sync_enabled else ' (disabled)'}",
        f"Suppressed:    {'yes' if sync.suppression.active else 'no'}",
        f"Mirrored:      {listener.mirrored}",
        f"Bound:         {sum(bound.values())}",
    ]
    lines.extend(f"  {kind}: {bound[kind]}" for kind in _KIND_VALUES if bound[kind])
    if listener.last_error:
        lines.append(f"Last error:    {listener.last_error}")

    return _result(
        "\n".join(lines),
        {
            "world_id": sync.world_id,
            "user_id": sync.user_id,
            "realtime_attached": listener.attached,
            "realtime_enabled": sync.sync_enabled,
            "suppressed": sync.suppression.active,
            "mirrored": listener.mirrored,
            "bound": dict(bound),
            "last_error": listener.last_error,
        },
    )


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_ID_LIST = {"type": "array", "items": {"type": "string"}}

SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=types.Tool(
            name="reconcile_preview",
            description=(
                "Compare the local document tree with the selected world and "
                "list field changes, remote deletions and import candidates. "
                "Nothing is written."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=True,
            ),
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        handler=_handle_reconcile_preview,
    ),
    ToolSpec(
        tool=types.Tool(
            name="reconcile_apply",
            description=(
                "Reconcile the local document tree with the selected world. "
                "By default applies every diff (including remote deletions) "
                "and no imports; pass ids from reconcile_preview to choose."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=True,
                idempotentHint=False,
                openWorldHint=True,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "diff_ids": {
                        **_ID_LIST,
                        "description": "Remote ids of diffs to apply",
                    },
                    "import_ids": {
                        **_ID_LIST,
                        "description": "Remote ids of records to import locally",
                    },
                    "create_core_ids": {
                        **_ID_LIST,
                        "description": (
                            "Imported ids that also get a native actor, item or scene"
                        ),
                    },
                },
                "required": [],
            },
        ),
        handler=_handle_reconcile_apply,
    ),
    ToolSpec(
        tool=types.Tool(
            name="import_sample",
            description=(
                "Show how a sample of local actors, items, scenes and journals "
                "would map onto the world, with a confidence score each."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "sample_size": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": 500,
                        "description": "Number of entities (default from config)",
                    },
                },
                "required": [],
            },
        ),
        handler=_handle_import_sample,
    ),
    ToolSpec(
        tool=types.Tool(
            name="import_run",
            description=(
                "Import local entities into the selected world. Scores at or "
                "above auto_threshold are created or updated, scores between "
                "the thresholds are queued for review, lower ones are dropped."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=True,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "auto_threshold": {
                        "type": "number",
                        "minimum": 0,
                        "maximum": 1,
                    },
                    "queue_threshold": {
                        "type": "number",
                        "minimum": 0,
                        "maximum": 1,
                    },
                },
                "required": [],
            },
        ),
        handler=_handle_import_run,
    ),
    ToolSpec(
        tool=types.Tool(
            name="import_correct",
            description=(
                "Correct how one source document (scope='source') or a whole "
                "kind|subtype|folder group (scope='group') maps onto the world. "
                "Saved in the world's import config."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "key": {
                        "type": "string",
                        "description": "Source path, or kind|subtype|folder",
                    },
                    "scope": {
                        "type": "string",
                        "enum": ["source", "group"],
                        "default": "source",
                    },
                    "target_type": {"type": "string", "enum": _KIND_VALUES},
                    "include": {"type": "boolean"},
                    "field_paths": {
                        "type": "object",
                        "additionalProperties": {"type": "string"},
                        "description": "Payload field -> source path",
                    },
                },
                "required": ["key"],
            },
        ),
        handler=_handle_import_correct,
    ),
    ToolSpec(
        tool=types.Tool(
            name="links_rebuild",
            description=(
                "Rebuild the link index from local metadata, or from the "
                "world's link relation when from_remote is true."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=True,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "from_remote": {"type": "boolean", "default": False},
                },
                "required": [],
            },
        ),
        handler=_handle_links_rebuild,
    ),
    ToolSpec(
        tool=types.Tool(
            name="sync_status",
            description=(
                "Show the selected world, realtime listener state and how "
                "many local entities are bound, per kind."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        handler=_handle_sync_status,
    ),
]
