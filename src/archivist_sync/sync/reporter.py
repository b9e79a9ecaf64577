"""Reconcile and import report formatting.

Provides human-readable and machine-readable output:

- ``format_plan_preview`` -- plan preview grouped by item type.
- ``format_reconcile_report`` -- post-apply summary.
- ``format_import_summary`` -- import run counts.
- ``format_sample`` -- mapping proposals with scores.
- ``report_to_json`` / ``plan_to_json`` -- structured dicts for MCP output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import (
        DiffItem,
        ImportSummary,
        MappingProposal,
        ReconcilePlan,
        ReconcileReport,
    )


def _describe_diff(diff: DiffItem) -> str:
    if diff.deleted:
        return "deleted remotely"
    parts = []
    for name, change in diff.changes.items():
        if name == "description":
            parts.append("description changed")
        else:
            parts.append(f"{name}: {change.from_!r} -> {change.to!r}")
    if diff.links.add:
        parts.append(f"+{len(diff.links.add)} link(s)")
    if diff.links.remove:
        parts.append(f"-{len(diff.links.remove)} link(s)")
    return "; ".join(parts)


# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def format_plan_preview(plan: ReconcilePlan) -> str:
    """Format a plan before it is applied.

    Each line is ``[x]`` or ``[ ]`` for the item's selection state.

    Args:
        plan: The computed plan.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = [f"Reconcile preview for world '{plan.world_id}'", ""]

    updates = [d for d in plan.diffs if not d.deleted]
    if updates:
        lines.append("[UPDATE LOCAL]")
        for d in updates:
            mark = "x" if d.selected else " "
            lines.append(
                f"  [{mark}] {d.kind.value} {d.name or d.local_id} ({d.id}): "
                f"{_describe_diff(d)}"
            )
        lines.append("")

    if plan.deletions:
        lines.append("[DELETE LOCAL]")
        for d in plan.deletions:
            mark = "x" if d.selected else " "
            lines.append(f"  [{mark}] {d.kind.value} {d.name or d.local_id} ({d.id})")
        lines.append("")

    if plan.imports:
        lines.append("[IMPORT]")
        for i in plan.imports:
            mark = "x" if i.selected else " "
            core = " +core" if i.create_core else ""
            lines.append(f"  [{mark}] {i.kind.value} {i.name} ({i.id}){core}")
        lines.append("")

    if not plan.diffs and not plan.imports:
        lines.append("Everything is in sync.")

    return "\n".join(lines).rstrip()


def format_reconcile_report(report: ReconcileReport) -> str:
    """Format a reconcile report, listing failures individually."""
    lines = [report.summary()]
    if report.errors:
        lines.append("")
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.kind.value} {r.id} ({r.action.value}): {r.error}")
    return "\n".join(lines)


def format_import_summary(summary: ImportSummary) -> str:
    lines = [
        f"Import: {summary.total} entities",
        f"  Created/updated: {summary.auto_imported}",
        f"  Queued:          {summary.queued}",
        f"  Dropped:         {summary.dropped}",
        f"  Unchanged:       {summary.unchanged}",
        f"  Errors:          {summary.errors}",
    ]
    if summary.queued_ids:
        lines.append("")
        lines.append("Queued for review:")
        lines.extend(f"  {ref}" for ref in summary.queued_ids)
    return "\n".join(lines)


def format_sample(proposals: list[MappingProposal]) -> str:
    """One line per proposal: score, kind mapping and source."""
    if not proposals:
        return "No entities found."
    lines = []
    for p in proposals:
        flags = ", ".join(p.labels)
        excluded = " (excluded)" if not p.include else ""
        lines.append(
            f"{p.score:.2f}  {p.entity.kind.value} -> {p.target_type.value}  "
            f"{p.entity.name or '(unnamed)'} [{p.entity.source_path}]"
            + (f" {flags}" if flags else "")
            + excluded
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def plan_to_json(plan: ReconcilePlan) -> dict:
    """Structured plan for MCP ``structuredContent`` output."""
    return plan.model_dump(mode="json", by_alias=True)


def report_to_json(report: ReconcileReport) -> dict:
    """Convert a reconcile report to a structured dict.

    Args:
        report: The reconcile report.

    Returns:
        Dict with world info, counts, and per-result details.
    """
    results = []
    for r in report.results:
        entry: dict = {
            "id": r.id,
            "kind": r.kind.value,
            "action": r.action.value,
            "success": r.success,
        }
        if r.local_id:
            entry["local_id"] = r.local_id
        if r.error:
            entry["error"] = r.error
        results.append(entry)

    return {
        "world_id": report.world_id,
        "applied": report.applied,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "diffs": len(report.plan.diffs),
            "deletions": len(report.plan.deletions),
            "imports": len(report.plan.imports),
            "updated": len(report.updated),
            "deleted": len(report.deleted),
            "imported": len(report.imported),
            "errors": len(report.errors),
        },
        "results": results,
    }
