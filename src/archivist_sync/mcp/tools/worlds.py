"""World tool handlers for MCP server.

Implements ``world_list`` (worlds visible to the API key) and
``world_select`` (switch the world reconcile tools operate on).
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

import mcp.types as types

from ...core.async_utils import run_sync
from .errors import build_error_response
from .registry import ToolSpec

if TYPE_CHECKING:
    from ..lifespan import ServerContext

logger = logging.getLogger(__name__)


def _title(world: dict) -> str:
    return str(world.get("title") or world.get("name") or "(untitled)")


async def _handle_world_list(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    """List worlds, marking the selected one with ``*``."""
    worlds = await run_sync(ctx.sync.client.list_worlds)
    selected = ctx.sync.world_id

    if not worlds:
        text = "No worlds visible to this API key."
    else:
        lines = [f"Worlds ({len(worlds)}):"]
        for w in worlds:
            mark = "*" if str(w.get("id")) == selected else " "
            lines.append(f"  {mark} {w.get('id')}  {_title(w)}")
        text = "\n".join(lines)

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent={
            "selected": selected,
            "worlds": [
                {"id": str(w.get("id")), "title": _title(w)} for w in worlds
            ],
        },
    )


async def _handle_world_select(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    """Select the world for this session and load its import config."""
    world_id = str(args.get("world_id") or "").strip()
    if not world_id:
        return build_error_response(
            "validation_error",
            "world_id is required",
            "Use world_list to find a world id.",
        )

    world = await run_sync(ctx.sync.client.get_world, world_id)
    ctx.sync.config = dataclasses.replace(ctx.sync.config, world_id=world_id)
    ctx.sync.import_config = ctx.config_store.load(world_id)
    ctx.indexer.build_from_world()
    logger.info("Selected world %s", world_id)

    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text",
                text=f"Selected world {world_id} ({_title(world)}).",
            )
        ],
        structuredContent={"world_id": world_id, "title": _title(world)},
    )


WORLD_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=types.Tool(
            name="world_list",
            description="List the Archivist worlds (campaigns) visible to the configured API key.",
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=True,
            ),
            inputSchema={
                "type": "object",
                "properties": {},
                "required": [],
            },
        ),
        handler=_handle_world_list,
    ),
    ToolSpec(
        tool=types.Tool(
            name="world_select",
            description=(
                "Select the world that reconcile and import tools operate on "
                "for the rest of this session."
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
                    "world_id": {
                        "type": "string",
                        "description": "World id from world_list",
                    },
                },
                "required": ["world_id"],
            },
        ),
        handler=_handle_world_select,
    ),
]
