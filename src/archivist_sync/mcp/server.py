"""MCP Server for Archivist world sync using stdio transport.

This module implements the Model Context Protocol server that lets AI
agents preview and apply reconciliation between a local document tree
and an Archivist world.

Transport: stdio
Protocol: JSON-RPC 2.0 over MCP
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config_loader import ensure_config
from ..core.async_utils import run_sync
from ..logger import setup_logging
from .lifespan import ServerContext, server_lifespan
from .tools import ALL_SPECS, ToolRegistry, build_error_response
from .tools.registry import ToolSpec

logger = logging.getLogger(__name__)

server = Server("archivist-sync")

# Initialized in main() from the lifespan
_server_context: ServerContext | None = None

_registry: ToolRegistry | None = None


# ---------------------------------------------------------------------------
# Ping tool (always available)
# ---------------------------------------------------------------------------


async def _handle_ping(
    ctx: ServerContext, args: dict
) -> types.CallToolResult:
    """Handle ping tool -- test Archivist connectivity."""
    try:
        count = await run_sync(ctx.sync.client.validate_connection)
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=f"Archivist sync server connected successfully. Worlds visible: {count}",
                )
            ]
        )
    except Exception as e:
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=f"Archivist connection failed: {e}. Check ARCHIVIST_API_KEY and ARCHIVIST_API_URL.",
                )
            ],
            isError=True,
        )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Test Archivist API connectivity and return the number of visible worlds",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    handler=_handle_ping,
)


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_server_context() -> ServerContext:
    """Get the global ServerContext instance.

    Raises:
        RuntimeError: If the context is not initialized
    """
    if _server_context is None:
        raise RuntimeError(
            "ServerContext not initialized. Server lifespan not started."
        )
    return _server_context


def set_server_context(context: ServerContext | None) -> None:
    global _server_context
    _server_context = context


def get_registry() -> ToolRegistry:
    """Get the global ToolRegistry instance.

    Raises:
        RuntimeError: If registry is not initialized
    """
    if _registry is None:
        raise RuntimeError("ToolRegistry not initialized.")
    return _registry


def set_registry(registry: ToolRegistry | None) -> None:
    global _registry
    _registry = registry


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List available sync tools."""
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    """Handle tool execution via ToolRegistry dispatch.

    Args:
        name: The name of the tool to execute.
        arguments: Tool arguments (optional).

    Returns:
        CallToolResult with tool output content and optional isError flag.
    """
    ctx = get_server_context()
    try:
        return await get_registry().call_tool(name, arguments, ctx)
    except ValueError as e:
        return build_error_response(
            "unknown_tool",
            str(e),
            "Use list_tools to see available tools.",
        )


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Sets up logging for MCP mode (file only, never stdout), builds the
    sync services via the lifespan manager, and serves tools over stdio.

    Args:
        config_overrides: Optional dict with config values to override
            (api_key, api_url, world_id, system, debug, log_file)
    """
    overrides = config_overrides or {}

    # Must run before stdio_server so nothing reaches stdout during negotiation
    setup_logging(
        mode="mcp",
        debug=overrides.get("debug", False),
        log_file=overrides.get("log_file"),
    )

    all_specs = [PING_SPEC] + ALL_SPECS
    registry = ToolRegistry(all_specs)
    logger.info("Registered %d tools", registry.tool_count())
    set_registry(registry)

    # set_server_context() is called here rather than inside the lifespan so
    # that `python -m archivist_sync.mcp.server` updates this module's global
    # and not a second import of it.
    async with server_lifespan(config_overrides=overrides) as ctx:
        set_server_context(ctx["context"])
        try:
            async with mcp.server.stdio.stdio_server() as (
                read_stream,
                write_stream,
            ):
                init_options = InitializationOptions(
                    server_name="archivist-sync",
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                )
                await server.run(
                    read_stream, write_stream, init_options
                )
        finally:
            set_server_context(None)
            set_registry(None)


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Archivist Sync - MCP server reconciling a local document tree with an Archivist world",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or .archivist_sync/config.yml)
  archivist-sync

  # Select a world and game system
  archivist-sync --world-id w-123 --system dnd5e

  # Write a commented starter config and exit
  archivist-sync --init-config

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr.
        """,
    )

    parser.add_argument(
        "--api-key",
        help="Override Archivist API key (prefer ARCHIVIST_API_KEY; CLI values are visible in the process list)",
    )
    parser.add_argument(
        "--api-url",
        help="Override Archivist API base URL (takes precedence over ARCHIVIST_API_URL)",
    )
    parser.add_argument(
        "--world-id",
        help="Select the world to reconcile (takes precedence over ARCHIVIST_WORLD_ID)",
    )
    parser.add_argument(
        "--system",
        help="Game system id used to pick field-mapping presets (e.g. dnd5e, pf2e)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default="/tmp/archivist-sync.log",
        help="Log file path (default: /tmp/archivist-sync.log)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Create .archivist_sync/config.yml if no config exists, then exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"archivist-sync version {__version__}",
    )

    args = parser.parse_args()

    if args.init_config:
        path = ensure_config()
        print(f"Config file: {path}", file=sys.stderr)
        return

    config_overrides = {}
    if args.api_key:
        config_overrides["api_key"] = args.api_key
    if args.api_url:
        config_overrides["api_url"] = args.api_url
    if args.world_id:
        config_overrides["world_id"] = args.world_id
    if args.system:
        config_overrides["system"] = args.system
    if args.debug:
        config_overrides["debug"] = True
    if args.log_file:
        config_overrides["log_file"] = args.log_file

    override_keys = [
        k for k in config_overrides if k not in ("api_key", "log_file")
    ]
    if override_keys:
        print(
            f"Config overrides from CLI: {', '.join(override_keys)}",
            file=sys.stderr,
        )

    try:
        asyncio.run(main(config_overrides=config_overrides))
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
