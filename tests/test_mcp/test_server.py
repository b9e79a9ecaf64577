"""Tests for the MCP server module: ping, dispatch and global accessors."""

from unittest.mock import MagicMock

import pytest

from archivist_sync.errors import TransportError
from archivist_sync.mcp import server
from archivist_sync.mcp.tools import ALL_SPECS, ToolRegistry


@pytest.fixture
def wired(server_ctx):
    """Install the registry and context the way main() does."""
    server.set_registry(ToolRegistry([server.PING_SPEC] + ALL_SPECS))
    server.set_server_context(server_ctx)
    yield server_ctx
    server.set_server_context(None)
    server.set_registry(None)


class TestAccessors:
    def test_context_not_initialized(self):
        with pytest.raises(RuntimeError, match="ServerContext not initialized"):
            server.get_server_context()

    def test_registry_not_initialized(self):
        with pytest.raises(RuntimeError, match="ToolRegistry not initialized"):
            server.get_registry()


class TestPing:
    async def test_success(self, server_ctx):
        result = await server._handle_ping(server_ctx, {})
        assert not result.isError
        assert result.content[0].text.endswith("Worlds visible: 1")

    async def test_failure(self, server_ctx):
        client = MagicMock()
        client.validate_connection.side_effect = TransportError("timed out")
        server_ctx.sync.client = client

        result = await server._handle_ping(server_ctx, {})

        assert result.isError
        assert "Archivist connection failed: timed out" in result.content[0].text


class TestDispatch:
    async def test_list_tools(self, wired):
        names = [t.name for t in await server.handle_list_tools()]
        assert names[0] == "ping"
        assert {"world_list", "reconcile_preview", "sync_status"} <= set(names)

    async def test_call_tool(self, wired):
        result = await server.handle_call_tool("sync_status", {})
        assert result.structuredContent["world_id"] == "w1"

    async def test_unknown_tool(self, wired):
        result = await server.handle_call_tool("delete_world", None)
        assert result.isError
        assert "Error (unknown_tool): Unknown tool: delete_world" in result.content[0].text

    async def test_handler_errors_translated(self, wired):
        wired.sync.config.world_id = None
        result = await server.handle_call_tool("reconcile_preview", {})
        assert result.isError
        assert "Error (config_error)" in result.content[0].text
