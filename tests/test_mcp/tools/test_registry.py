"""Tests for ToolSpec and ToolRegistry.

Covers:
- ToolSpec creation and immutability
- ToolRegistry list_tools, tool_count, duplicate names
- call_tool dispatch and error translation
"""

import asyncio
import dataclasses
import unittest
from unittest.mock import MagicMock

import mcp.types as types

from archivist_sync.errors import ConfigError, TransportError
from archivist_sync.mcp.tools.registry import ToolRegistry, ToolSpec


def _make_spec(name: str, handler=None) -> ToolSpec:
    """Helper to create a ToolSpec for testing."""
    if handler is None:

        async def handler(ctx, args):
            return types.CallToolResult(
                content=[types.TextContent(type="text", text=f"ok:{name}:{args}")]
            )

    return ToolSpec(
        tool=types.Tool(
            name=name,
            description=f"Test tool {name}",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        handler=handler,
    )


def _raising(exc: Exception):
    async def handler(ctx, args):
        raise exc

    return handler


class TestToolSpec(unittest.TestCase):
    """Test ToolSpec dataclass."""

    def test_creation(self):
        spec = _make_spec("world_list")
        self.assertEqual(spec.tool.name, "world_list")

    def test_frozen(self):
        spec = _make_spec("world_list")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            spec.tool = _make_spec("other").tool


class TestToolRegistry(unittest.TestCase):
    def test_list_tools_preserves_order(self):
        registry = ToolRegistry([_make_spec("a"), _make_spec("b")])
        self.assertEqual([t.name for t in registry.list_tools()], ["a", "b"])
        self.assertEqual(registry.tool_count(), 2)

    def test_later_spec_replaces_earlier(self):
        async def second(ctx, args):
            return types.CallToolResult(
                content=[types.TextContent(type="text", text="second")]
            )

        registry = ToolRegistry([_make_spec("a"), _make_spec("a", second)])
        self.assertEqual(registry.tool_count(), 1)
        result = asyncio.run(registry.call_tool("a", {}, MagicMock()))
        self.assertEqual(result.content[0].text, "second")

    def test_unknown_tool_raises(self):
        registry = ToolRegistry([_make_spec("a")])
        with self.assertRaises(ValueError):
            asyncio.run(registry.call_tool("missing", {}, MagicMock()))

    def test_none_arguments_become_empty_dict(self):
        registry = ToolRegistry([_make_spec("a")])
        result = asyncio.run(registry.call_tool("a", None, MagicMock()))
        self.assertEqual(result.content[0].text, "ok:a:{}")


class TestCallToolErrors(unittest.TestCase):
    """Exceptions from handlers become structured error results."""

    def _call(self, exc: Exception) -> types.CallToolResult:
        registry = ToolRegistry([_make_spec("boom", _raising(exc))])
        return asyncio.run(registry.call_tool("boom", {}, MagicMock()))

    def test_sync_error_translated(self):
        result = self._call(ConfigError("No Archivist world selected"))
        self.assertTrue(result.isError)
        self.assertIn("Error (config_error)", result.content[0].text)

    def test_transport_error_translated(self):
        result = self._call(TransportError("GET /worlds failed: 404", status=404))
        self.assertIn("Error (not_found)", result.content[0].text)

    def test_value_error_is_validation_error(self):
        result = self._call(ValueError("diff_ids must be a list of ids"))
        self.assertTrue(result.isError)
        self.assertIn("Error (validation_error)", result.content[0].text)
        self.assertIn("diff_ids must be a list of ids", result.content[0].text)

    def test_unexpected_error_is_server_error(self):
        result = self._call(KeyError("boom"))
        self.assertTrue(result.isError)
        self.assertIn("Error (server_error)", result.content[0].text)
