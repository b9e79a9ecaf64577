"""Fixtures for MCP handler tests."""

import pytest

from archivist_sync.config_schema import SyncConfig
from archivist_sync.mcp.lifespan import build_server_context


@pytest.fixture
def server_ctx(tmp_path, config, fake_client, world_store):
    """ServerContext over the sample world with the realtime listener attached."""
    ctx = build_server_context(
        config,
        SyncConfig(state_dir=str(tmp_path / "state")),
        store=world_store,
        client=fake_client,
    )
    yield ctx
    ctx.listener.detach()
