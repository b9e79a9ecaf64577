"""Lifespan management for MCP server startup and shutdown."""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from ..config import Config, load_config
from ..config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from ..config_schema import SyncConfig, build_config
from ..core.async_utils import run_sync
from ..core.client import RemoteClient
from ..errors import ConfigError
from ..sync.context import SyncContext
from ..sync.links import LinkIndexer
from ..sync.models import ImportConfig
from ..sync.realtime import RealtimeSyncListener
from ..sync.state import ImportConfigStore
from ..sync.store import InMemoryStore, JsonFileStore, LocalStore

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


@dataclass
class ServerContext:
    """Services shared by every tool handler for the server's lifetime.

    Attributes:
        sync: Shared sync context (client, store, settings, suppression).
        indexer: Link index over the local store.
        listener: Realtime mirror of local edits.
        config_store: Persistence for per-world import configs.
        system_id: Game system id used to pick a mapping preset.
    """

    sync: SyncContext
    indexer: LinkIndexer
    listener: RealtimeSyncListener
    config_store: ImportConfigStore
    system_id: str | None = None


def build_store(config: Config) -> LocalStore:
    """JSON-backed store when a path is configured, in-memory otherwise."""
    if config.store_path:
        return JsonFileStore(config.store_path, current_user=config.user_id)
    logger.warning(
        "No store path configured; local documents live in memory only"
    )
    return InMemoryStore(current_user=config.user_id)


def build_client(config: Config, settings: SyncConfig) -> RemoteClient:
    return RemoteClient(
        config,
        page_size=settings.page_size,
        write_interval=settings.write_interval,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base,
        backoff_cap=settings.backoff_cap,
    )


def build_server_context(
    config: Config,
    settings: SyncConfig | None = None,
    store: LocalStore | None = None,
    client: RemoteClient | None = None,
    system_id: str | None = None,
) -> ServerContext:
    """Wire the sync services together without touching the network.

    The import config for the selected world is loaded from
    ``settings.state_dir``. The listener is attached when realtime sync
    is enabled and a user id is configured; without one no local edit
    could pass its user gate.
    """
    settings = settings or SyncConfig()
    config_store = ImportConfigStore(Path(settings.state_dir))
    import_config = (
        config_store.load(config.world_id)
        if config.world_id
        else ImportConfig()
    )
    sync = SyncContext(
        config=config,
        client=client or build_client(config, settings),
        store=store if store is not None else build_store(config),
        settings=settings,
        import_config=import_config,
    )
    indexer = LinkIndexer(sync.store)
    indexer.build_from_world()
    listener = RealtimeSyncListener(sync, indexer)
    if config.realtime_sync and not config.user_id:
        logger.warning(
            "Realtime sync is enabled but no user id is configured; "
            "local edits will not be mirrored (set ARCHIVIST_USER_ID)"
        )
    elif config.realtime_sync:
        listener.attach()
    return ServerContext(
        sync=sync,
        indexer=indexer,
        listener=listener,
        config_store=config_store,
        system_id=system_id,
    )


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present (as fallback values)
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Build the SyncContext, link index and realtime listener
    - Validate the API key; fail fast if Archivist is unreachable

    On shutdown:
    - Detach the listener and wait for in-flight mirror calls

    Args:
        config_overrides: Optional dict with config values from CLI
            (api_key, api_url, world_id, debug, system)

    Yields:
        Dict with 'context' key containing the ServerContext

    Raises:
        RuntimeError: If configuration is invalid or the connection fails.
    """
    logger.info("MCP server starting...")
    _stderr_print("Archivist Sync MCP Server starting...")

    overrides = config_overrides or {}
    try:
        load_dotenv()

        yaml_fallbacks: dict[str, Any] | None = None
        unified = build_config({})
        config_files = discover_config_files()
        sources = []

        if config_files:
            unified = build_config(load_hierarchical_config())
            yaml_fallbacks = {
                k: v
                for k, v in unified.archivist.model_dump().items()
                if v is not None
            }
            sources.append(f"config file: {config_files[0]}")

        config = load_config(
            api_key=overrides.get("api_key"),
            api_url=overrides.get("api_url"),
            world_id=overrides.get("world_id"),
            debug=overrides.get("debug", False),
            yaml_fallbacks=yaml_fallbacks,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
        logger.info("Archivist API: %s", config.api_url)
        _stderr_print(f"  Archivist API: {config.api_url}")
        if not config.world_id:
            _stderr_print(
                "  No world selected; set ARCHIVIST_WORLD_ID to enable reconcile tools."
            )
        if config.realtime_sync and not config.user_id:
            _stderr_print(
                "  No user id set; set ARCHIVIST_USER_ID to mirror local edits."
            )
    except (ConfigError, ValueError) as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print("  Ensure ARCHIVIST_API_KEY is set.")
        raise RuntimeError(
            f"Configuration error: {e}. Ensure ARCHIVIST_API_KEY is set."
        ) from e

    context = build_server_context(
        config, unified.sync, system_id=overrides.get("system")
    )

    logger.info("Validating Archivist connection...")
    _stderr_print("  Validating Archivist connection...")
    try:
        world_count = await run_sync(context.sync.client.validate_connection)
    except Exception as e:
        context.listener.detach()
        logger.error("Failed to connect to Archivist: %s", e)
        _stderr_print("ERROR: Archivist connection failed.")
        _stderr_print(f"  {e}")
        _stderr_print("  Check ARCHIVIST_API_KEY and ARCHIVIST_API_URL.")
        raise RuntimeError(
            f"Archivist connection failed: {e}. Check ARCHIVIST_API_KEY and ARCHIVIST_API_URL."
        ) from e

    logger.info("Connected to Archivist; %d world(s) visible", world_count)
    _stderr_print(f"  Connected; {world_count} world(s) visible")
    _stderr_print(f"  Parallel requests: {config.max_parallel_requests}")
    _stderr_print(
        f"  Realtime sync: {'on' if context.listener.attached else 'off'}"
    )
    _stderr_print("Server ready. Waiting for MCP client connection...")

    try:
        yield {"context": context}
    finally:
        context.listener.detach()
        await context.listener.drain()
        logger.info("MCP server shutting down")
        _stderr_print("Archivist Sync MCP Server shutting down.")
