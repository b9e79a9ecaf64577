"""Service context shared by the sync components.

``SyncContext`` is built once (by the MCP lifespan or a test) and passed to
every component. It holds the only cross-cutting mutable state of the sync
core: the suppression flag. The client owns the other piece, its last-write
timestamp.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from ..config import Config
from ..config_schema import SyncConfig
from ..core.async_utils import RequestLimiter
from ..core.client import RemoteClient
from ..errors import ConfigError
from .events import EventBus
from .models import ImportConfig
from .store import LocalStore

logger = logging.getLogger(__name__)


class SuppressionFlag:
    """Counter that silences the realtime listener during bulk passes.

    Nested ``suppress()`` calls are allowed; the flag clears only when every
    ``suppress()`` has been matched by a ``resume()``.
    """

    def __init__(self) -> None:
        self._depth = 0

    @property
    def active(self) -> bool:
        return self._depth > 0

    def suppress(self) -> None:
        self._depth += 1

    def resume(self) -> None:
        if self._depth > 0:
            self._depth -= 1

    @contextmanager
    def suppressed(self) -> Iterator[None]:
        self.suppress()
        try:
            yield
        finally:
            self.resume()


@dataclass
class SyncContext:
    """Everything a sync component needs, constructed once per process.

    Attributes:
        config: Connection settings (API key, world, user).
        client: Remote API client.
        store: Local document store.
        settings: Reconciliation tuning.
        import_config: Per-world import settings.
        suppression: Flag owned by the reconcile service.
        limiter: Concurrency bound for fetch fan-out.
    """

    config: Config
    client: RemoteClient
    store: LocalStore
    settings: SyncConfig = field(default_factory=SyncConfig)
    import_config: ImportConfig = field(default_factory=ImportConfig)
    suppression: SuppressionFlag = field(default_factory=SuppressionFlag)
    limiter: RequestLimiter | None = None

    def __post_init__(self) -> None:
        if self.limiter is None:
            self.limiter = RequestLimiter(self.config.max_parallel_requests)

    @property
    def bus(self) -> EventBus:
        return self.store.bus

    @property
    def world_id(self) -> str | None:
        return self.config.world_id

    @property
    def user_id(self) -> str | None:
        return self.config.user_id

    @property
    def sync_enabled(self) -> bool:
        return bool(self.config.realtime_sync)

    def require_configured(self) -> str:
        """Return the world id, or raise before any network call.

        Raises:
            ConfigError: If the API key or the world is missing.
        """
        if not self.config.api_key:
            raise ConfigError("Archivist API key is not configured")
        if not self.config.world_id:
            raise ConfigError("No Archivist world selected")
        return self.config.world_id
