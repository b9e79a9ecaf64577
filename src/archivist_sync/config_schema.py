"""Unified configuration schema for archivist_sync.

Defines Pydantic models for the unified config structure with dedicated
sections for the Archivist connection, reconciliation tuning, and logging.

Usage:
    from archivist_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    unified.sync.auto_import_threshold
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ArchivistConfig(BaseModel):
    """Archivist API connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    api_key: str | None = Field(
        default=None, description="Archivist API key"
    )
    api_url: str | None = Field(
        default=None, description="Archivist API base URL"
    )
    world_id: str | None = Field(
        default=None, description="Selected world (campaign) id"
    )
    user_id: str | None = Field(
        default=None,
        description="Local user whose edits are mirrored in real time",
    )
    store_path: str | None = Field(
        default=None,
        description="Path of the JSON snapshot of the local document tree",
    )
    debug: bool = Field(default=False, description="Enable debug mode")
    realtime_sync: bool = Field(
        default=True, description="Mirror local edits as they happen"
    )
    max_parallel_requests: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent list requests (1-16)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Reconciliation and import tuning.

    Attributes:
        auto_import_threshold: Score at or above which a mapped entity is
            created remotely without review.
        queue_threshold: Score at or above which an entity is queued for
            review; anything lower is dropped.
        sample_size: Default number of entities in a preview sample.
        page_size: Page size used for list pagination.
        write_interval: Minimum seconds between write requests.
        max_attempts: Attempt ceiling for rate-limited requests.
        backoff_base: First exponential backoff delay in seconds.
        backoff_cap: Upper bound for the exponential part of the delay.
        state_dir: Directory holding per-world import configs.
    """

    auto_import_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    queue_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    sample_size: int = Field(default=20, ge=1, le=500)
    page_size: int = Field(default=100, ge=1, le=500)
    write_interval: float = Field(default=0.9, ge=0.0)
    max_attempts: int = Field(default=8, ge=1, le=20)
    backoff_base: float = Field(default=0.5, gt=0.0)
    backoff_cap: float = Field(default=15.0, gt=0.0)
    state_dir: str = Field(default=".archivist_sync")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_thresholds(self) -> SyncConfig:
        if self.queue_threshold > self.auto_import_threshold:
            raise ValueError(
                "queue_threshold must not exceed auto_import_threshold"
            )
        return self


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    archivist: ArchivistConfig = Field(default_factory=ArchivistConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully: anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
