"""Import configuration persistence.

Each world gets one ``ImportConfig`` stored as
``<state_dir>/import_config_{world_id}.json``. The config is replaced
wholesale on save; the file is written to a temp file first and then moved
over the target with ``os.replace()`` so readers never see partial data.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from .models import ImportConfig

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class ImportConfigStore:
    """Load and save per-world import configs.

    Args:
        state_dir: Directory where config files are stored
            (typically ``.archivist_sync/``).
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    def load(self, world_id: str) -> ImportConfig:
        """Load the config for *world_id*.

        A missing or unreadable file yields a fresh default config bound to
        the world.
        """
        path = self._path(world_id)
        if not path.exists():
            return ImportConfig(world_id=world_id)
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
            return ImportConfig.model_validate(data)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(
                "Import config %s is invalid, using defaults: %s", path, e
            )
            return ImportConfig(world_id=world_id)

    def save(self, config: ImportConfig) -> Path:
        """Persist *config* atomically and return the file path.

        Raises:
            ValueError: If the config has no ``world_id``.
        """
        if not config.world_id:
            raise ValueError("ImportConfig.world_id is required to save")
        self._state_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(config.world_id)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(config.model_dump_json(indent=2))
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Saved import config for %s to %s", config.world_id, target)
        return target

    def _path(self, world_id: str) -> Path:
        return self._state_dir / f"import_config_{_UNSAFE.sub('_', world_id)}.json"
