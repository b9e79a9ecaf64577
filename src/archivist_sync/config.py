"""Connection and runtime configuration for the sync service.

Reads Archivist API settings from CLI args, environment variables,
.env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    ARCHIVIST_API_KEY: API key sent as ``x-api-key`` (required)
    ARCHIVIST_API_URL: API base URL (optional, default: production endpoint)
    ARCHIVIST_WORLD_ID: Selected world/campaign id (optional)
    ARCHIVIST_USER_ID: Local user whose edits are mirrored (optional)
    ARCHIVIST_STORE_PATH: JSON snapshot of the local document tree (optional)
    ARCHIVIST_MAX_PARALLEL_REQUESTS: Max concurrent list requests (optional, default: 4)
    ARCHIVIST_REALTIME_SYNC: Mirror local edits as they happen (optional, default: true)
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://archivist-api-production.up.railway.app/v1"


@dataclass
class Config:
    api_key: str
    api_url: str = DEFAULT_API_URL
    world_id: str | None = None
    user_id: str | None = None
    store_path: str | None = None
    debug: bool = False
    realtime_sync: bool = True
    max_parallel_requests: int = 4


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ConfigError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ConfigError: If URL format is invalid or the API key is empty.
    """
    config.api_url = config.api_url.strip()

    if not config.api_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"Invalid API URL '{config.api_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.api_url)
    if not parsed.hostname:
        raise ConfigError(
            f"Invalid API URL '{config.api_url}': URL must include a hostname"
        )

    config.api_url = config.api_url.removesuffix("/")

    if not config.api_key.strip():
        raise ConfigError(
            "Archivist API key cannot be empty. Set ARCHIVIST_API_KEY environment variable."
        )

    if parsed.scheme == "http":
        logger.warning(
            "WARNING: API URL uses plain http; the API key is sent unencrypted."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    api_key: str | None = None,
    api_url: str | None = None,
    world_id: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        api_key: Override API key.
        api_url: Override API base URL.
        world_id: Override the selected world.
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Dict of values from the YAML ``archivist`` section.

    Returns:
        Validated Config instance.

    Raises:
        ConfigError: If the API key is missing after checking all sources,
            or a numeric setting is out of range.
    """
    fb = yaml_fallbacks or {}

    final_key = api_key or os.getenv("ARCHIVIST_API_KEY") or fb.get("api_key")
    if not final_key:
        raise ConfigError(
            "Archivist API key not found. Set ARCHIVIST_API_KEY environment variable, "
            "pass --api-key CLI argument, or add 'api_key' to config.yml."
        )

    final_url = (
        api_url
        or os.getenv("ARCHIVIST_API_URL")
        or fb.get("api_url")
        or DEFAULT_API_URL
    )
    final_world = (
        world_id or os.getenv("ARCHIVIST_WORLD_ID") or fb.get("world_id")
    )
    final_user = os.getenv("ARCHIVIST_USER_ID") or fb.get("user_id")
    final_store = os.getenv("ARCHIVIST_STORE_PATH") or fb.get("store_path")

    if debug:
        final_debug = True
    else:
        env_debug = _get_bool_env("ARCHIVIST_DEBUG")
        final_debug = (
            env_debug
            if env_debug is not None
            else bool(fb.get("debug", False))
        )

    env_realtime = _get_bool_env("ARCHIVIST_REALTIME_SYNC")
    final_realtime = (
        env_realtime
        if env_realtime is not None
        else bool(fb.get("realtime_sync", True))
    )

    max_parallel_raw = os.getenv("ARCHIVIST_MAX_PARALLEL_REQUESTS")
    if max_parallel_raw is not None:
        try:
            final_max_parallel = int(max_parallel_raw)
        except ValueError:
            raise ConfigError(
                f"Invalid ARCHIVIST_MAX_PARALLEL_REQUESTS '{max_parallel_raw}': must be a number between 1 and 16"
            ) from None
        if not (1 <= final_max_parallel <= 16):
            raise ConfigError(
                f"Invalid ARCHIVIST_MAX_PARALLEL_REQUESTS '{max_parallel_raw}': must be a number between 1 and 16"
            )
    elif "max_parallel_requests" in fb:
        final_max_parallel = int(fb["max_parallel_requests"])
    else:
        final_max_parallel = 4

    config = Config(
        api_key=final_key.strip(),
        api_url=final_url,
        world_id=final_world.strip() if final_world else None,
        user_id=final_user,
        store_path=final_store,
        debug=final_debug,
        realtime_sync=final_realtime,
        max_parallel_requests=final_max_parallel,
    )

    validate_config(config)

    return config
