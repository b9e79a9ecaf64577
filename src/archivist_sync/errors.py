"""Error taxonomy for the sync core.

Only the network layer and the apply phase raise these. Extraction,
mapping and fingerprinting degrade instead of raising.

- ``TransportError`` -- network failure or terminal non-2xx response.
- ``RateLimited`` -- HTTP 429 still returned after the attempt ceiling.
- ``ValidationError`` -- 4xx with a structured reason from the server.
- ``ReconcileApplyError`` -- one plan item failed to apply.
- ``ConfigError`` -- missing API key or world selection.
"""

from __future__ import annotations

import re
from typing import Any

_DESCRIPTION_TOO_LONG = re.compile(
    r"description.*(exceeds|too long|maximum length|max(imum)? length)",
    re.IGNORECASE | re.DOTALL,
)


class ArchivistSyncError(Exception):
    """Base class for all sync errors."""


class ConfigError(ArchivistSyncError, ValueError):
    """Required configuration (API key, world) is missing or invalid."""


class TransportError(ArchivistSyncError):
    """A request failed at the network layer or with a terminal status.

    Attributes:
        status: HTTP status code, or ``None`` for connection failures.
        detail: Structured ``detail``/``message`` returned by the server.
        method: HTTP method of the failed request.
        path: API path of the failed request.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        detail: Any = None,
        method: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail
        self.method = method
        self.path = path


class RateLimited(TransportError):
    """HTTP 429 persisted past the retry ceiling.

    Attributes:
        attempts: Number of attempts made before giving up.
        retry_after: Last ``Retry-After`` value seen, in seconds.
    """

    def __init__(
        self,
        message: str,
        attempts: int,
        retry_after: float | None = None,
        method: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(
            message, status=429, method=method, path=path
        )
        self.attempts = attempts
        self.retry_after = retry_after


class ValidationError(TransportError):
    """The server rejected the payload with a structured 4xx reason."""

    @property
    def is_description_too_long(self) -> bool:
        """True when the server reported an oversized description."""
        text = detail_text(self.detail) or str(self)
        return bool(_DESCRIPTION_TOO_LONG.search(text))


class ReconcileApplyError(ArchivistSyncError):
    """Applying a single plan item failed.

    Attributes:
        item_id: Remote id of the plan item.
        action: ``"diff"``, ``"delete"`` or ``"import"``.
    """

    def __init__(self, message: str, item_id: str, action: str) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.action = action


def detail_text(detail: Any) -> str:
    """Flatten a server error ``detail`` into a single readable string.

    FastAPI-style servers return either a string or a list of
    ``{"loc": [...], "msg": "..."}`` objects.
    """
    if detail is None:
        return ""
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list):
        parts = []
        for entry in detail:
            if isinstance(entry, dict):
                loc = ".".join(str(p) for p in entry.get("loc", []) or [])
                msg = str(entry.get("msg") or entry.get("message") or "")
                parts.append(f"{loc}: {msg}" if loc else msg)
            else:
                parts.append(str(entry))
        return "; ".join(p for p in parts if p)
    if isinstance(detail, dict):
        return str(
            detail.get("msg")
            or detail.get("message")
            or detail.get("detail")
            or detail
        )
    return str(detail)
