from __future__ import annotations

import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable

import requests
from pydantic import BaseModel

from ..config import Config
from ..errors import (
    RateLimited,
    TransportError,
    ValidationError,
    detail_text,
)

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
JITTER_MAX = 0.25

# 4xx statuses whose body explains what was wrong with the payload
_VALIDATION_STATUSES = frozenset({400, 409, 413, 422})


class EntityKind(str, Enum):
    """The five remote entity kinds and their collection endpoints."""

    CHARACTER = "Character"
    ITEM = "Item"
    LOCATION = "Location"
    FACTION = "Faction"
    SESSION = "Session"

    @property
    def endpoint(self) -> str:
        return f"/{self.value.lower()}s"

    @property
    def link_type(self) -> str:
        return self.value


class Page(BaseModel):
    """One normalised page of a list endpoint.

    The API returns either a bare array or a ``{"data": [...], "pages": N}``
    envelope; both collapse into this shape.
    """

    items: list[dict[str, Any]]
    page: int
    size: int
    pages: int | None = None

    model_config = {"frozen": True}

    @property
    def is_last(self) -> bool:
        if len(self.items) < self.size:
            return True
        return self.pages is not None and self.page >= self.pages


def backoff_delay(
    attempt: int,
    retry_after: float | None = None,
    base: float = 0.5,
    cap: float = 15.0,
) -> float:
    """Delay before retrying a rate-limited request, without jitter.

    ``max(retry_after, min(base * 2**attempt, cap))``; non-decreasing in
    *attempt* for a fixed *retry_after*.
    """
    exponential = min(base * (2**attempt), cap)
    if retry_after is None:
        return exponential
    return max(retry_after, exponential)


def normalize_page(data: Any, page: int, size: int) -> Page:
    """Collapse a list response into a ``Page``."""
    pages = None
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        raw = data.get("data")
        items = raw if isinstance(raw, list) else []
        if isinstance(data.get("pages"), int):
            pages = data["pages"]
    else:
        items = []
    return Page(
        items=[i for i in items if isinstance(i, dict)],
        page=page,
        size=size,
        pages=pages,
    )


def _unwrap(data: Any) -> dict[str, Any]:
    """Return the record from a single-object response (bare or enveloped)."""
    if isinstance(data, dict):
        inner = data.get("data")
        if isinstance(inner, dict):
            return inner
        return data
    return {}


def _retry_after_seconds(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by this API
        return None


def _error_detail(response: requests.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] if response.text else None
    if isinstance(body, dict):
        return body.get("detail") or body.get("message") or body
    return body


class RemoteClient:
    """Blocking client for the Archivist world API.

    Every request carries the ``x-api-key`` header. Writes are spaced by
    ``write_interval`` seconds measured from the previous write attempt.
    HTTP 429 responses are retried with capped exponential backoff; any
    other non-2xx status raises immediately.

    Args:
        config: Connection settings.
        page_size: Page size for list pagination.
        write_interval: Minimum spacing between write requests, in seconds.
        max_attempts: Attempt ceiling for rate-limited requests.
        backoff_base: First backoff delay in seconds.
        backoff_cap: Cap on the exponential part of the backoff.
        sleep: Sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        config: Config,
        page_size: int = 100,
        write_interval: float = 0.9,
        max_attempts: int = 8,
        backoff_base: float = 0.5,
        backoff_cap: float = 15.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.base_url = config.api_url.rstrip("/")
        self.page_size = page_size
        self.write_interval = write_interval
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep
        self._clock = clock
        self._thread_local = threading.local()
        self._write_lock = threading.Lock()
        self._last_write: float | None = None

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Content-Type": "application/json",
                "x-api-key": self.config.api_key,
            }
        )
        return session

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    def _throttle_write(self) -> None:
        with self._write_lock:
            if self._last_write is not None:
                wait = self.write_interval - (
                    self._clock() - self._last_write
                )
                if wait > 0:
                    self._sleep(wait)
            self._last_write = self._clock()

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """
        Send one API request, retrying on HTTP 429.

        Raises:
            RateLimited: 429 persisted for ``max_attempts`` attempts.
            ValidationError: 4xx with a structured reason.
            TransportError: Network failure or any other non-2xx status.
        """
        url = f"{self.base_url}{path}"
        session = self._get_session()
        retry_after: float | None = None

        for attempt in range(self.max_attempts):
            if method in WRITE_METHODS:
                self._throttle_write()
            try:
                response = session.request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    timeout=(10, 60),
                )
            except requests.RequestException as exc:
                raise TransportError(
                    f"{method} {path} failed: {exc}",
                    method=method,
                    path=path,
                ) from exc

            if response.status_code != 429:
                return self._handle_response(response, method, path)

            retry_after = _retry_after_seconds(response)
            if attempt + 1 >= self.max_attempts:
                break
            delay = backoff_delay(
                attempt, retry_after, self.backoff_base, self.backoff_cap
            ) + random.uniform(0, JITTER_MAX)
            logger.warning(
                "Rate limited on %s %s, attempt %d/%d, retrying in %.2fs",
                method,
                path,
                attempt + 1,
                self.max_attempts,
                delay,
            )
            self._sleep(delay)

        raise RateLimited(
            f"{method} {path} still rate limited after {self.max_attempts} attempts",
            attempts=self.max_attempts,
            retry_after=retry_after,
            method=method,
            path=path,
        )

    def _handle_response(
        self, response: requests.Response, method: str, path: str
    ) -> Any:
        status = response.status_code
        if 200 <= status < 300:
            if status == 204 or not response.content:
                return None
            return response.json()

        detail = _error_detail(response)
        message = f"{method} {path} failed: {status} {detail_text(detail)}".rstrip()
        if status in _VALIDATION_STATUSES and detail:
            raise ValidationError(
                message, status=status, detail=detail, method=method, path=path
            )
        raise TransportError(
            message, status=status, detail=detail, method=method, path=path
        )

    def _list_all(self, path: str, params: dict[str, Any]) -> list[dict]:
        """Follow ``page``/``size`` pagination until a short or final page."""
        records: list[dict] = []
        page_no = 1
        while True:
            data = self._request(
                "GET",
                path,
                params={**params, "page": page_no, "size": self.page_size},
            )
            page = normalize_page(data, page_no, self.page_size)
            records.extend(page.items)
            if page.is_last:
                break
            page_no += 1
        logger.debug(
            "Listed %d records from %s in %d page(s)",
            len(records),
            path,
            page_no,
        )
        return records

    # ------------------------------------------------------------------
    # Worlds
    # ------------------------------------------------------------------

    def list_worlds(self) -> list[dict]:
        """
        List the worlds (campaigns) visible to the API key.
        """
        return self._list_all("/worlds", {})

    def get_world(self, world_id: str) -> dict:
        """
        Get world details by id.
        """
        return _unwrap(self._request("GET", f"/worlds/{world_id}"))

    def create_world(self, payload: dict[str, Any]) -> dict:
        """
        Create a world from ``title`` and optional ``description``.
        """
        return _unwrap(self._request("POST", "/worlds", payload=payload))

    def update_world(self, world_id: str, payload: dict[str, Any]) -> dict:
        """
        Patch world fields such as ``title`` and ``description``.
        """
        return _unwrap(
            self._request("PATCH", f"/worlds/{world_id}", payload=payload)
        )

    def validate_connection(self) -> int:
        """
        Validate the API key by listing worlds.
        Returns the number of visible worlds.
        """
        return len(self.list_worlds())

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def list(self, kind: EntityKind, world_id: str) -> list[dict]:
        """
        List every record of *kind* in a world, following pagination.

        Args:
            kind: Entity kind to list.
            world_id: World (campaign) id.

        Returns:
            All records across all pages, in page order.
        """
        return self._list_all(kind.endpoint, {"world_id": world_id})

    def create(self, kind: EntityKind, payload: dict[str, Any]) -> dict:
        """
        Create a record and return it (including its new ``id``).

        Raises:
            ValueError: If *kind* is Session (read-only remotely).
            ValidationError: If the server rejects the payload.
        """
        if kind is EntityKind.SESSION:
            raise ValueError("Sessions cannot be created through the API")
        return _unwrap(self._request("POST", kind.endpoint, payload=payload))

    def update(
        self, kind: EntityKind, entity_id: str, payload: dict[str, Any]
    ) -> dict:
        """
        Replace the editable fields of one record.

        Raises:
            ValidationError: If the server rejects the payload, e.g. an
                oversized description.
        """
        return _unwrap(
            self._request(
                "PUT", f"{kind.endpoint}/{entity_id}", payload=payload
            )
        )

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        """
        Delete one record.
        """
        self._request("DELETE", f"{kind.endpoint}/{entity_id}")

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def list_links(
        self, world_id: str, from_id: str | None = None
    ) -> list[dict]:
        """
        List link edges of a world, optionally only those owned by *from_id*.
        """
        params: dict[str, Any] = {"world_id": world_id}
        if from_id:
            params["from_id"] = from_id
        return self._list_all("/links", params)
