"""Remote payload builders for the five entity kinds.

Field names differ per kind: characters use ``character_name``, sessions
use ``title``/``summary``, everything else ``name``/``description``.
Create payloads carry ``campaign_id``. Images are only sent when they are
absolute https URLs, and descriptions are cut to the configured ceiling.
"""

from __future__ import annotations

from typing import Any, Callable
from urllib.parse import urlparse

from ..converters import html_to_markdown, looks_like_html, resolve_crosslinks
from ..core.client import EntityKind
from .models import MappingProposal

DEFAULT_MAX_DESCRIPTION = 10000
TRUNCATION_MARK = "…"


def name_field(kind: EntityKind) -> str:
    if kind is EntityKind.CHARACTER:
        return "character_name"
    if kind is EntityKind.SESSION:
        return "title"
    return "name"


def description_field(kind: EntityKind) -> str:
    return "summary" if kind is EntityKind.SESSION else "description"


def remote_name(kind: EntityKind, record: dict[str, Any]) -> str:
    """Display name of a remote record, whatever field it uses."""
    value = (
        record.get(name_field(kind))
        or record.get("name")
        or record.get("title")
        or ""
    )
    return str(value).strip()


def remote_description(kind: EntityKind, record: dict[str, Any]) -> str:
    return str(record.get(description_field(kind)) or "")


def is_secure_url(value: Any) -> bool:
    """True for a non-empty absolute https URL."""
    if not isinstance(value, str) or not value.strip():
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme == "https" and bool(parsed.netloc)


def truncate(text: str, limit: int = DEFAULT_MAX_DESCRIPTION) -> str:
    """Cut *text* to at most *limit* characters, marking the cut."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(0, limit - len(TRUNCATION_MARK))].rstrip() + TRUNCATION_MARK


def to_remote_markdown(
    text: str,
    lookup: Callable[[str], str | None] | None = None,
    limit: int = DEFAULT_MAX_DESCRIPTION,
) -> str:
    """Local HTML (or plain text) to remote Markdown with crosslinks resolved."""
    text = str(text or "")
    # Crosslinks first: html_to_markdown strips unresolved @UUID tokens
    text = resolve_crosslinks(text, lookup)
    markdown = html_to_markdown(text) if looks_like_html(text) else text.strip()
    return truncate(markdown, limit)


def entity_payload(
    kind: EntityKind,
    name: str,
    description: str = "",
    image: str | None = None,
    world_id: str | None = None,
    character_type: str | None = None,
    parent_id: str | None = None,
    session_date: str | None = None,
) -> dict[str, Any]:
    """Build the JSON body for a create or update call.

    ``world_id`` is only needed on create (sent as ``campaign_id``).
    """
    payload: dict[str, Any] = {
        name_field(kind): name,
        description_field(kind): description,
    }
    if kind is EntityKind.CHARACTER:
        payload["type"] = "PC" if character_type == "PC" else "NPC"
    if kind is EntityKind.LOCATION and parent_id:
        payload["parent_id"] = parent_id
    if kind is EntityKind.SESSION and session_date:
        payload["session_date"] = session_date
    if world_id and kind is not EntityKind.SESSION:
        payload["campaign_id"] = world_id
    if is_secure_url(image):
        payload["image"] = str(image).strip()
    return payload


def proposal_payload(
    proposal: MappingProposal,
    world_id: str,
    lookup: Callable[[str], str | None] | None = None,
    limit: int = DEFAULT_MAX_DESCRIPTION,
) -> dict[str, Any]:
    """Create payload for a mapping proposal."""
    entity = proposal.entity
    return entity_payload(
        proposal.target_type,
        name=str(proposal.payload.get("name") or entity.name),
        description=to_remote_markdown(
            proposal.payload.get("description") or "", lookup, limit
        ),
        image=proposal.payload.get("image"),
        world_id=world_id,
        character_type="PC" if "PC" in proposal.labels else "NPC",
        parent_id=entity.parent_id,
    )
