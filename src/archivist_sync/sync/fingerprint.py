"""Content fingerprints for change and duplicate detection.

A fingerprint is the SHA-256 hex digest of an entity's normalised name,
description and image URL. Nothing else about the entity (ids, folder,
tags) takes part, so moving or re-binding an entity keeps its fingerprint.
"""

from __future__ import annotations

import hashlib
import re

from ..converters import html_to_markdown, looks_like_html
from .models import Entity

_SPACES = re.compile(r"[ \t\f\v]+")

# Separates the three fields so ("ab", "c") and ("a", "bc") differ
_FIELD_SEP = "\x1f"


def normalize_text(value: str | None) -> str:
    """Normalise text before hashing.

    Steps, in order:

    1. Strip BOM (``\\ufeff``).
    2. Replace ``\\r\\n`` and ``\\r`` with ``\\n``.
    3. Collapse runs of horizontal whitespace to one space.
    4. Right-strip each line.
    5. Strip leading and trailing empty lines.
    """
    if not value:
        return ""
    text = str(value).replace("\ufeff", "")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_SPACES.sub(" ", line).rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip("\n")


def fingerprint_fields(
    name: str | None, description: str | None, image_url: str | None
) -> str:
    """Fingerprint of the three synchronised fields."""
    payload = _FIELD_SEP.join(
        normalize_text(part) for part in (name, description, image_url)
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def markdown_description(html: str | None) -> str:
    """Markdown form of a stored HTML description, as extraction sees it."""
    html = str(html or "")
    return html_to_markdown(html) if looks_like_html(html) else html.strip()


def fingerprint_document(
    name: str | None, html: str | None, image_url: str | None
) -> str:
    """Fingerprint of a local document from its stored fields.

    Yields the same digest :func:`fingerprint` gives the entity extracted
    from that document, so a binding written here reads back as unchanged.
    """
    description = markdown_description(html) or str(html or "")
    return fingerprint_fields(str(name or "").strip(), description, image_url or None)


def fingerprint(entity: Entity) -> str:
    """Fingerprint of *entity*.

    The Markdown description is used when present, otherwise the HTML one.
    """
    description = entity.description_markdown or entity.description_html
    return fingerprint_fields(entity.name, description, entity.image_url)


def with_fingerprint(entity: Entity) -> Entity:
    """Return a copy of *entity* with its ``fingerprint`` filled in."""
    return entity.model_copy(update={"fingerprint": fingerprint(entity)})
