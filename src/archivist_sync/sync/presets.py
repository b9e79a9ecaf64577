"""System presets: where each game system keeps names, images and text.

A preset lists, per source family (``pc``, ``npc``, ``item``, ``scene``,
``journal``), the field paths to read the name, image and description
from. Paths are dotted and resolve against an entity's ``source``
snapshot (``system.details.biography.value``).

Selection tries a fixed order (the detected system id first, then
``dnd5e``, ``pf2e``). A preset wins only when every path it references
resolves on the current schema sample; otherwise the generic preset is
used, which discovers description-like string paths at runtime.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

logger = logging.getLogger(__name__)

FAMILIES = ("pc", "npc", "item", "scene", "journal")
PRESET_ORDER = ("dnd5e", "pf2e")

_DISCOVER = re.compile(r"(bio|descr|summary|notes)", re.IGNORECASE)
_BIO = re.compile(r"(^|\.)(biography|bio|backstory)(\.|$)", re.IGNORECASE)
MAX_DISCOVERY_DEPTH = 6


@dataclass(frozen=True)
class FamilyPaths:
    """Field paths for one source family; descriptions are tried in order."""

    name: str = "name"
    image: str = "img"
    description: tuple[str, ...] = ()

    def referenced(self) -> tuple[str, ...]:
        return (self.name, self.image, *self.description)


@dataclass(frozen=True)
class Preset:
    name: str
    families: dict[str, FamilyPaths] = field(default_factory=dict)
    discover: bool = False

    def paths_for(self, family: str) -> FamilyPaths:
        return self.families.get(family, FamilyPaths())


_JOURNAL = FamilyPaths(description=("content",))
_SCENE = FamilyPaths(description=("content",))

DND5E = Preset(
    name="dnd5e",
    families={
        "pc": FamilyPaths(description=("system.details.biography.value",)),
        "npc": FamilyPaths(
            description=(
                "system.details.biography.value",
                "system.details.biography.public",
            )
        ),
        "item": FamilyPaths(description=("system.description.value",)),
        "scene": _SCENE,
        "journal": _JOURNAL,
    },
)

PF2E = Preset(
    name="pf2e",
    families={
        "pc": FamilyPaths(
            description=(
                "system.details.biography.backstory",
                "system.details.publicNotes",
            )
        ),
        "npc": FamilyPaths(
            description=(
                "system.details.publicNotes",
                "system.details.notes.description",
            )
        ),
        "item": FamilyPaths(description=("system.description.value",)),
        "scene": _SCENE,
        "journal": _JOURNAL,
    },
)

GENERIC_DESCRIPTION_PATHS = (
    "system.details.biography.value",
    "system.details.biography.public",
    "system.description.value",
    "system.details.description",
    "system.details.publicNotes",
    "system.description",
    "system.biography",
    "system.notes",
    "system.summary",
)

GENERIC = Preset(
    name="generic",
    families={
        "pc": FamilyPaths(description=GENERIC_DESCRIPTION_PATHS),
        "npc": FamilyPaths(description=GENERIC_DESCRIPTION_PATHS),
        "item": FamilyPaths(description=GENERIC_DESCRIPTION_PATHS),
        "scene": _SCENE,
        "journal": _JOURNAL,
    },
    discover=True,
)

PRESETS: dict[str, Preset] = {p.name: p for p in (DND5E, PF2E)}


def resolve_path(obj: Any, path: str) -> Any:
    """Follow a dotted *path* through dicts and lists; ``None`` if missing."""
    cur = obj
    for part in path.split("."):
        if isinstance(cur, dict):
            cur = cur.get(part)
        elif isinstance(cur, list) and part.isdigit():
            index = int(part)
            cur = cur[index] if index < len(cur) else None
        else:
            return None
        if cur is None:
            return None
    return cur


def score_path(path: str) -> int:
    """Rank a discovered path: bio > descr > summary > notes, shorter wins."""
    score = 0
    if _BIO.search(path):
        score += 1000
    if re.search("descr", path, re.IGNORECASE):
        score += 500
    if re.search("summary", path, re.IGNORECASE):
        score += 120
    if re.search("notes", path, re.IGNORECASE):
        score += 100
    return score - len(path.split("."))


def discover_string_paths(
    obj: Any, prefix: str = "system", depth: int = 0
) -> list[str]:
    """Dotted paths under *obj* holding description-like strings."""
    found: list[str] = []
    if not isinstance(obj, dict) or depth >= MAX_DISCOVERY_DEPTH:
        return found
    for key, value in obj.items():
        path = f"{prefix}.{key}"
        if isinstance(value, str):
            if _DISCOVER.search(path):
                found.append(path)
        elif isinstance(value, dict):
            found.extend(discover_string_paths(value, path, depth + 1))
    return found


def description_candidates(
    preset: Preset, family: str, source: dict[str, Any]
) -> list[str]:
    """Ordered description paths to try for one source snapshot."""
    candidates = list(preset.paths_for(family).description)
    if preset.discover:
        discovered = discover_string_paths(source.get("system") or {})
        seen = set(candidates)
        extra = [p for p in discovered if p not in seen]
        candidates.extend(sorted(extra, key=score_path, reverse=True))
    return candidates


def first_text(source: dict[str, Any], paths: Iterable[str]) -> tuple[str | None, str]:
    """Return ``(path, value)`` of the first non-empty string among *paths*."""
    for path in paths:
        value = resolve_path(source, path)
        if isinstance(value, dict):
            value = value.get("value")
        if isinstance(value, str) and value.strip():
            return path, value
    return None, ""


def validate_preset(
    preset: Preset, samples: dict[str, list[dict[str, Any]]]
) -> bool:
    """True when every path *preset* references resolves on the sample.

    A family's paths must each resolve on at least one sampled source of
    that family. Families without samples are not checked, but at least
    one family must have been checked.
    """
    checked = False
    for family, sources in samples.items():
        if not sources or family not in preset.families:
            continue
        checked = True
        for path in preset.paths_for(family).referenced():
            if not any(resolve_path(s, path) is not None for s in sources):
                logger.debug(
                    "Preset %s rejected: %s not found on %s sample",
                    preset.name,
                    path,
                    family,
                )
                return False
    return checked


def select_preset(
    system_id: str | None, samples: dict[str, list[dict[str, Any]]]
) -> Preset:
    """Pick the first fully-valid preset, or the generic one.

    Args:
        system_id: Runtime-detected game system id (``dnd5e``).
        samples: Source snapshots grouped by family.
    """
    order: list[str] = []
    if system_id and system_id.lower() in PRESETS:
        order.append(system_id.lower())
    order.extend(name for name in PRESET_ORDER if name not in order)
    for name in order:
        preset = PRESETS[name]
        if validate_preset(preset, samples):
            logger.info("Using mapping preset '%s'", name)
            return preset
    logger.info("No system preset validated, using generic heuristics")
    return GENERIC
