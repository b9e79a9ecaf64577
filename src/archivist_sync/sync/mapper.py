"""Map extracted entities onto the remote schema with a confidence score.

``FieldMapper.map`` is pure: given the same entity, preset and corrections
it always returns the same proposal, never performs I/O and never raises
on malformed input (missing fields only lower the score).

Resolution order:

1. Field paths: preset, then the import config's per-family paths, then
   any correction's paths.
2. Corrections keyed by ``kind|subtype|folder`` apply first; a correction
   for the entity's own source id overrides it.
3. Score: a monotonic function of the confident signals present, capped at
   1.0; any correction lifts it to at least ``CORRECTION_FLOOR``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from ..core.client import EntityKind
from .extractor import folder_hint
from .models import (
    CorrectionRule,
    Entity,
    FieldPaths,
    ImportClass,
    ImportConfig,
    MappingProposal,
)
from .presets import (
    FAMILIES,
    GENERIC,
    Preset,
    description_candidates,
    first_text,
    resolve_path,
    select_preset,
)

logger = logging.getLogger(__name__)

CORRECTION_FLOOR = 0.8
BASELINE = 0.55
UNNAMED_BASELINE = 0.25

_FACTION_NAME = re.compile(
    r"order|guild|house|clan|legion|company|collective", re.IGNORECASE
)

# Source family -> kind it naturally maps to
_NATURAL_KIND = {
    "pc": EntityKind.CHARACTER,
    "npc": EntityKind.CHARACTER,
    "item": EntityKind.ITEM,
    "scene": EntityKind.LOCATION,
}


def correction_key(entity: Entity) -> str:
    """Key used by by-key corrections: ``kind|subtype|folder-lowercased``."""
    return f"{entity.kind.value}|{entity.subtype}|{entity.folder.lower()}"


def classify(
    score: float, auto_threshold: float, queue_threshold: float
) -> ImportClass:
    """Threshold band of *score*: auto-import, queue for review, or drop."""
    if score >= auto_threshold:
        return ImportClass.AUTO_IMPORT
    if score >= queue_threshold:
        return ImportClass.QUEUED
    return ImportClass.DROPPED


def merge_corrections(
    by_key: CorrectionRule | None, by_id: CorrectionRule | None
) -> CorrectionRule | None:
    """Combine a by-key and a by-id correction; by-id wins field by field."""
    if by_key is None:
        return by_id
    if by_id is None:
        return by_key
    return CorrectionRule(
        target_type=by_id.target_type or by_key.target_type,
        field_paths={**by_key.field_paths, **by_id.field_paths},
        include=by_id.include if by_id.include is not None else by_key.include,
    )


class FieldMapper:
    """Turn entities into ``MappingProposal`` objects.

    Args:
        preset: Field-path preset (see ``select_preset``).
        import_config: Per-family path overrides and user corrections.
    """

    def __init__(
        self,
        preset: Preset = GENERIC,
        import_config: ImportConfig | None = None,
    ) -> None:
        self.preset = preset
        self.import_config = import_config or ImportConfig()

    @classmethod
    def for_entities(
        cls,
        entities: Iterable[Entity],
        system_id: str | None = None,
        import_config: ImportConfig | None = None,
    ) -> FieldMapper:
        """Build a mapper whose preset is validated against *entities*."""
        samples: dict[str, list[dict[str, Any]]] = {f: [] for f in FAMILIES}
        for entity in entities:
            family = str(entity.source.get("family") or "")
            if family in samples:
                samples[family].append(entity.source)
        return cls(select_preset(system_id, samples), import_config)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def correction_for(self, entity: Entity) -> CorrectionRule | None:
        corrections = self.import_config.corrections
        by_id = corrections.by_id.get(entity.source_path) or corrections.by_id.get(
            entity.local_id
        )
        return merge_corrections(
            corrections.by_key.get(correction_key(entity)), by_id
        )

    def map(self, entity: Entity) -> MappingProposal:
        correction = self.correction_for(entity)
        target = (
            correction.target_type
            if correction and correction.target_type
            else entity.kind
        )
        family = str(entity.source.get("family") or "journal")
        payload = self._payload(entity, family, correction)

        score = self._score(entity, family, target, payload)
        if correction is not None:
            score = max(score, CORRECTION_FLOOR)

        labels: list[str] = []
        if target is EntityKind.CHARACTER:
            labels.append("PC" if entity.subtype == "PC" else "NPC")
        if correction is not None:
            labels.append("corrected")

        return MappingProposal(
            entity=entity,
            target_type=target,
            payload=payload,
            score=round(min(score, 1.0), 4),
            labels=labels,
            preset=self.preset.name,
            corrected=correction is not None,
            include=not (correction is not None and correction.include is False),
        )

    def _config_paths(self, family: str) -> FieldPaths | None:
        if family in ("pc", "npc", "item"):
            return getattr(self.import_config, family)
        return None

    def _payload(
        self,
        entity: Entity,
        family: str,
        correction: CorrectionRule | None,
    ) -> dict[str, Any]:
        source = entity.source
        family_paths = self.preset.paths_for(family)
        name_path = family_paths.name
        image_path = family_paths.image
        desc_paths = description_candidates(self.preset, family, source)

        configured = self._config_paths(family)
        if configured is not None:
            name_path = configured.name_path or name_path
            image_path = configured.image_path or image_path
            if configured.description_path:
                desc_paths = [configured.description_path, *desc_paths]

        if correction is not None:
            overrides = correction.field_paths
            name_path = overrides.get("name", name_path)
            image_path = overrides.get("image", image_path)
            if "description" in overrides:
                desc_paths = [overrides["description"], *desc_paths]

        name = resolve_path(source, name_path)
        image = resolve_path(source, image_path)
        _, description = first_text(source, desc_paths)
        return {
            "name": (name if isinstance(name, str) else "").strip()
            or entity.name,
            "image": image if isinstance(image, str) and image else entity.image_url,
            "description": description or entity.description_html,
        }

    def _score(
        self,
        entity: Entity,
        family: str,
        target: EntityKind,
        payload: dict[str, Any],
    ) -> float:
        score = BASELINE if payload.get("name") else UNNAMED_BASELINE
        if payload.get("image"):
            score += 0.05
        if entity.tags:
            score += 0.05
        if payload.get("description"):
            score += 0.05

        natural = _NATURAL_KIND.get(family)
        if natural is not None and natural is target:
            score += 0.2
            if family == "pc":
                score += 0.1
            elif family == "npc":
                score += 0.07
        elif family == "journal" and entity.kind is target:
            hint = folder_hint(entity.folder)
            if hint is not None and hint[0] is target:
                score += 0.15
            elif entity.subtype:
                score += 0.1
            if target is EntityKind.FACTION and _FACTION_NAME.search(entity.name):
                score += 0.1

        if entity.references:
            score += 0.03
        return min(score, 1.0)
