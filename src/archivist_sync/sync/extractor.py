"""Walk the local document tree and produce normalised ``Entity`` records.

Extraction is side-effect free and restartable: every call to ``extract``
starts a fresh walk. Malformed documents are skipped with a debug log and
never abort the walk.

Classification signals, strongest first:

1. Declared sheet type in the document's sync metadata.
2. Host document type (actor ``character`` vs ``npc``, item type).
3. Containing folder name (``Factions``, ``Locations``, ...).
"""

from __future__ import annotations

import logging
import re
from itertools import islice
from typing import Any, Iterator

from pydantic import ValidationError as PydanticValidationError

from ..core.client import EntityKind
from .fingerprint import markdown_description, with_fingerprint
from .metadata import SHEET_KINDS, parse_sync_meta
from .models import Entity, ImportConfig, IncludeRules
from .presets import GENERIC_DESCRIPTION_PATHS, first_text
from .store import MAX_DEPTH, RECAPS_SHEET, LocalDocument, LocalStore, walk

logger = logging.getLogger(__name__)

PC_TYPES = frozenset({"character", "pc"})
NPC_TYPES = frozenset({"npc", "monster"})

_HASHTAG = re.compile(r"#([\w-]{2,})")
_REFERENCE = re.compile(r"@UUID\[([^\]]+)\]")

# Folder-name hints for journals without a declared sheet type
FOLDER_HINTS: tuple[tuple[re.Pattern, EntityKind, str], ...] = (
    (
        re.compile(r"faction|organi[sz]ation|guild|order|house|clan", re.I),
        EntityKind.FACTION,
        "faction",
    ),
    (
        re.compile(r"location|place|region|city|town|map", re.I),
        EntityKind.LOCATION,
        "location",
    ),
    (re.compile(r"session|recap", re.I), EntityKind.SESSION, "recap"),
    (re.compile(r"\bpcs?\b|player", re.I), EntityKind.CHARACTER, "PC"),
    (re.compile(r"character|npc|people", re.I), EntityKind.CHARACTER, "NPC"),
    (re.compile(r"item|loot|treasure|equipment", re.I), EntityKind.ITEM, "item"),
)


def folder_hint(folder: str) -> tuple[EntityKind, str] | None:
    """Kind and subtype suggested by a folder name, if any."""
    for pattern, kind, subtype in FOLDER_HINTS:
        if pattern.search(folder or ""):
            return kind, subtype
    return None


def collect_tags(text: str) -> list[str]:
    """Lower-cased ``#hashtags`` found in *text*, in first-seen order."""
    seen: dict[str, None] = {}
    for match in _HASHTAG.finditer(str(text or "")):
        seen.setdefault(match.group(1).lower(), None)
    return list(seen)


def collect_references(text: str) -> list[str]:
    """Host references (``Actor.abc``) from ``@UUID[...]`` tokens."""
    seen: dict[str, None] = {}
    for match in _REFERENCE.finditer(str(text or "")):
        seen.setdefault(match.group(1), None)
    return list(seen)


def flatten_stats(system: dict[str, Any]) -> dict[str, Any]:
    """Pick a few common stat blocks out of game-system data."""
    stats: dict[str, Any] = {}
    attributes = system.get("attributes") or {}
    details = system.get("details") or {}
    if not isinstance(attributes, dict) or not isinstance(details, dict):
        return stats
    hp = attributes.get("hp")
    if isinstance(hp, dict):
        hp = hp.get("value")
    ac = attributes.get("ac")
    if isinstance(ac, dict):
        ac = ac.get("value")
    level = details.get("level") or details.get("cr")
    if isinstance(level, dict):
        level = level.get("value")
    for key, value in (("hp", hp), ("ac", ac), ("level", level)):
        if value is not None:
            stats[key] = value
    for key in ("alignment", "race", "class"):
        if details.get(key):
            stats[key] = str(details[key])
    return stats


def _in_folders(doc: LocalDocument, folders: list[str]) -> bool:
    if not folders:
        return True
    wanted = {f.lower() for f in folders}
    return doc.folder.lower() in wanted


class EntityExtractor:
    """Produce ``Entity`` records from a ``LocalStore``.

    Args:
        store: The local document store to read.
        import_config: Supplies the folder, ownership and placement filters.
        max_depth: Maximum journal nesting depth to walk.
    """

    def __init__(
        self,
        store: LocalStore,
        import_config: ImportConfig | None = None,
        max_depth: int = MAX_DEPTH,
    ) -> None:
        self.store = store
        self.import_config = import_config or ImportConfig()
        self.max_depth = max_depth

    @property
    def rules(self) -> IncludeRules:
        return self.import_config.include

    def extract(self, sample_size: int | None = None) -> list[Entity]:
        """Extract entities, at most *sample_size* of them when given."""
        entities = self.iter_entities()
        if sample_size is not None and sample_size > 0:
            return list(islice(entities, sample_size))
        return list(entities)

    def iter_entities(self) -> Iterator[Entity]:
        for doc in self._iter_sources():
            try:
                entity = self._to_entity(doc)
            except (
                AttributeError,
                TypeError,
                ValueError,
                PydanticValidationError,
            ) as e:
                logger.debug("Skipping malformed document %s: %s", doc.id, e)
                continue
            if entity is not None:
                yield with_fingerprint(entity)

    # ------------------------------------------------------------------
    # Source selection
    # ------------------------------------------------------------------

    def _iter_sources(self) -> Iterator[LocalDocument]:
        included_actors: list[LocalDocument] = []
        for actor in self.store.list_documents("actors"):
            if self._include_actor(actor):
                included_actors.append(actor)
                yield actor

        for item in self.store.list_documents("items"):
            if _in_folders(item, self.rules.item_folders):
                yield item
        for actor in included_actors:
            if self._include_owned_items(actor):
                yield from actor.items

        yield from self.store.list_documents("scenes")

        journals = self.store.list_documents("journals")
        yield from walk(journals, self.max_depth)

    def _include_actor(self, actor: LocalDocument) -> bool:
        doc_type = actor.doc_type.lower()
        if doc_type in PC_TYPES:
            if not _in_folders(actor, self.rules.pc_folders):
                return False
            if self.rules.must_have_player_owner and not actor.owners:
                return False
            return True
        if doc_type in NPC_TYPES:
            if not _in_folders(actor, self.rules.npc_folders):
                return False
            if self.rules.npc_require_placed_token and not actor.placed:
                return False
            return True
        return False

    def _include_owned_items(self, actor: LocalDocument) -> bool:
        mode = self.rules.actor_owned_items_from
        doc_type = actor.doc_type.lower()
        if mode == "pc":
            return doc_type in PC_TYPES
        if mode == "pc+npc":
            return True
        return False

    # ------------------------------------------------------------------
    # Normalisation
    # ------------------------------------------------------------------

    def _to_entity(self, doc: LocalDocument) -> Entity | None:
        if doc.collection == "actors":
            return self._from_actor(doc)
        if doc.collection == "items":
            return self._from_item(doc)
        if doc.collection == "scenes":
            return self._build(
                doc, EntityKind.LOCATION, "scene", "scene", doc.content
            )
        if doc.collection in ("journals", "pages"):
            return self._from_journal(doc)
        return None

    def _from_actor(self, doc: LocalDocument) -> Entity:
        is_pc = doc.doc_type.lower() in PC_TYPES
        _, html = first_text(_snapshot(doc, ""), GENERIC_DESCRIPTION_PATHS)
        return self._build(
            doc,
            EntityKind.CHARACTER,
            "PC" if is_pc else "NPC",
            "pc" if is_pc else "npc",
            html,
        )

    def _from_item(self, doc: LocalDocument) -> Entity:
        _, html = first_text(
            _snapshot(doc, ""),
            ("system.description.value", "system.description"),
        )
        return self._build(
            doc, EntityKind.ITEM, doc.doc_type or "item", "item", html
        )

    def _from_journal(self, doc: LocalDocument) -> Entity | None:
        meta = parse_sync_meta(doc.metadata, doc.id)
        sheet = str(meta.sheet_type or "").lower()
        if sheet == RECAPS_SHEET:
            return None
        kind = SHEET_KINDS.get(sheet)
        if kind is not None:
            subtype = _sheet_subtype(sheet)
        else:
            if doc.collection == "pages":
                return None
            if not _in_folders(doc, self.rules.journal_folders):
                return None
            hint = folder_hint(doc.folder)
            if hint is None:
                return None
            kind, subtype = hint
        html = doc.content or "\n\n".join(
            p.content
            for p in doc.pages
            if p.content and not parse_sync_meta(p.metadata, p.id).sheet_type
        )
        return self._build(
            doc,
            kind,
            subtype,
            "journal",
            html,
            remote_parent=meta.parent_location_id,
        )

    def _build(
        self,
        doc: LocalDocument,
        kind: EntityKind,
        subtype: str,
        family: str,
        html: str,
        remote_parent: str | None = None,
    ) -> Entity:
        meta = parse_sync_meta(doc.metadata, doc.id)
        html = str(html or "")
        tags: dict[str, None] = {}
        if doc.folder:
            tags[doc.folder.lower()] = None
        for tag in collect_tags(html):
            tags.setdefault(tag, None)
        return Entity(
            local_id=doc.id,
            remote_id=meta.remote_id,
            kind=kind,
            subtype=subtype,
            name=doc.name.strip(),
            description_html=html,
            description_markdown=markdown_description(html),
            image_url=doc.img or None,
            parent_id=remote_parent if kind is EntityKind.LOCATION else None,
            folder=doc.folder,
            source_path=doc.uuid,
            tags=list(tags),
            references=collect_references(html),
            source=_snapshot(doc, family),
        )


def _sheet_subtype(sheet: str) -> str:
    if sheet in ("pc", "character"):
        return "PC"
    if sheet == "npc":
        return "NPC"
    return sheet


def _snapshot(doc: LocalDocument, family: str) -> dict[str, Any]:
    """Plain view of *doc* that preset field paths resolve against."""
    return {
        "family": family,
        "name": doc.name,
        "img": doc.img,
        "type": doc.doc_type,
        "folder": doc.folder,
        "content": doc.content,
        "system": doc.system,
        "owners": list(doc.owners),
        "placed": doc.placed,
        "stats": flatten_stats(doc.system),
    }
