"""Bulk import of local entities into the remote world.

Pipeline per entity: extract -> map (preset + corrections) -> classify by
score -> create or update remotely -> bind the remote id and fingerprint
on the source document.

Classification bands (``SyncConfig`` thresholds A and B):

- ``score >= A``: created (or updated, when already bound) remotely.
- ``B <= score < A``: queued for review, nothing is written.
- ``score < B``: dropped.

Entities excluded by a per-id correction (``include=False``) are dropped,
and bound entities whose fingerprint has not changed are skipped.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Callable

from ..core.client import EntityKind
from ..errors import ArchivistSyncError
from .context import SyncContext
from .extractor import EntityExtractor
from .mapper import FieldMapper, classify
from .metadata import read_sync_meta, write_sync_meta
from .models import Entity, ImportClass, ImportSummary, MappingProposal
from .payloads import entity_payload, proposal_payload, to_remote_markdown

logger = logging.getLogger(__name__)

_IMPORT = {"import": True}

ProgressCallback = Callable[[ImportSummary, int], None]


class ImporterService:
    """Sample, classify and push local entities.

    Args:
        context: Shared service context.
        system_id: Detected game system id, used to pick a preset.
    """

    def __init__(self, context: SyncContext, system_id: str | None = None) -> None:
        self.context = context
        self.system_id = system_id

    def _extract(self, sample_size: int | None = None) -> list[Entity]:
        extractor = EntityExtractor(self.context.store, self.context.import_config)
        return extractor.extract(sample_size)

    def _mapper(self, entities: list[Entity]) -> FieldMapper:
        return FieldMapper.for_entities(
            entities, self.system_id, self.context.import_config
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def sample(self, sample_size: int | None = None) -> list[MappingProposal]:
        """Proposals for a bounded sample of entities; no network access."""
        size = sample_size or self.context.settings.sample_size
        entities = self._extract(size)
        mapper = self._mapper(entities)
        return [mapper.map(e) for e in entities]

    def classify(
        self,
        proposals: list[MappingProposal],
        auto_threshold: float | None = None,
        queue_threshold: float | None = None,
    ) -> dict[ImportClass, list[MappingProposal]]:
        """Group proposals into auto-import, queued and dropped bands."""
        a = (
            auto_threshold
            if auto_threshold is not None
            else self.context.settings.auto_import_threshold
        )
        b = (
            queue_threshold
            if queue_threshold is not None
            else self.context.settings.queue_threshold
        )
        bands: dict[ImportClass, list[MappingProposal]] = {
            band: [] for band in ImportClass
        }
        for proposal in proposals:
            band = (
                classify(proposal.score, a, b)
                if proposal.include
                else ImportClass.DROPPED
            )
            bands[band].append(proposal)
        return bands

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def run_import(
        self,
        auto_threshold: float | None = None,
        queue_threshold: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ImportSummary:
        """Import every extracted entity according to its score band.

        Raises:
            ConfigError: API key or world missing.
        """
        world_id = self.context.require_configured()
        entities = self._extract()
        mapper = self._mapper(entities)
        proposals = [mapper.map(e) for e in entities]
        bands = self.classify(proposals, auto_threshold, queue_threshold)

        counts: Counter[str] = Counter()
        counts["queued"] = len(bands[ImportClass.QUEUED])
        counts["dropped"] = len(bands[ImportClass.DROPPED])
        queued_ids = [p.entity.source_path for p in bands[ImportClass.QUEUED]]
        lookup = _crosslink_lookup(entities)

        def summary() -> ImportSummary:
            return ImportSummary(
                total=len(proposals),
                auto_imported=counts["auto_imported"],
                queued=counts["queued"],
                dropped=counts["dropped"],
                unchanged=counts["unchanged"],
                errors=counts["errors"],
                queued_ids=queued_ids,
            )

        with self.context.suppression.suppressed():
            for done, proposal in enumerate(bands[ImportClass.AUTO_IMPORT], 1):
                try:
                    outcome = await self._push(proposal, world_id, lookup)
                except (ArchivistSyncError, ValueError) as e:
                    logger.warning(
                        "Import of %s failed: %s", proposal.entity.source_path, e
                    )
                    outcome = "errors"
                counts[outcome] += 1
                if on_progress is not None:
                    on_progress(summary(), done)

        result = summary()
        logger.info(
            "Import finished: %d created/updated, %d queued, %d dropped, "
            "%d unchanged, %d errors",
            result.auto_imported,
            result.queued,
            result.dropped,
            result.unchanged,
            result.errors,
        )
        return result

    async def push_filtered(
        self,
        kinds: set[EntityKind] | None = None,
        target_type: EntityKind | None = None,
        folder_match: str | None = None,
    ) -> int:
        """Push entities matching the filters, whatever their score.

        Args:
            kinds: Only entities extracted as one of these kinds.
            target_type: Only proposals mapped to this remote kind.
            folder_match: Case-insensitive regex the folder name must match.

        Returns:
            Number of records created or updated.
        """
        world_id = self.context.require_configured()
        entities = [
            e for e in self._extract() if not kinds or e.kind in kinds
        ]
        mapper = self._mapper(entities)
        folder_re = re.compile(folder_match, re.IGNORECASE) if folder_match else None
        lookup = _crosslink_lookup(entities)
        pushed = 0
        with self.context.suppression.suppressed():
            for entity in entities:
                proposal = mapper.map(entity)
                if not proposal.include:
                    continue
                if target_type is not None and proposal.target_type is not target_type:
                    continue
                if folder_re and entity.folder and not folder_re.search(entity.folder):
                    continue
                try:
                    outcome = await self._push(proposal, world_id, lookup)
                except (ArchivistSyncError, ValueError) as e:
                    logger.warning("Push of %s failed: %s", entity.source_path, e)
                    continue
                if outcome == "auto_imported":
                    pushed += 1
        return pushed

    async def _push(
        self,
        proposal: MappingProposal,
        world_id: str,
        lookup: dict[str, str],
    ) -> str:
        """Create or update one record; returns the summary counter to bump."""
        entity = proposal.entity
        store = self.context.store
        doc = store.get(entity.local_id)
        if doc is None:
            raise ValueError(f"Source document {entity.local_id} disappeared")
        meta = read_sync_meta(store, doc)
        kind = proposal.target_type
        limit = self.context.import_config.ceiling_for(kind)
        limiter = self.context.limiter
        client = self.context.client

        if meta.remote_id:
            if meta.fingerprint == entity.fingerprint:
                return "unchanged"
            payload = entity_payload(
                kind,
                name=str(proposal.payload.get("name") or entity.name),
                description=to_remote_markdown(
                    proposal.payload.get("description") or "", lookup.get, limit
                ),
                image=proposal.payload.get("image"),
                character_type="PC" if "PC" in proposal.labels else "NPC",
                parent_id=entity.parent_id,
            )
            await limiter.run(client.update, kind, meta.remote_id, payload)
            remote_id = meta.remote_id
        else:
            payload = proposal_payload(proposal, world_id, lookup.get, limit)
            created = await limiter.run(client.create, kind, payload)
            remote_id = str(created.get("id") or "")
            if not remote_id:
                raise ValueError(f"Create of {entity.source_path} returned no id")
            lookup[entity.source_path] = remote_id

        update = {"fingerprint": entity.fingerprint}
        if doc.collection in ("journals", "pages") and not meta.sheet_type:
            update["sheet_type"] = _sheet_for(kind, proposal)
        bound = meta.bind(remote_id, world_id).model_copy(update=update)
        write_sync_meta(store, doc, bound, options=_IMPORT)
        return "auto_imported"


def _sheet_for(kind: EntityKind, proposal: MappingProposal) -> str:
    if kind is EntityKind.CHARACTER:
        return "pc" if "PC" in proposal.labels else "npc"
    if kind is EntityKind.SESSION:
        return "recap"
    return kind.value.lower()


def _crosslink_lookup(entities: list[Entity]) -> dict[str, str]:
    return {e.source_path: e.remote_id for e in entities if e.remote_id}
