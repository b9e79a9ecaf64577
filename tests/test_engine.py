"""Tests for ReconcileService: fetch, diff, import candidates and apply."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from archivist_sync.config import Config
from archivist_sync.core.client import EntityKind
from archivist_sync.errors import ConfigError, TransportError
from archivist_sync.sync.context import SyncContext
from archivist_sync.sync.engine import ReconcileService
from archivist_sync.sync.metadata import (
    LinkBundle,
    LinkRefs,
    read_link_bundle,
    read_sync_meta,
)
from archivist_sync.sync.models import ApplyAction
from archivist_sync.sync.store import RECAPS_CONTAINER


def _bound(store, kind, name, remote_id, content="", links=None, **sync):
    metadata = {"sync": {"remote_id": remote_id, "world_id": "w1", **sync}}
    if links is not None:
        metadata["links"] = links.model_dump(mode="json")
    return store.create_entity(
        kind, {"name": name, "content": content, "metadata": metadata}
    )


@pytest.fixture
def service(sync_context):
    return ReconcileService(sync_context)


class TestConfiguration:
    async def test_missing_world_raises_before_network(self, fake_client, store):
        context = SyncContext(
            config=Config(api_key="k"), client=fake_client, store=store
        )
        with pytest.raises(ConfigError):
            await ReconcileService(context).run_full()
        assert fake_client.calls == []

    async def test_missing_key_raises(self, fake_client, store):
        context = SyncContext(
            config=Config(world_id="w1"), client=fake_client, store=store
        )
        with pytest.raises(ConfigError):
            await ReconcileService(context).plan()


class TestFetch:
    async def test_lists_every_kind_and_links(self, service, fake_client):
        await service.plan()
        listed = {c[1] for c in fake_client.calls if c[0] == "list"}
        assert listed == set(EntityKind)
        assert ("list_links", "w1", None) in fake_client.calls

    async def test_fetch_failure_aborts_pass(self, service, fake_client, store):
        _bound(store, EntityKind.ITEM, "Rope", "item-1")
        fake_client.fail_list.add(EntityKind.ITEM)
        events = []
        store.bus.subscribe(events.append)

        with pytest.raises(TransportError):
            await service.run_full()
        assert events == []
        assert fake_client.writes() == []


class TestDiff:
    async def test_renamed_remotely(self, service, fake_client, store):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert", "description": ""}
        ]

        report = await service.run_full(apply=False)

        assert not report.applied
        [diff] = report.plan.diffs
        assert diff.id == "c1"
        assert diff.local_id == doc.id
        assert diff.selected
        assert diff.changes["name"].from_ == "Bob"
        assert diff.changes["name"].to == "Robert"
        assert doc.name == "Bob"

    async def test_equivalent_description_is_not_a_change(
        self, service, fake_client, store
    ):
        _bound(
            store,
            EntityKind.ITEM,
            "Rope",
            "i1",
            content="<p>Hello <strong>world</strong></p>",
        )
        fake_client.records[EntityKind.ITEM] = [
            {"id": "i1", "name": "Rope", "description": "Hello **world**"}
        ]
        plan = await service.plan()
        assert plan.diffs == []

    async def test_empty_remote_description_ignored(
        self, service, fake_client, store
    ):
        _bound(store, EntityKind.ITEM, "Rope", "i1", content="<p>Local</p>")
        fake_client.records[EntityKind.ITEM] = [
            {"id": "i1", "name": "Rope", "description": ""}
        ]
        assert (await service.plan()).diffs == []

    async def test_changed_description(self, service, fake_client, store):
        _bound(store, EntityKind.ITEM, "Rope", "i1", content="<p>Old</p>")
        fake_client.records[EntityKind.ITEM] = [
            {"id": "i1", "name": "Rope", "description": "New"}
        ]
        [diff] = (await service.plan()).diffs
        assert diff.changes["description"].to == "New"

    @pytest.mark.parametrize(
        "image, changed",
        [
            ("https://img.example/rope.png", True),
            ("http://img.example/rope.png", False),
            ("rope.png", False),
        ],
    )
    async def test_only_https_images_are_authoritative(
        self, service, fake_client, store, image, changed
    ):
        _bound(store, EntityKind.ITEM, "Rope", "i1")
        fake_client.records[EntityKind.ITEM] = [
            {"id": "i1", "name": "Rope", "image": image}
        ]
        diffs = (await service.plan()).diffs
        assert bool(diffs) is changed

    async def test_location_parent(self, service, fake_client, store):
        _bound(store, EntityKind.LOCATION, "Cellar", "l2")
        fake_client.records[EntityKind.LOCATION] = [
            {"id": "l1", "name": "Keep"},
            {"id": "l2", "name": "Cellar", "parent_id": "l1"},
        ]
        plan = await service.plan()

        [diff] = plan.diffs
        assert diff.changes["parent_id"].from_ is None
        assert diff.changes["parent_id"].to == "l1"

    async def test_link_add_and_owned_remove(self, service, fake_client, store):
        owned = LinkRefs(characters=["c9"])
        _bound(
            store,
            EntityKind.FACTION,
            "Guild",
            "f1",
            links=LinkBundle(refs=owned, outbound=owned),
        )
        fake_client.records[EntityKind.FACTION] = [{"id": "f1", "name": "Guild"}]
        fake_client.links = [
            {"from_id": "f1", "to_id": "c1", "to_type": "Character"},
            {"from_id": "f1", "to_id": "c1", "to_type": "Character"},
        ]

        [diff] = (await service.plan()).diffs
        assert [(t.id, t.type) for t in diff.links.add] == [("c1", "Character")]
        assert [(t.id, t.type) for t in diff.links.remove] == [("c9", "Character")]

    async def test_untracked_refs_never_removed(self, service, fake_client, store):
        _bound(
            store,
            EntityKind.FACTION,
            "Guild",
            "f1",
            links=LinkBundle(refs=LinkRefs(characters=["c9"])),
        )
        fake_client.records[EntityKind.FACTION] = [{"id": "f1", "name": "Guild"}]
        assert (await service.plan()).diffs == []

    async def test_missing_remote_is_deletion(self, service, store):
        doc = _bound(store, EntityKind.ITEM, "Rope", "i1")
        plan = await service.plan()

        [diff] = plan.diffs
        assert diff.deleted
        assert plan.deletions == [diff]
        assert diff.local_id == doc.id


class TestImportCandidates:
    async def test_unknown_records_are_unselected_imports(
        self, service, fake_client
    ):
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Ann", "type": "PC"}
        ]
        fake_client.records[EntityKind.ITEM] = [
            {"id": "i1", "name": "Rope", "image": "http://insecure/x.png"}
        ]
        plan = await service.plan()

        assert [i.id for i in plan.imports] == ["c1", "i1"]
        assert not any(i.selected for i in plan.imports)
        assert plan.imports[0].character_type == "PC"
        assert plan.imports[0].core_type == "actor"
        assert plan.imports[1].image is None

    async def test_ids_bound_anywhere_are_not_imported(
        self, service, fake_client, store
    ):
        store.load(
            {
                "actors": [
                    {
                        "id": "a1",
                        "name": "Ann",
                        "metadata": {"sync": {"remote_id": "c1"}},
                        "items": [
                            {
                                "id": "x1",
                                "name": "Rope",
                                "metadata": {"sync": {"remote_id": "i1"}},
                            }
                        ],
                    }
                ],
                "journals": [
                    {
                        "id": "j1",
                        "name": "Lore",
                        "pages": [
                            {
                                "id": "p1",
                                "name": "Keep",
                                "metadata": {"sync": {"remote_id": "l1"}},
                            }
                        ],
                    }
                ],
            }
        )
        fake_client.records[EntityKind.CHARACTER] = [{"id": "c1", "name": "Ann"}]
        fake_client.records[EntityKind.ITEM] = [{"id": "i1", "name": "Rope"}]
        fake_client.records[EntityKind.LOCATION] = [{"id": "l1", "name": "Keep"}]

        plan = await service.plan()
        assert plan.imports == []
        assert plan.diffs == []


class TestApply:
    async def test_apply_rename(self, service, fake_client, store):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"}
        ]
        report = await service.run_full()

        assert report.applied
        assert doc.name == "Robert"
        [result] = report.results
        assert result.action is ApplyAction.UPDATE_LOCAL
        assert result.success
        assert read_sync_meta(store, doc).fingerprint
        assert fake_client.writes() == []

    async def test_apply_description_and_parent(self, service, fake_client, store):
        doc = _bound(store, EntityKind.LOCATION, "Cellar", "l2", content="<p>Old</p>")
        fake_client.records[EntityKind.LOCATION] = [
            {"id": "l2", "name": "Cellar", "description": "# Damp", "parent_id": "l1"}
        ]
        await service.run_full()

        assert doc.content == "<h1>Damp</h1>"
        assert read_sync_meta(store, doc).parent_location_id == "l1"

    async def test_apply_links(self, service, fake_client, store):
        owned = LinkRefs(characters=["c9"])
        doc = _bound(
            store,
            EntityKind.FACTION,
            "Guild",
            "f1",
            links=LinkBundle(refs=owned, outbound=owned),
        )
        fake_client.records[EntityKind.FACTION] = [{"id": "f1", "name": "Guild"}]
        fake_client.links = [{"from_id": "f1", "to_id": "c1", "to_type": "Character"}]

        await service.run_full()

        bundle = read_link_bundle(store, doc)
        assert bundle.refs.characters == ["c1"]
        assert bundle.outbound.characters == ["c1"]

    async def test_apply_deletion(self, service, store):
        doc = _bound(store, EntityKind.ITEM, "Rope", "i1")
        report = await service.run_full()

        assert store.get(doc.id) is None
        assert report.deleted[0].local_id == doc.id

    async def test_unselected_diffs_untouched(self, service, fake_client, store):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"}
        ]
        report = await service.run_full(diff_ids=set())

        assert doc.name == "Bob"
        assert report.results == []

    async def test_import_selected(self, service, fake_client, store):
        fake_client.records[EntityKind.CHARACTER] = [
            {
                "id": "c1",
                "character_name": "Ann",
                "type": "PC",
                "description": "**Brave**",
                "image": "https://img.example/ann.png",
            }
        ]
        fake_client.links = [
            {"from_id": "c1", "to_id": "f1", "to_type": "Faction"},
            {"from_id": "x", "to_id": "f2", "to_type": "Faction"},
        ]
        report = await service.run_full(import_ids={"c1"})

        [result] = report.imported
        doc = store.get(result.local_id)
        meta = read_sync_meta(store, doc)
        assert meta.remote_id == "c1"
        assert meta.sheet_type == "pc"
        assert doc.content == "<p><strong>Brave</strong></p>"
        assert doc.img == "https://img.example/ann.png"
        assert read_link_bundle(store, doc).refs.factions == ["f1"]
        assert ("list_links", "w1", "c1") in fake_client.calls

    async def test_import_with_core_object(self, service, fake_client, store):
        fake_client.records[EntityKind.ITEM] = [{"id": "i1", "name": "Rope"}]
        report = await service.run_full(import_ids={"i1"}, create_core_ids={"i1"})

        doc = store.get(report.imported[0].local_id)
        [core] = store.list_documents("items")
        assert core.doc_type == "loot"
        assert read_sync_meta(store, doc).core_ref == core.uuid
        assert read_sync_meta(store, core).remote_id == "i1"

    async def test_import_session_as_recap_page(self, service, fake_client, store):
        fake_client.records[EntityKind.SESSION] = [
            {
                "id": "s1",
                "title": "Session 1",
                "summary": "We met",
                "session_date": "2024-05-01",
            }
        ]
        report = await service.run_full(import_ids={"s1"})

        doc = store.get(report.imported[0].local_id)
        container = store.get(doc.parent)
        assert container.name == RECAPS_CONTAINER
        assert read_sync_meta(store, doc).session_date == "2024-05-01"

    async def test_second_pass_is_stable(self, service, fake_client, store):
        fake_client.records[EntityKind.FACTION] = [
            {"id": "f1", "name": "Guild", "description": "Traders"}
        ]
        await service.run_full(import_ids={"f1"})
        report = await service.run_full()

        assert report.plan.diffs == []
        assert report.plan.imports == []

    async def test_link_hydration_failure_is_not_fatal(
        self, service, fake_client, store
    ):
        fake_client.records[EntityKind.ITEM] = [{"id": "i1", "name": "Rope"}]
        fake_client.list_links = MagicMock(
            side_effect=[[], TransportError("GET /links failed: 503", status=503)]
        )
        report = await service.run_full(import_ids={"i1"})

        [result] = report.results
        assert result.success
        assert "links not hydrated" in result.error
        assert len(store.list_entities(EntityKind.ITEM)) == 1

    async def test_failed_item_does_not_stop_pass(self, service, fake_client, store):
        gone = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        kept = _bound(store, EntityKind.CHARACTER, "Ann", "c2")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"},
            {"id": "c2", "character_name": "Anna"},
        ]
        plan = await service.plan()
        store.delete_entity(gone)

        results = await service.apply(plan)

        assert [r.success for r in results] == [False, True]
        assert "no longer exists" in results[0].error
        assert kept.name == "Anna"
        assert not service.context.suppression.active

    async def test_suppression_held_during_apply(self, service, fake_client, store):
        _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"}
        ]
        seen = []
        store.bus.subscribe(
            lambda event: seen.append(service.context.suppression.active)
        )
        await service.run_full()

        assert seen
        assert all(seen)
        assert not service.context.suppression.active

    async def test_index_rebuilt_after_apply(self, service, fake_client):
        fake_client.records[EntityKind.FACTION] = [{"id": "f1", "name": "Guild"}]
        await service.run_full(import_ids={"f1"})
        assert service.indexer.built
        assert "f1" in service.indexer.by_remote_id
