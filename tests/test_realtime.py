"""Tests for RealtimeSyncListener gating and mirroring."""

from __future__ import annotations

import pytest

from archivist_sync.config import Config
from archivist_sync.core.client import EntityKind
from archivist_sync.errors import TransportError
from archivist_sync.sync.context import SyncContext
from archivist_sync.sync.engine import ReconcileService
from archivist_sync.sync.events import OP_MARKER_KEY
from archivist_sync.sync.links import LinkIndexer
from archivist_sync.sync.metadata import read_sync_meta
from archivist_sync.sync.realtime import RealtimeSyncListener


@pytest.fixture
def listener(sync_context):
    listener = RealtimeSyncListener(sync_context)
    listener.attach()
    yield listener
    listener.detach()


def _bound(store, kind, name, remote_id, **sync):
    return store.create_entity(
        kind,
        {"name": name, "metadata": {"sync": {"remote_id": remote_id, **sync}}},
    )


class TestAttach:
    def test_attach_is_idempotent(self, sync_context):
        listener = RealtimeSyncListener(sync_context)
        listener.attach()
        listener.attach()
        assert sync_context.bus.subscriber_count == 1
        listener.detach()
        assert not listener.attached
        assert sync_context.bus.subscriber_count == 0

    def test_detached_listener_ignores_events(self, sync_context, fake_client):
        RealtimeSyncListener(sync_context)
        sync_context.store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        assert fake_client.calls == []


class TestCreate:
    def test_item_created_and_bound(self, listener, store, fake_client):
        doc = store.create_entity(EntityKind.ITEM, {"name": "Rope"})

        [call] = fake_client.writes()
        assert call[:2] == ("create", EntityKind.ITEM)
        assert call[2]["name"] == "Rope"
        assert call[2]["campaign_id"] == "w1"
        meta = read_sync_meta(store, doc)
        assert meta.remote_id == "item-1"
        assert meta.world_id == "w1"
        assert meta.fingerprint
        assert listener.mirrored == 1

    def test_location_create_carries_parent(self, listener, store, fake_client):
        store.create_entity(
            EntityKind.LOCATION,
            {"name": "Cellar", "metadata": {"sync": {"parent_location_id": "l1"}}},
        )
        [call] = fake_client.writes()
        assert call[2]["parent_id"] == "l1"

    @pytest.mark.parametrize("kind", [EntityKind.CHARACTER, EntityKind.SESSION])
    def test_never_auto_created(self, listener, store, fake_client, kind):
        store.create_entity(kind, {"name": "X"})
        assert fake_client.writes() == []

    def test_already_bound_not_recreated(self, listener, store, fake_client):
        _bound(store, EntityKind.FACTION, "Guild", "f1")
        assert fake_client.writes() == []

    def test_plain_documents_ignored(self, listener, store, fake_client):
        store.create_document("journals", {"name": "Notes"})
        assert fake_client.writes() == []


class TestUpdate:
    def test_bound_update_mirrored(self, listener, store, fake_client):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1", sheet_type="pc")
        store.update_entity(doc, {"name": "Robert", "content": "<p>Tall</p>"})

        [call] = fake_client.writes()
        assert call[:3] == ("update", EntityKind.CHARACTER, "c1")
        assert call[3] == {
            "character_name": "Robert",
            "description": "Tall",
            "type": "PC",
        }

    def test_unbound_update_ignored(self, listener, store, fake_client):
        doc = store.create_entity(EntityKind.CHARACTER, {"name": "Bob"})
        store.update_entity(doc, {"name": "Robert"})
        assert fake_client.writes() == []

    def test_folder_only_update_ignored(self, listener, store, fake_client):
        doc = _bound(store, EntityKind.ITEM, "Rope", "i1")
        store.update_entity(doc, {"folder": "Gear"})
        assert fake_client.writes() == []

    def test_op_marker_ignored(self, listener, store, fake_client):
        doc = _bound(store, EntityKind.ITEM, "Rope", "i1")
        store.update_entity(doc, {"name": "Cord", OP_MARKER_KEY: True})
        assert fake_client.writes() == []

    def test_failure_recorded_not_raised(self, listener, store, fake_client):
        fake_client.fail_writes.add("i1")
        doc = _bound(store, EntityKind.ITEM, "Rope", "i1")
        store.update_entity(doc, {"content": "x" * 100})

        assert "422" in listener.last_error
        assert listener.mirrored == 0


class TestDelete:
    def test_bound_delete_mirrored(self, listener, store, fake_client):
        doc = _bound(store, EntityKind.FACTION, "Guild", "f1")
        store.delete_entity(doc)
        assert fake_client.writes() == [("delete", EntityKind.FACTION, "f1")]

    def test_sessions_never_deleted(self, listener, store, fake_client):
        doc = _bound(store, EntityKind.SESSION, "Session 1", "s1")
        store.delete_entity(doc)
        assert fake_client.writes() == []


class TestGate:
    def test_other_user(self, listener, store, fake_client):
        store.create_entity(EntityKind.ITEM, {"name": "Rope"}, user_id="alice")
        assert fake_client.writes() == []

    @pytest.mark.parametrize("marker", ["import", "restore"])
    def test_bulk_markers(self, listener, store, fake_client, marker):
        store.create_entity(EntityKind.ITEM, {"name": "Rope"}, options={marker: True})
        assert fake_client.writes() == []

    def test_suppressed(self, listener, sync_context, store, fake_client):
        with sync_context.suppression.suppressed():
            store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        assert fake_client.writes() == []

    def test_disabled(self, fake_client, store):
        context = SyncContext(
            config=Config(
                api_key="k", world_id="w1", user_id="gm", realtime_sync=False
            ),
            client=fake_client,
            store=store,
        )
        RealtimeSyncListener(context).attach()
        store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        assert fake_client.writes() == []

    def test_no_world(self, fake_client, store):
        context = SyncContext(
            config=Config(api_key="k", user_id="gm"), client=fake_client, store=store
        )
        listener = RealtimeSyncListener(context)
        doc = store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        assert not listener.should_sync(doc, {}, "gm")


class TestAsync:
    async def test_mirrored_on_running_loop(self, listener, store, fake_client):
        doc = store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        await listener.drain()

        assert fake_client.writes()[0][0] == "create"
        assert read_sync_meta(store, doc).remote_id == "item-1"

    async def test_gate_evaluated_at_event_time(
        self, listener, sync_context, store, fake_client
    ):
        with sync_context.suppression.suppressed():
            store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        await listener.drain()
        assert fake_client.writes() == []

    async def test_reconcile_apply_not_echoed(
        self, listener, sync_context, store, fake_client
    ):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"}
        ]
        await ReconcileService(sync_context).run_full()
        await listener.drain()

        assert doc.name == "Robert"
        assert fake_client.writes() == []

    async def test_failure_on_loop_recorded(self, listener, store, fake_client):
        fake_client.fail_writes.add("Rope")
        store.create_entity(EntityKind.ITEM, {"name": "Rope"})
        await listener.drain()
        assert listener.last_error is not None

    async def test_edit_after_pass_mirrored_once(
        self, listener, sync_context, store, fake_client
    ):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"}
        ]
        await ReconcileService(sync_context).run_full()
        await listener.drain()
        assert fake_client.writes() == []

        store.update_entity(doc, {"name": "Rob"})
        await listener.drain()

        [call] = fake_client.writes()
        assert call[:3] == ("update", EntityKind.CHARACTER, "c1")
        assert call[3]["character_name"] == "Rob"
        assert listener.mirrored == 1

    async def test_edit_after_pass_with_failed_item_mirrored_once(
        self, listener, sync_context, store, fake_client
    ):
        gone = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        kept = _bound(store, EntityKind.CHARACTER, "Ann", "c2")
        fake_client.records[EntityKind.CHARACTER] = [
            {"id": "c1", "character_name": "Robert"},
            {"id": "c2", "character_name": "Anna"},
        ]
        service = ReconcileService(sync_context)
        plan = await service.plan()
        store.delete_entity(gone, user_id="player")

        results = await service.apply(plan)
        await listener.drain()

        assert [r.success for r in results] == [False, True]
        assert fake_client.writes() == []

        store.update_entity(kept, {"name": "Annabel"})
        await listener.drain()

        [call] = fake_client.writes()
        assert call[:3] == ("update", EntityKind.CHARACTER, "c2")
        assert call[3]["character_name"] == "Annabel"

    async def test_edit_after_aborted_pass_mirrored_once(
        self, listener, sync_context, store, fake_client
    ):
        doc = _bound(store, EntityKind.CHARACTER, "Bob", "c1")
        fake_client.fail_list.add(EntityKind.ITEM)
        with pytest.raises(TransportError):
            await ReconcileService(sync_context).run_full()
        assert not sync_context.suppression.active

        store.update_entity(doc, {"name": "Rob"})
        await listener.drain()

        [call] = fake_client.writes()
        assert call[:3] == ("update", EntityKind.CHARACTER, "c1")


def test_index_refreshed_per_mutation(sync_context, store):
    indexer = LinkIndexer(store)
    indexer.build_from_world()
    listener = RealtimeSyncListener(sync_context, indexer)
    listener.attach()

    doc = _bound(store, EntityKind.FACTION, "Guild", "f1")

    assert indexer.by_remote_id["f1"] == doc.id
