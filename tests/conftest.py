"""Shared pytest fixtures for archivist-sync tests."""

from __future__ import annotations

import copy
import itertools
from typing import Any

import pytest
from dotenv import load_dotenv

from archivist_sync.config import Config
from archivist_sync.core.client import EntityKind
from archivist_sync.errors import TransportError, ValidationError
from archivist_sync.sync.context import SyncContext
from archivist_sync.sync.store import InMemoryStore

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live Archivist API",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live Archivist API"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


class FakeRemoteClient:
    """In-memory stand-in for ``RemoteClient``.

    Records live in ``records`` per kind; every call is appended to
    ``calls`` as a tuple whose first element is the method name.
    """

    def __init__(
        self,
        records: dict[EntityKind, list[dict[str, Any]]] | None = None,
        links: list[dict[str, Any]] | None = None,
        worlds: list[dict[str, Any]] | None = None,
    ) -> None:
        self.records: dict[EntityKind, list[dict[str, Any]]] = {
            kind: [] for kind in EntityKind
        }
        for kind, items in (records or {}).items():
            self.records[kind] = [dict(r) for r in items]
        self.links = list(links or [])
        self.worlds = worlds or [{"id": "w1", "title": "Test World"}]
        self.calls: list[tuple] = []
        self.fail_list: set[EntityKind] = set()
        self.fail_links = False
        self.fail_writes: set[str] = set()
        self._ids = itertools.count(1)

    # Worlds

    def list_worlds(self) -> list[dict]:
        self.calls.append(("list_worlds",))
        return [dict(w) for w in self.worlds]

    def get_world(self, world_id: str) -> dict:
        self.calls.append(("get_world", world_id))
        for world in self.worlds:
            if world["id"] == world_id:
                return dict(world)
        raise TransportError(
            f"GET /worlds/{world_id} failed: 404", status=404
        )

    def validate_connection(self) -> int:
        return len(self.list_worlds())

    # Entities

    def list(self, kind: EntityKind, world_id: str) -> list[dict]:
        self.calls.append(("list", kind, world_id))
        if kind in self.fail_list:
            raise TransportError(f"GET {kind.endpoint} failed: 500", status=500)
        return [dict(r) for r in self.records[kind]]

    def _check_write(self, name: Any) -> None:
        if name in self.fail_writes:
            raise ValidationError(
                "write failed: 422",
                status=422,
                detail="description exceeds maximum length",
            )

    def create(self, kind: EntityKind, payload: dict[str, Any]) -> dict:
        self.calls.append(("create", kind, dict(payload)))
        if kind is EntityKind.SESSION:
            raise ValueError("Sessions cannot be created through the API")
        self._check_write(
            payload.get("name") or payload.get("character_name")
        )
        record = {**payload, "id": f"{kind.value.lower()}-{next(self._ids)}"}
        self.records[kind].append(record)
        return dict(record)

    def update(
        self, kind: EntityKind, entity_id: str, payload: dict[str, Any]
    ) -> dict:
        self.calls.append(("update", kind, entity_id, dict(payload)))
        self._check_write(entity_id)
        for record in self.records[kind]:
            if record["id"] == entity_id:
                record.update(payload)
                return dict(record)
        return {**payload, "id": entity_id}

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        self.calls.append(("delete", kind, entity_id))
        self._check_write(entity_id)
        self.records[kind] = [
            r for r in self.records[kind] if r["id"] != entity_id
        ]

    # Links

    def list_links(
        self, world_id: str, from_id: str | None = None
    ) -> list[dict]:
        self.calls.append(("list_links", world_id, from_id))
        if self.fail_links:
            raise TransportError("GET /links failed: 503", status=503)
        return [
            dict(link)
            for link in self.links
            if from_id is None or link.get("from_id") == from_id
        ]

    # Helpers

    def writes(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]


@pytest.fixture
def config():
    """A configured Config with a selected world and user."""
    return Config(
        api_key="test-key",
        api_url="https://archivist.example.com/v1",
        world_id="w1",
        user_id="gm",
    )


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def store():
    """Empty in-memory store whose edits are attributed to 'gm'."""
    return InMemoryStore(current_user="gm")


@pytest.fixture
def sync_context(config, fake_client, store):
    return SyncContext(config=config, client=fake_client, store=store)


# A small host world: one PC with an owned item, one NPC, a world item,
# a scene, a faction journal, an unclassifiable journal and a recap page.
SAMPLE_WORLD: dict[str, list[dict[str, Any]]] = {
    "actors": [
        {
            "id": "a1",
            "name": "Ann",
            "doc_type": "character",
            "folder": "PCs",
            "owners": ["alice"],
            "system": {"details": {"biography": {"value": "<p>Brave #hero</p>"}}},
            "items": [
                {
                    "id": "i1",
                    "name": "Rope",
                    "doc_type": "loot",
                    "system": {"description": {"value": "Hemp"}},
                }
            ],
        },
        {
            "id": "a2",
            "name": "Bob",
            "doc_type": "npc",
            "system": {
                "details": {"biography": {"value": "Grumpy", "public": "Gruff"}}
            },
        },
        {"id": "a3", "name": "Cart", "doc_type": "vehicle"},
    ],
    "items": [
        {
            "id": "i2",
            "name": "Sword",
            "doc_type": "weapon",
            "folder": "Armory",
            "system": {"description": {"value": "<p>Sharp</p>"}},
        }
    ],
    "scenes": [
        {
            "id": "s1",
            "name": "Harbor",
            "content": "<p>Docks near @UUID[JournalEntry.j1]{the guild}</p>",
        }
    ],
    "journals": [
        {
            "id": "j1",
            "name": "Iron Guild",
            "folder": "Factions",
            "content": "<p>Traders</p>",
        },
        {"id": "j2", "name": "Random notes", "content": "<p>misc</p>"},
        {
            "id": "j3",
            "name": "Recaps",
            "metadata": {"sync": {"sheet_type": "recap_container"}},
            "pages": [
                {
                    "id": "p1",
                    "name": "Session 1",
                    "content": "<p>We met</p>",
                    "metadata": {"sync": {"sheet_type": "recap"}},
                }
            ],
        },
    ],
}


@pytest.fixture
def world_store(store):
    """The in-memory store loaded with ``SAMPLE_WORLD``."""
    store.load(copy.deepcopy(SAMPLE_WORLD))
    return store
