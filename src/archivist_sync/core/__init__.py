"""Core transport layer: the Archivist REST client and async bridging helpers."""

from .client import EntityKind, Page, RemoteClient

__all__ = ["EntityKind", "Page", "RemoteClient"]
