"""Archivist world sync: reconcile a local document tree with a remote world API."""

__version__ = "0.4.0"
