"""Durable state storage with versioned schema migration."""

from storage.store import LoadResult, StateStore

__all__ = ["LoadResult", "StateStore"]
