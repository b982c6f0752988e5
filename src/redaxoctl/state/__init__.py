"""State helpers for redaxoctl."""
from __future__ import annotations

from .store import InstanceStore, InstanceStoreError, parse_env

__all__ = ["InstanceStore", "InstanceStoreError", "parse_env"]
