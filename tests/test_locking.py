"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from redaxoctl.locking import GLOBAL_LOCK_NAME, LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "demo.lock"
    with manager.instance_lock("demo") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    with manager.instance_lock("demo", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """A second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("demo"):
        with pytest.raises(LockTimeoutError, match="demo.lock"):
            with manager.instance_lock("demo", timeout=0.1):
                pass


def test_different_instances_do_not_block(tmp_path: Path) -> None:
    """Locks on distinct instances are independent."""
    manager = LockManager(tmp_path / "run", default_timeout=0.2)

    with manager.instance_lock("alpha"):
        with manager.instance_lock("beta") as handle:
            assert handle.path.name == "beta.lock"


def test_mutate_instances_acquires_global_then_sorted_instances(tmp_path: Path) -> None:
    """Bundles take the global lock first and then each instance once, sorted."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["beta", "alpha", "beta"]) as bundle:
        names = [handle.path.name for handle in bundle.handles]
        assert names == [GLOBAL_LOCK_NAME, "alpha.lock", "beta.lock"]
        assert bundle.wait_ms >= 0


def test_mutate_instances_times_out_on_held_global_lock(tmp_path: Path) -> None:
    """Mutations wait on the global lock held by another operation."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.mutate_instances(["demo"], timeout=0.1):
                pass
