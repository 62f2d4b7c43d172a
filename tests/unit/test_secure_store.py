"""Unit tests for the encrypted checkpoint store."""

from __future__ import annotations

import os
import stat
import subprocess
import sys
from pathlib import Path

import pytest

from checkpoint_orchestrator.errors import StateCorruptionError, StateLockError
from checkpoint_orchestrator.state.keys import UserSecretKeySource
from checkpoint_orchestrator.state.secure_store import HEADER, SecureStateStore
from checkpoint_orchestrator.workflow.model import Principal, Snapshot

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")


def _store_for(path: Path, key_file: Path, principal: Principal, machine_id: str = "machine-a"):
    return SecureStateStore(
        path,
        key_source=UserSecretKeySource(key_file, principal=principal, machine_id=machine_id),
        lock_timeout_seconds=0.2,
    )


def test_load_without_checkpoint_returns_none(store: SecureStateStore) -> None:
    assert not store.exists()
    assert store.load() is None


def test_save_then_load_roundtrip(store: SecureStateStore, snapshot: Snapshot) -> None:
    path = store.save(snapshot)

    assert path == store.path
    assert store.exists()
    assert store.load() == snapshot


def test_envelope_layout_and_plaintext_hidden(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)
    raw = store.path.read_bytes()

    lines = raw.decode("ascii").split("\n")
    assert lines[0] == HEADER
    assert len(lines) == 4 and lines[3] == ""
    assert b"maintenance" not in raw
    assert b"operator" not in raw


def test_ciphertext_differs_between_saves(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)
    first = store.path.read_bytes()
    store.save(snapshot)
    second = store.path.read_bytes()

    assert first != second
    assert store.load() == snapshot


def test_any_single_byte_flip_is_detected(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)
    original = store.path.read_bytes()

    for offset in range(len(original)):
        tampered = bytearray(original)
        tampered[offset] ^= 0x01
        store.path.write_bytes(bytes(tampered))
        with pytest.raises(StateCorruptionError):
            store.load()

    store.path.write_bytes(original)
    assert store.load() == snapshot


def test_truncated_file_is_a_corruption(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)
    store.path.write_bytes(store.path.read_bytes()[:-10])
    with pytest.raises(StateCorruptionError):
        store.load()


def test_other_principal_cannot_load(store: SecureStateStore, snapshot: Snapshot, settings) -> None:
    store.save(snapshot)
    intruder = _store_for(store.path, settings.key_file, Principal(user="mallory", host="build-01"))

    with pytest.raises(StateCorruptionError):
        intruder.load()


def test_other_machine_cannot_load(store: SecureStateStore, snapshot: Snapshot, settings) -> None:
    store.save(snapshot)
    elsewhere = _store_for(
        store.path, settings.key_file, Principal(user="operator", host="build-01"), "machine-b"
    )

    with pytest.raises(StateCorruptionError):
        elsewhere.load()


def test_missing_key_file_is_a_corruption(store: SecureStateStore, snapshot: Snapshot, settings) -> None:
    store.save(snapshot)
    settings.key_file.unlink()

    with pytest.raises(StateCorruptionError, match="missing"):
        store.load()


def test_erase_removes_file_and_load_returns_none(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)

    assert store.erase() is True
    assert not store.path.exists()
    assert store.load() is None
    assert store.erase() is False


def test_remove_without_secure_erase(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)
    assert store.remove(secure=False) is True
    assert not store.exists()


@posix_only
def test_files_are_owner_only(store: SecureStateStore, snapshot: Snapshot, settings) -> None:
    store.save(snapshot)

    assert stat.S_IMODE(store.path.stat().st_mode) == 0o600
    assert stat.S_IMODE(settings.key_file.stat().st_mode) == 0o600
    assert stat.S_IMODE(store.path.parent.stat().st_mode) == 0o700
    assert not list(store.path.parent.glob("*.tmp"))


def test_held_lock_times_out(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.lock_path.write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(StateLockError):
        store.save(snapshot)
    assert not store.exists()


def test_lock_is_released_after_save(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.save(snapshot)
    assert not store.lock_path.exists()
    with store.lock():
        assert store.lock_path.exists()
    assert not store.lock_path.exists()


def _dead_pid() -> int:
    child = subprocess.Popen([sys.executable, "-c", "pass"])
    child.wait()
    return child.pid


@posix_only
def test_lock_left_by_dead_process_is_cleared(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.lock_path.write_text(str(_dead_pid()), encoding="utf-8")

    store.save(snapshot)

    assert store.load() == snapshot
    assert not store.lock_path.exists()


def test_unreadable_lock_owner_is_not_cleared(store: SecureStateStore, snapshot: Snapshot) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.lock_path.write_text("not-a-pid", encoding="utf-8")

    with pytest.raises(StateLockError):
        store.save(snapshot)
    assert store.lock_path.read_text(encoding="utf-8") == "not-a-pid"
