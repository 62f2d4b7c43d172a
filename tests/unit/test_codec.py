"""Unit tests for the canonical snapshot codec."""

from __future__ import annotations

import json
from typing import Any

import pytest

from checkpoint_orchestrator.errors import SnapshotFormatError, StateCorruptionError
from checkpoint_orchestrator.state import codec
from checkpoint_orchestrator.workflow.model import Snapshot


def test_decode_restores_every_field(snapshot: Snapshot) -> None:
    assert codec.decode(codec.encode(snapshot)) == snapshot


def test_encoding_is_canonical(snapshot: Snapshot) -> None:
    data = codec.encode(snapshot)

    assert data == codec.encode(snapshot)
    reencoded = json.dumps(
        json.loads(data), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")
    assert data == reencoded
    assert "ünïcode".encode() in data


def _document(snapshot: Snapshot) -> dict[str, Any]:
    return json.loads(codec.encode(snapshot))


def test_missing_schema_version_is_rejected(snapshot: Snapshot) -> None:
    doc = _document(snapshot)
    del doc["schema_version"]
    with pytest.raises(SnapshotFormatError, match="schema_version"):
        codec.decode(json.dumps(doc).encode())


def test_unsupported_schema_version_is_rejected(snapshot: Snapshot) -> None:
    doc = _document(snapshot)
    doc["schema_version"] = 2
    with pytest.raises(SnapshotFormatError, match="Unsupported"):
        codec.decode(json.dumps(doc).encode())


def test_unknown_fields_are_rejected(snapshot: Snapshot) -> None:
    doc = _document(snapshot)
    doc["runtime"]["tasks"][0]["surprise"] = 1
    with pytest.raises(SnapshotFormatError):
        codec.decode(json.dumps(doc).encode())


def test_missing_fields_are_rejected(snapshot: Snapshot) -> None:
    doc = _document(snapshot)
    del doc["runtime"]["restart_count"]
    with pytest.raises(SnapshotFormatError):
        codec.decode(json.dumps(doc).encode())


def test_unknown_enum_value_is_rejected(snapshot: Snapshot) -> None:
    doc = _document(snapshot)
    doc["runtime"]["tasks"][0]["status"] = "paused"
    with pytest.raises(SnapshotFormatError):
        codec.decode(json.dumps(doc).encode())


@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b"\xff\xfe"])
def test_garbage_is_a_corruption(payload: bytes) -> None:
    with pytest.raises(StateCorruptionError):
        codec.decode(payload)
