"""Encrypted, integrity-protected checkpoint file.

Envelope layout (ASCII, three newline-terminated lines):

    CKORCH1 aes-256-gcm hmac-sha256
    <hex HMAC-SHA256 tag>
    <base64 of nonce || AES-GCM ciphertext>

The tag covers the context string, the principal, the header and the base64
line exactly as written. It is checked before anything is decrypted, so every
single-byte change to the file is rejected as corruption.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import hashlib
import hmac
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from checkpoint_orchestrator.errors import StateCorruptionError, StateLockError, ValidationError
from checkpoint_orchestrator.state import codec
from checkpoint_orchestrator.state.keys import UserSecretKeySource
from checkpoint_orchestrator.workflow.model import Principal, Snapshot

if TYPE_CHECKING:
    from checkpoint_orchestrator.orchestrator.config import OrchestratorSettings

logger = logging.getLogger(__name__)

HEADER = "CKORCH1 aes-256-gcm hmac-sha256"
KEY_CONTEXT = "checkpoint-orchestrator/workflow-state/v1"

_NONCE_SIZE = 12
_GCM_TAG_SIZE = 16
_LOCK_RETRY_SECONDS = 0.02


class SecureStateStore:
    """Single checkpoint file for one user on one machine."""

    def __init__(
        self,
        path: Path,
        *,
        key_source: UserSecretKeySource,
        lock_timeout_seconds: float = 5.0,
    ) -> None:
        self.path = Path(path)
        self.key_source = key_source
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @classmethod
    def from_settings(
        cls, settings: OrchestratorSettings, *, principal: Principal | None = None
    ) -> SecureStateStore:
        return cls(
            settings.checkpoint_file,
            key_source=UserSecretKeySource(settings.key_file, principal=principal),
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )

    @property
    def principal(self) -> Principal:
        return self.key_source.principal

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, snapshot: Snapshot) -> Path:
        """Encrypt and atomically replace the checkpoint file."""

        if snapshot.saved_by != self.principal:
            raise ValidationError(
                f"Snapshot principal {snapshot.saved_by.identity} does not match "
                f"store principal {self.principal.identity}"
            )

        plaintext = codec.encode(snapshot)
        keys = self.key_source.derive(KEY_CONTEXT)

        nonce = os.urandom(_NONCE_SIZE)
        ciphertext = AESGCM(keys.encryption_key).encrypt(nonce, plaintext, self._aad())
        body = base64.b64encode(nonce + ciphertext).decode("ascii")
        tag = self._tag(keys.integrity_key, body)
        envelope = f"{HEADER}\n{tag}\n{body}\n".encode("ascii")

        self._ensure_directory()
        with self.lock():
            self._atomic_write(envelope)

        logger.info(
            "Checkpoint saved",
            extra={
                "path": str(self.path),
                "workflow_id": snapshot.workflow_id,
                "bytes": len(envelope),
            },
        )
        return self.path

    def load(self) -> Snapshot | None:
        """Verify, decrypt and decode the checkpoint.

        Returns None when there is no checkpoint. Any verification failure
        raises `StateCorruptionError`; there is no fallback to empty state.
        """

        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateCorruptionError(f"Cannot read checkpoint {self.path}: {e}") from e

        header, tag, body = _split_envelope(raw)
        if header != HEADER:
            raise StateCorruptionError("Checkpoint header not recognised")

        keys = self.key_source.derive(KEY_CONTEXT, create=False)
        if not hmac.compare_digest(tag, self._tag(keys.integrity_key, body)):
            raise StateCorruptionError("Checkpoint integrity check failed")

        try:
            blob = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise StateCorruptionError("Checkpoint payload is not valid base64") from e
        if len(blob) < _NONCE_SIZE + _GCM_TAG_SIZE:
            raise StateCorruptionError("Checkpoint payload is truncated")

        nonce, ciphertext = blob[:_NONCE_SIZE], blob[_NONCE_SIZE:]
        try:
            plaintext = AESGCM(keys.encryption_key).decrypt(nonce, ciphertext, self._aad())
        except InvalidTag as e:
            raise StateCorruptionError("Checkpoint could not be decrypted") from e

        snapshot = codec.decode(plaintext)
        if snapshot.saved_by != self.principal:
            raise StateCorruptionError(
                f"Checkpoint belongs to {snapshot.saved_by.identity}, "
                f"not {self.principal.identity}"
            )

        logger.info(
            "Checkpoint loaded",
            extra={"path": str(self.path), "workflow_id": snapshot.workflow_id},
        )
        return snapshot

    def erase(self) -> bool:
        """Overwrite the file (random pass, then zeros) and unlink it."""

        if not self.exists():
            return False
        with self.lock():
            try:
                size = self.path.stat().st_size
                with open(self.path, "r+b") as f:
                    for pattern in (os.urandom(size), bytes(size)):
                        f.seek(0)
                        f.write(pattern)
                        f.flush()
                        os.fsync(f.fileno())
                self.path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Checkpoint erased", extra={"path": str(self.path)})
        return True

    def remove(self, *, secure: bool = True) -> bool:
        if secure:
            return self.erase()
        with self.lock():
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Checkpoint removed", extra={"path": str(self.path)})
        return True

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Exclusive writer lock; raises `StateLockError` after the timeout."""

        self._ensure_directory()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._clear_stale_lock():
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateLockError(
                        f"Timed out after {self.lock_timeout_seconds:g}s waiting for "
                        f"checkpoint lock {self.lock_path}"
                    ) from exc
                time.sleep(_LOCK_RETRY_SECONDS)

        try:
            yield
        finally:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass

    def _clear_stale_lock(self) -> bool:
        # Only a lock whose recorded owner is provably gone is removed.
        try:
            owner = int(self.lock_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if owner == os.getpid() or os.name != "posix":
            return False
        try:
            os.kill(owner, 0)
        except ProcessLookupError:
            pass
        except PermissionError:
            return False
        else:
            return False
        logger.warning(
            "Removing stale checkpoint lock", extra={"path": str(self.lock_path), "pid": owner}
        )
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        return True

    def _aad(self) -> bytes:
        return f"{KEY_CONTEXT}\n{self.principal.identity}".encode()

    def _tag(self, integrity_key: bytes, body: str) -> str:
        message = f"{KEY_CONTEXT}\n{self.principal.identity}\n{HEADER}\n{body}".encode()
        return hmac.new(integrity_key, message, hashlib.sha256).hexdigest()

    def _ensure_directory(self) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        if os.name == "posix":
            os.chmod(directory, 0o700)

    def _atomic_write(self, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                if os.name == "posix":
                    os.fchmod(f.fileno(), 0o600)
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        if os.name == "posix":
            dir_fd = os.open(self.path.parent, os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)


def _split_envelope(raw: bytes) -> tuple[str, str, str]:
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError as e:
        raise StateCorruptionError("Checkpoint envelope is not ASCII") from e
    if not text.endswith("\n"):
        raise StateCorruptionError("Checkpoint envelope is truncated")
    lines = text[:-1].split("\n")
    if len(lines) != 3:
        raise StateCorruptionError("Checkpoint envelope is malformed")
    header, tag, body = lines
    return header, tag, body
