"""Key material for the checkpoint store.

Keys never live on disk. What lives on disk is a random per-user secret in an
owner-only file; the encryption and integrity keys are derived from it with
HKDF-SHA256, salted with the machine identity and bound to the principal. A
checkpoint copied to another machine or opened by another user therefore
fails verification.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
import socket
import stat
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from checkpoint_orchestrator.errors import StateCorruptionError
from checkpoint_orchestrator.workflow.model import Principal

logger = logging.getLogger(__name__)

SECRET_SIZE = 32
KEY_SIZE = 32

_MACHINE_ID_PATHS = (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id"))


def read_machine_id() -> str:
    """Stable machine identity; falls back to the host name."""

    for path in _MACHINE_ID_PATHS:
        try:
            value = path.read_text(encoding="ascii").strip()
        except OSError:
            continue
        if value:
            return value
    return socket.gethostname()


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    encryption_key: bytes
    integrity_key: bytes

    def __repr__(self) -> str:
        return "KeyMaterial(<redacted>)"


class UserSecretKeySource:
    def __init__(
        self,
        secret_path: Path,
        *,
        principal: Principal | None = None,
        machine_id: str | None = None,
    ) -> None:
        self.secret_path = Path(secret_path)
        self.principal = principal or Principal.current()
        self.machine_id = machine_id if machine_id is not None else read_machine_id()

    def derive(self, context: str, *, create: bool = True) -> KeyMaterial:
        """Derive the key pair for `context`.

        With `create=False` a missing secret is a corruption: whatever was
        written under the old secret can no longer be verified.
        """

        secret = self._read_or_create_secret(create=create)
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=2 * KEY_SIZE,
            salt=hashlib.sha256(self.machine_id.encode("utf-8")).digest(),
            info=f"{context}|{self.principal.identity}".encode(),
        )
        okm = hkdf.derive(secret)
        return KeyMaterial(encryption_key=okm[:KEY_SIZE], integrity_key=okm[KEY_SIZE:])

    def _read_or_create_secret(self, *, create: bool) -> bytes:
        path = self.secret_path
        if not path.exists():
            if not create:
                raise StateCorruptionError(f"State key file is missing: {path}")
            return self._create_secret()

        self._tighten_permissions(path)
        secret = path.read_bytes()
        if len(secret) != SECRET_SIZE:
            raise StateCorruptionError(
                f"State key file has unexpected length ({len(secret)} bytes): {path}"
            )
        return secret

    def _create_secret(self) -> bytes:
        path = self.secret_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if os.name == "posix":
            os.chmod(path.parent, 0o700)

        secret = secrets.token_bytes(SECRET_SIZE)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            # Another process created it first; use theirs.
            return self._read_or_create_secret(create=False)
        with os.fdopen(fd, "wb") as f:
            f.write(secret)
            f.flush()
            os.fsync(f.fileno())

        logger.info("Created per-user state key", extra={"path": str(path)})
        return secret

    @staticmethod
    def _tighten_permissions(path: Path) -> None:
        if os.name != "posix":
            return
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode & 0o077:
            logger.warning(
                "State key file was readable by others; restricting to owner",
                extra={"path": str(path), "mode": oct(mode)},
            )
            os.chmod(path, 0o600)
