"""DeepChat storage backends: durable key-value store and encrypted secret store.

Both backends expose the same three-call interface keyed by an opaque
string: ``get(key) -> str | None``, ``set(key, value)``, ``delete(key)``.
Every failure surfaces as StorageError.

  - MemoryStore          in-process dict (stateless runs, tests)
  - FileStore            one file per key, atomic replace on write
  - EncryptedFileStore   FileStore with Fernet encryption at rest
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from errors import StorageError

logger = logging.getLogger("deepchat.storage")


class KeyValueStore(Protocol):
    """Collaborator interface for durable and secure storage."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class MemoryStore:
    """Dict-backed store; nothing survives the process."""

    def __init__(self, initial: Dict[str, str] | None = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


# ---------------------------------------------------------------------------
# File-backed store
# ---------------------------------------------------------------------------
_RE_UNSAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, str(path))
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


class FileStore:
    """One UTF-8 file per key under *directory*."""

    suffix = ".json"

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not key:
            raise StorageError("Storage key must be non-empty")
        return self.directory / (_RE_UNSAFE_KEY.sub("_", key) + self.suffix)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot read {key}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        if path.is_symlink():
            raise StorageError(f"Refusing to write symlinked storage file for {key}")
        try:
            _atomic_write_text(path, value)
        except OSError as exc:
            raise StorageError(f"Cannot write {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot delete {key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Encrypted store
# ---------------------------------------------------------------------------
def load_or_create_key(key_path: Path) -> bytes:
    """Return the Fernet key at *key_path*, generating it (mode 0600) if absent."""
    key_path = Path(key_path)
    try:
        if key_path.exists():
            return key_path.read_bytes().strip()
        key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        logger.info("Generated new secret-store key at %s", key_path)
        return key
    except OSError as exc:
        raise StorageError(f"Cannot access secret-store key {key_path}: {exc}") from exc


class EncryptedFileStore(FileStore):
    """FileStore whose values are Fernet tokens."""

    suffix = ".secret"

    def __init__(self, directory: Path, key: bytes):
        super().__init__(directory)
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise StorageError(f"Invalid secret-store key: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        token = super().get(key)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise StorageError(f"Cannot decrypt {key}") from exc

    def set(self, key: str, value: str) -> None:
        token = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        super().set(key, token)
