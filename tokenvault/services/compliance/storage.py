from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Protocol

from tokenvault.core.config import get_settings


class FileStore(Protocol):
    def write(self, path: str, data: bytes) -> str:
        ...

    def read(self, path: str) -> bytes:
        ...

    def hash_file(self, path: str) -> str:
        ...

    def delete(self, path: str) -> bool:
        ...


class LocalFileStore:
    # Report artifacts on local disk; paths are relative to the base directory.
    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base = Path(base_dir or get_settings().compliance_report_dir)

    def _resolve(self, path: str) -> Path:
        base = self._base.resolve()
        target = (base / path).resolve()
        if base not in target.parents and target != base:
            raise ValueError("Artifact path escapes the report directory")
        return target

    def write(self, path: str, data: bytes) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def hash_file(self, path: str) -> str:
        digest = hashlib.sha256()
        with self._resolve(path).open("rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.exists():
            return False
        target.unlink()
        return True


_store: FileStore | None = None


def get_file_store() -> FileStore:
    global _store
    if _store is None:
        _store = LocalFileStore()
    return _store


def set_file_store(store: FileStore | None) -> None:
    global _store
    _store = store
