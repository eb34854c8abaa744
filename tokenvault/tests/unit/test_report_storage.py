from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from tokenvault.services.compliance.storage import LocalFileStore


def test_write_read_hash_delete(tmp_path: Path) -> None:
    store = LocalFileStore(tmp_path)
    path = store.write("pci_dss/report.json", b'{"ok": true}')
    assert path == "pci_dss/report.json"
    assert store.read(path) == b'{"ok": true}'
    assert store.hash_file(path) == hashlib.sha256(b'{"ok": true}').hexdigest()
    assert store.delete(path) is True
    assert store.delete(path) is False


def test_paths_cannot_escape_base(tmp_path: Path) -> None:
    store = LocalFileStore(tmp_path / "reports")
    with pytest.raises(ValueError):
        store.write("../outside.json", b"x")
