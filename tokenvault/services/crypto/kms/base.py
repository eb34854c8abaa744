from __future__ import annotations

from typing import Protocol


class KmsProvider(Protocol):
    provider: str

    def build_key_ref(self, *, vault_id: str, key_version: int) -> str:
        ...

    def wrap_key(self, *, dek: bytes, key_ref: str) -> str:
        ...

    def unwrap_key(self, *, wrapped_dek: str, key_ref: str) -> bytes:
        ...
