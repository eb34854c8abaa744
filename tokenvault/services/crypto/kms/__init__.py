from __future__ import annotations

from tokenvault.core.config import get_settings
from tokenvault.core.errors import KeyManagementError
from tokenvault.services.crypto.kms.base import KmsProvider
from tokenvault.services.crypto.kms.local import LocalKmsProvider


_KMS_PROVIDERS: dict[str, type[KmsProvider]] = {
    "local_kms": LocalKmsProvider,
}


def get_kms_provider() -> KmsProvider:
    settings = get_settings()
    provider_name = settings.crypto_provider
    provider_cls = _KMS_PROVIDERS.get(provider_name)
    if provider_cls is None:
        raise KeyManagementError(f"Unsupported KMS provider: {provider_name}")
    return provider_cls()
