# keygate_core/kms/__init__.py
from keygate_core.kms.kms_base import KeyVersion, KeyVersionTable, KmsBackend, WrappedKey
from keygate_core.kms.kms_local import LocalFallbackBackend
from keygate_core.kms.kms_memory import InMemoryKmsBackend
from keygate_core.kms.kms_vault import VaultTransitBackend
from keygate_core.kms.service import KeyWrapService
from keygate_core.errors import ConfigurationError

DEFAULT_MEMORY_HANDLE = "keygate-master-1"


def kms_factory(settings, events=None) -> KeyWrapService:
    """
    Build the Key Wrap Service from Settings.

    kms_provider:
      - "vault"  → VaultTransitBackend, KMS_KEY_ID registered as version 1
      - "memory" → InMemoryKmsBackend (local development / tests)
      - "none"   → local fallback only (SERVER_KEY_HEX)
    """
    local = None
    master = settings.master_key()
    if master is not None:
        local = LocalFallbackBackend(master)

    mode = (settings.kms_provider or "none").lower()
    versions = KeyVersionTable()
    remote = None

    if mode == "vault":
        if not settings.kms_key_id:
            raise ConfigurationError("KEYGATE_KMS_PROVIDER=vault requires KMS_KEY_ID")
        remote = VaultTransitBackend(
            settings.vault_addr,
            token=settings.vault_token,
            mount=settings.vault_mount,
            timeout=settings.kms_timeout,
        )
        versions.register(settings.kms_key_id, version=1, active=True)
    elif mode == "memory":
        handle = settings.kms_key_id or DEFAULT_MEMORY_HANDLE
        remote = InMemoryKmsBackend({handle})
        versions.register(handle, version=1, active=True)
    elif mode != "none":
        raise ConfigurationError(f"Unknown KMS provider: {mode}")

    return KeyWrapService(versions=versions, remote=remote, local=local, events=events)


__all__ = [
    "KeyVersion",
    "KeyVersionTable",
    "KmsBackend",
    "WrappedKey",
    "LocalFallbackBackend",
    "InMemoryKmsBackend",
    "VaultTransitBackend",
    "KeyWrapService",
    "kms_factory",
]
