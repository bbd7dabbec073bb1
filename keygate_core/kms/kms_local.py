# keygate_core/kms/kms_local.py
from __future__ import annotations

from keygate_core.constants import LOCAL_FALLBACK_VERSION, MASTER_KEY_SIZE
from keygate_core.crypto import gcm_decrypt, gcm_encrypt
from keygate_core.errors import ConfigurationError, IntegrityError
from keygate_core.kms.kms_base import WrappedKey
from keygate_core.utils import b64e, try_b64d


class LocalFallbackBackend:
    """
    AES-256-GCM key wrap under the server master key (SERVER_KEY_HEX).

    Always tags its output with key version 0 so unwrap can pick this scheme
    from the stored record alone.
    """
    name = "local"

    def __init__(self, master_key: bytes):
        if len(master_key) != MASTER_KEY_SIZE:
            raise ConfigurationError(f"Local master key must be {MASTER_KEY_SIZE} bytes")
        self._master = master_key

    def wrap(self, raw_key: bytes) -> WrappedKey:
        iv, tag, enc = gcm_encrypt(self._master, raw_key)
        return WrappedKey(
            wrapped_key_b64=b64e(enc),
            iv_b64=b64e(iv),
            tag_b64=b64e(tag),
            key_version=LOCAL_FALLBACK_VERSION,
        )

    def unwrap(self, wrapped: WrappedKey) -> bytes:
        enc = try_b64d(wrapped.wrapped_key_b64)
        iv = try_b64d(wrapped.iv_b64)
        tag = try_b64d(wrapped.tag_b64)
        if enc is None or iv is None or tag is None:
            raise IntegrityError("Locally wrapped key is missing its ciphertext, IV or tag")
        return gcm_decrypt(self._master, iv, tag, enc)
