# keygate_core/kms/kms_memory.py
from __future__ import annotations
from threading import Lock
from typing import Dict, Optional, Set

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from keygate_core.constants import IV_SIZE, TAG_SIZE
from keygate_core.crypto import gcm_decrypt, gcm_encrypt
from keygate_core.errors import IntegrityError, KmsError, KmsUnavailableError
from keygate_core.kms.kms_base import KmsBackend


class InMemoryKmsBackend(KmsBackend):
    """
    In-process stand-in for a remote KMS.

    Each handle owns its own AES-256-GCM key that never leaves the backend.
    Blob layout: iv (12) || ciphertext || tag (16). `offline` simulates an
    unreachable service.
    """
    name = "memory"

    def __init__(self, handles: Optional[Set[str]] = None):
        self._lock = Lock()
        self._keys: Dict[str, bytes] = {}
        self.offline = False
        self.calls = 0
        for h in handles or ():
            self.create_key(h)

    def create_key(self, handle: str) -> None:
        with self._lock:
            self._keys.setdefault(handle, AESGCM.generate_key(bit_length=256))

    def _key(self, handle: str) -> bytes:
        self.calls += 1
        if self.offline:
            raise KmsUnavailableError("KMS unreachable")
        with self._lock:
            key = self._keys.get(handle)
        if key is None:
            raise KmsError(f"Unknown KMS key handle: {handle}")
        return key

    def encrypt(self, handle: str, plaintext: bytes) -> bytes:
        iv, tag, ct = gcm_encrypt(self._key(handle), plaintext, aad=handle.encode("utf-8"))
        return iv + ct + tag

    def decrypt(self, handle: str, blob: bytes) -> bytes:
        key = self._key(handle)
        if len(blob) < IV_SIZE + TAG_SIZE:
            raise IntegrityError("KMS ciphertext is truncated")
        iv, ct, tag = blob[:IV_SIZE], blob[IV_SIZE:-TAG_SIZE], blob[-TAG_SIZE:]
        return gcm_decrypt(key, iv, tag, ct, aad=handle.encode("utf-8"))

    def healthz(self) -> dict:
        return {"status": "down" if self.offline else "ok", "kms": self.name}
