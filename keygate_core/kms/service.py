"""
keygate_core.kms.service
------------------------
Key Wrap Service: wraps the per-asset content key under a versioned master
key and unwraps it again at delivery time.

- wrap() uses the active remote version (or an explicit one) and fails over
  to the local scheme, tagged version 0, when the remote KMS call fails
- unwrap() dispatches only on the version stored with the blob; it never
  retries a remote-versioned record with the local scheme
- rotate() adds a new active version; older versions stay resolvable
"""

from __future__ import annotations
from typing import Optional

from keygate_core.constants import CONTENT_KEY_SIZE, KEY_ROTATED, LOCAL_FALLBACK_VERSION
from keygate_core.errors import ConfigurationError, IntegrityError, KmsError, KmsUnavailableError
from keygate_core.kms.kms_base import KeyVersion, KeyVersionTable, KmsBackend, WrappedKey
from keygate_core.kms.kms_local import LocalFallbackBackend
from keygate_core.logger import get_logger
from keygate_core.utils import b64e, try_b64d

log = get_logger("KG.KMS")


class KeyWrapService:
    def __init__(
        self,
        versions: Optional[KeyVersionTable] = None,
        remote: Optional[KmsBackend] = None,
        local: Optional[LocalFallbackBackend] = None,
        events=None,
    ):
        self.versions = versions if versions is not None else KeyVersionTable()
        self.remote = remote
        self.local = local
        self.events = events    # optional StorageProvider for KEY_ROTATED events

        if self.remote is None and self.local is None:
            raise ConfigurationError("No key-wrap backend configured (set KMS_KEY_ID or SERVER_KEY_HEX)")
        if self.remote is None and len(self.versions):
            raise ConfigurationError("Remote key versions registered without a KMS backend")

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------
    def active_version(self) -> int:
        kv = self.versions.active()
        if kv is None or self.remote is None:
            return LOCAL_FALLBACK_VERSION
        return kv.version

    def rotate(self, new_handle: str) -> KeyVersion:
        """Make `new_handle` the master key for future wraps."""
        if self.remote is None:
            raise ConfigurationError("Cannot rotate without a remote KMS backend")
        previous = self.versions.active()
        kv = self.versions.rotate(new_handle)
        log.info(f"[KMS] rotated to key version {kv.version} (previous={previous.version if previous else None})")
        if self.events is not None:
            self.events.log_event(KEY_ROTATED, {
                "version": kv.version,
                "handle": kv.handle,
                "previous": previous.version if previous else None,
            })
        return kv

    # ------------------------------------------------------------------
    # Wrap
    # ------------------------------------------------------------------
    def wrap(self, content_key: bytes, version: Optional[int] = None) -> WrappedKey:
        if len(content_key) != CONTENT_KEY_SIZE:
            raise IntegrityError("Content key has the wrong length")

        if version == LOCAL_FALLBACK_VERSION:
            return self._wrap_local(content_key)

        target = self.versions.get(version) if version is not None else self.versions.active()
        if target is None or self.remote is None:
            return self._wrap_local(content_key)

        try:
            blob = self.remote.encrypt(target.handle, content_key)
        except (KmsUnavailableError, KmsError) as e:
            if self.local is None:
                raise
            log.warning(f"[KMS] wrap under version {target.version} failed ({e.code}); using local fallback")
            return self._wrap_local(content_key)

        return WrappedKey(wrapped_key_b64=b64e(blob), key_version=target.version)

    def _wrap_local(self, content_key: bytes) -> WrappedKey:
        if self.local is None:
            raise ConfigurationError("Neither an active KMS key nor SERVER_KEY_HEX is configured")
        return self.local.wrap(content_key)

    # ------------------------------------------------------------------
    # Unwrap
    # ------------------------------------------------------------------
    def unwrap(self, wrapped: WrappedKey) -> bytes:
        version = wrapped.key_version or LOCAL_FALLBACK_VERSION

        if version == LOCAL_FALLBACK_VERSION:
            if self.local is None:
                raise ConfigurationError("Key was wrapped locally but SERVER_KEY_HEX is not configured")
            raw = self.local.unwrap(wrapped)
        else:
            kv = self.versions.get(version)
            if self.remote is None:
                raise ConfigurationError(f"Key version {version} needs a remote KMS backend")
            blob = try_b64d(wrapped.wrapped_key_b64)
            if blob is None:
                raise IntegrityError("Wrapped key is not valid base64")
            raw = self.remote.decrypt(kv.handle, blob)

        if len(raw) != CONTENT_KEY_SIZE:
            raise IntegrityError("Unwrapped key has the wrong length")
        return raw
