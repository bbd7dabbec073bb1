from __future__ import annotations
from dataclasses import dataclass, asdict, field
from threading import RLock
from typing import Any, Dict, List, Optional

from keygate_core.constants import LOCAL_FALLBACK_VERSION
from keygate_core.errors import KeyVersionNotFoundError, ValidationError
from keygate_core.utils import now_ts


@dataclass(frozen=True)
class WrappedKey:
    """A content key encrypted under a master key, plus the version that decides how to open it."""
    wrapped_key_b64: str
    iv_b64: str = ""
    tag_b64: str = ""
    key_version: int = LOCAL_FALLBACK_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wrappedKeyB64": self.wrapped_key_b64,
            "ivB64": self.iv_b64,
            "tagB64": self.tag_b64,
            "keyVersion": self.key_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WrappedKey":
        return cls(
            wrapped_key_b64=data["wrappedKeyB64"],
            iv_b64=data.get("ivB64") or "",
            tag_b64=data.get("tagB64") or "",
            # legacy records carry no version at all: treat as local fallback
            key_version=int(data.get("keyVersion") or LOCAL_FALLBACK_VERSION),
        )


@dataclass
class KeyVersion:
    version: int
    handle: str                 # remote KMS key id / name
    active: bool = False
    created_at: str = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class KeyVersionTable:
    """
    Ordered registry of remote master-key generations.

    Versions start at 1 and are never removed; exactly one entry is active
    for new wraps once any entry exists. Version 0 is reserved for the local
    fallback scheme and never appears here.
    """

    def __init__(self, versions: Optional[List[KeyVersion]] = None):
        self._lock = RLock()
        self._versions: List[KeyVersion] = []
        for kv in versions or []:
            self._add(kv)

    def _add(self, kv: KeyVersion) -> None:
        if kv.version <= LOCAL_FALLBACK_VERSION:
            raise ValidationError("Remote key versions start at 1")
        if any(v.version == kv.version for v in self._versions):
            raise ValidationError(f"Key version {kv.version} already registered")
        if kv.active:
            for v in self._versions:
                v.active = False
        self._versions.append(kv)
        self._versions.sort(key=lambda v: v.version)

    def register(self, handle: str, version: Optional[int] = None, active: bool = False) -> KeyVersion:
        with self._lock:
            if version is None:
                version = self._next_version()
            kv = KeyVersion(version=version, handle=handle, active=active)
            self._add(kv)
            return kv

    def rotate(self, handle: str) -> KeyVersion:
        """Append a new active generation; older ones stay resolvable for unwrap."""
        with self._lock:
            return self.register(handle, active=True)

    def _next_version(self) -> int:
        return (self._versions[-1].version + 1) if self._versions else 1

    def active(self) -> Optional[KeyVersion]:
        with self._lock:
            return next((v for v in self._versions if v.active), None)

    def get(self, version: int) -> KeyVersion:
        with self._lock:
            for v in self._versions:
                if v.version == version:
                    return v
        raise KeyVersionNotFoundError(f"Key version {version} not found")

    def list(self) -> List[KeyVersion]:
        with self._lock:
            return list(self._versions)

    def __len__(self) -> int:
        return len(self._versions)


class KmsBackend:
    """
    Remote KMS contract.

    encrypt/decrypt address a master key by its handle. Implementations map
    reachability problems to KmsUnavailableError, authentication failures on
    the ciphertext to IntegrityError, and everything else to KmsError.
    """
    name: str = "base"

    def encrypt(self, handle: str, plaintext: bytes) -> bytes:
        raise NotImplementedError

    def decrypt(self, handle: str, blob: bytes) -> bytes:
        raise NotImplementedError

    def healthz(self) -> dict:
        return {"status": "ok", "kms": self.name}
