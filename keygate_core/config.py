# keygate_core/config.py

from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional
import binascii, os

from keygate_core.constants import (
    DEFAULT_NETWORK, DEFAULT_ORDER_TTL_SECONDS, DEFAULT_SCAN_LIMIT, MASTER_KEY_SIZE,
)
from keygate_core.errors import ConfigurationError


@dataclass
class Settings:
    """
    Runtime configuration.

    Resolution order for every field: explicit override dict, then the
    environment, then the default below.
    """
    storage_provider: str = "sqlite"        # sqlite | memory
    sqlite_path: str = "db/keygate.db"
    server_key_hex: Optional[str] = None    # local fallback master key (64 hex chars)
    kms_provider: str = "none"              # vault | memory | none
    kms_key_id: Optional[str] = None
    vault_addr: str = "http://127.0.0.1:8200"
    vault_token: Optional[str] = None
    vault_mount: str = "transit"
    kms_timeout: float = 5.0
    ledger_provider: str = "solana"         # solana | local
    solana_rpc: str = "https://api.devnet.solana.com"
    ledger_timeout: float = 10.0
    scan_limit: int = DEFAULT_SCAN_LIMIT
    network: str = DEFAULT_NETWORK
    order_ttl_seconds: int = DEFAULT_ORDER_TTL_SECONDS
    log_level: str = "INFO"

    _ENV = {
        "storage_provider": "KEYGATE_STORAGE_PROVIDER",
        "sqlite_path": "KEYGATE_DB_PATH",
        "server_key_hex": "SERVER_KEY_HEX",
        "kms_provider": "KEYGATE_KMS_PROVIDER",
        "kms_key_id": "KMS_KEY_ID",
        "vault_addr": "VAULT_ADDR",
        "vault_token": "VAULT_TOKEN",
        "vault_mount": "VAULT_TRANSIT_MOUNT",
        "kms_timeout": "KEYGATE_KMS_TIMEOUT",
        "ledger_provider": "KEYGATE_LEDGER",
        "solana_rpc": "SOLANA_RPC",
        "ledger_timeout": "KEYGATE_LEDGER_TIMEOUT",
        "scan_limit": "KEYGATE_SCAN_LIMIT",
        "network": "KEYGATE_NETWORK",
        "order_ttl_seconds": "KEYGATE_ORDER_TTL",
        "log_level": "KEYGATE_LOG_LEVEL",
    }

    @classmethod
    def from_env(cls, overrides: Dict[str, Any] | None = None) -> "Settings":
        overrides = overrides or {}
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name in overrides and overrides[f.name] is not None:
                raw = overrides[f.name]
            else:
                raw = os.getenv(cls._ENV[f.name])
                if raw is None or raw == "":
                    continue
            values[f.name] = _coerce(f.name, f.type, raw)

        # A configured KMS key implies the Vault backend unless told otherwise
        if "kms_provider" not in values and values.get("kms_key_id"):
            values["kms_provider"] = "vault"

        settings = cls(**values)
        settings.master_key()  # fail fast on a malformed SERVER_KEY_HEX
        return settings

    def master_key(self) -> Optional[bytes]:
        """Decoded local fallback master key, or None when not configured."""
        if not self.server_key_hex:
            return None
        try:
            key = binascii.unhexlify(self.server_key_hex.strip())
        except (binascii.Error, ValueError):
            raise ConfigurationError("SERVER_KEY_HEX is not valid hex")
        if len(key) != MASTER_KEY_SIZE:
            raise ConfigurationError(f"SERVER_KEY_HEX must decode to {MASTER_KEY_SIZE} bytes")
        return key


def _coerce(name: str, type_name: Any, raw: Any) -> Any:
    type_name = str(type_name)
    try:
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}")
    return raw if not isinstance(raw, str) else raw.strip()
