"""
keygate_core.utils
------------------
Lightweight helpers for ids, timestamps, base64 and canonical JSON.
"""

from __future__ import annotations
import base64, binascii, json, uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("ascii"), validate=True)


def try_b64d(s: Optional[str]) -> Optional[bytes]:
    """Decode base64 or return None when the input is missing or malformed."""
    if not s:
        return None
    try:
        return b64d(s)
    except (binascii.Error, ValueError):
        return None


def now_dt() -> datetime:
    return datetime.now(timezone.utc)


def to_ts(dt: datetime) -> str:
    # RFC3339 / ISO 8601 in UTC, millisecond precision
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def now_ts() -> str:
    return to_ts(now_dt())


def parse_ts(s: str) -> datetime:
    return datetime.strptime(s, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def canonical_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
