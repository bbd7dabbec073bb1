"""
keygate_core.audit
------------------
Append-only audit trail entries attached to orders and listings.

Entries are immutable; storage providers expose append and read operations
only.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, Optional

from .utils import now_ts


@dataclass(frozen=True)
class AuditEntry:
    action: str
    details: str = ""
    timestamp: str = field(default_factory=now_ts)
    actor: Optional[str] = None       # identity behind the action, if known

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if d["actor"] is None:
            d.pop("actor")
        return d


def entry(action: str, details: str = "", actor: Optional[str] = None) -> AuditEntry:
    return AuditEntry(action=action, details=details, actor=actor)
