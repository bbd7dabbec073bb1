from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class PaymentCheck:
    matched: bool
    tx_ref: Optional[str] = None
    confirmed_at: Optional[str] = None
    slot: Optional[int] = None


NOT_MATCHED = PaymentCheck(matched=False)


class LedgerClient:
    """
    Read-only view of the external ledger.

    recent_signatures() returns newest-first entries shaped like
    {"signature": str, "slot": int, "blockTime": int | None}.
    get_transaction() returns a jsonParsed transaction (Solana shape) or None
    when the ledger does not know the signature yet.
    """
    name: str = "base"

    def recent_signatures(self, address: str, limit: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def healthz(self) -> dict:
        return {"status": "ok", "ledger": self.name}
