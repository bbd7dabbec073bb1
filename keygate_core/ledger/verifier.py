"""
keygate_core.ledger.verifier
----------------------------
After-the-fact payment verification against the recipient's recent ledger
activity.

A transaction matches iff it carries a memo instruction whose payload is
exactly the order memo AND the recipient's balance moved by exactly the
expected amount. The scan is read-only and can be repeated freely.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from keygate_core.constants import DEFAULT_SCAN_LIMIT, MEMO_PROGRAM
from keygate_core.ledger.ledger_base import NOT_MATCHED, LedgerClient, PaymentCheck
from keygate_core.logger import get_logger
from keygate_core.utils import now_ts, to_ts

log = get_logger("KG.Ledger")


def memo_payload(ix: Dict[str, Any]) -> Optional[str]:
    if ix.get("program") != MEMO_PROGRAM:
        return None
    parsed = ix.get("parsed")
    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("memo"), str):
        return parsed["memo"]
    return None


def has_memo(tx: Dict[str, Any], memo: str) -> bool:
    message = (tx.get("transaction") or {}).get("message") or {}
    return any(memo_payload(ix) == memo for ix in message.get("instructions") or [])


def account_keys(tx: Dict[str, Any]) -> List[str]:
    message = (tx.get("transaction") or {}).get("message") or {}
    keys = []
    for k in message.get("accountKeys") or []:
        keys.append(k.get("pubkey") if isinstance(k, dict) else str(k))
    return keys


def balance_delta(tx: Dict[str, Any], recipient: str) -> Optional[int]:
    meta = tx.get("meta")
    if not meta:
        return None
    keys = account_keys(tx)
    if recipient not in keys:
        return None
    idx = keys.index(recipient)
    pre, post = meta.get("preBalances") or [], meta.get("postBalances") or []
    if idx >= len(pre) or idx >= len(post):
        return None
    return post[idx] - pre[idx]


class PaymentVerifier:
    def __init__(self, client: LedgerClient, scan_limit: int = DEFAULT_SCAN_LIMIT):
        self.client = client
        self.scan_limit = scan_limit

    def verify_payment(self, recipient: str, expected_amount: int, memo: str) -> PaymentCheck:
        """Return the first recent transfer to `recipient` matching memo and exact amount."""
        sigs = self.client.recent_signatures(recipient, self.scan_limit)
        for s in sigs[: self.scan_limit]:
            signature = s.get("signature")
            if not signature:
                continue
            tx = self.client.get_transaction(signature)
            if not tx:
                continue
            if not has_memo(tx, memo):
                continue
            if (tx.get("meta") or {}).get("err") is not None:
                log.info(f"[VERIFY] memo={memo} tx={signature} failed on-chain; skipping")
                continue
            delta = balance_delta(tx, recipient)
            if delta != expected_amount:
                log.info(f"[VERIFY] memo={memo} tx={signature} delta={delta} expected={expected_amount}")
                continue

            block_time = tx.get("blockTime") or s.get("blockTime")
            confirmed_at = (
                to_ts(datetime.fromtimestamp(block_time, tz=timezone.utc)) if block_time else now_ts()
            )
            log.info(f"[VERIFY] memo={memo} matched tx={signature}")
            return PaymentCheck(
                matched=True,
                tx_ref=signature,
                confirmed_at=confirmed_at,
                slot=tx.get("slot", s.get("slot")),
            )
        return NOT_MATCHED
