# keygate_core/ledger/ledger_local.py
from __future__ import annotations
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, List, Optional
import hashlib, itertools, time

from keygate_core.constants import MEMO_PROGRAM
from keygate_core.ledger.ledger_base import LedgerClient
from keygate_core.logger import get_logger

log = get_logger("KG.LocalLedger")


class LocalLedger(LedgerClient):
    """
    In-process ledger with atomic balance transfers and an optional memo.

    Transactions are stored in the same jsonParsed shape the Solana RPC
    returns, so the verifier runs unchanged against it.
    """
    name = "local"

    def __init__(self):
        self._lock = Lock()
        self._slot = itertools.count(1)
        self.balances: Dict[str, int] = defaultdict(int)
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self._by_address: Dict[str, List[str]] = defaultdict(list)

    def fund(self, address: str, lamports: int) -> None:
        with self._lock:
            self.balances[address] += lamports

    def transfer(self, sender: str, recipient: str, lamports: int, memo: Optional[str] = None,
                 block_time: Optional[int] = None, failed: bool = False) -> str:
        """Record a transfer and return its signature. A failed tx moves no funds."""
        with self._lock:
            slot = next(self._slot)
            signature = hashlib.sha256(f"{sender}:{recipient}:{lamports}:{memo}:{slot}".encode()).hexdigest()
            keys = [sender, recipient]
            pre = [self.balances[sender], self.balances[recipient]]
            if not failed:
                self.balances[sender] -= lamports
                self.balances[recipient] += lamports
            post = [self.balances[sender], self.balances[recipient]]

            instructions = [{
                "program": "system",
                "parsed": {"type": "transfer", "info": {
                    "source": sender, "destination": recipient, "lamports": lamports}},
            }]
            if memo is not None:
                instructions.append({"program": MEMO_PROGRAM, "parsed": memo})

            self.transactions[signature] = {
                "slot": slot,
                "blockTime": block_time if block_time is not None else int(time.time()),
                "meta": {
                    "err": {"InstructionError": [0, "Custom"]} if failed else None,
                    "preBalances": pre,
                    "postBalances": post,
                },
                "transaction": {
                    "signatures": [signature],
                    "message": {
                        "accountKeys": [{"pubkey": k} for k in keys],
                        "instructions": instructions,
                    },
                },
            }
            for addr in keys:
                self._by_address[addr].append(signature)
            log.debug(f"[LOCAL TX] {signature} {sender} → {recipient} {lamports} memo={memo}")
            return signature

    def recent_signatures(self, address: str, limit: int) -> List[Dict[str, Any]]:
        with self._lock:
            sigs = list(reversed(self._by_address.get(address, [])))[:limit]
            return [{"signature": s,
                     "slot": self.transactions[s]["slot"],
                     "blockTime": self.transactions[s]["blockTime"]} for s in sigs]

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self.transactions.get(signature)
