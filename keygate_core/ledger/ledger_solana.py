# keygate_core/ledger/ledger_solana.py
import itertools
from typing import Any, Dict, List, Optional

import requests

from keygate_core.errors import LedgerError, LedgerUnavailableError
from keygate_core.ledger.ledger_base import LedgerClient
from keygate_core.logger import get_logger

log = get_logger("KG.Solana")


class SolanaRpcClient(LedgerClient):
    """
    Solana JSON-RPC reader.

    Only two calls are needed: getSignaturesForAddress (bounded window) and
    getTransaction in jsonParsed encoding at "confirmed" commitment.
    """
    name = "solana"

    def __init__(self, rpc_url: str, timeout: float = 10.0, commitment: str = "confirmed",
                 session: requests.Session | None = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.commitment = commitment
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: list) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        log.debug(f"[RPC] → {self.rpc_url} | method={method}")
        try:
            res = self._session.post(self.rpc_url, json=body, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            log.warning(f"[RPC] {method} unreachable: {type(e).__name__}")
            raise LedgerUnavailableError(f"Ledger RPC {method} unreachable") from None
        except requests.RequestException as e:
            raise LedgerError(f"Ledger RPC {method} failed: {type(e).__name__}") from None

        if res.status_code >= 500 or res.status_code == 429:
            log.warning(f"[RPC] {method} {res.status_code}")
            raise LedgerUnavailableError(f"Ledger RPC {method} returned {res.status_code}")
        if not res.ok:
            log.error(f"[RPC] {method} {res.status_code}: {res.text[:200]}")
            raise LedgerError(f"Ledger RPC {method} returned {res.status_code}")

        try:
            payload = res.json()
        except ValueError:
            raise LedgerError(f"Ledger RPC {method} returned invalid JSON") from None
        if not isinstance(payload, dict):
            raise LedgerError(f"Ledger RPC {method} returned a malformed response")
        err = payload.get("error")
        if err:
            if isinstance(err, dict):
                raise LedgerError(f"Ledger RPC {method} error {err.get('code')}: {err.get('message')}")
            raise LedgerError(f"Ledger RPC {method} error: {str(err)[:200]}")
        return payload.get("result")

    def recent_signatures(self, address: str, limit: int) -> List[Dict[str, Any]]:
        result = self._rpc("getSignaturesForAddress", [address, {"limit": limit, "commitment": self.commitment}])
        if not isinstance(result, list):
            raise LedgerError("getSignaturesForAddress returned a malformed result")
        return result

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        result = self._rpc("getTransaction", [signature, {
            "encoding": "jsonParsed",
            "maxSupportedTransactionVersion": 0,
            "commitment": self.commitment,
        }])
        return result or None

    def healthz(self) -> dict:
        try:
            self._rpc("getHealth", [])
            return {"status": "ok", "ledger": self.name}
        except (LedgerError, LedgerUnavailableError):
            return {"status": "down", "ledger": self.name}
