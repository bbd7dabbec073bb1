import pytest
import requests

from keygate_core.config import Settings
from keygate_core.errors import ConfigurationError, LedgerError, LedgerUnavailableError
from keygate_core.ledger import LocalLedger, PaymentVerifier, SolanaRpcClient, ledger_factory
from keygate_core.ledger.verifier import balance_delta, memo_payload

RECIPIENT = "SeLLer1111111111111111111111111111111111111"
SENDER = "Buyer11111111111111111111111111111111111111"


def test_exact_amount_and_memo_matches():
    ledger = LocalLedger()
    sig = ledger.transfer(SENDER, RECIPIENT, 1_000_000, memo="order-1", block_time=1_700_000_000)
    check = PaymentVerifier(ledger).verify_payment(RECIPIENT, 1_000_000, "order-1")
    assert check.matched and check.tx_ref == sig
    assert check.confirmed_at == "2023-11-14T22:13:20.000Z"


def test_underpay_does_not_match():
    ledger = LocalLedger()
    ledger.transfer(SENDER, RECIPIENT, 999_999, memo="order-1")
    assert not PaymentVerifier(ledger).verify_payment(RECIPIENT, 1_000_000, "order-1").matched


def test_overpay_does_not_match():
    ledger = LocalLedger()
    ledger.transfer(SENDER, RECIPIENT, 1_000_001, memo="order-1")
    assert not PaymentVerifier(ledger).verify_payment(RECIPIENT, 1_000_000, "order-1").matched


def test_memo_must_be_exact():
    ledger = LocalLedger()
    ledger.transfer(SENDER, RECIPIENT, 1_000_000, memo="order-1 ")
    ledger.transfer(SENDER, RECIPIENT, 1_000_000, memo="order-10")
    ledger.transfer(SENDER, RECIPIENT, 1_000_000)
    assert not PaymentVerifier(ledger).verify_payment(RECIPIENT, 1_000_000, "order-1").matched


def test_failed_transaction_never_matches():
    ledger = LocalLedger()
    ledger.transfer(SENDER, RECIPIENT, 1_000_000, memo="order-1", failed=True)
    assert not PaymentVerifier(ledger).verify_payment(RECIPIENT, 1_000_000, "order-1").matched


def test_scan_window_is_bounded():
    ledger = LocalLedger()
    ledger.transfer(SENDER, RECIPIENT, 1_000_000, memo="order-1")
    for i in range(5):
        ledger.transfer(SENDER, RECIPIENT, 1, memo=f"noise-{i}")
    assert not PaymentVerifier(ledger, scan_limit=5).verify_payment(RECIPIENT, 1_000_000, "order-1").matched
    assert PaymentVerifier(ledger, scan_limit=6).verify_payment(RECIPIENT, 1_000_000, "order-1").matched


def test_memo_payload_forms():
    assert memo_payload({"program": "spl-memo", "parsed": "abc"}) == "abc"
    assert memo_payload({"program": "spl-memo", "parsed": {"memo": "abc"}}) == "abc"
    assert memo_payload({"program": "system", "parsed": "abc"}) is None


def test_balance_delta_with_string_account_keys():
    tx = {
        "meta": {"err": None, "preBalances": [5_000_000, 10], "postBalances": [3_999_000, 1_000_010]},
        "transaction": {"message": {"accountKeys": [SENDER, RECIPIENT], "instructions": []}},
    }
    assert balance_delta(tx, RECIPIENT) == 1_000_000
    assert balance_delta(tx, "someone-else") is None


def test_ledger_factory_modes():
    assert isinstance(ledger_factory(Settings(ledger_provider="local")), LocalLedger)
    assert isinstance(ledger_factory(Settings(ledger_provider="solana")), SolanaRpcClient)
    with pytest.raises(ConfigurationError):
        ledger_factory(Settings(ledger_provider="ethereum"))


# ---------------------------
# Solana JSON-RPC client
# ---------------------------

class _Resp:
    def __init__(self, status, payload=None):
        self.status_code = status
        self.ok = status < 400
        self._payload = payload
        self.text = ""

    def json(self):
        return self._payload


class _Session:
    def __init__(self, handler):
        self.handler = handler
        self.bodies = []

    def post(self, url, json=None, timeout=None):
        self.bodies.append(json)
        return self.handler(json)


def test_solana_client_drives_verifier():
    tx = {
        "slot": 42,
        "blockTime": 1_700_000_000,
        "meta": {"err": None, "preBalances": [9_000_000, 0], "postBalances": [7_995_000, 1_000_000]},
        "transaction": {"message": {
            "accountKeys": [{"pubkey": SENDER}, {"pubkey": RECIPIENT}],
            "instructions": [{"program": "spl-memo", "parsed": "order-9"}],
        }},
    }

    def handler(body):
        if body["method"] == "getSignaturesForAddress":
            return _Resp(200, {"jsonrpc": "2.0", "id": body["id"],
                               "result": [{"signature": "5igA", "slot": 42, "blockTime": 1_700_000_000}]})
        return _Resp(200, {"jsonrpc": "2.0", "id": body["id"], "result": tx})

    session = _Session(handler)
    client = SolanaRpcClient("https://rpc.test", session=session)
    check = PaymentVerifier(client, scan_limit=40).verify_payment(RECIPIENT, 1_000_000, "order-9")
    assert check.matched and check.tx_ref == "5igA" and check.slot == 42

    sig_req, tx_req = session.bodies
    assert sig_req["params"] == [RECIPIENT, {"limit": 40, "commitment": "confirmed"}]
    assert tx_req["params"][1] == {
        "encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed",
    }


def test_solana_client_unreachable(monkeypatch):
    def boom(*a, **kw):
        raise requests.ConnectionError("down")

    client = SolanaRpcClient("https://rpc.test")
    monkeypatch.setattr(client._session, "post", boom)
    with pytest.raises(LedgerUnavailableError):
        client.recent_signatures(RECIPIENT, 40)


def test_solana_client_rpc_error_object():
    session = _Session(lambda body: _Resp(200, {"error": {"code": -32602, "message": "Invalid param"}}))
    with pytest.raises(LedgerError):
        SolanaRpcClient("https://rpc.test", session=session).recent_signatures("bad", 40)


@pytest.mark.parametrize("payload", [None, [], {"error": "rate limited"}])
def test_solana_client_malformed_payload_is_ledger_error(payload):
    session = _Session(lambda body: _Resp(200, payload))
    with pytest.raises(LedgerError):
        SolanaRpcClient("https://rpc.test", session=session).get_transaction("sig")


def test_solana_client_server_error_is_transient():
    session = _Session(lambda body: _Resp(502))
    with pytest.raises(LedgerUnavailableError):
        SolanaRpcClient("https://rpc.test", session=session).get_transaction("5igA")
