# keygate_core/ledger/__init__.py
from keygate_core.ledger.ledger_base import LedgerClient, PaymentCheck
from keygate_core.ledger.ledger_local import LocalLedger
from keygate_core.ledger.ledger_solana import SolanaRpcClient
from keygate_core.ledger.verifier import PaymentVerifier
from keygate_core.errors import ConfigurationError


def ledger_factory(settings) -> LedgerClient:
    """
    KEYGATE_LEDGER:
      - "solana" → SolanaRpcClient(SOLANA_RPC)
      - "local"  → LocalLedger (in-process, tests / dev)
    """
    mode = (settings.ledger_provider or "solana").lower()
    if mode == "solana":
        return SolanaRpcClient(settings.solana_rpc, timeout=settings.ledger_timeout)
    if mode == "local":
        return LocalLedger()
    raise ConfigurationError(f"Unknown ledger provider: {mode}")


__all__ = [
    "LedgerClient",
    "PaymentCheck",
    "LocalLedger",
    "SolanaRpcClient",
    "PaymentVerifier",
    "ledger_factory",
]
