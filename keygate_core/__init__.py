"""
KeyGate Core Package
====================
Payment-gated key release primitives for the dataset marketplace backend.

Provides:
- AES-256-GCM content encryption and ephemeral-key sealing to buyers
- Versioned key wrapping (remote KMS with local fallback)
- Ledger payment verification (Solana JSON-RPC)
- Order state machine with replay and double-delivery protection
- Pluggable storage (SQLite default, in-memory for tests)
"""

__version__ = "0.3.0"
