# keygate_core/storage/provider.py
"""
Storage contract for KeyGate.

Every state transition is a single conditional write ("compare-and-set")
that returns True only for the caller that actually performed it. Callers
that get False must re-read the record instead of retrying the write.
Audit entries are append-only: there is no update or delete path.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from keygate_core.audit import AuditEntry
from keygate_core.kms.kms_base import WrappedKey
from keygate_core.storage.models import AssetKeyRecord, Listing, Order


class StorageProvider:
    name: str = "base"

    # listings
    def insert_listing(self, listing: Listing) -> None:
        raise NotImplementedError

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        raise NotImplementedError

    def mark_listing_withdrawn(self, listing_id: str, withdrawn_at: str, reason: str) -> bool:
        """Set withdrawal fields iff the listing is not withdrawn yet."""
        raise NotImplementedError

    def append_listing_audit(self, listing_id: str, entry: AuditEntry) -> None:
        raise NotImplementedError

    # asset keys
    def insert_asset_key(self, rec: AssetKeyRecord) -> None:
        raise NotImplementedError

    def get_asset_key(self, asset_id: str) -> Optional[AssetKeyRecord]:
        raise NotImplementedError

    def replace_asset_key(self, asset_id: str, expected_version: int,
                          wrapped: WrappedKey, rotated_at: str) -> bool:
        """Swap blob and version together iff the stored version still matches."""
        raise NotImplementedError

    # orders
    def insert_order(self, order: Order) -> None:
        raise NotImplementedError

    def get_order(self, order_id: str) -> Optional[Order]:
        raise NotImplementedError

    def find_order_by_tx_ref(self, tx_ref: str) -> Optional[Order]:
        raise NotImplementedError

    def find_active_delivery(self, asset_id: str, buyer_identity: str) -> Optional[Order]:
        """A DELIVERED, non-revoked order for this buyer and asset."""
        raise NotImplementedError

    def list_pending_before(self, cutoff_ts: str) -> List[str]:
        raise NotImplementedError

    def attach_payment(self, order_id: str, tx_ref: str, confirmed_at: str) -> bool:
        """PENDING -> PAID. Raises ReplayDetectedError if tx_ref is attached elsewhere."""
        raise NotImplementedError

    def complete_delivery(self, order_id: str, sealed_key_b64: str,
                          ephemeral_pub_b64: str, delivered_at: str) -> bool:
        """PAID (no sealed key) -> DELIVERED with the sealed key, in one write."""
        raise NotImplementedError

    def heal_delivery(self, order_id: str) -> bool:
        """PAID with a sealed key already stored -> DELIVERED."""
        raise NotImplementedError

    def mark_revoked(self, order_id: str, revoked_at: str, reason: str) -> bool:
        """Set the revocation overlay iff DELIVERED and not yet revoked."""
        raise NotImplementedError

    def mark_expired(self, order_id: str) -> bool:
        """PENDING -> EXPIRED."""
        raise NotImplementedError

    def append_order_audit(self, order_id: str, entry: AuditEntry) -> None:
        raise NotImplementedError

    # service-level event log
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def list_events(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        return
