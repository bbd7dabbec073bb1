from __future__ import annotations
from copy import deepcopy
from threading import RLock
from typing import Any, Dict, List, Optional

from keygate_core.audit import AuditEntry
from keygate_core.errors import DuplicateRecordError, ReplayDetectedError
from keygate_core.kms.kms_base import WrappedKey
from keygate_core.storage.models import AssetKeyRecord, Listing, Order, OrderState
from keygate_core.storage.provider import StorageProvider
from keygate_core.utils import now_ts


class InMemoryStorage(StorageProvider):
    """Process-local storage. All reads hand out copies; writes run under one lock."""
    name = "memory"

    def __init__(self):
        self._lock = RLock()
        self.listings: Dict[str, Listing] = {}
        self.asset_keys: Dict[str, AssetKeyRecord] = {}
        self.orders: Dict[str, Order] = {}
        self.tx_index: Dict[str, str] = {}     # tx_ref -> order_id
        self.events: List[Dict[str, Any]] = []

    # listings
    def insert_listing(self, listing: Listing) -> None:
        with self._lock:
            if listing.listing_id in self.listings:
                raise DuplicateRecordError(f"Listing {listing.listing_id} already exists")
            self.listings[listing.listing_id] = deepcopy(listing)

    def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            return deepcopy(self.listings.get(listing_id))

    def mark_listing_withdrawn(self, listing_id: str, withdrawn_at: str, reason: str) -> bool:
        with self._lock:
            listing = self.listings.get(listing_id)
            if listing is None or listing.withdrawn_at is not None:
                return False
            listing.withdrawn_at = withdrawn_at
            listing.withdrawn_reason = reason
            listing.withdrawal_enabled = False
            return True

    def append_listing_audit(self, listing_id: str, entry: AuditEntry) -> None:
        with self._lock:
            listing = self.listings.get(listing_id)
            if listing is not None:
                listing.audit_log.append(entry)

    # asset keys
    def insert_asset_key(self, rec: AssetKeyRecord) -> None:
        with self._lock:
            if rec.asset_id in self.asset_keys:
                raise DuplicateRecordError(f"Asset key for {rec.asset_id} already exists")
            self.asset_keys[rec.asset_id] = deepcopy(rec)

    def get_asset_key(self, asset_id: str) -> Optional[AssetKeyRecord]:
        with self._lock:
            return deepcopy(self.asset_keys.get(asset_id))

    def replace_asset_key(self, asset_id: str, expected_version: int,
                          wrapped: WrappedKey, rotated_at: str) -> bool:
        with self._lock:
            rec = self.asset_keys.get(asset_id)
            if rec is None or rec.key_version != expected_version:
                return False
            rec.wrapped_key_b64 = wrapped.wrapped_key_b64
            rec.iv_b64 = wrapped.iv_b64
            rec.tag_b64 = wrapped.tag_b64
            rec.key_version = wrapped.key_version
            rec.rotated_at = rotated_at
            return True

    # orders
    def insert_order(self, order: Order) -> None:
        with self._lock:
            if order.order_id in self.orders:
                raise DuplicateRecordError(f"Order {order.order_id} already exists")
            self.orders[order.order_id] = deepcopy(order)

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return deepcopy(self.orders.get(order_id))

    def find_order_by_tx_ref(self, tx_ref: str) -> Optional[Order]:
        with self._lock:
            order_id = self.tx_index.get(tx_ref)
            return self.get_order(order_id) if order_id else None

    def find_active_delivery(self, asset_id: str, buyer_identity: str) -> Optional[Order]:
        with self._lock:
            for order in self.orders.values():
                if (order.asset_id == asset_id and order.buyer_identity == buyer_identity
                        and order.state == OrderState.DELIVERED and not order.access_revoked):
                    return deepcopy(order)
            return None

    def list_pending_before(self, cutoff_ts: str) -> List[str]:
        with self._lock:
            return [o.order_id for o in self.orders.values()
                    if o.state == OrderState.PENDING and o.created_at < cutoff_ts]

    def attach_payment(self, order_id: str, tx_ref: str, confirmed_at: str) -> bool:
        with self._lock:
            owner = self.tx_index.get(tx_ref)
            if owner is not None and owner != order_id:
                raise ReplayDetectedError("Transaction reference already used by another order")
            order = self.orders.get(order_id)
            if order is None or order.state != OrderState.PENDING:
                return False
            order.payment.tx_ref = tx_ref
            order.payment.confirmed_at = confirmed_at
            order.state = OrderState.PAID
            self.tx_index[tx_ref] = order_id
            return True

    def complete_delivery(self, order_id: str, sealed_key_b64: str,
                          ephemeral_pub_b64: str, delivered_at: str) -> bool:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.state != OrderState.PAID or order.sealed_key_b64 is not None:
                return False
            order.sealed_key_b64 = sealed_key_b64
            order.ephemeral_public_key_b64 = ephemeral_pub_b64
            order.delivered_at = delivered_at
            order.state = OrderState.DELIVERED
            return True

    def heal_delivery(self, order_id: str) -> bool:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.state != OrderState.PAID or order.sealed_key_b64 is None:
                return False
            order.state = OrderState.DELIVERED
            if order.delivered_at is None:
                order.delivered_at = now_ts()
            return True

    def mark_revoked(self, order_id: str, revoked_at: str, reason: str) -> bool:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.state != OrderState.DELIVERED or order.access_revoked:
                return False
            order.access_revoked = True
            order.access_revoked_at = revoked_at
            order.access_revoked_reason = reason
            return True

    def mark_expired(self, order_id: str) -> bool:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None or order.state != OrderState.PENDING:
                return False
            order.state = OrderState.EXPIRED
            return True

    def append_order_audit(self, order_id: str, entry: AuditEntry) -> None:
        with self._lock:
            order = self.orders.get(order_id)
            if order is not None:
                order.audit_log.append(entry)

    # events
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append({"ts": now_ts(), "event_type": event_type, "payload": dict(payload)})

    def list_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return deepcopy(self.events)
