"""
keygate_core.orders
-------------------
Order lifecycle: PENDING → PAID → DELIVERED, or PENDING → EXPIRED.

Every transition is delegated to a single conditional write in the storage
provider; whoever loses a race re-reads the order and continues from the
state the winner left behind. Delivery is idempotent: once a sealed key is
stored it is returned verbatim and never re-wrapped or re-sealed.

Revocation is an overlay on DELIVERED orders (owner only, once only). It
ends the buyer's standing access but a replay still returns the key that
was already issued.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from keygate_core import audit
from keygate_core.constants import (
    ACCESS_REVOKED, DATA_DELIVERED, DEFAULT_NETWORK, DEFAULT_ORDER_TTL_SECONDS,
    DEFAULT_REVOKE_REASON, DELIVERY_HEALED, ORDER_EXPIRED, ORDER_INITIATED,
    PAYMENT_CONFIRMED, PURCHASE_INITIATED,
)
from keygate_core.crypto import load_buyer_public_key, seal_key_to_buyer
from keygate_core.errors import (
    AlreadyPurchasedError, AlreadyRevokedError, ConsentRequiredError,
    InvalidOrderStateError, ListingWithdrawnError, NotAssetOwnerError, NotFoundError,
    OrderExpiredError, ReplayDetectedError, SelfPurchaseError, ValidationError,
)
from keygate_core.kms.service import KeyWrapService
from keygate_core.ledger.verifier import PaymentVerifier
from keygate_core.logger import get_logger
from keygate_core.storage.models import Listing, Order, OrderState, PaymentRecord
from keygate_core.storage.provider import StorageProvider
from keygate_core.utils import new_id, now_dt, now_ts, parse_ts, to_ts

log = get_logger("KG.Orders")

AWAITING_PAYMENT = "AWAITING_PAYMENT"


class OrderService:
    def __init__(
        self,
        storage: StorageProvider,
        kms: KeyWrapService,
        verifier: PaymentVerifier,
        network: str = DEFAULT_NETWORK,
        order_ttl_seconds: int = DEFAULT_ORDER_TTL_SECONDS,
    ):
        self.storage = storage
        self.kms = kms
        self.verifier = verifier
        self.network = network
        self.order_ttl_seconds = order_ttl_seconds

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_order(self, order_id: str) -> Order:
        order = self.storage.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def _listing(self, asset_id: str) -> Listing:
        listing = self.storage.get_listing(asset_id)
        if listing is None:
            raise NotFoundError("Dataset listing not found")
        return listing

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create_order(
        self,
        listing_id: str,
        buyer_identity: str,
        buyer_public_key_b64: str,
        consent_accepted: bool = False,
        data_access_terms_accepted: bool = False,
    ) -> Dict[str, Any]:
        if not buyer_identity:
            raise ValidationError("buyer identity is required")
        listing = self._listing(listing_id)
        if listing.withdrawn:
            raise ListingWithdrawnError("This dataset has been withdrawn by the owner")
        if listing.seller_identity == buyer_identity:
            raise SelfPurchaseError("Cannot purchase your own dataset")
        if listing.consent_required and not consent_accepted:
            raise ConsentRequiredError("You must accept the data usage consent to purchase")
        if not data_access_terms_accepted:
            raise ConsentRequiredError("You must accept the data access terms to purchase")
        load_buyer_public_key(buyer_public_key_b64)
        if self.storage.find_active_delivery(listing_id, buyer_identity) is not None:
            raise AlreadyPurchasedError("You already have access to this dataset")

        order_id = new_id()
        ts = now_ts()
        order = Order(
            order_id=order_id,
            asset_id=listing_id,
            buyer_public_key_b64=buyer_public_key_b64,
            buyer_identity=buyer_identity,
            payment=PaymentRecord(
                expected_amount=listing.price_lamports,
                recipient=listing.seller_identity,
                memo=order_id,
            ),
            consent_accepted=bool(consent_accepted),
            consent_accepted_at=ts if consent_accepted else None,
            data_access_terms_accepted=True,
            audit_log=[audit.entry(
                ORDER_INITIATED,
                f"Order created for {listing.price_lamports} lamports with consent "
                f"{'accepted' if consent_accepted else 'not required'}",
                actor=buyer_identity,
            )],
            created_at=ts,
        )
        self.storage.insert_order(order)
        self.storage.append_listing_audit(
            listing_id, audit.entry(PURCHASE_INITIATED, f"Order {order_id} initiated", actor=buyer_identity)
        )

        log.info(f"[ORDER] created {order_id} listing={listing_id} lamports={listing.price_lamports}")
        return {
            "orderId": order_id,
            "payTo": listing.seller_identity,
            "lamports": listing.price_lamports,
            "memo": order_id,
            "network": self.network,
        }

    # ------------------------------------------------------------------
    # Deliver
    # ------------------------------------------------------------------
    def deliver(self, order_id: str) -> Dict[str, Any]:
        """
        Drive an order as far towards DELIVERED as the ledger allows.

        Returns {"ok": False, "status": "AWAITING_PAYMENT"} while no matching
        payment is visible, otherwise the delivery payload. Safe to call
        repeatedly and concurrently for the same order.
        """
        order = self.get_order(order_id)
        listing = self._listing(order.asset_id)
        if listing.withdrawn:
            raise ListingWithdrawnError("This dataset has been withdrawn by the owner")

        if order.state == OrderState.PENDING:
            order = self._confirm_payment(order)
            if order is None:
                return {"ok": False, "status": AWAITING_PAYMENT, "orderId": order_id}

        if order.state == OrderState.PAID and order.sealed_key_b64 is None:
            order = self._seal_and_store(order)

        if order.state == OrderState.PAID:
            # sealed key stored by an earlier attempt that never flipped the state
            if self.storage.heal_delivery(order_id):
                self.storage.append_order_audit(
                    order_id, audit.entry(DELIVERY_HEALED, "Existing sealed key adopted; state set to DELIVERED")
                )
                log.info(f"[DELIVER] healed {order_id} from PAID to DELIVERED")
            order = self.get_order(order_id)

        if order.state == OrderState.EXPIRED:
            raise OrderExpiredError("Order expired before payment was confirmed")
        if order.state != OrderState.DELIVERED:
            raise InvalidOrderStateError(f"Order cannot be delivered from state {order.state.value}")

        return self._delivery_payload(order, listing)

    def _confirm_payment(self, order: Order) -> Optional[Order]:
        """PENDING → PAID when the ledger shows a matching transfer. None while awaiting payment."""
        p = order.payment
        check = self.verifier.verify_payment(p.recipient, p.expected_amount, p.memo)
        if not check.matched:
            if self._past_ttl(order) and self.storage.mark_expired(order.order_id):
                self._audit_expired(order.order_id)
                raise OrderExpiredError("Order expired before payment was confirmed")
            return None

        other = self.storage.find_order_by_tx_ref(check.tx_ref)
        if other is not None and other.order_id != order.order_id:
            log.warning(f"[VERIFY] tx={check.tx_ref} already attached to {other.order_id}; rejecting {order.order_id}")
            raise ReplayDetectedError("Transaction reference already used by another order")

        try:
            attached = self.storage.attach_payment(order.order_id, check.tx_ref, check.confirmed_at)
        except ReplayDetectedError:
            log.warning(f"[VERIFY] tx={check.tx_ref} claimed concurrently by another order; rejecting {order.order_id}")
            raise

        if attached:
            self.storage.append_order_audit(
                order.order_id,
                audit.entry(PAYMENT_CONFIRMED, f"Payment of {p.expected_amount} lamports confirmed in tx {check.tx_ref}"),
            )
            log.info(f"[VERIFY] order {order.order_id} PAID tx={check.tx_ref}")
        return self.get_order(order.order_id)

    def _seal_and_store(self, order: Order) -> Order:
        rec = self.storage.get_asset_key(order.asset_id)
        if rec is None:
            raise NotFoundError("Asset key record not found")

        content_key = self.kms.unwrap(rec.wrapped())
        sealed_b64, eph_b64 = seal_key_to_buyer(content_key, order.buyer_public_key_b64)
        del content_key

        if self.storage.complete_delivery(order.order_id, sealed_b64, eph_b64, now_ts()):
            self.storage.append_order_audit(
                order.order_id,
                audit.entry(DATA_DELIVERED, f"Key v{rec.key_version} sealed to buyer and delivered"),
            )
            log.info(f"[DELIVER] order {order.order_id} DELIVERED keyVersion={rec.key_version}")
        else:
            log.info(f"[DELIVER] order {order.order_id} already delivered by a concurrent request")
        return self.get_order(order.order_id)

    @staticmethod
    def _delivery_payload(order: Order, listing: Listing) -> Dict[str, Any]:
        return {
            "ok": True,
            "orderId": order.order_id,
            "sealedKeyB64": order.sealed_key_b64,
            "ephemeralPublicKeyB64": order.ephemeral_public_key_b64,
            "assetRef": listing.asset_ref,
            "filename": listing.filename,
            "mime": listing.mime,
            "accessRevoked": order.access_revoked,
        }

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------
    def revoke_access(self, order_id: str, owner_identity: str, reason: Optional[str] = None) -> Dict[str, Any]:
        order = self.get_order(order_id)
        listing = self._listing(order.asset_id)
        if listing.seller_identity != owner_identity:
            raise NotAssetOwnerError("Only the dataset owner can revoke access")
        if order.access_revoked:
            raise AlreadyRevokedError("Access has already been revoked for this order")
        if order.state != OrderState.DELIVERED:
            raise InvalidOrderStateError("Access can only be revoked for delivered orders")

        reason = reason or DEFAULT_REVOKE_REASON
        revoked_at = now_ts()
        if not self.storage.mark_revoked(order_id, revoked_at, reason):
            raise AlreadyRevokedError("Access has already been revoked for this order")
        self.storage.append_order_audit(order_id, audit.entry(ACCESS_REVOKED, reason, actor=owner_identity))

        log.info(f"[REVOKE] order {order_id} revoked by owner")
        return {"revokedAt": revoked_at}

    # ------------------------------------------------------------------
    # Purchase check / expiry
    # ------------------------------------------------------------------
    def check_purchase(self, listing_id: str, buyer_identity: str) -> Dict[str, Any]:
        order = self.storage.find_active_delivery(listing_id, buyer_identity)
        if order is None:
            return {"purchased": False}
        listing = self._listing(listing_id)
        payload = self._delivery_payload(order, listing)
        payload.pop("ok")
        payload.update({"purchased": True, "deliveredAt": order.delivered_at})
        return payload

    def _past_ttl(self, order: Order, now: Optional[datetime] = None) -> bool:
        now = now or now_dt()
        return parse_ts(order.created_at) < now - timedelta(seconds=self.order_ttl_seconds)

    def _audit_expired(self, order_id: str) -> None:
        self.storage.append_order_audit(
            order_id, audit.entry(ORDER_EXPIRED, f"No payment within {self.order_ttl_seconds}s")
        )
        log.info(f"[EXPIRE] order {order_id} EXPIRED")

    def expire_stale_orders(self, now: Optional[datetime] = None) -> List[str]:
        """Move PENDING orders older than the TTL to EXPIRED. Returns the ids expired by this call."""
        cutoff = to_ts((now or now_dt()) - timedelta(seconds=self.order_ttl_seconds))
        expired = []
        for order_id in self.storage.list_pending_before(cutoff):
            if self.storage.mark_expired(order_id):
                self._audit_expired(order_id)
                expired.append(order_id)
        return expired
