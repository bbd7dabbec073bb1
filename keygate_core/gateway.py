"""
keygate_core.gateway
--------------------
KeyGate: wires storage, the Key Wrap Service and the Payment Verifier into
the listing and order services, and exposes the request/response shapes
used by an outer API layer.
"""

from __future__ import annotations
from typing import Any, Dict, Optional

from keygate_core.config import Settings
from keygate_core.errors import (
    ConfigurationError, IntegrityError, KeygateError, NotAssetOwnerError, NotFoundError,
    PolicyError, ReplayDetectedError, TransientError, ValidationError,
)
from keygate_core.kms import kms_factory
from keygate_core.kms.service import KeyWrapService
from keygate_core.ledger import ledger_factory
from keygate_core.ledger.ledger_base import LedgerClient
from keygate_core.ledger.verifier import PaymentVerifier
from keygate_core.listings import ContentStore, ListingService, MemoryContentStore
from keygate_core.logger import get_logger, set_level
from keygate_core.orders import OrderService
from keygate_core.storage import load_storage_provider
from keygate_core.storage.provider import StorageProvider

log = get_logger("KG.Gateway")


def http_status(err: KeygateError) -> int:
    """Suggested HTTP status for an error raised by the core."""
    if isinstance(err, TransientError):
        return 503
    if isinstance(err, ReplayDetectedError):
        return 409
    if isinstance(err, NotAssetOwnerError):
        return 403
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, PolicyError):
        return 409
    if isinstance(err, NotFoundError):
        return 404
    return 500


def error_response(err: KeygateError) -> Dict[str, Any]:
    return {
        "ok": False,
        "error": err.code,
        "message": str(err),
        "retryable": isinstance(err, TransientError),
        "httpStatus": http_status(err),
    }


class KeyGate:
    def __init__(
        self,
        storage: StorageProvider,
        kms: KeyWrapService,
        ledger: LedgerClient,
        content_store: Optional[ContentStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage
        self.kms = kms
        self.ledger = ledger
        self.verifier = PaymentVerifier(ledger, scan_limit=self.settings.scan_limit)
        self.listings = ListingService(storage, kms, content_store or MemoryContentStore())
        self.orders = OrderService(
            storage,
            kms,
            self.verifier,
            network=self.settings.network,
            order_ttl_seconds=self.settings.order_ttl_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      content_store: Optional[ContentStore] = None) -> "KeyGate":
        settings = settings or Settings.from_env()
        set_level(settings.log_level)
        storage = load_storage_provider({
            "provider": settings.storage_provider,
            "sqlite_path": settings.sqlite_path,
        })
        kms = kms_factory(settings, events=storage)
        ledger = ledger_factory(settings)
        log.info(
            f"[BOOT] storage={storage.name} kms_version={kms.active_version()} "
            f"ledger={ledger.name} network={settings.network}"
        )
        return cls(storage, kms, ledger, content_store=content_store, settings=settings)

    # ------------------------------------------------------------------
    # Request handlers
    # ------------------------------------------------------------------
    def handle_delivery(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """{orderId} → delivery payload, awaiting-payment notice, or error response."""
        order_id = request.get("orderId")
        try:
            if not order_id:
                raise ValidationError("orderId is required")
            return self.orders.deliver(order_id)
        except (IntegrityError, ConfigurationError) as e:
            log.error(f"[DELIVER] order {order_id} failed: {e.code}")
            return error_response(e)
        except KeygateError as e:
            log.info(f"[DELIVER] order {order_id} rejected: {e.code}")
            return error_response(e)

    def handle_revocation(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """{orderId, ownerIdentity, reason?} → {revokedAt} or error response."""
        try:
            order_id, owner = request.get("orderId"), request.get("ownerIdentity")
            if not order_id or not owner:
                raise ValidationError("orderId and ownerIdentity are required")
            return self.orders.revoke_access(order_id, owner, request.get("reason"))
        except KeygateError as e:
            log.info(f"[REVOKE] order {request.get('orderId')} rejected: {e.code}")
            return error_response(e)

    def order_status(self, order_id: str) -> Dict[str, Any]:
        try:
            return self.orders.get_order(order_id).to_dict()
        except KeygateError as e:
            return error_response(e)

    def listing_view(self, listing_id: str) -> Dict[str, Any]:
        try:
            return self.listings.get_listing(listing_id).to_dict()
        except KeygateError as e:
            return error_response(e)

    def healthz(self) -> Dict[str, Any]:
        kms_health = self.kms.remote.healthz() if self.kms.remote is not None else {"status": "ok", "kms": "local"}
        return {
            "storage": self.storage.name,
            "kms": kms_health,
            "ledger": self.ledger.healthz(),
            "activeKeyVersion": self.kms.active_version(),
            "keyVersions": [kv.to_dict() for kv in self.kms.versions.list()],
        }

    def close(self) -> None:
        self.storage.close()
