# keygate_core/storage/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from keygate_core.audit import AuditEntry
from keygate_core.kms.kms_base import WrappedKey
from keygate_core.utils import now_ts


class OrderState(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    DELIVERED = "DELIVERED"
    EXPIRED = "EXPIRED"


@dataclass
class Listing:
    """A listed asset. The encrypted bytes live in external content storage."""
    listing_id: str
    seller_identity: str
    asset_ref: str
    filename: str
    name: str
    description: str
    price_lamports: int
    mime: str = "application/octet-stream"
    size: int = 0
    consent_required: bool = True
    data_access_terms: str = ""
    withdrawal_enabled: bool = True
    withdrawn_at: Optional[str] = None
    withdrawn_reason: Optional[str] = None
    audit_log: List[AuditEntry] = field(default_factory=list)
    created_at: str = field(default_factory=now_ts)

    @property
    def withdrawn(self) -> bool:
        return self.withdrawn_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listingId": self.listing_id,
            "sellerIdentity": self.seller_identity,
            "assetRef": self.asset_ref,
            "filename": self.filename,
            "name": self.name,
            "description": self.description,
            "priceLamports": self.price_lamports,
            "mime": self.mime,
            "size": self.size,
            "consentRequired": self.consent_required,
            "dataAccessTerms": self.data_access_terms,
            "withdrawalEnabled": self.withdrawal_enabled,
            "withdrawnAt": self.withdrawn_at,
            "withdrawnReason": self.withdrawn_reason,
            "consentLog": [e.to_dict() for e in self.audit_log],
            "createdAt": self.created_at,
        }


@dataclass
class AssetKeyRecord:
    """
    Wrapped content key for one asset.

    iv/tag are empty strings when the remote KMS manages them internally.
    key_version 0 = local fallback wrap, >= 1 = remote KMS key generation.
    """
    asset_id: str
    wrapped_key_b64: str
    iv_b64: str = ""
    tag_b64: str = ""
    key_version: int = 0
    created_at: str = field(default_factory=now_ts)
    rotated_at: Optional[str] = None

    @classmethod
    def from_wrapped(cls, asset_id: str, wrapped: WrappedKey) -> "AssetKeyRecord":
        return cls(
            asset_id=asset_id,
            wrapped_key_b64=wrapped.wrapped_key_b64,
            iv_b64=wrapped.iv_b64,
            tag_b64=wrapped.tag_b64,
            key_version=wrapped.key_version,
        )

    def wrapped(self) -> WrappedKey:
        return WrappedKey(
            wrapped_key_b64=self.wrapped_key_b64,
            iv_b64=self.iv_b64,
            tag_b64=self.tag_b64,
            key_version=self.key_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "assetId": self.asset_id,
            "wrappedKeyB64": self.wrapped_key_b64,
            "ivB64": self.iv_b64,
            "tagB64": self.tag_b64,
            "keyVersion": self.key_version,
            "createdAt": self.created_at,
        }
        if self.rotated_at:
            d["rotatedAt"] = self.rotated_at
        return d


@dataclass
class PaymentRecord:
    expected_amount: int
    recipient: str
    memo: str
    tx_ref: Optional[str] = None
    confirmed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expectedAmount": self.expected_amount,
            "recipient": self.recipient,
            "memo": self.memo,
            "txRef": self.tx_ref,
            "confirmedAt": self.confirmed_at,
        }


@dataclass
class Order:
    order_id: str                     # doubles as the ledger memo
    asset_id: str
    buyer_public_key_b64: str
    buyer_identity: str
    payment: PaymentRecord
    state: OrderState = OrderState.PENDING
    sealed_key_b64: Optional[str] = None
    ephemeral_public_key_b64: Optional[str] = None
    delivered_at: Optional[str] = None
    consent_accepted: bool = False
    consent_accepted_at: Optional[str] = None
    data_access_terms_accepted: bool = False
    access_revoked: bool = False
    access_revoked_at: Optional[str] = None
    access_revoked_reason: Optional[str] = None
    audit_log: List[AuditEntry] = field(default_factory=list)
    created_at: str = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "orderId": self.order_id,
            "assetId": self.asset_id,
            "buyerPublicKeyB64": self.buyer_public_key_b64,
            "buyerIdentity": self.buyer_identity,
            "state": self.state.value,
            "payment": self.payment.to_dict(),
            "consentAccepted": self.consent_accepted,
            "dataAccessTermsAccepted": self.data_access_terms_accepted,
            "accessRevoked": self.access_revoked,
            "auditLog": [e.to_dict() for e in self.audit_log],
            "createdAt": self.created_at,
        }
        optional = {
            "sealedKeyB64": self.sealed_key_b64,
            "ephemeralPublicKeyB64": self.ephemeral_public_key_b64,
            "deliveredAt": self.delivered_at,
            "consentAcceptedAt": self.consent_accepted_at,
            "accessRevokedAt": self.access_revoked_at,
            "accessRevokedReason": self.access_revoked_reason,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d
