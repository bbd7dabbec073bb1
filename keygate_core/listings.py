"""
keygate_core.listings
---------------------
Seller-side flow: encrypt an asset, hand the ciphertext to content storage,
wrap the content key and persist the Asset Key Record. Also listing
withdrawal and operator re-wrap after a master-key rotation.
"""

from __future__ import annotations
from typing import Any, Dict, Optional
import hashlib

from keygate_core import audit
from keygate_core.constants import (
    DATASET_WITHDRAWN, DEFAULT_ACCESS_TERMS, DEFAULT_MIME, DEFAULT_WITHDRAW_REASON,
    KEY_REWRAPPED, LISTING_CREATED, MAX_DESCRIPTION_LEN, MAX_FILENAME_LEN, MAX_NAME_LEN,
    MAX_PRICE_LAMPORTS,
)
from keygate_core.crypto import encrypt_content
from keygate_core.errors import (
    AlreadyWithdrawnError, KmsUnavailableError, NotAssetOwnerError, NotFoundError, ValidationError,
)
from keygate_core.kms.service import KeyWrapService
from keygate_core.logger import get_logger
from keygate_core.storage.models import AssetKeyRecord, Listing
from keygate_core.storage.provider import StorageProvider
from keygate_core.utils import new_id, now_ts

log = get_logger("KG.Listings")


class ContentStore:
    """External content storage. put() returns the reference buyers download by."""

    def put(self, payload: bytes, filename: str) -> str:
        raise NotImplementedError


class MemoryContentStore(ContentStore):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    def put(self, payload: bytes, filename: str) -> str:
        ref = "sha256-" + hashlib.sha256(payload).hexdigest()
        self.objects[ref] = payload
        return ref

    def get(self, ref: str) -> bytes:
        if ref not in self.objects:
            raise NotFoundError(f"Content {ref} not found")
        return self.objects[ref]


def _require_text(value: Any, field: str, max_len: int) -> str:
    if not isinstance(value, str) or not value.strip() or len(value) > max_len:
        raise ValidationError(f"{field} must be between 1 and {max_len} characters")
    return value.strip()


class ListingService:
    def __init__(self, storage: StorageProvider, kms: KeyWrapService, content_store: ContentStore):
        self.storage = storage
        self.kms = kms
        self.content_store = content_store

    def get_listing(self, listing_id: str) -> Listing:
        listing = self.storage.get_listing(listing_id)
        if listing is None:
            raise NotFoundError("Dataset listing not found")
        return listing

    def create_listing(
        self,
        seller_identity: str,
        filename: str,
        name: str,
        description: str,
        content: bytes,
        price_lamports: int,
        mime: Optional[str] = None,
        consent_required: bool = True,
        data_access_terms: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not seller_identity:
            raise ValidationError("seller identity is required")
        if not content:
            raise ValidationError("content is required")
        if isinstance(price_lamports, bool) or not isinstance(price_lamports, int) or price_lamports <= 0:
            raise ValidationError("Price must be a positive integer amount of lamports")
        if price_lamports > MAX_PRICE_LAMPORTS:
            raise ValidationError("Price cannot exceed 1000 SOL")
        name = _require_text(name, "Name", MAX_NAME_LEN)
        description = _require_text(description, "Description", MAX_DESCRIPTION_LEN)
        filename = _require_text(filename, "Filename", MAX_FILENAME_LEN)

        key, blob = encrypt_content(content)
        asset_ref = self.content_store.put(blob.pack(), filename)
        wrapped = self.kms.wrap(key)
        del key

        listing_id = new_id()
        listing = Listing(
            listing_id=listing_id,
            seller_identity=seller_identity,
            asset_ref=asset_ref,
            filename=filename,
            name=name,
            description=description,
            price_lamports=price_lamports,
            mime=mime or DEFAULT_MIME,
            size=len(content),
            consent_required=consent_required,
            data_access_terms=data_access_terms or DEFAULT_ACCESS_TERMS,
            audit_log=[audit.entry(LISTING_CREATED, f"Listing created by {seller_identity}", actor=seller_identity)],
        )
        self.storage.insert_listing(listing)
        self.storage.insert_asset_key(AssetKeyRecord.from_wrapped(listing_id, wrapped))

        log.info(f"[LISTING] created {listing_id} ref={asset_ref} keyVersion={wrapped.key_version}")
        return {"listingId": listing_id, "assetRef": asset_ref, "keyVersion": wrapped.key_version}

    def withdraw_listing(self, listing_id: str, seller_identity: str, reason: Optional[str] = None) -> Dict[str, Any]:
        listing = self.get_listing(listing_id)
        if listing.seller_identity != seller_identity:
            raise NotAssetOwnerError("Only the dataset owner can withdraw it")
        if listing.withdrawn:
            raise AlreadyWithdrawnError("Dataset already withdrawn")

        withdrawn_at = now_ts()
        if not self.storage.mark_listing_withdrawn(listing_id, withdrawn_at, reason or DEFAULT_WITHDRAW_REASON):
            raise AlreadyWithdrawnError("Dataset already withdrawn")
        self.storage.append_listing_audit(
            listing_id, audit.entry(DATASET_WITHDRAWN, reason or DEFAULT_WITHDRAW_REASON, actor=seller_identity)
        )
        log.info(f"[LISTING] withdrawn {listing_id} by owner")
        return {"withdrawnAt": withdrawn_at}

    def rewrap_asset_key(self, asset_id: str) -> AssetKeyRecord:
        """Re-wrap one asset key under the active master-key version."""
        rec = self.storage.get_asset_key(asset_id)
        if rec is None:
            raise NotFoundError("Asset key record not found")
        target = self.kms.active_version()
        if rec.key_version == target:
            return rec

        raw = self.kms.unwrap(rec.wrapped())
        wrapped = self.kms.wrap(raw)
        del raw
        if wrapped.key_version != target:
            # wrap fell back to the local scheme; keep the existing record
            raise KmsUnavailableError("Active KMS key unavailable; re-wrap postponed")

        if self.storage.replace_asset_key(asset_id, rec.key_version, wrapped, now_ts()):
            self.storage.log_event(KEY_REWRAPPED, {
                "asset_id": asset_id, "from": rec.key_version, "to": wrapped.key_version,
            })
            log.info(f"[KMS] re-wrapped asset {asset_id} v{rec.key_version} → v{wrapped.key_version}")
        return self.storage.get_asset_key(asset_id)
