"""
keygate_core.crypto
-------------------
Cryptographic primitives for KeyGate:

- AES-256-GCM content cipher: one fresh key per asset, fresh 96-bit IV per call
- Ephemeral-key sealing of a content key to a buyer's X25519 public key
  (NaCl crypto_box: X25519 + XSalsa20-Poly1305), wire compatible with the
  libsodium / tweetnacl clients that open it

The plaintext content key is returned to the caller and never stored here.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
import nacl.utils

from .constants import BUYER_PUBLIC_KEY_SIZE, CONTENT_KEY_SIZE, IV_SIZE, TAG_SIZE
from .errors import IntegrityError, ValidationError
from .utils import b64e, try_b64d


@dataclass(frozen=True)
class ContentBlob:
    iv: bytes
    tag: bytes
    ciphertext: bytes

    def pack(self) -> bytes:
        """Storage payload: iv || tag || ciphertext."""
        return self.iv + self.tag + self.ciphertext

    @classmethod
    def unpack(cls, payload: bytes) -> "ContentBlob":
        if len(payload) < IV_SIZE + TAG_SIZE:
            raise IntegrityError("Encrypted payload is truncated")
        return cls(
            iv=payload[:IV_SIZE],
            tag=payload[IV_SIZE:IV_SIZE + TAG_SIZE],
            ciphertext=payload[IV_SIZE + TAG_SIZE:],
        )


# --------- AES-256-GCM (content cipher) ----------
def generate_content_key() -> bytes:
    return AESGCM.generate_key(bit_length=CONTENT_KEY_SIZE * 8)


def gcm_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> Tuple[bytes, bytes, bytes]:
    """Returns (iv, tag, ciphertext) with the tag split off the AESGCM output."""
    iv = os.urandom(IV_SIZE)
    ct_and_tag = AESGCM(key).encrypt(iv, plaintext, aad)
    return iv, ct_and_tag[-TAG_SIZE:], ct_and_tag[:-TAG_SIZE]


def gcm_decrypt(key: bytes, iv: bytes, tag: bytes, ciphertext: bytes, aad: bytes | None = None) -> bytes:
    if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
        raise IntegrityError("Malformed IV or authentication tag")
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, aad)
    except InvalidTag:
        raise IntegrityError("Authentication tag mismatch") from None


def encrypt_content(plaintext: bytes) -> Tuple[bytes, ContentBlob]:
    """Encrypt asset bytes under a brand-new content key.

    Returns:
        (key, blob). The caller either wraps the key (seller path) or drops it.
    """
    key = generate_content_key()
    iv, tag, ciphertext = gcm_encrypt(key, plaintext)
    return key, ContentBlob(iv=iv, tag=tag, ciphertext=ciphertext)


def decrypt_content(key: bytes, blob: ContentBlob) -> bytes:
    """Decrypt asset bytes. Any tampering raises IntegrityError; no partial output."""
    if len(key) != CONTENT_KEY_SIZE:
        raise IntegrityError("Content key has the wrong length")
    return gcm_decrypt(key, blob.iv, blob.tag, blob.ciphertext)


# --------- X25519 crypto_box (buyer sealing) ----------
def generate_buyer_keypair() -> Tuple[bytes, bytes]:
    """Buyer-side helper. Returns (secret_key, public_key) raw bytes."""
    sk = PrivateKey.generate()
    return bytes(sk), bytes(sk.public_key)


def load_buyer_public_key(buyer_pub_b64: str) -> PublicKey:
    raw = try_b64d(buyer_pub_b64)
    if raw is None or len(raw) != BUYER_PUBLIC_KEY_SIZE:
        raise ValidationError("Buyer public key must be a base64 encoded 32-byte X25519 key")
    return PublicKey(raw)


def seal_key_to_buyer(content_key: bytes, buyer_pub_b64: str) -> Tuple[str, str]:
    """Encrypt a content key to the buyer with a single-use ephemeral keypair.

    The ephemeral secret key goes out of scope when this returns; only its
    public half is handed back for storage next to the sealed key.

    Returns:
        (sealed_key_b64, ephemeral_pub_b64) where sealed = nonce || box
    """
    buyer_pub = load_buyer_public_key(buyer_pub_b64)
    ephemeral = PrivateKey.generate()
    nonce = nacl.utils.random(Box.NONCE_SIZE)
    sealed = Box(ephemeral, buyer_pub).encrypt(content_key, nonce)
    return b64e(bytes(sealed)), b64e(bytes(ephemeral.public_key))


def open_sealed_key(sealed_key_b64: str, ephemeral_pub_b64: str, buyer_secret: bytes) -> bytes:
    """Buyer-side inverse of seal_key_to_buyer."""
    eph_raw = try_b64d(ephemeral_pub_b64)
    if eph_raw is None or len(eph_raw) != BUYER_PUBLIC_KEY_SIZE:
        raise ValidationError("Ephemeral public key must be a base64 encoded 32-byte key")
    sealed = try_b64d(sealed_key_b64)
    if sealed is None or len(sealed) <= Box.NONCE_SIZE:
        raise IntegrityError("Sealed key is malformed")
    box = Box(PrivateKey(buyer_secret), PublicKey(eph_raw))
    try:
        return box.decrypt(sealed)
    except CryptoError:
        raise IntegrityError("Sealed key could not be opened") from None
