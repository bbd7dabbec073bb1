import pytest

from keygate_core.crypto import (
    ContentBlob, decrypt_content, encrypt_content, gcm_decrypt, gcm_encrypt,
    generate_buyer_keypair, generate_content_key, open_sealed_key, seal_key_to_buyer,
)
from keygate_core.errors import IntegrityError, ValidationError
from keygate_core.utils import b64d, b64e


def test_content_roundtrip():
    key, blob = encrypt_content(b"dataset bytes")
    assert len(key) == 32 and len(blob.iv) == 12 and len(blob.tag) == 16
    assert decrypt_content(key, blob) == b"dataset bytes"


def test_fresh_key_and_iv_per_call():
    k1, b1 = encrypt_content(b"same")
    k2, b2 = encrypt_content(b"same")
    assert k1 != k2
    assert b1.iv != b2.iv


def test_pack_unpack():
    key, blob = encrypt_content(b"x" * 100)
    packed = blob.pack()
    assert packed[:12] == blob.iv and packed[12:28] == blob.tag
    assert decrypt_content(key, ContentBlob.unpack(packed)) == b"x" * 100


@pytest.mark.parametrize("part", ["iv", "tag", "ciphertext"])
def test_bit_flip_fails_closed(part):
    key, blob = encrypt_content(b"sensitive rows")
    fields = {"iv": blob.iv, "tag": blob.tag, "ciphertext": blob.ciphertext}
    raw = bytearray(fields[part])
    raw[0] ^= 0x01
    fields[part] = bytes(raw)
    with pytest.raises(IntegrityError):
        decrypt_content(key, ContentBlob(**fields))


def test_wrong_key_fails():
    _, blob = encrypt_content(b"abc")
    with pytest.raises(IntegrityError):
        decrypt_content(generate_content_key(), blob)


def test_aad_bound():
    key = generate_content_key()
    iv, tag, ct = gcm_encrypt(key, b"payload", aad=b"handle-a")
    assert gcm_decrypt(key, iv, tag, ct, aad=b"handle-a") == b"payload"
    with pytest.raises(IntegrityError):
        gcm_decrypt(key, iv, tag, ct, aad=b"handle-b")


def test_seal_open_roundtrip():
    content_key = generate_content_key()
    sk, pk = generate_buyer_keypair()
    sealed_b64, eph_b64 = seal_key_to_buyer(content_key, b64e(pk))
    assert len(b64d(sealed_b64)) == 24 + 32 + 16   # nonce || box(key)
    assert len(b64d(eph_b64)) == 32
    assert open_sealed_key(sealed_b64, eph_b64, sk) == content_key


def test_seal_uses_fresh_ephemeral_key():
    content_key = generate_content_key()
    _, pk = generate_buyer_keypair()
    s1, e1 = seal_key_to_buyer(content_key, b64e(pk))
    s2, e2 = seal_key_to_buyer(content_key, b64e(pk))
    assert e1 != e2 and s1 != s2


def test_open_with_other_buyer_key_fails():
    content_key = generate_content_key()
    _, pk = generate_buyer_keypair()
    other_sk, _ = generate_buyer_keypair()
    sealed_b64, eph_b64 = seal_key_to_buyer(content_key, b64e(pk))
    with pytest.raises(IntegrityError):
        open_sealed_key(sealed_b64, eph_b64, other_sk)


def test_seal_rejects_bad_public_key():
    with pytest.raises(ValidationError):
        seal_key_to_buyer(generate_content_key(), b64e(b"\x01" * 31))
    with pytest.raises(ValidationError):
        seal_key_to_buyer(generate_content_key(), "not base64!!")
