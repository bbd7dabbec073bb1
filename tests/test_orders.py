import threading
from datetime import timedelta

import pytest

from keygate_core.crypto import ContentBlob, decrypt_content, open_sealed_key
from keygate_core.errors import (
    AlreadyPurchasedError, AlreadyRevokedError, ConsentRequiredError,
    InvalidOrderStateError, ListingWithdrawnError, NotAssetOwnerError, NotFoundError,
    OrderExpiredError, ReplayDetectedError, SelfPurchaseError, ValidationError,
)
from keygate_core.storage import InMemoryStorage, OrderState
from keygate_core.utils import now_dt

from conftest import BUYER, SELLER, pay, place_order


def _actions(order):
    return [e.action for e in order.audit_log]


def test_create_order_shape(gate, listing, buyer_keys):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    assert order["payTo"] == SELLER
    assert order["lamports"] == 1_000_000
    assert order["memo"] == order["orderId"]
    assert order["network"] == "solana-devnet"

    stored = gate.orders.get_order(order["orderId"])
    assert stored.state == OrderState.PENDING
    assert stored.consent_accepted and stored.consent_accepted_at
    assert _actions(stored) == ["ORDER_INITIATED"]
    assert "PURCHASE_INITIATED" in _actions(gate.listings.get_listing(listing["listingId"]))


def test_create_order_policy(gate, listing, buyer_keys):
    lid, pub = listing["listingId"], buyer_keys[1]
    with pytest.raises(SelfPurchaseError):
        place_order(gate, lid, pub, buyer=SELLER)
    with pytest.raises(ConsentRequiredError):
        gate.orders.create_order(lid, BUYER, pub, consent_accepted=False, data_access_terms_accepted=True)
    with pytest.raises(ConsentRequiredError):
        gate.orders.create_order(lid, BUYER, pub, consent_accepted=True, data_access_terms_accepted=False)
    with pytest.raises(ValidationError):
        place_order(gate, lid, "AAAA")
    with pytest.raises(NotFoundError):
        place_order(gate, "missing", pub)


def test_awaiting_payment_then_delivery(gate, listing, ledger, buyer_keys, content_store):
    sk, pub = buyer_keys
    order = place_order(gate, listing["listingId"], pub)

    assert gate.orders.deliver(order["orderId"]) == {
        "ok": False, "status": "AWAITING_PAYMENT", "orderId": order["orderId"],
    }

    tx = pay(ledger, order)
    res = gate.orders.deliver(order["orderId"])
    assert res["ok"] is True
    assert res["assetRef"] == listing["assetRef"]
    assert res["filename"] == "weather.csv" and res["mime"] == "text/csv"

    # the buyer can open the key and decrypt the stored asset
    content_key = open_sealed_key(res["sealedKeyB64"], res["ephemeralPublicKeyB64"], sk)
    blob = ContentBlob.unpack(content_store.get(res["assetRef"]))
    assert decrypt_content(content_key, blob).startswith(b"ts,temp")

    stored = gate.orders.get_order(order["orderId"])
    assert stored.state == OrderState.DELIVERED
    assert stored.payment.tx_ref == tx and stored.delivered_at
    assert _actions(stored) == ["ORDER_INITIATED", "PAYMENT_CONFIRMED", "DATA_DELIVERED"]


def test_underpayment_keeps_order_pending(gate, listing, ledger, buyer_keys):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    pay(ledger, order, amount=999_999)
    assert gate.orders.deliver(order["orderId"])["status"] == "AWAITING_PAYMENT"
    assert gate.orders.get_order(order["orderId"]).state == OrderState.PENDING


def test_idempotent_delivery_is_byte_identical(gate, listing, ledger, buyer_keys, remote):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    pay(ledger, order)
    first = gate.orders.deliver(order["orderId"])
    kms_calls = remote.calls
    second = gate.orders.deliver(order["orderId"])

    assert first["sealedKeyB64"] == second["sealedKeyB64"]
    assert first["ephemeralPublicKeyB64"] == second["ephemeralPublicKeyB64"]
    assert remote.calls == kms_calls
    assert _actions(gate.orders.get_order(order["orderId"])).count("DATA_DELIVERED") == 1


def test_replay_rejected_and_first_order_unaffected(gate, storage, listing, ledger, buyer_keys):
    a = place_order(gate, listing["listingId"], buyer_keys[1])
    b = place_order(gate, listing["listingId"], buyer_keys[1], buyer="OtherBuyer")
    tx = pay(ledger, a)
    gate.orders.deliver(a["orderId"])
    before = gate.orders.get_order(a["orderId"])

    with pytest.raises(ReplayDetectedError):
        storage.attach_payment(b["orderId"], tx, "2025-01-01T00:00:00.000Z")

    after = gate.orders.get_order(a["orderId"])
    assert after.state == before.state == OrderState.DELIVERED
    assert after.payment.tx_ref == tx and after.sealed_key_b64 == before.sealed_key_b64
    assert gate.orders.get_order(b["orderId"]).state == OrderState.PENDING


def test_replay_through_verifier_is_rejected(gate, listing, ledger, buyer_keys, monkeypatch, caplog):
    a = place_order(gate, listing["listingId"], buyer_keys[1])
    b = place_order(gate, listing["listingId"], buyer_keys[1], buyer="OtherBuyer")
    pay(ledger, a)
    gate.orders.deliver(a["orderId"])

    # a verifier that reports A's transaction for B's memo
    real = gate.verifier.verify_payment
    monkeypatch.setattr(gate.orders.verifier, "verify_payment",
                        lambda recipient, amount, memo: real(recipient, amount, a["memo"]))
    with pytest.raises(ReplayDetectedError):
        gate.orders.deliver(b["orderId"])
    assert "already attached" in caplog.text
    assert gate.orders.get_order(b["orderId"]).state == OrderState.PENDING


def test_paid_with_sealed_key_heals(gate, storage, listing, ledger, buyer_keys, remote):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    pay(ledger, order)
    res = gate.orders.deliver(order["orderId"])

    # simulate a crash after the sealed key was stored but before the state flip
    if isinstance(storage, InMemoryStorage):
        storage.orders[order["orderId"]].state = OrderState.PAID
    else:
        storage.db.execute("UPDATE orders SET state='PAID' WHERE order_id=?", (order["orderId"],))
        storage.db.commit()

    calls = remote.calls
    healed = gate.orders.deliver(order["orderId"])
    assert healed["sealedKeyB64"] == res["sealedKeyB64"]
    assert remote.calls == calls
    stored = gate.orders.get_order(order["orderId"])
    assert stored.state == OrderState.DELIVERED
    assert _actions(stored)[-1] == "DELIVERY_HEALED"


def test_concurrent_delivery_has_one_winner(gate, listing, ledger, buyer_keys):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    pay(ledger, order)

    results, errors = [], []
    start = threading.Barrier(6)

    def worker():
        start.wait()
        try:
            results.append(gate.orders.deliver(order["orderId"]))
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len({r["sealedKeyB64"] for r in results}) == 1
    assert len({r["ephemeralPublicKeyB64"] for r in results}) == 1
    stored = gate.orders.get_order(order["orderId"])
    assert _actions(stored).count("DATA_DELIVERED") == 1
    assert _actions(stored).count("PAYMENT_CONFIRMED") == 1
    assert stored.sealed_key_b64 == results[0]["sealedKeyB64"]


def _delivered(gate, listing, ledger, buyer_keys):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    pay(ledger, order)
    gate.orders.deliver(order["orderId"])
    return order


def test_revoke_once_by_owner(gate, listing, ledger, buyer_keys):
    order = _delivered(gate, listing, ledger, buyer_keys)
    sealed_before = gate.orders.get_order(order["orderId"]).sealed_key_b64
    first = gate.orders.deliver(order["orderId"])
    assert first["accessRevoked"] is False

    with pytest.raises(NotAssetOwnerError):
        gate.orders.revoke_access(order["orderId"], BUYER)

    res = gate.orders.revoke_access(order["orderId"], SELLER, "terms violated")
    assert res["revokedAt"]

    with pytest.raises(AlreadyRevokedError):
        gate.orders.revoke_access(order["orderId"], SELLER)

    stored = gate.orders.get_order(order["orderId"])
    assert stored.access_revoked and stored.access_revoked_reason == "terms violated"
    assert stored.sealed_key_b64 == sealed_before
    assert _actions(stored).count("ACCESS_REVOKED") == 1

    # the key already issued is still replayed verbatim, flagged as revoked
    replay = gate.orders.deliver(order["orderId"])
    assert replay["ok"] is True and replay["accessRevoked"] is True
    assert replay["sealedKeyB64"] == first["sealedKeyB64"]
    assert replay["ephemeralPublicKeyB64"] == first["ephemeralPublicKeyB64"]
    assert _actions(gate.orders.get_order(order["orderId"])).count("DATA_DELIVERED") == 1

    # but the buyer no longer counts as holding access
    assert gate.orders.check_purchase(listing["listingId"], BUYER) == {"purchased": False}


def test_revoke_requires_delivered(gate, listing, buyer_keys):
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    with pytest.raises(InvalidOrderStateError):
        gate.orders.revoke_access(order["orderId"], SELLER)


def test_revoke_uses_default_reason(gate, listing, ledger, buyer_keys):
    order = _delivered(gate, listing, ledger, buyer_keys)
    gate.orders.revoke_access(order["orderId"], SELLER)
    assert "EU Data Act" in gate.orders.get_order(order["orderId"]).access_revoked_reason


def test_withdrawn_listing_blocks_delivery_and_orders(gate, listing, ledger, buyer_keys):
    delivered = _delivered(gate, listing, ledger, buyer_keys)
    pending = place_order(gate, listing["listingId"], buyer_keys[1], buyer="LateBuyer")
    gate.listings.withdraw_listing(listing["listingId"], SELLER)

    with pytest.raises(ListingWithdrawnError):
        gate.orders.deliver(delivered["orderId"])
    with pytest.raises(ListingWithdrawnError):
        gate.orders.deliver(pending["orderId"])
    with pytest.raises(ListingWithdrawnError):
        place_order(gate, listing["listingId"], buyer_keys[1], buyer="AnotherBuyer")


def test_repeat_purchase_blocked_until_revoked(gate, listing, ledger, buyer_keys):
    order = _delivered(gate, listing, ledger, buyer_keys)
    with pytest.raises(AlreadyPurchasedError):
        place_order(gate, listing["listingId"], buyer_keys[1])
    gate.orders.revoke_access(order["orderId"], SELLER)
    assert place_order(gate, listing["listingId"], buyer_keys[1])["orderId"] != order["orderId"]


def test_check_purchase(gate, listing, ledger, buyer_keys):
    assert gate.orders.check_purchase(listing["listingId"], BUYER) == {"purchased": False}
    order = _delivered(gate, listing, ledger, buyer_keys)
    res = gate.orders.check_purchase(listing["listingId"], BUYER)
    assert res["purchased"] is True and res["orderId"] == order["orderId"]
    assert res["sealedKeyB64"] and res["deliveredAt"]


def test_expire_stale_orders(gate, listing, ledger, buyer_keys):
    stale = place_order(gate, listing["listingId"], buyer_keys[1])
    paid = place_order(gate, listing["listingId"], buyer_keys[1], buyer="PromptBuyer")
    pay(ledger, paid, sender="PromptBuyer")
    gate.orders.deliver(paid["orderId"])

    later = now_dt() + timedelta(hours=2)
    assert gate.orders.expire_stale_orders(now=later) == [stale["orderId"]]
    assert gate.orders.expire_stale_orders(now=later) == []

    expired = gate.orders.get_order(stale["orderId"])
    assert expired.state == OrderState.EXPIRED
    assert _actions(expired)[-1] == "ORDER_EXPIRED"
    with pytest.raises(OrderExpiredError):
        gate.orders.deliver(stale["orderId"])


def test_unpaid_order_past_ttl_expires_on_delivery(gate, listing, buyer_keys):
    gate.orders.order_ttl_seconds = -1
    order = place_order(gate, listing["listingId"], buyer_keys[1])
    with pytest.raises(OrderExpiredError):
        gate.orders.deliver(order["orderId"])
    assert gate.orders.get_order(order["orderId"]).state == OrderState.EXPIRED


def test_unknown_order(gate):
    with pytest.raises(NotFoundError):
        gate.orders.deliver("nope")
