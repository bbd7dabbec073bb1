import pytest

from keygate_core.config import Settings
from keygate_core.crypto import generate_buyer_keypair
from keygate_core.gateway import KeyGate
from keygate_core.kms import InMemoryKmsBackend, KeyVersionTable, KeyWrapService, LocalFallbackBackend
from keygate_core.ledger import LocalLedger
from keygate_core.listings import MemoryContentStore
from keygate_core.storage import InMemoryStorage, SQLiteStorage
from keygate_core.utils import b64e

MASTER_HEX = "11" * 32
SELLER = "SeLLerWaLLet1111111111111111111111111111111"
BUYER = "BuyerWaLLet11111111111111111111111111111111"


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        s = InMemoryStorage()
    else:
        s = SQLiteStorage(str(tmp_path / "keygate.db"))
    yield s
    s.close()


@pytest.fixture
def remote():
    return InMemoryKmsBackend({"master-1"})


@pytest.fixture
def kms(remote):
    versions = KeyVersionTable()
    versions.register("master-1", version=1, active=True)
    return KeyWrapService(versions, remote, LocalFallbackBackend(bytes.fromhex(MASTER_HEX)))


@pytest.fixture
def ledger():
    return LocalLedger()


@pytest.fixture
def content_store():
    return MemoryContentStore()


@pytest.fixture
def gate(storage, kms, ledger, content_store):
    return KeyGate(storage, kms, ledger, content_store=content_store,
                   settings=Settings(order_ttl_seconds=3600))


@pytest.fixture
def buyer_keys():
    sk, pk = generate_buyer_keypair()
    return sk, b64e(pk)


@pytest.fixture
def listing(gate):
    return gate.listings.create_listing(
        seller_identity=SELLER,
        filename="weather.csv",
        name="Weather 2024",
        description="Hourly readings",
        content=b"ts,temp\n0,12.5\n1,12.1\n",
        price_lamports=1_000_000,
        mime="text/csv",
    )


def place_order(gate, listing_id, buyer_pub_b64, buyer=BUYER):
    return gate.orders.create_order(
        listing_id, buyer, buyer_pub_b64,
        consent_accepted=True, data_access_terms_accepted=True,
    )


def pay(ledger, order, amount=None, sender=BUYER, **kw):
    return ledger.transfer(sender, order["payTo"], amount if amount is not None else order["lamports"],
                           memo=order["memo"], **kw)
