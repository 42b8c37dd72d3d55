import pytest
from fastapi.testclient import TestClient

from scansync.main import create_app
from scansync.store import InMemoryStore

BUSINESS_ID = "6f1b8c7e-2a4d-4c55-9a51-3d2f0e7b9a10"
OTHER_BUSINESS_ID = "0b9e4c1a-7f3e-4d2b-8c6a-5e1f2a3b4c5d"
USER_ID = 42
VIEWER_ID = 43


@pytest.fixture
def store():
    s = InMemoryStore()
    s.add_member(USER_ID, BUSINESS_ID, role="admin")
    s.add_member(VIEWER_ID, BUSINESS_ID, role="viewer", permissions={"count": False})
    return s


@pytest.fixture
def widget(store):
    return store.add_product(BUSINESS_ID, name="Widget", sku="W-1", barcode="0001", quantity=10)


@pytest.fixture
def gadget(store):
    return store.add_product(BUSINESS_ID, name="Gadget", sku="G-1", barcode="0002", quantity=3)


@pytest.fixture
def foreign_product(store):
    return store.add_product(OTHER_BUSINESS_ID, name="Elsewhere", quantity=7)


@pytest.fixture
def app(store):
    return create_app(store)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth():
    return {"X-User-ID": str(USER_ID)}
