import asyncio

import pytest

from importer import db
from importer.factory import ServiceFactory
from importer.log.live_log import clear_live_log

from fakes import FakeBackend, FakeCatalog, FakeWoo

BASE_OPTIONS = {
    "api_key": "vendor-key-1234",
    "target_language": "ro",
    "exchange_rate": 5.0,
    "markup_percent": 0,
    "price_rounding": "none",
    "source_currency": "EUR",
    "target_currency": "RON",
    "sync_fields": {},
    "sync_protection": {},
    "custom_patterns": {},
    "variation_mode": "variable",
}


@pytest.fixture(autouse=True)
def _fresh_live_log():
    clear_live_log()
    yield
    clear_live_log()


@pytest.fixture
def database(tmp_path):
    db.configure(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    asyncio.run(db.init_db())
    yield db.get_sessionmaker()
    asyncio.run(db.dispose_db())
    db.configure(None)


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def woo():
    return FakeWoo()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def factory(database, catalog, woo, backend):
    f = ServiceFactory(database, catalog=catalog, woo=woo, translation_backend=backend)
    asyncio.run(f.config_store().set_many(BASE_OPTIONS))
    return f
