import os

# Must be set before agencycrm builds its engine
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from agencycrm.core.database import Base, SessionLocal, engine, get_db
from agencycrm.core.tenant import TenantContext
from agencycrm.models.document import Document  # noqa: F401
from agencycrm.services import dashboard_cache
from agencycrm.services.document_store import DocumentStore

FIXED_NOW = datetime(2024, 12, 20, 12, 0, tzinfo=timezone.utc)

SCENARIO_CSV = (
    "Insured Name,Address,City,State,Zip,Policy Type,Company,Premium,Effective\n"
    "John Smith,123 Main St,Springfield,IL,62701,PA,Acme Ins,1200,01/15/2024\n"
)


class CountingStore(DocumentStore):
    """Store that remembers how many rows each query loaded."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.loaded = []

    def _fetch(self, q):
        rows = super()._fetch(q)
        self.loaded.append(len(rows))
        return rows


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_dashboard_cache():
    dashboard_cache._entries.clear()
    yield
    dashboard_cache._entries.clear()


@pytest.fixture
def store(db):
    return DocumentStore(db, now=lambda: FIXED_NOW)


@pytest.fixture
def tenant():
    return TenantContext(tenant_id="agency-1", user_id="user-1", role="admin")


@pytest.fixture
def other_tenant():
    return TenantContext(tenant_id="agency-2")


@pytest.fixture
def client(db):
    from agencycrm.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(tenant):
    return {"X-Tenant-Id": tenant.tenant_id, "X-User-Id": tenant.user_id, "X-User-Role": "Admin"}
