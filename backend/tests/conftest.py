"""
Pytest fixtures for stockline backend tests.

Provides an app bound to in-memory SQLite, per-test table cleanup, tenant
headers and product fixtures. External services are never contacted.
"""

import pytest

from stockline import create_app
from stockline.extensions import db
from stockline.models import Product


TENANT = "acme"
OTHER_TENANT = "globex"


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    upload_dir = tmp_path_factory.mktemp("uploads")
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'UPLOAD_DIR': str(upload_dir),
        'KEY_SERVICE_URL': None,
        'SESSION_STORE_URL': None,
        'IMPORT_EXTRACT_WORKERS': 2,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh database and empty import sessions for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions["stockline.import_sessions"].kv.clear()
        app.extensions["stockline.key_resolver"].clear_cache()

        yield db.session

        db.session.rollback()


@pytest.fixture
def tenant_headers():
    return {"X-Tenant-ID": TENANT, "X-User-ID": "user-1"}


@pytest.fixture
def session_store(app):
    return app.extensions["stockline.import_sessions"]


@pytest.fixture
def make_product(db_session):
    """Factory: persisted product for a tenant."""
    def _make(sku="WID-001", name="Widget", tenant_id=TENANT, price_cents=1000, **kwargs):
        product = Product(tenant_id=tenant_id, sku=sku, name=name, price_cents=price_cents, barcode=sku, **kwargs)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def product(make_product):
    return make_product()
