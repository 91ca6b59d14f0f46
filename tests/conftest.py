"""
Shared fixtures: an app on in-memory SQLite, a fresh schema per test, a seeded
organization with users and a supplier, and logged-in API clients.
"""
from datetime import datetime

import pytest
from flask import g
from passlib.hash import pbkdf2_sha256

from app import create_app
from config import Config
from extensions import cache
from models import db, ConsignmentSupplier, Organization, User
from routes import agreement_utils, ledger_utils
from routes.folio_utils import ensure_folio_sequences
from routes.line_items import LineItem

PASSWORD = 'secret-pass'


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    CACHE_TYPE = 'SimpleCache'
    RATELIMIT_ENABLED = False
    TRANSACTION_RETRIES = 3
    CONSIGNMENT_DEFAULT_PERIOD_DAYS = 30
    CONSIGNMENT_DEFAULT_RETURN_GRACE_DAYS = 60


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        cache.clear()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def file_app(tmp_path):
    """App on a SQLite file so several threads get their own connections.

    No app context is pushed; each caller pushes its own.
    """
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{tmp_path / "consigna.db"}'
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 15}}
        TRANSACTION_RETRIES = 10

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def org(app):
    org = Organization(name='Tienda Centro')
    db.session.add(org)
    db.session.flush()
    ensure_folio_sequences(org.id)
    db.session.commit()
    return org


def _make_user(org, username, role):
    user = User(organization_id=org.id, username=username,
                password_hash=pbkdf2_sha256.hash(PASSWORD), role=role)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(org):
    return _make_user(org, 'admin', 'Admin')


@pytest.fixture
def cashier_user(org):
    return _make_user(org, 'cajero', 'Cashier')


@pytest.fixture
def supplier(org):
    supplier = ConsignmentSupplier(organization_id=org.id, name='Artesanias del Valle',
                                   tin='RFC-123', is_active=True)
    db.session.add(supplier)
    db.session.commit()
    return supplier


@pytest.fixture
def today():
    return datetime.utcnow().date()


@pytest.fixture
def make_agreement(org, supplier, admin_user):
    """Build an agreement with one product; active and stocked unless told otherwise."""
    def _make(commission='10.00', price='50.00', product_id=1, variant_id=None,
              receive=None, activate=True):
        agreement = agreement_utils.create_agreement(org.id, supplier.id, commission, user=admin_user)
        agreement_utils.add_product(org.id, agreement.id, product_id, variant_id=variant_id,
                                    consignment_price=price, user=admin_user)
        if activate:
            agreement_utils.transition(org.id, agreement.id, 'activate', user=admin_user)
        if receive:
            ledger_utils.receive(org.id, agreement.id, LineItem(product_id, variant_id, receive),
                                 user=admin_user)
        db.session.commit()
        return agreement
    return _make


def _login(app, username):
    client = app.test_client()
    resp = client.post('/auth/login', json={'username': username, 'password': PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    # Requests share the fixture app context; drop the cached user so each request reloads it
    g.pop('_login_user', None)
    return client


@pytest.fixture
def client(app, admin_user, supplier):
    return _login(app, admin_user.username)


@pytest.fixture
def cashier_client(app, cashier_user, supplier):
    return _login(app, cashier_user.username)
