"""
Pytest fixtures for POS backend tests.

Provides test database setup, seeded users and products, and test client.
"""

import pytest
from posapp import create_app
from posapp.extensions import db
from posapp.models import Product
from posapp.models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER
from posapp.services.auth_service import create_user

PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'LOW_STOCK_THRESHOLD': 10,
        'MAX_LINE_QUANTITY': 9999,
        'SALE_NUMBER_MAX_ATTEMPTS': 3,
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
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def admin(db_session):
    return create_user("admin", "admin@pos.local", PASSWORD, role=ROLE_ADMIN, name="Admin")


@pytest.fixture(scope='function')
def manager(db_session):
    return create_user("manager", "manager@pos.local", PASSWORD, role=ROLE_MANAGER, name="Manager")


@pytest.fixture(scope='function')
def cashier(db_session):
    return create_user("cashier", "cashier@pos.local", PASSWORD, role=ROLE_CASHIER, name="Cashier")


@pytest.fixture(scope='function')
def other_cashier(db_session):
    return create_user("cashier2", "cashier2@pos.local", PASSWORD, role=ROLE_CASHIER, name="Second Cashier")


def make_product(db_session, code: str, name: str, price_cents: int, stock_qty: int, **extra) -> Product:
    product = Product(code=code, name=name, price_cents=price_cents, stock_qty=stock_qty, **extra)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_a(db_session):
    """Price 10.00, stock 5."""
    return make_product(db_session, "A-001", "Product A", 1000, 5)


@pytest.fixture(scope='function')
def product_b(db_session):
    """Price 3.00, stock 1."""
    return make_product(db_session, "B-001", "Product B", 300, 1)


def refreshed(model, pk):
    """Re-read a row, discarding anything cached in the session."""
    db.session.expire_all()
    return db.session.get(model, pk)


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, admin.username))


@pytest.fixture(scope='function')
def manager_headers(client, manager):
    return auth_headers(get_auth_token(client, manager.username))


@pytest.fixture(scope='function')
def cashier_headers(client, cashier):
    return auth_headers(get_auth_token(client, cashier.username))
