"""Shared test fixtures for the Korelia backend test suite.

Provides:
- app: Flask app configured for testing (DATA_DIR in a temp dir, CSRF off)
- client: Flask test client
- store: the app's JsonStore
- outbox: captured outgoing emails (SMTP is never contacted)
- seed_products: a small catalog, including a predefined pack
- seed_users: a customer with points and an admin
- auth_client / admin_client: test clients logged in as those users
"""

import pytest
from werkzeug.security import generate_password_hash

from korelia import create_app
from korelia.models.user import build_user
from korelia.services.json_store import PRODUCTS, USERS

CUSTOMER_EMAIL = "jane@example.com"
CUSTOMER_PASSWORD = "correct-horse-1"
ADMIN_EMAIL = "admin@korelia.test"
ADMIN_PASSWORD = "admin-pass-123"


@pytest.fixture
def app(tmp_path):
    """Create the Flask application configured for testing."""
    app = create_app("testing", {"DATA_DIR": str(tmp_path / "data")})
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["json_store"]


@pytest.fixture
def catalog(app):
    return app.extensions["product_catalog"]


@pytest.fixture(autouse=True)
def outbox(app):
    """Swap the SMTP transport for a list; every delivered message lands here."""
    sent = []
    app.extensions["notification_queue"].transport = sent.append
    return sent


@pytest.fixture
def seed_products(store, catalog):
    products = [
        {"id": "1", "slug": "rice-cleanser", "name": "Rice Cleanser", "brand": "Haru",
         "price": 12.9, "stock": 10, "category": "cleanser"},
        {"id": "2", "slug": "snail-serum", "name": "Snail Serum", "brand": "Mizu",
         "price_cents": 2450, "stock": 5, "category": "serum"},
        {"id": "3", "slug": "barrier-cream", "name": "Barrier Cream", "brand": "Haru",
         "price": 19.0, "stock": 3, "category": "cream"},
        {"id": "4", "slug": "sun-fluid", "name": "Sun Fluid", "brand": "Sora",
         "price": 15.0, "category": "sunscreen"},
        {"id": "10", "slug": "glow-routine", "name": "Glow Routine", "price": 32.0,
         "category": "pack", "stock": 20,
         "pack_items": [{"id": "1", "qty": 1}, {"slug": "snail-serum", "qty": 2}]},
    ]
    store.write(PRODUCTS, products)
    catalog.reload()
    return products


def _user(email, password, name, role="user", points=0):
    user = build_user(email, name, generate_password_hash(password), role=role)
    user["points"] = points
    return user


@pytest.fixture
def seed_users(store):
    customer = _user(CUSTOMER_EMAIL, CUSTOMER_PASSWORD, "Jane Doe", points=120)
    admin = _user(ADMIN_EMAIL, ADMIN_PASSWORD, "Admin", role="admin")
    store.write(USERS, [customer, admin])
    return {
        "customer": customer,
        "customer_id": customer["id"],
        "admin": admin,
        "admin_id": admin["id"],
    }


def login(client, email, password):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture
def auth_client(client, seed_users):
    """Test client holding the customer's session cookie."""
    resp = login(client, CUSTOMER_EMAIL, CUSTOMER_PASSWORD)
    assert resp.status_code == 200
    return client


@pytest.fixture
def admin_client(app, seed_users):
    """A separate test client logged in as the admin."""
    client = app.test_client()
    resp = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert resp.status_code == 200
    return client
