"""
Pytest fixtures for posledger backend tests.

Provides test database setup, tenant fixtures, catalog helpers and test client.
"""

import pytest
from posledger import create_app
from posledger.extensions import db
from posledger.models import Seller
from posledger.services.products_service import create_product


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ORDER_FULFILLMENT_MODE': 'atomic',
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
        app.config['ORDER_FULFILLMENT_MODE'] = 'atomic'


@pytest.fixture(scope='function')
def seller_a(db_session):
    """Create Seller A (first tenant)."""
    seller = Seller(name="Seller A - Corner Store", is_active=True)
    db_session.add(seller)
    db_session.commit()
    return seller


@pytest.fixture(scope='function')
def seller_b(db_session):
    """Create Seller B (second tenant)."""
    seller = Seller(name="Seller B - Market Stall", is_active=True)
    db_session.add(seller)
    db_session.commit()
    return seller


def product_payload(**overrides) -> dict:
    """Minimal valid product body; override any field."""
    payload = {
        "name": "Basmati Rice 1kg",
        "sku": "RICE-1KG",
        "category": "Groceries",
        "price": 120,
        "stock": 10,
    }
    payload.update(overrides)
    return payload


def order_payload(lines, **overrides) -> dict:
    """
    Invoice body for a cart.

    lines: list of (product_id, variant_id, quantity, price) tuples.
    """
    items = [
        {"product_id": pid, "variant_id": vid, "quantity": qty, "price": price}
        for pid, vid, qty, price in lines
    ]
    subtotal = sum(qty * price for _, _, qty, price in lines)
    payload = {
        "customer_name": "Walk-in Customer",
        "items": items,
        "subtotal": subtotal,
        "total": subtotal,
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope='function')
def product_a(db_session, seller_a):
    """Product without variants in Seller A's catalog (stock 10)."""
    return create_product(seller_a.id, product_payload())


@pytest.fixture(scope='function')
def variant_product_a(db_session, seller_a):
    """Product with two variants in Seller A's catalog (stock 5 + 3)."""
    return create_product(seller_a.id, product_payload(
        name="Cotton T-Shirt",
        sku="TSHIRT",
        category="Apparel",
        price=499,
        stock=999,
        variants=[
            {"name": "Small", "options": ["S"], "price": 499, "stock": 5, "sku": "TSHIRT-S", "barcode": "890000000001"},
            {"name": "Large", "options": ["L"], "price": 549, "stock": 3, "sku": "TSHIRT-L", "barcode": "890000000002"},
        ],
    ))


def seller_headers(seller) -> dict:
    """Helper to create tenant headers for a seller."""
    return {'X-Seller-Id': str(seller.id)}
