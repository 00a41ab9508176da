"""
Pytest fixtures for stockbook backend tests.

Provides test database setup, cart fixtures, and test client.
"""

import pytest

from stockbook import create_app
from stockbook.extensions import db
from stockbook.services.cart import PurchaseCart


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'WARNING',
        'STOCK_WRITE_ATTEMPTS': 1,
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
def cart():
    """Empty in-memory purchase cart."""
    return PurchaseCart()


@pytest.fixture(scope='function')
def acme_cylinders():
    """Acme 12kg refill cylinders: 30 x 22mm + 20 x 20mm for 5000."""
    return {
        'brand': 'Acme',
        'weight': '12kg',
        'stock_type': 'refill',
        'quantities': {'22mm': 30, '20mm': 20},
        'lump_total': 5000,
    }


@pytest.fixture(scope='function')
def reload(db_session):
    """Fresh copy of a row, bypassing the identity map."""
    def _reload(model, record_id):
        db_session.expire_all()
        return db_session.get(model, record_id)
    return _reload
