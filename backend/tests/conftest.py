"""
Pytest fixtures for stockrecon backend tests.

Provides an in-memory application, a clean database per test and helpers
for seeding stock.
"""

import pytest

from stockrecon import create_app
from stockrecon.extensions import db
from stockrecon.models.ledger import MOVEMENT_IN, REF_PURCHASE_ORDER
from stockrecon.services import ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SYNC_UPSERT_KEYS': {'routestar': 'number', 'customerconnect': 'external_id'},
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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
def receive(db_session):
    """Post an IN movement: receive("A", 10)."""
    def _receive(sku, qty, ref_id="PO-TEST"):
        return ledger_service.post_movement(
            sku=sku,
            movement_type=MOVEMENT_IN,
            qty=qty,
            ref_type=REF_PURCHASE_ORDER,
            ref_id=ref_id,
        )
    return _receive
