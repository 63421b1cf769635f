"""
Pytest fixtures for storefront engine tests.

Provides the app with an in-memory database, a per-test table wipe and small
factories for customers, products, stock and fully paid orders.
"""

from decimal import Decimal

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.services import (
    catalog_service,
    customer_service,
    inventory_service,
    lifecycle_service,
    order_service,
    payment_service,
)
from storefront.services.gateways import PaymentGateway, register_gateway, unregister_gateway


class SyncGateway(PaymentGateway):
    """Settles every charge immediately and records refunds."""

    name = "sync"

    def __init__(self):
        self.charges = []
        self.refunds = []

    def charge(self, order_id, amount, currency):
        self.charges.append((order_id, amount, currency))
        return f"ch_{order_id}_{len(self.charges)}"

    def refund(self, provider_payment_id, amount, currency):
        self.refunds.append((provider_payment_id, amount, currency))


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RETRY_BACKOFF_BASE': 0.0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data for each test; schema is kept."""
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


@pytest.fixture(scope='function')
def gateway():
    gw = register_gateway(SyncGateway())
    yield gw
    unregister_gateway("sync")


@pytest.fixture(scope='function')
def customer(db_session):
    return customer_service.register_customer("ada@example.com", "Ada", "Lovelace", "hash")


@pytest.fixture(scope='function')
def address(customer):
    return customer_service.add_address(customer.id, "1 Analytical Way", "London", "UK")


@pytest.fixture(scope='function')
def make_product(db_session):
    """make_product(sku, price, stock=0, warehouse=None) -> Product"""
    def _make(sku, price, stock=0, warehouse=None):
        product = catalog_service.create_product(sku, f"Product {sku}", Decimal(price))
        if stock:
            inventory_service.restock(product.id, warehouse, stock)
        return product
    return _make


@pytest.fixture(scope='function')
def paid_order(customer, make_product, gateway):
    """paid_order(lines) with lines as [(product, qty), ...]; fully paid, still pending."""
    def _make(lines, **kwargs):
        order = order_service.place_order(
            customer.id,
            [{"product_id": p.id, "quantity": qty} for p, qty in lines],
            **kwargs,
        )
        payment_service.submit_payment(order.id, "sync", order.total)
        return order_service.get_order(order.id)
    return _make


@pytest.fixture(scope='function')
def delivered_order(paid_order):
    def _make(lines, **kwargs):
        order = paid_order(lines, **kwargs)
        lifecycle_service.start_processing(order.id)
        lifecycle_service.ship_order(order.id)
        return lifecycle_service.deliver_order(order.id)
    return _make
