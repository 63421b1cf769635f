import re
import threading
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from storefront.errors import CheckoutCancelled, InsufficientStock, NotFoundError, PersistenceError, ValidationError
from storefront.extensions import db
from storefront.models import InventoryReservation, Order
from storefront.models.inventory import RESERVATION_COMMITTED, RESERVATION_HELD
from storefront.models.orders import ORDER_PENDING, PAYMENT_STATUS_UNPAID
from storefront.services import activity_service, catalog_service, customer_service, inventory_service, order_service
from storefront.services.order_service import CartLine


class FlipAfter:
    """cancel_event stand-in that becomes set after `n` checks."""

    def __init__(self, n):
        self.n = n
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.n


def test_place_order_totals_and_stock(customer, address, make_product):
    a = make_product("A", "10.00", stock=5)
    b = make_product("B", "5.50", stock=5)

    order = order_service.place_order(
        customer.id,
        [CartLine(a.id, 2), CartLine(b.id, 1)],
        shipping_address_id=address.id,
        shipping_cost=Decimal("3.00"),
        tax=Decimal("1.50"),
    )

    assert order.subtotal == Decimal("25.50")
    assert order.total == Decimal("30.00")
    assert order.status == ORDER_PENDING
    assert order.payment_status == PAYMENT_STATUS_UNPAID
    assert re.fullmatch(r"ORD-\d{8}-\d{4}", order.order_number)
    assert [(i.sku, i.quantity, i.line_total) for i in order.items] == [
        ("A", 2, Decimal("20.00")),
        ("B", 1, Decimal("5.50")),
    ]
    assert inventory_service.get_quantity(a.id) == 3
    assert inventory_service.get_quantity(b.id) == 4

    committed = inventory_service.list_reservations(order_id=order.id)
    assert {r.status for r in committed} == {RESERVATION_COMMITTED}
    order_service.check_order_totals(order)


def test_order_numbers_increase(customer, make_product):
    a = make_product("A", "1.00", stock=10)

    first = order_service.place_order(customer.id, [CartLine(a.id, 1)])
    second = order_service.place_order(customer.id, [CartLine(a.id, 1)])

    assert int(second.order_number[-4:]) == int(first.order_number[-4:]) + 1


def test_insufficient_stock_releases_earlier_lines(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    b = make_product("B", "5.50", stock=0)

    with pytest.raises(InsufficientStock) as exc:
        order_service.place_order(customer.id, [CartLine(a.id, 2), CartLine(b.id, 1)])

    assert exc.value.product_id == b.id
    assert inventory_service.get_quantity(a.id) == 5
    assert db.session.query(Order).count() == 0
    assert inventory_service.list_reservations(status=RESERVATION_HELD) == []


def test_cancel_before_reserving(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    event = threading.Event()
    event.set()

    with pytest.raises(CheckoutCancelled):
        order_service.place_order(customer.id, [CartLine(a.id, 2)], cancel_event=event)

    assert inventory_service.get_quantity(a.id) == 5
    assert db.session.query(InventoryReservation).count() == 0


def test_cancel_mid_checkout_compensates(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    b = make_product("B", "5.50", stock=5)

    with pytest.raises(CheckoutCancelled):
        order_service.place_order(
            customer.id,
            [CartLine(a.id, 2), CartLine(b.id, 1)],
            cancel_event=FlipAfter(1),
        )

    assert inventory_service.get_quantity(a.id) == 5
    assert inventory_service.get_quantity(b.id) == 5
    assert db.session.query(Order).count() == 0
    assert inventory_service.list_reservations(status=RESERVATION_HELD) == []


def test_duplicate_lines_are_merged(customer, make_product):
    a = make_product("A", "2.00", stock=5)

    order = order_service.place_order(
        customer.id,
        [{"product_id": a.id, "quantity": 1}, {"product_id": a.id, "quantity": 2}],
    )

    assert len(order.items) == 1
    assert order.items[0].quantity == 3
    assert order.total == Decimal("6.00")


def test_price_snapshot_survives_catalog_change(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    order = order_service.place_order(customer.id, [CartLine(a.id, 1)])

    catalog_service.update_product(a.id, {"price": "99.00", "name": "Renamed"})

    item = order_service.get_order(order.id).items[0]
    assert item.unit_price == Decimal("10.00")
    assert item.product_name == "Product A"


@pytest.mark.parametrize("cart", [
    [],
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": 1, "quantity": -2}],
    [{"product_id": "1", "quantity": 1}],
])
def test_malformed_cart_is_rejected(customer, cart):
    with pytest.raises(ValidationError):
        order_service.place_order(customer.id, cart)


def test_inactive_product_is_rejected(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    catalog_service.deactivate_product(a.id)

    with pytest.raises(ValidationError):
        order_service.place_order(customer.id, [CartLine(a.id, 1)])
    assert inventory_service.get_quantity(a.id) == 5


def test_unknown_customer_and_foreign_address(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    other = customer_service.register_customer("bob@example.com", "Bob", "B", "hash")
    foreign = customer_service.add_address(other.id, "2 Side St", "Paris", "FR")

    with pytest.raises(NotFoundError):
        order_service.place_order(9999, [CartLine(a.id, 1)])
    with pytest.raises(ValidationError):
        order_service.place_order(customer.id, [CartLine(a.id, 1)], shipping_address_id=foreign.id)
    assert inventory_service.get_quantity(a.id) == 5


def test_negative_shipping_is_rejected(customer, make_product):
    a = make_product("A", "10.00", stock=5)

    with pytest.raises(ValidationError):
        order_service.place_order(customer.id, [CartLine(a.id, 1)], shipping_cost=Decimal("-1.00"))
    with pytest.raises(ValidationError):
        order_service.place_order(customer.id, [CartLine(a.id, 1)], tax=0.5)


def test_order_number_collision_is_regenerated(customer, make_product, monkeypatch):
    a = make_product("A", "1.00", stock=5)
    first = order_service.place_order(customer.id, [CartLine(a.id, 1)])
    taken = first.order_number

    def fake_next(attempt=0):
        return taken if attempt == 0 else taken[:-4] + "9999"

    monkeypatch.setattr(order_service, "_next_order_number", fake_next)
    second = order_service.place_order(customer.id, [CartLine(a.id, 1)])

    assert second.order_number.endswith("9999")
    assert inventory_service.get_quantity(a.id) == 3


def test_order_created_event_is_logged(customer, make_product):
    a = make_product("A", "1.00", stock=5)
    order = order_service.place_order(customer.id, [CartLine(a.id, 1)])

    actions = [entry.action for entry in activity_service.list_activity("order", order.id)]
    assert actions == ["created"]


def test_summary_lists_items(customer, make_product):
    a = make_product("A", "1.25", stock=5)
    order = order_service.place_order(customer.id, [CartLine(a.id, 2)])

    summary = order_service.get_order_summary(order.id)

    assert summary["order"]["total"] == "2.50"
    assert summary["items"][0]["quantity"] == 2
    assert summary["payments"] == []
    assert [o.id for o in order_service.list_customer_orders(customer.id)] == [order.id]


def test_order_numbers_continue_past_four_digits(customer, make_product):
    a = make_product("A", "1.00", stock=10)
    first = order_service.place_order(customer.id, [CartLine(a.id, 1)])
    prefix = first.order_number.rsplit("-", 1)[0] + "-"
    db.session.get(Order, first.id).order_number = f"{prefix}9999"
    db.session.commit()

    numbers = [order_service.place_order(customer.id, [CartLine(a.id, 1)]).order_number for _ in range(6)]

    assert numbers == [f"{prefix}{n}" for n in range(10000, 10006)]
    assert db.session.query(Order).count() == 7


def test_persistent_storage_failure_releases_stock(app, customer, make_product, monkeypatch):
    a = make_product("A", "10.00", stock=5)
    calls = []

    def failing_insert(build):
        calls.append(build)
        raise OperationalError("INSERT INTO orders", {}, Exception("database is locked"))

    monkeypatch.setattr(order_service, "_insert_order", failing_insert)

    with pytest.raises(PersistenceError):
        order_service.place_order(customer.id, [CartLine(a.id, 2)])

    assert len(calls) == app.config["PERSISTENCE_RETRY_ATTEMPTS"]
    assert inventory_service.get_quantity(a.id) == 5
    assert db.session.query(Order).count() == 0
    assert inventory_service.list_reservations(status="held") == []
