from decimal import Decimal

import pytest

from storefront.errors import InvalidTransition, ValidationError
from storefront.models.orders import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_REFUNDED,
    ORDER_SHIPPED,
    ORDER_STATUSES,
)
from storefront.services import activity_service, inventory_service, lifecycle_service, order_service, payment_service, return_service
from storefront.services.order_service import CartLine


def test_transition_graph():
    allowed = {
        (ORDER_PENDING, ORDER_PROCESSING),
        (ORDER_PROCESSING, ORDER_SHIPPED),
        (ORDER_SHIPPED, ORDER_DELIVERED),
        (ORDER_PENDING, ORDER_CANCELLED),
        (ORDER_PROCESSING, ORDER_CANCELLED),
    }
    for src in ORDER_STATUSES:
        for dst in ORDER_STATUSES:
            assert lifecycle_service.can_transition(src, dst) == ((src, dst) in allowed), (src, dst)


def test_refund_edge_only_through_returns(app, monkeypatch):
    assert lifecycle_service.can_transition(ORDER_DELIVERED, ORDER_REFUNDED, via_return=True)
    assert not lifecycle_service.can_transition(ORDER_SHIPPED, ORDER_REFUNDED, via_return=True)
    monkeypatch.setitem(app.config, "ALLOW_RETURNS_ON_SHIPPED", True)
    assert lifecycle_service.can_transition(ORDER_SHIPPED, ORDER_REFUNDED, via_return=True)


def test_unknown_status_is_rejected(app):
    with pytest.raises(ValidationError):
        lifecycle_service.can_transition(ORDER_PENDING, "lost")


def test_processing_requires_payment(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    order = order_service.place_order(customer.id, [CartLine(a.id, 1)])

    with pytest.raises(InvalidTransition) as exc:
        lifecycle_service.start_processing(order.id)

    assert exc.value.from_status == ORDER_PENDING
    assert order_service.get_order(order.id).status == ORDER_PENDING


def test_partial_payment_policy(app, customer, make_product, gateway, monkeypatch):
    a = make_product("A", "10.00", stock=5)
    order = order_service.place_order(customer.id, [CartLine(a.id, 2)])
    payment_service.submit_payment(order.id, "sync", Decimal("5.00"))

    with pytest.raises(InvalidTransition):
        lifecycle_service.start_processing(order.id)

    monkeypatch.setitem(app.config, "ALLOW_PARTIAL_PAYMENT_PROCESSING", True)
    assert lifecycle_service.start_processing(order.id).status == ORDER_PROCESSING


def test_full_forward_path(paid_order, make_product):
    a = make_product("A", "10.00", stock=5)
    order = paid_order([(a, 1)])

    lifecycle_service.start_processing(order.id)
    lifecycle_service.ship_order(order.id)
    delivered = lifecycle_service.deliver_order(order.id)

    assert delivered.status == ORDER_DELIVERED
    assert delivered.processing_at is not None
    assert delivered.shipped_at is not None
    assert delivered.delivered_at is not None

    actions = [e.action for e in activity_service.list_activity("order", order.id)]
    assert actions[-3:] == ["status:processing", "status:shipped", "status:delivered"]


def test_no_going_back(paid_order, make_product):
    a = make_product("A", "10.00", stock=5)
    order = paid_order([(a, 1)])
    lifecycle_service.start_processing(order.id)
    lifecycle_service.ship_order(order.id)

    with pytest.raises(InvalidTransition):
        lifecycle_service.transition(order.id, ORDER_PENDING)
    with pytest.raises(InvalidTransition):
        lifecycle_service.cancel_order(order.id)
    with pytest.raises(InvalidTransition):
        lifecycle_service.transition(order.id, ORDER_REFUNDED)
    assert order_service.get_order(order.id).status == ORDER_SHIPPED


def test_cancel_restocks_every_line(customer, make_product):
    a = make_product("A", "10.00", stock=5)
    b = make_product("B", "5.50", stock=5, warehouse="east")
    order = order_service.place_order(
        customer.id,
        [CartLine(a.id, 2), CartLine(b.id, 1, warehouse="east")],
    )
    assert inventory_service.get_quantity(a.id) == 3

    cancelled = lifecycle_service.cancel_order(order.id, reason="changed mind")

    assert cancelled.status == ORDER_CANCELLED
    assert cancelled.cancel_reason == "changed mind"
    assert inventory_service.get_quantity(a.id) == 5
    assert inventory_service.get_quantity(b.id, "east") == 5

    with pytest.raises(InvalidTransition):
        lifecycle_service.cancel_order(order.id)
    assert inventory_service.get_quantity(a.id) == 5


def test_cancel_keeps_payment_status(paid_order, make_product):
    a = make_product("A", "10.00", stock=5)
    order = paid_order([(a, 1)])

    cancelled = lifecycle_service.cancel_order(order.id)

    assert cancelled.payment_status == "paid"


def test_open_return_blocks_delivery(app, paid_order, make_product, monkeypatch):
    monkeypatch.setitem(app.config, "ALLOW_RETURNS_ON_SHIPPED", True)
    a = make_product("A", "10.00", stock=5)
    order = paid_order([(a, 2)])
    lifecycle_service.start_processing(order.id)
    lifecycle_service.ship_order(order.id)
    item = order_service.get_order(order.id).items[0]

    doc = return_service.create_return(order.id, [(item.id, 1)])
    with pytest.raises(InvalidTransition):
        lifecycle_service.deliver_order(order.id)

    return_service.reject_return(doc.id, "not eligible")
    assert lifecycle_service.deliver_order(order.id).status == ORDER_DELIVERED
