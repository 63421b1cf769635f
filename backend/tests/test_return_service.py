from decimal import Decimal

import pytest

from storefront.errors import InvalidTransition, PaymentError, ReturnError, ValidationError
from storefront.models.orders import (
    ORDER_DELIVERED,
    ORDER_REFUNDED,
    RETURN_APPROVED,
    RETURN_COMPLETED,
    RETURN_REJECTED,
    RETURN_REQUESTED,
)
from storefront.services import (
    activity_service,
    inventory_service,
    lifecycle_service,
    order_service,
    payment_service,
    return_service,
)
from storefront.services.order_service import CartLine


def test_full_return_restocks_and_refunds(delivered_order, make_product, gateway):
    a = make_product("A", "10.00", stock=5)
    order = delivered_order([(a, 2)])
    item = order.items[0]
    assert inventory_service.get_quantity(a.id) == 3

    doc = return_service.create_return(order.id, [(item.id, 2)], reason="damaged")
    assert doc.status == RETURN_REQUESTED
    assert doc.refund_amount == Decimal("20.00")

    return_service.approve_return(doc.id)
    completed = return_service.complete_return(doc.id)

    assert completed.status == RETURN_COMPLETED
    assert completed.processed_at is not None
    assert inventory_service.get_quantity(a.id) == 5

    order = order_service.get_order(order.id)
    assert order.payment_status == "refunded"
    assert order.status == ORDER_DELIVERED
    assert gateway.refunds[-1][1] == Decimal("20.00")

    actions = [e.action for e in activity_service.list_activity("return", doc.id)]
    assert actions == ["requested", "approved", "completed"]


def test_partial_return_leaves_partial_payment(delivered_order, make_product):
    a = make_product("A", "10.00", stock=5)
    b = make_product("B", "5.50", stock=5)
    order = delivered_order([(a, 2), (b, 1)])
    b_item = [i for i in order.items if i.product_id == b.id][0]

    doc = return_service.create_return(order.id, [{"order_item_id": b_item.id, "quantity": 1}])
    return_service.approve_return(doc.id)
    return_service.complete_return(doc.id)

    summary = payment_service.get_payment_summary(order.id)
    assert summary["payment_status"] == "partial"
    assert summary["paid"] == "20.00"
    assert inventory_service.get_quantity(b.id) == 5
    assert inventory_service.get_quantity(a.id) == 3


def test_cannot_return_more_than_bought(delivered_order, make_product):
    a = make_product("A", "10.00", stock=5)
    order = delivered_order([(a, 3)])
    item = order.items[0]

    with pytest.raises(ReturnError):
        return_service.create_return(order.id, [(item.id, 4)])

    first = return_service.create_return(order.id, [(item.id, 2)])
    with pytest.raises(ReturnError):
        return_service.create_return(order.id, [(item.id, 2)])

    return_service.reject_return(first.id, "no receipt")
    assert return_service.get_return(first.id).status == RETURN_REJECTED
    second = return_service.create_return(order.id, [(item.id, 3)])
    assert second.refund_amount == Decimal("30.00")
    assert return_service.returned_quantity(item.id) == 3


def test_only_delivered_orders_accept_returns(paid_order, make_product):
    a = make_product("A", "10.00", stock=5)
    order = paid_order([(a, 1)])
    item = order.items[0]

    with pytest.raises(ReturnError):
        return_service.create_return(order.id, [(item.id, 1)])

    lifecycle_service.start_processing(order.id)
    lifecycle_service.ship_order(order.id)
    with pytest.raises(ReturnError):
        return_service.create_return(order.id, [(item.id, 1)])


def test_item_must_belong_to_order(delivered_order, make_product):
    a = make_product("A", "10.00", stock=5)
    first = delivered_order([(a, 1)])
    second = delivered_order([(a, 1)])

    with pytest.raises(ReturnError):
        return_service.create_return(first.id, [(second.items[0].id, 1)])
    with pytest.raises(ValidationError):
        return_service.create_return(first.id, [])
    with pytest.raises(ValidationError):
        return_service.create_return(first.id, [(first.items[0].id, 0)])


def test_return_state_machine(delivered_order, make_product):
    a = make_product("A", "10.00", stock=5)
    order = delivered_order([(a, 1)])
    doc = return_service.create_return(order.id, [(order.items[0].id, 1)])

    with pytest.raises(InvalidTransition):
        return_service.complete_return(doc.id)

    assert return_service.approve_return(doc.id).status == RETURN_APPROVED
    with pytest.raises(InvalidTransition):
        return_service.reject_return(doc.id, "too late")

    return_service.complete_return(doc.id)
    with pytest.raises(InvalidTransition):
        return_service.complete_return(doc.id)
    assert inventory_service.get_quantity(a.id) == 5


def test_full_return_can_refund_the_order(app, delivered_order, make_product, monkeypatch):
    monkeypatch.setitem(app.config, "REFUND_ORDER_ON_FULL_RETURN", True)
    a = make_product("A", "10.00", stock=5)
    b = make_product("B", "5.50", stock=5)
    order = delivered_order([(a, 2), (b, 1)])
    items = {i.product_id: i for i in order.items}

    first = return_service.create_return(order.id, [(items[a.id].id, 2)])
    return_service.approve_return(first.id)
    return_service.complete_return(first.id)
    assert order_service.get_order(order.id).status == ORDER_DELIVERED

    second = return_service.create_return(order.id, [(items[b.id].id, 1)])
    return_service.approve_return(second.id)
    return_service.complete_return(second.id)

    refunded = order_service.get_order(order.id)
    assert refunded.status == ORDER_REFUNDED
    assert refunded.refunded_at is not None
    assert refunded.payment_status == "refunded"


def test_failed_refund_rolls_back_completion(customer, make_product, gateway):
    a = make_product("A", "10.00", stock=5)
    order = order_service.place_order(customer.id, [CartLine(a.id, 2)])
    payment_service.submit_payment(order.id, "sync", Decimal("20.00"))
    lifecycle_service.start_processing(order.id)
    lifecycle_service.ship_order(order.id)
    lifecycle_service.deliver_order(order.id)
    doc = return_service.create_return(order.id, [(order.items[0].id, 2)])
    return_service.approve_return(doc.id)

    # money already handed back outside the return
    payment_service.refund_amount(order.id, Decimal("15.00"))

    with pytest.raises(PaymentError):
        return_service.complete_return(doc.id)

    assert return_service.get_return(doc.id).status == RETURN_APPROVED
    assert inventory_service.get_quantity(a.id) == 3


def test_return_summary(delivered_order, make_product):
    a = make_product("A", "4.25", stock=5)
    order = delivered_order([(a, 2)])
    doc = return_service.create_return(order.id, [(order.items[0].id, 1)])

    summary = return_service.get_return_summary(doc.id)

    assert summary["refund_amount"] == "4.25"
    assert summary["lines"][0]["quantity"] == 1
    assert [r.id for r in return_service.get_order_returns(order.id)] == [doc.id]
    assert return_service.has_open_return(order.id)


def test_full_return_keeps_shipping_and_tax(delivered_order, make_product, gateway):
    a = make_product("A", "10.00", stock=5)
    order = delivered_order([(a, 2)], shipping_cost=Decimal("3.00"), tax=Decimal("1.50"))
    assert order.total == Decimal("24.50")

    doc = return_service.create_return(order.id, [(order.items[0].id, 2)])
    return_service.approve_return(doc.id)
    return_service.complete_return(doc.id)

    summary = payment_service.get_payment_summary(order.id)
    assert summary["payment_status"] == "partial"
    assert summary["paid"] == "4.50"
    assert gateway.refunds[-1][1] == Decimal("20.00")
    assert order_service.get_order(order.id).status == ORDER_DELIVERED

    payment_service.refund_amount(order.id, Decimal("4.50"))
    assert order_service.get_order(order.id).payment_status == "refunded"
