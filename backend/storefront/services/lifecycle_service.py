# Overview: Order Lifecycle Controller; the only writer of Order.status.

"""
Order Lifecycle Service

================================================================================
STATE MACHINE
================================================================================

    pending -> processing -> shipped -> delivered
    pending | processing -> cancelled
    delivered -> refunded            (only through a completed Return)
    shipped   -> refunded            (only through a completed Return, and only
                                      when returns on shipped orders are allowed)

RULES:
1. Forward only. No state is ever re-entered (shipped -> pending is forbidden).
2. cancelled and refunded are terminal. delivered accepts only -> refunded.
3. pending -> processing requires payment_status 'paid' ('partial' too when
   ALLOW_PARTIAL_PAYMENT_PROCESSING is on).
4. -> shipped and -> delivered are blocked while a Return is requested or
   approved for the order.
5. The status change and its side effects (restock on cancel) commit together.
6. Activity events are emitted after the commit.

================================================================================
"""

from __future__ import annotations

from flask import current_app

from ..config import get_setting
from ..errors import InvalidTransition, ValidationError
from ..extensions import db
from ..models import Order, Return
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_REFUNDED,
    ORDER_SHIPPED,
    ORDER_STATUSES,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    RETURN_APPROVED,
    RETURN_REQUESTED,
)
from ..time_utils import utcnow
from . import activity_service, inventory_service, payment_service
from .concurrency import run_with_retry
from .order_service import lock_order


# Transitions any caller may request
FORWARD_TRANSITIONS = {
    (ORDER_PENDING, ORDER_PROCESSING),
    (ORDER_PROCESSING, ORDER_SHIPPED),
    (ORDER_SHIPPED, ORDER_DELIVERED),
    (ORDER_PENDING, ORDER_CANCELLED),
    (ORDER_PROCESSING, ORDER_CANCELLED),
}

# Transitions reserved for the returns processor
RETURN_TRANSITIONS = {
    (ORDER_DELIVERED, ORDER_REFUNDED),
    (ORDER_SHIPPED, ORDER_REFUNDED),
}

OPEN_RETURN_STATUSES = (RETURN_REQUESTED, RETURN_APPROVED)

_TIMESTAMP_FIELDS = {
    ORDER_PROCESSING: "processing_at",
    ORDER_SHIPPED: "shipped_at",
    ORDER_DELIVERED: "delivered_at",
    ORDER_CANCELLED: "cancelled_at",
    ORDER_REFUNDED: "refunded_at",
}


def validate_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid order status '{status}'. Must be one of: {', '.join(ORDER_STATUSES)}",
            details={"status": status},
        )


def can_transition(from_status: str, to_status: str, *, via_return: bool = False) -> bool:
    """
    Check a transition against the graph.

    shipped -> refunded additionally depends on ALLOW_RETURNS_ON_SHIPPED.
    """
    validate_status(from_status)
    validate_status(to_status)

    if (from_status, to_status) in FORWARD_TRANSITIONS:
        return True
    if via_return and (from_status, to_status) in RETURN_TRANSITIONS:
        if from_status == ORDER_SHIPPED:
            return bool(get_setting("ALLOW_RETURNS_ON_SHIPPED"))
        return True
    return False


def has_open_return(order_id: int) -> bool:
    return (
        db.session.query(Return.id)
        .filter(Return.order_id == order_id, Return.status.in_(OPEN_RETURN_STATUSES))
        .first()
        is not None
    )


def _apply(order: Order, to_status: str, *, via_return: bool = False) -> str:
    from_status = order.status
    if not can_transition(from_status, to_status, via_return=via_return):
        raise InvalidTransition("order", order.id, from_status, to_status)

    order.status = to_status
    setattr(order, _TIMESTAMP_FIELDS[to_status], utcnow())
    return from_status


def _transition(order_id: int, to_status: str, guard=None, side_effect=None, payload: dict | None = None) -> Order:
    def _op():
        order = lock_order(order_id)
        if guard is not None:
            guard(order)
        from_status = _apply(order, to_status)
        if side_effect is not None:
            side_effect(order)
        db.session.commit()
        return order, from_status

    order, from_status = run_with_retry(_op)

    activity_service.emit(
        "order",
        order.id,
        f"status:{to_status}",
        {"from": from_status, "to": to_status, **(payload or {})},
    )
    return order


# =============================================================================
# TRANSITIONS
# =============================================================================

def start_processing(order_id: int) -> Order:
    """pending -> processing, gated on payment."""
    def _guard(order: Order):
        allowed = {PAYMENT_STATUS_PAID}
        if get_setting("ALLOW_PARTIAL_PAYMENT_PROCESSING"):
            allowed.add(PAYMENT_STATUS_PARTIAL)
        if order.status != ORDER_PENDING:
            return
        payment_status = payment_service.refresh_payment_status(order)
        if payment_status not in allowed:
            raise InvalidTransition(
                "order",
                order.id,
                order.status,
                ORDER_PROCESSING,
                reason=f"payment_status is '{payment_status}', requires one of {sorted(allowed)}",
            )

    return _transition(order_id, ORDER_PROCESSING, guard=_guard)


def _no_open_return(to_status: str):
    def _guard(order: Order):
        if has_open_return(order.id):
            raise InvalidTransition("order", order.id, order.status, to_status, reason="an open return blocks this order")
    return _guard


def ship_order(order_id: int) -> Order:
    """processing -> shipped."""
    return _transition(order_id, ORDER_SHIPPED, guard=_no_open_return(ORDER_SHIPPED))


def deliver_order(order_id: int) -> Order:
    """shipped -> delivered."""
    return _transition(order_id, ORDER_DELIVERED, guard=_no_open_return(ORDER_DELIVERED))


def cancel_order(order_id: int, reason: str | None = None) -> Order:
    """
    pending | processing -> cancelled.

    Every line item's units go back to the warehouse they were taken from, in
    the same transaction as the status change. payment_status is untouched;
    refunds for cancelled orders are a separate payment_service call.
    """
    restocked = []

    def _restock(order: Order):
        order.cancel_reason = reason
        restocked.clear()
        for item in order.items:
            inventory_service.restock(
                item.product_id,
                item.warehouse,
                item.quantity,
                commit=False,
                reason=f"cancel:{order.order_number}",
            )
            restocked.append({"product_id": item.product_id, "warehouse": item.warehouse, "quantity": item.quantity})

    order = _transition(
        order_id,
        ORDER_CANCELLED,
        side_effect=_restock,
        payload={"reason": reason, "restocked": restocked},
    )
    current_app.logger.info("Order %s cancelled; restocked %s line(s)", order.order_number, len(restocked))
    return order


def mark_refunded(order: Order) -> Order:
    """
    delivered | shipped -> refunded, inside the returns processor's open
    transaction. The caller holds the order lock and commits.
    """
    _apply(order, ORDER_REFUNDED, via_return=True)
    return order


def transition(order_id: int, to_status: str, **kwargs) -> Order:
    """Dispatch by target status; refunded is not reachable from here."""
    handlers = {
        ORDER_PROCESSING: start_processing,
        ORDER_SHIPPED: ship_order,
        ORDER_DELIVERED: deliver_order,
        ORDER_CANCELLED: cancel_order,
    }
    validate_status(to_status)
    handler = handlers.get(to_status)
    if handler is None:
        order = db.session.get(Order, order_id)
        raise InvalidTransition(
            "order",
            order_id,
            order.status if order else "unknown",
            to_status,
            reason="only a completed return can refund an order",
        )
    return handler(order_id, **kwargs)
