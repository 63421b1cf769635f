"""
Return Processing Service

WHY: A return drives the reverse flow of both stock and money. The critical
rule is that a COMPLETED return always has its restock and refund applied:
both side effects commit in the same transaction as the status change, so a
half-processed return can never be observed.

DESIGN PRINCIPLES:
- Returns reference the original order and its line items
- Only delivered orders (or shipped ones, when ALLOW_RETURNS_ON_SHIPPED is on)
  accept returns
- A line item can never be returned more times than it was bought, counting
  every non-rejected return
- Refund = sum(unit_price * quantity) over return lines, using the price
  snapshot on the order item
- Order status is left alone unless REFUND_ORDER_ON_FULL_RETURN is on and every
  item has been fully returned

LIFECYCLE:
1. Create return (requested)
2. Approve / reject
3. Complete (approved -> completed): restock, refund, recompute payment status
"""

from __future__ import annotations

from ..config import get_setting
from ..errors import InvalidTransition, NotFoundError, ReturnError, ValidationError
from ..extensions import db
from ..models import OrderItem, Return, ReturnLine
from ..models.orders import (
    ORDER_DELIVERED,
    ORDER_SHIPPED,
    RETURN_APPROVED,
    RETURN_COMPLETED,
    RETURN_REJECTED,
    RETURN_REQUESTED,
)
from ..money import ZERO, line_total, to_money
from ..time_utils import utcnow
from . import activity_service, inventory_service, lifecycle_service, payment_service
from .concurrency import lock_for_update, run_with_retry
from .order_service import lock_order


# =============================================================================
# HELPERS
# =============================================================================

def _returnable_statuses() -> tuple[str, ...]:
    if get_setting("ALLOW_RETURNS_ON_SHIPPED"):
        return (ORDER_DELIVERED, ORDER_SHIPPED)
    return (ORDER_DELIVERED,)


def _lock_return(return_id: int) -> Return:
    return_doc = lock_for_update(db.session.query(Return).filter_by(id=return_id)).first()
    if return_doc is None:
        raise NotFoundError(f"Return {return_id} not found", details={"return_id": return_id})
    return return_doc


def returned_quantity(order_item_id: int, *, exclude_return_id: int | None = None) -> int:
    """Units of an order item claimed by requested/approved/completed returns."""
    q = (
        db.session.query(ReturnLine)
        .join(Return)
        .filter(
            ReturnLine.order_item_id == order_item_id,
            Return.status != RETURN_REJECTED,
        )
    )
    if exclude_return_id is not None:
        q = q.filter(Return.id != exclude_return_id)
    return sum(line.quantity for line in q.all())


def _normalize_lines(lines) -> list[tuple[int, int]]:
    if not lines:
        raise ValidationError("A return needs at least one line")

    merged: dict[int, int] = {}
    for raw in lines:
        if isinstance(raw, dict):
            item_id, qty = raw.get("order_item_id"), raw.get("quantity")
        else:
            item_id, qty = raw
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise ValidationError("order_item_id must be an integer", details={"order_item_id": item_id})
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise ValidationError("Return quantity must be a positive integer", details={"order_item_id": item_id, "quantity": qty})
        merged[item_id] = merged.get(item_id, 0) + qty
    return list(merged.items())


def _transition_return(return_doc: Return, to_status: str) -> str:
    allowed = {
        (RETURN_REQUESTED, RETURN_APPROVED),
        (RETURN_REQUESTED, RETURN_REJECTED),
        (RETURN_APPROVED, RETURN_COMPLETED),
    }
    from_status = return_doc.status
    if (from_status, to_status) not in allowed:
        raise InvalidTransition("return", return_doc.id, from_status, to_status)
    return_doc.status = to_status
    return from_status


# =============================================================================
# CREATION
# =============================================================================

def create_return(order_id: int, lines, reason: str | None = None) -> Return:
    """
    Create a return in status 'requested'.

    Args:
        order_id: order being returned from
        lines: iterable of (order_item_id, quantity) or dicts with those keys
        reason: customer's explanation

    Raises:
        ReturnError: order not returnable, item not on order, quantity exceeds
            what is left to return
    """
    normalized = _normalize_lines(lines)

    def _op():
        order = lock_order(order_id)
        if order.status not in _returnable_statuses():
            raise ReturnError(
                f"Cannot return order {order_id} with status '{order.status}'",
                details={"order_id": order_id, "status": order.status, "allowed": list(_returnable_statuses())},
            )

        return_doc = Return(
            order_id=order_id,
            request_date=utcnow(),
            reason=reason,
            status=RETURN_REQUESTED,
        )

        refund = ZERO
        for item_id, qty in normalized:
            item = db.session.get(OrderItem, item_id)
            if item is None or item.order_id != order_id:
                raise ReturnError(
                    f"Order item {item_id} does not belong to order {order_id}",
                    details={"order_id": order_id, "order_item_id": item_id},
                )

            already = returned_quantity(item_id)
            if already + qty > item.quantity:
                raise ReturnError(
                    f"Cannot return {qty} units of item {item_id}. Purchased: {item.quantity}, "
                    f"already returned: {already}, available: {item.quantity - already}",
                    details={"order_item_id": item_id, "requested": qty, "available": item.quantity - already},
                )

            line_refund = line_total(item.unit_price, qty)
            return_doc.lines.append(ReturnLine(
                order_item_id=item_id,
                product_id=item.product_id,
                warehouse=item.warehouse,
                quantity=qty,
                unit_price=to_money(item.unit_price),
                line_refund=line_refund,
            ))
            refund += line_refund

        return_doc.refund_amount = refund
        db.session.add(return_doc)
        db.session.flush()
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)

    activity_service.emit(
        "return",
        return_doc.id,
        "requested",
        {"order_id": order_id, "refund_amount": to_money(return_doc.refund_amount), "reason": reason},
    )
    return return_doc


# =============================================================================
# APPROVAL / REJECTION
# =============================================================================

def approve_return(return_id: int) -> Return:
    """requested -> approved."""
    def _op():
        return_doc = _lock_return(return_id)
        _transition_return(return_doc, RETURN_APPROVED)
        return_doc.approved_at = utcnow()
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    activity_service.emit("return", return_doc.id, "approved", {"order_id": return_doc.order_id})
    return return_doc


def reject_return(return_id: int, rejection_reason: str | None = None) -> Return:
    """requested -> rejected (terminal). Rejected lines free their quantity again."""
    def _op():
        return_doc = _lock_return(return_id)
        _transition_return(return_doc, RETURN_REJECTED)
        return_doc.rejection_reason = rejection_reason
        return_doc.processed_at = utcnow()
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    activity_service.emit(
        "return", return_doc.id, "rejected", {"order_id": return_doc.order_id, "reason": rejection_reason}
    )
    return return_doc


# =============================================================================
# COMPLETION (RESTOCK & REFUND)
# =============================================================================

def _order_fully_returned(order) -> bool:
    completed_by_item: dict[int, int] = {}
    rows = (
        db.session.query(ReturnLine)
        .join(Return)
        .filter(Return.order_id == order.id, Return.status == RETURN_COMPLETED)
        .all()
    )
    for line in rows:
        completed_by_item[line.order_item_id] = completed_by_item.get(line.order_item_id, 0) + line.quantity
    return all(completed_by_item.get(item.id, 0) >= item.quantity for item in order.items)


def complete_return(return_id: int) -> Return:
    """
    approved -> completed.

    In ONE transaction:
    1. restock each line into the warehouse it shipped from
    2. refund refund_amount against the order's settled payments
    3. recompute the order's payment_status
    4. optionally move the order to 'refunded' (REFUND_ORDER_ON_FULL_RETURN)

    Any failure rolls everything back and the return stays 'approved'.
    """
    def _op():
        peek = db.session.get(Return, return_id)
        if peek is None:
            raise NotFoundError(f"Return {return_id} not found", details={"return_id": return_id})

        # Lock order first, then return: same order as every other order writer
        order = lock_order(peek.order_id)
        return_doc = _lock_return(return_id)
        _transition_return(return_doc, RETURN_COMPLETED)

        for line in return_doc.lines:
            inventory_service.restock(
                line.product_id,
                line.warehouse,
                line.quantity,
                commit=False,
                reason=f"return:{return_doc.id}",
            )

        refund = to_money(return_doc.refund_amount)
        if refund > ZERO:
            payment_service.refund_amount(order.id, refund, commit=False, reason=f"return:{return_doc.id}")
        else:
            payment_service.refresh_payment_status(order)

        return_doc.processed_at = utcnow()

        order_refunded = False
        db.session.flush()
        if get_setting("REFUND_ORDER_ON_FULL_RETURN") and _order_fully_returned(order):
            lifecycle_service.mark_refunded(order)
            order_refunded = True

        db.session.commit()
        return return_doc, order_refunded

    return_doc, order_refunded = run_with_retry(_op)

    activity_service.emit(
        "return",
        return_doc.id,
        "completed",
        {
            "order_id": return_doc.order_id,
            "refund_amount": to_money(return_doc.refund_amount),
            "restocked": [
                {"product_id": line.product_id, "warehouse": line.warehouse, "quantity": line.quantity}
                for line in return_doc.lines
            ],
        },
    )
    if order_refunded:
        activity_service.emit("order", return_doc.order_id, "status:refunded", {"return_id": return_doc.id})
    return return_doc


# =============================================================================
# QUERIES
# =============================================================================

def get_return(return_id: int) -> Return:
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise NotFoundError(f"Return {return_id} not found", details={"return_id": return_id})
    return return_doc


def get_order_returns(order_id: int) -> list[Return]:
    return (
        db.session.query(Return)
        .filter_by(order_id=order_id)
        .order_by(Return.request_date.desc(), Return.id.desc())
        .all()
    )


def has_open_return(order_id: int) -> bool:
    return lifecycle_service.has_open_return(order_id)


def get_return_summary(return_id: int) -> dict:
    return_doc = get_return(return_id)
    return {
        "return": return_doc.to_dict(),
        "lines": [line.to_dict() for line in return_doc.lines],
        "order": return_doc.order.to_dict() if return_doc.order else None,
        "refund_amount": str(to_money(return_doc.refund_amount)),
    }
