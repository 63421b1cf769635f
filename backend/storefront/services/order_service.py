# Overview: Order Builder; turns a cart into a persisted order without overselling.

"""
Order Builder

FLOW (place_order):
1. Validate cart, customer, addresses and products (nothing reserved yet)
2. Snapshot sku/name/price and compute totals with Decimal
3. Reserve each line through the inventory ledger (each reserve commits, so
   concurrent checkouts see the decrement immediately)
4. Persist Order + items and commit every reservation in ONE transaction
5. Emit the activity event

COMPENSATION:
Any failure after step 3 starts (insufficient stock on a later line,
client cancellation, persistence failure after retries) releases every
reservation taken by this attempt before the error reaches the caller.
No partial order is ever written.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..config import get_setting
from ..errors import CheckoutCancelled, NotFoundError, PersistenceError, ValidationError
from ..extensions import db
from ..models import Address, Customer, Order, OrderItem, Product
from ..models.orders import ORDER_PENDING, PAYMENT_STATUS_UNPAID
from ..money import ZERO, line_total, non_negative_money, to_money
from ..time_utils import order_date_stamp, utcnow
from . import activity_service, inventory_service
from .concurrency import lock_for_update, run_with_retry


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    warehouse: str | None = None


# =============================================================================
# LOOKUPS
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def get_order_by_number(order_number: str) -> Order:
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None:
        raise NotFoundError(f"Order {order_number} not found", details={"order_number": order_number})
    return order


def lock_order(order_id: int) -> Order:
    """Load an order with a row lock; the per-order serialization point."""
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def list_customer_orders(customer_id: int, *, status: str | None = None, limit: int = 100) -> list[Order]:
    q = db.session.query(Order).filter_by(customer_id=customer_id)
    if status is not None:
        q = q.filter_by(status=status)
    return q.order_by(Order.order_date.desc(), Order.id.desc()).limit(limit).all()


def get_order_summary(order_id: int) -> dict:
    order = get_order(order_id)
    return {
        "order": order.to_dict(),
        "items": [item.to_dict() for item in order.items],
        "payments": [p.to_dict() for p in order.payments],
        "returns": [r.to_dict() for r in order.returns],
    }


def check_order_totals(order: Order) -> None:
    """
    Assert the money invariants of an order.

    Raises ValidationError naming the broken invariant.
    """
    for item in order.items:
        expected = line_total(item.unit_price, item.quantity)
        if to_money(item.line_total) != expected:
            raise ValidationError(
                "line_total != unit_price * quantity",
                details={"order_item_id": item.id, "invariant": "line_total = unit_price * quantity"},
            )

    subtotal = sum((to_money(item.line_total) for item in order.items), ZERO)
    if to_money(order.subtotal) != subtotal:
        raise ValidationError(
            "subtotal != sum(line_total)",
            details={"order_id": order.id, "invariant": "subtotal = sum(line_total)"},
        )

    expected_total = to_money(order.subtotal) + to_money(order.shipping_cost) + to_money(order.tax)
    if to_money(order.total) != expected_total:
        raise ValidationError(
            "total != subtotal + shipping_cost + tax",
            details={"order_id": order.id, "invariant": "total = subtotal + shipping_cost + tax"},
        )


# =============================================================================
# VALIDATION
# =============================================================================

def _normalize_cart(cart) -> list[CartLine]:
    if not cart:
        raise ValidationError("Cart is empty")

    merged: dict[tuple[int, str], int] = {}
    for raw in cart:
        if isinstance(raw, CartLine):
            line = raw
        elif isinstance(raw, dict):
            line = CartLine(
                product_id=raw.get("product_id"),
                quantity=raw.get("quantity"),
                warehouse=raw.get("warehouse"),
            )
        else:
            raise ValidationError("Cart lines must be CartLine or dict", details={"line": repr(raw)})

        if isinstance(line.product_id, bool) or not isinstance(line.product_id, int):
            raise ValidationError("product_id must be an integer", details={"product_id": line.product_id})
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                details={"product_id": line.product_id, "quantity": line.quantity},
            )

        warehouse = line.warehouse or get_setting("DEFAULT_WAREHOUSE")
        key = (line.product_id, warehouse)
        merged[key] = merged.get(key, 0) + line.quantity

    return [CartLine(product_id=pid, quantity=qty, warehouse=wh) for (pid, wh), qty in merged.items()]


def _validate_customer(customer_id: int, shipping_address_id: int | None, billing_address_id: int | None) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    if not customer.is_active:
        raise ValidationError(f"Customer {customer_id} is inactive", details={"customer_id": customer_id})

    for field, address_id in (("shipping_address_id", shipping_address_id), ("billing_address_id", billing_address_id)):
        if address_id is None:
            continue
        address = db.session.get(Address, address_id)
        if address is None or address.customer_id != customer_id:
            raise ValidationError(
                f"{field} {address_id} does not belong to customer {customer_id}",
                details={"field": field, "address_id": address_id, "customer_id": customer_id},
            )
    return customer


def _snapshot_lines(lines: list[CartLine]) -> list[dict]:
    """Freeze product name/sku/price for each line before anything is reserved."""
    product_ids = {line.product_id for line in lines}
    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()
    }

    snapshot = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            raise NotFoundError(f"Product {line.product_id} not found", details={"product_id": line.product_id})
        if not product.is_active:
            raise ValidationError(f"Product {line.product_id} is inactive", details={"product_id": line.product_id})

        unit_price = non_negative_money(product.price, field="unit_price")
        snapshot.append({
            "product_id": product.id,
            "sku": product.sku,
            "product_name": product.name,
            "unit_price": unit_price,
            "quantity": line.quantity,
            "line_total": line_total(unit_price, line.quantity),
            "warehouse": line.warehouse,
        })
    return snapshot


def compute_totals(line_totals, shipping_cost, tax) -> dict:
    """subtotal = sum(line_total); total = subtotal + shipping_cost + tax."""
    shipping_cost = non_negative_money(shipping_cost, field="shipping_cost")
    tax = non_negative_money(tax, field="tax")
    subtotal = sum((to_money(v) for v in line_totals), ZERO)
    return {
        "subtotal": subtotal,
        "shipping_cost": shipping_cost,
        "tax": tax,
        "total": subtotal + shipping_cost + tax,
    }


# =============================================================================
# ORDER NUMBERS
# =============================================================================

def _next_order_number(attempt: int = 0) -> str:
    """
    Next date-prefixed order number, e.g. ORD-20250923-0001.

    The sequence is read from the highest number already issued today,
    compared by length first so that -10000 sorts above -9999. A
    concurrent writer can take the same value, which the unique constraint
    catches and the caller resolves by asking again with attempt + 1.
    """
    prefix = f"{get_setting('ORDER_NUMBER_PREFIX')}-{order_date_stamp()}-"
    last = db.session.execute(
        select(Order.order_number)
        .where(Order.order_number.like(f"{prefix}%"))
        .order_by(func.length(Order.order_number).desc(), Order.order_number.desc())
        .limit(1)
    ).scalar()

    seq = 0
    if last:
        try:
            seq = int(last[len(prefix):])
        except ValueError:
            seq = 0
    return f"{prefix}{seq + 1 + attempt:04d}"


def _is_order_number_collision(exc: IntegrityError) -> bool:
    return "order_number" in str(exc.orig).lower()


def _insert_order(build) -> Order:
    """Flush a new order, regenerating the number on unique collisions."""
    attempts = get_setting("ORDER_NUMBER_ATTEMPTS")
    for attempt in range(attempts):
        order = build(_next_order_number(attempt))
        db.session.add(order)
        try:
            db.session.flush()
            return order
        except IntegrityError as exc:
            db.session.rollback()
            if not _is_order_number_collision(exc):
                raise PersistenceError(
                    "Order insert violated a constraint",
                    details={"cause": str(exc.orig)},
                ) from exc
            current_app.logger.warning("Order number collision on attempt %s; regenerating", attempt + 1)

    raise PersistenceError(
        "Could not allocate a unique order number",
        details={"attempts": attempts},
    )


# =============================================================================
# PLACE ORDER
# =============================================================================

def _check_cancelled(cancel_event) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CheckoutCancelled("Checkout cancelled by client before commit")


def place_order(
    customer_id: int,
    cart,
    shipping_address_id: int | None = None,
    billing_address_id: int | None = None,
    *,
    shipping_cost=Decimal("0"),
    tax=Decimal("0"),
    currency: str | None = None,
    notes: str | None = None,
    cancel_event=None,
) -> Order:
    """
    Validate, reserve, price and persist an order atomically.

    Args:
        customer_id: ordering customer
        cart: iterable of CartLine or {"product_id", "quantity", "warehouse"?}
        shipping_address_id / billing_address_id: customer's addresses
        shipping_cost / tax: supplied by the pricing/tax collaborator
        cancel_event: optional object with is_set(); checked between steps

    Raises:
        ValidationError / NotFoundError: bad input
        InsufficientStock: a line could not be reserved (all others released)
        CheckoutCancelled: cancel_event was set before commit
        PersistenceError: storage kept failing after retries
    """
    lines = _normalize_cart(cart)
    _validate_customer(customer_id, shipping_address_id, billing_address_id)
    snapshot = _snapshot_lines(lines)
    totals = compute_totals([line["line_total"] for line in snapshot], shipping_cost, tax)
    currency = (currency or get_setting("DEFAULT_CURRENCY")).upper()

    def _build(order_number: str) -> Order:
        order = Order(
            customer_id=customer_id,
            order_number=order_number,
            order_date=utcnow(),
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
            currency=currency,
            status=ORDER_PENDING,
            payment_status=PAYMENT_STATUS_UNPAID,
            notes=notes,
            **totals,
        )
        for line in snapshot:
            order.items.append(OrderItem(**line))
        return order

    tokens: list[str] = []

    def _persist() -> Order:
        order = _insert_order(_build)
        check_order_totals(order)
        for token in tokens:
            inventory_service.commit_reservation(token, order.id, commit=False)
        db.session.commit()
        return order

    try:
        for line in snapshot:
            _check_cancelled(cancel_event)
            reservation = inventory_service.reserve(line["product_id"], line["warehouse"], line["quantity"])
            tokens.append(reservation.token)

        _check_cancelled(cancel_event)
        order = run_with_retry(_persist)
    except Exception:
        db.session.rollback()
        failed = inventory_service.release_all(tokens)
        if failed:
            current_app.logger.warning(
                "Checkout for customer %s left %s reservation(s) held for the expiry sweep",
                customer_id,
                len(failed),
            )
        raise

    activity_service.emit(
        "order",
        order.id,
        "created",
        {
            "order_number": order.order_number,
            "customer_id": customer_id,
            "total": totals["total"],
            "items": [{"product_id": line["product_id"], "quantity": line["quantity"]} for line in snapshot],
        },
    )
    return order
