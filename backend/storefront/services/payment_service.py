# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Coordinator

WHY: Orders are paid through one or more payment attempts (retries, split
settlement). The coordinator records attempts, applies provider results and
issues refunds, and is the only writer of Order.payment_status.

DESIGN PRINCIPLES:
- Payments are separate from orders (many-to-one relationship)
- Payment status: initiated -> successful | failed; successful -> refunded
- Order.payment_status is DERIVED: recomputed from the full payment history
  on every change, never set independently
- Overpayment is rejected up front: net successful + initiated + new amount
  <= total, so an attempt still waiting on its provider reserves its share
- Provider calls happen outside the order transaction, except refunds, which
  must be atomic with return completion
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..config import get_setting
from ..errors import InvalidTransition, NotFoundError, OverpaymentError, PaymentError, ValidationError
from ..extensions import db
from ..models import Order, Payment
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_REFUNDED,
    PAYMENT_FAILED,
    PAYMENT_INITIATED,
    PAYMENT_REFUNDED,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_UNPAID,
    PAYMENT_SUCCESSFUL,
)
from ..money import ZERO, to_money
from ..time_utils import utcnow
from . import activity_service
from .concurrency import lock_for_update, run_atomic, run_with_retry
from .gateways import GatewayDeclined, GatewayTimeout, get_gateway
from .order_service import lock_order


# Attempt results accepted by mark_result()
RESULT_STATUSES = (PAYMENT_SUCCESSFUL, PAYMENT_FAILED)

# Payments whose money was actually collected at some point
SETTLED_STATUSES = (PAYMENT_SUCCESSFUL, PAYMENT_REFUNDED)


# =============================================================================
# DERIVATION (pure)
# =============================================================================

def net_paid(payments: Iterable) -> Decimal:
    """Collected minus refunded, over settled payments."""
    total = ZERO
    for p in payments:
        if p.status in SETTLED_STATUSES:
            total += to_money(p.amount) - to_money(p.refunded_amount or 0)
    return total


def derive_payment_status(order_total, payments: Iterable) -> str:
    """
    Order payment status as a pure function of the payment history.

    - refunded: nothing left collected and at least one refund happened
    - unpaid:   nothing collected
    - partial:  0 < collected < total
    - paid:     collected >= total
    """
    payments = list(payments)
    total = to_money(order_total)
    paid = net_paid(payments)
    any_refund = any(to_money(p.refunded_amount or 0) > ZERO for p in payments)

    if paid <= ZERO:
        return PAYMENT_STATUS_REFUNDED if any_refund else PAYMENT_STATUS_UNPAID
    if paid < total:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_PAID


def get_order_payments(order_id: int, *, include_failed: bool = True) -> list[Payment]:
    query = db.session.query(Payment).filter_by(order_id=order_id)
    if not include_failed:
        query = query.filter(Payment.status != PAYMENT_FAILED)
    return query.order_by(Payment.created_at.asc(), Payment.id.asc()).all()


def refresh_payment_status(order: Order) -> str:
    """
    Recompute and store Order.payment_status inside the caller's transaction.

    WHY: payment_status must never drift from the payment rows. This is the
    only place it is written.
    """
    db.session.flush()
    status = derive_payment_status(order.total, get_order_payments(order.id))
    order.payment_status = status
    return status


def pending_amount(payments: Iterable) -> Decimal:
    """Money still in flight: attempts with no provider result yet."""
    return sum((to_money(p.amount) for p in payments if p.status == PAYMENT_INITIATED), ZERO)


def _check_overpayment(
    order: Order,
    amount: Decimal,
    *,
    exclude_payment_id: int | None = None,
    include_pending: bool = False,
) -> None:
    payments = [p for p in get_order_payments(order.id) if p.id != exclude_payment_id]
    committed = net_paid(payments)
    if include_pending:
        committed += pending_amount(payments)
    if committed + amount > to_money(order.total):
        raise OverpaymentError(order.id, to_money(order.total), committed, amount)


# =============================================================================
# ATTEMPTS & RESULTS
# =============================================================================

def record_attempt(
    order_id: int,
    provider: str,
    amount,
    currency: str | None = None,
) -> Payment:
    """
    Record a new payment attempt in status 'initiated'.

    Raises:
        ValidationError: bad amount, unknown provider, currency mismatch
        NotFoundError: unknown order
        PaymentError: order cannot take payments (cancelled/refunded)
        OverpaymentError: settled + in-flight + amount would exceed order total
    """
    amount = to_money(amount)
    if amount <= ZERO:
        raise ValidationError("Payment amount must be positive", details={"amount": str(amount)})
    gateway = get_gateway(provider)

    def _op():
        order = lock_order(order_id)

        if order.status in (ORDER_CANCELLED, ORDER_REFUNDED):
            raise PaymentError(
                f"Cannot add payment to a {order.status} order",
                details={"order_id": order_id, "status": order.status},
            )

        pay_currency = (currency or order.currency).upper()
        if pay_currency != order.currency:
            raise ValidationError(
                f"Payment currency {pay_currency} does not match order currency {order.currency}",
                details={"order_id": order_id, "currency": pay_currency},
            )

        # Initiated attempts may still settle, so they count against the total
        _check_overpayment(order, amount, include_pending=True)

        payment = Payment(
            order_id=order_id,
            payment_provider=gateway.name,
            amount=amount,
            refunded_amount=ZERO,
            currency=pay_currency,
            status=PAYMENT_INITIATED,
            created_at=utcnow(),
        )
        db.session.add(payment)
        db.session.flush()

        db.session.commit()
        return payment

    payment = run_with_retry(_op)

    activity_service.emit(
        "payment",
        payment.id,
        "initiated",
        {"order_id": order_id, "provider": payment.payment_provider, "amount": amount},
    )
    return payment


def mark_result(
    payment_id: int,
    status: str,
    provider_payment_id: str | None = None,
    failure_reason: str | None = None,
) -> Payment:
    """
    Apply a provider result to an initiated payment.

    A repeated delivery of the same result (same status and provider id) is
    accepted as a no-op so provider callbacks can be retried safely.
    """
    if status not in RESULT_STATUSES:
        raise ValidationError(
            f"Invalid payment result '{status}'. Must be one of {list(RESULT_STATUSES)}",
            details={"payment_id": payment_id, "status": status},
        )

    def _op():
        peek = db.session.get(Payment, payment_id)
        if peek is None:
            raise NotFoundError(f"Payment {payment_id} not found", details={"payment_id": payment_id})

        # Order first, then payment: same lock order as refunds and returns
        order = lock_order(peek.order_id)
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()

        if payment.status == status and payment.provider_payment_id == provider_payment_id:
            return payment, False

        if payment.status != PAYMENT_INITIATED:
            raise InvalidTransition("payment", payment_id, payment.status, status)

        if status == PAYMENT_SUCCESSFUL:
            _check_overpayment(order, to_money(payment.amount), exclude_payment_id=payment.id)
            payment.status = PAYMENT_SUCCESSFUL
            payment.paid_at = utcnow()
        else:
            payment.status = PAYMENT_FAILED
            payment.failure_reason = failure_reason

        if provider_payment_id is not None:
            payment.provider_payment_id = provider_payment_id

        refresh_payment_status(order)
        db.session.commit()
        return payment, True

    payment, changed = run_with_retry(_op)

    if changed:
        activity_service.emit(
            "payment",
            payment.id,
            status,
            {
                "order_id": payment.order_id,
                "provider_payment_id": provider_payment_id,
                "failure_reason": failure_reason,
            },
        )
    return payment


def submit_payment(order_id: int, provider: str, amount, currency: str | None = None) -> Payment:
    """
    Record an attempt and charge it through the provider's gateway.

    - gateway returns an id   -> payment successful
    - gateway returns None    -> stays initiated, result arrives via mark_result
    - GatewayTimeout          -> stays initiated until a result or the sweep
    - GatewayDeclined         -> payment failed
    """
    payment = record_attempt(order_id, provider, amount, currency)
    gateway = get_gateway(payment.payment_provider)

    try:
        provider_payment_id = gateway.charge(order_id, to_money(payment.amount), payment.currency)
    except GatewayTimeout:
        current_app.logger.warning(
            "Gateway %s timed out for payment %s; leaving it initiated", gateway.name, payment.id
        )
        return payment
    except GatewayDeclined as exc:
        return mark_result(payment.id, PAYMENT_FAILED, failure_reason=exc.message)

    if provider_payment_id is None:
        return payment
    return mark_result(payment.id, PAYMENT_SUCCESSFUL, provider_payment_id=provider_payment_id)


# =============================================================================
# REFUNDS
# =============================================================================

def refund_amount(order_id: int, amount, *, commit: bool = True, reason: str | None = None) -> list[Payment]:
    """
    Refund `amount` against the order's settled payments, newest first.

    Each touched payment accumulates refunded_amount; once it reaches the
    payment amount the payment becomes 'refunded' (one-way). The gateway is
    asked to refund each slice.

    Returns the payments that were touched.
    """
    amount = to_money(amount)
    if amount <= ZERO:
        raise ValidationError("Refund amount must be positive", details={"amount": str(amount)})

    def _op():
        order = lock_order(order_id)

        candidates = (
            lock_for_update(
                db.session.query(Payment).filter_by(order_id=order_id, status=PAYMENT_SUCCESSFUL)
            )
            .order_by(Payment.paid_at.desc(), Payment.id.desc())
            .all()
        )

        refundable = sum((to_money(p.amount) - to_money(p.refunded_amount) for p in candidates), ZERO)
        if amount > refundable:
            raise PaymentError(
                f"Refund of {amount} exceeds refundable balance {refundable} on order {order_id}",
                details={"order_id": order_id, "amount": str(amount), "refundable": str(refundable)},
            )

        remaining = amount
        touched = []
        now = utcnow()
        for payment in candidates:
            if remaining <= ZERO:
                break
            available = to_money(payment.amount) - to_money(payment.refunded_amount)
            if available <= ZERO:
                continue
            slice_amount = min(available, remaining)

            get_gateway(payment.payment_provider).refund(payment.provider_payment_id, slice_amount, payment.currency)

            payment.refunded_amount = to_money(payment.refunded_amount) + slice_amount
            if to_money(payment.refunded_amount) >= to_money(payment.amount):
                payment.status = PAYMENT_REFUNDED
                payment.refunded_at = now
            remaining -= slice_amount
            touched.append(payment)

        refresh_payment_status(order)

        if commit:
            db.session.commit()
        return touched

    touched = run_atomic(_op, commit=commit)

    if commit:
        activity_service.emit(
            "order",
            order_id,
            "refunded_amount",
            {"amount": amount, "payment_ids": [p.id for p in touched], "reason": reason},
        )
    return touched


# =============================================================================
# RECONCILIATION
# =============================================================================

def expire_stale_payments(older_than: timedelta | None = None) -> int:
    """
    Mark 'initiated' payments older than the timeout policy as failed.

    Payments that receive a real result while the sweep runs are skipped.
    """
    if older_than is None:
        older_than = timedelta(seconds=get_setting("PAYMENT_TIMEOUT_SECONDS"))
    cutoff = utcnow() - older_than

    stale_ids = [
        row.id
        for row in db.session.query(Payment.id)
        .filter(Payment.status == PAYMENT_INITIATED, Payment.created_at < cutoff)
        .order_by(Payment.id.asc())
        .all()
    ]

    expired = 0
    for payment_id in stale_ids:
        try:
            mark_result(payment_id, PAYMENT_FAILED, failure_reason="timeout")
            expired += 1
        except InvalidTransition:
            current_app.logger.warning("Payment %s settled during sweep; skipped", payment_id)

    if expired:
        current_app.logger.warning("Expired %s stale payment(s)", expired)
    return expired


# =============================================================================
# REPORTING
# =============================================================================

def get_payment_summary(order_id: int) -> dict:
    """
    Payment summary for an order.

    Returns:
        - total: order total
        - paid: collected minus refunded
        - remaining: amount still owed (never negative)
        - refunded: total refunded
        - payment_status: stored value (always equal to the derived one)
        - payments: payment records
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})

    payments = get_order_payments(order_id)
    paid = net_paid(payments)
    total = to_money(order.total)

    return {
        "order_id": order_id,
        "total": str(total),
        "paid": str(paid),
        "remaining": str(max(total - paid, ZERO)),
        "refunded": str(sum((to_money(p.refunded_amount) for p in payments), ZERO)),
        "payment_status": order.payment_status,
        "payments": [p.to_dict() for p in payments],
    }
