# Overview: Shared error taxonomy for the fulfillment engine.

"""
Every engine failure is a StorefrontError carrying a human message and a
`details` dict (entity ids, the offending invariant) so callers can choose
between retry and abort without parsing strings.

Retryable: PersistenceError, ConcurrencyConflict.
Not retryable: everything else.
"""

from __future__ import annotations


class StorefrontError(Exception):
    """Base class for engine errors."""
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(StorefrontError, ValueError):
    """Malformed input. Never retried."""


class NotFoundError(ValidationError):
    """Referenced entity does not exist."""


class InsufficientStock(StorefrontError):
    """A reservation would drive an inventory row below zero."""

    def __init__(self, product_id: int, warehouse: str, requested: int, available: int | None = None):
        super().__init__(
            f"Insufficient stock for product {product_id} in warehouse '{warehouse}': "
            f"requested {requested}, available {available if available is not None else 0}",
            details={
                "product_id": product_id,
                "warehouse": warehouse,
                "requested": requested,
                "available": available,
                "invariant": "inventory.quantity >= 0",
            },
        )
        self.product_id = product_id
        self.warehouse = warehouse
        self.requested = requested
        self.available = available


class InventoryError(StorefrontError):
    """Ledger logic error, e.g. committing or releasing a reservation twice."""


class InvalidTransition(StorefrontError, ValueError):
    """A status change that the state machine does not allow."""

    def __init__(self, entity_type: str, entity_id: int | None, from_status: str, to_status: str, reason: str | None = None):
        message = f"Cannot move {entity_type} {entity_id} from '{from_status}' to '{to_status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
            },
        )
        self.from_status = from_status
        self.to_status = to_status


class OverpaymentError(StorefrontError):
    """Successful payments would exceed the order total."""

    def __init__(self, order_id: int, total, paid, attempted):
        super().__init__(
            f"Payment of {attempted} on order {order_id} would exceed total {total} (already paid {paid})",
            details={
                "order_id": order_id,
                "total": str(total),
                "paid": str(paid),
                "attempted": str(attempted),
                "invariant": "sum(successful payments) <= order.total",
            },
        )


class PaymentError(StorefrontError):
    """Payment rule violation other than overpayment."""


class ReturnError(StorefrontError):
    """Return rule violation."""


class PersistenceError(StorefrontError):
    """Transient storage failure after retries were exhausted."""
    retryable = True


class ConcurrencyConflict(StorefrontError):
    """Lost an optimistic-lock race; retry with backoff."""
    retryable = True


class CheckoutCancelled(StorefrontError):
    """Client cancelled a checkout before the order was committed."""
