# Overview: Service-layer operations for inventory; owns per-(product, warehouse) stock.

# backend/storefront/services/inventory_service.py

import uuid
from datetime import timedelta

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ..config import get_setting
from ..errors import ConcurrencyConflict, InsufficientStock, InventoryError, NotFoundError, ValidationError
from ..extensions import db
from ..models import InventoryLot, InventoryReservation, Product, ProductSupplier
from ..models.inventory import RESERVATION_COMMITTED, RESERVATION_HELD, RESERVATION_RELEASED
from ..time_utils import utcnow
from . import activity_service
from .concurrency import lock_for_update, run_atomic
"""
Inventory Ledger Invariants (authoritative)

Stock model:
- One InventoryLot row per (product_id, warehouse); quantity is stored.
- quantity >= 0 after every operation. The row is only ever changed by a
  conditional UPDATE (compare-and-swap), never by read-modify-write in Python.

Reservations:
- reserve() decrements immediately and records a HELD reservation. Two
  concurrent reserves on the last unit cannot both succeed: the second UPDATE
  matches zero rows and raises InsufficientStock.
- commit_reservation() makes the decrement permanent (HELD -> COMMITTED).
- release_reservation() returns the quantity (HELD -> RELEASED).
- Committing or releasing anything that is not HELD is a logic error.

Transactions:
- Public functions take commit=True to run as their own retried unit, or
  commit=False to join the caller's open transaction (order placement,
  cancellation, return completion).
- Activity events are emitted only after a commit this module performed.
"""


def _resolve_warehouse(warehouse: str | None) -> str:
    if warehouse is None:
        return get_setting("DEFAULT_WAREHOUSE")
    if not isinstance(warehouse, str) or not warehouse.strip():
        raise ValidationError("warehouse must be a non-empty string", details={"warehouse": warehouse})
    return warehouse.strip()


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})
    return quantity


def _ensure_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def _find_lot(product_id: int, warehouse: str, *, lock: bool = False) -> InventoryLot | None:
    query = db.session.query(InventoryLot).filter_by(product_id=product_id, warehouse=warehouse)
    if lock:
        query = lock_for_update(query)
    return query.first()


def _current_quantity(lot_id: int) -> int:
    return int(db.session.execute(select(InventoryLot.quantity).where(InventoryLot.id == lot_id)).scalar() or 0)


def _load_reservation(token: str) -> InventoryReservation:
    reservation = lock_for_update(
        db.session.query(InventoryReservation).filter_by(token=token)
    ).first()
    if reservation is None:
        raise NotFoundError(f"Reservation {token} not found", details={"token": token})
    return reservation


def get_quantity(product_id: int, warehouse: str | None = None) -> int:
    """Units currently available (held reservations already deducted)."""
    warehouse = _resolve_warehouse(warehouse)
    qty = db.session.execute(
        select(InventoryLot.quantity).where(
            InventoryLot.product_id == product_id,
            InventoryLot.warehouse == warehouse,
        )
    ).scalar()
    return int(qty or 0)


def get_stock_summary(product_id: int) -> dict:
    _ensure_product(product_id)

    lots = (
        db.session.query(InventoryLot)
        .filter_by(product_id=product_id)
        .order_by(InventoryLot.warehouse.asc())
        .all()
    )
    held = (
        db.session.query(InventoryReservation)
        .filter_by(product_id=product_id, status=RESERVATION_HELD)
        .all()
    )

    return {
        "product_id": product_id,
        "available": sum(lot.quantity for lot in lots),
        "held": sum(r.quantity for r in held),
        "lots": [lot.to_dict() for lot in lots],
    }


# =============================================================================
# RESERVATIONS
# =============================================================================

def reserve(
    product_id: int,
    warehouse: str | None,
    quantity: int,
    *,
    commit: bool = True,
) -> InventoryReservation:
    """
    Provisionally take `quantity` units from one inventory row.

    The decrement happens here, not at commit time. Losing a race against a
    concurrent reserve on the same row surfaces as InsufficientStock, never as
    an oversell.

    Raises:
        ValidationError: bad quantity/warehouse
        NotFoundError: unknown product
        InsufficientStock: not enough units on the row
    """
    warehouse = _resolve_warehouse(warehouse)
    quantity = _validate_quantity(quantity)

    def _op():
        _ensure_product(product_id)

        lot = _find_lot(product_id, warehouse, lock=True)
        if lot is None:
            raise InsufficientStock(product_id, warehouse, quantity, available=0)

        result = db.session.execute(
            update(InventoryLot)
            .where(InventoryLot.id == lot.id, InventoryLot.quantity >= quantity)
            .values(quantity=InventoryLot.quantity - quantity)
        )
        if result.rowcount != 1:
            raise InsufficientStock(product_id, warehouse, quantity, available=_current_quantity(lot.id))

        reservation = InventoryReservation(
            token=uuid.uuid4().hex,
            inventory_id=lot.id,
            product_id=product_id,
            warehouse=warehouse,
            quantity=quantity,
            status=RESERVATION_HELD,
            created_at=utcnow(),
        )
        db.session.add(reservation)
        db.session.flush()

        if commit:
            db.session.commit()
        return reservation

    reservation = run_atomic(_op, commit=commit)

    if commit:
        activity_service.emit(
            "inventory",
            reservation.inventory_id,
            "reserved",
            {"token": reservation.token, "product_id": product_id, "warehouse": warehouse, "quantity": quantity},
        )
    return reservation


def commit_reservation(token: str, order_id: int, *, commit: bool = True) -> InventoryReservation:
    """HELD -> COMMITTED. The stock was already taken by reserve()."""
    def _op():
        reservation = _load_reservation(token)
        if reservation.status != RESERVATION_HELD:
            raise InventoryError(
                f"Cannot commit reservation {token}: status is '{reservation.status}', must be '{RESERVATION_HELD}'",
                details={"token": token, "status": reservation.status},
            )

        reservation.status = RESERVATION_COMMITTED
        reservation.order_id = order_id
        reservation.committed_at = utcnow()
        db.session.flush()

        if commit:
            db.session.commit()
        return reservation

    reservation = run_atomic(_op, commit=commit)

    if commit:
        activity_service.emit(
            "inventory",
            reservation.inventory_id,
            "reservation_committed",
            {"token": token, "order_id": order_id, "quantity": reservation.quantity},
        )
    return reservation


def release_reservation(token: str, *, commit: bool = True) -> InventoryReservation:
    """HELD -> RELEASED and the reserved units go back to the row."""
    def _op():
        reservation = _load_reservation(token)
        if reservation.status != RESERVATION_HELD:
            raise InventoryError(
                f"Cannot release reservation {token}: status is '{reservation.status}', must be '{RESERVATION_HELD}'",
                details={"token": token, "status": reservation.status},
            )

        db.session.execute(
            update(InventoryLot)
            .where(InventoryLot.id == reservation.inventory_id)
            .values(quantity=InventoryLot.quantity + reservation.quantity)
        )
        reservation.status = RESERVATION_RELEASED
        reservation.released_at = utcnow()
        db.session.flush()

        if commit:
            db.session.commit()
        return reservation

    reservation = run_atomic(_op, commit=commit)

    if commit:
        activity_service.emit(
            "inventory",
            reservation.inventory_id,
            "reservation_released",
            {"token": token, "quantity": reservation.quantity},
        )
    return reservation


def release_all(tokens: list[str]) -> list[str]:
    """
    Compensating action for an aborted checkout.

    Every token is attempted even if an earlier one fails. Tokens that could
    not be released are logged and returned; they stay HELD and are picked up
    by release_expired_reservations().
    """
    failed = []
    for token in tokens:
        try:
            release_reservation(token)
        except Exception:
            current_app.logger.exception("Failed to release reservation %s", token)
            failed.append(token)
    return failed


# =============================================================================
# RESTOCK
# =============================================================================

def restock(
    product_id: int,
    warehouse: str | None,
    quantity: int,
    *,
    commit: bool = True,
    reason: str | None = None,
) -> InventoryLot:
    """
    Add units to a row, creating the row on first receipt.

    Used by cancellations, completed returns and supplier receipts.
    """
    warehouse = _resolve_warehouse(warehouse)
    quantity = _validate_quantity(quantity)

    def _op():
        _ensure_product(product_id)

        lot = _find_lot(product_id, warehouse, lock=True)
        if lot is None:
            lot = InventoryLot(product_id=product_id, warehouse=warehouse, quantity=0)
            db.session.add(lot)
            try:
                db.session.flush()
            except IntegrityError as exc:
                # A concurrent first receipt created the row; the retry finds it
                raise ConcurrencyConflict(
                    f"Inventory row for product {product_id} in '{warehouse}' was created concurrently",
                    details={"product_id": product_id, "warehouse": warehouse},
                ) from exc

        db.session.execute(
            update(InventoryLot)
            .where(InventoryLot.id == lot.id)
            .values(quantity=InventoryLot.quantity + quantity, last_restocked=utcnow())
        )
        db.session.flush()

        if commit:
            db.session.commit()
        return lot

    lot = run_atomic(_op, commit=commit)

    if commit:
        activity_service.emit(
            "inventory",
            lot.id,
            "restocked",
            {"product_id": product_id, "warehouse": warehouse, "quantity": quantity, "reason": reason},
        )
    return lot


def receive_from_supplier(
    product_id: int,
    supplier_id: int,
    quantity: int,
    warehouse: str | None = None,
) -> InventoryLot:
    """Supplier receipt: only linked suppliers may deliver a product."""
    link = db.session.get(ProductSupplier, (product_id, supplier_id))
    if link is None:
        raise ValidationError(
            f"Supplier {supplier_id} does not supply product {product_id}",
            details={"product_id": product_id, "supplier_id": supplier_id},
        )
    return restock(product_id, warehouse, quantity, reason=f"supplier:{supplier_id}")


# =============================================================================
# SWEEPS
# =============================================================================

def release_expired_reservations(older_than: timedelta | None = None) -> int:
    """
    Release HELD reservations left behind by crashed checkouts.

    Each reservation is released in its own unit. A reservation that a
    concurrent checkout commits first is skipped.
    """
    if older_than is None:
        older_than = timedelta(seconds=get_setting("RESERVATION_TTL_SECONDS"))
    cutoff = utcnow() - older_than

    tokens = [
        row.token
        for row in db.session.query(InventoryReservation.token)
        .filter(
            InventoryReservation.status == RESERVATION_HELD,
            InventoryReservation.created_at < cutoff,
        )
        .order_by(InventoryReservation.id.asc())
        .all()
    ]

    released = 0
    for token in tokens:
        try:
            release_reservation(token)
            released += 1
        except InventoryError:
            current_app.logger.warning("Reservation %s changed state during sweep; skipped", token)

    if released:
        current_app.logger.warning("Released %s expired reservation(s)", released)
    return released


def list_reservations(*, order_id: int | None = None, status: str | None = None, limit: int = 200):
    q = db.session.query(InventoryReservation)
    if order_id is not None:
        q = q.filter_by(order_id=order_id)
    if status is not None:
        q = q.filter_by(status=status)
    return q.order_by(InventoryReservation.id.asc()).limit(limit).all()
