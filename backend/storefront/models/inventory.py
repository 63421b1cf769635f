from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


RESERVATION_HELD = "held"
RESERVATION_COMMITTED = "committed"
RESERVATION_RELEASED = "released"


class InventoryLot(db.Model):
    """
    Stock for one product in one warehouse.

    CRITICAL: quantity is the only mutable shared resource in the engine.
    It is never assigned from Python; inventory_service changes it with a
    single conditional UPDATE so concurrent writers cannot both read a stale
    value and both succeed. The CHECK constraint is the last line of defense.
    """
    __tablename__ = "inventory"
    __table_args__ = (
        db.UniqueConstraint("product_id", "warehouse", name="ux_product_warehouse"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    warehouse = db.Column(db.String(150), nullable=False, default="default")
    last_restocked = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product", backref=db.backref("inventory_lots", lazy=True, cascade="all, delete-orphan"))

    def __repr__(self) -> str:
        return f"<InventoryLot product_id={self.product_id} warehouse={self.warehouse!r} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse": self.warehouse,
            "quantity": self.quantity,
            "last_restocked": to_utc_z(self.last_restocked),
        }


class InventoryReservation(db.Model):
    """
    A provisional decrement of one inventory row for an in-flight checkout.

    LIFECYCLE:
        held -> committed   (order persisted; decrement becomes permanent)
        held -> released    (checkout aborted; quantity returned to the row)

    The decrement itself happens when the reservation is created, so a held
    reservation already counts against stock.
    """
    __tablename__ = "inventory_reservations"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_inventory_reservations_quantity_positive"),
        db.Index("ix_inventory_reservations_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(32), nullable=False, unique=True)
    inventory_id = db.Column(db.Integer, db.ForeignKey("inventory.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse = db.Column(db.String(150), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=RESERVATION_HELD)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    committed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    lot = db.relationship("InventoryLot")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token": self.token,
            "inventory_id": self.inventory_id,
            "product_id": self.product_id,
            "warehouse": self.warehouse,
            "quantity": self.quantity,
            "status": self.status,
            "order_id": self.order_id,
            "created_at": to_utc_z(self.created_at),
            "committed_at": to_utc_z(self.committed_at),
            "released_at": to_utc_z(self.released_at),
        }
