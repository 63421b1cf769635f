from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


# Order status
ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ORDER_REFUNDED = "refunded"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_REFUNDED,
)

# Order payment status (derived, see payment_service.derive_payment_status)
PAYMENT_STATUS_UNPAID = "unpaid"
PAYMENT_STATUS_PARTIAL = "partial"
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_REFUNDED = "refunded"

# Payment attempt status
PAYMENT_INITIATED = "initiated"
PAYMENT_SUCCESSFUL = "successful"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

# Return status
RETURN_REQUESTED = "requested"
RETURN_APPROVED = "approved"
RETURN_REJECTED = "rejected"
RETURN_COMPLETED = "completed"


class Order(db.Model):
    """
    Customer order.

    INVARIANTS (checked by order_service before insert):
    - subtotal = sum(item.line_total)
    - total = subtotal + shipping_cost + tax
    - every amount >= 0

    status is written only by lifecycle_service.
    payment_status is written only by payment_service.refresh_payment_status,
    which recomputes it from the full payment history.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("subtotal >= 0", name="ck_orders_subtotal_non_negative"),
        db.CheckConstraint("shipping_cost >= 0", name="ck_orders_shipping_non_negative"),
        db.CheckConstraint("tax >= 0", name="ck_orders_tax_non_negative"),
        db.CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        db.Index("ix_orders_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)

    # Human-readable order number (e.g., "ORD-20250923-0001")
    order_number = db.Column(db.String(50), nullable=False, unique=True)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False)

    shipping_address_id = db.Column(db.Integer, db.ForeignKey("addresses.id", ondelete="SET NULL"), nullable=True)
    billing_address_id = db.Column(db.Integer, db.ForeignKey("addresses.id", ondelete="SET NULL"), nullable=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")

    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_UNPAID, index=True)
    notes = db.Column(db.Text, nullable=True)

    # Transition audit trail
    processing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True, passive_deletes="all"))
    shipping_address = db.relationship("Address", foreign_keys=[shipping_address_id])
    billing_address = db.relationship("Address", foreign_keys=[billing_address_id])
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_number": self.order_number,
            "order_date": to_utc_z(self.order_date),
            "shipping_address_id": self.shipping_address_id,
            "billing_address_id": self.billing_address_id,
            "subtotal": money_str(self.subtotal),
            "shipping_cost": money_str(self.shipping_cost),
            "tax": money_str(self.tax),
            "total": money_str(self.total),
            "currency": self.currency,
            "status": self.status,
            "payment_status": self.payment_status,
            "notes": self.notes,
            "processing_at": to_utc_z(self.processing_at),
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """
    Immutable snapshot of a purchased product.

    sku/product_name/unit_price are copied from Product at order time.
    warehouse records which inventory row the stock came from so cancels and
    returns restock the same row.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price_non_negative"),
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        db.CheckConstraint("line_total >= 0", name="ck_order_items_line_total_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    sku = db.Column(db.String(80), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)
    warehouse = db.Column(db.String(150), nullable=False, default="default")

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "product_name": self.product_name,
            "unit_price": money_str(self.unit_price),
            "quantity": self.quantity,
            "line_total": money_str(self.line_total),
            "warehouse": self.warehouse,
        }


class Payment(db.Model):
    """
    One payment attempt against an order.

    STATUS:
        initiated -> successful | failed
        successful -> refunded        (once refunded_amount reaches amount)

    An order can carry many payments (retries, split settlement). Partial
    refunds accumulate in refunded_amount while the status stays successful.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        db.CheckConstraint("refunded_amount >= 0", name="ck_payments_refunded_non_negative"),
        db.CheckConstraint("refunded_amount <= amount", name="ck_payments_refund_within_amount"),
        db.Index("ix_payments_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_provider = db.Column(db.String(100), nullable=False)
    provider_payment_id = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    refunded_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_INITIATED)
    failure_reason = db.Column(db.String(255), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True, cascade="all, delete-orphan"))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_provider": self.payment_provider,
            "provider_payment_id": self.provider_payment_id,
            "amount": money_str(self.amount),
            "refunded_amount": money_str(self.refunded_amount),
            "currency": self.currency,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "paid_at": to_utc_z(self.paid_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class Return(db.Model):
    """
    Return request against an order.

    LIFECYCLE:
        requested -> approved -> completed
        requested -> rejected

    Completion restocks every line and refunds refund_amount in the same
    transaction as the status change.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.CheckConstraint("refund_amount >= 0", name="ck_returns_refund_non_negative"),
        db.Index("ix_returns_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    request_date = db.Column(db.DateTime(timezone=True), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default=RETURN_REQUESTED, index=True)
    refund_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    rejection_reason = db.Column(db.Text, nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("returns", lazy=True, cascade="all, delete-orphan"))
    lines = db.relationship(
        "ReturnLine",
        back_populates="return_doc",
        cascade="all, delete-orphan",
        order_by="ReturnLine.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "request_date": to_utc_z(self.request_date),
            "reason": self.reason,
            "status": self.status,
            "refund_amount": money_str(self.refund_amount),
            "rejection_reason": self.rejection_reason,
            "approved_at": to_utc_z(self.approved_at),
            "processed_at": to_utc_z(self.processed_at),
            "version_id": self.version_id,
        }


class ReturnLine(db.Model):
    """Which order item, and how many units of it, are coming back."""
    __tablename__ = "return_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    warehouse = db.Column(db.String(150), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    line_refund = db.Column(db.Numeric(12, 2), nullable=False)

    return_doc = db.relationship("Return", back_populates="lines")
    order_item = db.relationship("OrderItem", backref=db.backref("return_lines", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "order_item_id": self.order_item_id,
            "product_id": self.product_id,
            "warehouse": self.warehouse,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "line_refund": money_str(self.line_refund),
        }
