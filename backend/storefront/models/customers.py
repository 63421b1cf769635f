from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer identity and contact data.

    WHY: Orders belong to exactly one customer and are never deleted with it
    (orders.customer_id is RESTRICT), so customers are deactivated, not removed.

    password_hash is opaque here; the auth collaborator owns hashing.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(30), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    profile = db.relationship(
        "CustomerProfile",
        uselist=False,
        back_populates="customer",
        cascade="all, delete-orphan",
    )
    addresses = db.relationship(
        "Address",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy=True,
    )

    def __repr__(self) -> str:
        return f"<Customer id={self.id} email={self.email!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CustomerProfile(db.Model):
    """Optional 1:1 extension of a customer."""
    __tablename__ = "customer_profiles"
    __table_args__ = (
        db.CheckConstraint("gender IN ('male', 'female', 'other')", name="ck_customer_profiles_gender"),
    )

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="CASCADE"), primary_key=True)
    gender = db.Column(db.String(16), nullable=True)
    birth_date = db.Column(db.Date, nullable=True)
    newsletter_opt_in = db.Column(db.Boolean, nullable=False, default=False)

    customer = db.relationship("Customer", back_populates="profile")

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "gender": self.gender,
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
            "newsletter_opt_in": self.newsletter_opt_in,
        }


class Address(db.Model):
    """
    Customer address. Orders reference addresses, they do not own them:
    deleting an address nulls the order's reference (SET NULL).
    """
    __tablename__ = "addresses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    label = db.Column(db.String(50), nullable=True, default="home")
    street = db.Column(db.String(255), nullable=False)
    city = db.Column(db.String(100), nullable=False)
    state = db.Column(db.String(100), nullable=True)
    postal_code = db.Column(db.String(30), nullable=True)
    country = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(30), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    customer = db.relationship("Customer", back_populates="addresses")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "label": self.label,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }
