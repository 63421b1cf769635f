# backend/storefront/services/customer_service.py
"""
Customer Service

Customers are deactivated, never deleted: orders reference them with RESTRICT.
Emails are unique (compared lower-cased). Password hashing belongs to the auth
collaborator; this module stores the hash it is given.
"""
from __future__ import annotations

from datetime import date

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Address, Customer, CustomerProfile

GENDERS = ("male", "female", "other")


def _normalize_email(email) -> str:
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("A valid email is required", details={"email": email})
    return email.strip().lower()


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def get_customer_by_email(email: str) -> Customer | None:
    return db.session.query(Customer).filter(func.lower(Customer.email) == _normalize_email(email)).first()


def register_customer(
    email: str,
    first_name: str,
    last_name: str,
    password_hash: str,
    phone: str | None = None,
) -> Customer:
    """
    Create a customer.

    Raises:
        ValidationError: missing names, bad email, email already registered
    """
    email = _normalize_email(email)
    for field, value in (("first_name", first_name), ("last_name", last_name), ("password_hash", password_hash)):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} is required", details={"field": field})

    if get_customer_by_email(email) is not None:
        raise ValidationError(f"Email {email} is already registered", details={"email": email})

    customer = Customer(
        email=email,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        password_hash=password_hash,
        phone=phone,
        is_active=True,
    )
    db.session.add(customer)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"Email {email} is already registered", details={"email": email})
    return customer


def deactivate_customer(customer_id: int) -> Customer:
    customer = get_customer(customer_id)
    customer.is_active = False
    db.session.commit()
    return customer


def upsert_profile(
    customer_id: int,
    *,
    gender: str | None = None,
    birth_date: date | None = None,
    newsletter_opt_in: bool | None = None,
) -> CustomerProfile:
    customer = get_customer(customer_id)
    if gender is not None and gender not in GENDERS:
        raise ValidationError(f"gender must be one of {GENDERS}", details={"gender": gender})

    profile = customer.profile
    if profile is None:
        profile = CustomerProfile(customer_id=customer.id, newsletter_opt_in=False)
        customer.profile = profile

    if gender is not None:
        profile.gender = gender
    if birth_date is not None:
        profile.birth_date = birth_date
    if newsletter_opt_in is not None:
        profile.newsletter_opt_in = bool(newsletter_opt_in)

    db.session.commit()
    return profile


def add_address(
    customer_id: int,
    street: str,
    city: str,
    country: str,
    *,
    label: str | None = "home",
    state: str | None = None,
    postal_code: str | None = None,
    phone: str | None = None,
) -> Address:
    customer = get_customer(customer_id)
    for field, value in (("street", street), ("city", city), ("country", country)):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} is required", details={"field": field})

    address = Address(
        customer_id=customer.id,
        label=label,
        street=street.strip(),
        city=city.strip(),
        state=state,
        postal_code=postal_code,
        country=country.strip(),
        phone=phone,
    )
    db.session.add(address)
    db.session.commit()
    return address


def list_addresses(customer_id: int) -> list[Address]:
    return get_customer(customer_id).addresses
