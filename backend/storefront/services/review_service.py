# backend/storefront/services/review_service.py
"""
Product reviews.

Anyone may review an active product; a purchase is not required and the
customer is optional. Reviews start unapproved and only approved ones are
listed publicly.
"""
from __future__ import annotations

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Customer, Product, Review


def submit_review(
    product_id: int,
    rating: int,
    *,
    customer_id: int | None = None,
    title: str | None = None,
    body: str | None = None,
) -> Review:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer between 1 and 5", details={"rating": rating})

    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    if not product.is_active:
        raise ValidationError(f"Product {product_id} is inactive", details={"product_id": product_id})

    if customer_id is not None and db.session.get(Customer, customer_id) is None:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})

    review = Review(
        product_id=product_id,
        customer_id=customer_id,
        rating=rating,
        title=title,
        body=body,
        approved=False,
    )
    db.session.add(review)
    db.session.commit()
    return review


def approve_review(review_id: int) -> Review:
    review = db.session.get(Review, review_id)
    if review is None:
        raise NotFoundError(f"Review {review_id} not found", details={"review_id": review_id})
    review.approved = True
    db.session.commit()
    return review


def list_product_reviews(product_id: int, *, approved_only: bool = True) -> list[Review]:
    q = db.session.query(Review).filter_by(product_id=product_id)
    if approved_only:
        q = q.filter_by(approved=True)
    return q.order_by(Review.created_at.desc(), Review.id.desc()).all()


def average_rating(product_id: int) -> float | None:
    """Mean of approved ratings, None when there are none."""
    ratings = [r.rating for r in list_product_reviews(product_id)]
    if not ratings:
        return None
    return round(sum(ratings) / len(ratings), 2)
