# backend/storefront/services/catalog_service.py
"""
Catalog Service

Products, categories, images, tags and supplier links.

RULES:
- SKU is globally unique; price and cost_price are >= 0
- The category tree never contains a cycle (checked on every re-parent)
- A product has at most one primary image
- Deactivated products cannot be ordered, but existing orders keep their
  snapshot and are unaffected
"""
from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import Category, Product, ProductImage, ProductSupplier, Supplier, Tag
from ..money import non_negative_money
from . import activity_service

PRODUCT_MUTABLE_FIELDS = {"name", "short_description", "description", "price", "cost_price", "category_id", "is_active"}


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return slug or "category"


def _require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={"field": field})
    return value.strip()


# =============================================================================
# CATEGORIES
# =============================================================================

def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError(f"Category {category_id} not found", details={"category_id": category_id})
    return category


def _check_no_cycle(category_id: int | None, parent_id: int | None) -> None:
    """Walk up from parent_id; reaching category_id means the move closes a loop."""
    seen = set()
    current = parent_id
    while current is not None:
        if current == category_id:
            raise ValidationError(
                f"Category {category_id} cannot be placed under its own descendant {parent_id}",
                details={"category_id": category_id, "parent_id": parent_id, "invariant": "category tree is acyclic"},
            )
        if current in seen:
            break
        seen.add(current)
        current = get_category(current).parent_id


def create_category(name: str, parent_id: int | None = None, description: str | None = None, slug: str | None = None) -> Category:
    name = _require_text(name, "name")
    if parent_id is not None:
        get_category(parent_id)

    category = Category(name=name, slug=slug or _slugify(name), description=description, parent_id=parent_id)
    db.session.add(category)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"Category '{name}' already exists", details={"name": name})
    return category


def set_category_parent(category_id: int, parent_id: int | None) -> Category:
    category = get_category(category_id)
    if parent_id is not None:
        get_category(parent_id)
    _check_no_cycle(category_id, parent_id)

    category.parent_id = parent_id
    db.session.commit()
    return category


def category_path(category_id: int) -> list[Category]:
    """Root-first chain of categories ending at category_id."""
    path = []
    current = get_category(category_id)
    while current is not None:
        path.append(current)
        current = current.parent
    return list(reversed(path))


# =============================================================================
# PRODUCTS
# =============================================================================

def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product


def get_product_by_sku(sku: str) -> Product | None:
    return db.session.query(Product).filter_by(sku=sku).first()


def create_product(
    sku: str,
    name: str,
    price,
    *,
    category_id: int | None = None,
    cost_price=None,
    short_description: str | None = None,
    description: str | None = None,
) -> Product:
    """
    Create a product.

    Raises:
        ValidationError: missing sku/name, negative price, duplicate sku
        NotFoundError: unknown category
    """
    sku = _require_text(sku, "sku")
    name = _require_text(name, "name")
    price = non_negative_money(price, field="price")
    if cost_price is not None:
        cost_price = non_negative_money(cost_price, field="cost_price")
    if category_id is not None:
        get_category(category_id)

    if get_product_by_sku(sku) is not None:
        raise ValidationError(f"SKU '{sku}' already exists", details={"sku": sku})

    product = Product(
        sku=sku,
        name=name,
        price=price,
        cost_price=cost_price,
        category_id=category_id,
        short_description=short_description,
        description=description,
        is_active=True,
    )
    db.session.add(product)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"SKU '{sku}' already exists", details={"sku": sku})

    activity_service.emit("product", product.id, "created", {"sku": sku, "price": price})
    return product


def update_product(product_id: int, patch: dict) -> Product:
    """Apply allowed fields; price changes affect future orders only."""
    product = get_product(product_id)
    changes = {}
    for key, value in patch.items():
        if key not in PRODUCT_MUTABLE_FIELDS:
            continue
        if key in ("price", "cost_price") and value is not None:
            value = non_negative_money(value, field=key)
        if key == "name":
            value = _require_text(value, "name")
        if key == "category_id" and value is not None:
            get_category(value)
        setattr(product, key, value)
        changes[key] = value

    db.session.commit()
    if changes:
        activity_service.emit("product", product.id, "updated", changes)
    return product


def deactivate_product(product_id: int) -> Product:
    product = get_product(product_id)
    if product.is_active:
        product.is_active = False
        db.session.commit()
        activity_service.emit("product", product.id, "deactivated", {"sku": product.sku})
    return product


def list_products(*, category_id: int | None = None, active_only: bool = True) -> list[Product]:
    q = db.session.query(Product)
    if category_id is not None:
        q = q.filter_by(category_id=category_id)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(Product.name.asc(), Product.id.asc()).all()


# =============================================================================
# IMAGES & TAGS
# =============================================================================

def add_image(product_id: int, url: str, *, alt_text: str | None = None, is_primary: bool = False) -> ProductImage:
    """Append an image; making it primary demotes any existing primary image."""
    product = get_product(product_id)
    url = _require_text(url, "url")

    if is_primary:
        for image in product.images:
            image.is_primary = False
    elif not product.images:
        is_primary = True

    position = max((image.position for image in product.images), default=-1) + 1
    image = ProductImage(product_id=product.id, url=url, alt_text=alt_text, is_primary=is_primary, position=position)
    product.images.append(image)
    db.session.commit()
    return image


def set_primary_image(product_id: int, image_id: int) -> ProductImage:
    product = get_product(product_id)
    target = None
    for image in product.images:
        if image.id == image_id:
            target = image
        image.is_primary = False
    if target is None:
        raise NotFoundError(
            f"Image {image_id} does not belong to product {product_id}",
            details={"product_id": product_id, "image_id": image_id},
        )
    target.is_primary = True
    db.session.commit()
    return target


def tag_product(product_id: int, tag_name: str) -> Product:
    product = get_product(product_id)
    tag_name = _require_text(tag_name, "tag").lower()

    tag = db.session.query(Tag).filter_by(name=tag_name).first()
    if tag is None:
        tag = Tag(name=tag_name)
        db.session.add(tag)
    if tag not in product.tags:
        product.tags.append(tag)
    db.session.commit()
    return product


def untag_product(product_id: int, tag_name: str) -> Product:
    product = get_product(product_id)
    product.tags = [tag for tag in product.tags if tag.name != tag_name.strip().lower()]
    db.session.commit()
    return product


# =============================================================================
# SUPPLIERS
# =============================================================================

def create_supplier(name: str, *, contact_name: str | None = None, email: str | None = None, phone: str | None = None) -> Supplier:
    supplier = Supplier(name=_require_text(name, "name"), contact_name=contact_name, email=email, phone=phone)
    db.session.add(supplier)
    db.session.commit()
    return supplier


def link_supplier(product_id: int, supplier_id: int, *, supplier_sku: str | None = None, supplier_price=None) -> ProductSupplier:
    """Create or update the product/supplier link."""
    get_product(product_id)
    if db.session.get(Supplier, supplier_id) is None:
        raise NotFoundError(f"Supplier {supplier_id} not found", details={"supplier_id": supplier_id})
    if supplier_price is not None:
        supplier_price = non_negative_money(supplier_price, field="supplier_price")

    link = db.session.get(ProductSupplier, (product_id, supplier_id))
    if link is None:
        link = ProductSupplier(product_id=product_id, supplier_id=supplier_id)
        db.session.add(link)
    link.supplier_sku = supplier_sku
    link.supplier_price = supplier_price
    db.session.commit()
    return link
