"""Product reviews (reviews.json).

A review is submitted unapproved and only shows on the product page once
an admin approves it. Approval checks whether the author actually bought
the product; a verified first review of a product earns review points.
"""

import uuid

from korelia.models.schema import SCHEMA_VERSION, now_iso
from korelia.models.user import clamp_string, normalize_email

REVIEW_STATUSES = ("pending", "approved", "all")
CONTENT_MAX = 2000


def build_review(product_id, rating, content, user=None, author_name="", author_email=""):
    """New pending review. A logged-in author is attached by id and email."""
    return {
        "id": str(uuid.uuid4()),
        "productId": str(product_id),
        "rating": rating,
        "content": clamp_string(content, CONTENT_MAX),
        "createdAt": now_iso(),
        "user_id": user.id if user else None,
        "email": user.email if user else (normalize_email(author_email) or None),
        "user_name": user.name if user else None,
        "author_name": clamp_string(author_name, 120),
        "approved": False,
        "approvedAt": None,
        "approvedBy": None,
        "verifiedPurchase": False,
        "pointsAwarded": False,
        "pointsAwardedAt": None,
        "awarded_user_id": None,
        "schema_version": SCHEMA_VERSION,
    }


def public_review(review):
    """Projection shown on the product page."""
    return {
        "id": review["id"],
        "productId": review["productId"],
        "rating": review.get("rating"),
        "content": review.get("content") or "",
        "authorName": review.get("author_name") or review.get("user_name") or "Customer",
        "createdAt": review.get("createdAt"),
        "verifiedPurchase": bool(review.get("verifiedPurchase")),
    }


def order_has_product(order, product_id, product_name=None):
    """True if the order sold the product, alone or inside a custom pack.

    Orders without a cart snapshot are matched on Stripe's line item
    names, which only works when the product name is known.
    """
    pid = str(product_id)
    items = order.get("items")
    if isinstance(items, list) and items:
        for line in items:
            if not isinstance(line, dict):
                continue
            if str(line.get("id")) == pid:
                return True
            if any(str(c.get("id")) == pid for c in line.get("components") or [] if isinstance(c, dict)):
                return True
        return False
    if not product_name:
        return False
    target = str(product_name).strip().lower()
    return any(
        str(li.get("name") or "").strip().lower() == target
        for li in order.get("stripe_line_items") or []
        if isinstance(li, dict)
    )
