"""Review service — product review submission and moderation.

Responsible for:
- Storing submitted reviews as pending (reviews.json)
- Listing approved reviews for a product page
- The admin moderation queue: list, approve, delete
- On approval: the verified-purchase check, the once-per-product points
  credit and the thank-you email
"""

import logging

from korelia.models.order import is_paid, order_matches_customer
from korelia.models.review import REVIEW_STATUSES, build_review, order_has_product
from korelia.models.schema import now_iso
from korelia.models.user import is_email
from korelia.services.email_service import send_review_thanks
from korelia.services.json_store import ORDERS, REVIEWS
from korelia.services.rewards_service import REVIEW_BONUS, award_approved_review

logger = logging.getLogger(__name__)

PUBLIC_LIMIT_MAX = 200


def _newest_first(reviews):
    return sorted(reviews, key=lambda r: r.get("createdAt") or "", reverse=True)


def submit_review(store, catalog, data, user=None):
    """Validate and store a pending review.

    Raises ValueError on bad input and LookupError for an unknown product.
    Returns the stored review.
    """
    product_id = data.get("productId")
    if not product_id:
        raise ValueError("productId is required")
    if catalog.get(product_id) is None:
        raise LookupError("Product not found")

    rating = data.get("rating")
    if isinstance(rating, bool):
        rating = None
    try:
        rating = float(rating)
    except (TypeError, ValueError):
        raise ValueError("rating must be a number from 1 to 5")
    if not 1 <= rating <= 5:
        raise ValueError("rating must be a number from 1 to 5")
    rating = int(rating) if rating.is_integer() else rating

    content = str(data.get("content") or "").strip()
    if not content:
        raise ValueError("content is required")

    author_email = data.get("authorEmail") or ""
    if user is None and author_email and not is_email(author_email):
        raise ValueError("Invalid email")

    review = build_review(
        product_id, rating, content, user=user,
        author_name=data.get("authorName") or "", author_email=author_email,
    )
    with store.mutate(REVIEWS) as reviews:
        reviews.append(review)
    logger.info(f"Review {review['id']} submitted for product {review['productId']}")
    return review


def approved_reviews(store, product_id, limit=50):
    """Approved reviews of one product, newest first."""
    limit = max(1, min(PUBLIC_LIMIT_MAX, limit))
    pid = str(product_id)
    return _newest_first(
        r for r in store.read(REVIEWS) if r.get("productId") == pid and r.get("approved")
    )[:limit]


def list_reviews(store, status="pending", product_id=None):
    """Moderation queue. Raises ValueError on an unknown status."""
    if status not in REVIEW_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    reviews = store.read(REVIEWS)
    if status == "pending":
        reviews = [r for r in reviews if not r.get("approved")]
    elif status == "approved":
        reviews = [r for r in reviews if r.get("approved")]
    if product_id:
        reviews = [r for r in reviews if r.get("productId") == str(product_id)]
    return _newest_first(reviews)


def has_purchased_product(store, product_id, user_id=None, email=None, product_name=None):
    """True if a paid order by this buyer (account or email) sold the product."""
    if not user_id and not email:
        return False
    return any(
        is_paid(o)
        and order_matches_customer(o, user_id, email)
        and order_has_product(o, product_id, product_name)
        for o in store.read(ORDERS)
    )


def approve_review(store, catalog, review_id, by="admin"):
    """Publish a review and reward a verified first review of the product.

    Approving an already approved review returns it unchanged.
    Returns the review, or None if it does not exist.
    """
    with store.mutate(REVIEWS) as reviews:
        review = next((r for r in reviews if r.get("id") == review_id), None)
        if review is None:
            return None
        if review.get("approved"):
            return review

        review["approved"] = True
        review["approvedAt"] = now_iso()
        review["approvedBy"] = by

        product = catalog.get(review["productId"])
        product_name = product.get("name") if product else None
        verified = has_purchased_product(
            store, review["productId"],
            user_id=review.get("user_id"), email=review.get("email"),
            product_name=product_name,
        )
        review["verifiedPurchase"] = verified

        credited = None
        if verified and not review.get("pointsAwarded"):
            credited = award_approved_review(
                store, review["productId"], review["id"],
                user_id=review.get("user_id"), email=review.get("email"),
            )
        if credited is not None:
            review["pointsAwarded"] = True
            review["pointsAwardedAt"] = now_iso()
            review["awarded_user_id"] = credited["id"]

    logger.info(
        f"Review {review_id} approved by {by} "
        f"(verified={verified}, points={'yes' if credited else 'no'})"
    )

    try:
        send_review_thanks(
            review.get("email"),
            review.get("author_name") or review.get("user_name"),
            product_name or "your product",
            REVIEW_BONUS if credited is not None else 0,
        )
    except Exception as e:
        logger.warning(f"Could not queue review thanks for {review_id}: {e}")
    return review


def delete_review(store, review_id):
    """Remove a review. Returns False if it does not exist."""
    with store.mutate(REVIEWS) as reviews:
        before = len(reviews)
        reviews[:] = [r for r in reviews if r.get("id") != review_id]
        removed = len(reviews) != before
    if removed:
        logger.info(f"Review {review_id} deleted")
    return removed
