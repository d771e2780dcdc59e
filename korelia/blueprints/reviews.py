"""Reviews blueprint — public review submission and product-page listing.

Route Map:
  POST /reviews/submit                — submit a review (login optional), held for moderation
  GET  /api/products/<id>/reviews     — approved reviews of a product

Moderation lives under /admin/reviews (admin blueprint).
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from korelia.extensions import limiter
from korelia.models.review import public_review
from korelia.services.json_store import get_catalog, get_store
from korelia.services.review_service import approved_reviews, submit_review

logger = logging.getLogger(__name__)

reviews_bp = Blueprint("reviews", __name__)


@reviews_bp.route("/reviews/submit", methods=["POST"])
@limiter.limit("10 per hour")
def submit():
    """Body: {productId, rating 1..5, content, authorName?, authorEmail?}."""
    data = request.get_json(silent=True) or {}
    user = current_user if current_user.is_authenticated else None
    try:
        review = submit_review(get_store(), get_catalog(), data, user=user)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({
        "ok": True,
        "pending": True,
        "id": review["id"],
        "message": "Thank you! Your review will be published once approved.",
    }), 201


@reviews_bp.route("/api/products/<product_id>/reviews", methods=["GET"])
def product_reviews(product_id):
    limit = request.args.get("limit", 50, type=int)
    return jsonify([public_review(r) for r in approved_reviews(get_store(), product_id, limit)])
