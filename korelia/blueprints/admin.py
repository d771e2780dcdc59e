"""Admin blueprint — /admin/*

Order fulfilment, stock management and review moderation.
All routes require role=admin.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from korelia.decorators import admin_required
from korelia.models.product import price_cents, tracked_stock
from korelia.services.json_store import get_catalog, get_store
from korelia.services.order_service import adjust_stock, all_orders, update_order_status
from korelia.services.review_service import approve_review, delete_review, list_reviews

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


# ──────────────────────────────────────────────
# Orders
# ──────────────────────────────────────────────

@admin_bp.route("/orders", methods=["GET"])
@admin_required
def orders():
    """All orders, newest first."""
    return jsonify(all_orders(get_store()))


@admin_bp.route("/orders/<order_id>/status", methods=["PATCH"])
@admin_required
def order_status(order_id):
    """Body: {"status": ..., "tracking": {carrier, number, url}}."""
    data = request.get_json(silent=True) or {}
    try:
        order = update_order_status(
            get_store(), order_id, data.get("status"),
            tracking=data.get("tracking"), by=current_user.email,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if order is None:
        return jsonify({"error": "Order not found"}), 404
    return jsonify(order)


# ──────────────────────────────────────────────
# Products / stock
# ──────────────────────────────────────────────

@admin_bp.route("/products", methods=["GET"])
@admin_required
def products():
    return jsonify([
        {
            "id": str(p.get("id")),
            "slug": str(p.get("slug")),
            "name": p.get("name"),
            "brand": p.get("brand"),
            "image": p.get("image"),
            "price_cents": price_cents(p),
            "stock": tracked_stock(p) or 0,
        }
        for p in get_catalog().all()
    ])


@admin_bp.route("/products/<product_id>/stock", methods=["PUT"])
@admin_required
def product_stock(product_id):
    """Body: {"op": "inc" | "set", "value": number}."""
    data = request.get_json(silent=True) or {}
    value = data.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return jsonify({"error": "value must be a number"}), 400
    try:
        product = adjust_stock(get_store(), get_catalog(), product_id, data.get("op"), value)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if product is None:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"id": str(product["id"]), "stock": product["stock"]})


# ──────────────────────────────────────────────
# Reviews
# ──────────────────────────────────────────────

@admin_bp.route("/reviews", methods=["GET"])
@admin_required
def review_queue():
    """?status=pending|approved|all (default pending), ?productId=..."""
    try:
        result = list_reviews(
            get_store(),
            status=request.args.get("status", "pending"),
            product_id=request.args.get("productId"),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@admin_bp.route("/reviews/<review_id>/approve", methods=["POST"])
@admin_required
def review_approve(review_id):
    review = approve_review(get_store(), get_catalog(), review_id, by=current_user.email)
    if review is None:
        return jsonify({"error": "Review not found"}), 404
    return jsonify(review)


@admin_bp.route("/reviews/<review_id>", methods=["DELETE"])
@admin_required
def review_delete(review_id):
    if not delete_review(get_store(), review_id):
        return jsonify({"error": "Review not found"}), 404
    return jsonify({"ok": True})
