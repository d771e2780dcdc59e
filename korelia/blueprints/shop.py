"""Shop blueprint — /api/*

Public storefront API: catalog, promo validation, Stripe Checkout and
the post-payment order lookup used by the thank-you page.
"""

import logging
import time

import stripe
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from korelia.errors import CheckoutError, PromoCodeInvalid
from korelia.models.product import effective_stock, is_pack, price_cents, public_product, tracked_stock
from korelia.models.user import find_user_by_id
from korelia.services import stripe_service
from korelia.services.json_store import USERS, get_catalog, get_store
from korelia.services.order_service import find_order_by_session

logger = logging.getLogger(__name__)

shop_bp = Blueprint("shop", __name__, url_prefix="/api")


# ──────────────────────────────────────────────
# Catalog
# ──────────────────────────────────────────────

@shop_bp.route("/products", methods=["GET"])
def list_products():
    """Public projection of every product (pack stock computed)."""
    catalog = get_catalog()
    return jsonify([public_product(p, catalog) for p in catalog.all()])


@shop_bp.route("/products/<slug>", methods=["GET"])
def product_detail(slug):
    catalog = get_catalog()
    product = catalog.by_slug(slug)
    if product is None:
        return jsonify({"error": "Product not found"}), 404
    stock = effective_stock(product, catalog) if is_pack(product) else tracked_stock(product)
    return jsonify({
        **product,
        "id": str(product.get("id")),
        "slug": str(product.get("slug")),
        "price_cents": price_cents(product),
        "stock": stock,
    })


# ──────────────────────────────────────────────
# Promo codes / checkout
# ──────────────────────────────────────────────

def _cart_items(data):
    items = data.get("items")
    return items if isinstance(items, list) else []


@shop_bp.route("/validate-promo", methods=["POST"])
def validate_promo():
    """Body: {"items": [{id, qty}], "promo_code": "..."}."""
    data = request.get_json(silent=True) or {}
    items_total = stripe_service.cart_total_cents(_cart_items(data), get_catalog())
    try:
        promo, coupon = stripe_service.validate_promo_code(data.get("promo_code"), items_total)
    except PromoCodeInvalid as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    except stripe.error.StripeError as e:
        logger.warning(f"Promo validation failed: {e}")
        return jsonify({"ok": False, "error": "Invalid promo code."}), 400
    return jsonify(stripe_service.describe_promo(promo, coupon))


@shop_bp.route("/create-checkout-session", methods=["POST"])
def create_checkout_session():
    """Start a Stripe Checkout for the cart; returns {"url": ...}.

    Logged-in shoppers are attached to their Stripe Customer and the
    order is linked to their account through session metadata.
    """
    data = request.get_json(silent=True) or {}
    cart_items = _cart_items(data)
    if not cart_items:
        return jsonify({"error": "Cart is empty"}), 400

    user = None
    if current_user.is_authenticated:
        user = find_user_by_id(get_store().read(USERS), current_user.id)

    try:
        url = stripe_service.create_checkout_session(
            cart_items,
            user=user,
            customer_email=data.get("customerEmail"),
            promo_code=(data.get("promo_code") or "").strip() or None,
        )
    except (CheckoutError, PromoCodeInvalid) as e:
        return jsonify({"error": str(e)}), 400
    except stripe.error.StripeError as e:
        logger.error(f"Checkout session creation failed: {e}", exc_info=True)
        return jsonify({"error": "Payment error"}), 400
    return jsonify({"url": url})


@shop_bp.route("/orders/by-session/<session_id>", methods=["GET"])
def order_by_session(session_id):
    """Order for a Checkout Session, waiting briefly for the webhook."""
    cfg = current_app.config
    store = get_store()
    for attempt in range(cfg["ORDER_LOOKUP_ATTEMPTS"]):
        order = find_order_by_session(store, session_id)
        if order:
            return jsonify(order)
        if attempt < cfg["ORDER_LOOKUP_ATTEMPTS"] - 1:
            time.sleep(cfg["ORDER_LOOKUP_DELAY"])
    return jsonify({"error": "Order not found (webhook not received yet?)"}), 404
