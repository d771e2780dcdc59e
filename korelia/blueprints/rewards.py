"""Rewards blueprint — loyalty points, redemptions and review bonuses.

Route Map:
  GET  /rewards/catalog   — reward tiers (public)
  GET  /me/rewards        — balance + recent history + tiers
  POST /rewards/redeem    — exchange points for a one-time promo code
  GET  /me/promo-codes    — codes redeemed by the user, with live status
  POST /reviews/add       — +10 points for a review (once per product per 24h)
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from korelia.errors import RedemptionError, ReviewTooSoon
from korelia.models.user import find_user_by_id
from korelia.services.email_service import send_review_thanks
from korelia.services.json_store import USERS, get_catalog, get_store
from korelia.services.rewards_service import (
    REVIEW_BONUS,
    REWARD_TIERS,
    award_review_points,
    describe_promo_codes,
    list_promo_codes,
    redeem_tier,
    rewards_summary,
)

logger = logging.getLogger(__name__)

rewards_bp = Blueprint("rewards", __name__)


def _me():
    return find_user_by_id(get_store().read(USERS), current_user.id)


@rewards_bp.route("/rewards/catalog", methods=["GET"])
def catalog():
    return jsonify(REWARD_TIERS)


@rewards_bp.route("/me/rewards", methods=["GET"])
@login_required
def my_rewards():
    user = _me()
    if user is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify(rewards_summary(user))


@rewards_bp.route("/rewards/redeem", methods=["POST"])
@login_required
def redeem():
    """Body: {"tier": "100_5" | "200_12" | "500_35"}."""
    tier = (request.get_json(silent=True) or {}).get("tier")
    try:
        result = redeem_tier(get_store(), current_user.id, tier)
    except RedemptionError as e:
        return jsonify({"error": e.message}), e.status
    return jsonify(result)


@rewards_bp.route("/me/promo-codes", methods=["GET"])
@login_required
def my_promo_codes():
    user = _me()
    if user is None:
        return jsonify({"error": "User not found"}), 404
    return jsonify(describe_promo_codes(list_promo_codes(user)))


@rewards_bp.route("/reviews/add", methods=["POST"])
@login_required
def add_review():
    data = request.get_json(silent=True) or {}
    product_id = data.get("productId")
    if not product_id:
        return jsonify({"error": "productId is required"}), 400
    content = str(data.get("content") or "")

    try:
        points = award_review_points(
            get_store(), current_user.id, product_id,
            rating=data.get("rating", 5), content=content,
        )
    except ReviewTooSoon:
        return jsonify({"error": "You already reviewed this product recently."}), 429
    if points is None:
        return jsonify({"error": "User not found"}), 404

    product = get_catalog().get(product_id)
    try:
        send_review_thanks(
            current_user.email, current_user.name,
            product.get("name") if product else f"#{product_id}", REVIEW_BONUS,
        )
    except Exception as e:
        logger.warning(f"Could not queue review thanks for {current_user.email}: {e}")

    return jsonify({"ok": True, "points": points})
