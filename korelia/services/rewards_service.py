"""Rewards service — the loyalty points ledger.

Responsible for:
- The static reward tier catalog
- Crediting / debiting points (balance never below zero) with history
- Backfilling points for guest orders once the email has an account
- Redeeming a tier for a one-time Stripe promotion code
- Review bonus points (direct reviews and approved, verified reviews)
- Listing the promotion codes a user has redeemed

Points: 1 point per whole currency unit of the order subtotal
(cents // 100, never rounded up).
"""

import logging
import time
import uuid

import stripe

from korelia.errors import RedemptionError, ReviewTooSoon
from korelia.models.order import is_paid
from korelia.models.schema import now_iso
from korelia.models.user import find_user_by_email, find_user_by_id, normalize_email
from korelia.services import stripe_service
from korelia.services.json_store import ORDERS, USERS

logger = logging.getLogger(__name__)

REWARD_TIERS = {
    "100_5": {"cost": 100, "amount_off_cents": 500, "min_amount_cents": 5000, "label": "5 EUR off"},
    "200_12": {"cost": 200, "amount_off_cents": 1200, "min_amount_cents": 7000, "label": "12 EUR off"},
    "500_35": {"cost": 500, "amount_off_cents": 3500, "min_amount_cents": 10000, "label": "35 EUR off"},
}

SIGNUP_BONUS = 50
REVIEW_BONUS = 10
REVIEW_COOLDOWN_SECONDS = 24 * 3600
HISTORY_LIMIT = 100


def points_for_amount(amount_cents):
    """Whole currency units in an amount of cents (floor, never negative)."""
    try:
        return max(0, int(amount_cents or 0) // 100)
    except (TypeError, ValueError):
        return 0


def order_points_basis(order):
    """Subtotal when present, else total."""
    subtotal = order.get("amount_subtotal")
    return subtotal if subtotal is not None else order.get("amount_total")


def push_history(user, delta, reason, **extra):
    """Prepend a ledger entry (history is newest first)."""
    entry = {"id": str(uuid.uuid4()), "at": now_iso(), "delta": delta, "reason": reason}
    entry.update(extra)
    user.setdefault("rewards_history", []).insert(0, entry)
    return entry


def credit_user(user, delta, reason, **extra):
    """Apply `delta` to the balance, clamped at zero, and record it."""
    user["points"] = max(0, (user.get("points") or 0) + delta)
    return push_history(user, delta, reason, **extra)


# ──────────────────────────────────────────────
# Ledger operations
# ──────────────────────────────────────────────

def add_points(store, delta, reason, user_id=None, email=None, **extra):
    """Credit (or debit) a user found by id, else by email.

    An entry carrying an orderId is recorded at most once per reason, so
    a retried order credit does not pay twice.
    Returns the user record, or None (nothing written) when no user matches.
    """
    with store.mutate(USERS) as users:
        user = find_user_by_id(users, user_id) or find_user_by_email(users, email)
        if user is None:
            return None
        order_id = extra.get("orderId")
        if order_id and any(
            h.get("reason") == reason and h.get("orderId") == order_id
            for h in user.get("rewards_history") or []
        ):
            return user
        credit_user(user, delta, reason, **extra)
    return user


def _has_order_entry(user, order_id):
    return any(
        h.get("orderId") == order_id and h.get("reason") in ("order", "order_backfill")
        for h in user.get("rewards_history") or []
    )


def backfill_rewards_for_email(store, email, user_id):
    """Credit a user for past paid orders placed with their email.

    Skips orders already credited (live or by a previous backfill), so
    running it twice credits each order once.
    Returns {"credited": points, "orders": count}.
    """
    key = normalize_email(email)
    result = {"credited": 0, "orders": 0}
    if not key or not user_id:
        return result

    with store.mutate(ORDERS) as orders, store.mutate(USERS) as users:
        user = find_user_by_id(users, user_id)
        if user is None:
            return result
        for order in orders:
            if not is_paid(order):
                continue
            if normalize_email(order.get("email")) != key:
                continue
            if order.get("rewards_credited_user_id") or order.get("rewards_backfill_done"):
                continue
            points = points_for_amount(order_points_basis(order))
            if points <= 0:
                continue
            if _has_order_entry(user, order["id"]):
                # Credited live, but the stamp never reached orders.json.
                order["rewards_credited_user_id"] = user_id
                order.pop("rewards_pending_for_email", None)
                continue
            credit_user(user, points, "order_backfill", orderId=order["id"])
            order["rewards_credited_user_id"] = user_id
            order["rewards_backfill_done"] = True
            order["rewards_points"] = (order.get("rewards_points") or 0) + points
            order["rewards_at"] = now_iso()
            order.pop("rewards_pending_for_email", None)
            result["credited"] += points
            result["orders"] += 1

    if result["orders"]:
        logger.info(
            f"Rewards backfill: +{result['credited']} pts over "
            f"{result['orders']} order(s) for {key}"
        )
    return result


def rewards_summary(user):
    return {
        "points": user.get("points") or 0,
        "history": (user.get("rewards_history") or [])[:HISTORY_LIMIT],
        "tiers": REWARD_TIERS,
    }


def redeem_tier(store, user_id, tier_key):
    """Exchange points for a one-time promotion code.

    The users file stays locked across the Stripe calls so the balance
    check and the debit see the same state. Points are only debited after
    both Stripe objects exist.
    Returns {"ok", "code", "amount_off_cents", "min_amount_cents"}.
    Raises RedemptionError.
    """
    tier = REWARD_TIERS.get(tier_key)
    if tier is None:
        raise RedemptionError("Unknown reward tier", 400, "unknown_tier")

    with store.mutate(USERS) as users:
        user = find_user_by_id(users, user_id)
        if user is None:
            raise RedemptionError("User not found", 404, "not_found")
        if (user.get("points") or 0) < tier["cost"]:
            raise RedemptionError("Not enough points", 400, "insufficient_points")

        try:
            coupon, promo = stripe_service.create_redemption_code(tier)
        except stripe.error.StripeError as e:
            logger.error(f"Redemption of {tier_key} for {user_id} failed: {e}", exc_info=True)
            raise RedemptionError("Could not create the discount code", 500, "gateway") from e

        credit_user(
            user,
            -tier["cost"],
            f"redeem:{tier_key}",
            stripe_coupon_id=coupon["id"],
            stripe_promotion_code_id=promo["id"],
            code=promo["code"],
            amount_off_cents=tier["amount_off_cents"],
            min_amount_cents=tier["min_amount_cents"],
        )

    logger.info(f"User {user_id} redeemed {tier_key} -> {promo['code']}")
    return {
        "ok": True,
        "code": promo["code"],
        "amount_off_cents": tier["amount_off_cents"],
        "min_amount_cents": tier["min_amount_cents"],
    }


def award_review_points(store, user_id, product_id, rating=5, content=""):
    """+10 points for a review, at most once per product per 24h.

    Returns the new balance. Raises ReviewTooSoon inside the cooldown.
    """
    product_key = str(product_id)
    now_ms = int(time.time() * 1000)
    with store.mutate(USERS) as users:
        user = find_user_by_id(users, user_id)
        if user is None:
            return None
        last_per_product = user["reviews_meta"]["lastPerProduct"]
        last = last_per_product.get(product_key)
        if last and now_ms - last < REVIEW_COOLDOWN_SECONDS * 1000:
            raise ReviewTooSoon(product_key)
        last_per_product[product_key] = now_ms
        credit_user(
            user, REVIEW_BONUS, "review",
            productId=product_key, rating=rating, len=len(content or ""),
        )
        return user["points"]


def award_approved_review(store, product_id, review_id, user_id=None, email=None):
    """+10 points for an approved, verified review; once per product per user.

    `reviews_meta.awardedPerProduct` records the products already paid for.
    Returns the credited user, or None when no account matches or the
    product was already rewarded.
    """
    product_key = str(product_id)
    with store.mutate(USERS) as users:
        user = find_user_by_id(users, user_id) or find_user_by_email(users, email)
        if user is None:
            return None
        awarded = user["reviews_meta"]["awardedPerProduct"]
        if awarded.get(product_key):
            return None
        awarded[product_key] = now_iso()
        credit_user(user, REVIEW_BONUS, "review_approved", productId=product_key, reviewId=review_id)
    logger.info(f"Rewards: +{REVIEW_BONUS} pts to {user['email']} for review {review_id}")
    return user


# ──────────────────────────────────────────────
# Redeemed promotion codes
# ──────────────────────────────────────────────

def list_promo_codes(user):
    """Codes recorded in the user's redemption history."""
    return [
        {
            "code": h["code"],
            "created_at": h.get("at"),
            "amount_off_cents": h.get("amount_off_cents") or 0,
            "min_amount_cents": h.get("min_amount_cents") or 0,
            "stripe_promotion_code_id": h["stripe_promotion_code_id"],
            "stripe_coupon_id": h.get("stripe_coupon_id"),
        }
        for h in user.get("rewards_history") or []
        if h and h.get("code") and h.get("stripe_promotion_code_id")
    ]


def describe_promo_codes(codes):
    """Add live usability from Stripe to each code, newest first."""
    detailed = []
    for entry in codes:
        try:
            promo = stripe_service.retrieve_promotion_code(entry["stripe_promotion_code_id"])
        except stripe.error.StripeError as e:
            logger.warning(f"Promotion code lookup failed for {entry['code']}: {e}")
            detailed.append({**entry, "active": False, "error": "not_found"})
            continue
        coupon = promo.get("coupon") or {}
        max_redemptions = int(promo.get("max_redemptions") or 0)
        redeemed = int(promo.get("times_redeemed") or 0)
        coupon_valid = bool(coupon.get("valid"))
        usable = (
            bool(promo.get("active"))
            and coupon_valid
            and (max_redemptions == 0 or redeemed < max_redemptions)
        )
        detailed.append({
            **entry,
            "active": usable,
            "times_redeemed": redeemed,
            "max_redemptions": max_redemptions,
            "coupon_valid": coupon_valid,
        })
    detailed.sort(key=lambda c: c.get("created_at") or "", reverse=True)
    return detailed
