"""Account blueprint — /me/*

Profile, saved shipping address, order history, password change and
session revocation for the logged-in user.
"""

import logging

import stripe
from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from werkzeug.security import check_password_hash, generate_password_hash

from korelia.models.user import clamp_string, find_user_by_id, public_user
from korelia.services.auth_service import clear_auth_cookie, set_auth_cookie
from korelia.services.json_store import USERS, get_store
from korelia.services.order_service import orders_for_customer
from korelia.services.stripe_service import ensure_customer_for_user

logger = logging.getLogger(__name__)

account_bp = Blueprint("account", __name__, url_prefix="/me")

EMPTY_ADDRESS = {
    "name": "", "line1": "", "line2": "", "postal_code": "", "city": "", "country": "BE",
}


def _me():
    return find_user_by_id(get_store().read(USERS), current_user.id)


def _not_found():
    return jsonify({"error": "User not found"}), 404


# ──────────────────────────────────────────────
# Profile
# ──────────────────────────────────────────────

@account_bp.route("", methods=["GET"])
@login_required
def profile():
    user = _me()
    if user is None:
        return _not_found()
    return jsonify(public_user(user))


@account_bp.route("", methods=["PUT"])
@login_required
def update_profile():
    name = clamp_string((request.get_json(silent=True) or {}).get("name"), 120)
    with get_store().mutate(USERS) as users:
        user = find_user_by_id(users, current_user.id)
        if user is None:
            return _not_found()
        user["name"] = name
    return jsonify(public_user(user))


@account_bp.route("/orders", methods=["GET"])
@login_required
def my_orders():
    """Orders placed by this account, or with its email as a guest."""
    return jsonify(orders_for_customer(get_store(), current_user.id, current_user.email))


# ──────────────────────────────────────────────
# Shipping address
# ──────────────────────────────────────────────

@account_bp.route("/address", methods=["GET"])
@login_required
def get_address():
    user = _me()
    if user is None:
        return _not_found()
    address = user.get("shipping_address")
    phone = user.get("phone") or ""
    return jsonify({**(address or EMPTY_ADDRESS), "phone": phone})


@account_bp.route("/address", methods=["PUT"])
@login_required
def update_address():
    data = request.get_json(silent=True) or {}
    address = {
        "name": clamp_string(data.get("name"), 120),
        "line1": clamp_string(data.get("line1"), 160),
        "line2": clamp_string(data.get("line2"), 160),
        "postal_code": clamp_string(data.get("postal_code"), 20),
        "city": clamp_string(data.get("city"), 120),
        "country": str(data.get("country") or "BE").upper()[:2],
    }
    with get_store().mutate(USERS) as users:
        user = find_user_by_id(users, current_user.id)
        if user is None:
            return _not_found()
        user["shipping_address"] = address
        user["phone"] = clamp_string(data.get("phone"), 40)
    return jsonify({"ok": True})


@account_bp.route("/sync-stripe-customer", methods=["POST"])
@login_required
def sync_stripe_customer():
    """Push the saved address onto the Stripe Customer for this email."""
    user = _me()
    if user is None:
        return _not_found()
    try:
        customer = ensure_customer_for_user(user)
    except stripe.error.StripeError as e:
        logger.error(f"Stripe customer sync failed for {user['email']}: {e}", exc_info=True)
        return jsonify({"error": "Could not sync with Stripe"}), 500
    if not customer:
        return jsonify({"ok": True, "note": "No Stripe customer created (missing email?)"})
    return jsonify({"ok": True, "customer_id": customer["id"]})


# ──────────────────────────────────────────────
# Password / sessions
# ──────────────────────────────────────────────

@account_bp.route("/change-password", methods=["POST"])
@login_required
def change_password():
    """Change password, sign out other sessions, re-issue this one."""
    data = request.get_json(silent=True) or {}
    current_password = str(data.get("current_password") or "")
    new_password = str(data.get("new_password") or "")
    if not current_password or not new_password:
        return jsonify({"error": "current_password and new_password are required"}), 400
    if len(new_password) < 8:
        return jsonify({"error": "New password too short (8+)"}), 400

    with get_store().mutate(USERS) as users:
        user = find_user_by_id(users, current_user.id)
        if user is None:
            return _not_found()
        if not check_password_hash(user.get("password_hash") or "", current_password):
            return jsonify({"error": "Current password is invalid"}), 401
        user["password_hash"] = generate_password_hash(new_password)
        user["token_version"] = user.get("token_version", 0) + 1

    logger.info(f"Password changed for {user['email']}")
    return set_auth_cookie(jsonify({"ok": True}), user)


@account_bp.route("/sessions/revoke-all", methods=["POST"])
@login_required
def revoke_all_sessions():
    with get_store().mutate(USERS) as users:
        user = find_user_by_id(users, current_user.id)
        if user is None:
            return _not_found()
        user["token_version"] = user.get("token_version", 0) + 1

    logger.info(f"All sessions revoked for {user['email']}")
    return clear_auth_cookie(jsonify({"ok": True}))
