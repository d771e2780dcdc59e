"""Auth blueprint — /auth/*

Handles registration, login, logout, email verification and password
reset. Sessions are JWTs in an HttpOnly cookie (see auth_service).
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash, generate_password_hash

from korelia.errors import StoreError
from korelia.extensions import limiter
from korelia.models.user import (
    build_user,
    find_user_by_email,
    find_user_by_id,
    is_email,
    normalize_email,
    public_user,
)
from korelia.services.auth_service import (
    RESET_TOKEN_TTL,
    VERIFY_TOKEN_TTL,
    clear_auth_cookie,
    get_login_throttle,
    new_one_time_token,
    set_auth_cookie,
    sha256,
    token_expired,
)
from korelia.services.email_service import (
    send_password_reset_email,
    send_verification_email,
)
from korelia.services.json_store import USERS, get_store
from korelia.services.rewards_service import (
    SIGNUP_BONUS,
    backfill_rewards_for_email,
    credit_user,
)

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

AUTH_LIMIT = "30 per 10 minutes"
MIN_PASSWORD_LENGTH = 8


def _json_body():
    return request.get_json(silent=True) or {}


def _client_ip():
    return request.remote_addr or "unknown"


def _safe_backfill(user, when):
    """Backfill guest-order points; never fails the request."""
    try:
        return backfill_rewards_for_email(get_store(), user["email"], user["id"])
    except (StoreError, OSError, ValueError) as e:
        logger.warning(f"Rewards backfill at {when} failed for {user['email']}: {e}")
        return {"credited": 0, "orders": 0}


def _notify(send, *args):
    try:
        send(*args)
    except Exception as e:
        logger.warning(f"Could not queue {send.__name__}: {e}")


# ──────────────────────────────────────────────
# GET /auth/csrf
# ──────────────────────────────────────────────

@auth_bp.route("/csrf", methods=["GET"])
def csrf_token():
    """CSRF token for the storefront; sent back as the X-CSRF-Token header."""
    return jsonify({"csrf": generate_csrf()})


# ──────────────────────────────────────────────
# POST /auth/register
# ──────────────────────────────────────────────

@auth_bp.route("/register", methods=["POST"])
@limiter.limit(AUTH_LIMIT)
def register():
    """Create an account.

    Seeds the +50 signup bonus, sends the verification email, credits
    past guest orders placed with the same email, and logs the user in.
    """
    data = _json_body()
    email = normalize_email(data.get("email"))
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400
    if not is_email(email):
        return jsonify({"error": "Invalid email"}), 400
    if len(str(password)) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": "Password too short (8+)"}), 400

    raw_token, verify_record = new_one_time_token(VERIFY_TOKEN_TTL)
    with get_store().mutate(USERS) as users:
        if find_user_by_email(users, email):
            return jsonify({"error": "An account already exists with this email"}), 409
        user = build_user(email, data.get("name"), generate_password_hash(str(password)))
        credit_user(user, SIGNUP_BONUS, "signup")
        user["email_verify"] = verify_record
        users.append(user)

    logger.info(f"New account registered: {email}")
    _notify(send_verification_email, user, raw_token)

    backfill = _safe_backfill(user, "signup")
    if backfill["orders"]:
        user = find_user_by_id(get_store().read(USERS), user["id"]) or user

    response = jsonify({**public_user(user), "rewards_backfill": backfill})
    return set_auth_cookie(response, user)


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit(AUTH_LIMIT)
def login():
    """Email + password login with per-IP / per-email lockout."""
    data = _json_body()
    email = normalize_email(data.get("email"))
    password = str(data.get("password") or "")

    throttle = get_login_throttle()
    keys = [f"ip:{_client_ip()}"]
    if email:
        keys.append(f"email:{email}")
    if any(throttle.is_locked(k) for k in keys):
        return jsonify({"error": "Too many attempts, please try again later."}), 429

    user = find_user_by_email(get_store().read(USERS), email)
    if user is None or not check_password_hash(user.get("password_hash") or "", password):
        for key in keys:
            throttle.register_failure(key)
        return jsonify({"error": "Invalid credentials"}), 401

    for key in keys:
        throttle.reset(key)

    if current_app.config["REQUIRE_EMAIL_VERIFIED"] and not user.get("email_verified"):
        return jsonify({"error": "Email not verified. Please check your inbox."}), 403

    backfill = _safe_backfill(user, "login")
    if backfill["orders"]:
        user = find_user_by_id(get_store().read(USERS), user["id"]) or user

    logger.info(f"Login: {email}")
    return set_auth_cookie(jsonify(public_user(user)), user)


@auth_bp.route("/logout", methods=["POST"])
def logout():
    return clear_auth_cookie(jsonify({"ok": True}))


# ──────────────────────────────────────────────
# Email verification
# ──────────────────────────────────────────────

@auth_bp.route("/resend-verification", methods=["POST"])
@login_required
def resend_verification():
    raw_token, verify_record = new_one_time_token(VERIFY_TOKEN_TTL)
    with get_store().mutate(USERS) as users:
        user = find_user_by_id(users, current_user.id)
        if user is None:
            return jsonify({"error": "User not found"}), 404
        if user.get("email_verified"):
            return jsonify({"ok": True, "alreadyVerified": True})
        user["email_verify"] = verify_record

    _notify(send_verification_email, user, raw_token)
    return jsonify({"ok": True})


def _wants_json():
    if request.args.get("json") == "1":
        return True
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best == "application/json"


def _verify_reply(ok, message, status=200):
    if _wants_json():
        body = {"ok": True} if ok else {"ok": False, "error": message}
        return jsonify(body), status
    html = f"<h1>{message}</h1>"
    if ok:
        html += "<p>You can close this tab and return to the shop.</p>"
    return html, status, {"Content-Type": "text/html; charset=utf-8"}


@auth_bp.route("/verify-email", methods=["GET"])
def verify_email():
    """Consume an email verification link (JSON or a small HTML page)."""
    token = request.args.get("token", "")
    if not token:
        return _verify_reply(False, "Missing token", 400)

    token_hash = sha256(token)
    with get_store().mutate(USERS) as users:
        user = next(
            (u for u in users if (u.get("email_verify") or {}).get("token_hash") == token_hash),
            None,
        )
        if user is None:
            return _verify_reply(False, "Invalid link", 400)
        if token_expired(user["email_verify"]):
            return _verify_reply(False, "Link expired", 400)
        user["email_verified"] = True
        user["email_verify"] = None

    logger.info(f"Email verified: {user['email']}")
    return _verify_reply(True, "Email verified")


# ──────────────────────────────────────────────
# Password reset
# ──────────────────────────────────────────────

@auth_bp.route("/forgot-password", methods=["POST"])
def forgot_password():
    """Always answers {"ok": true} so account existence is not revealed."""
    email = normalize_email(_json_body().get("email"))
    if not email:
        return jsonify({"error": "Email is required"}), 400

    raw_token, reset_record = new_one_time_token(RESET_TOKEN_TTL)
    reset_record["used"] = False
    try:
        with get_store().mutate(USERS) as users:
            user = find_user_by_email(users, email)
            if user is not None:
                user["password_reset"] = reset_record
    except StoreError as e:
        logger.error(f"forgot-password failed for {email}: {e}", exc_info=True)
        return jsonify({"ok": True})

    if user is not None:
        _notify(send_password_reset_email, user["email"], raw_token)
    return jsonify({"ok": True})


def _find_reset_user(users, token):
    token_hash = sha256(token)
    return next(
        (u for u in users if (u.get("password_reset") or {}).get("token_hash") == token_hash),
        None,
    )


def _reset_error(user):
    if user is None:
        return "Invalid link"
    if user["password_reset"].get("used"):
        return "Link already used"
    if token_expired(user["password_reset"]):
        return "Link expired"
    return None


@auth_bp.route("/check-reset", methods=["GET"])
def check_reset():
    token = request.args.get("token", "")
    if not token:
        return jsonify({"error": "Missing token"}), 400
    error = _reset_error(_find_reset_user(get_store().read(USERS), token))
    if error:
        return jsonify({"error": error}), 400
    return jsonify({"ok": True})


@auth_bp.route("/reset-password", methods=["POST"])
def reset_password():
    """Set a new password from a reset link; signs out every session."""
    data = _json_body()
    token = data.get("token")
    new_password = str(data.get("new_password") or "")
    if not token or not new_password:
        return jsonify({"error": "token and new_password are required"}), 400
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": "Password too short (8+)"}), 400

    with get_store().mutate(USERS) as users:
        user = _find_reset_user(users, token)
        error = _reset_error(user)
        if error:
            return jsonify({"error": error}), 400
        user["password_hash"] = generate_password_hash(new_password)
        user["password_reset"]["used"] = True
        user["token_version"] = user.get("token_version", 0) + 1

    logger.info(f"Password reset completed for {user['email']}")
    return jsonify({"ok": True})
