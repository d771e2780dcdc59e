"""Auth service — session tokens, one-time tokens, login lockout.

Responsible for:
- Signing/decoding session JWTs (HS256) and the auth cookie
- Resolving the current user for Flask-Login (token_version check)
- One-time verification/reset tokens (only the sha256 is stored)
- LoginThrottle: per-IP / per-email failure counters with stepped lockouts
"""

import hashlib
import logging
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from korelia.models.user import SessionUser, find_user_by_id
from korelia.services.json_store import USERS, get_store

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
VERIFY_TOKEN_TTL = 24 * 3600
RESET_TOKEN_TTL = 3600


# ──────────────────────────────────────────────
# Session tokens
# ──────────────────────────────────────────────

def sign_token(user):
    """Issue a session JWT for a user record."""
    days = current_app.config["JWT_EXPIRES_DAYS"]
    payload = {
        "id": user["id"],
        "email": user["email"],
        "role": user.get("role") or "user",
        "token_version": user.get("token_version", 0),
        "exp": datetime.now(timezone.utc) + timedelta(days=days),
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET"], algorithm=JWT_ALGORITHM)


def decode_token(token):
    """Verify signature and expiry. Returns the claims or None."""
    if not token:
        return None
    try:
        return jwt.decode(
            token, current_app.config["JWT_SECRET"], algorithms=[JWT_ALGORITHM]
        )
    except jwt.InvalidTokenError:
        return None


def token_from_request(request):
    token = request.cookies.get(current_app.config["AUTH_COOKIE_NAME"])
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return None


def user_from_request(request):
    """Flask-Login request loader: a SessionUser, or None.

    Tokens issued before the user's last password change (token_version
    bump) are rejected.
    """
    claims = decode_token(token_from_request(request))
    if not claims:
        return None
    users = get_store().read(USERS)
    record = find_user_by_id(users, claims.get("id"))
    if record is None:
        return None
    if record.get("token_version", 0) != claims.get("token_version", 0):
        return None
    return SessionUser(record)


def set_auth_cookie(response, user):
    cfg = current_app.config
    response.set_cookie(
        cfg["AUTH_COOKIE_NAME"],
        sign_token(user),
        max_age=cfg["JWT_EXPIRES_DAYS"] * 24 * 3600,
        httponly=True,
        secure=cfg["AUTH_COOKIE_SECURE"],
        samesite=cfg["AUTH_COOKIE_SAMESITE"],
        path="/",
    )
    return response


def clear_auth_cookie(response):
    cfg = current_app.config
    response.delete_cookie(
        cfg["AUTH_COOKIE_NAME"],
        path="/",
        secure=cfg["AUTH_COOKIE_SECURE"],
        samesite=cfg["AUTH_COOKIE_SAMESITE"],
    )
    return response


# ──────────────────────────────────────────────
# One-time tokens (email verification, password reset)
# ──────────────────────────────────────────────

def sha256(value):
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def new_one_time_token(ttl_seconds):
    """Returns (raw_token, stored_record). Only the hash is persisted."""
    raw = secrets.token_hex(32)
    record = {
        "token_hash": sha256(raw),
        "expiresAt": int((time.time() + ttl_seconds) * 1000),
    }
    return raw, record


def token_expired(record):
    return not record or time.time() * 1000 > float(record.get("expiresAt") or 0)


# ──────────────────────────────────────────────
# Brute-force lockout
# ──────────────────────────────────────────────

class LoginThrottle:
    """In-process failed-login counters keyed by "ip:<addr>" / "email:<addr>".

    State is per instance and resets with the process.
    """

    def __init__(self, steps, clock=time.monotonic):
        # steps: ((failures, lockout_seconds), ...), highest threshold first
        self.steps = tuple(sorted(steps, reverse=True))
        self.clock = clock
        self._failures = {}
        self._lock = threading.Lock()

    def is_locked(self, key):
        with self._lock:
            info = self._failures.get(key)
            return bool(info and info["until"] and self.clock() < info["until"])

    def register_failure(self, key):
        with self._lock:
            info = self._failures.setdefault(key, {"count": 0, "until": 0})
            info["count"] += 1
            for threshold, seconds in self.steps:
                if info["count"] >= threshold:
                    info["until"] = self.clock() + seconds
                    logger.warning(
                        f"Login lockout for {key}: {info['count']} failures, {seconds}s"
                    )
                    break
            return info["count"]

    def reset(self, key):
        with self._lock:
            self._failures.pop(key, None)

    def clear(self):
        with self._lock:
            self._failures.clear()


def get_login_throttle():
    return current_app.extensions["login_throttle"]
