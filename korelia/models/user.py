"""User records (users.json) and the Flask-Login session user."""

import re
import uuid

from flask_login import UserMixin

from korelia.models.schema import SCHEMA_VERSION, now_iso

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(value):
    return str(value or "").strip().lower()


def is_email(value):
    return bool(EMAIL_RE.match(normalize_email(value)))


def clamp_string(value, max_len=200):
    value = "" if value is None else str(value)
    return value[:max_len]


def build_user(email, name, password_hash, role="user"):
    """New user record in the current schema (no points yet)."""
    return {
        "id": str(uuid.uuid4()),
        "email": normalize_email(email),
        "name": clamp_string(name, 120),
        "password_hash": password_hash,
        "role": role,
        "createdAt": now_iso(),
        "email_verified": False,
        "email_verify": None,
        "password_reset": None,
        "token_version": 0,
        "points": 0,
        "rewards_history": [],
        "reviews_meta": {"lastPerProduct": {}, "awardedPerProduct": {}},
        "schema_version": SCHEMA_VERSION,
    }


def public_user(user):
    """Projection safe to send to the browser."""
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user.get("name") or "",
        "role": user.get("role") or "user",
        "createdAt": user.get("createdAt"),
        "email_verified": bool(user.get("email_verified")),
    }


def find_user_by_id(users, user_id):
    if not user_id:
        return None
    return next((u for u in users if u.get("id") == user_id), None)


def find_user_by_email(users, email):
    key = normalize_email(email)
    if not key:
        return None
    return next((u for u in users if u.get("email") == key), None)


class SessionUser(UserMixin):
    """Authenticated user resolved from a session token."""

    def __init__(self, record):
        self.id = record["id"]
        self.email = record["email"]
        self.name = record.get("name") or ""
        self.role = record.get("role") or "user"
        self.token_version = record.get("token_version", 0)

    @property
    def is_admin(self):
        return self.role == "admin"

    def __repr__(self):
        return f"<SessionUser {self.email}>"
