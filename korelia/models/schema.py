"""Record schema versions and the load-time migration step.

Every record in users.json / orders.json / products.json / reviews.json carries a
`schema_version`. `migrate_store()` runs once at startup (and via
`flask migrate-data`) and upgrades older records in place, so request
handlers can rely on the current shape without patching fields on the fly.
"""

import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def now_iso():
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────
# v1 upgrades
# ──────────────────────────────────────────────

def _user_v1(user):
    if not isinstance(user.get("points"), int) or isinstance(user.get("points"), bool):
        try:
            user["points"] = max(0, int(user.get("points") or 0))
        except (TypeError, ValueError):
            user["points"] = 0
    if not isinstance(user.get("rewards_history"), list):
        user["rewards_history"] = []
    meta = user.get("reviews_meta")
    if not isinstance(meta, dict):
        meta = {}
    meta.setdefault("lastPerProduct", {})
    meta.setdefault("awardedPerProduct", {})
    user["reviews_meta"] = meta
    user["email"] = str(user.get("email") or "").strip().lower()
    user.setdefault("role", "user")
    user.setdefault("token_version", 0)
    user["email_verified"] = bool(user.get("email_verified"))
    user.setdefault("email_verify", None)
    user.setdefault("password_reset", None)


def _order_v1(order):
    if not order.get("status"):
        order["status"] = "paid"
    if not isinstance(order.get("status_history"), list) or not order["status_history"]:
        order["status_history"] = [{
            "at": order.get("createdAt") or now_iso(),
            "status": order["status"],
            "by": "system",
        }]


def _product_v1(product):
    product["id"] = str(product.get("id"))


def _review_v1(review):
    review["productId"] = str(review.get("productId"))
    review["approved"] = bool(review.get("approved"))
    review.setdefault("approvedAt", None)
    review.setdefault("approvedBy", None)
    review["verifiedPurchase"] = bool(review.get("verifiedPurchase"))
    review["pointsAwarded"] = bool(review.get("pointsAwarded"))
    if review.get("email"):
        review["email"] = str(review["email"]).strip().lower()


_MIGRATIONS = {
    "users": {1: _user_v1},
    "orders": {1: _order_v1},
    "products": {1: _product_v1},
    "reviews": {1: _review_v1},
}


def migrate_record(kind, record):
    """Upgrade one record to SCHEMA_VERSION. Returns True if it changed."""
    current = record.get("schema_version", 0)
    if current >= SCHEMA_VERSION:
        return False
    steps = _MIGRATIONS[kind]
    for version in range(current + 1, SCHEMA_VERSION + 1):
        step = steps.get(version)
        if step:
            step(record)
        record["schema_version"] = version
    return True


def migrate_records(kind, records):
    """Upgrade a list of records in place. Returns the number upgraded."""
    return sum(1 for r in records if migrate_record(kind, r))


def migrate_store(store):
    """Apply pending migrations to every data file.

    Files are rewritten only when at least one record was upgraded.
    Returns {kind: upgraded_count}.
    """
    counts = {}
    for kind in ("reviews", "orders", "users", "products"):
        with store.mutate(kind) as records:
            counts[kind] = migrate_records(kind, records)
        if counts[kind]:
            logger.info(f"Migrated {counts[kind]} {kind} record(s) to schema v{SCHEMA_VERSION}")
    return counts
