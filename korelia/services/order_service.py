"""Order service — webhook ingestion and order/stock bookkeeping.

Responsible for:
- Turning a checkout.session.completed event into an order record
- Crediting rewards for the order (or marking them pending for the email)
- Decrementing stock for the products (and pack components) sold
- Queueing the order confirmation email
- Order lookups for the storefront, the account page and the admin

The order id is the Checkout Session id, which makes it the idempotency
key: a replayed event for a recorded session changes nothing.
"""

import json
import logging

import stripe

from korelia.errors import PersistenceFailed
from korelia.models.order import (
    ORDER_STATUSES,
    build_order,
    build_order_items,
    order_matches_customer,
    set_status,
)
from korelia.models.product import expand_items_to_stock_map, tracked_stock
from korelia.models.schema import now_iso
from korelia.models.user import clamp_string
from korelia.services import stripe_service
from korelia.services.email_service import send_order_confirmation
from korelia.services.json_store import ORDERS, PRODUCTS, get_catalog, get_store
from korelia.services.rewards_service import (
    add_points,
    order_points_basis,
    points_for_amount,
)

logger = logging.getLogger(__name__)

STOCK_OPS = ("inc", "set")


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Only checkout.session.completed is handled; everything else is
    acknowledged and ignored.

    The order is written before any points move, so a failed order write
    (the only case answered with a 500) leaves users.json untouched. If
    stamping the credit onto the order fails afterwards, the ledger entry
    carries the orderId and the signup/login backfill will not pay it again.

    Returns (success: bool, message: str).
    """
    event = stripe_service.as_dict(event)
    event_type = event.get("type")
    if event_type != "checkout.session.completed":
        logger.info(f"Ignoring webhook event {event.get('id')} ({event_type})")
        return True, "ignored"

    session = (event.get("data") or {}).get("object") or {}
    session_id = session.get("id")
    if not session_id:
        logger.warning(f"checkout.session.completed {event.get('id')} without a session id")
        return True, "ignored"

    store = get_store()
    catalog = get_catalog()

    # --- Idempotency check ---
    if find_order_by_session(store, session_id):
        logger.info(f"Order {session_id} already recorded, skipping")
        return True, "already_processed"

    # --- Enrich from Stripe (network, outside any lock) ---
    full_session, line_items = _enrich_session(session)

    raw_items = parse_metadata_items(full_session)
    items, stock_map = _snapshot_items(session_id, raw_items, catalog)
    order = build_order(full_session, items, line_items)
    order["stock_breakdown"] = stock_breakdown(stock_map, catalog)

    # --- Persist, under the orders lock ---
    try:
        with store.mutate(ORDERS) as orders:
            if any(o.get("id") == session_id for o in orders):
                logger.info(f"Order {session_id} recorded concurrently, skipping")
                return True, "already_processed"
            orders.append(order)
    except PersistenceFailed as e:
        logger.error(f"Could not record order {session_id}: {e}", exc_info=True)
        return False, "Could not record order"

    logger.info(
        f"Order {session_id} recorded ({order['amount_total']} {order['currency']}, "
        f"{len(order['items'])} line(s))"
    )

    # --- Rewards ---
    try:
        with store.mutate(ORDERS) as orders:
            _credit_order_rewards(store, order)
            stored = next((o for o in orders if o.get("id") == session_id), None)
            if stored is not None:
                stored.update({k: v for k, v in order.items() if k.startswith("rewards_")})
    except PersistenceFailed as e:
        logger.error(f"Could not stamp rewards on order {session_id}: {e}", exc_info=True)

    # --- Stock ---
    try:
        decrement_stock(store, catalog, stock_map)
    except PersistenceFailed as e:
        logger.error(f"Stock update failed for order {session_id}: {e}", exc_info=True)

    # --- Confirmation email ---
    try:
        send_order_confirmation(order)
    except Exception as e:
        logger.error(f"Could not queue confirmation for {session_id}: {e}", exc_info=True)

    return True, "processed"


def _enrich_session(session):
    """Expanded session + line items; falls back to the event payload."""
    session_id = session["id"]
    full_session = session
    try:
        full_session = stripe_service.retrieve_checkout_session(session_id) or session
    except stripe.error.StripeError as e:
        logger.warning(f"Could not retrieve session {session_id}: {e}")

    line_items = []
    try:
        line_items = stripe_service.list_line_items(session_id)
    except stripe.error.StripeError as e:
        logger.warning(f"Could not list line items for {session_id}: {e}")
    return full_session, line_items


def parse_metadata_items(session):
    """Cart snapshot stored in session.metadata.items ([] if absent or bad JSON)."""
    raw = (session.get("metadata") or {}).get("items")
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Unreadable metadata.items on session {session.get('id')}")
        return []
    return items if isinstance(items, list) else []


def _snapshot_items(session_id, raw_items, catalog):
    """Display lines + stock map from the cart snapshot.

    A snapshot that cannot be interpreted yields no lines and no stock
    change; the order then falls back to Stripe's line items.
    """
    try:
        return build_order_items(raw_items, catalog), expand_items_to_stock_map(raw_items, catalog)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Unusable cart snapshot on session {session_id}: {e}")
        return [], {}


def stock_breakdown(stock_map, catalog):
    """[{id, qty, name}] view of a stock map, for the admin order view."""
    breakdown = []
    for product_id, qty in stock_map.items():
        product = catalog.get(product_id)
        breakdown.append({
            "id": product_id,
            "qty": qty,
            "name": product.get("name") if product else None,
        })
    return breakdown


def _credit_order_rewards(store, order):
    """Credit the buyer (by user id, else by email) and stamp the order.

    With no matching account the order is marked pending for its email,
    so the points are picked up by the backfill at signup/login. Failures
    are logged and never block the order.
    """
    points = points_for_amount(order_points_basis(order))
    if points <= 0:
        return
    user_id, email = order.get("user_id"), order.get("email")
    try:
        user = add_points(store, points, "order", user_id=user_id, email=email, orderId=order["id"])
        if user is None:
            if email:
                order["rewards_pending_for_email"] = email.lower()
            logger.info(f"Rewards for order {order['id']} pending: no account for {email}")
            return
        order["rewards_credited_user_id"] = user["id"]
        if user["id"] != user_id:
            order["rewards_credited_email"] = user["email"]
        order["rewards_points"] = points
        order["rewards_at"] = now_iso()
        logger.info(f"Rewards: +{points} pts to {user['email']} for order {order['id']}")
    except Exception as e:
        logger.warning(f"Rewards credit failed for order {order['id']}: {e}", exc_info=True)
        if email:
            order["rewards_pending_for_email"] = email.lower()


# ──────────────────────────────────────────────
# Stock
# ──────────────────────────────────────────────

def decrement_stock(store, catalog, stock_map):
    """Take sold quantities out of products.json (never below zero).

    Products without numeric stock are not tracked and are skipped.
    Returns [{id, from, to}] for the products that changed.
    """
    changes = []
    if not stock_map:
        return changes
    with store.mutate(PRODUCTS) as products:
        for product in products:
            need = stock_map.get(str(product.get("id")))
            if not need:
                continue
            stock = tracked_stock(product)
            if stock is None:
                continue
            new_stock = max(0, stock - need)
            if new_stock != product.get("stock"):
                product["stock"] = new_stock
                changes.append({"id": str(product["id"]), "from": stock, "to": new_stock})
    if changes:
        catalog.reload()
        logger.info(f"Stock updated: {changes}")
    return changes


def adjust_stock(store, catalog, product_id, op, value):
    """Admin stock change: `inc` adds `value`, `set` replaces the stock.

    The result is truncated to an int and floored at 0.
    Returns the updated product, or None if it does not exist.
    Raises ValueError on a bad op or value.
    """
    if op not in STOCK_OPS:
        raise ValueError("op must be 'inc' or 'set'")
    try:
        amount = int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise ValueError("value must be a number")

    with store.mutate(PRODUCTS) as products:
        product = next((p for p in products if str(p.get("id")) == str(product_id)), None)
        if product is None:
            return None
        current = tracked_stock(product) or 0
        product["stock"] = max(0, current + amount if op == "inc" else amount)
    catalog.reload()
    logger.info(f"Stock for product {product_id} {op} {amount} -> {product['stock']}")
    return product


# ──────────────────────────────────────────────
# Order lookups / admin
# ──────────────────────────────────────────────

def find_order_by_session(store, session_id):
    if not session_id:
        return None
    return next((o for o in store.read(ORDERS) if o.get("id") == session_id), None)


def _newest_first(orders):
    return sorted(orders, key=lambda o: o.get("createdAt") or "", reverse=True)


def all_orders(store):
    return _newest_first(store.read(ORDERS))


def orders_for_customer(store, user_id, email):
    return _newest_first(
        o for o in store.read(ORDERS) if order_matches_customer(o, user_id, email)
    )


def _tracking_info(tracking):
    if not isinstance(tracking, dict):
        return None
    info = {
        "carrier": clamp_string(tracking.get("carrier"), 80) or None,
        "number": clamp_string(tracking.get("number"), 120) or None,
        "url": clamp_string(tracking.get("url"), 500) or None,
    }
    return info if any(info.values()) else None


def update_order_status(store, order_id, status, tracking=None, by="admin"):
    """Move an order to a new status, recording who did it.

    Tracking info is only kept when the order is shipped.
    Returns the updated order, or None if it does not exist.
    Raises ValueError on an unknown status.
    """
    if status not in ORDER_STATUSES:
        raise ValueError(f"Invalid status: {status}")

    with store.mutate(ORDERS) as orders:
        order = next((o for o in orders if o.get("id") == order_id), None)
        if order is None:
            return None
        info = _tracking_info(tracking) if status == "shipped" else None
        set_status(order, status, by, tracking=info)
    logger.info(f"Order {order_id} -> {status} (by {by})")
    return order
