"""Order records (orders.json).

An order's id is the Stripe Checkout Session id it was created from.

Status flow: paid -> preparing -> shipped -> delivered, or canceled.
`status_history` is append-only; its last entry always matches `status`.
"""

from korelia.models.product import norm_qty, price_cents, resolve_product_id
from korelia.models.schema import SCHEMA_VERSION, now_iso

ORDER_STATUSES = ("paid", "preparing", "shipped", "delivered", "canceled")


def is_paid(order):
    """Orders without a payment_status predate the field and were paid."""
    return (order.get("payment_status") or "paid") == "paid"


def order_matches_customer(order, user_id=None, email=None):
    if user_id and order.get("user_id") == user_id:
        return True
    key = str(email or "").strip().lower()
    return bool(key) and str(order.get("email") or "").lower() == key


def build_order_items(raw_items, catalog):
    """Display lines for the cart snapshot sent in checkout metadata."""
    lines = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        if item.get("custom_pack") or item.get("type") == "custom_pack":
            components = []
            raw_components = item.get("components")
            for comp in raw_components if isinstance(raw_components, list) else []:
                cid = resolve_product_id(comp, catalog) or (
                    str(comp["id"]) if isinstance(comp, dict) and comp.get("id") is not None else None
                )
                if cid is None:
                    continue
                product = catalog.get(cid)
                components.append({
                    "id": cid,
                    "qty": norm_qty(comp),
                    "name": product.get("name") if product else f"#{cid}",
                    "brand": product.get("brand") if product else None,
                    "price_cents": price_cents(product) if product else 0,
                })
            lines.append({
                "type": "custom_pack",
                "name": item.get("name") or "Custom pack",
                "qty": norm_qty(item),
                "price_cents": int(item.get("price_cents") or 0),
                "components": components,
            })
            continue

        pid = str(item.get("id"))
        product = catalog.get(pid)
        lines.append({
            "type": "single",
            "id": pid,
            "qty": norm_qty(item),
            "name": product.get("name") if product else f"#{pid}",
            "brand": product.get("brand") if product else None,
            "price_cents": price_cents(product) if product else 0,
        })
    return lines


def _sub(obj, *keys):
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def extract_shipping(session):
    """Shipping snapshot: the first source carrying an address wins.

    shipping_details -> payment_intent.shipping -> customer_details
    -> latest_charge.billing_details, else all-null.
    """
    details = session.get("shipping_details")
    if _sub(details, "address"):
        return {
            "name": details.get("name") or _sub(session, "customer_details", "name"),
            "phone": details.get("phone") or _sub(session, "customer_details", "phone"),
            "address": details["address"],
        }
    for source in (
        _sub(session, "payment_intent", "shipping"),
        session.get("customer_details"),
        _sub(session, "payment_intent", "latest_charge", "billing_details"),
    ):
        if _sub(source, "address"):
            return {
                "name": source.get("name"),
                "phone": source.get("phone"),
                "address": source["address"],
            }
    return {"name": None, "phone": None, "address": None}


def build_order(session, items, line_items):
    """Assemble the order record for a completed checkout session."""
    amount_total = session.get("amount_total") or 0
    amount_subtotal = session.get("amount_subtotal") or 0
    created_at = now_iso()

    stripe_line_items = []
    if not items:
        stripe_line_items = [
            {
                "name": li.get("description"),
                "qty": li.get("quantity"),
                "amount_subtotal": li.get("amount_subtotal"),
            }
            for li in line_items
        ]

    return {
        "id": session["id"],
        "payment_status": session.get("payment_status"),
        "amount_total": amount_total,
        "amount_subtotal": amount_subtotal,
        "shipping_cost": amount_total - amount_subtotal,
        "currency": (session.get("currency") or "eur").lower(),
        "email": _sub(session, "customer_details", "email"),
        "customer_name": _sub(session, "customer_details", "name"),
        "items": items,
        "stripe_line_items": stripe_line_items,
        "createdAt": created_at,
        "shipping": extract_shipping(session),
        "shipping_option": _sub(session, "shipping_cost", "shipping_rate"),
        "client_reference_id": session.get("client_reference_id"),
        "user_id": _sub(session, "metadata", "userId"),
        "status": "paid",
        "status_history": [{"at": created_at, "status": "paid", "by": "system"}],
        "schema_version": SCHEMA_VERSION,
    }


def set_status(order, status, by, tracking=None):
    """Move the order to `status` and append the audit entry."""
    order["status"] = status
    entry = {"at": now_iso(), "status": status, "by": by}
    if tracking:
        order["tracking"] = tracking
        entry["tracking"] = tracking
    order.setdefault("status_history", []).append(entry)
    return order
