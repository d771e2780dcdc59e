"""Stripe service — every call the storefront makes to the Stripe API.

Responsible for:
- Creating Checkout Sessions (line items, shipping options, cart metadata)
- Retrieving sessions / line items for webhook enrichment
- Webhook signature verification
- Reward redemption codes (coupon + single-use promotion code)
- Promotion code validation and lookup
- Keeping a Stripe Customer in sync with the account's saved address
"""

import json
import logging
import secrets

import stripe
from flask import current_app

from korelia.errors import CheckoutError, PromoCodeInvalid
from korelia.models.product import (
    expand_items_to_stock_map,
    norm_qty,
    price_cents,
    tracked_stock,
)
from korelia.services.json_store import get_catalog

logger = logging.getLogger(__name__)


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


def as_dict(obj):
    """Plain (recursive) dict for a StripeObject; plain values pass through."""
    if obj is None or type(obj) in (dict, list, str, int, float, bool):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return obj


def _euros(cents):
    return f"{cents / 100:.2f}"


# ──────────────────────────────────────────────
# Webhook + session enrichment
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.error.SignatureVerificationError on invalid signature,
    ValueError on a bad payload or when no webhook secret is configured.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    if not webhook_secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def retrieve_checkout_session(session_id):
    """Session with payment_intent + latest_charge expanded (for addresses)."""
    _configure()
    session = stripe.checkout.Session.retrieve(
        session_id, expand=["payment_intent", "payment_intent.latest_charge"]
    )
    return as_dict(session)


def list_line_items(session_id):
    _configure()
    result = as_dict(stripe.checkout.Session.list_line_items(session_id))
    return list((result or {}).get("data") or [])


# ──────────────────────────────────────────────
# Rewards redemption codes
# ──────────────────────────────────────────────

def create_redemption_code(tier):
    """Create a one-time discount code for a reward tier.

    Coupon: fixed amount off, once. Promotion code: KORELIA-<euros>-<hex>,
    one redemption, minimum order amount.
    Returns (coupon, promotion_code) as dicts.
    Raises stripe.error.StripeError on API failures.
    """
    _configure()
    currency = current_app.config["CURRENCY"]
    coupon = stripe.Coupon.create(
        amount_off=tier["amount_off_cents"],
        currency=currency,
        duration="once",
    )
    code = f"KORELIA-{tier['amount_off_cents'] // 100}-{secrets.token_hex(3).upper()}"
    promo = stripe.PromotionCode.create(
        coupon=coupon["id"],
        code=code,
        max_redemptions=1,
        restrictions={
            "minimum_amount": tier["min_amount_cents"],
            "minimum_amount_currency": currency,
        },
    )
    return as_dict(coupon), as_dict(promo)


def retrieve_promotion_code(promotion_code_id):
    _configure()
    return as_dict(stripe.PromotionCode.retrieve(promotion_code_id))


def validate_promo_code(code, items_total_cents):
    """Check a customer-entered promotion code against the cart total.

    Returns (promo, coupon) as dicts.
    Raises PromoCodeInvalid with a user-facing message.
    """
    code = str(code or "").strip()
    if not code:
        raise PromoCodeInvalid("A promo code is required.")

    _configure()
    currency = current_app.config["CURRENCY"]
    found = as_dict(stripe.PromotionCode.list(code=code, active=True, limit=1))
    data = (found or {}).get("data") or []
    if not data:
        raise PromoCodeInvalid("This promo code is invalid or inactive.")
    promo = data[0]
    coupon = promo.get("coupon") or {}

    if not coupon.get("valid"):
        raise PromoCodeInvalid("This promo code has expired.")
    max_redemptions = promo.get("max_redemptions")
    if max_redemptions and (promo.get("times_redeemed") or 0) >= max_redemptions:
        raise PromoCodeInvalid("This promo code is no longer available.")

    restrictions = promo.get("restrictions") or {}
    minimum = restrictions.get("minimum_amount") or 0
    if minimum > 0:
        min_currency = (restrictions.get("minimum_amount_currency") or currency).lower()
        if min_currency != currency:
            raise PromoCodeInvalid("This promo code is not valid for this currency.")
        if items_total_cents < minimum:
            raise PromoCodeInvalid(
                f"A minimum order of {_euros(minimum)} EUR is required for this code."
            )
    if coupon.get("amount_off") and str(coupon.get("currency")).lower() != currency:
        raise PromoCodeInvalid("This promo code is not valid for this currency.")

    return promo, coupon


def describe_promo(promo, coupon):
    """Summary returned by POST /api/validate-promo."""
    minimum = (promo.get("restrictions") or {}).get("minimum_amount") or 0
    kind, percent_off, amount_off_cents, desc = None, 0, 0, ""
    if coupon.get("amount_off"):
        kind = "fixed"
        amount_off_cents = int(coupon["amount_off"])
        desc = f"-{_euros(amount_off_cents)} EUR"
    elif coupon.get("percent_off"):
        kind = "percent"
        percent_off = coupon["percent_off"]
        desc = f"-{percent_off}%"
    min_note = f" (from {_euros(minimum)} EUR)" if minimum else ""
    return {
        "ok": True,
        "promotion_code_id": promo.get("id"),
        "code": promo.get("code"),
        "description": f"{desc}{min_note}".strip(),
        "kind": kind,
        "percent_off": percent_off,
        "amount_off_cents": amount_off_cents,
        "min_cents": minimum,
    }


# ──────────────────────────────────────────────
# Customers
# ──────────────────────────────────────────────

def _stripe_address(shipping):
    return {
        "line1": shipping.get("line1") or "",
        "line2": shipping.get("line2") or "",
        "postal_code": shipping.get("postal_code") or "",
        "city": shipping.get("city") or "",
        "country": (shipping.get("country") or "BE").upper(),
    }


def ensure_customer_for_user(user):
    """Find the Stripe Customer for the user's email, or create it, and
    push the saved shipping address / phone onto it.

    Returns the customer dict, or None if the user has no email.
    """
    if not user or not user.get("email"):
        return None
    _configure()

    customer = None
    try:
        found = as_dict(stripe.Customer.list(email=user["email"], limit=1))
        data = (found or {}).get("data") or []
        customer = data[0] if data else None
    except stripe.error.StripeError as e:
        logger.warning(f"Stripe customer lookup failed for {user['email']}: {e}")

    shipping = user.get("shipping_address")
    phone = user.get("phone") or None
    params = {"name": user.get("name") or None, "phone": phone}
    if shipping:
        address = _stripe_address(shipping)
        params["address"] = address
        params["shipping"] = {
            "name": shipping.get("name") or user.get("name") or user["email"],
            "phone": phone,
            "address": address,
        }
    params = {k: v for k, v in params.items() if v is not None}

    if customer is None:
        return as_dict(stripe.Customer.create(email=user["email"], **params))

    try:
        stripe.Customer.modify(customer["id"], **params)
    except stripe.error.StripeError as e:
        logger.warning(f"Stripe customer update failed for {customer['id']}: {e}")
    return customer


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def cart_total_cents(cart_items, catalog):
    total = 0
    for row in cart_items:
        if row.get("type") == "custom_pack":
            total += int(row.get("price_cents") or 0) * norm_qty(row)
            continue
        product = catalog.get(row.get("id"))
        if product:
            total += price_cents(product) * norm_qty(row)
    return total


def _line_items(cart_items, catalog, currency):
    lines = []
    for row in cart_items:
        if row.get("type") == "custom_pack":
            lines.append({
                "quantity": norm_qty(row),
                "price_data": {
                    "currency": currency,
                    "unit_amount": int(row.get("price_cents") or 0),
                    "product_data": {
                        "name": row.get("name") or "Custom pack",
                        "description": "Custom pack (discount included)",
                    },
                },
            })
            continue
        product = catalog.get(row.get("id"))
        if not product:
            raise CheckoutError(f"Unknown product: {row.get('id')}")
        product_data = {"name": product.get("name")}
        if product.get("brand"):
            product_data["description"] = product["brand"]
        lines.append({
            "quantity": norm_qty(row),
            "price_data": {
                "currency": currency,
                "unit_amount": price_cents(product),
                "product_data": product_data,
            },
        })
    return lines


def _shipping_rate(name, amount, currency, min_days, max_days):
    return {
        "shipping_rate_data": {
            "display_name": name,
            "fixed_amount": {"amount": amount, "currency": currency},
            "type": "fixed_amount",
            "delivery_estimate": {
                "minimum": {"unit": "business_day", "value": min_days},
                "maximum": {"unit": "business_day", "value": max_days},
            },
        }
    }


def shipping_options(items_total_cents):
    cfg = current_app.config
    currency = cfg["CURRENCY"]
    if items_total_cents >= cfg["FREE_SHIPPING_THRESHOLD_CENTS"]:
        standard = _shipping_rate("Standard delivery (free)", 0, currency, 2, 4)
    else:
        standard = _shipping_rate(
            "Standard delivery", cfg["STANDARD_SHIPPING_CENTS"], currency, 2, 4
        )
    express = _shipping_rate(
        "Express delivery", cfg["EXPRESS_SHIPPING_CENTS"], currency, 1, 2
    )
    return [standard, express]


def check_stock(cart_items, catalog):
    """Raise CheckoutError if any product lacks the requested quantity."""
    wanted = expand_items_to_stock_map(cart_items, catalog)
    for pid, need in wanted.items():
        product = catalog.get(pid)
        stock = tracked_stock(product)
        if product is None or stock is None:
            raise CheckoutError(f"Product unavailable ({pid})")
        if need > stock:
            raise CheckoutError(
                f"Not enough stock for {product.get('name')} "
                f"(available: {stock}, requested: {need})"
            )
    return wanted


def create_checkout_session(cart_items, user=None, customer_email=None, promo_code=None):
    """Create a Stripe Checkout Session for a cart.

    The raw cart (and the user id, when logged in) travels in the session
    metadata so the webhook can rebuild the order and decrement stock.

    Returns the Stripe checkout session URL.
    Raises CheckoutError / PromoCodeInvalid on cart problems,
    stripe.error.StripeError on API failures.
    """
    _configure()
    cfg = current_app.config
    catalog = get_catalog()
    currency = cfg["CURRENCY"]

    line_items = _line_items(cart_items, catalog, currency)
    items_total = cart_total_cents(cart_items, catalog)
    check_stock(cart_items, catalog)

    metadata = {"items": json.dumps(cart_items)}
    customer_params = {}
    if user:
        customer = ensure_customer_for_user(user)
        if customer:
            customer_params = {
                "customer": customer["id"],
                "customer_update": {"shipping": "auto", "address": "auto", "name": "auto"},
            }
        metadata["userId"] = user["id"]
    elif customer_email:
        customer_params = {"customer_email": customer_email}

    discounts = []
    if promo_code:
        promo, _coupon = validate_promo_code(promo_code, items_total)
        discounts = [{"promotion_code": promo["id"]}]

    client_url = cfg["CLIENT_URL"]
    session_params = dict(
        mode="payment",
        payment_method_types=["card", "bancontact"],
        line_items=line_items,
        billing_address_collection="auto",
        shipping_address_collection={"allowed_countries": cfg["SHIPPING_COUNTRIES"]},
        shipping_options=shipping_options(items_total),
        phone_number_collection={"enabled": True},
        success_url=f"{client_url}/merci?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{client_url}/panier",
        metadata=metadata,
        **customer_params,
    )
    # Stripe rejects allow_promotion_codes together with discounts
    if discounts:
        session_params["discounts"] = discounts
    else:
        session_params["allow_promotion_codes"] = True

    session = stripe.checkout.Session.create(**session_params)
    logger.info(f"Checkout session {session['id']} created ({items_total} cents)")
    return session["url"]
