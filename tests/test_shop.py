"""Tests for the public storefront API (/api/*).

Covers:
- Catalog listing and product detail (pack stock is computed)
- Checkout Session creation: line items, shipping, metadata, stock checks
- Promo code validation
- Post-payment order lookup by session id
"""

import json
from unittest.mock import patch

import stripe

from korelia.services.json_store import ORDERS


def _checkout(client, items, **extra):
    return client.post("/api/create-checkout-session", json={"items": items, **extra})


def _promo(code="SPRING10", **overrides):
    promo = {
        "id": "promo_1",
        "code": code,
        "active": True,
        "max_redemptions": None,
        "times_redeemed": 0,
        "restrictions": {"minimum_amount": 3000, "minimum_amount_currency": "eur"},
        "coupon": {"valid": True, "amount_off": 1000, "currency": "eur", "percent_off": None},
    }
    promo.update(overrides)
    return promo


class TestCatalog:
    """GET /api/products and /api/products/<slug>."""

    def test_lists_public_projection(self, client, seed_products):
        resp = client.get("/api/products")
        assert resp.status_code == 200
        products = {p["id"]: p for p in resp.get_json()}
        assert products["1"]["price_cents"] == 1290
        assert products["2"]["price_cents"] == 2450
        assert products["4"]["stock"] is None
        assert products["1"]["skin_types"] == []

    def test_pack_stock_is_limited_by_components(self, client, seed_products):
        products = {p["id"]: p for p in client.get("/api/products").get_json()}
        # snail-serum: 5 in stock, 2 per pack
        assert products["10"]["stock"] == 2

    def test_product_detail(self, client, seed_products):
        resp = client.get("/api/products/glow-routine")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["id"] == "10"
        assert data["stock"] == 2
        assert data["price_cents"] == 3200
        assert data["pack_items"][1]["slug"] == "snail-serum"

    def test_unknown_slug(self, client, seed_products):
        resp = client.get("/api/products/does-not-exist")
        assert resp.status_code == 404


class TestCheckout:
    """POST /api/create-checkout-session."""

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_guest_checkout(self, mock_create, client, seed_products):
        mock_create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.com/c/pay/cs_new"}
        items = [{"id": "1", "qty": 2}]

        resp = _checkout(client, items, customerEmail="guest@example.com")

        assert resp.status_code == 200
        assert resp.get_json() == {"url": "https://checkout.stripe.com/c/pay/cs_new"}
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["customer_email"] == "guest@example.com"
        assert kwargs["line_items"][0]["quantity"] == 2
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 1290
        assert kwargs["line_items"][0]["price_data"]["product_data"]["description"] == "Haru"
        assert json.loads(kwargs["metadata"]["items"]) == items
        assert "userId" not in kwargs["metadata"]
        assert kwargs["allow_promotion_codes"] is True
        assert "discounts" not in kwargs
        assert kwargs["success_url"].startswith("http://localhost:5173/merci?session_id=")

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_shipping_free_above_threshold(self, mock_create, client, seed_products):
        mock_create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.com/x"}

        _checkout(client, [{"id": "2", "qty": 3}])  # 73.50 EUR

        standard = mock_create.call_args.kwargs["shipping_options"][0]["shipping_rate_data"]
        assert standard["fixed_amount"]["amount"] == 0

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_shipping_charged_below_threshold(self, mock_create, client, seed_products):
        mock_create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.com/x"}

        _checkout(client, [{"id": "1", "qty": 1}])

        options = mock_create.call_args.kwargs["shipping_options"]
        assert options[0]["shipping_rate_data"]["fixed_amount"]["amount"] == 490
        assert options[1]["shipping_rate_data"]["fixed_amount"]["amount"] == 990

    @patch("korelia.services.stripe_service.stripe.Customer.modify")
    @patch("korelia.services.stripe_service.stripe.Customer.list")
    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_logged_in_checkout_links_account(self, mock_create, mock_list, mock_modify,
                                              auth_client, seed_products, seed_users):
        mock_list.return_value = {"data": [{"id": "cus_123"}]}
        mock_create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.com/x"}

        resp = _checkout(auth_client, [{"id": "1", "qty": 1}])

        assert resp.status_code == 200
        kwargs = mock_create.call_args.kwargs
        assert kwargs["customer"] == "cus_123"
        assert kwargs["metadata"]["userId"] == seed_users["customer_id"]
        assert "customer_email" not in kwargs

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_pack_checkout_checks_component_stock(self, mock_create, client, seed_products):
        resp = _checkout(client, [{"id": "10", "qty": 3}])
        assert resp.status_code == 400
        assert "Not enough stock for Snail Serum" in resp.get_json()["error"]
        mock_create.assert_not_called()

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_untracked_stock_is_unavailable(self, mock_create, client, seed_products):
        resp = _checkout(client, [{"id": "4", "qty": 1}])
        assert resp.status_code == 400
        mock_create.assert_not_called()

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_custom_pack_line(self, mock_create, client, seed_products):
        mock_create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.com/x"}
        items = [{"type": "custom_pack", "name": "My routine", "qty": 1, "price_cents": 3000,
                  "components": [{"id": "1", "qty": 1}, {"id": "3", "qty": 1}]}]

        resp = _checkout(client, items)

        assert resp.status_code == 200
        line = mock_create.call_args.kwargs["line_items"][0]
        assert line["price_data"]["unit_amount"] == 3000
        assert line["price_data"]["product_data"]["name"] == "My routine"

    def test_empty_cart(self, client):
        resp = _checkout(client, [])
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Cart is empty"

    def test_unknown_product(self, client, seed_products):
        resp = _checkout(client, [{"id": "999", "qty": 1}])
        assert resp.status_code == 400

    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_stripe_failure(self, mock_create, client, seed_products):
        mock_create.side_effect = stripe.error.APIConnectionError("down")
        resp = _checkout(client, [{"id": "1", "qty": 1}])
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Payment error"

    @patch("korelia.services.stripe_service.stripe.PromotionCode.list")
    @patch("korelia.services.stripe_service.stripe.checkout.Session.create")
    def test_promo_code_applied_as_discount(self, mock_create, mock_list, client, seed_products):
        mock_list.return_value = {"data": [_promo()]}
        mock_create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.com/x"}

        resp = _checkout(client, [{"id": "2", "qty": 2}], promo_code=" SPRING10 ")

        assert resp.status_code == 200
        kwargs = mock_create.call_args.kwargs
        assert kwargs["discounts"] == [{"promotion_code": "promo_1"}]
        assert "allow_promotion_codes" not in kwargs


class TestValidatePromo:
    """POST /api/validate-promo."""

    @patch("korelia.services.stripe_service.stripe.PromotionCode.list")
    def test_valid_fixed_amount_code(self, mock_list, client, seed_products):
        mock_list.return_value = {"data": [_promo()]}

        resp = client.post("/api/validate-promo", json={
            "items": [{"id": "2", "qty": 2}], "promo_code": "SPRING10",
        })

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["ok"] is True
        assert data["kind"] == "fixed"
        assert data["amount_off_cents"] == 1000
        assert data["min_cents"] == 3000
        assert data["description"] == "-10.00 EUR (from 30.00 EUR)"

    @patch("korelia.services.stripe_service.stripe.PromotionCode.list")
    def test_minimum_not_reached(self, mock_list, client, seed_products):
        mock_list.return_value = {"data": [_promo()]}

        resp = client.post("/api/validate-promo", json={
            "items": [{"id": "1", "qty": 1}], "promo_code": "SPRING10",
        })

        assert resp.status_code == 400
        assert resp.get_json()["ok"] is False
        assert "30.00 EUR" in resp.get_json()["error"]

    @patch("korelia.services.stripe_service.stripe.PromotionCode.list")
    def test_unknown_code(self, mock_list, client, seed_products):
        mock_list.return_value = {"data": []}
        resp = client.post("/api/validate-promo", json={"items": [], "promo_code": "NOPE"})
        assert resp.status_code == 400

    @patch("korelia.services.stripe_service.stripe.PromotionCode.list")
    def test_used_up_code(self, mock_list, client, seed_products):
        mock_list.return_value = {"data": [_promo(max_redemptions=1, times_redeemed=1)]}
        resp = client.post("/api/validate-promo", json={
            "items": [{"id": "2", "qty": 2}], "promo_code": "SPRING10",
        })
        assert resp.status_code == 400
        assert "no longer available" in resp.get_json()["error"]

    @patch("korelia.services.stripe_service.stripe.PromotionCode.list")
    def test_percent_code(self, mock_list, client, seed_products):
        coupon = {"valid": True, "amount_off": None, "percent_off": 15}
        mock_list.return_value = {"data": [_promo(restrictions={}, coupon=coupon)]}
        resp = client.post("/api/validate-promo", json={
            "items": [{"id": "1", "qty": 1}], "promo_code": "SPRING10",
        })
        assert resp.get_json()["description"] == "-15%"

    def test_missing_code(self, client):
        resp = client.post("/api/validate-promo", json={"items": []})
        assert resp.status_code == 400


class TestOrderLookup:
    """GET /api/orders/by-session/<id>."""

    def test_found(self, client, store):
        store.write(ORDERS, [{"id": "cs_done", "amount_total": 1780, "status": "paid"}])
        resp = client.get("/api/orders/by-session/cs_done")
        assert resp.status_code == 200
        assert resp.get_json()["amount_total"] == 1780

    def test_not_found_after_polling(self, client, store):
        with patch.object(store, "read", wraps=store.read) as mock_read:
            resp = client.get("/api/orders/by-session/cs_missing")
        assert resp.status_code == 404
        assert mock_read.call_count == 6
