"""Tests for the rewards ledger and the rewards blueprint.

Covers:
- Whole-unit points (floor, never rounded up)
- Balance clamped at zero, history newest first
- add_points lookup by id then email, misses write nothing
- Guest-order backfill: eligibility rules and idempotency
- Redemption: rejected without touching Stripe, debit + one history entry
- Gateway failure during redemption leaves the balance alone
- Promo code listing with live status
- Review bonus with the 24h cooldown
"""

from unittest.mock import patch

import pytest
import stripe

from korelia.services.json_store import ORDERS, USERS
from korelia.services.rewards_service import (
    REWARD_TIERS,
    add_points,
    backfill_rewards_for_email,
    credit_user,
    points_for_amount,
)


def _user(store, user_id):
    return next(u for u in store.read(USERS) if u["id"] == user_id)


def _paid_order(order_id, email, subtotal, **extra):
    order = {
        "id": order_id,
        "email": email,
        "payment_status": "paid",
        "amount_subtotal": subtotal,
        "amount_total": subtotal + 490,
        "createdAt": "2024-05-01T10:00:00+00:00",
    }
    order.update(extra)
    return order


class TestPointsArithmetic:
    """Pure ledger helpers."""

    @pytest.mark.parametrize("cents,points", [
        (4599, 45), (99, 0), (100, 1), (0, 0), (None, 0), (-500, 0), (1234, 12),
    ])
    def test_points_for_amount_floors(self, cents, points):
        assert points_for_amount(cents) == points

    def test_debit_clamps_at_zero(self):
        user = {"points": 30, "rewards_history": []}
        credit_user(user, -100, "redeem:100_5")
        assert user["points"] == 0
        assert user["rewards_history"][0]["delta"] == -100

    def test_history_is_newest_first(self):
        user = {"points": 0, "rewards_history": []}
        credit_user(user, 50, "signup")
        credit_user(user, 10, "review", productId="2")
        assert [h["reason"] for h in user["rewards_history"]] == ["review", "signup"]
        assert user["rewards_history"][0]["productId"] == "2"
        assert user["rewards_history"][0]["id"] != user["rewards_history"][1]["id"]


class TestAddPoints:
    """add_points(store, ...) against users.json."""

    def test_credit_by_id(self, store, seed_users):
        user = add_points(store, 15, "order", user_id=seed_users["customer_id"])
        assert user["points"] == 135
        assert _user(store, seed_users["customer_id"])["points"] == 135

    def test_credit_by_email_is_case_insensitive(self, store, seed_users):
        assert add_points(store, 5, "order", email="  JANE@Example.com ")
        assert _user(store, seed_users["customer_id"])["points"] == 125

    def test_unknown_id_falls_back_to_email(self, store, seed_users):
        assert add_points(store, 5, "order", user_id="nope", email="jane@example.com")
        assert _user(store, seed_users["customer_id"])["points"] == 125

    def test_miss_writes_nothing(self, store, seed_users):
        with patch.object(store, "write") as mock_write:
            assert add_points(store, 5, "order", email="nobody@example.com") is None
        mock_write.assert_not_called()

    def test_same_order_is_credited_once(self, store, seed_users):
        uid = seed_users["customer_id"]
        add_points(store, 45, "order", user_id=uid, orderId="cs_1")
        add_points(store, 45, "order", user_id=uid, orderId="cs_1")
        user = _user(store, uid)
        assert user["points"] == 165
        assert len([h for h in user["rewards_history"] if h.get("orderId") == "cs_1"]) == 1


class TestBackfill:
    """Crediting guest orders placed before the account existed."""

    def test_credits_eligible_orders(self, store, seed_users):
        store.write(ORDERS, [
            _paid_order("cs_a", "jane@example.com", 4500),
            _paid_order("cs_b", "JANE@example.com", 1234),
            _paid_order("cs_c", "other@example.com", 9000),
            _paid_order("cs_d", "jane@example.com", 5000, payment_status="unpaid"),
            _paid_order("cs_e", "jane@example.com", 5000, rewards_credited_user_id="x"),
            _paid_order("cs_f", "jane@example.com", 99),
        ])
        uid = seed_users["customer_id"]

        result = backfill_rewards_for_email(store, "jane@example.com", uid)

        assert result == {"credited": 57, "orders": 2}
        assert _user(store, uid)["points"] == 120 + 57
        orders = {o["id"]: o for o in store.read(ORDERS)}
        assert orders["cs_a"]["rewards_backfill_done"] is True
        assert orders["cs_a"]["rewards_points"] == 45
        assert orders["cs_b"]["rewards_credited_user_id"] == uid
        assert "rewards_backfill_done" not in orders["cs_c"]
        assert "rewards_backfill_done" not in orders["cs_d"]
        assert "rewards_backfill_done" not in orders["cs_f"]

    def test_order_without_payment_status_counts_as_paid(self, store, seed_users):
        order = _paid_order("cs_old", "jane@example.com", 2000)
        del order["payment_status"]
        store.write(ORDERS, [order])
        result = backfill_rewards_for_email(store, "jane@example.com", seed_users["customer_id"])
        assert result == {"credited": 20, "orders": 1}

    def test_is_idempotent(self, store, seed_users):
        store.write(ORDERS, [_paid_order("cs_a", "jane@example.com", 4500)])
        uid = seed_users["customer_id"]

        first = backfill_rewards_for_email(store, "jane@example.com", uid)
        second = backfill_rewards_for_email(store, "jane@example.com", uid)

        assert first == {"credited": 45, "orders": 1}
        assert second == {"credited": 0, "orders": 0}
        assert _user(store, uid)["points"] == 165

    def test_clears_pending_marker(self, store, seed_users):
        store.write(ORDERS, [_paid_order(
            "cs_a", "jane@example.com", 4500, rewards_pending_for_email="jane@example.com",
        )])
        backfill_rewards_for_email(store, "jane@example.com", seed_users["customer_id"])
        assert "rewards_pending_for_email" not in store.read(ORDERS)[0]

    def test_skips_order_already_in_the_ledger(self, store, seed_users):
        """A live credit whose stamp never reached orders.json is not paid again."""
        uid = seed_users["customer_id"]
        store.write(ORDERS, [_paid_order("cs_a", "jane@example.com", 4500)])
        add_points(store, 45, "order", user_id=uid, orderId="cs_a")

        result = backfill_rewards_for_email(store, "jane@example.com", uid)

        assert result == {"credited": 0, "orders": 0}
        assert _user(store, uid)["points"] == 165
        assert store.read(ORDERS)[0]["rewards_credited_user_id"] == uid

    def test_nothing_to_do_writes_nothing(self, store, seed_users):
        store.write(ORDERS, [_paid_order("cs_c", "other@example.com", 9000)])
        with patch.object(store, "write") as mock_write:
            backfill_rewards_for_email(store, "jane@example.com", seed_users["customer_id"])
        mock_write.assert_not_called()


class TestRedeem:
    """POST /rewards/redeem."""

    def test_catalog_is_public(self, client):
        resp = client.get("/rewards/catalog")
        assert resp.status_code == 200
        assert resp.get_json()["200_12"]["cost"] == 200

    def test_requires_login(self, client):
        resp = client.post("/rewards/redeem", json={"tier": "100_5"})
        assert resp.status_code == 401

    @patch("korelia.services.stripe_service.stripe.PromotionCode.create")
    @patch("korelia.services.stripe_service.stripe.Coupon.create")
    def test_unknown_tier_rejected(self, mock_coupon, mock_promo, auth_client):
        resp = auth_client.post("/rewards/redeem", json={"tier": "999_99"})
        assert resp.status_code == 400
        mock_coupon.assert_not_called()
        mock_promo.assert_not_called()

    @patch("korelia.services.stripe_service.stripe.PromotionCode.create")
    @patch("korelia.services.stripe_service.stripe.Coupon.create")
    def test_insufficient_points_rejected_without_gateway_call(
        self, mock_coupon, mock_promo, auth_client, store, seed_users
    ):
        resp = auth_client.post("/rewards/redeem", json={"tier": "200_12"})
        assert resp.status_code == 400
        assert "Not enough points" in resp.get_json()["error"]
        mock_coupon.assert_not_called()
        mock_promo.assert_not_called()
        assert _user(store, seed_users["customer_id"])["points"] == 120

    @patch("korelia.services.stripe_service.stripe.PromotionCode.create")
    @patch("korelia.services.stripe_service.stripe.Coupon.create")
    def test_successful_redemption_debits_once(
        self, mock_coupon, mock_promo, auth_client, store, seed_users
    ):
        mock_coupon.return_value = {"id": "co_123"}
        mock_promo.return_value = {"id": "promo_123", "code": "KORELIA-5-ABC123"}

        resp = auth_client.post("/rewards/redeem", json={"tier": "100_5"})

        assert resp.status_code == 200
        data = resp.get_json()
        assert data == {
            "ok": True,
            "code": "KORELIA-5-ABC123",
            "amount_off_cents": 500,
            "min_amount_cents": 5000,
        }
        user = _user(store, seed_users["customer_id"])
        assert user["points"] == 20
        redeems = [h for h in user["rewards_history"] if h["reason"] == "redeem:100_5"]
        assert len(redeems) == 1
        assert redeems[0]["delta"] == -100
        assert redeems[0]["stripe_promotion_code_id"] == "promo_123"
        assert redeems[0]["stripe_coupon_id"] == "co_123"

        coupon_kwargs = mock_coupon.call_args.kwargs
        assert coupon_kwargs["amount_off"] == REWARD_TIERS["100_5"]["amount_off_cents"]
        assert coupon_kwargs["duration"] == "once"
        promo_kwargs = mock_promo.call_args.kwargs
        assert promo_kwargs["max_redemptions"] == 1
        assert promo_kwargs["code"].startswith("KORELIA-5-")
        assert promo_kwargs["restrictions"]["minimum_amount"] == 5000

    @patch("korelia.services.stripe_service.stripe.Coupon.create")
    def test_gateway_failure_keeps_points(self, mock_coupon, auth_client, store, seed_users):
        mock_coupon.side_effect = stripe.error.APIConnectionError("network down")

        resp = auth_client.post("/rewards/redeem", json={"tier": "100_5"})

        assert resp.status_code == 500
        assert _user(store, seed_users["customer_id"])["points"] == 120

    def test_me_rewards_summary(self, auth_client):
        resp = auth_client.get("/me/rewards")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["points"] == 120
        assert set(data["tiers"]) == {"100_5", "200_12", "500_35"}


class TestPromoCodes:
    """GET /me/promo-codes."""

    @patch("korelia.services.stripe_service.stripe.PromotionCode.retrieve")
    def test_lists_codes_with_live_status(self, mock_retrieve, auth_client, store, seed_users):
        with store.mutate(USERS) as users:
            user = next(u for u in users if u["id"] == seed_users["customer_id"])
            credit_user(user, -100, "redeem:100_5", code="KORELIA-5-OLD", amount_off_cents=500,
                        min_amount_cents=5000, stripe_promotion_code_id="promo_old",
                        stripe_coupon_id="co_old")
            credit_user(user, -100, "redeem:100_5", code="KORELIA-5-NEW", amount_off_cents=500,
                        min_amount_cents=5000, stripe_promotion_code_id="promo_new",
                        stripe_coupon_id="co_new")

        def retrieve(promo_id):
            if promo_id == "promo_old":
                return {"active": False, "max_redemptions": 1, "times_redeemed": 1,
                        "coupon": {"valid": True}}
            raise stripe.error.InvalidRequestError("No such promotion code", "id")

        mock_retrieve.side_effect = retrieve

        resp = auth_client.get("/me/promo-codes")

        assert resp.status_code == 200
        codes = {c["code"]: c for c in resp.get_json()}
        assert codes["KORELIA-5-OLD"]["active"] is False
        assert codes["KORELIA-5-OLD"]["times_redeemed"] == 1
        assert codes["KORELIA-5-NEW"]["active"] is False
        assert codes["KORELIA-5-NEW"]["error"] == "not_found"


class TestReviewPoints:
    """POST /reviews/add."""

    def test_review_awards_points_once_per_day(self, auth_client, store, seed_users, seed_products, outbox):
        first = auth_client.post("/reviews/add", json={"productId": "2", "rating": 5, "content": "Lovely"})
        second = auth_client.post("/reviews/add", json={"productId": "2", "rating": 4})

        assert first.status_code == 200
        assert first.get_json() == {"ok": True, "points": 130}
        assert second.status_code == 429
        assert _user(store, seed_users["customer_id"])["points"] == 130
        assert any("Snail Serum" in m["Subject"] for m in outbox)

    def test_other_product_is_not_in_cooldown(self, auth_client, seed_products):
        auth_client.post("/reviews/add", json={"productId": "1"})
        resp = auth_client.post("/reviews/add", json={"productId": "3"})
        assert resp.get_json()["points"] == 140

    def test_product_id_required(self, auth_client):
        resp = auth_client.post("/reviews/add", json={})
        assert resp.status_code == 400
