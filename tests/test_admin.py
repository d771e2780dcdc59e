"""Tests for the admin blueprint.

Covers:
- Auth guards (anonymous 401, non-admin 403)
- Order list and status updates with an audit trail
- Tracking info only kept for shipped orders
- Product list and stock adjustments (inc / set / floor at zero)
"""

from korelia.services.json_store import ORDERS, PRODUCTS


def _seed_orders(store):
    store.write(ORDERS, [
        {"id": "cs_old", "email": "a@example.com", "status": "paid", "createdAt": "2024-04-01T09:00:00+00:00",
         "status_history": [{"at": "2024-04-01T09:00:00+00:00", "status": "paid", "by": "system"}]},
        {"id": "cs_new", "email": "b@example.com", "status": "paid", "createdAt": "2024-05-02T09:00:00+00:00",
         "status_history": [{"at": "2024-05-02T09:00:00+00:00", "status": "paid", "by": "system"}]},
    ])


# ══════════════════════════════════════════════
#  AUTH GUARDS
# ══════════════════════════════════════════════

class TestAdminAuthGuards:
    """Verify non-admin users are rejected from all admin routes."""

    def test_anonymous_gets_401(self, client):
        assert client.get("/admin/orders").status_code == 401
        assert client.get("/admin/products").status_code == 401

    def test_customer_gets_403(self, auth_client):
        resp = auth_client.get("/admin/orders")
        assert resp.status_code == 403
        assert resp.get_json()["error"] == "Admin only"

    def test_customer_cannot_change_stock(self, auth_client, store, seed_products):
        resp = auth_client.put("/admin/products/1/stock", json={"op": "set", "value": 0})
        assert resp.status_code == 403
        assert next(p for p in store.read(PRODUCTS) if p["id"] == "1")["stock"] == 10

    def test_customer_cannot_change_status(self, auth_client, store):
        _seed_orders(store)
        resp = auth_client.patch("/admin/orders/cs_old/status", json={"status": "shipped"})
        assert resp.status_code == 403


# ══════════════════════════════════════════════
#  ORDERS
# ══════════════════════════════════════════════

class TestAdminOrders:
    """Order list and fulfilment status."""

    def test_list_newest_first(self, admin_client, store):
        _seed_orders(store)
        resp = admin_client.get("/admin/orders")
        assert resp.status_code == 200
        assert [o["id"] for o in resp.get_json()] == ["cs_new", "cs_old"]

    def test_status_update_appends_history(self, admin_client, store):
        _seed_orders(store)

        resp = admin_client.patch("/admin/orders/cs_old/status", json={"status": "preparing"})

        assert resp.status_code == 200
        order = next(o for o in store.read(ORDERS) if o["id"] == "cs_old")
        assert order["status"] == "preparing"
        assert len(order["status_history"]) == 2
        assert order["status_history"][-1]["status"] == "preparing"
        assert order["status_history"][-1]["by"] == "admin@korelia.test"

    def test_shipped_keeps_tracking(self, admin_client, store):
        _seed_orders(store)
        tracking = {"carrier": "bpost", "number": "CD123456789BE", "url": "https://track.bpost.be/x"}

        resp = admin_client.patch("/admin/orders/cs_old/status",
                                  json={"status": "shipped", "tracking": tracking})

        data = resp.get_json()
        assert data["tracking"] == tracking
        assert data["status_history"][-1]["tracking"] == tracking

    def test_tracking_ignored_unless_shipped(self, admin_client, store):
        _seed_orders(store)
        resp = admin_client.patch("/admin/orders/cs_old/status", json={
            "status": "preparing", "tracking": {"carrier": "bpost", "number": "X"},
        })
        assert "tracking" not in resp.get_json()

    def test_invalid_status(self, admin_client, store):
        _seed_orders(store)
        resp = admin_client.patch("/admin/orders/cs_old/status", json={"status": "lost"})
        assert resp.status_code == 400
        order = next(o for o in store.read(ORDERS) if o["id"] == "cs_old")
        assert order["status"] == "paid"
        assert len(order["status_history"]) == 1

    def test_unknown_order(self, admin_client, store):
        _seed_orders(store)
        resp = admin_client.patch("/admin/orders/cs_nope/status", json={"status": "shipped"})
        assert resp.status_code == 404


# ══════════════════════════════════════════════
#  PRODUCTS / STOCK
# ══════════════════════════════════════════════

class TestAdminStock:
    """Product list and stock adjustments."""

    def _stock(self, store, product_id):
        return next(p for p in store.read(PRODUCTS) if p["id"] == product_id).get("stock")

    def test_product_list(self, admin_client, seed_products):
        products = {p["id"]: p for p in admin_client.get("/admin/products").get_json()}
        assert products["1"]["stock"] == 10
        assert products["4"]["stock"] == 0
        assert products["1"]["price_cents"] == 1290

    def test_increment(self, admin_client, store, catalog, seed_products):
        resp = admin_client.put("/admin/products/1/stock", json={"op": "inc", "value": 5})
        assert resp.status_code == 200
        assert resp.get_json() == {"id": "1", "stock": 15}
        assert self._stock(store, "1") == 15
        assert catalog.get("1")["stock"] == 15

    def test_decrement_floors_at_zero(self, admin_client, store, seed_products):
        resp = admin_client.put("/admin/products/3/stock", json={"op": "inc", "value": -10})
        assert resp.get_json()["stock"] == 0

    def test_set(self, admin_client, store, seed_products):
        resp = admin_client.put("/admin/products/2/stock", json={"op": "set", "value": 42.9})
        assert resp.get_json()["stock"] == 42
        assert self._stock(store, "2") == 42

    def test_set_starts_tracking(self, admin_client, store, seed_products):
        admin_client.put("/admin/products/4/stock", json={"op": "inc", "value": 3})
        assert self._stock(store, "4") == 3

    def test_value_must_be_number(self, admin_client, store, seed_products):
        for value in ("12", None, True):
            resp = admin_client.put("/admin/products/1/stock", json={"op": "set", "value": value})
            assert resp.status_code == 400
        assert self._stock(store, "1") == 10

    def test_bad_op(self, admin_client, seed_products):
        resp = admin_client.put("/admin/products/1/stock", json={"op": "multiply", "value": 2})
        assert resp.status_code == 400

    def test_unknown_product(self, admin_client, seed_products):
        resp = admin_client.put("/admin/products/999/stock", json={"op": "set", "value": 1})
        assert resp.status_code == 404
