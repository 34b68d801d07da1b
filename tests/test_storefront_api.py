"""
API tests for loyalty, inventory administration and product view analytics.
"""
import json
from decimal import Decimal

from conftest import bearer, stock_levels

from storefront import cache, crud, models


class TestLoyaltyApi:

    def test_first_read_opens_bronze_account(self, client, db, customer_headers):
        response = client.get("/loyalty/1", headers=customer_headers)

        assert response.status_code == 200
        assert response.json() == {
            "points": 0,
            "tier": "Bronze",
            "tier_progress": 0.0,
            "next_tier_points": 1000,
            "lifetime_points": 0,
            "redeemable_points": 0,
        }
        assert db.query(models.LoyaltyAccount).filter_by(user_id=1).count() == 1

    def test_other_users_account_forbidden(self, client):
        response = client.get("/loyalty/1", headers=bearer(2))
        assert response.status_code == 403

    def test_transactions_newest_first(self, client, db, order_factory, admin_headers):
        first = order_factory(payment_method="cod")
        second = order_factory(payment_method="cod")
        client.patch(f"/orders/{first.id}", json={"status": "confirmed"}, headers=admin_headers)
        client.patch(f"/orders/{second.id}", json={"status": "confirmed"}, headers=admin_headers)

        response = client.get("/loyalty/1/transactions", headers=bearer(1))

        assert [t["order_id"] for t in response.json()] == [second.id, first.id]

    def test_rewards_catalog(self, client, db):
        db.add_all([
            models.LoyaltyReward(name="20% off", type="discount", value=Decimal("20"), points_required=1000),
            models.LoyaltyReward(name="10% off", type="discount", value=Decimal("10"), points_required=500),
            models.LoyaltyReward(name="Retired", type="discount", value=Decimal("5"), points_required=100, is_active=False),
        ])
        db.commit()

        response = client.get("/loyalty/rewards")

        assert response.status_code == 200
        assert [r["name"] for r in response.json()] == ["10% off", "20% off"]

    def test_redeem(self, client, db, customer_headers):
        db.add(models.LoyaltyAccount(user_id=1, current_points=1200, total_earned=1200, tier="Silver"))
        reward = models.LoyaltyReward(name="10% off", type="discount", value=Decimal("10"), points_required=500)
        db.add(reward)
        db.commit()

        response = client.post("/loyalty/redeem", json={"user_id": 1, "reward_id": reward.id}, headers=customer_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["points_remaining"] == 700
        assert data["coupon_code"].startswith("LOYALTY")
        assert db.query(models.UserCoupon).filter_by(user_id=1).count() == 1

    def test_redeem_insufficient_points(self, client, db, customer_headers):
        db.add(models.LoyaltyAccount(user_id=1, current_points=100, total_earned=100, tier="Bronze"))
        reward = models.LoyaltyReward(name="10% off", type="discount", value=Decimal("10"), points_required=500)
        db.add(reward)
        db.commit()

        response = client.post("/loyalty/redeem", json={"user_id": 1, "reward_id": reward.id}, headers=customer_headers)

        assert response.status_code == 400
        db.expire_all()
        assert db.query(models.LoyaltyAccount).filter_by(user_id=1).one().current_points == 100

    def test_redeem_unknown_reward(self, client, customer_headers):
        response = client.post("/loyalty/redeem", json={"user_id": 1, "reward_id": 31337}, headers=customer_headers)
        assert response.status_code == 404

    def test_redeem_for_someone_else_forbidden(self, client):
        response = client.post("/loyalty/redeem", json={"user_id": 1, "reward_id": 1}, headers=bearer(2))
        assert response.status_code == 403


class TestInventoryAdmin:

    def test_stock_in(self, client, db, products, admin_headers):
        response = client.post(
            f"/admin/inventory/{products[0].id}/adjust",
            json={"type": "in", "quantity": 5, "reason": "restock"},
            headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["stock_quantity"] == 15
        assert stock_levels(db, products)[0] == 15

    def test_stock_out_floors_at_zero(self, client, products, admin_headers):
        response = client.post(
            f"/admin/inventory/{products[1].id}/adjust",
            json={"type": "out", "quantity": 50},
            headers=admin_headers
        )
        assert response.json()["stock_quantity"] == 0

    def test_invalid_movement_type(self, client, products, admin_headers):
        response = client.post(
            f"/admin/inventory/{products[0].id}/adjust",
            json={"type": "teleport", "quantity": 1},
            headers=admin_headers
        )
        assert response.status_code == 422

    def test_missing_product(self, client, admin_headers):
        response = client.post("/admin/inventory/999/adjust", json={"type": "in", "quantity": 1}, headers=admin_headers)
        assert response.status_code == 404

    def test_customers_cannot_adjust(self, client, products, customer_headers):
        response = client.post(
            f"/admin/inventory/{products[0].id}/adjust",
            json={"type": "in", "quantity": 1},
            headers=customer_headers
        )
        assert response.status_code == 403

    def test_movement_log(self, client, products, order_factory, admin_headers):
        order = order_factory(quantities=(2, 0, 0), payment_method="cod")
        client.patch(f"/orders/{order.id}", json={"status": "confirmed"}, headers=admin_headers)
        client.post(f"/admin/inventory/{products[0].id}/adjust", json={"type": "in", "quantity": 3}, headers=admin_headers)

        response = client.get(f"/admin/stock-movements?product_id={products[0].id}", headers=admin_headers)

        assert [(m["type"], m["quantity"]) for m in response.json()] == [("in", 3), ("order_confirmed", 2)]


class TestProductViews:

    def test_anonymous_view(self, client, db, products, mock_redis):
        response = client.post(f"/products/{products[0].id}/view?session_id=sess-1")

        assert response.status_code == 200
        assert response.json() == {"success": True, "view_count": 1}
        view = db.query(models.ProductView).one()
        assert (view.user_id, view.session_id) == (None, "sess-1")
        mock_redis.incr.assert_called_once_with(cache.product_views_key(products[0].id))

    def test_signed_in_view_updates_recently_viewed(self, client, products, mock_redis, customer_headers):
        mock_redis.get.return_value = json.dumps([products[1].id, products[0].id])

        client.post(f"/products/{products[0].id}/view", headers=customer_headers)

        key, ttl, value = mock_redis.setex.call_args.args
        assert key == cache.recently_viewed_key(1)
        assert ttl == cache.RECENTLY_VIEWED_TTL
        assert json.loads(value) == [products[0].id, products[1].id]

    def test_view_missing_product(self, client):
        response = client.post("/products/999/view")
        assert response.status_code == 404

    def test_trending_ranking_and_cache_fill(self, client, db, products, mock_redis):
        for user_id in (1, 1, 2):
            crud.record_product_view(db, products[0].id, user_id=user_id)
        crud.record_product_view(db, products[1].id, session_id="sess-9")

        response = client.get("/products/trending?period=weekly&limit=5")

        assert response.status_code == 200
        data = response.json()
        assert [(p["id"], p["view_count"], p["unique_viewers"]) for p in data] == [
            (products[0].id, 3, 2),
            (products[1].id, 1, 1),
        ]
        assert data[0]["trend_score"] == 2.7
        key, ttl, _ = mock_redis.setex.call_args.args
        assert (key, ttl) == (cache.trending_key("weekly", 5), cache.TRENDING_CACHE_TTL)

    def test_trending_served_from_cache(self, client, mock_redis):
        cached = [{
            "id": 1, "name": "Silk Saree", "category": "women", "price": "250.00", "image_url": None,
            "view_count": 9, "unique_viewers": 4, "trend_score": 7.5,
        }]
        mock_redis.get.return_value = json.dumps(cached)

        response = client.get("/products/trending")

        assert response.json()[0]["view_count"] == 9
        mock_redis.setex.assert_not_called()

    def test_trending_works_without_redis(self, client, products, mock_redis):
        mock_redis.get.side_effect = ConnectionError("redis down")
        mock_redis.setex.side_effect = ConnectionError("redis down")

        response = client.get("/products/trending")

        assert response.status_code == 200
        assert response.json() == []

    def test_recently_viewed_in_recency_order(self, client, products, mock_redis, customer_headers):
        mock_redis.get.return_value = json.dumps([products[2].id, 999, products[0].id])

        response = client.get("/recently-viewed", headers=customer_headers)

        assert [p["id"] for p in response.json()] == [products[2].id, products[0].id]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "healthy"}
