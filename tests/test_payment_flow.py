"""
API tests for gateway payments, payment reminders and the payment window.
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import bearer, stock_levels

from storefront import config, crud, models, notifications, payments
from storefront.clients import razorpay_client


def callback(gateway_order_id, payment_id="pay_001", signature=None):
    if signature is None:
        signature = payments.compute_signature(gateway_order_id, payment_id, config.RAZORPAY_KEY_SECRET)
    return {
        "razorpay_order_id": gateway_order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": signature,
    }


class TestVerifyPayment:

    def test_valid_callback_confirms_order(self, client, db, products, order_factory, dispatch):
        order = order_factory(quantities=(2, 1, 4), razorpay_order_id="order_GW1")

        response = client.post("/payments/verify", json=callback("order_GW1"))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["order_id"] == order.id
        assert data["payment_id"] == "pay_001"
        assert data["already_verified"] is False

        db.expire_all()
        stored = db.get(models.Order, order.id)
        assert stored.status == "confirmed"
        assert stored.payment_status == "paid"
        assert stored.razorpay_payment_id == "pay_001"
        assert stock_levels(db, products) == (8, 4, 16)
        dispatch.assert_called_once()
        assert dispatch.call_args.args[0] == notifications.PAYMENT_CONFIRMATION

    def test_first_payment_creates_loyalty_account(self, client, db, order_factory):
        order_factory(quantities=(2, 1, 4), razorpay_order_id="order_GW1")

        client.post("/payments/verify", json=callback("order_GW1"))

        account = db.query(models.LoyaltyAccount).filter_by(user_id=1).one()
        assert (account.current_points, account.total_earned, account.tier) == (40, 40, "Bronze")
        entry = db.query(models.LoyaltyTransaction).one()
        assert (entry.type, entry.points) == ("earned", 40)

    def test_repeated_callback_is_idempotent(self, client, db, products, order_factory, dispatch):
        order_factory(quantities=(2, 1, 4), razorpay_order_id="order_GW1")

        first = client.post("/payments/verify", json=callback("order_GW1"))
        second = client.post("/payments/verify", json=callback("order_GW1"))

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["already_verified"] is True
        assert stock_levels(db, products) == (8, 4, 16)
        assert db.query(models.LoyaltyTransaction).count() == 1
        assert db.query(models.LoyaltyAccount).filter_by(user_id=1).one().current_points == 40
        assert dispatch.call_count == 1

    def test_different_payment_on_paid_order_rejected(self, client, order_factory):
        order_factory(razorpay_order_id="order_GW1")
        client.post("/payments/verify", json=callback("order_GW1", "pay_001"))

        response = client.post("/payments/verify", json=callback("order_GW1", "pay_002"))

        assert response.status_code == 400

    def test_tampered_signature_rejected(self, client, db, products, order_factory):
        order = order_factory(razorpay_order_id="order_GW1")
        good = payments.compute_signature("order_GW1", "pay_001", config.RAZORPAY_KEY_SECRET)
        raw = bytearray(bytes.fromhex(good))
        raw[0] ^= 0x01

        response = client.post("/payments/verify", json=callback("order_GW1", signature=raw.hex()))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payment signature"
        db.expire_all()
        assert db.get(models.Order, order.id).status == "pending"
        assert stock_levels(db, products) == (10, 5, 20)

    def test_non_ascii_signature_rejected(self, client, db, products, order_factory):
        order = order_factory(razorpay_order_id="order_GW1")

        response = client.post("/payments/verify", json=callback("order_GW1", signature="é" * 64))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid payment signature"
        db.expire_all()
        assert db.get(models.Order, order.id).payment_status == "pending"
        assert stock_levels(db, products) == (10, 5, 20)

    def test_unknown_gateway_order(self, client, order_factory):
        order_factory(razorpay_order_id="order_GW1")
        response = client.post("/payments/verify", json=callback("order_OTHER"))
        assert response.status_code == 404

    def test_loyalty_failure_does_not_fail_payment(self, client, db, products, order_factory):
        order = order_factory(quantities=(2, 1, 4), razorpay_order_id="order_GW1")

        with patch("storefront.loyalty.award_points_for_order", side_effect=RuntimeError("ledger down")):
            response = client.post("/payments/verify", json=callback("order_GW1"))

        assert response.status_code == 200
        db.expire_all()
        stored = db.get(models.Order, order.id)
        assert (stored.status, stored.payment_status) == ("confirmed", "paid")
        assert stock_levels(db, products) == (8, 4, 16)
        assert db.query(models.LoyaltyTransaction).count() == 0

    def test_payment_after_cancellation_is_recorded(self, client, db, products, order_factory):
        order = order_factory(status="cancelled", razorpay_order_id="order_GW1")

        response = client.post("/payments/verify", json=callback("order_GW1"))

        assert response.status_code == 400
        assert "refund" in response.json()["detail"]
        db.expire_all()
        stored = db.get(models.Order, order.id)
        assert (stored.status, stored.payment_status) == ("cancelled", "paid")
        assert stock_levels(db, products) == (10, 5, 20)

    def test_missing_secret(self, client, order_factory, monkeypatch):
        order_factory(razorpay_order_id="order_GW1")
        payload = callback("order_GW1")
        monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", "")

        response = client.post("/payments/verify", json=payload)

        assert response.status_code == 500


class TestCreatePaymentOrder:

    def test_creates_gateway_order(self, client, db, order_factory, customer_headers):
        order = order_factory()
        gateway = AsyncMock(return_value={
            "id": "order_GW9", "amount": 200000, "currency": "INR", "receipt": order.order_number
        })

        with patch("storefront.clients.razorpay_client.create_gateway_order", gateway):
            response = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)

        assert response.status_code == 200
        assert response.json() == {"id": "order_GW9", "amount": 200000, "currency": "INR", "receipt": order.order_number}
        gateway.assert_awaited_once_with(200000, currency="INR", receipt=order.order_number)
        db.expire_all()
        assert db.get(models.Order, order.id).razorpay_order_id == "order_GW9"

    def test_retry_reuses_open_gateway_order(self, client, db, products, order_factory, customer_headers):
        order = order_factory(quantities=(2, 1, 4))
        gateway = AsyncMock(side_effect=[
            {"id": "order_A", "amount": 200000, "currency": "INR", "receipt": order.order_number},
            {"id": "order_B", "amount": 200000, "currency": "INR", "receipt": order.order_number},
        ])

        with patch("storefront.clients.razorpay_client.create_gateway_order", gateway):
            first = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)
            retry = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)

        assert first.json()["id"] == retry.json()["id"] == "order_A"
        assert retry.json()["amount"] == 200000
        gateway.assert_awaited_once()

        response = client.post("/payments/verify", json=callback("order_A"))

        assert response.status_code == 200
        db.expire_all()
        paid = db.get(models.Order, order.id)
        assert (paid.status, paid.payment_status) == ("confirmed", "paid")
        assert stock_levels(db, products) == (8, 4, 16)

    def test_attach_keeps_first_gateway_order(self, db, order_factory):
        order = order_factory(razorpay_order_id="order_A")

        stored = crud.attach_gateway_order(db, order, "order_B")

        assert stored.razorpay_order_id == "order_A"
        assert crud.get_order_by_gateway_id(db, "order_B") is None

    def test_gateway_error(self, client, order_factory, customer_headers):
        order = order_factory()
        gateway = AsyncMock(side_effect=httpx.ConnectError("gateway unreachable"))

        with patch("storefront.clients.razorpay_client.create_gateway_order", gateway):
            response = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)

        assert response.status_code == 502
        assert response.json()["detail"] == "Payment gateway error"

    def test_gateway_not_configured(self, client, order_factory, customer_headers):
        order = order_factory()
        gateway = AsyncMock(side_effect=razorpay_client.GatewayNotConfigured("Razorpay not configured"))

        with patch("storefront.clients.razorpay_client.create_gateway_order", gateway):
            response = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)

        assert response.status_code == 500

    def test_paid_order_rejected(self, client, order_factory, customer_headers):
        order = order_factory(status="confirmed", payment_status="paid")
        response = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)
        assert response.status_code == 400

    def test_zero_amount_rejected(self, client, order_factory, customer_headers):
        order = order_factory(total_amount=0)
        response = client.post("/payments/create-order", json={"order_id": order.id}, headers=customer_headers)
        assert response.status_code == 400

    def test_public_config_hides_secret(self, client):
        response = client.get("/config/razorpay")
        assert response.json() == {"enabled": True, "key_id": "rzp_test_key"}


class TestPaymentWindow:

    def test_reminder_within_window(self, client, order_factory, customer_headers, dispatch):
        order = order_factory(created_at=datetime.utcnow() - timedelta(minutes=5))

        response = client.post("/orders/payment-reminder", json={"order_id": order.id}, headers=customer_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["payment_link"] == f"{config.PUBLIC_BASE_URL}/checkout?order_id={order.id}&retry=true"
        assert data["time_remaining"] == 15
        template, payload = dispatch.call_args.args
        assert template == notifications.PAYMENT_REMINDER
        assert payload["payment_link"] == data["payment_link"]

    def test_reminder_after_window_cancels(self, client, db, order_factory, customer_headers):
        order = order_factory(created_at=datetime.utcnow() - timedelta(minutes=25))

        response = client.post("/orders/payment-reminder", json={"order_id": order.id}, headers=customer_headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Payment window expired. Order has been cancelled."
        db.expire_all()
        assert db.get(models.Order, order.id).status == "cancelled"

    def test_reminder_for_paid_order(self, client, order_factory, customer_headers):
        order = order_factory(status="confirmed", payment_status="paid")
        response = client.post("/orders/payment-reminder", json={"order_id": order.id}, headers=customer_headers)
        assert response.status_code == 404

    def test_reminder_for_cod_order(self, client, order_factory, customer_headers):
        order = order_factory(payment_method="cod")
        response = client.post("/orders/payment-reminder", json={"order_id": order.id}, headers=customer_headers)
        assert response.status_code == 400

    def test_reading_expired_order_cancels_it(self, client, order_factory, customer_headers):
        order = order_factory(created_at=datetime.utcnow() - timedelta(minutes=30))

        response = client.get(f"/orders/{order.id}", headers=customer_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    @pytest.mark.parametrize("overrides", [
        {"payment_method": "cod"},
        {"status": "confirmed", "payment_status": "paid"},
    ])
    def test_reading_does_not_expire_other_orders(self, client, order_factory, customer_headers, overrides):
        order = order_factory(created_at=datetime.utcnow() - timedelta(minutes=30), **overrides)

        response = client.get(f"/orders/{order.id}", headers=customer_headers)

        assert response.json()["status"] == overrides.get("status", "pending")

    def test_sweep_cancels_only_expired_online_orders(self, client, order_factory, admin_headers):
        stale = datetime.utcnow() - timedelta(minutes=45)
        expired_a = order_factory(created_at=stale)
        expired_b = order_factory(created_at=stale, user_id=2)
        order_factory()
        order_factory(created_at=stale, payment_method="cod")

        response = client.post("/orders/expire-unpaid", headers=admin_headers)

        assert response.status_code == 200
        assert sorted(response.json()["cancelled_order_ids"]) == sorted([expired_a.id, expired_b.id])

    def test_sweep_is_admin_only(self, client):
        response = client.post("/orders/expire-unpaid", headers=bearer(1))
        assert response.status_code == 403
