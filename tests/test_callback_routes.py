"""外部协作方回调路由测试：签名校验、支付入账、签收释放。"""

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="callback_routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

from settlement.main import app
from settlement.services.fee_engine import FeeConfig
from settlement.services.order_service import OrderService
from settlement.services.sign import generate_sign
from settlement.services.wallet_service import WalletService

KEY = "test-callback-key"
SELLER = 33


@pytest.fixture(autouse=True)
def _setup_db(reset_db, monkeypatch):
    monkeypatch.setenv("CALLBACK_KEY", KEY)
    reset_db(_tmp.name)
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def order(make_offer, fill_cart):
    offer = make_offer(price="200.00", seller_id=SELLER)
    return OrderService(fee_config=FeeConfig()).create_from_cart(
        fill_cart(900, [(offer, 1)]), {"city": "Konya"},
    )


def _signed(params: dict, key: str = KEY) -> dict:
    return {**params, "sign": generate_sign(params, key)}


class TestPaymentCallback:

    def test_paid(self, client, order):
        resp = client.post("/v1/callbacks/payment", json=_signed({
            "order_ref": order.order_number, "payment_status": "paid",
        }))
        data = resp.json()
        assert data["code"] == 1
        assert data["payment_status"] == "paid"
        assert data["credited_sellers"] == [SELLER]
        assert WalletService().get_wallet_summary(SELLER)["pending_balance"] == "176.22"

    def test_retry_does_not_double_credit(self, client, order):
        body = _signed({"order_ref": order.order_number, "payment_status": "paid"})
        client.post("/v1/callbacks/payment", json=body)
        data = client.post("/v1/callbacks/payment", json=body).json()
        assert data["credited_sellers"] == []
        assert WalletService().get_wallet_summary(SELLER)["pending_balance"] == "176.22"

    def test_bad_sign(self, client, order):
        resp = client.post("/v1/callbacks/payment", json=_signed({
            "order_ref": order.order_number, "payment_status": "paid",
        }, key="wrong-key"))
        assert resp.status_code == 403
        assert WalletService().get_transactions(SELLER) == []

    def test_unconfigured_key_rejects(self, client, order, monkeypatch):
        monkeypatch.delenv("CALLBACK_KEY")
        resp = client.post("/v1/callbacks/payment", json=_signed({
            "order_ref": order.order_number, "payment_status": "paid",
        }, key=""))
        assert resp.status_code == 403

    def test_unknown_order(self, client):
        resp = client.post("/v1/callbacks/payment", json=_signed({
            "order_ref": "EPZ0000000000NONE", "payment_status": "paid",
        }))
        assert resp.status_code == 404

    def test_invalid_status(self, client, order):
        data = client.post("/v1/callbacks/payment", json=_signed({
            "order_ref": order.order_number, "payment_status": "chargeback",
        })).json()
        assert data["code"] == -1


class TestDeliveryCallback:

    def test_delivery_releases_funds(self, client, order):
        client.post("/v1/callbacks/payment", json=_signed({
            "order_ref": order.order_number, "payment_status": "paid",
        }))
        orders = OrderService()
        orders.update_status(order.id, "processing")
        orders.update_status(order.id, "shipped")

        data = client.post("/v1/callbacks/delivery", json=_signed({"order_ref": order.order_number})).json()
        assert data["code"] == 1
        assert data["status"] == "delivered"
        summary = WalletService().get_wallet_summary(SELLER)
        assert summary["balance"] == "176.22"
        assert summary["pending_balance"] == "0.00"

    def test_delivery_before_shipping(self, client, order):
        data = client.post("/v1/callbacks/delivery", json=_signed({"order_ref": order.order_number})).json()
        assert data["error"] == "INVALID_TRANSITION"

    def test_delivery_bad_sign(self, client, order):
        resp = client.post("/v1/callbacks/delivery", json={"order_ref": order.order_number, "sign": "x"})
        assert resp.status_code == 403

    def test_delivery_unknown_order(self, client):
        resp = client.post("/v1/callbacks/delivery", json=_signed({"order_ref": "missing"}))
        assert resp.status_code == 404
