"""订单服务单元测试：下单、回滚、并发、状态机、取消与费用复核。"""

import os
import re
import sqlite3
import tempfile
import threading
from decimal import Decimal

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="order_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

from settlement.database import get_db
from settlement.models.schemas import InvalidTransitionError, OrderStatus
from settlement.services import stock_ledger
from settlement.services.cart_service import CartService
from settlement.services.catalog_service import CatalogService
from settlement.services.fee_engine import FeeConfig, FlatShippingShare
from settlement.services.order_service import (
    OrderCreateError,
    OrderNotFoundError,
    OrderPermissionError,
    OrderService,
    order_fees_to_dict,
    order_to_dict,
)
from settlement.services.platform_config import save_fee_settings
from settlement.services.settlement_events import SettlementEvents
from settlement.services.wallet_service import WalletService

BUYER = 200
ADDRESS = {"name": "张三", "city": "Istanbul", "line1": "Kadıköy 12"}


@pytest.fixture(autouse=True)
def _setup_db(reset_db):
    reset_db(_tmp.name)
    yield


@pytest.fixture
def svc():
    return OrderService(fee_config=FeeConfig())


def _stock(offer_id):
    return CatalogService().get_offer(offer_id).stock


def _order_count():
    conn = get_db()
    try:
        return conn.execute("SELECT COUNT(*) AS cnt FROM orders").fetchone()["cnt"]
    finally:
        conn.close()


def _advance(svc, order_id, *statuses):
    for status in statuses:
        svc.update_status(order_id, status, is_admin=True)


class TestCreateFromCart:
    """购物车转订单。"""

    def test_reference_scenario(self, svc, make_offer, fill_cart):
        """单件 200 元、类目佣金 10%、默认费率 → 卖家净额 176.22。"""
        offer = make_offer(price="200.00", stock=3, commission_rate="10")
        cart_id = fill_cart(BUYER, [(offer, 1)])

        order = svc.create_from_cart(cart_id, ADDRESS, notes="请尽快发货")

        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.subtotal == Decimal("200.00")
        assert order.total_amount == Decimal("200.00")
        assert order.total_commission == Decimal("20.00")
        assert order.shipping_address == ADDRESS
        assert order.notes == "请尽快发货"

        item = order.items[0]
        assert item.commission_rate == Decimal("10")
        assert item.commission_amount == Decimal("20.00")
        assert item.marketplace_fee == Decimal("1.78")
        assert item.withholding_tax == Decimal("2.00")
        assert item.net_seller_amount == Decimal("176.22")
        assert item.marketplace_fee_rate == Decimal("0.89")
        assert item.withholding_tax_rate == Decimal("1.00")

        assert _stock(offer.id) == 2
        assert CartService().get_cart(cart_id).status == "converted"

    def test_net_closure_on_every_item(self, svc, make_offer, fill_cart):
        a = make_offer(price="33.33", commission_rate="7.5", name="A")
        b = make_offer(price="19.99", commission_rate="12", seller_id=2, name="B")
        cart_id = fill_cart(BUYER, [(a, 3), (b, 2)])

        order = OrderService(fee_config=FeeConfig(), shipping=FlatShippingShare("4.99")) \
            .create_from_cart(cart_id, ADDRESS)

        for item in order.items:
            assert item.net_seller_amount == (
                item.total_price - item.commission_amount - item.marketplace_fee
                - item.withholding_tax - item.shipping_cost_share
            )
        assert sum(i.shipping_cost_share for i in order.items) == Decimal("4.99")

    def test_flat_shipping_split(self, make_offer, fill_cart):
        offers = [make_offer(name=f"商品{i}") for i in range(3)]
        cart_id = fill_cart(BUYER, [(o, 1) for o in offers])

        order = OrderService(fee_config=FeeConfig(), shipping=FlatShippingShare("10.00")) \
            .create_from_cart(cart_id, ADDRESS)

        assert [i.shipping_cost_share for i in order.items] == [
            Decimal("3.33"), Decimal("3.33"), Decimal("3.34"),
        ]
        assert order.shipping_cost == Decimal("10.00")
        # 运费从卖家净额中扣除，不计入买家应付
        assert order.total_amount == order.subtotal

    def test_shipping_larger_than_line_rejected(self, make_offer, fill_cart):
        """运费分摊超过商品金额时卖家净额为负，不下单、不扣库存。"""
        offer = make_offer(price="100.00", stock=4, name="小样")
        cart_id = fill_cart(BUYER, [(offer, 1)])

        with pytest.raises(OrderCreateError) as exc:
            OrderService(fee_config=FeeConfig(), shipping=FlatShippingShare("150")) \
                .create_from_cart(cart_id, ADDRESS)

        assert exc.value.code == "VALIDATION_FAILED"
        assert _stock(offer.id) == 4
        assert _order_count() == 0
        assert CartService().get_cart(cart_id).status == "active"

    def test_commission_disabled(self, make_offer, fill_cart):
        offer = make_offer(price="200.00")
        cart_id = fill_cart(BUYER, [(offer, 1)])
        order = OrderService(fee_config=FeeConfig(commission_enabled=False)) \
            .create_from_cart(cart_id, ADDRESS)
        assert order.items[0].commission_amount == Decimal("0.00")
        assert order.items[0].net_seller_amount == Decimal("196.22")
        assert order.items[0].commission_enabled is False

    def test_fee_config_read_from_settings(self, make_offer, fill_cart):
        save_fee_settings(marketplace_fee_rate="2", withholding_tax_rate="0")
        offer = make_offer(price="100.00", commission_rate="0")
        cart_id = fill_cart(BUYER, [(offer, 1)])

        order = OrderService().create_from_cart(cart_id, ADDRESS)
        assert order.items[0].marketplace_fee == Decimal("2.00")
        assert order.items[0].net_seller_amount == Decimal("98.00")

    def test_empty_cart(self, svc):
        cart = CartService().get_or_create_cart(BUYER)
        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(cart.id, ADDRESS)
        assert exc.value.code == "EMPTY_CART"
        assert _order_count() == 0

    def test_unknown_cart(self, svc):
        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(999, ADDRESS)
        assert exc.value.code == "CART_NOT_FOUND"

    def test_foreign_cart(self, svc, make_offer, fill_cart):
        cart_id = fill_cart(BUYER, [(make_offer(), 1)])
        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(cart_id, ADDRESS, buyer_id=BUYER + 1)
        assert exc.value.code == "CART_NOT_FOUND"

    def test_converted_cart_rejected(self, svc, make_offer, fill_cart):
        cart_id = fill_cart(BUYER, [(make_offer(), 1)])
        svc.create_from_cart(cart_id, ADDRESS)
        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(cart_id, ADDRESS)
        assert exc.value.code == "CART_CONVERTED"

    def test_stock_issue(self, svc, make_offer, fill_cart):
        offer = make_offer(stock=5, name="鱼油")
        cart_id = fill_cart(BUYER, [(offer, 4)])
        CatalogService().set_stock(offer.id, 3)

        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(cart_id, ADDRESS)
        assert exc.value.code == "STOCK_INSUFFICIENT:鱼油"
        assert exc.value.issues[0].available_stock == 3
        assert _stock(offer.id) == 3
        assert CartService().get_cart(cart_id).status == "active"

    def test_sold_out_by_other_buyer(self, svc, make_offer, fill_cart):
        """库存 3，两个买家各买 3：后下单的报库存不足，而不是商品不可售。"""
        offer = make_offer(stock=3, name="限定礼盒")
        first = fill_cart(BUYER, [(offer, 3)])
        second = fill_cart(BUYER + 1, [(offer, 3)])

        svc.create_from_cart(first, ADDRESS)
        assert CatalogService().get_offer(offer.id).status == "sold_out"

        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(second, ADDRESS)
        assert exc.value.code == "STOCK_INSUFFICIENT:限定礼盒"
        assert [i.type for i in exc.value.issues] == ["stock"]
        assert exc.value.issues[0].available_stock == 0
        assert _order_count() == 1

    def test_unavailable_offer(self, svc, make_offer, fill_cart):
        offer = make_offer()
        cart_id = fill_cart(BUYER, [(offer, 1)])
        CatalogService().set_status(offer.id, "inactive")

        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(cart_id, ADDRESS)
        assert exc.value.code == "VALIDATION_FAILED"
        assert [i.type for i in exc.value.issues] == ["unavailable"]
        assert _order_count() == 0

    def test_price_synced_before_order(self, svc, make_offer, fill_cart):
        offer = make_offer(price="100.00")
        cart_id = fill_cart(BUYER, [(offer, 2)])
        CatalogService().update_price(offer.id, "90.00")

        order = svc.create_from_cart(cart_id, ADDRESS)
        assert order.items[0].unit_price == Decimal("90.00")
        assert order.subtotal == Decimal("180.00")

    def test_reserve_failure_rolls_back_everything(self, svc, make_offer, fill_cart, monkeypatch):
        """第二项扣减失败时，第一项已扣减的库存随事务回滚恢复。"""
        first = make_offer(stock=5, name="第一件")
        second = make_offer(stock=5, name="第二件")
        cart_id = fill_cart(BUYER, [(first, 2), (second, 2)])

        real_reserve = stock_ledger.reserve
        calls = []

        def flaky_reserve(conn, offer_id, qty):
            calls.append(offer_id)
            if len(calls) == 2:
                return False
            return real_reserve(conn, offer_id, qty)

        monkeypatch.setattr(stock_ledger, "reserve", flaky_reserve)

        with pytest.raises(OrderCreateError) as exc:
            svc.create_from_cart(cart_id, ADDRESS)
        assert exc.value.code == "STOCK_INSUFFICIENT:第二件"

        assert _stock(first.id) == 5
        assert _stock(second.id) == 5
        assert _order_count() == 0
        assert CartService().get_cart(cart_id).status == "active"

    def test_order_number_format(self, svc, make_offer, fill_cart):
        cart_id = fill_cart(BUYER, [(make_offer(), 1)])
        order = svc.create_from_cart(cart_id, ADDRESS)
        assert re.match(r"^EPZ\d{6}\d{4}[A-Z0-9]{4}$", order.order_number)
        assert order.order_number[9:13] == "0001"

    def test_order_number_sequence_and_prefix(self, svc, make_offer, fill_cart, monkeypatch):
        monkeypatch.setenv("ORDER_NUMBER_PREFIX", "MKT")
        offer = make_offer()
        first = svc.create_from_cart(fill_cart(BUYER, [(offer, 1)]), ADDRESS)
        second = svc.create_from_cart(fill_cart(BUYER, [(offer, 1)]), ADDRESS)
        assert first.order_number.startswith("MKT")
        assert first.order_number[9:13] == "0001"
        assert second.order_number[9:13] == "0002"
        assert first.order_number != second.order_number


class TestConcurrentCheckout:
    """两个买家同时购买同一报价：3 + 3 对库存 5。"""

    def test_only_one_order_succeeds(self, svc, make_offer, fill_cart):
        offer = make_offer(stock=5, name="限量款")
        carts = [fill_cart(301, [(offer, 3)]), fill_cart(302, [(offer, 3)])]

        barrier = threading.Barrier(len(carts))
        results = []
        lock = threading.Lock()

        def checkout(cart_id):
            barrier.wait()
            try:
                svc.create_from_cart(cart_id, ADDRESS)
                outcome = "ok"
            except OrderCreateError as e:
                outcome = e.code
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=checkout, args=(c,)) for c in carts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["STOCK_INSUFFICIENT:限量款", "ok"]
        assert _stock(offer.id) == 2
        assert _order_count() == 1


class TestStatusMachine:
    """订单状态迁移表。"""

    def test_happy_path(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)

        order = svc.update_status(order.id, OrderStatus.CONFIRMED)
        assert order.status == "confirmed"
        order = svc.update_status(order.id, "processing")
        order = svc.update_status(order.id, "shipped")
        assert order.shipped_at is not None
        assert order.shipping_status == "shipped"
        order = svc.update_status(order.id, "delivered")
        assert order.delivered_at is not None
        assert order.status == "delivered"

    def test_invalid_transition_carries_allowed(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        with pytest.raises(InvalidTransitionError) as exc:
            svc.update_status(order.id, "shipped")
        assert exc.value.current == "pending"
        assert exc.value.target == "shipped"
        assert exc.value.allowed == ["confirmed", "processing", "cancelled"]

    def test_terminal_state_has_no_transitions(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        _advance(svc, order.id, "processing", "shipped", "delivered")
        with pytest.raises(InvalidTransitionError) as exc:
            svc.update_status(order.id, "processing")
        assert exc.value.allowed == []

    def test_unknown_status_rejected(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        with pytest.raises(InvalidTransitionError):
            svc.update_status(order.id, "returned")

    def test_unknown_order(self, svc):
        with pytest.raises(OrderNotFoundError):
            svc.update_status(999, "confirmed")

    def test_delivered_releases_pending(self, svc, make_offer, fill_cart):
        offer = make_offer(price="200.00", seller_id=9)
        order = svc.create_from_cart(fill_cart(BUYER, [(offer, 1)]), ADDRESS)
        SettlementEvents(orders=svc).handle_payment_callback(order.order_number, "paid")

        _advance(svc, order.id, "processing", "shipped", "delivered")

        wallet = WalletService().get_or_create_wallet(9)
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.balance == Decimal("176.22")


class TestCancelOrder:
    """取消订单。"""

    def test_buyer_cancel_restores_stock(self, svc, make_offer, fill_cart):
        a = make_offer(stock=5, name="A")
        b = make_offer(stock=1, name="B")
        order = svc.create_from_cart(fill_cart(BUYER, [(a, 2), (b, 1)]), ADDRESS)
        assert CatalogService().get_offer(b.id).status == "sold_out"

        order = svc.cancel_order(order.id, BUYER)

        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert _stock(a.id) == 5
        restored = CatalogService().get_offer(b.id)
        assert restored.stock == 1
        assert restored.status == "active"

    def test_other_buyer_forbidden(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        with pytest.raises(OrderPermissionError):
            svc.cancel_order(order.id, BUYER + 1)

    def test_admin_may_cancel(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        assert svc.cancel_order(order.id, None, is_admin=True).status == "cancelled"

    def test_cancel_after_processing_rejected(self, svc, make_offer, fill_cart):
        offer = make_offer(stock=5)
        order = svc.create_from_cart(fill_cart(BUYER, [(offer, 2)]), ADDRESS)
        svc.update_status(order.id, "processing")

        with pytest.raises(InvalidTransitionError) as exc:
            svc.cancel_order(order.id, BUYER)
        assert exc.value.allowed == ["shipped"]
        assert _stock(offer.id) == 3

    def test_can_be_cancelled_until_processing(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        assert order.can_be_cancelled()
        assert svc.update_status(order.id, "confirmed").can_be_cancelled()

        processing = svc.update_status(order.id, "processing")
        assert not processing.can_be_cancelled()
        with pytest.raises(InvalidTransitionError) as exc:
            svc.cancel_order(order.id, BUYER)
        assert exc.value.current == "processing"
        assert exc.value.target == "cancelled"

    def test_cancel_twice_rejected(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        svc.cancel_order(order.id, BUYER)
        with pytest.raises(InvalidTransitionError):
            svc.cancel_order(order.id, BUYER)

    def test_update_status_cancelled_routes_to_cancel(self, svc, make_offer, fill_cart):
        offer = make_offer(stock=5)
        order = svc.create_from_cart(fill_cart(BUYER, [(offer, 2)]), ADDRESS)
        order = svc.update_status(order.id, "cancelled", actor_id=BUYER)
        assert order.status == "cancelled"
        assert _stock(offer.id) == 5

    def test_cancel_paid_order_reverses_credit(self, svc, make_offer, fill_cart):
        offer = make_offer(price="200.00", seller_id=5)
        order = svc.create_from_cart(fill_cart(BUYER, [(offer, 1)]), ADDRESS)
        SettlementEvents(orders=svc).handle_payment_callback(order.id, "paid")

        wallets = WalletService()
        assert wallets.get_or_create_wallet(5).pending_balance == Decimal("176.22")

        order = svc.cancel_order(order.id, BUYER)
        assert order.payment_status == "refunded"

        wallet = wallets.get_or_create_wallet(5)
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.total_earned == Decimal("0.00")
        assert wallet.total_commission == Decimal("0.00")
        assert wallets.reconcile(5)["consistent"] is True


class TestQueriesAndVerification:

    def test_list_orders(self, svc, make_offer, fill_cart):
        a = make_offer(seller_id=1, name="A")
        b = make_offer(seller_id=2, name="B")
        svc.create_from_cart(fill_cart(BUYER, [(a, 1), (b, 1)]), ADDRESS)
        svc.create_from_cart(fill_cart(BUYER, [(a, 1)]), ADDRESS)

        orders, total = svc.list_buyer_orders(BUYER)
        assert total == 2
        assert len(orders) == 2

        seller_orders, seller_total = svc.list_seller_orders(2)
        assert seller_total == 1
        assert [i.seller_id for i in seller_orders[0].items] == [2]

    def test_get_order_by_ref(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        assert svc.get_order_by_ref(order.order_number).id == order.id
        assert svc.get_order_by_ref(str(order.id)).id == order.id
        assert svc.get_order_by_ref("EPZ000000") is None

    def test_rate_snapshot_survives_rate_change(self, svc, fill_cart):
        catalog = CatalogService()
        category = catalog.create_category("保健品", "10")
        product = catalog.create_product("蛋白粉", category.id)
        offer = catalog.create_offer(product.id, 1, "200.00", 5)
        order = svc.create_from_cart(fill_cart(BUYER, [(offer, 1)]), ADDRESS)

        catalog.set_commission_rate(category.id, "25")
        save_fee_settings(marketplace_fee_rate="3", withholding_tax_rate="5")

        stored = svc.get_order(order.id).items[0]
        assert stored.commission_rate == Decimal("10")
        assert stored.net_seller_amount == Decimal("176.22")

        report = svc.verify_order_fees(order.id)
        assert report["consistent"] is True
        assert report["mismatches"] == []

        # 新订单使用新的类目费率
        newer = svc.create_from_cart(fill_cart(BUYER, [(offer, 1)]), ADDRESS)
        assert newer.items[0].commission_rate == Decimal("25")

    def test_verify_unknown_order(self, svc):
        with pytest.raises(OrderNotFoundError):
            svc.verify_order_fees(999)

    def test_order_items_cannot_be_rewritten(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(), 1)]), ADDRESS)
        conn = get_db()
        try:
            with pytest.raises(sqlite3.DatabaseError):
                conn.execute(
                    "UPDATE order_items SET net_seller_amount = 0 WHERE order_id = ?", (order.id,)
                )
        finally:
            conn.close()
        assert svc.verify_order_fees(order.id)["consistent"] is True

    def test_order_to_dict(self, svc, make_offer, fill_cart):
        order = svc.create_from_cart(fill_cart(BUYER, [(make_offer(price="200.00"), 1)]), ADDRESS)
        data = order_to_dict(order)
        assert data["total_amount"] == "200.00"
        assert data["items"][0]["net_seller_amount"] == "176.22"
        assert data["shipping_address"] == ADDRESS

    def test_order_fees_to_dict_per_seller(self, make_offer, fill_cart):
        """卖家视角只统计自己的明细；佣金关闭时扣费行为 0.00 而不是 -0.00。"""
        mine = make_offer(price="200.00", seller_id=5, name="mine")
        theirs = make_offer(price="50.00", seller_id=6, name="theirs")
        order = OrderService(fee_config=FeeConfig(commission_enabled=False)) \
            .create_from_cart(fill_cart(BUYER, [(mine, 1), (theirs, 1)]), ADDRESS)

        data = order_fees_to_dict(order, seller_id=5)
        assert data["total_sales"] == "200.00"
        assert data["net_amount"] == "196.22"
        assert [i["item_id"] for i in data["items"]] == [order.items[0].id]
        assert data["items"][0]["lines"][1]["value"] == "0.00"

        totals = order_fees_to_dict(order)
        assert totals["total_commission"] == "0.00"
        assert len(totals["items"]) == 2
