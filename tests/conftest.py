"""全局测试配置：测试模式、建库脚本与通用数据构造。"""

import os
import sqlite3

import pytest

# 在任何模块导入之前设置 TESTING 环境变量
os.environ["TESTING"] = "1"

DROP_ALL = """
    DROP TABLE IF EXISTS wallet_transactions;
    DROP TABLE IF EXISTS payout_requests;
    DROP TABLE IF EXISTS bank_accounts;
    DROP TABLE IF EXISTS seller_wallets;
    DROP TABLE IF EXISTS order_items;
    DROP TABLE IF EXISTS orders;
    DROP TABLE IF EXISTS cart_items;
    DROP TABLE IF EXISTS carts;
    DROP TABLE IF EXISTS offers;
    DROP TABLE IF EXISTS products;
    DROP TABLE IF EXISTS categories;
    DROP TABLE IF EXISTS system_config;
    DROP TABLE IF EXISTS admin;
"""


def reset_database(path: str) -> None:
    """清空指定测试库并重新建表。"""
    import settlement.database as db_mod

    os.environ["DB_PATH"] = path
    db_mod.DB_PATH = path
    conn = sqlite3.connect(path)
    conn.executescript(DROP_ALL)
    conn.close()
    db_mod.init_db()


@pytest.fixture
def reset_db():
    return reset_database


@pytest.fixture
def make_offer():
    """创建 类目 → 商品 → 报价，返回 Offer。"""
    from settlement.services.catalog_service import CatalogService

    svc = CatalogService()

    def _make(price="100.00", stock=10, seller_id=1, commission_rate="10",
              name="测试商品", expiry_date=None):
        category = svc.create_category(f"{name}类目", commission_rate)
        product = svc.create_product(name, category.id)
        return svc.create_offer(product.id, seller_id, price, stock, expiry_date)

    return _make


@pytest.fixture
def fill_cart():
    """把 [(offer, quantity), ...] 加入买家购物车，返回购物车 ID。"""
    from settlement.services.cart_service import CartService

    def _fill(buyer_id, lines):
        svc = CartService()
        for offer, quantity in lines:
            svc.add_item(buyer_id, offer.id, quantity)
        return svc.get_or_create_cart(buyer_id).id

    return _fill


@pytest.fixture
def auth_header():
    """生成 Bearer 认证头。"""
    from settlement.services.auth import create_token

    def _header(user_id, role):
        return {"Authorization": f"Bearer {create_token(user_id, role)}"}

    return _header
