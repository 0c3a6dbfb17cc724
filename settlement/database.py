"""
SQLite 数据库连接管理、事务边界和初始化。
使用同步 sqlite3，提供 get_db() 获取连接，transaction() 获取写事务。
"""

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/settlement.db")

# 并发写入时等待写锁的秒数
BUSY_TIMEOUT = 15.0


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def transaction():
    """
    写事务：BEGIN IMMEDIATE 立即获取数据库写锁，正常退出提交，异常回滚。

    所有涉及库存、钱包、提现状态的多步变更都必须在此事务内完成，
    写锁即 offer 行与 wallet 行的串行化点。
    """
    conn = get_db()
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def joined_transaction(conn: sqlite3.Connection | None = None):
    """调用方已持有事务连接时直接复用，否则开启新的写事务。"""
    if conn is not None:
        yield conn
    else:
        with transaction() as own:
            yield own


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS categories (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(128) NOT NULL,
    commission_rate DECIMAL(5,2) NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS products (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(256) NOT NULL,
    category_id     INTEGER      REFERENCES categories(id)
);

CREATE TABLE IF NOT EXISTS offers (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id      INTEGER      NOT NULL REFERENCES products(id),
    seller_id       INTEGER      NOT NULL,
    price           DECIMAL(12,2) NOT NULL,
    stock           INTEGER      NOT NULL DEFAULT 0 CHECK (stock >= 0),
    status          VARCHAR(16)  NOT NULL DEFAULT 'active',
    expiry_date     DATE,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS carts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id        INTEGER      NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'active',
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    converted_at    DATETIME
);

CREATE TABLE IF NOT EXISTS cart_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    cart_id         INTEGER      NOT NULL REFERENCES carts(id),
    offer_id        INTEGER      NOT NULL,
    product_id      INTEGER      NOT NULL,
    seller_id       INTEGER      NOT NULL,
    quantity        INTEGER      NOT NULL CHECK (quantity >= 1),
    price_at_addition DECIMAL(12,2) NOT NULL,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number    VARCHAR(32)  NOT NULL UNIQUE,
    buyer_id        INTEGER      NOT NULL,
    shipping_address TEXT        NOT NULL,
    subtotal        DECIMAL(12,2) NOT NULL,
    total_commission DECIMAL(12,2) NOT NULL DEFAULT 0,
    shipping_cost   DECIMAL(12,2) NOT NULL DEFAULT 0,
    total_amount    DECIMAL(12,2) NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    payment_status  VARCHAR(16)  NOT NULL DEFAULT 'pending',
    shipping_status VARCHAR(16)  NOT NULL DEFAULT 'pending',
    notes           TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    paid_at         DATETIME,
    shipped_at      DATETIME,
    delivered_at    DATETIME,
    cancelled_at    DATETIME
);

CREATE TABLE IF NOT EXISTS order_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES orders(id),
    offer_id        INTEGER      NOT NULL,
    product_id      INTEGER      NOT NULL,
    seller_id       INTEGER      NOT NULL,
    product_name    VARCHAR(256) NOT NULL,
    quantity        INTEGER      NOT NULL,
    unit_price      DECIMAL(12,2) NOT NULL,
    total_price     DECIMAL(12,2) NOT NULL,
    commission_rate DECIMAL(5,2) NOT NULL,
    commission_amount DECIMAL(12,2) NOT NULL,
    marketplace_fee DECIMAL(12,2) NOT NULL,
    withholding_tax DECIMAL(12,2) NOT NULL,
    shipping_cost_share DECIMAL(12,2) NOT NULL,
    net_seller_amount DECIMAL(12,2) NOT NULL,
    marketplace_fee_rate DECIMAL(5,2) NOT NULL,
    withholding_tax_rate DECIMAL(5,2) NOT NULL,
    commission_enabled INTEGER    NOT NULL DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS seller_wallets (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    seller_id       INTEGER      NOT NULL UNIQUE,
    balance         DECIMAL(12,2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
    pending_balance DECIMAL(12,2) NOT NULL DEFAULT 0 CHECK (pending_balance >= 0),
    withdrawn_balance DECIMAL(12,2) NOT NULL DEFAULT 0,
    total_earned    DECIMAL(12,2) NOT NULL DEFAULT 0,
    total_commission DECIMAL(12,2) NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_id       INTEGER      NOT NULL REFERENCES seller_wallets(id),
    type            VARCHAR(16)  NOT NULL,
    amount          DECIMAL(12,2) NOT NULL,
    balance_type    VARCHAR(16)  NOT NULL,
    description     TEXT,
    order_id        INTEGER      REFERENCES orders(id),
    order_item_id   INTEGER,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bank_accounts (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    seller_id       INTEGER      NOT NULL,
    bank_name       VARCHAR(100) NOT NULL,
    account_holder  VARCHAR(255) NOT NULL,
    iban_encrypted  TEXT         NOT NULL,
    iban_last4      VARCHAR(4)   NOT NULL,
    is_default      INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS payout_requests (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    seller_id       INTEGER      NOT NULL,
    bank_account_id INTEGER      REFERENCES bank_accounts(id),
    amount          DECIMAL(12,2) NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    notes           TEXT,
    admin_notes     TEXT,
    processed_by    INTEGER,
    processed_at    DATETIME,
    transaction_reference VARCHAR(128),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_offers_product
    ON offers(product_id);
CREATE INDEX IF NOT EXISTS idx_offers_seller_status
    ON offers(seller_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_carts_one_active
    ON carts(buyer_id) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_cart_items_cart
    ON cart_items(cart_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_order_number
    ON orders(order_number);
CREATE INDEX IF NOT EXISTS idx_orders_buyer
    ON orders(buyer_id);
CREATE INDEX IF NOT EXISTS idx_orders_created_at
    ON orders(created_at);
CREATE INDEX IF NOT EXISTS idx_order_items_order
    ON order_items(order_id);
CREATE INDEX IF NOT EXISTS idx_order_items_seller
    ON order_items(seller_id);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_wallet_created
    ON wallet_transactions(wallet_id, created_at);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_order
    ON wallet_transactions(order_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_wallet_tx_sale_once
    ON wallet_transactions(wallet_id, order_id) WHERE type = 'sale';
CREATE INDEX IF NOT EXISTS idx_bank_accounts_seller
    ON bank_accounts(seller_id);
CREATE INDEX IF NOT EXISTS idx_payout_seller_status
    ON payout_requests(seller_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_payout_one_open
    ON payout_requests(seller_id) WHERE status IN ('pending', 'approved', 'processing');
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
"""

# ── 触发器 SQL：订单明细与钱包流水只增不改 ────────────────

_CREATE_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS trg_order_items_no_update
    BEFORE UPDATE ON order_items
BEGIN
    SELECT RAISE(ABORT, 'order_items are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_order_items_no_delete
    BEFORE DELETE ON order_items
BEGIN
    SELECT RAISE(ABORT, 'order_items are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_wallet_tx_no_update
    BEFORE UPDATE ON wallet_transactions
BEGIN
    SELECT RAISE(ABORT, 'wallet_transactions are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_wallet_tx_no_delete
    BEFORE DELETE ON wallet_transactions
BEGIN
    SELECT RAISE(ABORT, 'wallet_transactions are append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_orders_no_delete
    BEFORE DELETE ON orders
BEGIN
    SELECT RAISE(ABORT, 'orders are never deleted');
END;
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引、触发器，并在首次启动时创建默认管理员。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)
        conn.executescript(_CREATE_TRIGGERS)

        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
