"""
目录服务：类目、商品、报价的最小维护接口。

目录浏览不在本系统范围内，这里只提供结算所需的数据：
报价的价格、库存、状态、有效期，以及类目佣金率。
"""

import sqlite3
from datetime import date, datetime
from decimal import Decimal

from settlement.database import get_db
from settlement.models.schemas import Category, Offer, OfferStatus, Product, to_money


def _row_to_offer(row: sqlite3.Row) -> Offer:
    return Offer(
        id=row["id"],
        product_id=row["product_id"],
        seller_id=row["seller_id"],
        price=to_money(row["price"]),
        stock=row["stock"],
        status=row["status"],
        expiry_date=row["expiry_date"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def is_offer_expired(offer: Offer, today: date | None = None) -> bool:
    if not offer.expiry_date:
        return False
    today = today or date.today()
    return date.fromisoformat(str(offer.expiry_date)[:10]) < today


def is_offer_available(offer: Offer, today: date | None = None) -> bool:
    """报价可售：状态 active、库存大于 0、未过有效期。"""
    if offer.status != OfferStatus.ACTIVE.value or offer.stock <= 0:
        return False
    return not is_offer_expired(offer, today)


def is_offer_withdrawn(offer: Offer, today: date | None = None) -> bool:
    """下架或已过期。售罄（sold_out / 库存为 0）不算，按库存不足处理。"""
    if offer.status not in (OfferStatus.ACTIVE.value, OfferStatus.SOLD_OUT.value):
        return True
    return is_offer_expired(offer, today)


def fetch_offer(conn: sqlite3.Connection, offer_id: int) -> Offer | None:
    """在调用方连接上读取报价（事务内读取最新库存）。"""
    row = conn.execute("SELECT * FROM offers WHERE id = ?", (offer_id,)).fetchone()
    return _row_to_offer(row) if row else None


def fetch_commission_rate(conn: sqlite3.Connection, product_id: int) -> Decimal:
    """商品所属类目的当前佣金率，无类目时为 0。"""
    row = conn.execute(
        """SELECT c.commission_rate FROM products p
           LEFT JOIN categories c ON c.id = p.category_id
           WHERE p.id = ?""",
        (product_id,),
    ).fetchone()
    if not row or row["commission_rate"] is None:
        return Decimal("0")
    return Decimal(str(row["commission_rate"]))


def fetch_product_name(conn: sqlite3.Connection, product_id: int) -> str:
    row = conn.execute("SELECT name FROM products WHERE id = ?", (product_id,)).fetchone()
    return row["name"] if row else f"#{product_id}"


class CatalogService:
    """类目 / 商品 / 报价维护。"""

    def create_category(self, name: str, commission_rate) -> Category:
        rate = Decimal(str(commission_rate))
        if rate < 0 or rate > 100:
            raise ValueError("佣金率必须在 0 到 100 之间")

        db = get_db()
        try:
            cursor = db.execute(
                "INSERT INTO categories (name, commission_rate) VALUES (?, ?)",
                (name, str(rate)),
            )
            db.commit()
            return Category(id=cursor.lastrowid, name=name, commission_rate=rate)
        finally:
            db.close()

    def set_commission_rate(self, category_id: int, commission_rate) -> None:
        """
        修改类目佣金率。只影响之后创建的订单，已有订单明细保存了创建时的费率。

        Raises:
            ValueError: 类目不存在或费率越界。
        """
        rate = Decimal(str(commission_rate))
        if rate < 0 or rate > 100:
            raise ValueError("佣金率必须在 0 到 100 之间")

        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE categories SET commission_rate = ? WHERE id = ?",
                (str(rate), category_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"类目 id={category_id} 不存在")
        finally:
            db.close()

    def create_product(self, name: str, category_id: int | None = None) -> Product:
        db = get_db()
        try:
            cursor = db.execute(
                "INSERT INTO products (name, category_id) VALUES (?, ?)",
                (name, category_id),
            )
            db.commit()
            return Product(id=cursor.lastrowid, name=name, category_id=category_id)
        finally:
            db.close()

    def create_offer(
        self,
        product_id: int,
        seller_id: int,
        price,
        stock: int,
        expiry_date: str | None = None,
    ) -> Offer:
        """
        创建报价。

        Raises:
            ValueError: 价格或库存为负数。
        """
        price = to_money(price)
        if price < 0:
            raise ValueError("价格不能为负数")
        if stock < 0:
            raise ValueError("库存不能为负数")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO offers
                   (product_id, seller_id, price, stock, status, expiry_date, created_at, updated_at)
                   VALUES (?, ?, ?, ?, 'active', ?, ?, ?)""",
                (product_id, seller_id, str(price), stock, expiry_date, now, now),
            )
            db.commit()
            return fetch_offer(db, cursor.lastrowid)
        finally:
            db.close()

    def get_offer(self, offer_id: int) -> Offer | None:
        db = get_db()
        try:
            return fetch_offer(db, offer_id)
        finally:
            db.close()

    def update_price(self, offer_id: int, price) -> None:
        """修改报价价格。购物车中的价格快照不随之变化，结算前由价格同步处理。"""
        price = to_money(price)
        if price < 0:
            raise ValueError("价格不能为负数")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE offers SET price = ?, updated_at = ? WHERE id = ?",
                (str(price), now, offer_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"报价 offer_id={offer_id} 不存在")
        finally:
            db.close()

    def set_stock(self, offer_id: int, stock: int) -> None:
        """
        直接设置库存（卖家补货）。直接修改不会把状态改为 sold_out，
        但 sold_out 的报价补货后恢复为 active。
        """
        if stock < 0:
            raise ValueError("库存不能为负数")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE offers
                   SET stock = ?,
                       status = CASE WHEN status = 'sold_out' AND ? > 0 THEN 'active' ELSE status END,
                       updated_at = ?
                   WHERE id = ?""",
                (stock, stock, now, offer_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"报价 offer_id={offer_id} 不存在")
        finally:
            db.close()

    def set_status(self, offer_id: int, status: str) -> None:
        """上架 / 下架。sold_out 只能由库存扣减产生。"""
        if status not in (OfferStatus.ACTIVE.value, OfferStatus.INACTIVE.value):
            raise ValueError(f"不允许直接设置报价状态为 {status}")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE offers SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, offer_id),
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"报价 offer_id={offer_id} 不存在")
        finally:
            db.close()
