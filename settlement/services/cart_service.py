"""
购物车服务：买家购物车的维护、校验与价格同步。

每个买家同一时间最多一个 active 购物车（部分唯一索引保证）；
购物车转为订单后状态为 converted，不可再修改或校验。
"""

import logging
import sqlite3
from datetime import datetime

from settlement.database import get_db, transaction
from settlement.models.schemas import Cart, CartIssue, CartItem, CartStatus, to_money
from settlement.services.catalog_service import (
    fetch_offer,
    fetch_product_name,
    is_offer_available,
    is_offer_withdrawn,
)

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT = "未知商品"


class CartError(ValueError):
    """购物车操作失败（报价不可售、库存不足、数量无效等）。"""
    pass


class CartNotFoundError(CartError):
    pass


class CartStateError(CartError):
    """购物车已转为订单，不可再修改。"""
    pass


# ── 连接内辅助函数（供下单事务复用） ─────────────────────


def load_cart(conn: sqlite3.Connection, cart_id: int) -> Cart | None:
    row = conn.execute("SELECT * FROM carts WHERE id = ?", (cart_id,)).fetchone()
    if not row:
        return None

    item_rows = conn.execute(
        """SELECT ci.*, p.name AS product_name
           FROM cart_items ci
           LEFT JOIN products p ON p.id = ci.product_id
           WHERE ci.cart_id = ?
           ORDER BY ci.id""",
        (cart_id,),
    ).fetchall()

    items = [
        CartItem(
            id=r["id"],
            cart_id=r["cart_id"],
            offer_id=r["offer_id"],
            product_id=r["product_id"],
            seller_id=r["seller_id"],
            quantity=r["quantity"],
            price_at_addition=to_money(r["price_at_addition"]),
            product_name=r["product_name"],
        )
        for r in item_rows
    ]
    return Cart(
        id=row["id"],
        buyer_id=row["buyer_id"],
        status=row["status"],
        items=items,
        created_at=row["created_at"],
        converted_at=row["converted_at"],
    )


def validate_items(conn: sqlite3.Connection, cart: Cart) -> list[CartIssue]:
    """
    逐项检查购物车：报价不存在、下架或过期 → unavailable；
    库存不足（含被其他订单买空的 sold_out 报价）→ stock；
    价格与快照不同 → price_changed（提示性）。
    """
    issues: list[CartIssue] = []
    for item in cart.items:
        offer = fetch_offer(conn, item.offer_id)
        name = item.product_name or UNKNOWN_PRODUCT

        if offer is None or is_offer_withdrawn(offer):
            issues.append(CartIssue(
                item_id=item.id,
                product_name=name,
                type="unavailable",
                message="该商品已不可售",
            ))
            continue

        if offer.stock < item.quantity:
            issues.append(CartIssue(
                item_id=item.id,
                product_name=name,
                type="stock",
                message=f"库存不足，当前库存: {offer.stock}",
                available_stock=offer.stock,
            ))

        if offer.price != item.price_at_addition:
            issues.append(CartIssue(
                item_id=item.id,
                product_name=name,
                type="price_changed",
                message=f"价格已变化: {item.price_at_addition} → {offer.price}",
                old_price=item.price_at_addition,
                new_price=offer.price,
            ))
    return issues


def sync_item_prices(conn: sqlite3.Connection, cart: Cart) -> int:
    """把购物车内各项的价格快照更新为报价当前价格，返回更新的条数。"""
    updated = 0
    for item in cart.items:
        offer = fetch_offer(conn, item.offer_id)
        if offer is None or offer.price == item.price_at_addition:
            continue
        conn.execute(
            "UPDATE cart_items SET price_at_addition = ? WHERE id = ?",
            (str(offer.price), item.id),
        )
        item.price_at_addition = offer.price
        updated += 1
    return updated


def _require_active(cart: Cart | None, cart_id) -> Cart:
    if cart is None:
        raise CartNotFoundError(f"购物车 {cart_id} 不存在")
    if cart.status != CartStatus.ACTIVE.value:
        raise CartStateError("购物车已提交订单，不可修改")
    return cart


class CartService:
    """买家购物车维护。"""

    def get_or_create_cart(self, buyer_id: int) -> Cart:
        """返回买家的 active 购物车，不存在则创建。"""
        with transaction() as conn:
            row = conn.execute(
                "SELECT id FROM carts WHERE buyer_id = ? AND status = 'active'",
                (buyer_id,),
            ).fetchone()
            if row:
                cart_id = row["id"]
            else:
                cursor = conn.execute(
                    "INSERT INTO carts (buyer_id, status) VALUES (?, 'active')",
                    (buyer_id,),
                )
                cart_id = cursor.lastrowid
            return load_cart(conn, cart_id)

    def get_cart(self, cart_id: int) -> Cart | None:
        db = get_db()
        try:
            return load_cart(db, cart_id)
        finally:
            db.close()

    def get_active_cart(self, buyer_id: int) -> Cart | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT id FROM carts WHERE buyer_id = ? AND status = 'active'",
                (buyer_id,),
            ).fetchone()
            return load_cart(db, row["id"]) if row else None
        finally:
            db.close()

    def add_item(self, buyer_id: int, offer_id: int, quantity: int = 1) -> CartItem:
        """
        加入购物车。同一报价已在购物车中则合并数量。

        Raises:
            CartError: 数量无效、报价不可售或库存不足。
        """
        if quantity < 1:
            raise CartError("数量必须大于 0")

        cart = self.get_or_create_cart(buyer_id)
        with transaction() as conn:
            offer = fetch_offer(conn, offer_id)
            if offer is None or not is_offer_available(offer):
                raise CartError("该报价不可售")

            existing = conn.execute(
                "SELECT id, quantity FROM cart_items WHERE cart_id = ? AND offer_id = ?",
                (cart.id, offer_id),
            ).fetchone()
            new_quantity = quantity + (existing["quantity"] if existing else 0)
            if offer.stock < new_quantity:
                raise CartError("库存不足")

            if existing:
                conn.execute(
                    "UPDATE cart_items SET quantity = ? WHERE id = ?",
                    (new_quantity, existing["id"]),
                )
                item_id = existing["id"]
            else:
                cursor = conn.execute(
                    """INSERT INTO cart_items
                       (cart_id, offer_id, product_id, seller_id, quantity, price_at_addition)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (cart.id, offer.id, offer.product_id, offer.seller_id,
                     new_quantity, str(offer.price)),
                )
                item_id = cursor.lastrowid

            price = to_money(conn.execute(
                "SELECT price_at_addition FROM cart_items WHERE id = ?", (item_id,),
            ).fetchone()["price_at_addition"])

            return CartItem(
                id=item_id,
                cart_id=cart.id,
                offer_id=offer.id,
                product_id=offer.product_id,
                seller_id=offer.seller_id,
                quantity=new_quantity,
                price_at_addition=price,
                product_name=fetch_product_name(conn, offer.product_id),
            )

    def _load_owned_item(self, conn, buyer_id: int, item_id: int) -> sqlite3.Row:
        row = conn.execute(
            """SELECT ci.*, c.buyer_id, c.status AS cart_status
               FROM cart_items ci JOIN carts c ON c.id = ci.cart_id
               WHERE ci.id = ?""",
            (item_id,),
        ).fetchone()
        if not row or row["buyer_id"] != buyer_id:
            raise CartNotFoundError(f"购物车商品 {item_id} 不存在")
        if row["cart_status"] != CartStatus.ACTIVE.value:
            raise CartStateError("购物车已提交订单，不可修改")
        return row

    def update_item_quantity(self, buyer_id: int, item_id: int, quantity: int) -> None:
        """
        修改购物车商品数量。数量小于 1 时移除该商品。

        Raises:
            CartError: 报价已不存在或库存不足。
        """
        with transaction() as conn:
            row = self._load_owned_item(conn, buyer_id, item_id)
            if quantity < 1:
                conn.execute("DELETE FROM cart_items WHERE id = ?", (item_id,))
                return

            offer = fetch_offer(conn, row["offer_id"])
            if offer is None:
                raise CartError("报价已不存在")
            if offer.stock < quantity:
                raise CartError("库存不足")

            conn.execute(
                "UPDATE cart_items SET quantity = ? WHERE id = ?",
                (quantity, item_id),
            )

    def remove_item(self, buyer_id: int, item_id: int) -> None:
        with transaction() as conn:
            self._load_owned_item(conn, buyer_id, item_id)
            conn.execute("DELETE FROM cart_items WHERE id = ?", (item_id,))

    def clear_cart(self, cart_id: int) -> None:
        with transaction() as conn:
            _require_active(load_cart(conn, cart_id), cart_id)
            conn.execute("DELETE FROM cart_items WHERE cart_id = ?", (cart_id,))

    def validate_cart(self, cart_id: int) -> list[CartIssue]:
        """
        校验购物车，返回问题列表（空列表表示可以结算）。

        Raises:
            CartNotFoundError: 购物车不存在。
            CartStateError: 购物车已转为订单。
        """
        db = get_db()
        try:
            cart = _require_active(load_cart(db, cart_id), cart_id)
            return validate_items(db, cart)
        finally:
            db.close()

    def sync_prices(self, cart_id: int) -> int:
        """把价格快照同步为报价当前价格。"""
        with transaction() as conn:
            cart = _require_active(load_cart(conn, cart_id), cart_id)
            updated = sync_item_prices(conn, cart)
        if updated:
            logger.info("购物车价格已同步: cart_id=%d, 更新 %d 项", cart_id, updated)
        return updated


def cart_to_dict(cart: Cart) -> dict:
    return {
        "id": cart.id,
        "buyer_id": cart.buyer_id,
        "status": cart.status,
        "items": [
            {
                "id": i.id,
                "offer_id": i.offer_id,
                "product_id": i.product_id,
                "seller_id": i.seller_id,
                "product_name": i.product_name,
                "quantity": i.quantity,
                "price_at_addition": str(i.price_at_addition),
            }
            for i in cart.items
        ],
        "item_count": sum(i.quantity for i in cart.items),
        "subtotal": str(sum((i.price_at_addition * i.quantity for i in cart.items), to_money(0))),
    }


def issue_to_dict(issue: CartIssue) -> dict:
    data = {
        "item_id": issue.item_id,
        "product_name": issue.product_name,
        "type": issue.type,
        "message": issue.message,
    }
    if issue.available_stock is not None:
        data["available_stock"] = issue.available_stock
    if issue.old_price is not None:
        data["old_price"] = str(issue.old_price)
        data["new_price"] = str(issue.new_price)
    return data
