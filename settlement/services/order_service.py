"""
订单服务模块：购物车转订单、订单状态流转、取消与费用复核。
"""

import json
import logging
import os
import secrets
import sqlite3
import string
from datetime import date, datetime
from decimal import Decimal

from settlement.database import get_db, transaction
from settlement.models.schemas import (
    ORDER_TRANSITIONS,
    CartStatus,
    InvalidTransitionError,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    allowed_transitions,
    check_transition,
    state_value,
    to_money,
)
from settlement.services import stock_ledger
from settlement.services.cart_service import load_cart, sync_item_prices, validate_items
from settlement.services.catalog_service import fetch_commission_rate
from settlement.services.fee_engine import (
    FeeConfig,
    NoShippingShare,
    ShippingShareProvider,
    compute_fees,
    fee_breakdown_lines,
    recompute_item,
    seller_fee_summary,
    split_shipping,
    summarize_fees,
)
from settlement.services.platform_config import load_fee_config
from settlement.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

ORDER_NUMBER_RETRIES = 20
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

# 复核时逐项比较的费用字段
_FEE_FIELDS = (
    "commission_amount",
    "marketplace_fee",
    "withholding_tax",
    "shipping_cost_share",
    "net_seller_amount",
)


class OrderCreateError(Exception):
    """
    订单创建失败。code 为 EMPTY_CART / STOCK_INSUFFICIENT:<商品名> /
    VALIDATION_FAILED / CART_NOT_FOUND / CART_CONVERTED 等。
    """

    def __init__(self, code: str, message: str, issues: list | None = None):
        self.code = code
        self.issues = issues or []
        super().__init__(message)


class OrderNotFoundError(LookupError):
    pass


class OrderPermissionError(PermissionError):
    pass


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _row_to_item(row: sqlite3.Row) -> OrderItem:
    return OrderItem(
        id=row["id"],
        order_id=row["order_id"],
        offer_id=row["offer_id"],
        product_id=row["product_id"],
        seller_id=row["seller_id"],
        product_name=row["product_name"],
        quantity=row["quantity"],
        unit_price=to_money(row["unit_price"]),
        total_price=to_money(row["total_price"]),
        commission_rate=Decimal(str(row["commission_rate"])),
        commission_amount=to_money(row["commission_amount"]),
        marketplace_fee=to_money(row["marketplace_fee"]),
        withholding_tax=to_money(row["withholding_tax"]),
        shipping_cost_share=to_money(row["shipping_cost_share"]),
        net_seller_amount=to_money(row["net_seller_amount"]),
        marketplace_fee_rate=Decimal(str(row["marketplace_fee_rate"])),
        withholding_tax_rate=Decimal(str(row["withholding_tax_rate"])),
        commission_enabled=bool(row["commission_enabled"]),
    )


def fetch_order(conn: sqlite3.Connection, order_id: int) -> Order | None:
    row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    if not row:
        return None
    item_rows = conn.execute(
        "SELECT * FROM order_items WHERE order_id = ? ORDER BY id", (order_id,)
    ).fetchall()
    return Order(
        id=row["id"],
        order_number=row["order_number"],
        buyer_id=row["buyer_id"],
        shipping_address=json.loads(row["shipping_address"]),
        subtotal=to_money(row["subtotal"]),
        total_commission=to_money(row["total_commission"]),
        total_amount=to_money(row["total_amount"]),
        shipping_cost=to_money(row["shipping_cost"]),
        status=row["status"],
        payment_status=row["payment_status"],
        shipping_status=row["shipping_status"],
        notes=row["notes"],
        items=[_row_to_item(r) for r in item_rows],
        created_at=row["created_at"],
        paid_at=row["paid_at"],
        shipped_at=row["shipped_at"],
        delivered_at=row["delivered_at"],
        cancelled_at=row["cancelled_at"],
    )


def resolve_order_id(conn: sqlite3.Connection, order_ref) -> int | None:
    """订单引用可以是数字 ID 或订单号。"""
    if isinstance(order_ref, int) or str(order_ref).isdigit():
        row = conn.execute("SELECT id FROM orders WHERE id = ?", (int(order_ref),)).fetchone()
        if row:
            return row["id"]
    row = conn.execute(
        "SELECT id FROM orders WHERE order_number = ?", (str(order_ref),)
    ).fetchone()
    return row["id"] if row else None


class OrderService:
    """订单服务：下单、状态流转、取消、查询与费用复核。"""

    def __init__(
        self,
        fee_config: FeeConfig | None = None,
        shipping: ShippingShareProvider | None = None,
        wallet: WalletService | None = None,
    ):
        self.fee_config = fee_config
        self.shipping = shipping or NoShippingShare()
        self.wallet = wallet or WalletService()

    # ── 订单号 ────────────────────────────────────────────

    def generate_order_number(self, conn: sqlite3.Connection | None = None) -> str:
        """
        生成订单号：前缀 + yymmdd + 当日序号(4位) + 4位随机大写字母数字。
        序号为当日订单数 + 1，并发下单可能得到相同序号，随机后缀保证唯一，
        碰撞时重新生成后缀，最多重试 ORDER_NUMBER_RETRIES 次。

        Raises:
            OrderCreateError: 多次重试后仍无法生成唯一订单号。
        """
        prefix = os.getenv("ORDER_NUMBER_PREFIX", "EPZ")
        today = date.today()

        db = conn or get_db()
        try:
            count = db.execute(
                "SELECT COUNT(*) AS cnt FROM orders WHERE date(created_at) = ?",
                (today.isoformat(),),
            ).fetchone()["cnt"]
            base = f"{prefix}{today.strftime('%y%m%d')}{count + 1:04d}"

            for _ in range(ORDER_NUMBER_RETRIES):
                suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
                order_number = base + suffix
                row = db.execute(
                    "SELECT 1 FROM orders WHERE order_number = ?", (order_number,)
                ).fetchone()
                if not row:
                    return order_number
        finally:
            if conn is None:
                db.close()

        raise OrderCreateError("ORDER_NUMBER_EXHAUSTED", "无法生成唯一订单号，请重试")

    # ── 下单 ──────────────────────────────────────────────

    def create_from_cart(
        self,
        cart_id: int,
        shipping_address: dict,
        notes: str | None = None,
        buyer_id: int | None = None,
    ) -> Order:
        """
        把购物车转为订单，全部步骤在一个写事务内完成：
        1. 空购物车直接拒绝（不扣减任何库存）
        2. 重新校验购物车，不可售 / 库存不足则拒绝
        3. 价格快照同步为报价当前价格
        4. 逐项按当前类目佣金率计算费用，卖家净额为负则拒绝
        5. 逐项扣减库存
        6. 生成订单号，写入订单和明细（含费率快照）
        7. 购物车标记为 converted

        任一步失败整个事务回滚，已扣减的库存随之恢复。

        Raises:
            OrderCreateError: 购物车不存在、已转换、为空、校验失败或库存不足。
        """
        fee_config = self.fee_config or load_fee_config()

        with transaction() as conn:
            cart = load_cart(conn, cart_id)
            if cart is None or (buyer_id is not None and cart.buyer_id != buyer_id):
                raise OrderCreateError("CART_NOT_FOUND", "购物车不存在")
            if cart.status != CartStatus.ACTIVE.value:
                raise OrderCreateError("CART_CONVERTED", "购物车已提交订单")
            if cart.is_empty():
                raise OrderCreateError("EMPTY_CART", "购物车为空")

            issues = validate_items(conn, cart)
            for issue in issues:
                if issue.type == "stock":
                    raise OrderCreateError(
                        f"STOCK_INSUFFICIENT:{issue.product_name}",
                        f"库存不足: {issue.product_name}", issues,
                    )
                if issue.type == "unavailable":
                    raise OrderCreateError(
                        "VALIDATION_FAILED", "购物车中有需要处理的商品", issues,
                    )

            sync_item_prices(conn, cart)

            items = [
                OrderItem(
                    id=None,
                    order_id=None,
                    offer_id=ci.offer_id,
                    product_id=ci.product_id,
                    seller_id=ci.seller_id,
                    product_name=ci.product_name or f"#{ci.product_id}",
                    quantity=ci.quantity,
                    unit_price=ci.price_at_addition,
                    total_price=to_money(ci.price_at_addition * ci.quantity),
                    commission_rate=fetch_commission_rate(conn, ci.product_id),
                )
                for ci in cart.items
            ]
            subtotal = sum((i.total_price for i in items), to_money(0))

            draft = Order(
                id=None,
                order_number="",
                buyer_id=cart.buyer_id,
                shipping_address=shipping_address,
                subtotal=subtotal,
                total_commission=to_money(0),
                total_amount=subtotal,
                notes=notes,
                items=items,
            )
            shipping_total = to_money(self.shipping.shipping_share_for_order(draft))
            shares = split_shipping(shipping_total, len(items))

            for item, share in zip(items, shares):
                fees = compute_fees(item.total_price, item.commission_rate, share, fee_config)
                item.commission_amount = fees.commission_amount
                item.marketplace_fee = fees.marketplace_fee
                item.withholding_tax = fees.withholding_tax
                item.shipping_cost_share = fees.shipping_cost_share
                item.net_seller_amount = fees.net_seller_amount
                item.marketplace_fee_rate = fees.marketplace_fee_rate
                item.withholding_tax_rate = fees.withholding_tax_rate
                item.commission_enabled = fee_config.commission_enabled

                # 负净额无法入账，必须在扣减库存之前拒绝
                if item.net_seller_amount < 0:
                    raise OrderCreateError(
                        "VALIDATION_FAILED",
                        f"{item.product_name} 的费用与运费分摊超过商品金额"
                        f"（净额 {item.net_seller_amount}）",
                    )

            for item in items:
                if not stock_ledger.reserve(conn, item.offer_id, item.quantity):
                    raise OrderCreateError(
                        f"STOCK_INSUFFICIENT:{item.product_name}",
                        f"库存不足: {item.product_name}",
                    )

            total_commission = sum((i.commission_amount for i in items), to_money(0))
            order_number = self.generate_order_number(conn)
            now = _now()

            cursor = conn.execute(
                """INSERT INTO orders
                   (order_number, buyer_id, shipping_address, subtotal, total_commission,
                    shipping_cost, total_amount, status, payment_status, shipping_status,
                    notes, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 'pending', 'pending', ?, ?, ?)""",
                (
                    order_number, cart.buyer_id,
                    json.dumps(shipping_address, ensure_ascii=False),
                    str(subtotal), str(total_commission), str(shipping_total),
                    str(subtotal), notes, now, now,
                ),
            )
            order_id = cursor.lastrowid

            for item in items:
                conn.execute(
                    """INSERT INTO order_items
                       (order_id, offer_id, product_id, seller_id, product_name, quantity,
                        unit_price, total_price, commission_rate, commission_amount,
                        marketplace_fee, withholding_tax, shipping_cost_share, net_seller_amount,
                        marketplace_fee_rate, withholding_tax_rate, commission_enabled, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        order_id, item.offer_id, item.product_id, item.seller_id,
                        item.product_name, item.quantity,
                        str(item.unit_price), str(item.total_price), str(item.commission_rate),
                        str(item.commission_amount), str(item.marketplace_fee),
                        str(item.withholding_tax), str(item.shipping_cost_share),
                        str(item.net_seller_amount), str(item.marketplace_fee_rate),
                        str(item.withholding_tax_rate), 1 if item.commission_enabled else 0, now,
                    ),
                )

            conn.execute(
                "UPDATE carts SET status = 'converted', converted_at = ? WHERE id = ?",
                (now, cart.id),
            )

            order = fetch_order(conn, order_id)

        logger.info(
            "订单创建成功: order_number=%s, buyer_id=%d, items=%d, subtotal=%s",
            order.order_number, order.buyer_id, len(order.items), order.subtotal,
        )
        return order

    # ── 状态流转 ──────────────────────────────────────────

    def update_status(self, order_id: int, new_status, actor_id: int | None = None,
                      is_admin: bool = False) -> Order:
        """
        按迁移表变更订单状态。目标为 cancelled 时走取消流程；
        变为 delivered 时同一事务内释放各卖家该订单的待结算金额。

        Raises:
            OrderNotFoundError: 订单不存在。
            InvalidTransitionError: 迁移不在迁移表内。
        """
        target = state_value(new_status)
        if target == OrderStatus.CANCELLED.value:
            return self.cancel_order(order_id, actor_id, is_admin=is_admin)

        with transaction() as conn:
            order = fetch_order(conn, order_id)
            if order is None:
                raise OrderNotFoundError(f"订单 {order_id} 不存在")
            previous = order.status
            check_transition("订单", ORDER_TRANSITIONS, previous, target)

            now = _now()
            sets = ["status = ?", "updated_at = ?"]
            params: list = [target, now]
            if target == OrderStatus.SHIPPED.value:
                sets += ["shipped_at = ?", "shipping_status = 'shipped'"]
                params.append(now)
            elif target == OrderStatus.DELIVERED.value:
                sets += ["delivered_at = ?", "shipping_status = 'delivered'"]
                params.append(now)
            params.append(order_id)

            conn.execute(f"UPDATE orders SET {', '.join(sets)} WHERE id = ?", params)

            # 确认收货后卖家的待结算金额转为可提现
            if target == OrderStatus.DELIVERED.value:
                for seller_id in order.seller_ids():
                    self.wallet.release_pending_to_available(seller_id, order_id, conn=conn)

            order = fetch_order(conn, order_id)

        logger.info("订单状态变更: order_id=%d, %s → %s", order_id, previous, target)
        return order

    def cancel_order(self, order_id: int, requester_id: int | None, is_admin: bool = False) -> Order:
        """
        取消订单：只有买家本人或管理员可以取消，且仅限 pending / confirmed。
        同一事务内归还全部库存、冲销已入账的待结算金额并更新状态；
        已支付的订单支付状态改为 refunded，实际退款由支付方处理。

        Raises:
            OrderNotFoundError: 订单不存在。
            OrderPermissionError: 非买家本人且非管理员。
            InvalidTransitionError: 当前状态不可取消。
        """
        with transaction() as conn:
            order = fetch_order(conn, order_id)
            if order is None:
                raise OrderNotFoundError(f"订单 {order_id} 不存在")
            if not is_admin and order.buyer_id != requester_id:
                raise OrderPermissionError("无权取消该订单")
            if not order.can_be_cancelled():
                raise InvalidTransitionError(
                    "订单", order.status, OrderStatus.CANCELLED.value,
                    allowed_transitions(ORDER_TRANSITIONS, order.status),
                )

            for item in order.items:
                stock_ledger.release(conn, item.offer_id, item.quantity)

            for seller_id in order.seller_ids():
                self.wallet.reverse_pending(seller_id, order.id, conn=conn)

            payment_status = order.payment_status
            if payment_status == PaymentStatus.PAID.value:
                payment_status = PaymentStatus.REFUNDED.value

            now = _now()
            conn.execute(
                """UPDATE orders
                   SET status = 'cancelled', payment_status = ?, cancelled_at = ?, updated_at = ?
                   WHERE id = ?""",
                (payment_status, now, now, order_id),
            )
            order = fetch_order(conn, order_id)

        logger.info(
            "订单已取消: order_number=%s, requester_id=%s, admin=%s",
            order.order_number, requester_id, is_admin,
        )
        return order

    # ── 查询 ──────────────────────────────────────────────

    def get_order(self, order_id: int) -> Order | None:
        db = get_db()
        try:
            return fetch_order(db, order_id)
        finally:
            db.close()

    def get_order_by_ref(self, order_ref) -> Order | None:
        db = get_db()
        try:
            order_id = resolve_order_id(db, order_ref)
            return fetch_order(db, order_id) if order_id else None
        finally:
            db.close()

    def list_buyer_orders(self, buyer_id: int, page: int = 1, page_size: int = 10) -> tuple[list[Order], int]:
        """买家订单，按创建时间倒序分页。"""
        db = get_db()
        try:
            total = db.execute(
                "SELECT COUNT(*) AS cnt FROM orders WHERE buyer_id = ?", (buyer_id,)
            ).fetchone()["cnt"]
            rows = db.execute(
                """SELECT id FROM orders WHERE buyer_id = ?
                   ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
                (buyer_id, page_size, (page - 1) * page_size),
            ).fetchall()
            return [fetch_order(db, r["id"]) for r in rows], total
        finally:
            db.close()

    def list_seller_orders(self, seller_id: int, page: int = 1, page_size: int = 10) -> tuple[list[Order], int]:
        """包含该卖家商品的订单，明细只保留该卖家的部分。"""
        db = get_db()
        try:
            total = db.execute(
                "SELECT COUNT(DISTINCT order_id) AS cnt FROM order_items WHERE seller_id = ?",
                (seller_id,),
            ).fetchone()["cnt"]
            rows = db.execute(
                """SELECT DISTINCT o.id, o.created_at FROM orders o
                   JOIN order_items oi ON oi.order_id = o.id
                   WHERE oi.seller_id = ?
                   ORDER BY o.created_at DESC, o.id DESC LIMIT ? OFFSET ?""",
                (seller_id, page_size, (page - 1) * page_size),
            ).fetchall()
            orders = []
            for r in rows:
                order = fetch_order(db, r["id"])
                order.items = [i for i in order.items if i.seller_id == seller_id]
                orders.append(order)
            return orders, total
        finally:
            db.close()

    def verify_order_fees(self, order_id: int) -> dict:
        """
        费用复核：用明细保存的金额与费率快照重新计算，逐项比较。

        Raises:
            OrderNotFoundError: 订单不存在。
        """
        order = self.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"订单 {order_id} 不存在")

        mismatches = []
        for item in order.items:
            expected_total = to_money(item.unit_price * item.quantity)
            if expected_total != item.total_price:
                mismatches.append({
                    "item_id": item.id, "field": "total_price",
                    "stored": str(item.total_price), "recomputed": str(expected_total),
                })
            fees = recompute_item(item)
            for name in _FEE_FIELDS:
                stored = getattr(item, name)
                recomputed = getattr(fees, name)
                if stored != recomputed:
                    mismatches.append({
                        "item_id": item.id, "field": name,
                        "stored": str(stored), "recomputed": str(recomputed),
                    })

        subtotal = sum((i.total_price for i in order.items), to_money(0))
        if subtotal != order.subtotal:
            mismatches.append({
                "item_id": None, "field": "subtotal",
                "stored": str(order.subtotal), "recomputed": str(subtotal),
            })

        if mismatches:
            logger.error("订单费用复核不一致: order_id=%d, mismatches=%d", order_id, len(mismatches))
        return {
            "order_id": order_id,
            "order_number": order.order_number,
            "consistent": not mismatches,
            "mismatches": mismatches,
        }


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "buyer_id": order.buyer_id,
        "shipping_address": order.shipping_address,
        "subtotal": str(order.subtotal),
        "total_commission": str(order.total_commission),
        "shipping_cost": str(order.shipping_cost),
        "total_amount": str(order.total_amount),
        "status": order.status,
        "payment_status": order.payment_status,
        "shipping_status": order.shipping_status,
        "notes": order.notes,
        "created_at": order.created_at,
        "paid_at": order.paid_at,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
        "items": [
            {
                "id": i.id,
                "offer_id": i.offer_id,
                "product_id": i.product_id,
                "seller_id": i.seller_id,
                "product_name": i.product_name,
                "quantity": i.quantity,
                "unit_price": str(i.unit_price),
                "total_price": str(i.total_price),
                "commission_rate": str(i.commission_rate),
                "commission_amount": str(i.commission_amount),
                "marketplace_fee": str(i.marketplace_fee),
                "withholding_tax": str(i.withholding_tax),
                "shipping_cost_share": str(i.shipping_cost_share),
                "net_seller_amount": str(i.net_seller_amount),
            }
            for i in order.items
        ],
    }


def order_fees_to_dict(order: Order, seller_id: int | None = None) -> dict:
    """
    费用汇总。指定卖家时只统计该卖家的明细（销售额、各项扣费、净额），
    否则给出订单级汇总；两种情况都附带逐项扣费明细行。
    """
    items = [i for i in order.items if seller_id is None or i.seller_id == seller_id]
    if seller_id is None:
        data = {k: str(v) for k, v in summarize_fees(items).items()}
    else:
        summary = seller_fee_summary(items, seller_id)
        data = {
            "seller_id": seller_id,
            "total_sales": str(summary["total_sales"]),
            "deductions": {k: str(v) for k, v in summary["deductions"].items()},
            "total_deductions": str(summary["total_deductions"]),
            "net_amount": str(summary["net_amount"]),
        }
    data["items"] = [
        {
            "item_id": i.id,
            "lines": [
                {**line, "value": str(to_money(line["value"]))}
                for line in fee_breakdown_lines(i)
            ],
        }
        for i in items
    ]
    return data
