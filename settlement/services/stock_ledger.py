"""
库存账：按报价（offer）维护可售数量。

reserve 是单条条件 UPDATE，检查与扣减在同一语句内完成，
并发下单同一报价时不会超卖。两个函数都在调用方的事务连接上执行。
"""

import logging
import sqlite3
from datetime import datetime

logger = logging.getLogger(__name__)


def reserve(conn: sqlite3.Connection, offer_id: int, quantity: int) -> bool:
    """
    原子扣减库存：stock >= quantity 时扣减并返回 True，否则不做任何修改返回 False。
    库存扣到 0 时在同一语句内把状态置为 sold_out。
    """
    if quantity < 1:
        raise ValueError("扣减数量必须大于 0")

    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cursor = conn.execute(
        """UPDATE offers
           SET stock = stock - ?,
               status = CASE WHEN stock - ? = 0 THEN 'sold_out' ELSE status END,
               updated_at = ?
           WHERE id = ? AND stock >= ?""",
        (quantity, quantity, now, offer_id, quantity),
    )
    if cursor.rowcount == 0:
        logger.warning("库存不足，扣减失败: offer_id=%d, quantity=%d", offer_id, quantity)
        return False
    return True


def release(conn: sqlite3.Connection, offer_id: int, quantity: int) -> None:
    """
    归还库存（取消订单时使用）。sold_out 的报价在库存恢复后重新变为 active。

    Raises:
        ValueError: 报价不存在。
    """
    if quantity < 1:
        raise ValueError("归还数量必须大于 0")

    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cursor = conn.execute(
        """UPDATE offers
           SET stock = stock + ?,
               status = CASE WHEN status = 'sold_out' THEN 'active' ELSE status END,
               updated_at = ?
           WHERE id = ?""",
        (quantity, now, offer_id),
    )
    if cursor.rowcount == 0:
        raise ValueError(f"报价 offer_id={offer_id} 不存在")


def get_stock(conn: sqlite3.Connection, offer_id: int) -> int | None:
    row = conn.execute("SELECT stock FROM offers WHERE id = ?", (offer_id,)).fetchone()
    return row["stock"] if row else None
