"""
结算事件：处理外部协作方的支付结果回调与签收通知。

- 支付成功：订单支付状态置为 paid，pending 订单确认，按卖家入账到待结算余额
  （订单已签收时入账后立即转为可提现）
- 支付失败：订单支付状态置为 failed，不动任何资金
- 签收：shipped → delivered，并把该订单的待结算金额转为可提现

回调可能重复到达，入账与释放都是幂等的。
"""

import logging
from datetime import datetime

from settlement.database import get_db, transaction
from settlement.models.schemas import (
    ORDER_TRANSITIONS,
    OrderStatus,
    PaymentStatus,
    check_transition,
)
from settlement.services.order_service import (
    OrderNotFoundError,
    OrderService,
    fetch_order,
    resolve_order_id,
)
from settlement.services.wallet_service import WalletService

logger = logging.getLogger(__name__)

PAYMENT_RESULTS = (PaymentStatus.PAID.value, PaymentStatus.FAILED.value)


class SettlementEvents:
    """支付回调与签收事件处理。"""

    def __init__(self, orders: OrderService | None = None, wallet: WalletService | None = None):
        self.wallet = wallet or WalletService()
        self.orders = orders or OrderService(wallet=self.wallet)

    def handle_payment_callback(self, order_ref, payment_status: str) -> dict:
        """
        处理支付结果。

        Args:
            order_ref: 订单 ID 或订单号。
            payment_status: paid / failed。

        Returns:
            {"order_id", "order_number", "payment_status", "credited_sellers"}

        Raises:
            ValueError: 支付状态无效。
            OrderNotFoundError: 订单不存在（不做任何资金变动）。
        """
        if payment_status not in PAYMENT_RESULTS:
            raise ValueError(f"无效的支付状态: {payment_status}")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        credited: list[int] = []

        with transaction() as conn:
            order_id = resolve_order_id(conn, order_ref)
            if order_id is None:
                logger.error("支付回调订单不存在: order_ref=%s, status=%s", order_ref, payment_status)
                raise OrderNotFoundError(f"订单 {order_ref} 不存在")
            order = fetch_order(conn, order_id)

            if order.status == OrderStatus.CANCELLED.value:
                logger.warning(
                    "已取消订单收到支付回调，忽略: order_number=%s, status=%s",
                    order.order_number, payment_status,
                )
            elif payment_status == PaymentStatus.PAID.value:
                status = order.status
                if status == OrderStatus.PENDING.value:
                    check_transition("订单", ORDER_TRANSITIONS, status, OrderStatus.CONFIRMED)
                    status = OrderStatus.CONFIRMED.value
                conn.execute(
                    """UPDATE orders
                       SET payment_status = 'paid', paid_at = COALESCE(paid_at, ?),
                           status = ?, updated_at = ?
                       WHERE id = ?""",
                    (now, status, now, order_id),
                )
                credited = self.wallet.credit_order(order_id, conn=conn)
                # 已签收的订单不会再有签收事件，入账后直接释放
                if status == OrderStatus.DELIVERED.value:
                    for seller_id in credited:
                        self.wallet.release_pending_to_available(seller_id, order_id, conn=conn)
            elif order.payment_status == PaymentStatus.PAID.value:
                logger.warning(
                    "已支付订单收到失败回调，忽略: order_number=%s", order.order_number,
                )
            else:
                conn.execute(
                    "UPDATE orders SET payment_status = 'failed', updated_at = ? WHERE id = ?",
                    (now, order_id),
                )

            order = fetch_order(conn, order_id)

        logger.info(
            "支付回调处理完成: order_number=%s, payment_status=%s, credited_sellers=%s",
            order.order_number, order.payment_status, credited,
        )
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "payment_status": order.payment_status,
            "credited_sellers": credited,
        }

    def handle_delivery(self, order_ref) -> dict:
        """
        处理签收通知。已签收的订单重复通知时不做任何变动。

        Raises:
            OrderNotFoundError: 订单不存在。
            InvalidTransitionError: 订单尚未发货。
        """
        db = get_db()
        try:
            order_id = resolve_order_id(db, order_ref)
            order = fetch_order(db, order_id) if order_id else None
        finally:
            db.close()

        if order is None:
            logger.error("签收通知订单不存在: order_ref=%s", order_ref)
            raise OrderNotFoundError(f"订单 {order_ref} 不存在")

        if order.status == OrderStatus.DELIVERED.value:
            logger.info("订单已签收，忽略重复通知: order_number=%s", order.order_number)
        else:
            order = self.orders.update_status(order.id, OrderStatus.DELIVERED, is_admin=True)

        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
        }
