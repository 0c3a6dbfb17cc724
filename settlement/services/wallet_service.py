"""
卖家钱包服务：待结算 / 可提现 / 已提现三段余额与只增不改的流水账。

钱包余额字段从不直接赋值，每次变更都在同一事务内写入对应流水，
因此 balance = Σ(available 流水)，pending_balance = Σ(pending 流水)。
"""

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal

from settlement.database import get_db, joined_transaction
from settlement.models.schemas import (
    BalanceType,
    SellerWallet,
    TransactionType,
    WalletTransaction,
    to_money,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class WalletError(ValueError):
    pass


class InsufficientBalanceError(WalletError):
    """可用余额不足。"""

    def __init__(self, requested: Decimal, available: Decimal):
        self.requested = requested
        self.available = available
        super().__init__(f"余额不足: 申请 {requested}，可用 {available}")


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _row_to_wallet(row: sqlite3.Row) -> SellerWallet:
    return SellerWallet(
        id=row["id"],
        seller_id=row["seller_id"],
        balance=to_money(row["balance"]),
        pending_balance=to_money(row["pending_balance"]),
        withdrawn_balance=to_money(row["withdrawn_balance"]),
        total_earned=to_money(row["total_earned"]),
        total_commission=to_money(row["total_commission"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: sqlite3.Row) -> WalletTransaction:
    return WalletTransaction(
        id=row["id"],
        wallet_id=row["wallet_id"],
        type=row["type"],
        amount=to_money(row["amount"]),
        balance_type=row["balance_type"],
        description=row["description"],
        order_id=row["order_id"],
        order_item_id=row["order_item_id"],
        created_at=row["created_at"],
    )


def fetch_wallet(conn: sqlite3.Connection, seller_id: int) -> SellerWallet | None:
    row = conn.execute(
        "SELECT * FROM seller_wallets WHERE seller_id = ?", (seller_id,)
    ).fetchone()
    return _row_to_wallet(row) if row else None


def fetch_or_create_wallet(conn: sqlite3.Connection, seller_id: int) -> SellerWallet:
    wallet = fetch_wallet(conn, seller_id)
    if wallet is None:
        now = _now()
        conn.execute(
            "INSERT INTO seller_wallets (seller_id, created_at, updated_at) VALUES (?, ?, ?)",
            (seller_id, now, now),
        )
        wallet = fetch_wallet(conn, seller_id)
    return wallet


def _append(
    conn: sqlite3.Connection,
    wallet_id: int,
    tx_type: TransactionType,
    amount: Decimal,
    balance_type: BalanceType,
    description: str,
    order_id: int | None = None,
    order_item_id: int | None = None,
) -> None:
    conn.execute(
        """INSERT INTO wallet_transactions
           (wallet_id, type, amount, balance_type, description, order_id, order_item_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (wallet_id, tx_type.value, str(to_money(amount)), balance_type.value,
         description, order_id, order_item_id, _now()),
    )


def _store(conn: sqlite3.Connection, wallet: SellerWallet) -> None:
    conn.execute(
        """UPDATE seller_wallets
           SET balance = ?, pending_balance = ?, withdrawn_balance = ?,
               total_earned = ?, total_commission = ?, updated_at = ?
           WHERE id = ?""",
        (str(wallet.balance), str(wallet.pending_balance), str(wallet.withdrawn_balance),
         str(wallet.total_earned), str(wallet.total_commission), _now(), wallet.id),
    )


def _journal_cents(conn: sqlite3.Connection, where: str, params: tuple) -> Decimal:
    """按整数分汇总流水金额，避免浮点误差。"""
    row = conn.execute(
        f"""SELECT COALESCE(SUM(CAST(ROUND(amount * 100, 0) AS INTEGER)), 0) AS cents
            FROM wallet_transactions WHERE {where}""",
        params,
    ).fetchone()
    return to_money(Decimal(row["cents"]) / 100)


def _order_label(conn: sqlite3.Connection, order_id: int) -> str:
    row = conn.execute("SELECT order_number FROM orders WHERE id = ?", (order_id,)).fetchone()
    return row["order_number"] if row else str(order_id)


class WalletService:
    """卖家钱包：入账、结算释放、提现、调整与对账。"""

    def get_or_create_wallet(self, seller_id: int, conn: sqlite3.Connection | None = None) -> SellerWallet:
        with joined_transaction(conn) as c:
            return fetch_or_create_wallet(c, seller_id)

    def credit(
        self,
        seller_id: int,
        order_id: int,
        sale_amount,
        commission,
        shipping_cost=0,
        order_item_id: int | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """
        订单销售入账到待结算余额。

        写入 sale(+)、commission(-)、shipping(-，大于 0 时) 三类 pending 流水，
        并增加 pending_balance 与 total_earned（净额）、total_commission。
        同一卖家同一订单只入账一次，重复调用返回 False 且不做任何修改。

        Raises:
            ValueError: 金额为负或净额为负。
        """
        sale = to_money(sale_amount)
        commission = to_money(commission)
        shipping = to_money(shipping_cost or 0)
        if sale < 0 or commission < 0 or shipping < 0:
            raise ValueError("入账金额不能为负数")

        net = sale - commission - shipping
        if net < 0:
            raise ValueError(f"入账净额为负: sale={sale}, commission={commission}, shipping={shipping}")

        with joined_transaction(conn) as c:
            wallet = fetch_or_create_wallet(c, seller_id)
            exists = c.execute(
                """SELECT 1 FROM wallet_transactions
                   WHERE wallet_id = ? AND order_id = ? AND type = 'sale'""",
                (wallet.id, order_id),
            ).fetchone()
            if exists:
                logger.info("订单已入账，忽略重复入账: seller_id=%d, order_id=%d", seller_id, order_id)
                return False

            wallet.pending_balance += net
            wallet.total_earned += net
            wallet.total_commission += commission
            _store(c, wallet)

            label = _order_label(c, order_id)
            _append(c, wallet.id, TransactionType.SALE, sale, BalanceType.PENDING,
                    f"订单 {label} 销售", order_id, order_item_id)
            _append(c, wallet.id, TransactionType.COMMISSION, -commission, BalanceType.PENDING,
                    f"订单 {label} 佣金及服务费", order_id, order_item_id)
            if shipping > 0:
                _append(c, wallet.id, TransactionType.SHIPPING, -shipping, BalanceType.PENDING,
                        f"订单 {label} 运费", order_id, order_item_id)

        logger.info(
            "卖家入账: seller_id=%d, order_id=%d, sale=%s, commission=%s, shipping=%s, net=%s",
            seller_id, order_id, sale, commission, shipping, net,
        )
        return True

    def credit_order(self, order_id: int, conn: sqlite3.Connection | None = None) -> list[int]:
        """
        按卖家汇总订单明细并逐一入账。佣金项包含类目佣金、平台服务费与预扣税，
        因此入账净额等于该卖家明细 net_seller_amount 之和。

        Returns:
            本次实际入账的卖家 ID 列表（已入账的卖家不重复入账）。
        """
        with joined_transaction(conn) as c:
            rows = c.execute(
                """SELECT seller_id,
                          SUM(CAST(ROUND(total_price * 100, 0) AS INTEGER)) AS sale_cents,
                          SUM(CAST(ROUND(commission_amount * 100, 0) AS INTEGER)
                              + CAST(ROUND(marketplace_fee * 100, 0) AS INTEGER)
                              + CAST(ROUND(withholding_tax * 100, 0) AS INTEGER)) AS fee_cents,
                          SUM(CAST(ROUND(shipping_cost_share * 100, 0) AS INTEGER)) AS shipping_cents
                   FROM order_items WHERE order_id = ?
                   GROUP BY seller_id ORDER BY seller_id""",
                (order_id,),
            ).fetchall()

            credited = []
            for row in rows:
                ok = self.credit(
                    row["seller_id"], order_id,
                    Decimal(row["sale_cents"]) / 100,
                    Decimal(row["fee_cents"]) / 100,
                    Decimal(row["shipping_cents"]) / 100,
                    conn=c,
                )
                if ok:
                    credited.append(row["seller_id"])
            return credited

    def _pending_for_order(self, conn, wallet_id: int, order_id: int) -> Decimal:
        return _journal_cents(
            conn, "wallet_id = ? AND order_id = ? AND balance_type = 'pending'",
            (wallet_id, order_id),
        )

    def release_pending_to_available(
        self, seller_id: int, order_id: int, conn: sqlite3.Connection | None = None,
    ) -> bool:
        """
        把该订单仍挂在待结算中的净额转入可提现余额。

        写入两条 adjustment 流水（pending 减、available 加），
        释放后该订单的 pending 流水合计为 0，再次调用返回 False。
        """
        with joined_transaction(conn) as c:
            wallet = fetch_wallet(c, seller_id)
            if wallet is None:
                return False

            net = self._pending_for_order(c, wallet.id, order_id)
            if net <= 0:
                return False

            wallet.pending_balance -= net
            wallet.balance += net
            _store(c, wallet)

            label = _order_label(c, order_id)
            _append(c, wallet.id, TransactionType.ADJUSTMENT, -net, BalanceType.PENDING,
                    f"订单 {label} 结算转出", order_id)
            _append(c, wallet.id, TransactionType.ADJUSTMENT, net, BalanceType.AVAILABLE,
                    f"订单 {label} 结算转入", order_id)

        logger.info("待结算转可提现: seller_id=%d, order_id=%d, amount=%s", seller_id, order_id, net)
        return True

    def reverse_pending(
        self, seller_id: int, order_id: int, conn: sqlite3.Connection | None = None,
    ) -> Decimal:
        """
        冲销该订单仍在待结算中的入账（订单取消时使用）。

        Returns:
            冲销金额，没有待结算金额时为 0。
        """
        with joined_transaction(conn) as c:
            wallet = fetch_wallet(c, seller_id)
            if wallet is None:
                return ZERO

            net = self._pending_for_order(c, wallet.id, order_id)
            if net <= 0:
                return ZERO

            commission = ZERO - _journal_cents(
                c, "wallet_id = ? AND order_id = ? AND type = 'commission'",
                (wallet.id, order_id),
            )
            wallet.pending_balance -= net
            wallet.total_earned -= net
            wallet.total_commission -= commission
            _store(c, wallet)

            _append(c, wallet.id, TransactionType.ADJUSTMENT, -net, BalanceType.PENDING,
                    f"订单 {_order_label(c, order_id)} 取消冲销", order_id)

        logger.info("订单取消冲销待结算: seller_id=%d, order_id=%d, amount=%s", seller_id, order_id, net)
        return net

    def withdraw(
        self,
        seller_id: int,
        amount,
        description: str = "提现",
        conn: sqlite3.Connection | None = None,
    ) -> SellerWallet:
        """
        从可提现余额扣款。

        Raises:
            ValueError: 金额不大于 0。
            InsufficientBalanceError: 金额超过可提现余额。
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError("提现金额必须大于 0")

        with joined_transaction(conn) as c:
            wallet = fetch_or_create_wallet(c, seller_id)
            if amount > wallet.balance:
                logger.warning(
                    "提现余额不足: seller_id=%d, amount=%s, balance=%s",
                    seller_id, amount, wallet.balance,
                )
                raise InsufficientBalanceError(amount, wallet.balance)

            wallet.balance -= amount
            wallet.withdrawn_balance += amount
            _store(c, wallet)
            _append(c, wallet.id, TransactionType.WITHDRAWAL, -amount,
                    BalanceType.AVAILABLE, description)

        logger.info("卖家提现: seller_id=%d, amount=%s", seller_id, amount)
        return wallet

    def adjust(
        self,
        seller_id: int,
        amount,
        balance_type: str = BalanceType.AVAILABLE.value,
        description: str = "人工调整",
        conn: sqlite3.Connection | None = None,
    ) -> SellerWallet:
        """
        人工调整（正数加、负数减），写入 adjustment 流水。

        Raises:
            ValueError: 金额为 0 或余额类型无效。
            InsufficientBalanceError: 调整后余额为负。
        """
        amount = to_money(amount)
        if amount == 0:
            raise ValueError("调整金额不能为 0")
        balance_type = BalanceType(balance_type)

        with joined_transaction(conn) as c:
            wallet = fetch_or_create_wallet(c, seller_id)
            if balance_type is BalanceType.AVAILABLE:
                if wallet.balance + amount < 0:
                    raise InsufficientBalanceError(-amount, wallet.balance)
                wallet.balance += amount
            else:
                if wallet.pending_balance + amount < 0:
                    raise InsufficientBalanceError(-amount, wallet.pending_balance)
                wallet.pending_balance += amount
            _store(c, wallet)
            _append(c, wallet.id, TransactionType.ADJUSTMENT, amount, balance_type, description)

        logger.info(
            "钱包调整: seller_id=%d, amount=%s, balance_type=%s, description=%s",
            seller_id, amount, balance_type.value, description,
        )
        return wallet

    # ── 查询 ──────────────────────────────────────────────

    def get_wallet_summary(self, seller_id: int) -> dict:
        wallet = self.get_or_create_wallet(seller_id)
        return {
            "seller_id": seller_id,
            "balance": str(wallet.balance),
            "pending_balance": str(wallet.pending_balance),
            "total_balance": str(wallet.total_balance),
            "withdrawn_balance": str(wallet.withdrawn_balance),
            "total_earned": str(wallet.total_earned),
            "total_commission": str(wallet.total_commission),
        }

    def get_transactions(
        self,
        seller_id: int,
        limit: int = 20,
        offset: int = 0,
        tx_type: str | None = None,
    ) -> list[WalletTransaction]:
        """最近的流水，按时间倒序。"""
        db = get_db()
        try:
            wallet = fetch_wallet(db, seller_id)
            if wallet is None:
                return []
            sql = "SELECT * FROM wallet_transactions WHERE wallet_id = ?"
            params: list = [wallet.id]
            if tx_type:
                sql += " AND type = ?"
                params.append(tx_type)
            sql += " ORDER BY id DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            return [_row_to_transaction(r) for r in db.execute(sql, params).fetchall()]
        finally:
            db.close()

    def reconcile(self, seller_id: int) -> dict:
        """
        对账：用流水重新汇总三段余额，与钱包字段比较。

        Returns:
            {"consistent": bool, "balance": ..., "journal_available": ..., ...}
        """
        db = get_db()
        try:
            wallet = fetch_wallet(db, seller_id)
            if wallet is None:
                return {"seller_id": seller_id, "consistent": True, "wallet_exists": False}

            available = _journal_cents(db, "wallet_id = ? AND balance_type = 'available'", (wallet.id,))
            pending = _journal_cents(db, "wallet_id = ? AND balance_type = 'pending'", (wallet.id,))
            withdrawn = ZERO - _journal_cents(db, "wallet_id = ? AND type = 'withdrawal'", (wallet.id,))
        finally:
            db.close()

        consistent = (
            available == wallet.balance
            and pending == wallet.pending_balance
            and withdrawn == wallet.withdrawn_balance
        )
        if not consistent:
            logger.error(
                "钱包对账不一致: seller_id=%d, balance=%s/%s, pending=%s/%s, withdrawn=%s/%s",
                seller_id, wallet.balance, available, wallet.pending_balance, pending,
                wallet.withdrawn_balance, withdrawn,
            )
        return {
            "seller_id": seller_id,
            "wallet_exists": True,
            "consistent": consistent,
            "balance": str(wallet.balance),
            "journal_available": str(available),
            "pending_balance": str(wallet.pending_balance),
            "journal_pending": str(pending),
            "withdrawn_balance": str(wallet.withdrawn_balance),
            "journal_withdrawn": str(withdrawn),
        }


def transaction_to_dict(tx: WalletTransaction) -> dict:
    return {
        "id": tx.id,
        "type": tx.type,
        "amount": str(tx.amount),
        "balance_type": tx.balance_type,
        "description": tx.description,
        "order_id": tx.order_id,
        "order_item_id": tx.order_item_id,
        "created_at": tx.created_at,
    }
