"""
提现申请服务：卖家发起申请，管理员审核、打款、完成。

状态迁移：pending → approved / rejected；approved → processing / rejected；
processing → completed / failed。每个卖家同一时间最多一笔未结束的申请。
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from settlement.database import get_db, transaction
from settlement.models.schemas import (
    PAYOUT_TRANSITIONS,
    PayoutRequest,
    PayoutStatus,
    check_transition,
    to_money,
)
from settlement.services.bank_account_service import fetch_account
from settlement.services.wallet_service import (
    InsufficientBalanceError,
    WalletService,
    fetch_or_create_wallet,
)

logger = logging.getLogger(__name__)

INVALID_AMOUNT = "INVALID_AMOUNT"
INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
OPEN_REQUEST_EXISTS = "OPEN_REQUEST_EXISTS"
MISSING_BANK_ACCOUNT = "MISSING_BANK_ACCOUNT"


@dataclass(frozen=True)
class PayoutRequestError:
    """提现申请被拒绝的原因（作为返回值，不抛出）。"""
    code: str
    message: str


class PayoutNotFoundError(LookupError):
    pass


def _now() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _row_to_request(row: sqlite3.Row) -> PayoutRequest:
    return PayoutRequest(
        id=row["id"],
        seller_id=row["seller_id"],
        amount=to_money(row["amount"]),
        bank_account_id=row["bank_account_id"],
        status=row["status"],
        notes=row["notes"],
        admin_notes=row["admin_notes"],
        processed_by=row["processed_by"],
        processed_at=row["processed_at"],
        transaction_reference=row["transaction_reference"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _fetch(conn: sqlite3.Connection, request_id: int) -> PayoutRequest:
    row = conn.execute("SELECT * FROM payout_requests WHERE id = ?", (request_id,)).fetchone()
    if not row:
        raise PayoutNotFoundError(f"提现申请 {request_id} 不存在")
    return _row_to_request(row)


class PayoutService:
    """提现申请的创建、审核与完成。"""

    def __init__(self, wallet: WalletService | None = None):
        self.wallet = wallet or WalletService()

    def create_request(
        self,
        seller_id: int,
        amount,
        bank_account_id: int | None = None,
        notes: str | None = None,
    ) -> PayoutRequest | PayoutRequestError:
        """
        发起提现申请。未指定银行账户时使用默认账户。

        校验失败返回 PayoutRequestError（INVALID_AMOUNT / MISSING_BANK_ACCOUNT /
        INSUFFICIENT_BALANCE / OPEN_REQUEST_EXISTS），不写入任何数据。
        """
        try:
            amount = to_money(amount)
        except ArithmeticError:
            return PayoutRequestError(INVALID_AMOUNT, "金额无效")
        if amount <= 0:
            return PayoutRequestError(INVALID_AMOUNT, "金额无效")

        with transaction() as conn:
            if bank_account_id is None:
                row = conn.execute(
                    "SELECT id FROM bank_accounts WHERE seller_id = ? AND is_default = 1",
                    (seller_id,),
                ).fetchone()
                bank_account_id = row["id"] if row else None
            if bank_account_id is None or fetch_account(conn, seller_id, bank_account_id) is None:
                return PayoutRequestError(MISSING_BANK_ACCOUNT, "请先添加收款银行账户")

            wallet = fetch_or_create_wallet(conn, seller_id)
            if amount > wallet.balance:
                logger.warning(
                    "提现申请余额不足: seller_id=%d, amount=%s, balance=%s",
                    seller_id, amount, wallet.balance,
                )
                return PayoutRequestError(
                    INSUFFICIENT_BALANCE, f"余额不足，当前可提现: {wallet.balance}",
                )

            open_row = conn.execute(
                """SELECT id FROM payout_requests
                   WHERE seller_id = ? AND status IN ('pending', 'approved', 'processing')""",
                (seller_id,),
            ).fetchone()
            if open_row:
                return PayoutRequestError(OPEN_REQUEST_EXISTS, "已有未完成的提现申请")

            now = _now()
            cursor = conn.execute(
                """INSERT INTO payout_requests
                   (seller_id, bank_account_id, amount, status, notes, created_at, updated_at)
                   VALUES (?, ?, ?, 'pending', ?, ?, ?)""",
                (seller_id, bank_account_id, str(amount), notes, now, now),
            )
            request = _fetch(conn, cursor.lastrowid)

        logger.info("提现申请已创建: id=%d, seller_id=%d, amount=%s", request.id, seller_id, amount)
        return request

    def _transition(
        self,
        request_id: int,
        target: PayoutStatus,
        admin_id: int | None,
        admin_notes: str | None = None,
    ) -> PayoutRequest:
        with transaction() as conn:
            request = _fetch(conn, request_id)
            check_transition("提现申请", PAYOUT_TRANSITIONS, request.status, target)
            now = _now()
            conn.execute(
                """UPDATE payout_requests
                   SET status = ?, processed_by = ?, processed_at = ?,
                       admin_notes = COALESCE(?, admin_notes), updated_at = ?
                   WHERE id = ?""",
                (target.value, admin_id, now, admin_notes, now, request_id),
            )
            updated = _fetch(conn, request_id)

        logger.info(
            "提现申请状态变更: id=%d, %s → %s, admin_id=%s",
            request_id, request.status, target.value, admin_id,
        )
        return updated

    def approve(self, request_id: int, admin_id: int | None = None, notes: str | None = None) -> PayoutRequest:
        """
        Raises:
            PayoutNotFoundError: 申请不存在。
            InvalidTransitionError: 当前状态不可审核通过。
        """
        return self._transition(request_id, PayoutStatus.APPROVED, admin_id, notes)

    def reject(self, request_id: int, admin_id: int | None = None, notes: str | None = None) -> PayoutRequest:
        return self._transition(request_id, PayoutStatus.REJECTED, admin_id, notes)

    def mark_processing(self, request_id: int, admin_id: int | None = None) -> PayoutRequest:
        return self._transition(request_id, PayoutStatus.PROCESSING, admin_id)

    def complete(self, request_id: int, transaction_reference: str, admin_id: int | None = None) -> PayoutRequest:
        """
        打款完成：同一事务内从钱包扣款并标记 completed，记录转账流水号。
        可提现余额不足时申请标记为 failed（该状态同样会提交），钱包不变。

        Returns:
            更新后的申请，调用方通过 status 判断成功（completed）或失败（failed）。

        Raises:
            PayoutNotFoundError: 申请不存在。
            InvalidTransitionError: 申请不处于 processing。
            ValueError: 未提供转账流水号。
        """
        reference = (transaction_reference or "").strip()
        if not reference:
            raise ValueError("转账流水号不能为空")

        with transaction() as conn:
            request = _fetch(conn, request_id)
            check_transition("提现申请", PAYOUT_TRANSITIONS, request.status, PayoutStatus.COMPLETED)

            now = _now()
            try:
                self.wallet.withdraw(
                    request.seller_id, request.amount,
                    f"提现申请 #{request.id}", conn=conn,
                )
            except InsufficientBalanceError as e:
                logger.error("提现打款失败，余额不足: id=%d, %s", request_id, e)
                conn.execute(
                    """UPDATE payout_requests
                       SET status = 'failed', admin_notes = ?, processed_by = ?,
                           processed_at = ?, updated_at = ?
                       WHERE id = ?""",
                    (str(e), admin_id, now, now, request_id),
                )
            else:
                conn.execute(
                    """UPDATE payout_requests
                       SET status = 'completed', transaction_reference = ?,
                           processed_by = COALESCE(?, processed_by), processed_at = ?, updated_at = ?
                       WHERE id = ?""",
                    (reference, admin_id, now, now, request_id),
                )
                logger.info(
                    "提现申请已完成: id=%d, seller_id=%d, amount=%s, reference=%s",
                    request_id, request.seller_id, request.amount, reference,
                )
            return _fetch(conn, request_id)

    # ── 查询 ──────────────────────────────────────────────

    def get_request(self, request_id: int) -> PayoutRequest:
        db = get_db()
        try:
            return _fetch(db, request_id)
        finally:
            db.close()

    def list_seller_requests(self, seller_id: int, limit: int = 20) -> list[PayoutRequest]:
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM payout_requests WHERE seller_id = ?
                   ORDER BY created_at DESC, id DESC LIMIT ?""",
                (seller_id, limit),
            ).fetchall()
            return [_row_to_request(r) for r in rows]
        finally:
            db.close()

    def list_requests(self, status: str | None = None, limit: int = 50) -> list[PayoutRequest]:
        """管理员查看申请，默认全部，按创建时间先后。"""
        db = get_db()
        try:
            if status:
                rows = db.execute(
                    "SELECT * FROM payout_requests WHERE status = ? ORDER BY created_at, id LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM payout_requests ORDER BY created_at, id LIMIT ?", (limit,),
                ).fetchall()
            return [_row_to_request(r) for r in rows]
        finally:
            db.close()

    def list_pending_requests(self) -> list[PayoutRequest]:
        return self.list_requests(PayoutStatus.PENDING.value, limit=1000)

    def get_statistics(self) -> dict:
        """待处理数量与金额、今日及本月已完成金额（按整数分汇总）。"""
        today = date.today()
        month_prefix = today.strftime("%Y-%m")
        db = get_db()
        try:
            row = db.execute(
                """SELECT
                       SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending_count,
                       COALESCE(SUM(CASE WHEN status = 'pending'
                           THEN CAST(ROUND(amount * 100, 0) AS INTEGER) ELSE 0 END), 0) AS pending_cents,
                       COALESCE(SUM(CASE WHEN status = 'completed' AND date(processed_at) = ?
                           THEN CAST(ROUND(amount * 100, 0) AS INTEGER) ELSE 0 END), 0) AS today_cents,
                       COALESCE(SUM(CASE WHEN status = 'completed' AND strftime('%Y-%m', processed_at) = ?
                           THEN CAST(ROUND(amount * 100, 0) AS INTEGER) ELSE 0 END), 0) AS month_cents
                   FROM payout_requests""",
                (today.isoformat(), month_prefix),
            ).fetchone()
        finally:
            db.close()
        return {
            "pending_count": row["pending_count"] or 0,
            "pending_amount": str(to_money(Decimal(row["pending_cents"]) / 100)),
            "completed_today": str(to_money(Decimal(row["today_cents"]) / 100)),
            "completed_this_month": str(to_money(Decimal(row["month_cents"]) / 100)),
        }


def payout_to_dict(request: PayoutRequest) -> dict:
    return {
        "id": request.id,
        "seller_id": request.seller_id,
        "amount": str(request.amount),
        "bank_account_id": request.bank_account_id,
        "status": request.status,
        "is_open": request.is_open,
        "notes": request.notes,
        "admin_notes": request.admin_notes,
        "processed_by": request.processed_by,
        "processed_at": request.processed_at,
        "transaction_reference": request.transaction_reference,
        "created_at": request.created_at,
    }
