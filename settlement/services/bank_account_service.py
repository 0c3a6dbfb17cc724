"""卖家收款银行账户：IBAN 加密存储，只展示末四位。"""

import logging
import sqlite3
from datetime import datetime

from settlement.database import get_db, transaction
from settlement.models.schemas import BankAccount
from settlement.services.platform_config import decrypt_value, encrypt_value

logger = logging.getLogger(__name__)


class BankAccountError(ValueError):
    pass


def _row_to_account(row: sqlite3.Row) -> BankAccount:
    return BankAccount(
        id=row["id"],
        seller_id=row["seller_id"],
        bank_name=row["bank_name"],
        account_holder=row["account_holder"],
        iban_last4=row["iban_last4"],
        is_default=row["is_default"],
        created_at=row["created_at"],
    )


def fetch_account(conn: sqlite3.Connection, seller_id: int, account_id: int) -> BankAccount | None:
    """只返回属于该卖家的账户。"""
    row = conn.execute(
        "SELECT * FROM bank_accounts WHERE id = ? AND seller_id = ?",
        (account_id, seller_id),
    ).fetchone()
    return _row_to_account(row) if row else None


class BankAccountService:
    """银行账户增删查、默认账户设置。"""

    def add_account(
        self,
        seller_id: int,
        bank_name: str,
        account_holder: str,
        iban: str,
        is_default: bool = False,
    ) -> BankAccount:
        """
        添加收款账户。卖家的第一个账户自动成为默认账户。

        Raises:
            BankAccountError: 必填字段为空。
        """
        iban = "".join((iban or "").split()).upper()
        bank_name = (bank_name or "").strip()
        account_holder = (account_holder or "").strip()
        if not iban or not bank_name or not account_holder:
            raise BankAccountError("银行名称、开户人和 IBAN 均不能为空")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with transaction() as conn:
            has_any = conn.execute(
                "SELECT 1 FROM bank_accounts WHERE seller_id = ?", (seller_id,)
            ).fetchone()
            make_default = is_default or not has_any
            if make_default:
                conn.execute(
                    "UPDATE bank_accounts SET is_default = 0 WHERE seller_id = ?", (seller_id,)
                )
            cursor = conn.execute(
                """INSERT INTO bank_accounts
                   (seller_id, bank_name, account_holder, iban_encrypted, iban_last4, is_default, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (seller_id, bank_name, account_holder, encrypt_value(iban),
                 iban[-4:], 1 if make_default else 0, now),
            )
            account = fetch_account(conn, seller_id, cursor.lastrowid)

        logger.info("卖家添加收款账户: seller_id=%d, account_id=%d", seller_id, account.id)
        return account

    def list_accounts(self, seller_id: int) -> list[BankAccount]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM bank_accounts WHERE seller_id = ? ORDER BY is_default DESC, id",
                (seller_id,),
            ).fetchall()
            return [_row_to_account(r) for r in rows]
        finally:
            db.close()

    def get_account(self, seller_id: int, account_id: int) -> BankAccount | None:
        db = get_db()
        try:
            return fetch_account(db, seller_id, account_id)
        finally:
            db.close()

    def get_default_account(self, seller_id: int) -> BankAccount | None:
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM bank_accounts WHERE seller_id = ? AND is_default = 1",
                (seller_id,),
            ).fetchone()
            return _row_to_account(row) if row else None
        finally:
            db.close()

    def set_default(self, seller_id: int, account_id: int) -> None:
        with transaction() as conn:
            if fetch_account(conn, seller_id, account_id) is None:
                raise BankAccountError(f"银行账户 {account_id} 不存在")
            conn.execute("UPDATE bank_accounts SET is_default = 0 WHERE seller_id = ?", (seller_id,))
            conn.execute("UPDATE bank_accounts SET is_default = 1 WHERE id = ?", (account_id,))

    def reveal_iban(self, account_id: int) -> str:
        """解密完整 IBAN，仅供管理员打款使用。"""
        db = get_db()
        try:
            row = db.execute(
                "SELECT iban_encrypted FROM bank_accounts WHERE id = ?", (account_id,)
            ).fetchone()
        finally:
            db.close()
        if not row:
            raise BankAccountError(f"银行账户 {account_id} 不存在")
        return decrypt_value(row["iban_encrypted"])


def account_to_dict(account: BankAccount) -> dict:
    return {
        "id": account.id,
        "bank_name": account.bank_name,
        "account_holder": account.account_holder,
        "iban_masked": f"****{account.iban_last4}",
        "is_default": bool(account.is_default),
        "created_at": account.created_at,
    }
