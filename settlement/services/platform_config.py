"""
平台配置服务：管理 system_config 表的读写。

提供费率配置（类目佣金开关、平台服务费率、预扣税率）的读取与保存，
以及银行账号等敏感字段的加密存储。
使用 Fernet 对称加密，密钥由 JWT_SECRET 通过 PBKDF2 派生。
"""

import base64
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from settlement.database import get_db
from settlement.services.fee_engine import FeeConfig

logger = logging.getLogger(__name__)

KEY_COMMISSION_ENABLED = "commission.enabled"
KEY_MARKETPLACE_FEE_RATE = "commission.marketplace_fee_rate"
KEY_WITHHOLDING_TAX_RATE = "commission.withholding_tax_rate"

MAX_RATE = Decimal("100")


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"settlement-ledger-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def encrypt_value(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_value(ciphertext: str) -> str:
    """
    解密密文。

    Raises:
        PlatformConfigError: 密钥变更或密文损坏。
    """
    try:
        return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise PlatformConfigError("敏感数据解密失败") from e


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key)
               DO UPDATE SET config_value = excluded.config_value,
                             updated_at = excluded.updated_at""",
            (key, value, now),
        )
        db.commit()
    finally:
        db.close()


# ── 费率配置 ──────────────────────────────────────────────


def _env_fee_defaults() -> FeeConfig:
    """环境变量中的默认费率（未在后台配置时使用）。"""
    return FeeConfig(
        commission_enabled=os.getenv("COMMISSION_ENABLED", "1") == "1",
        marketplace_fee_rate=Decimal(os.getenv("MARKETPLACE_FEE_RATE", "0.89")),
        withholding_tax_rate=Decimal(os.getenv("WITHHOLDING_TAX_RATE", "1.00")),
    )


def _parse_rate(value: str, name: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise PlatformConfigError(f"{name} 格式无效: {value}")
    if not rate.is_finite() or rate < 0 or rate > MAX_RATE:
        raise PlatformConfigError(f"{name} 必须在 0 到 100 之间")
    return rate


def load_fee_config() -> FeeConfig:
    """
    读取当前生效的费率配置：system_config 中的值覆盖环境变量默认值。

    返回的 FeeConfig 为不可变值对象，由调用方传入费用计算，
    计算过程本身不读取任何全局配置。
    """
    defaults = _env_fee_defaults()

    enabled_raw = get_config(KEY_COMMISSION_ENABLED)
    fee_raw = get_config(KEY_MARKETPLACE_FEE_RATE)
    tax_raw = get_config(KEY_WITHHOLDING_TAX_RATE)

    return FeeConfig(
        commission_enabled=defaults.commission_enabled if enabled_raw is None else enabled_raw == "1",
        marketplace_fee_rate=(
            defaults.marketplace_fee_rate if fee_raw is None
            else _parse_rate(fee_raw, "平台服务费率")
        ),
        withholding_tax_rate=(
            defaults.withholding_tax_rate if tax_raw is None
            else _parse_rate(tax_raw, "预扣税率")
        ),
    )


def save_fee_settings(
    commission_enabled: bool | None = None,
    marketplace_fee_rate=None,
    withholding_tax_rate=None,
) -> FeeConfig:
    """
    保存费率配置，只更新传入的项。已创建订单的明细保存了创建时的费率快照，不受影响。

    Raises:
        PlatformConfigError: 费率格式无效或超出范围。
    """
    updates = {}
    if marketplace_fee_rate is not None:
        updates[KEY_MARKETPLACE_FEE_RATE] = str(_parse_rate(marketplace_fee_rate, "平台服务费率"))
    if withholding_tax_rate is not None:
        updates[KEY_WITHHOLDING_TAX_RATE] = str(_parse_rate(withholding_tax_rate, "预扣税率"))
    if commission_enabled is not None:
        updates[KEY_COMMISSION_ENABLED] = "1" if commission_enabled else "0"

    for key, value in updates.items():
        set_config(key, value)

    config = load_fee_config()
    logger.info(
        "费率配置已更新: commission_enabled=%s, marketplace_fee_rate=%s, withholding_tax_rate=%s",
        config.commission_enabled, config.marketplace_fee_rate, config.withholding_tax_rate,
    )
    return config


def fee_settings_dict(config: FeeConfig) -> dict:
    return {
        "commission_enabled": config.commission_enabled,
        "marketplace_fee_rate": str(config.marketplace_fee_rate),
        "withholding_tax_rate": str(config.withholding_tax_rate),
    }
