"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。状态使用封闭枚举 + 显式迁移表。
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """把数据库中的 DECIMAL 值（可能是 float/int/str）转为两位小数 Decimal。"""
    if value is None:
        return Decimal("0.00")
    # 加 0 把 -0.00 规整为 0.00
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP) + 0


# ── 状态枚举 ──────────────────────────────────────────────


class OfferStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SOLD_OUT = "sold_out"


class CartStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    SALE = "sale"
    COMMISSION = "commission"
    SHIPPING = "shipping"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"


class BalanceType(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# 订单状态迁移表：表外的迁移一律拒绝
ORDER_TRANSITIONS: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.PENDING: (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    OrderStatus.CONFIRMED: (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    OrderStatus.PROCESSING: (OrderStatus.SHIPPED,),
    OrderStatus.SHIPPED: (OrderStatus.DELIVERED,),
}

# 提现申请状态迁移表
PAYOUT_TRANSITIONS: dict[PayoutStatus, tuple[PayoutStatus, ...]] = {
    PayoutStatus.PENDING: (PayoutStatus.APPROVED, PayoutStatus.REJECTED),
    PayoutStatus.APPROVED: (PayoutStatus.PROCESSING, PayoutStatus.REJECTED),
    PayoutStatus.PROCESSING: (PayoutStatus.COMPLETED, PayoutStatus.FAILED),
}

# 未结束的提现状态，每个卖家同一时间最多一笔
OPEN_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.PROCESSING)

CANCELLABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class InvalidTransitionError(Exception):
    """状态迁移不在迁移表内。携带当前状态和允许的下一状态。"""

    def __init__(self, entity: str, current: str, target: str, allowed: list[str]):
        self.entity = entity
        self.current = current
        self.target = target
        self.allowed = allowed
        super().__init__(
            f"{entity} 不允许从 {current} 变更为 {target}，"
            f"允许的状态: {', '.join(allowed) or '无'}"
        )


def state_value(state) -> str:
    """枚举成员取 value，字符串原样返回。"""
    return state.value if isinstance(state, Enum) else str(state)


def allowed_transitions(table: dict, current) -> list[str]:
    current = state_value(current)
    for state, targets in table.items():
        if state.value == current:
            return [t.value for t in targets]
    return []


def check_transition(entity: str, table: dict, current, target) -> None:
    """
    按迁移表校验状态变更，调用方传入的目标状态不被信任。

    Raises:
        InvalidTransitionError: current → target 不在迁移表中。
    """
    allowed = allowed_transitions(table, current)
    if state_value(target) not in allowed:
        raise InvalidTransitionError(entity, state_value(current), state_value(target), allowed)


# ── 目录（外部协作方的最小镜像） ─────────────────────────


@dataclass
class Category:
    id: int
    name: str
    commission_rate: Decimal = Decimal("0")


@dataclass
class Product:
    id: int
    name: str
    category_id: Optional[int] = None


@dataclass
class Offer:
    id: int
    product_id: int
    seller_id: int
    price: Decimal
    stock: int
    status: str = OfferStatus.ACTIVE.value
    expiry_date: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── 购物车 ────────────────────────────────────────────────


@dataclass
class CartItem:
    id: int
    cart_id: int
    offer_id: int
    product_id: int
    seller_id: int
    quantity: int
    price_at_addition: Decimal
    product_name: Optional[str] = None


@dataclass
class Cart:
    id: int
    buyer_id: int
    status: str = CartStatus.ACTIVE.value
    items: list[CartItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None

    def is_empty(self) -> bool:
        return not self.items


@dataclass
class CartIssue:
    """购物车校验问题。type 为 unavailable / stock / price_changed。"""
    item_id: int
    product_name: str
    type: str
    message: str
    available_stock: Optional[int] = None
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None

    @property
    def blocking(self) -> bool:
        return self.type in ("unavailable", "stock")


# ── 订单 ──────────────────────────────────────────────────


@dataclass
class OrderItem:
    id: Optional[int]
    order_id: Optional[int]
    offer_id: int
    product_id: int
    seller_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    commission_rate: Decimal
    commission_amount: Decimal = Decimal("0.00")
    marketplace_fee: Decimal = Decimal("0.00")
    withholding_tax: Decimal = Decimal("0.00")
    shipping_cost_share: Decimal = Decimal("0.00")
    net_seller_amount: Decimal = Decimal("0.00")
    marketplace_fee_rate: Decimal = Decimal("0")
    withholding_tax_rate: Decimal = Decimal("0")
    commission_enabled: bool = True


@dataclass
class Order:
    id: Optional[int]
    order_number: str
    buyer_id: int
    shipping_address: dict
    subtotal: Decimal
    total_commission: Decimal
    total_amount: Decimal
    shipping_cost: Decimal = Decimal("0.00")
    status: str = OrderStatus.PENDING.value
    payment_status: str = PaymentStatus.PENDING.value
    shipping_status: str = "pending"
    notes: Optional[str] = None
    items: list[OrderItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def can_be_cancelled(self) -> bool:
        return self.status in {s.value for s in CANCELLABLE_ORDER_STATUSES}

    def seller_ids(self) -> list[int]:
        return sorted({item.seller_id for item in self.items})


# ── 钱包 ──────────────────────────────────────────────────


@dataclass
class SellerWallet:
    id: int
    seller_id: int
    balance: Decimal = Decimal("0.00")
    pending_balance: Decimal = Decimal("0.00")
    withdrawn_balance: Decimal = Decimal("0.00")
    total_earned: Decimal = Decimal("0.00")
    total_commission: Decimal = Decimal("0.00")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def total_balance(self) -> Decimal:
        return self.balance + self.pending_balance


@dataclass
class WalletTransaction:
    id: int
    wallet_id: int
    type: str
    amount: Decimal
    balance_type: str
    description: Optional[str] = None
    order_id: Optional[int] = None
    order_item_id: Optional[int] = None
    created_at: Optional[datetime] = None


# ── 提现 ──────────────────────────────────────────────────


@dataclass
class BankAccount:
    id: int
    seller_id: int
    bank_name: str
    account_holder: str
    iban_last4: str
    is_default: int = 0
    created_at: Optional[datetime] = None


@dataclass
class PayoutRequest:
    id: int
    seller_id: int
    amount: Decimal
    bank_account_id: Optional[int] = None
    status: str = PayoutStatus.PENDING.value
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    transaction_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in {s.value for s in OPEN_PAYOUT_STATUSES}
