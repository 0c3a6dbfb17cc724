"""
费用计算引擎：纯函数，无 I/O。

对订单明细计算类目佣金、平台服务费、预扣税、运费分摊和卖家净额。
每一项乘法结果立即按 ROUND_HALF_UP 保留两位小数，净额由已舍入的各项相减得出，
因此同样的输入（明细快照中保存的金额和费率）总能复算出完全相同的结果。
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from settlement.models.schemas import CENT, Order, OrderItem

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeConfig:
    """费率配置值对象，由调用方显式传入每次计算。"""
    commission_enabled: bool = True
    marketplace_fee_rate: Decimal = Decimal("0.89")
    withholding_tax_rate: Decimal = Decimal("1.00")


@dataclass(frozen=True)
class FeeBreakdown:
    total_price: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    marketplace_fee_rate: Decimal
    marketplace_fee: Decimal
    withholding_tax_rate: Decimal
    withholding_tax: Decimal
    shipping_cost_share: Decimal
    net_seller_amount: Decimal

    @property
    def total_fees(self) -> Decimal:
        return (
            self.commission_amount + self.marketplace_fee
            + self.withholding_tax + self.shipping_cost_share
        )


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _percent_of(amount: Decimal, rate: Decimal) -> Decimal:
    return _round(amount * Decimal(str(rate)) / HUNDRED)


def compute_fees(
    total_price,
    commission_rate,
    shipping_share,
    config: FeeConfig,
) -> FeeBreakdown:
    """
    计算一条订单明细的全部扣费。

    Args:
        total_price: 明细总价（单价 × 数量）。
        commission_rate: 类目佣金率（百分比，如 10 表示 10%）。
        shipping_share: 该明细承担的运费。
        config: 费率配置。

    Raises:
        ValueError: total_price 或 shipping_share 为负数。
    """
    total = _round(Decimal(str(total_price)))
    shipping = _round(Decimal(str(shipping_share or 0)))
    rate = Decimal(str(commission_rate or 0))

    if total < 0:
        raise ValueError("订单明细金额不能为负数")
    if shipping < 0:
        raise ValueError("运费分摊不能为负数")

    commission = _percent_of(total, rate) if config.commission_enabled else Decimal("0.00")
    marketplace_fee = _percent_of(total, config.marketplace_fee_rate)
    withholding_tax = _percent_of(total, config.withholding_tax_rate)

    net = total - commission - marketplace_fee - withholding_tax - shipping

    return FeeBreakdown(
        total_price=total,
        commission_rate=rate,
        commission_amount=commission,
        marketplace_fee_rate=Decimal(str(config.marketplace_fee_rate)),
        marketplace_fee=marketplace_fee,
        withholding_tax_rate=Decimal(str(config.withholding_tax_rate)),
        withholding_tax=withholding_tax,
        shipping_cost_share=shipping,
        net_seller_amount=net,
    )


def config_for_item(item: OrderItem) -> FeeConfig:
    """还原订单明细创建时使用的费率配置，用于对账复算。"""
    return FeeConfig(
        commission_enabled=bool(item.commission_enabled),
        marketplace_fee_rate=item.marketplace_fee_rate,
        withholding_tax_rate=item.withholding_tax_rate,
    )


def recompute_item(item: OrderItem) -> FeeBreakdown:
    """按明细快照复算费用，结果应与创建时写入的值完全一致。"""
    return compute_fees(
        item.total_price, item.commission_rate,
        item.shipping_cost_share, config_for_item(item),
    )


# ── 运费分摊能力 ──────────────────────────────────────────


class ShippingShareProvider(Protocol):
    """由调用方提供：返回整张订单需由卖家承担的运费总额。"""

    def shipping_share_for_order(self, order: Order) -> Decimal: ...


class NoShippingShare:
    def shipping_share_for_order(self, order: Order) -> Decimal:
        return Decimal("0.00")


class FlatShippingShare:
    """固定运费，平均分摊到各明细。"""

    def __init__(self, cost):
        self.cost = _round(Decimal(str(cost)))
        if self.cost < 0:
            raise ValueError("运费不能为负数")

    def shipping_share_for_order(self, order: Order) -> Decimal:
        return self.cost


def split_shipping(total, line_count: int) -> list[Decimal]:
    """把订单运费平均分到每条明细（向下取到分），尾差计入最后一条，保证合计不变且均不为负。"""
    if line_count <= 0:
        return []
    total = _round(Decimal(str(total)))
    per_line = (total / line_count).quantize(CENT, rounding=ROUND_DOWN)
    shares = [per_line] * (line_count - 1)
    shares.append(total - per_line * (line_count - 1))
    return shares


# ── 汇总 ──────────────────────────────────────────────────


def summarize_fees(items: Iterable[OrderItem]) -> dict:
    """订单级扣费汇总（各项为明细已舍入值之和）。"""
    items = list(items)
    commission = sum((i.commission_amount for i in items), Decimal("0.00"))
    marketplace_fee = sum((i.marketplace_fee for i in items), Decimal("0.00"))
    withholding = sum((i.withholding_tax for i in items), Decimal("0.00"))
    shipping = sum((i.shipping_cost_share for i in items), Decimal("0.00"))
    net = sum((i.net_seller_amount for i in items), Decimal("0.00"))
    return {
        "total_commission": commission,
        "total_marketplace_fee": marketplace_fee,
        "total_withholding_tax": withholding,
        "total_shipping_share": shipping,
        "total_net_seller": net,
        "platform_revenue": commission + marketplace_fee,
    }


def seller_fee_summary(items: Iterable[OrderItem], seller_id: int) -> dict:
    """单个卖家在一张订单中的销售额、各项扣费和净额。"""
    own = [i for i in items if i.seller_id == seller_id]
    totals = summarize_fees(own)
    total_sales = sum((i.total_price for i in own), Decimal("0.00"))
    deductions = {
        "commission": totals["total_commission"],
        "marketplace_fee": totals["total_marketplace_fee"],
        "withholding_tax": totals["total_withholding_tax"],
        "shipping_share": totals["total_shipping_share"],
    }
    return {
        "seller_id": seller_id,
        "total_sales": total_sales,
        "deductions": deductions,
        "total_deductions": sum(deductions.values(), Decimal("0.00")),
        "net_amount": totals["total_net_seller"],
    }


def fee_breakdown_lines(item: OrderItem) -> list[dict]:
    """展示用扣费明细行。"""
    lines = [
        {"label": "商品合计", "value": item.total_price, "type": "subtotal"},
        {"label": f"类目佣金 ({item.commission_rate}%)", "value": -item.commission_amount, "type": "deduction"},
        {"label": f"平台服务费 ({item.marketplace_fee_rate}%)", "value": -item.marketplace_fee, "type": "deduction"},
        {"label": f"预扣税 ({item.withholding_tax_rate}%)", "value": -item.withholding_tax, "type": "deduction"},
    ]
    if item.shipping_cost_share > 0:
        lines.append({"label": "运费分摊", "value": -item.shipping_cost_share, "type": "deduction"})
    lines.append({"label": "卖家净额", "value": item.net_seller_amount, "type": "total"})
    return lines
