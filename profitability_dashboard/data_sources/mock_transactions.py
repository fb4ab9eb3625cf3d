"""提供基于结算报表结构的模拟交易数据源，方便本地开发与测试。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, List, Optional, Tuple

from ..config import AppConfig, CostDefaultsConfig
from ..metrics.costs import (
    CostConfiguration,
    ProductCost,
    ShippingBracket,
    ShippingRateTable,
    ShippingRoute,
    default_country_rules,
)
from .base import FulfillmentType, Marketplace, Transaction, TransactionSource, TransactionType


@dataclass(frozen=True)
class MockProduct:
    """
    模拟商品目录中的一项。

    属性:
        sku (str): SKU 编码。
        name (str): 商品名称。
        parent_id (str): 父体 ID。
        category (str): 类目。
        unit_price (float): 站点本币单价。
        marketplaces (Tuple[Marketplace, ...]): 在售站点。
        fulfillment (FulfillmentType): 履约方式。
    """

    sku: str
    name: str
    parent_id: str
    category: str
    unit_price: float
    marketplaces: Tuple[Marketplace, ...]
    fulfillment: FulfillmentType = FulfillmentType.FBA


DEFAULT_CATALOG: Tuple[MockProduct, ...] = (
    MockProduct("DESK-LAMP-BLK", "LED Desk Lamp Black", "DESK-LAMP", "Home & Kitchen", 39.99,
                (Marketplace.US, Marketplace.UK, Marketplace.DE)),
    MockProduct("DESK-LAMP-WHT", "LED Desk Lamp White", "DESK-LAMP", "Home & Kitchen", 39.99,
                (Marketplace.US, Marketplace.DE), FulfillmentType.FBM),
    MockProduct("USB-HUB-7P", "7-Port USB Hub", "USB-HUB", "Electronics", 24.5,
                (Marketplace.US, Marketplace.CA, Marketplace.UK)),
    MockProduct("YOGA-MAT-PRP", "Yoga Mat Purple", "YOGA-MAT", "Sports", 29.0,
                (Marketplace.US, Marketplace.AU), FulfillmentType.FBM),
    MockProduct("PHONE-CASE-X", "Phone Case Clear", "PHONE-CASE", "Electronics", 12.99,
                (Marketplace.DE, Marketplace.FR, Marketplace.IT)),
)


@dataclass
class MockDataSourceSettings:
    """
    控制模拟数据源行为的配置项。

    属性:
        seed (int): 伪随机种子，确保数据可复现。
        catalog (Tuple[MockProduct, ...]): 需要生成交易的商品目录。
        refund_probability (float): 每笔订单被退款的概率。
        uncosted_skus (Tuple[str, ...]): 不提供成本资料的 SKU，用于模拟成本缺失。
    """

    seed: int = 2024
    catalog: Tuple[MockProduct, ...] = DEFAULT_CATALOG
    refund_probability: float = 0.05
    uncosted_skus: Tuple[str, ...] = field(default_factory=lambda: ("PHONE-CASE-X",))


class MockTransactionSource(TransactionSource):
    """
    基于线性同余发生器的可复现模拟数据源。

    逐日为目录中的每个商品和站点生成订单与少量退款，形似结算报表导出内容。
    """

    def __init__(self, settings: Optional[MockDataSourceSettings] = None) -> None:
        self.name = "mock_settlement_report"
        self._settings = settings or MockDataSourceSettings()

    def fetch_transactions(self, start: date, end: date) -> List[Transaction]:
        """
        功能说明:
            生成指定时间范围内的伪随机订单与退款记录。
        参数:
            start (date): 起始日期。
            end (date): 结束日期。
        返回:
            List[Transaction]: 交易记录列表。
        """
        rng = _PseudoRandom(self._settings.seed + 1)
        timeline = list(_iter_days(start, end))
        records: List[Transaction] = []
        sequence = 0
        for product in self._settings.catalog:
            for marketplace in product.marketplaces:
                base_orders = max(1, rng.randint(1, 4))
                for day in timeline:
                    orders = max(0, int(base_orders * rng.uniform(0.4, 1.6)))
                    for _ in range(orders):
                        sequence += 1
                        quantity = 1 + rng.randint(0, 2)
                        # 价格在基础单价附近小幅波动。
                        sales = round(product.unit_price * quantity * rng.uniform(0.9, 1.05), 2)
                        order = Transaction(
                            day=day,
                            marketplace=marketplace,
                            type=TransactionType.ORDER,
                            sku=product.sku,
                            order_id=f"MOCK-{sequence:07d}",
                            quantity=quantity,
                            product_sales=sales,
                            fulfillment=product.fulfillment,
                            product_name=product.name,
                            parent_id=product.parent_id,
                            category=product.category,
                            promotional_rebates=-round(sales * 0.05, 2) if rng.uniform(0, 1) < 0.2 else 0.0,
                            selling_fees=-round(sales * 0.15, 2),
                            fba_fees=-round(3.2 * quantity, 2) if product.fulfillment is FulfillmentType.FBA else 0.0,
                        )
                        records.append(order)
                        if rng.uniform(0, 1) < self._settings.refund_probability:
                            records.append(_refund_for(order, timeline[-1]))
        return records

    def fetch_cost_configuration(self, defaults: CostDefaultsConfig) -> CostConfiguration:
        """
        功能说明:
            返回与模拟目录匹配的成本表、运费表与站点规则。
        参数:
            defaults (CostDefaultsConfig): 全局成本百分比。
        返回:
            CostConfiguration: 成本配置快照。
        """
        sku_costs = {
            product.sku: ProductCost(unit_cost=round(product.unit_price * 0.3, 2), weight_class=1.0)
            for product in self._settings.catalog
            if product.sku not in self._settings.uncosted_skus
        }
        return CostConfiguration.from_defaults(
            defaults,
            sku_costs=sku_costs,
            shipping_rates=mock_shipping_rates(),
            countries=default_country_rules(),
        )


def mock_shipping_rates() -> ShippingRateTable:
    """生成覆盖全部默认线路的示例运费表，单位为美元。"""
    brackets = (
        ShippingBracket(weight_class=0.5, rate=3.5),
        ShippingBracket(weight_class=1.0, rate=5.0),
        ShippingBracket(weight_class=2.0, rate=8.0),
    )
    routes = {name: ShippingRoute(brackets=brackets) for name in ("US-IMPORT", "UK", "EU", "CA", "AU", "UAE", "SA")}
    routes["US-LOCAL"] = ShippingRoute(brackets=(ShippingBracket(weight_class=2.0, rate=4.0),))
    return ShippingRateTable(routes=routes)


def create_default_mock_source(config: AppConfig) -> MockTransactionSource:
    """
    功能说明:
        构建默认的模拟数据源。
    参数:
        config (AppConfig): 应用配置，保留以与真实数据源的工厂签名一致。
    返回:
        MockTransactionSource: 预配置的模拟数据源实例。
    """
    return MockTransactionSource()


def _refund_for(order: Transaction, last_day: date) -> Transaction:
    return Transaction(
        day=min(order.day + timedelta(days=3), last_day),
        marketplace=order.marketplace,
        type=TransactionType.REFUND,
        sku=order.sku,
        order_id=order.order_id,
        quantity=-order.quantity,
        product_sales=-order.product_sales,
        fulfillment=order.fulfillment,
        product_name=order.product_name,
        parent_id=order.parent_id,
        category=order.category,
        promotional_rebates=-order.promotional_rebates,
    )


def _iter_days(start: date, end: date) -> Iterable[date]:
    """
    功能说明:
        生成起止日期（闭区间）内的所有日期。
    参数:
        start (date): 开始日期。
        end (date): 结束日期。
    返回:
        Iterable[date]: 逐日迭代器。
    """
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


class _PseudoRandom:
    """简单的线性同余伪随机数发生器，用于生成可复现的数据。"""

    def __init__(self, seed: int) -> None:
        self._state = seed % 2147483647 or 42

    def _next(self) -> float:
        # MINSTD 参数。
        self._state = (self._state * 48271) % 2147483647
        return self._state / 2147483647

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self._next()

    def randint(self, low: int, high: int) -> int:
        return int(low + (high - low) * self._next())
