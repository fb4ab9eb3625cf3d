"""成本配置模型与逐行成本分摊逻辑。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from ..data_sources.base import FulfillmentType, Marketplace, Transaction, TransactionType
from .currency import BASE_CURRENCY, ExchangeRateTable, RateHistory, currency_for_marketplace, resolve_rates

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
GRADE_AND_RESELL = "Grade and Resell"


class FbmSource(str, Enum):
    """FBM 货源模式：跨境直发、本地仓发货或两者兼有。"""

    IMPORT = "Import"
    LOCAL = "Local"
    BOTH = "Both"


@dataclass(frozen=True)
class ShippingBracket:
    """运费表中的一档，weight_class 为该档可承载的最大计费重量。"""

    weight_class: float
    rate: float


@dataclass(frozen=True)
class ShippingRoute:
    currency: str = BASE_CURRENCY
    brackets: Tuple[ShippingBracket, ...] = ()


@dataclass(frozen=True)
class ShippingRateTable:
    """
    按线路与计费重量档位组织的运费表。

    属性:
        routes (Mapping[str, ShippingRoute]): 线路名称到运费档位的映射。
    """

    routes: Mapping[str, ShippingRoute] = field(default_factory=dict)

    def lookup(self, route: Optional[str], weight_class: float) -> Optional[Tuple[float, str]]:
        """
        功能说明:
            查找第一个能覆盖该重量且费率有效的档位，空档位会顺延到下一档。
        参数:
            route (Optional[str]): 线路名称。
            weight_class (float): 单件计费重量。
        返回:
            Optional[Tuple[float, str]]: (单件运费, 币种)，超出全部档位时返回 None。
        """
        if not route or route not in self.routes:
            return None
        config = self.routes[route]
        for bracket in sorted(config.brackets, key=lambda item: item.weight_class):
            if weight_class <= bracket.weight_class and bracket.rate > 0:
                return bracket.rate, config.currency
        return None


@dataclass(frozen=True)
class GstRules:
    """
    平台之外需要卖家自行申报的 GST 规则。

    属性:
        rate_percent (float): 税率。
        included_in_price (bool): 售价是否含税。
        apply_to (FrozenSet[FulfillmentType]): 适用的履约方式。
    """

    rate_percent: float
    included_in_price: bool = True
    apply_to: FrozenSet[FulfillmentType] = frozenset({FulfillmentType.FBA, FulfillmentType.FBM})

    def amount(self, revenue: float) -> float:
        if self.included_in_price:
            return revenue * self.rate_percent / (100 + self.rate_percent)
        return revenue * self.rate_percent / 100


@dataclass(frozen=True)
class CountryCostRules:
    """
    单个站点的物流、关税与仓储规则，金额单位均为成本币种。

    属性:
        fba_shipping_per_weight (float): FBA 头程每单位计费重量运费。
        fba_warehouse_percent (float): FBA 仓储费占销售额百分比。
        fbm_source (FbmSource): FBM 货源模式。
        import_route (Optional[str]): 跨境直发使用的运费线路。
        local_route (Optional[str]): 本地仓尾程使用的运费线路。
        customs_duty_percent (float): 默认关税税率。
        category_duties (Tuple[Tuple[str, float], ...]): 按类目覆盖的关税税率。
        ddp_fee (float): 每件 DDP 费用。
        local_shipping_per_weight (float): 本地仓头程每单位计费重量运费。
        local_warehouse_percent (float): 本地仓仓储费占销售额百分比。
        gst (Optional[GstRules]): GST 规则，None 表示不计算。
    """

    fba_shipping_per_weight: float = 0.0
    fba_warehouse_percent: float = 0.0
    fbm_source: FbmSource = FbmSource.IMPORT
    import_route: Optional[str] = None
    local_route: Optional[str] = None
    customs_duty_percent: float = 0.0
    category_duties: Tuple[Tuple[str, float], ...] = ()
    ddp_fee: float = 0.0
    local_shipping_per_weight: float = 0.0
    local_warehouse_percent: float = 0.0
    gst: Optional[GstRules] = None

    def duty_percent(self, category: str) -> float:
        """类目与配置互相包含即视为命中，不区分大小写。"""
        normalized = category.strip().lower()
        if normalized:
            for duty_category, percent in self.category_duties:
                candidate = duty_category.strip().lower()
                if candidate and (candidate in normalized or normalized in candidate):
                    return percent
        return self.customs_duty_percent

    @property
    def ships_imports(self) -> bool:
        return self.fbm_source in (FbmSource.IMPORT, FbmSource.BOTH)

    @property
    def ships_locally(self) -> bool:
        return self.fbm_source in (FbmSource.LOCAL, FbmSource.BOTH)


@dataclass(frozen=True)
class ProductCost:
    """
    单个 SKU 的成本资料。

    属性:
        unit_cost (float): 单件采购成本。
        weight_class (Optional[float]): 单件计费重量。
        custom_shipping (Optional[float]): 单件自定义运费，优先于运费表。
    """

    unit_cost: float
    weight_class: Optional[float] = None
    custom_shipping: Optional[float] = None


SHIPPING_ROUTES: Dict[Marketplace, str] = {
    Marketplace.US: "US-IMPORT",
    Marketplace.UK: "UK",
    Marketplace.DE: "EU",
    Marketplace.FR: "EU",
    Marketplace.IT: "EU",
    Marketplace.ES: "EU",
    Marketplace.CA: "CA",
    Marketplace.AU: "AU",
    Marketplace.AE: "UAE",
    Marketplace.SA: "SA",
}


def default_country_rules() -> Dict[Marketplace, CountryCostRules]:
    """
    功能说明:
        生成各站点的默认规则：美国同时支持直发与本地仓，其余站点直发且费率为 0。
    返回:
        Dict[Marketplace, CountryCostRules]: 站点到规则的映射。
    """
    rules: Dict[Marketplace, CountryCostRules] = {}
    for marketplace, route in SHIPPING_ROUTES.items():
        if marketplace is Marketplace.US:
            rules[marketplace] = CountryCostRules(
                fba_shipping_per_weight=1.0,
                fbm_source=FbmSource.BOTH,
                import_route=route,
                local_route="US-LOCAL",
                customs_duty_percent=8.5,
                ddp_fee=2.5,
                local_shipping_per_weight=1.0,
                local_warehouse_percent=3.0,
            )
        else:
            rules[marketplace] = CountryCostRules(import_route=route)
    return rules


@dataclass(frozen=True)
class CostConfiguration:
    """
    单次汇总运行使用的只读成本配置快照。

    属性:
        advertising_percent (float): 广告费占销售额百分比。
        fba_cost_percent (float): FBA 额外运营成本百分比。
        fbm_cost_percent (float): FBM 额外运营成本百分比。
        refund_recovery_rate (float): 退货商品成本可回收比例，取值 0~1。
        cost_currency (str): 成本表与规则中金额的币种。
        sku_costs (Mapping[str, ProductCost]): SKU 成本表。
        category_costs (Mapping[str, float]): 类目平均单件成本。
        shipping_rates (ShippingRateTable): 运费表。
        countries (Mapping[Marketplace, CountryCostRules]): 各站点规则。
    """

    advertising_percent: float = 0.0
    fba_cost_percent: float = 0.0
    fbm_cost_percent: float = 0.0
    refund_recovery_rate: float = 0.3
    cost_currency: str = BASE_CURRENCY
    sku_costs: Mapping[str, ProductCost] = field(default_factory=dict)
    category_costs: Mapping[str, float] = field(default_factory=dict)
    shipping_rates: ShippingRateTable = field(default_factory=ShippingRateTable)
    countries: Mapping[Marketplace, CountryCostRules] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 <= self.refund_recovery_rate <= 1:
            raise ValueError(f"refund_recovery_rate 必须位于 [0, 1]，当前为 {self.refund_recovery_rate}")
        for name in ("advertising_percent", "fba_cost_percent", "fbm_cost_percent"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} 不能为负数")

    @classmethod
    def from_defaults(cls, defaults, **tables) -> "CostConfiguration":
        """用环境变量中的全局百分比与数据源提供的成本表组装配置。"""
        return cls(
            advertising_percent=defaults.advertising_percent,
            fba_cost_percent=defaults.fba_cost_percent,
            fbm_cost_percent=defaults.fbm_cost_percent,
            refund_recovery_rate=defaults.refund_recovery_rate,
            **tables,
        )

    def product_cost(self, sku: str) -> Optional[ProductCost]:
        return self.sku_costs.get(sku)

    def unit_cost(self, sku: str, category: str) -> Optional[float]:
        """SKU 成本优先，其次使用类目平均成本，均缺失时返回 None。"""
        entry = self.sku_costs.get(sku)
        if entry is not None:
            return entry.unit_cost
        return self.category_costs.get(category)

    def rules_for(self, marketplace: Marketplace) -> CountryCostRules:
        return self.countries.get(marketplace) or CountryCostRules(import_route=SHIPPING_ROUTES.get(marketplace))


@dataclass(frozen=True)
class CostBreakdown:
    """
    单行交易折算为基准货币后的收入、费用与成本。

    属性:
        revenue (float): 净销售额，退款行为负数。
        quantity (int): 订单行的销售件数。
        refunded_quantity (int): 退款行的退货件数。
        selling_fees (float): 佣金。
        fba_fees (float): FBA 配送费，仅 FBA 行非零。
        refund_loss (float): 退货无法回收的成本。
        vat (float): 增值税。
        advertising (float): 广告费。
        fba_cost (float): FBA 额外运营成本。
        fbm_cost (float): FBM 额外运营成本。
        product_cost (float): 商品成本，退款行为冲回的负数。
        shipping (float): 运费。
        customs (float): 关税。
        ddp (float): DDP 费用。
        warehouse (float): 仓储费。
        gst (float): GST。
        has_cost_data (bool): 是否找到了商品成本。
        has_shipping_data (bool): 是否找到了运费。
    """

    revenue: float = 0.0
    quantity: int = 0
    refunded_quantity: int = 0
    selling_fees: float = 0.0
    fba_fees: float = 0.0
    refund_loss: float = 0.0
    vat: float = 0.0
    advertising: float = 0.0
    fba_cost: float = 0.0
    fbm_cost: float = 0.0
    product_cost: float = 0.0
    shipping: float = 0.0
    customs: float = 0.0
    ddp: float = 0.0
    warehouse: float = 0.0
    gst: float = 0.0
    has_cost_data: bool = True
    has_shipping_data: bool = True

    @property
    def total_fees(self) -> float:
        return self.selling_fees + self.fba_fees + self.refund_loss + self.vat

    @property
    def total_costs(self) -> float:
        return (
            self.advertising
            + self.fba_cost
            + self.fbm_cost
            + self.product_cost
            + self.shipping
            + self.customs
            + self.ddp
            + self.warehouse
            + self.gst
        )

    @property
    def net_profit(self) -> float:
        return self.revenue - self.total_fees - self.total_costs


FEE_FIELDS = ("selling_fees", "fba_fees", "refund_loss", "vat")
COST_FIELDS = (
    "advertising",
    "fba_cost",
    "fbm_cost",
    "product_cost",
    "shipping",
    "customs",
    "ddp",
    "warehouse",
    "gst",
)


def resolve_category(sku: str, category: Optional[str]) -> str:
    """缺失类目时，AMZN.GR 前缀的翻新品归入 Grade and Resell，其余归入 Uncategorized。"""
    if category and category.strip():
        return category.strip()
    if sku and sku.upper().startswith("AMZN.GR"):
        return GRADE_AND_RESELL
    return UNCATEGORIZED


def allocate(
    transaction: Transaction,
    config: CostConfiguration,
    *,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
) -> CostBreakdown:
    """
    功能说明:
        计算单行交易应承担的各项费用与成本，并统一换算到基准货币。
        FBA 配送费、FBA/FBM 额外成本、关税与 DDP 只在履约方式与站点规则匹配时分摊；
        广告费与商品成本按比例或单件成本统一分摊。
    参数:
        transaction (Transaction): 交易记录。
        config (CostConfiguration): 成本配置快照。
        base_currency (str): 基准货币。
        rates (ExchangeRateTable | RateHistory | None): 汇率表。
    返回:
        CostBreakdown: 该行的成本明细。
    异常:
        ConversionError: 站点或成本币种缺少汇率时抛出。
    """
    table = resolve_rates(rates, transaction.day)
    local_currency = currency_for_marketplace(transaction.marketplace)

    def to_base(amount: float) -> float:
        return table.convert(amount, local_currency, base_currency)

    def from_cost(amount: float) -> float:
        return table.convert(amount, config.cost_currency, base_currency)

    quantity = abs(transaction.quantity)
    category = resolve_category(transaction.sku, transaction.category)
    raw_unit_cost = config.unit_cost(transaction.sku, category)
    has_cost_data = raw_unit_cost is not None
    unit_cost = from_cost(raw_unit_cost) if has_cost_data else 0.0
    if not has_cost_data:
        logger.debug("SKU %s (类目 %s) 缺少成本数据", transaction.sku, category)

    if transaction.type is TransactionType.REFUND:
        revenue = -to_base(abs(transaction.product_sales) - abs(transaction.promotional_rebates))
        returned_cost = unit_cost * quantity
        return CostBreakdown(
            revenue=revenue,
            refunded_quantity=quantity,
            product_cost=-returned_cost,
            refund_loss=returned_cost * (1 - config.refund_recovery_rate),
            has_cost_data=has_cost_data,
        )

    revenue = to_base(transaction.product_sales - abs(transaction.promotional_rebates))
    fulfillment = transaction.fulfillment
    rules = config.rules_for(transaction.marketplace)
    is_fba = fulfillment is FulfillmentType.FBA
    is_fbm = fulfillment is FulfillmentType.FBM

    shipping = customs = ddp = warehouse = 0.0
    has_shipping_data = True
    product = config.product_cost(transaction.sku)
    weight = product.weight_class if product else None

    if is_fba:
        if rules.fba_shipping_per_weight > 0:
            if weight is None:
                has_shipping_data = False
            else:
                shipping = from_cost(weight * rules.fba_shipping_per_weight) * quantity
        warehouse = revenue * rules.fba_warehouse_percent / 100
    elif is_fbm:
        shipping, customs, ddp, warehouse, has_shipping_data = _fbm_costs(
            revenue=revenue,
            quantity=quantity,
            category=category,
            product=product,
            rules=rules,
            from_cost=from_cost,
            shipping_rates=config.shipping_rates,
            table=table,
            base_currency=base_currency,
        )
        if rules.ships_imports:
            # 报表里已记录的实际关税/DDP 优先于估算值。
            if transaction.customs_duty:
                customs = to_base(abs(transaction.customs_duty))
            if transaction.ddp_fee:
                ddp = to_base(abs(transaction.ddp_fee))

    if transaction.warehouse_cost and (is_fba or (is_fbm and rules.ships_locally)):
        warehouse = to_base(abs(transaction.warehouse_cost))

    gst = 0.0
    if transaction.gst_cost:
        gst = to_base(abs(transaction.gst_cost))
    elif rules.gst is not None and fulfillment in rules.gst.apply_to:
        gst = rules.gst.amount(revenue)

    return CostBreakdown(
        revenue=revenue,
        quantity=quantity,
        selling_fees=to_base(abs(transaction.selling_fees)),
        fba_fees=to_base(abs(transaction.fba_fees)) if is_fba else 0.0,
        vat=to_base(abs(transaction.vat)),
        advertising=revenue * config.advertising_percent / 100,
        fba_cost=revenue * config.fba_cost_percent / 100 if is_fba else 0.0,
        fbm_cost=revenue * config.fbm_cost_percent / 100 if is_fbm else 0.0,
        product_cost=unit_cost * quantity,
        shipping=shipping,
        customs=customs,
        ddp=ddp,
        warehouse=warehouse,
        gst=gst,
        has_cost_data=has_cost_data,
        has_shipping_data=has_shipping_data,
    )


def _fbm_costs(
    *,
    revenue: float,
    quantity: int,
    category: str,
    product: Optional[ProductCost],
    rules: CountryCostRules,
    from_cost,
    shipping_rates: ShippingRateTable,
    table: ExchangeRateTable,
    base_currency: str,
) -> Tuple[float, float, float, float, bool]:
    """
    功能说明:
        按站点的 FBM 货源模式计算运费、关税、DDP 与本地仓储费。
        BOTH 模式下运费取两条线路的平均值，关税、DDP 与仓储费各按一半计。
    返回:
        Tuple[float, float, float, float, bool]: (运费, 关税, DDP, 仓储费, 是否找到运费)。
    """
    weight = product.weight_class if product else None

    import_shipping: Optional[float] = None
    if rules.ships_imports:
        if product is not None and product.custom_shipping is not None:
            import_shipping = from_cost(product.custom_shipping)
        elif weight is not None:
            import_shipping = _route_rate(shipping_rates, rules.import_route, weight, table, base_currency)

    local_shipping: Optional[float] = None
    if rules.ships_locally and weight is not None:
        inbound = from_cost(weight * rules.local_shipping_per_weight)
        last_mile = _route_rate(shipping_rates, rules.local_route, weight, table, base_currency)
        if inbound > 0 or last_mile is not None:
            local_shipping = inbound + (last_mile or 0.0)

    customs = revenue * rules.duty_percent(category) / 100 if rules.ships_imports else 0.0
    ddp = from_cost(rules.ddp_fee) * quantity if rules.ships_imports else 0.0
    warehouse = revenue * rules.local_warehouse_percent / 100 if rules.ships_locally else 0.0

    if rules.fbm_source is FbmSource.BOTH:
        legs = [leg for leg in (import_shipping, local_shipping) if leg is not None]
        per_unit = sum(legs) / len(legs) if legs else 0.0
        return per_unit * quantity, customs / 2, ddp / 2, warehouse / 2, bool(legs)
    if rules.fbm_source is FbmSource.LOCAL:
        return (local_shipping or 0.0) * quantity, 0.0, 0.0, warehouse, local_shipping is not None
    return (import_shipping or 0.0) * quantity, customs, ddp, 0.0, import_shipping is not None


def _route_rate(
    shipping_rates: ShippingRateTable,
    route: Optional[str],
    weight: float,
    table: ExchangeRateTable,
    base_currency: str,
) -> Optional[float]:
    found = shipping_rates.lookup(route, weight)
    if found is None:
        return None
    rate, currency = found
    return table.convert(rate, currency, base_currency)
