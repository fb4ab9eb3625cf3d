"""把交易记录折叠为 SKU 级利润实体的汇总逻辑。"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..data_sources.base import FulfillmentType, Marketplace, Transaction, TransactionType
from .costs import COST_FIELDS, FEE_FIELDS, CostConfiguration, allocate, resolve_category
from .currency import BASE_CURRENCY, ConversionError, ExchangeRateTable, RateHistory

logger = logging.getLogger(__name__)

LINE_FIELDS: Tuple[str, ...] = FEE_FIELDS + COST_FIELDS


class EntityLevel(str, Enum):
    SKU = "SKU"
    PRODUCT = "Product"
    PARENT = "Parent"
    CATEGORY = "Category"


class Fulfillment(str, Enum):
    """实体的履约分类，UNKNOWN 表示没有任何带履约标记的交易。"""

    FBA = "FBA"
    FBM = "FBM"
    MIXED = "Mixed"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class CostLine:
    """一项费用或成本：金额及其占销售额的百分比。"""

    amount: float = 0.0
    percent: float = 0.0


@dataclass
class AggregatedEntity:
    """
    SKU/Product/Parent/Category 共用的利润实体。

    属性:
        level (EntityLevel): 汇总层级。
        key (str): 实体键，SKU 层为 SKU 编码，其余层为名称。
        name (str): 展示名称。
        category (str): 所属类目。
        parent (str): 所属父体。
        marketplace (Optional[Marketplace]): 按站点拆分时的站点，跨站点汇总为 None。
        fulfillment (Fulfillment): 履约分类。
        total_revenue (float): 净销售额。
        total_orders (int): 去重订单数。
        total_quantity (int): 销售件数。
        refunded_quantity (int): 退货件数。
        refund_orders (int): 去重退款订单数。
        lines (Dict[str, CostLine]): 各项费用与成本。
        fba_revenue/fba_quantity/fbm_revenue/fbm_quantity/mixed_revenue/mixed_quantity: 履约拆分小计。
        gross_profit (float): 扣除平台费用后的毛利。
        net_profit (float): 净利润。
        profit_margin (float): 净利率百分比。
        roi (float): 投资回报率百分比。
        has_cost_data (bool): 是否具备成本数据。
        has_shipping_data (bool): 是否具备运费数据。
        cost_coverage_percent (float): 有成本数据的销售额占比。
        avg_sale_price (float): 平均售价。
        child_count (int): 下级实体数量，SKU 层为 0。
        top_products (List[AggregatedEntity]): 类目层保留的销售额 Top 商品。
    """

    level: EntityLevel
    key: str
    name: str
    category: str
    parent: str
    marketplace: Optional[Marketplace]
    fulfillment: Fulfillment
    total_revenue: float
    total_orders: int
    total_quantity: int
    refunded_quantity: int
    refund_orders: int
    lines: Dict[str, CostLine]
    fba_revenue: float
    fba_quantity: int
    fbm_revenue: float
    fbm_quantity: int
    mixed_revenue: float
    mixed_quantity: int
    gross_profit: float
    net_profit: float
    profit_margin: float
    roi: float
    has_cost_data: bool
    has_shipping_data: bool = True
    cost_coverage_percent: float = 0.0
    avg_sale_price: float = 0.0
    child_count: int = 0
    top_products: List["AggregatedEntity"] = field(default_factory=list)

    def line(self, name: str) -> CostLine:
        return self.lines.get(name, CostLine())

    @property
    def total_fees(self) -> float:
        return math.fsum(self.line(name).amount for name in FEE_FIELDS)

    @property
    def total_costs(self) -> float:
        return math.fsum(self.line(name).amount for name in COST_FIELDS)


@dataclass
class RollupDiagnostics:
    """
    汇总过程中被排除或标记的数据统计。

    属性:
        processed_rows (int): 计入汇总的行数。
        ignored_rows (int): 非订单/退款或缺少 SKU 的行数。
        conversion_failures (int): 因缺少汇率被排除的行数。
        failed_currencies (Dict[str, int]): 按货币对统计的换算失败次数。
        missing_cost_skus (Set[str]): 缺少成本数据的 SKU。
        missing_shipping_skus (Set[str]): 缺少运费数据的 SKU。
    """

    processed_rows: int = 0
    ignored_rows: int = 0
    conversion_failures: int = 0
    failed_currencies: Dict[str, int] = field(default_factory=dict)
    missing_cost_skus: Set[str] = field(default_factory=set)
    missing_shipping_skus: Set[str] = field(default_factory=set)

    def merge(self, other: "RollupDiagnostics") -> "RollupDiagnostics":
        failed = dict(self.failed_currencies)
        for pair, count in other.failed_currencies.items():
            failed[pair] = failed.get(pair, 0) + count
        return RollupDiagnostics(
            processed_rows=self.processed_rows + other.processed_rows,
            ignored_rows=self.ignored_rows + other.ignored_rows,
            conversion_failures=self.conversion_failures + other.conversion_failures,
            failed_currencies=failed,
            missing_cost_skus=self.missing_cost_skus | other.missing_cost_skus,
            missing_shipping_skus=self.missing_shipping_skus | other.missing_shipping_skus,
        )


GroupKey = Tuple[str, Optional[Marketplace]]


class SkuAccumulator:
    """
    单个 SKU 分组的可合并累加器。

    金额以列表保存，最终用 math.fsum 求和，保证结果与行顺序及分区方式无关。
    """

    def __init__(self, sku: str, marketplace: Optional[Marketplace]) -> None:
        self.sku = sku
        self.marketplace = marketplace
        self.amounts: Dict[str, List[float]] = defaultdict(list)
        self.counts: Dict[str, int] = defaultdict(int)
        self.order_ids: Set[str] = set()
        self.refund_order_ids: Set[str] = set()
        self.product_names: Set[str] = set()
        self.parents: Set[str] = set()
        self.categories: Set[str] = set()
        self.rows = 0
        self.rows_without_cost = 0
        self.rows_without_shipping = 0

    def add(self, transaction: Transaction, breakdown) -> None:
        self.rows += 1
        if transaction.product_name:
            self.product_names.add(transaction.product_name.strip())
        if transaction.parent_id:
            self.parents.add(transaction.parent_id.strip())
        self.categories.add(resolve_category(transaction.sku, transaction.category))

        self.amounts["revenue"].append(breakdown.revenue)
        for name in LINE_FIELDS:
            self.amounts[name].append(getattr(breakdown, name))
        if breakdown.has_cost_data:
            self.amounts["covered_revenue"].append(breakdown.revenue)
        else:
            self.rows_without_cost += 1
        if not breakdown.has_shipping_data:
            self.rows_without_shipping += 1

        self.counts["quantity"] += breakdown.quantity
        self.counts["refunded_quantity"] += breakdown.refunded_quantity

        if transaction.fulfillment is FulfillmentType.FBA:
            self.counts["fba_rows"] += 1
            self.amounts["fba_revenue"].append(breakdown.revenue)
            self.counts["fba_quantity"] += breakdown.quantity
        elif transaction.fulfillment is FulfillmentType.FBM:
            self.counts["fbm_rows"] += 1
            self.amounts["fbm_revenue"].append(breakdown.revenue)
            self.counts["fbm_quantity"] += breakdown.quantity

        if transaction.order_id:
            if transaction.type is TransactionType.REFUND:
                self.refund_order_ids.add(transaction.order_id)
            else:
                self.order_ids.add(transaction.order_id)

    def merge(self, other: "SkuAccumulator") -> "SkuAccumulator":
        merged = SkuAccumulator(self.sku, self.marketplace)
        for source in (self, other):
            for name, values in source.amounts.items():
                merged.amounts[name].extend(values)
            for name, value in source.counts.items():
                merged.counts[name] += value
            merged.order_ids |= source.order_ids
            merged.refund_order_ids |= source.refund_order_ids
            merged.product_names |= source.product_names
            merged.parents |= source.parents
            merged.categories |= source.categories
            merged.rows += source.rows
            merged.rows_without_cost += source.rows_without_cost
            merged.rows_without_shipping += source.rows_without_shipping
        return merged

    def total(self, name: str) -> float:
        return math.fsum(self.amounts.get(name, ()))

    def finalize(self) -> AggregatedEntity:
        """
        功能说明:
            在全部分区合并完成后，一次性推导百分比、利润与履约分类。
        返回:
            AggregatedEntity: SKU 层实体。
        """
        revenue = self.total("revenue")
        amounts = {name: self.total(name) for name in LINE_FIELDS}
        lines = {name: CostLine(amount=value, percent=percent_of(value, revenue)) for name, value in amounts.items()}
        fees = math.fsum(amounts[name] for name in FEE_FIELDS)
        costs = math.fsum(amounts[name] for name in COST_FIELDS)
        net_profit = revenue - fees - costs
        has_cost_data = self.rows > 0 and self.rows_without_cost == 0

        if self.counts["fba_rows"] and self.counts["fbm_rows"]:
            fulfillment = Fulfillment.MIXED
        elif self.counts["fba_rows"]:
            fulfillment = Fulfillment.FBA
        elif self.counts["fbm_rows"]:
            fulfillment = Fulfillment.FBM
        else:
            fulfillment = Fulfillment.UNKNOWN

        quantity = self.counts["quantity"]
        name = min(self.product_names) if self.product_names else self.sku
        is_mixed = fulfillment is Fulfillment.MIXED
        return AggregatedEntity(
            level=EntityLevel.SKU,
            key=self.sku,
            name=name,
            category=min(self.categories),
            parent=min(self.parents) if self.parents else name,
            marketplace=self.marketplace,
            fulfillment=fulfillment,
            total_revenue=revenue,
            total_orders=len(self.order_ids),
            total_quantity=quantity,
            refunded_quantity=self.counts["refunded_quantity"],
            refund_orders=len(self.refund_order_ids),
            lines=lines,
            fba_revenue=self.total("fba_revenue"),
            fba_quantity=self.counts["fba_quantity"],
            fbm_revenue=self.total("fbm_revenue"),
            fbm_quantity=self.counts["fbm_quantity"],
            mixed_revenue=revenue if is_mixed else 0.0,
            mixed_quantity=quantity if is_mixed else 0,
            gross_profit=revenue - fees,
            net_profit=net_profit,
            profit_margin=percent_of(net_profit, revenue) if has_cost_data else 0.0,
            roi=percent_of(net_profit, costs) if has_cost_data and costs > 0 else 0.0,
            has_cost_data=has_cost_data,
            has_shipping_data=self.rows_without_shipping == 0,
            cost_coverage_percent=percent_of(self.total("covered_revenue"), revenue),
            avg_sale_price=revenue / quantity if quantity else 0.0,
        )


@dataclass
class SkuRollup:
    entities: List[AggregatedEntity]
    diagnostics: RollupDiagnostics


def percent_of(amount: float, base: float) -> float:
    """amount 占 base 的百分比，base 为 0 时返回 0。"""
    if not base:
        return 0.0
    return amount / base * 100


def accumulate(
    transactions: Iterable[Transaction],
    config: CostConfiguration,
    *,
    by_marketplace: bool = True,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
    diagnostics: Optional[RollupDiagnostics] = None,
) -> Dict[GroupKey, SkuAccumulator]:
    """
    功能说明:
        逐行分摊成本并累加到 (SKU, 站点) 或 SKU 分组，不做任何推导。
        汇率缺失的行会被排除并计入诊断统计。
    参数:
        transactions (Iterable[Transaction]): 交易记录。
        config (CostConfiguration): 成本配置快照。
        by_marketplace (bool): 是否按站点拆分分组。
        base_currency (str): 基准货币。
        rates (ExchangeRateTable | RateHistory | None): 汇率表。
        diagnostics (Optional[RollupDiagnostics]): 用于回填统计的诊断对象。
    返回:
        Dict[GroupKey, SkuAccumulator]: 分组键到累加器的映射。
    """
    stats = diagnostics if diagnostics is not None else RollupDiagnostics()
    groups: Dict[GroupKey, SkuAccumulator] = {}

    for transaction in transactions:
        if transaction.type is TransactionType.OTHER or not transaction.sku:
            stats.ignored_rows += 1
            continue
        try:
            breakdown = allocate(transaction, config, base_currency=base_currency, rates=rates)
        except ConversionError as exc:
            pair = f"{exc.source}->{exc.target}"
            stats.conversion_failures += 1
            stats.failed_currencies[pair] = stats.failed_currencies.get(pair, 0) + 1
            logger.warning("跳过无法换算的交易 %s (%s): %s", transaction.order_id, transaction.sku, exc)
            continue

        stats.processed_rows += 1
        if not breakdown.has_cost_data:
            stats.missing_cost_skus.add(transaction.sku)
        if not breakdown.has_shipping_data:
            stats.missing_shipping_skus.add(transaction.sku)

        key: GroupKey = (transaction.sku, transaction.marketplace if by_marketplace else None)
        group = groups.get(key)
        if group is None:
            group = groups[key] = SkuAccumulator(*key)
        group.add(transaction, breakdown)

    return groups


def merge_accumulators(
    left: Dict[GroupKey, SkuAccumulator],
    right: Dict[GroupKey, SkuAccumulator],
) -> Dict[GroupKey, SkuAccumulator]:
    """按分组键合并两个分区的累加器，返回新字典。"""
    merged = dict(left)
    for key, accumulator in right.items():
        merged[key] = merged[key].merge(accumulator) if key in merged else accumulator
    return merged


def finalize(groups: Dict[GroupKey, SkuAccumulator]) -> List[AggregatedEntity]:
    entities = [accumulator.finalize() for accumulator in groups.values()]
    return sort_entities(entities)


def sort_entities(entities: Iterable[AggregatedEntity]) -> List[AggregatedEntity]:
    """按销售额降序排列，键与站点作为并列时的次序依据。"""
    return sorted(
        entities,
        key=lambda entity: (
            -entity.total_revenue,
            entity.key,
            entity.marketplace.value if entity.marketplace else "",
        ),
    )


def aggregate_with_diagnostics(
    transactions: Iterable[Transaction],
    config: CostConfiguration,
    *,
    by_marketplace: bool = True,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
) -> SkuRollup:
    diagnostics = RollupDiagnostics()
    groups = accumulate(
        transactions,
        config,
        by_marketplace=by_marketplace,
        base_currency=base_currency,
        rates=rates,
        diagnostics=diagnostics,
    )
    if diagnostics.conversion_failures:
        logger.warning("共有 %s 行交易因缺少汇率被排除", diagnostics.conversion_failures)
    return SkuRollup(entities=finalize(groups), diagnostics=diagnostics)


def aggregate(
    transactions: Iterable[Transaction],
    config: CostConfiguration,
    *,
    by_marketplace: bool = True,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
) -> List[AggregatedEntity]:
    """
    功能说明:
        将交易记录汇总为 SKU 层利润实体，结果与输入顺序无关。
    参数:
        transactions (Iterable[Transaction]): 交易记录。
        config (CostConfiguration): 成本配置快照。
        by_marketplace (bool): True 时按 (SKU, 站点) 分组，否则仅按 SKU。
        base_currency (str): 基准货币。
        rates (ExchangeRateTable | RateHistory | None): 汇率表。
    返回:
        List[AggregatedEntity]: 按销售额降序排列的 SKU 实体。
    """
    return aggregate_with_diagnostics(
        transactions,
        config,
        by_marketplace=by_marketplace,
        base_currency=base_currency,
        rates=rates,
    ).entities


def aggregate_partitions(
    partitions: Iterable[Iterable[Transaction]],
    config: CostConfiguration,
    *,
    by_marketplace: bool = True,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
) -> SkuRollup:
    """
    功能说明:
        分别累加每个分区，再合并累加器并只推导一次，结果与整体汇总一致。
    参数:
        partitions (Iterable[Iterable[Transaction]]): 交易分区。
        config (CostConfiguration): 成本配置快照。
    返回:
        SkuRollup: SKU 实体与合并后的诊断统计。
    """
    merged: Dict[GroupKey, SkuAccumulator] = {}
    diagnostics = RollupDiagnostics()
    for partition in partitions:
        partial_stats = RollupDiagnostics()
        partial = accumulate(
            partition,
            config,
            by_marketplace=by_marketplace,
            base_currency=base_currency,
            rates=rates,
            diagnostics=partial_stats,
        )
        merged = merge_accumulators(merged, partial)
        diagnostics = diagnostics.merge(partial_stats)
    return SkuRollup(entities=finalize(merged), diagnostics=diagnostics)
