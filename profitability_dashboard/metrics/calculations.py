"""串联成本分摊、逐级汇总与国家对比，生成完整的利润报告。"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

from ..data_sources.base import Transaction
from .costs import CostConfiguration
from .countries import DEFAULT_MATERIALITY_THRESHOLD, CountryComparison, best_and_worst
from .currency import BASE_CURRENCY, ExchangeRateTable, RateHistory
from .hierarchy import roll_up_categories, roll_up_parents, roll_up_products
from .rollup import AggregatedEntity, RollupDiagnostics, aggregate_with_diagnostics


@dataclass
class ProfitabilityTotals:
    """
    描述一个时间窗口内的顶层利润指标。

    属性:
        total_revenue (float): 总销售额。
        total_gross_profit (float): 总毛利。
        total_net_profit (float): 总净利润。
        total_orders (int): 订单数合计。
        total_quantity (int): 销售件数合计。
        refunded_quantity (int): 退货件数合计。
        avg_profit_margin (float): 按销售额加权的平均利润率。
        cost_coverage_percent (float): 有成本数据的销售额占比。
        profitable_count (int): 盈利 SKU 数量。
        unprofitable_count (int): 亏损 SKU 数量。
        unknown_count (int): 缺少成本数据的 SKU 数量。
    """

    total_revenue: float
    total_gross_profit: float
    total_net_profit: float
    total_orders: int
    total_quantity: int
    refunded_quantity: int
    avg_profit_margin: float
    cost_coverage_percent: float
    profitable_count: int
    unprofitable_count: int
    unknown_count: int


@dataclass
class ProfitabilityReport:
    """
    封装一次汇总运行的全部层级结果，供报告、导出与存储使用。

    属性:
        start (date): 窗口开始日期。
        end (date): 窗口结束日期。
        source_name (str): 数据来源名称。
        base_currency (str): 金额所用的基准货币。
        totals (ProfitabilityTotals): 顶层指标。
        skus (List[AggregatedEntity]): SKU 层实体（按站点拆分）。
        products (List[AggregatedEntity]): 商品层实体。
        parents (List[AggregatedEntity]): 父体层实体。
        categories (List[AggregatedEntity]): 类目层实体。
        country_comparisons (Dict[str, CountryComparison]): 多站点时的国家对比，单站点为空。
        diagnostics (RollupDiagnostics): 汇总诊断统计。
    """

    start: date
    end: date
    source_name: str
    base_currency: str
    totals: ProfitabilityTotals
    skus: List[AggregatedEntity]
    products: List[AggregatedEntity]
    parents: List[AggregatedEntity]
    categories: List[AggregatedEntity]
    country_comparisons: Dict[str, CountryComparison] = field(default_factory=dict)
    diagnostics: RollupDiagnostics = field(default_factory=RollupDiagnostics)

    def top_products(self, top_n: int) -> List[AggregatedEntity]:
        return self.products[:top_n]


def summarize(entities: Iterable[AggregatedEntity]) -> ProfitabilityTotals:
    """
    功能说明:
        汇总同一层级实体的顶层指标，平均利润率只统计具备成本数据且销售额为正的实体。
    参数:
        entities (Iterable[AggregatedEntity]): 同一层级的实体。
    返回:
        ProfitabilityTotals: 顶层指标。
    """
    items = list(entities)
    revenue = math.fsum(item.total_revenue for item in items)
    qualifying = [item for item in items if item.has_cost_data and item.total_revenue > 0]
    weight = math.fsum(item.total_revenue for item in qualifying)
    avg_margin = (
        math.fsum(item.profit_margin * item.total_revenue for item in qualifying) / weight if weight else 0.0
    )
    covered = math.fsum(item.cost_coverage_percent * item.total_revenue / 100 for item in items)
    return ProfitabilityTotals(
        total_revenue=revenue,
        total_gross_profit=math.fsum(item.gross_profit for item in items),
        total_net_profit=math.fsum(item.net_profit for item in items),
        total_orders=sum(item.total_orders for item in items),
        total_quantity=sum(item.total_quantity for item in items),
        refunded_quantity=sum(item.refunded_quantity for item in items),
        avg_profit_margin=avg_margin,
        cost_coverage_percent=(covered / revenue * 100) if revenue else 0.0,
        profitable_count=sum(1 for item in items if item.has_cost_data and item.net_profit > 0),
        unprofitable_count=sum(1 for item in items if item.has_cost_data and item.net_profit <= 0),
        unknown_count=sum(1 for item in items if not item.has_cost_data),
    )


def build_profitability_report(
    *,
    source_name: str,
    start: date,
    end: date,
    transactions: Iterable[Transaction],
    config: CostConfiguration,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
    materiality_threshold: float = DEFAULT_MATERIALITY_THRESHOLD,
) -> ProfitabilityReport:
    """
    功能说明:
        汇总交易记录，生成 SKU/商品/父体/类目四个层级的利润实体，
        交易覆盖多个站点时附带商品的国家对比。
    参数:
        source_name (str): 数据来源名称。
        start (date): 窗口开始日期。
        end (date): 窗口结束日期。
        transactions (Iterable[Transaction]): 交易记录。
        config (CostConfiguration): 成本配置快照。
        base_currency (str): 基准货币。
        rates (ExchangeRateTable | RateHistory | None): 汇率表。
        materiality_threshold (float): 国家对比的最低销售额。
    返回:
        ProfitabilityReport: 完整的利润报告。
    """
    rollup = aggregate_with_diagnostics(
        transactions,
        config,
        by_marketplace=True,
        base_currency=base_currency,
        rates=rates,
    )
    skus = rollup.entities
    products = roll_up_products(skus)
    parents = roll_up_parents(products)
    categories = roll_up_categories(parents, products)

    comparisons: Dict[str, CountryComparison] = {}
    if len({sku.marketplace for sku in skus}) > 1:
        comparisons = best_and_worst(
            roll_up_products(skus, by_marketplace=True),
            threshold=materiality_threshold,
        )

    return ProfitabilityReport(
        start=start,
        end=end,
        source_name=source_name,
        base_currency=base_currency,
        totals=summarize(skus),
        skus=skus,
        products=products,
        parents=parents,
        categories=categories,
        country_comparisons=comparisons,
        diagnostics=rollup.diagnostics,
    )


def find_entity(entities: Iterable[AggregatedEntity], key: str) -> Optional[AggregatedEntity]:
    for entity in entities:
        if entity.key == key:
            return entity
    return None
