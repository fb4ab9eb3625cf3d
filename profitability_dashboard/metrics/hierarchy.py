"""将 SKU 实体逐级汇总为商品、父体与类目实体。"""

from __future__ import annotations

import math
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..data_sources.base import Marketplace
from .costs import COST_FIELDS, FEE_FIELDS
from .rollup import (
    LINE_FIELDS,
    AggregatedEntity,
    CostLine,
    EntityLevel,
    Fulfillment,
    percent_of,
    sort_entities,
)

TOP_PRODUCTS_PER_CATEGORY = 5

GroupKeyFn = Callable[[AggregatedEntity], str]


def roll_up(
    children: Iterable[AggregatedEntity],
    group_key_fn: GroupKeyFn,
    level: EntityLevel,
    *,
    by_marketplace: bool = False,
) -> List[AggregatedEntity]:
    """
    功能说明:
        把下级实体按分组键汇总为上一级实体。金额与数量直接求和，
        利润率与全部百分比按销售额加权，只统计具备成本数据且销售额大于 0 的下级实体。
    参数:
        children (Iterable[AggregatedEntity]): 下级实体。
        group_key_fn (Callable[[AggregatedEntity], str]): 返回上级名称的分组函数。
        level (EntityLevel): 上级层级。
        by_marketplace (bool): 是否同时按站点拆分。
    返回:
        List[AggregatedEntity]: 按销售额降序排列的上级实体。
    """
    groups: Dict[Tuple[str, Optional[Marketplace]], List[AggregatedEntity]] = {}
    for child in children:
        key = (group_key_fn(child), child.marketplace if by_marketplace else None)
        groups.setdefault(key, []).append(child)

    return sort_entities(
        _compose(name, marketplace, members, level, by_marketplace)
        for (name, marketplace), members in groups.items()
    )


def _compose(
    name: str,
    marketplace: Optional[Marketplace],
    children: Sequence[AggregatedEntity],
    level: EntityLevel,
    by_marketplace: bool,
) -> AggregatedEntity:
    revenue = math.fsum(child.total_revenue for child in children)
    qualifying = [child for child in children if child.has_cost_data and child.total_revenue > 0]
    weight = math.fsum(child.total_revenue for child in qualifying)

    def weighted(value_of: Callable[[AggregatedEntity], float]) -> float:
        if not weight:
            return 0.0
        return math.fsum(value_of(child) * child.total_revenue for child in qualifying) / weight

    lines: Dict[str, CostLine] = {}
    for line_name in LINE_FIELDS:
        amount = math.fsum(child.line(line_name).amount for child in children)
        percent = weighted(lambda child: child.line(line_name).percent) if revenue else 0.0
        lines[line_name] = CostLine(amount=amount, percent=percent)

    fees = math.fsum(lines[line_name].amount for line_name in FEE_FIELDS)
    costs = math.fsum(lines[line_name].amount for line_name in COST_FIELDS)
    qualifying_profit = math.fsum(child.net_profit for child in qualifying)
    qualifying_costs = math.fsum(child.total_costs for child in qualifying)
    covered_revenue = math.fsum(child.cost_coverage_percent * child.total_revenue / 100 for child in children)
    quantity = sum(child.total_quantity for child in children)

    if not by_marketplace:
        marketplaces = {child.marketplace for child in children}
        marketplace = marketplaces.pop() if len(marketplaces) == 1 else None

    return AggregatedEntity(
        level=level,
        key=name,
        name=name,
        category=min(child.category for child in children),
        parent=name if level in (EntityLevel.PARENT, EntityLevel.CATEGORY) else min(child.parent for child in children),
        marketplace=marketplace,
        fulfillment=compose_fulfillment(child.fulfillment for child in children),
        total_revenue=revenue,
        total_orders=sum(child.total_orders for child in children),
        total_quantity=quantity,
        refunded_quantity=sum(child.refunded_quantity for child in children),
        refund_orders=sum(child.refund_orders for child in children),
        lines=lines,
        fba_revenue=math.fsum(child.fba_revenue for child in children),
        fba_quantity=sum(child.fba_quantity for child in children),
        fbm_revenue=math.fsum(child.fbm_revenue for child in children),
        fbm_quantity=sum(child.fbm_quantity for child in children),
        mixed_revenue=math.fsum(child.mixed_revenue for child in children),
        mixed_quantity=sum(child.mixed_quantity for child in children),
        gross_profit=revenue - fees,
        net_profit=revenue - fees - costs,
        profit_margin=weighted(lambda child: child.profit_margin) if revenue else 0.0,
        roi=percent_of(qualifying_profit, qualifying_costs) if qualifying_costs > 0 else 0.0,
        has_cost_data=bool(qualifying),
        has_shipping_data=all(child.has_shipping_data for child in children),
        cost_coverage_percent=percent_of(covered_revenue, revenue),
        avg_sale_price=revenue / quantity if quantity else 0.0,
        child_count=len(children),
    )


def compose_fulfillment(tags: Iterable[Fulfillment]) -> Fulfillment:
    """全部下级同为 FBA 或 FBM 时沿用该标记，全部未知时为 UNKNOWN，其余情况为 Mixed。"""
    distinct = set(tags)
    if len(distinct) == 1:
        return distinct.pop()
    return Fulfillment.MIXED if distinct else Fulfillment.UNKNOWN


def roll_up_products(skus: Iterable[AggregatedEntity], *, by_marketplace: bool = False) -> List[AggregatedEntity]:
    return roll_up(skus, lambda entity: entity.name, EntityLevel.PRODUCT, by_marketplace=by_marketplace)


def roll_up_parents(products: Iterable[AggregatedEntity]) -> List[AggregatedEntity]:
    return roll_up(products, lambda entity: entity.parent, EntityLevel.PARENT)


def roll_up_categories(
    parents: Iterable[AggregatedEntity],
    products: Optional[Iterable[AggregatedEntity]] = None,
    *,
    top_n: int = TOP_PRODUCTS_PER_CATEGORY,
) -> List[AggregatedEntity]:
    """
    功能说明:
        汇总类目实体，并在提供商品实体时附带每个类目销售额最高的商品。
    参数:
        parents (Iterable[AggregatedEntity]): 父体实体。
        products (Optional[Iterable[AggregatedEntity]]): 商品实体。
        top_n (int): 每个类目保留的商品数量。
    返回:
        List[AggregatedEntity]: 类目实体。
    """
    categories = roll_up(parents, lambda entity: entity.category, EntityLevel.CATEGORY)
    if products is not None:
        by_category: Dict[str, List[AggregatedEntity]] = {}
        for product in products:
            by_category.setdefault(product.category, []).append(product)
        for category in categories:
            category.top_products = sort_entities(by_category.get(category.key, []))[:top_n]
    return categories


def build_hierarchy(
    skus: Sequence[AggregatedEntity],
) -> Tuple[List[AggregatedEntity], List[AggregatedEntity], List[AggregatedEntity]]:
    """依次生成商品、父体、类目三个层级。"""
    products = roll_up_products(skus)
    parents = roll_up_parents(products)
    categories = roll_up_categories(parents, products)
    return products, parents, categories
