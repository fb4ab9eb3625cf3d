"""跨站点对比同一商品的利润表现，找出最佳与最差国家。"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..data_sources.base import Marketplace
from .rollup import AggregatedEntity

DEFAULT_MATERIALITY_THRESHOLD = 100.0


@dataclass
class CountryComparison:
    """
    单个商品在各站点的利润对比结果。

    属性:
        product (str): 商品名称。
        countries (List[AggregatedEntity]): 各站点的商品实体，按站点代码排序。
        best (Optional[Marketplace]): 利润率最高的站点。
        worst (Optional[Marketplace]): 利润率最低的站点。
        eligible_count (int): 满足成本数据与销售额门槛的站点数量。
        total_revenue (float): 全部站点销售额合计。
        total_net_profit (float): 全部站点净利润合计。
        avg_profit_margin (float): 合格站点按销售额加权的平均利润率。
    """

    product: str
    countries: List[AggregatedEntity] = field(default_factory=list)
    best: Optional[Marketplace] = None
    worst: Optional[Marketplace] = None
    eligible_count: int = 0
    total_revenue: float = 0.0
    total_net_profit: float = 0.0
    avg_profit_margin: float = 0.0


def best_and_worst(
    product_entities: Iterable[AggregatedEntity],
    threshold: float = DEFAULT_MATERIALITY_THRESHOLD,
) -> Dict[str, CountryComparison]:
    """
    功能说明:
        对按站点拆分的商品实体逐个商品比较利润率。只有具备成本数据且销售额高于门槛的站点
        参与排名，合格站点不足两个时最佳与最差均为空；利润率相同时按站点代码字典序决定先后。
    参数:
        product_entities (Iterable[AggregatedEntity]): 带站点信息的商品实体。
        threshold (float): 参与排名的最低销售额（不含）。
    返回:
        Dict[str, CountryComparison]: 商品名称到对比结果的映射。
    """
    grouped: Dict[str, List[AggregatedEntity]] = {}
    for entity in product_entities:
        if entity.marketplace is None:
            continue
        grouped.setdefault(entity.key, []).append(entity)

    comparisons: Dict[str, CountryComparison] = {}
    for product, entities in grouped.items():
        entities = sorted(entities, key=lambda entity: entity.marketplace.value)
        eligible = [
            entity for entity in entities if entity.has_cost_data and entity.total_revenue > threshold
        ]
        comparison = CountryComparison(
            product=product,
            countries=entities,
            eligible_count=len(eligible),
            total_revenue=math.fsum(entity.total_revenue for entity in entities),
            total_net_profit=math.fsum(entity.net_profit for entity in entities),
        )
        weight = math.fsum(entity.total_revenue for entity in eligible)
        if weight:
            comparison.avg_profit_margin = (
                math.fsum(entity.profit_margin * entity.total_revenue for entity in eligible) / weight
            )
        if len(eligible) >= 2:
            ranked = sorted(eligible, key=lambda entity: (-entity.profit_margin, entity.marketplace.value))
            comparison.best = ranked[0].marketplace
            comparison.worst = ranked[-1].marketplace
        comparisons[product] = comparison
    return comparisons
