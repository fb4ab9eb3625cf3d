"""预置的常用查询，供 CLI、MCP 工具与 Agent 直接引用。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from .engine import QuerySpec


@dataclass(frozen=True)
class QueryTemplate:
    """
    预置查询模板。

    属性:
        template_id (str): 模板 ID。
        title (str): 标题。
        description (str): 说明。
        query (Dict[str, Any]): 可直接交给 QuerySpec.from_dict 的查询字典。
    """

    template_id: str
    title: str
    description: str
    query: Dict[str, Any]

    def to_spec(self) -> QuerySpec:
        return QuerySpec.from_dict(self.query)


def _template(template_id: str, title: str, description: str, **query: Any) -> QueryTemplate:
    query.setdefault("filters", {})
    query.setdefault("sort", "desc")
    query.setdefault("limit", 10)
    query.setdefault("date_range", "last30days")
    return QueryTemplate(template_id=template_id, title=title, description=description, query=query)


QUERY_TEMPLATES: List[QueryTemplate] = [
    _template("top-revenue-products", "Top Revenue Products", "销售额最高的商品", metric="revenue", group_by="product"),
    _template("top-revenue-countries", "Top Revenue Countries", "按销售额排名的站点", metric="revenue", group_by="country"),
    _template("top-categories", "Top Categories", "表现最好的类目", metric="revenue", group_by="category"),
    _template(
        "worst-profit-products",
        "Most Unprofitable Products",
        "利润最低或亏损的商品",
        metric="profit",
        group_by="product",
        sort="asc",
    ),
    _template(
        "worst-profit-germany",
        "Losing Products in Germany",
        "德国站亏损商品",
        metric="profit",
        group_by="product",
        filters={"marketplaces": ["DE"]},
        sort="asc",
        date_range="last3months",
    ),
    _template("high-refund-rate", "High Refund Rate Products", "退款率最高的商品", metric="refundRate", group_by="product"),
    _template("refund-by-country", "Refund Rates by Country", "各站点退款率对比", metric="refundRate", group_by="country"),
    _template("fba-vs-fbm", "FBA vs FBM Performance", "履约方式销售额对比", metric="revenue", group_by="fulfillment"),
    _template(
        "fba-profit",
        "FBA Only Profits",
        "仅 FBA 商品的利润",
        metric="profit",
        group_by="product",
        filters={"fulfillment": "FBA"},
    ),
    _template(
        "last-month-products",
        "Last Month Top Products",
        "上个月销量最高的商品",
        metric="quantity",
        group_by="product",
        date_range="lastMonth",
    ),
    _template("highest-fees", "Highest Fee Products", "佣金最高的商品", metric="sellingFees", group_by="product"),
]


def get_template(template_id: str) -> QueryTemplate:
    """按 ID 查找模板，不存在时抛出 KeyError。"""
    for template in QUERY_TEMPLATES:
        if template.template_id == template_id:
            return template
    raise KeyError(f"未知的查询模板: {template_id}")
