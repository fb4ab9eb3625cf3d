"""提供利润报告与查询结果的结构化与文本格式化工具。"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..metrics.calculations import ProfitabilityReport, ProfitabilityTotals
from ..metrics.countries import CountryComparison
from ..metrics.rollup import LINE_FIELDS, AggregatedEntity, RollupDiagnostics
from ..query.engine import QueryResults, QuerySpec


def _money(value: float) -> float:
    return round(value, 2)


def entity_to_dict(entity: AggregatedEntity, *, include_top_products: bool = True) -> Dict[str, Any]:
    """
    功能说明:
        将 AggregatedEntity 转换为可 JSON 序列化的字典，金额保留两位小数。
    参数:
        entity (AggregatedEntity): 利润实体。
        include_top_products (bool): 是否包含类目下的 Top 商品。
    返回:
        Dict[str, Any]: 序列化后的实体结构。
    """
    payload: Dict[str, Any] = {
        "level": entity.level.value,
        "key": entity.key,
        "name": entity.name,
        "category": entity.category,
        "parent": entity.parent,
        "marketplace": entity.marketplace.value if entity.marketplace else None,
        "fulfillment": entity.fulfillment.value,
        "total_revenue": _money(entity.total_revenue),
        "total_orders": entity.total_orders,
        "total_quantity": entity.total_quantity,
        "refunded_quantity": entity.refunded_quantity,
        "refund_orders": entity.refund_orders,
        "lines": {
            name: {"amount": _money(entity.line(name).amount), "percent": round(entity.line(name).percent, 2)}
            for name in LINE_FIELDS
        },
        "fba_revenue": _money(entity.fba_revenue),
        "fba_quantity": entity.fba_quantity,
        "fbm_revenue": _money(entity.fbm_revenue),
        "fbm_quantity": entity.fbm_quantity,
        "mixed_revenue": _money(entity.mixed_revenue),
        "mixed_quantity": entity.mixed_quantity,
        "gross_profit": _money(entity.gross_profit),
        "net_profit": _money(entity.net_profit),
        "profit_margin": round(entity.profit_margin, 2),
        "roi": round(entity.roi, 2),
        "has_cost_data": entity.has_cost_data,
        "has_shipping_data": entity.has_shipping_data,
        "cost_coverage_percent": round(entity.cost_coverage_percent, 2),
        "avg_sale_price": _money(entity.avg_sale_price),
        "child_count": entity.child_count,
    }
    if include_top_products and entity.top_products:
        payload["top_products"] = [
            entity_to_dict(product, include_top_products=False) for product in entity.top_products
        ]
    return payload


def totals_to_dict(totals: ProfitabilityTotals) -> Dict[str, Any]:
    return {
        "revenue": _money(totals.total_revenue),
        "gross_profit": _money(totals.total_gross_profit),
        "net_profit": _money(totals.total_net_profit),
        "orders": totals.total_orders,
        "quantity": totals.total_quantity,
        "refunded_quantity": totals.refunded_quantity,
        "avg_profit_margin": round(totals.avg_profit_margin, 2),
        "cost_coverage_percent": round(totals.cost_coverage_percent, 2),
        "profitable_count": totals.profitable_count,
        "unprofitable_count": totals.unprofitable_count,
        "unknown_count": totals.unknown_count,
    }


def comparison_to_dict(comparison: CountryComparison) -> Dict[str, Any]:
    return {
        "product": comparison.product,
        "best_country": comparison.best.value if comparison.best else None,
        "worst_country": comparison.worst.value if comparison.worst else None,
        "eligible_count": comparison.eligible_count,
        "total_revenue": _money(comparison.total_revenue),
        "total_net_profit": _money(comparison.total_net_profit),
        "avg_profit_margin": round(comparison.avg_profit_margin, 2),
        "countries": [
            {
                "marketplace": entity.marketplace.value if entity.marketplace else None,
                "revenue": _money(entity.total_revenue),
                "net_profit": _money(entity.net_profit),
                "profit_margin": round(entity.profit_margin, 2),
                "has_cost_data": entity.has_cost_data,
                "fba_revenue": _money(entity.fba_revenue),
                "fbm_revenue": _money(entity.fbm_revenue),
                "mixed_revenue": _money(entity.mixed_revenue),
                "quantity": entity.total_quantity,
                "refunded_quantity": entity.refunded_quantity,
            }
            for entity in comparison.countries
        ],
    }


def diagnostics_to_dict(diagnostics: RollupDiagnostics) -> Dict[str, Any]:
    return {
        "processed_rows": diagnostics.processed_rows,
        "ignored_rows": diagnostics.ignored_rows,
        "conversion_failures": diagnostics.conversion_failures,
        "failed_currencies": dict(sorted(diagnostics.failed_currencies.items())),
        "missing_cost_skus": sorted(diagnostics.missing_cost_skus),
        "missing_shipping_skus": sorted(diagnostics.missing_shipping_skus),
    }


def report_to_dict(
    report: ProfitabilityReport,
    *,
    levels: Optional[List[str]] = None,
    top_n: Optional[int] = None,
) -> Dict[str, Any]:
    """
    功能说明:
        将 ProfitabilityReport 转换为可 JSON 序列化的字典。
    参数:
        report (ProfitabilityReport): 利润报告。
        levels (Optional[List[str]]): 需要输出的层级，默认全部。
        top_n (Optional[int]): 每个层级保留的实体数量，默认全部。
    返回:
        Dict[str, Any]: 序列化后的报告结构。
    """
    selected = levels or ["sku", "product", "parent", "category"]
    collections = {
        "sku": report.skus,
        "product": report.products,
        "parent": report.parents,
        "category": report.categories,
    }
    payload: Dict[str, Any] = {
        "source": report.source_name,
        "window": {"start": report.start.isoformat(), "end": report.end.isoformat()},
        "currency": report.base_currency,
        "totals": totals_to_dict(report.totals),
        "diagnostics": diagnostics_to_dict(report.diagnostics),
    }
    for level in selected:
        entities = collections[level]
        if top_n is not None:
            entities = entities[:top_n]
        payload[f"{level}_entities"] = [entity_to_dict(entity) for entity in entities]
    payload["country_comparisons"] = [
        comparison_to_dict(report.country_comparisons[name]) for name in sorted(report.country_comparisons)
    ]
    return payload


def spec_to_dict(spec: QuerySpec) -> Dict[str, Any]:
    date_range = spec.date_range
    return {
        "metric": spec.metric.value,
        "group_by": spec.group_by.value,
        "filters": {
            "marketplaces": [marketplace.value for marketplace in spec.filters.marketplaces],
            "fulfillment": spec.filters.fulfillment.value if spec.filters.fulfillment else None,
            "category": spec.filters.category,
        },
        "date_range": {
            "preset": date_range.preset,
            "start": date_range.start.isoformat() if date_range.start else None,
            "end": date_range.end.isoformat() if date_range.end else None,
        },
        "sort": spec.sort.value,
        "limit": spec.limit,
    }


def query_results_to_dict(results: QueryResults) -> Dict[str, Any]:
    """
    功能说明:
        将 QueryResults 转换为可 JSON 序列化的字典，并附带每项占返回合计的比例。
    参数:
        results (QueryResults): 查询结果。
    返回:
        Dict[str, Any]: 序列化后的查询结果。
    """
    total = results.summary.total
    return {
        "query": spec_to_dict(results.spec),
        "items": [
            {
                "key": item.key,
                "label": item.label,
                "value": item.value,
                "share": (item.value / total * 100) if total else 0.0,
                "metadata": item.metadata,
            }
            for item in results.items
        ],
        "summary": {
            "total": total,
            "count": results.summary.count,
            "date_range": {
                "start": results.summary.start.isoformat(),
                "end": results.summary.end.isoformat(),
            },
            "matched_rows": results.summary.matched_rows,
            "conversion_failures": results.summary.conversion_failures,
            "missing_cost_rows": results.summary.missing_cost_rows,
        },
    }


def _format_entity_line(idx: int, entity: AggregatedEntity, currency: str) -> str:
    """
    功能说明:
        将单个利润实体格式化为人类可读的文本。
    参数:
        idx (int): 排名序号。
        entity (AggregatedEntity): 利润实体。
        currency (str): 货币代码。
    返回:
        str: 格式化后的文本行。
    """
    margin = f"Margin {entity.profit_margin:.2f}%" if entity.has_cost_data else "Margin n/a (no cost data)"
    marketplace = f" [{entity.marketplace.value}]" if entity.marketplace else ""
    return (
        f"{idx}. {entity.name}{marketplace} ({entity.fulfillment.value}) - "
        f"Revenue {format(entity.total_revenue, ',.2f')} {currency}, "
        f"Net {format(entity.net_profit, ',.2f')} {currency}, {margin}, "
        f"Orders {entity.total_orders}, Units {entity.total_quantity}, Refunded {entity.refunded_quantity}"
    )


def format_text_report(report: ProfitabilityReport, *, level: str = "product", top_n: int = 10) -> str:
    """
    功能说明:
        生成适合在控制台展示的利润报告文本。
    参数:
        report (ProfitabilityReport): 利润报告。
        level (str): 展示的层级。
        top_n (int): 展示的实体数量。
    返回:
        str: 多行字符串，包含窗口信息、顶层指标与 Top 实体列表。
    """
    totals = report.totals
    currency = report.base_currency
    lines: List[str] = []
    lines.append(f"Window: {report.start.isoformat()} to {report.end.isoformat()}")
    lines.append(f"Source: {report.source_name}")
    lines.append(
        f"Totals: Revenue {format(totals.total_revenue, ',.2f')} {currency}, "
        f"Net Profit {format(totals.total_net_profit, ',.2f')} {currency}, "
        f"Avg Margin {totals.avg_profit_margin:.2f}%, Cost Coverage {totals.cost_coverage_percent:.1f}%"
    )
    lines.append(
        f"SKUs: {totals.profitable_count} profitable, {totals.unprofitable_count} unprofitable, "
        f"{totals.unknown_count} without cost data"
    )
    if report.diagnostics.conversion_failures:
        lines.append(f"Warning: {report.diagnostics.conversion_failures} rows skipped (missing exchange rate)")

    entities = {
        "sku": report.skus,
        "product": report.products,
        "parent": report.parents,
        "category": report.categories,
    }[level]
    if not entities:
        lines.append("No transaction records available.")
        return "\n".join(lines)

    lines.append(f"Top {level} entities (by revenue):")
    for idx, entity in enumerate(entities[:top_n], start=1):
        lines.append(_format_entity_line(idx, entity, currency))

    if report.country_comparisons:
        lines.append("Country comparison:")
        for name in sorted(report.country_comparisons):
            comparison = report.country_comparisons[name]
            if comparison.best is None:
                continue
            lines.append(f"- {name}: best {comparison.best.value}, worst {comparison.worst.value}")
    return "\n".join(lines)


def format_query_results(results: QueryResults) -> str:
    summary = results.summary
    lines = [
        f"Query: {results.spec.metric.value} by {results.spec.group_by.value} "
        f"({summary.start.isoformat()} to {summary.end.isoformat()})"
    ]
    if not results.items:
        lines.append("No matching transactions.")
    for idx, item in enumerate(results.items, start=1):
        lines.append(f"{idx}. {item.label} ({item.key}): {item.value:,.2f}")
    lines.append(f"Total of shown items: {summary.total:,.2f} ({summary.count} items)")
    return "\n".join(lines)
