from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage

from .config import AppConfig
from .data_sources.base import FulfillmentType, Marketplace, Transaction, TransactionSource, TransactionType
from .data_sources.mock_transactions import create_default_mock_source
from .metrics.calculations import build_profitability_report, find_entity
from .metrics.countries import best_and_worst
from .metrics.currency import ExchangeRateTable, RateHistory, load_rate_history
from .metrics.hierarchy import roll_up_products
from .pipeline.pipeline import ProfitabilityPipeline
from .query.engine import QuerySpec, execute, resolve_date_range, validate_spec
from .query.templates import QUERY_TEMPLATES, get_template
from .reporting.formatter import comparison_to_dict, entity_to_dict, query_results_to_dict, report_to_dict
from .reporting.pricing_export import build_bulk_pricing_export, build_pricing_export, payload_to_json
from .storage.repository import SQLiteRepository, StoredSummary
from .utils.dates import recent_period

logger = logging.getLogger(__name__)

# 历史分析支持的指标到快照字段的映射。
HISTORY_METRICS: Dict[str, str] = {
    "revenue": "total_revenue",
    "net_profit": "total_net_profit",
    "orders": "total_orders",
    "quantity": "total_quantity",
    "margin": "avg_profit_margin",
}
# 需要按关税/DDP 拆分 FBM 直发与本地仓的站点。
LOCAL_FBM_MARKETPLACES = ("US",)


@dataclass
class ServiceContext:
    config: AppConfig
    data_source: TransactionSource
    repository: Optional[SQLiteRepository] = None
    llm: Optional[ChatOpenAI] = None
    rates: "ExchangeRateTable | RateHistory | None" = None


def create_service_context(
    config: AppConfig,
    *,
    data_source: Optional[TransactionSource] = None,
    repository: Optional[SQLiteRepository] = None,
    llm: Optional[ChatOpenAI] = None,
    rates: "ExchangeRateTable | RateHistory | None" = None,
) -> ServiceContext:
    data_source = data_source or create_default_mock_source(config)
    if rates is None and config.dashboard.rates_file:
        rates = load_rate_history(config.dashboard.rates_file)
    if repository is None and config.storage.enabled:
        repository = SQLiteRepository(config.storage.db_path)
    if llm is None and config.openai_api_key:
        llm = ChatOpenAI(
            api_key=config.openai_api_key,
            model=config.openai_model,
            temperature=config.openai_temperature,
        )
    return ServiceContext(config=config, data_source=data_source, repository=repository, llm=llm, rates=rates)


def _pipeline(context: ServiceContext) -> ProfitabilityPipeline:
    return ProfitabilityPipeline(config=context.config, data_source=context.data_source, rates=context.rates)


def _resolve_window(
    context: ServiceContext,
    start: Optional[str],
    end: Optional[str],
    window_days: Optional[int],
) -> Tuple[date, date]:
    parsed_start = date.fromisoformat(start) if start else None
    parsed_end = date.fromisoformat(end) if end else None
    if parsed_start is None or parsed_end is None:
        window = window_days or context.config.dashboard.refresh_window_days
        parsed_start, parsed_end = recent_period(window)
    if parsed_start > parsed_end:
        raise ValueError(f"开始日期 {parsed_start} 晚于结束日期 {parsed_end}")
    return parsed_start, parsed_end


def transactions_to_payload(records: List[Transaction]) -> List[Dict[str, Any]]:
    return [
        {
            "day": record.day.isoformat(),
            "marketplace": record.marketplace.value,
            "type": record.type.value,
            "sku": record.sku,
            "order_id": record.order_id,
            "quantity": record.quantity,
            "product_sales": record.product_sales,
            "fulfillment": record.fulfillment.value,
            "product_name": record.product_name,
            "parent_id": record.parent_id,
            "category": record.category,
            "promotional_rebates": record.promotional_rebates,
            "selling_fees": record.selling_fees,
            "fba_fees": record.fba_fees,
            "vat": record.vat,
            "customs_duty": record.customs_duty,
            "ddp_fee": record.ddp_fee,
            "warehouse_cost": record.warehouse_cost,
            "gst_cost": record.gst_cost,
        }
        for record in records
    ]


def payload_to_transactions(payload: List[Dict[str, Any]]) -> List[Transaction]:
    return [
        Transaction(
            day=date.fromisoformat(item["day"]),
            marketplace=Marketplace.parse(item.get("marketplace")),
            type=TransactionType.parse(item.get("type")),
            sku=str(item.get("sku") or ""),
            order_id=str(item.get("order_id") or ""),
            quantity=int(item.get("quantity", 0)),
            product_sales=float(item.get("product_sales", 0.0)),
            fulfillment=FulfillmentType.parse(item.get("fulfillment")),
            product_name=str(item.get("product_name") or ""),
            parent_id=str(item.get("parent_id") or ""),
            category=str(item.get("category") or ""),
            promotional_rebates=float(item.get("promotional_rebates", 0.0)),
            selling_fees=float(item.get("selling_fees", 0.0)),
            fba_fees=float(item.get("fba_fees", 0.0)),
            vat=float(item.get("vat", 0.0)),
            customs_duty=float(item.get("customs_duty", 0.0)),
            ddp_fee=float(item.get("ddp_fee", 0.0)),
            warehouse_cost=float(item.get("warehouse_cost", 0.0)),
            gst_cost=float(item.get("gst_cost", 0.0)),
        )
        for item in payload
    ]


def calc_growth(current: float, base: Optional[float]) -> Optional[float]:
    if base is None or base == 0:
        return None
    return (current - base) / base


def find_yoy(repository: SQLiteRepository, current_start: date) -> Optional[StoredSummary]:
    try:
        target = current_start.replace(year=current_start.year - 1)
    except ValueError:
        target = current_start - timedelta(days=365)
    return repository.fetch_by_start_date(target.isoformat())


def fetch_transactions(
    context: ServiceContext,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    marketplace: Optional[str] = None,
) -> Dict[str, Any]:
    parsed_start, parsed_end = _resolve_window(context, start, end, window_days)
    records = _pipeline(context).fetch(parsed_start, parsed_end, marketplace)
    return {
        "start": parsed_start.isoformat(),
        "end": parsed_end.isoformat(),
        "source": context.data_source.name,
        "transactions": transactions_to_payload(records),
    }


def compute_profitability(
    context: ServiceContext,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    marketplace: Optional[str] = None,
    transactions: Optional[List[Dict[str, Any]]] = None,
    source: Optional[str] = None,
    top_n: Optional[int] = None,
    levels: Optional[List[str]] = None,
) -> Dict[str, Any]:
    parsed_start, parsed_end = _resolve_window(context, start, end, window_days)
    pipeline = _pipeline(context)
    if transactions is None:
        report = pipeline.run(start=parsed_start, end=parsed_end, marketplace=marketplace)
    else:
        report = build_profitability_report(
            source_name=source or context.data_source.name,
            start=parsed_start,
            end=parsed_end,
            transactions=payload_to_transactions(transactions),
            config=pipeline.cost_configuration(),
            base_currency=context.config.dashboard.base_currency,
            rates=context.rates,
            materiality_threshold=context.config.dashboard.materiality_threshold,
        )
    if context.repository and context.config.storage.enabled:
        context.repository.initialize()
        context.repository.save_report(report)
    return {
        "report": report_to_dict(
            report,
            levels=levels,
            top_n=top_n or context.config.dashboard.top_n_products,
        )
    }


def compare_countries(
    context: ServiceContext,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    product: Optional[str] = None,
    threshold: Optional[float] = None,
) -> Dict[str, Any]:
    parsed_start, parsed_end = _resolve_window(context, start, end, window_days)
    report = _pipeline(context).run(start=parsed_start, end=parsed_end, marketplace="ALL")
    effective_threshold = threshold if threshold is not None else context.config.dashboard.materiality_threshold
    comparisons = best_and_worst(
        roll_up_products(report.skus, by_marketplace=True),
        threshold=effective_threshold,
    )
    if product is not None:
        entity = find_entity(report.products, product)
        if entity is None:
            raise RuntimeError(f"窗口内没有商品 {product} 的交易记录。")
        return {
            "product": entity_to_dict(entity),
            "comparison": comparison_to_dict(comparisons[product]),
        }
    return {
        "threshold": effective_threshold,
        "comparisons": [comparison_to_dict(comparisons[name]) for name in sorted(comparisons)],
    }


def list_query_templates() -> Dict[str, Any]:
    return {
        "templates": [
            {
                "id": template.template_id,
                "title": template.title,
                "description": template.description,
                "query": template.query,
            }
            for template in QUERY_TEMPLATES
        ]
    }


def run_profitability_query(
    context: ServiceContext,
    *,
    query: Optional[Dict[str, Any]] = None,
    template_id: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    if template_id:
        spec = get_template(template_id).to_spec()
    elif query:
        spec = QuerySpec.from_dict(query)
    else:
        raise RuntimeError("run_profitability_query 需要 query 或 template_id。")
    validate_spec(spec)
    window_start, window_end = resolve_date_range(spec.date_range, today)
    transactions = context.data_source.fetch_transactions(window_start, window_end)
    results = execute(
        transactions,
        spec,
        config=_pipeline(context).cost_configuration(),
        base_currency=context.config.dashboard.base_currency,
        rates=context.rates,
        today=today,
    )
    return {"results": query_results_to_dict(results)}


def export_pricing(
    context: ServiceContext,
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    marketplace: Optional[str] = None,
    bulk: bool = False,
    path: Optional[str] = None,
) -> Dict[str, Any]:
    parsed_start, parsed_end = _resolve_window(context, start, end, window_days)
    code = (marketplace or context.config.dashboard.marketplace or "ALL").upper()
    if bulk:
        report = _pipeline(context).run(start=parsed_start, end=parsed_end, marketplace="ALL")
        payload = build_bulk_pricing_export(
            report.skus,
            start=parsed_start,
            end=parsed_end,
            local_fbm_marketplaces=tuple(Marketplace.parse(item) for item in LOCAL_FBM_MARKETPLACES),
        )
    else:
        report = _pipeline(context).run(start=parsed_start, end=parsed_end, marketplace=code)
        payload = build_pricing_export(
            report.categories,
            report.skus,
            marketplace=code,
            start=parsed_start,
            end=parsed_end,
            refund_recovery_rate=context.config.costs.refund_recovery_rate,
            split_fbm_origin=code in LOCAL_FBM_MARKETPLACES,
        )
    if path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(payload_to_json(payload), encoding="utf-8")
        logger.info("定价导出已写入 %s", output_path)
        return {"message": f"定价导出已写入 {output_path}", "export": payload}
    return {"export": payload}


def generate_profitability_insights(
    context: ServiceContext,
    *,
    summary: Optional[Dict[str, Any]] = None,
    focus: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    top_n: Optional[int] = None,
) -> Dict[str, Any]:
    if context.llm is None:
        raise RuntimeError("OPENAI_API_KEY 未配置，无法生成洞察。")
    if summary is None:
        summary = compute_profitability(
            context,
            start=start,
            end=end,
            window_days=window_days,
            top_n=top_n,
            levels=["product", "category"],
        )["report"]
    instructions = (
        "你是一名跨境电商利润分析师，请基于给定的利润汇总生成结构化洞察。"
        "按照“总体利润”“亏损与风险商品”“定价与成本建议”三个部分输出。"
        "缺少成本数据的商品利润率不可信，需要单独指出。"
    )
    if focus:
        instructions += f" 优先关注：{focus}。"
    response = context.llm.invoke(
        [
            SystemMessage(content=instructions),
            HumanMessage(content=f"请分析以下 JSON 数据：{summary}"),
        ]
    )
    return {"report": {"summary": summary, "insights": response.content}}


def analyze_profitability_history(
    context: ServiceContext,
    *,
    limit: int = 6,
    metrics: Optional[List[str]] = None,
) -> Dict[str, Any]:
    if not context.repository:
        return {
            "analysis": {"error": "未启用数据库持久化，无法读取历史数据。"},
            "time_series": {},
        }
    context.repository.initialize()
    summaries = context.repository.fetch_recent_summaries(limit=limit)
    if not summaries:
        return {
            "analysis": {"error": "数据库暂无历史记录。"},
            "time_series": {},
        }
    current = summaries[0]
    previous = summaries[1] if len(summaries) > 1 else None
    yoy_summary = find_yoy(context.repository, date.fromisoformat(current.start))
    selected = [metric for metric in (metrics or ["revenue", "net_profit", "margin"]) if metric in HISTORY_METRICS]
    analysis: Dict[str, Dict[str, Optional[float]]] = {}
    for metric in selected:
        attr = HISTORY_METRICS[metric]
        current_value = float(getattr(current, attr))
        prev_value = float(getattr(previous, attr)) if previous else None
        yoy_value = float(getattr(yoy_summary, attr)) if yoy_summary else None
        analysis[metric] = {
            "current": current_value,
            "mom": calc_growth(current_value, prev_value),
            "yoy": calc_growth(current_value, yoy_value),
        }
    series = {
        metric: [
            {
                "start": item.start,
                "value": float(getattr(item, HISTORY_METRICS[metric])),
            }
            for item in reversed(summaries)
        ]
        for metric in selected
    }
    return {"analysis": analysis, "time_series": series}


def export_profitability_history(
    context: ServiceContext,
    *,
    limit: int,
    path: str,
) -> Dict[str, Any]:
    if not context.repository:
        return {"message": "未启用数据库持久化，无法导出历史数据。"}
    context.repository.initialize()
    summaries = context.repository.fetch_recent_summaries(limit=limit)
    if not summaries:
        return {"message": "数据库暂无可导出的历史记录。"}
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", newline="", encoding="utf-8") as csvfile:
        writer = csv.writer(csvfile)
        writer.writerow(
            [
                "id",
                "start",
                "end",
                "currency",
                "total_revenue",
                "total_net_profit",
                "total_orders",
                "total_quantity",
                "avg_profit_margin",
                "cost_coverage_percent",
                "created_at",
            ]
        )
        for item in summaries:
            writer.writerow(
                [
                    item.id,
                    item.start,
                    item.end,
                    item.currency,
                    item.total_revenue,
                    item.total_net_profit,
                    item.total_orders,
                    item.total_quantity,
                    item.avg_profit_margin,
                    item.cost_coverage_percent,
                    item.created_at,
                ]
            )
    return {"message": f"历史数据已导出到 {output_path}"}
