"""Profitability Dashboard MCP 服务模块，基于 FastMCP 暴露利润分析资源与工具。"""

import argparse
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import MethodType
from typing import Any, Dict, List, Optional, cast

from typing_extensions import TypedDict

from mcp.server.fastmcp import Context, FastMCP

from profitability_dashboard.config import AppConfig
from profitability_dashboard.services import (
    ServiceContext,
    analyze_profitability_history as _analyze_profitability_history,
    compare_countries as _compare_countries,
    compute_profitability as _compute_profitability,
    create_service_context,
    export_pricing as _export_pricing,
    export_profitability_history as _export_profitability_history,
    fetch_transactions as _fetch_transactions,
    generate_profitability_insights as _generate_profitability_insights,
    list_query_templates as _list_query_templates,
    run_profitability_query as _run_profitability_query,
)
from profitability_dashboard.storage.repository import StoredSummary
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.routing import Route


logger = logging.getLogger(__name__)
logging.basicConfig(level=os.getenv('MCP_SERVER_LOG_LEVEL', 'INFO').upper(), format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')

GLOBAL_SERVICE_CONTEXT: Optional[ServiceContext] = None


class TransactionPayload(TypedDict):
    day: str
    marketplace: str
    type: str
    sku: str
    order_id: str
    quantity: int
    product_sales: float
    fulfillment: str
    product_name: str
    parent_id: str
    category: str
    promotional_rebates: float
    selling_fees: float
    fba_fees: float
    vat: float
    customs_duty: float
    ddp_fee: float
    warehouse_cost: float
    gst_cost: float


class FetchTransactionsResult(TypedDict):
    start: str
    end: str
    source: str
    transactions: List[TransactionPayload]


class ReportWindowPayload(TypedDict):
    start: str
    end: str


class ReportTotalsPayload(TypedDict):
    revenue: float
    gross_profit: float
    net_profit: float
    orders: int
    quantity: int
    refunded_quantity: int
    avg_profit_margin: float
    cost_coverage_percent: float
    profitable_count: int
    unprofitable_count: int
    unknown_count: int


class ProfitabilityReportPayload(TypedDict, total=False):
    source: str
    window: ReportWindowPayload
    currency: str
    totals: ReportTotalsPayload
    diagnostics: Dict[str, Any]
    sku_entities: List[Dict[str, Any]]
    product_entities: List[Dict[str, Any]]
    parent_entities: List[Dict[str, Any]]
    category_entities: List[Dict[str, Any]]
    country_comparisons: List[Dict[str, Any]]


class ComputeProfitabilityResult(TypedDict):
    report: ProfitabilityReportPayload


class CompareCountriesResult(TypedDict, total=False):
    threshold: float
    comparisons: List[Dict[str, Any]]
    product: Dict[str, Any]
    comparison: Dict[str, Any]


class QueryItemPayload(TypedDict):
    key: str
    label: str
    value: float
    share: float
    metadata: Optional[Dict[str, Any]]


class QueryResultsPayload(TypedDict):
    query: Dict[str, Any]
    items: List[QueryItemPayload]
    summary: Dict[str, Any]


class RunProfitabilityQueryResult(TypedDict):
    results: QueryResultsPayload


class QueryTemplatePayload(TypedDict):
    id: str
    title: str
    description: str
    query: Dict[str, Any]


class ListQueryTemplatesResult(TypedDict):
    templates: List[QueryTemplatePayload]


class ExportPricingResult(TypedDict, total=False):
    message: str
    export: Dict[str, Any]


class GenerateProfitabilityInsightsReportPayload(TypedDict):
    summary: Dict[str, Any]
    insights: str


class GenerateProfitabilityInsightsResult(TypedDict):
    report: GenerateProfitabilityInsightsReportPayload


class MetricGrowthPayload(TypedDict):
    current: float
    mom: Optional[float]
    yoy: Optional[float]


class TimeSeriesPointPayload(TypedDict):
    start: str
    value: float


class AnalyzeProfitabilityHistoryResult(TypedDict):
    analysis: Dict[str, MetricGrowthPayload | str]
    time_series: Dict[str, List[TimeSeriesPointPayload]]


class ExportProfitabilityHistoryResult(TypedDict):
    message: str


class DashboardAppContext:
    """封装 MCP 生命周期中共享的业务依赖。

    Attributes:
        service_context (ServiceContext): 包含数据源、仓储、LLM 等资源的聚合上下文。
    """

    def __init__(self, service_context: ServiceContext) -> None:
        self.service_context = service_context


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[DashboardAppContext]:
    """FastMCP 生命周期钩子，创建并共享业务上下文。

    Args:
        server (FastMCP): FastMCP 框架传入的服务器实例，本实现中仅为保持签名一致。

    Yields:
        DashboardAppContext: 包含业务依赖的上下文对象，供请求期间复用。
    """

    service_context = create_service_context(AppConfig.from_env())
    if service_context.repository is not None:
        service_context.repository.initialize()
    global GLOBAL_SERVICE_CONTEXT
    GLOBAL_SERVICE_CONTEXT = service_context
    yield DashboardAppContext(service_context=service_context)


mcp = FastMCP(
    name="Profitability Dashboard",
    instructions=(
        "Expose multi-marketplace e-commerce profitability analytics through MCP tools and resources. "
        "Use the registered tools to fetch transactions, roll up profit by SKU/product/parent/category, "
        "compare countries, run declarative queries, and export pricing fee structures."
    ),
    lifespan=app_lifespan,
    streamable_http_path="/mcp",
)

_original_streamable_http_app = mcp.streamable_http_app


def _streamable_http_app_with_cors(self: FastMCP):
    app = _original_streamable_http_app()

    async def _handle_options(request):
        requested_headers = request.headers.get("Access-Control-Request-Headers", "")
        allow_headers = requested_headers or "*"
        return Response(
            status_code=204,
            headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
                "Access-Control-Allow-Headers": allow_headers,
                "Access-Control-Max-Age": "600",
            },
        )

    app.router.routes.insert(
        0,
        Route(
            self.settings.streamable_http_path,
            _handle_options,
            methods=["OPTIONS"],
        ),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["MCP-Session-Id"],
    )
    return app


mcp.streamable_http_app = MethodType(_streamable_http_app_with_cors, mcp)


# Inspector 会读取该列表自动安装调试所需的三方依赖。
mcp.dependencies = [
    "langchain",
    "langchain-openai",
    "langgraph",
]


def _service(ctx: Context) -> ServiceContext:
    """从请求上下文里提取共享业务依赖。"""

    if hasattr(ctx, "fastmcp") and getattr(ctx.fastmcp, "settings", None):
        try:
            return ctx.fastmcp.app_context.service_context  # type: ignore[attr-defined]
        except AttributeError:
            pass
    if GLOBAL_SERVICE_CONTEXT is not None:
        return GLOBAL_SERVICE_CONTEXT
    raise RuntimeError("Service context is not available; lifespan may not be initialized.")


def _summary_to_dict(summary: StoredSummary) -> Dict[str, Any]:
    """将仓储层快照对象转换为 JSON 友好格式。"""

    return {
        "id": summary.id,
        "start": summary.start,
        "end": summary.end,
        "source": summary.source,
        "currency": summary.currency,
        "total_revenue": summary.total_revenue,
        "total_net_profit": summary.total_net_profit,
        "total_orders": summary.total_orders,
        "total_quantity": summary.total_quantity,
        "avg_profit_margin": summary.avg_profit_margin,
        "cost_coverage_percent": summary.cost_coverage_percent,
        "created_at": summary.created_at,
        "categories": [
            {
                "category": category.category,
                "revenue": category.revenue,
                "net_profit": category.net_profit,
                "profit_margin": category.profit_margin,
                "quantity": category.quantity,
                "refunded_quantity": category.refunded_quantity,
                "has_cost_data": category.has_cost_data,
            }
            for category in summary.categories
        ],
    }


@mcp.resource("profitability-dashboard://config", mime_type="application/json")
def read_configuration(ctx: Context) -> Dict[str, Any]:
    """返回当前利润看板配置，供客户端参考默认参数。

    Args:
        ctx (Context): FastMCP 请求上下文。

    Returns:
        Dict[str, Any]: 包含站点、基准货币、时间窗口与成本默认值的配置字典。
    """

    config = _service(ctx).config
    return {
        "marketplace": config.dashboard.marketplace,
        "base_currency": config.dashboard.base_currency,
        "default_window_days": config.dashboard.refresh_window_days,
        "top_n_products": config.dashboard.top_n_products,
        "materiality_threshold": config.dashboard.materiality_threshold,
        "advertising_percent": config.costs.advertising_percent,
        "fba_cost_percent": config.costs.fba_cost_percent,
        "fbm_cost_percent": config.costs.fbm_cost_percent,
        "refund_recovery_rate": config.costs.refund_recovery_rate,
        "storage_enabled": config.storage.enabled,
        "database_path": config.storage.db_path,
    }


@mcp.resource("profitability-dashboard://history/{limit}", mime_type="application/json")
def read_recent_history(
    ctx: Context,
    limit: int = 5,
) -> Dict[str, Any]:
    """读取最近的利润快照，当未启用持久化时返回提示。"""

    repository = _service(ctx).repository
    if not repository:
        return {"message": "Storage is disabled for this deployment."}
    summaries = repository.fetch_recent_summaries(limit=limit)
    return {"summaries": [_summary_to_dict(summary) for summary in summaries]}


@mcp.tool(name="fetch_transactions")
def tool_fetch_transactions(
    ctx: Context,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    marketplace: Optional[str] = None,
) -> FetchTransactionsResult:
    """获取指定时间窗口内的订单与退款交易记录。

    Args:
        ctx (Context): FastMCP 请求上下文。
        start (Optional[str]): 起始日期（ISO 字符串），未提供时会根据 window_days 计算。
        end (Optional[str]): 结束日期（ISO 字符串）。
        window_days (Optional[int]): 未提供 start/end 时使用的回溯天数。
        marketplace (Optional[str]): 站点代码，ALL 表示不过滤。

    Returns:
        Dict[str, Any]: 含有窗口、来源与交易列表的原始数据结构。
    """

    result = _fetch_transactions(
        _service(ctx),
        start=start,
        end=end,
        window_days=window_days,
        marketplace=marketplace,
    )
    return cast(FetchTransactionsResult, result)


@mcp.tool(name="compute_profitability")
def tool_compute_profitability(
    ctx: Context,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    marketplace: Optional[str] = None,
    transactions: Optional[List[TransactionPayload]] = None,
    source: Optional[str] = None,
    top_n: Optional[int] = None,
    levels: Optional[List[str]] = None,
) -> ComputeProfitabilityResult:
    """计算 SKU/商品/父体/类目四级利润汇总，启用存储时同时保存快照。

    Args:
        ctx (Context): FastMCP 请求上下文。
        start (Optional[str]): 起始日期。
        end (Optional[str]): 结束日期。
        window_days (Optional[int]): 回溯天数。
        marketplace (Optional[str]): 站点代码。
        transactions (Optional[List[TransactionPayload]]): 已获取的交易记录，缺省时自动取数。
        source (Optional[str]): 数据来源标识。
        top_n (Optional[int]): 每个层级返回的实体数量。
        levels (Optional[List[str]]): 需要返回的层级（sku/product/parent/category）。

    Returns:
        Dict[str, Any]: 利润报告。
    """

    result = _compute_profitability(
        _service(ctx),
        start=start,
        end=end,
        window_days=window_days,
        marketplace=marketplace,
        transactions=cast(Optional[List[Dict[str, Any]]], transactions),
        source=source,
        top_n=top_n,
        levels=levels,
    )
    return cast(ComputeProfitabilityResult, result)


@mcp.tool(name="compare_countries")
def tool_compare_countries(
    ctx: Context,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    product: Optional[str] = None,
    threshold: Optional[float] = None,
) -> CompareCountriesResult:
    """对比商品在各站点的利润率并给出最佳与最差国家。"""

    result = _compare_countries(
        _service(ctx),
        start=start,
        end=end,
        window_days=window_days,
        product=product,
        threshold=threshold,
    )
    return cast(CompareCountriesResult, result)


@mcp.tool(name="run_profitability_query")
def tool_run_profitability_query(
    ctx: Context,
    query: Optional[Dict[str, Any]] = None,
    template_id: Optional[str] = None,
) -> RunProfitabilityQueryResult:
    """执行声明式查询。

    Args:
        ctx (Context): FastMCP 请求上下文。
        query (Optional[Dict[str, Any]]): 查询结构，包含 metric、group_by、filters、date_range、sort、limit。
        template_id (Optional[str]): 预置模板 ID，提供时忽略 query。

    Returns:
        Dict[str, Any]: 排序截断后的结果与汇总。
    """

    result = _run_profitability_query(_service(ctx), query=query, template_id=template_id)
    return cast(RunProfitabilityQueryResult, result)


@mcp.tool(name="list_query_templates")
def tool_list_query_templates(ctx: Context) -> ListQueryTemplatesResult:
    """列出预置查询模板。"""

    return cast(ListQueryTemplatesResult, _list_query_templates())


@mcp.tool(name="export_pricing")
def tool_export_pricing(
    ctx: Context,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    marketplace: Optional[str] = None,
    bulk: bool = False,
    path: Optional[str] = None,
) -> ExportPricingResult:
    """导出按类目与履约方式划分的费用百分比结构。

    Args:
        ctx (Context): FastMCP 请求上下文。
        start (Optional[str]): 起始日期。
        end (Optional[str]): 结束日期。
        window_days (Optional[int]): 回溯天数。
        marketplace (Optional[str]): 站点代码，bulk 为 True 时忽略。
        bulk (bool): 是否按站点批量导出。
        path (Optional[str]): 可选的 JSON 输出路径。

    Returns:
        Dict[str, Any]: 导出数据，写文件时附带提示信息。
    """

    result = _export_pricing(
        _service(ctx),
        start=start,
        end=end,
        window_days=window_days,
        marketplace=marketplace,
        bulk=bulk,
        path=path,
    )
    return cast(ExportPricingResult, result)


@mcp.tool(name="generate_profitability_insights")
def tool_generate_profitability_insights(
    ctx: Context,
    start: Optional[str] = None,
    end: Optional[str] = None,
    window_days: Optional[int] = None,
    focus: Optional[str] = None,
) -> GenerateProfitabilityInsightsResult:
    """基于利润汇总生成自然语言洞察。"""

    result = _generate_profitability_insights(
        _service(ctx),
        start=start,
        end=end,
        window_days=window_days,
        focus=focus,
    )
    return cast(GenerateProfitabilityInsightsResult, result)


@mcp.tool(name="analyze_profitability_history")
def tool_analyze_profitability_history(
    ctx: Context,
    limit: int = 6,
    metrics: Optional[list[str]] = None,
) -> AnalyzeProfitabilityHistoryResult:
    """对比近几期利润快照，分析 revenue/net_profit/orders/quantity/margin 的趋势。"""

    result = _analyze_profitability_history(
        _service(ctx),
        limit=limit,
        metrics=metrics,
    )
    return cast(AnalyzeProfitabilityHistoryResult, result)


@mcp.tool(name="export_profitability_history")
def tool_export_profitability_history(
    ctx: Context,
    limit: int,
    path: str,
) -> ExportProfitabilityHistoryResult:
    """将利润快照历史导出为 CSV 文件。"""

    result = _export_profitability_history(
        _service(ctx),
        limit=limit,
        path=path,
    )
    return cast(ExportProfitabilityHistoryResult, result)


def main(argv: Optional[list[str]] = None) -> None:
    """命令行入口，支持选择传输方式与监听参数。"""

    parser = argparse.ArgumentParser(
        description="Run the Profitability Dashboard MCP server."
    )
    parser.add_argument(
        "transport",
        nargs="?",
        default="stdio",
        choices=["stdio", "sse", "streamable-http"],
        help="Transport mechanism to expose (default: stdio).",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Optional host binding for HTTP-based transports.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Optional port binding for HTTP-based transports.",
    )
    args = parser.parse_args(argv)

    logger.info("Starting MCP server transport=%s host=%s port=%s streamable_http_path=%s",
                args.transport, args.host or mcp.settings.host, args.port if args.port is not None else mcp.settings.port, getattr(mcp.settings, 'streamable_http_path', '(default)'))

    if args.host:
        mcp.settings.host = args.host
    if args.port is not None:
        mcp.settings.port = args.port

    mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
