"""基于 LangGraph 的利润分析智能体，封装工具调用链路并可通过 MCP 桥接远程服务。"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Optional

from langchain.tools import tool
from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage
from langgraph.prebuilt import create_react_agent

from .config import AppConfig
from .mcp_bridge import call_mcp_tool
from .services import (
    ServiceContext,
    analyze_profitability_history,
    compare_countries,
    compute_profitability,
    create_service_context,
    export_pricing,
    export_profitability_history,
    generate_profitability_insights,
    list_query_templates,
    run_profitability_query,
)

# 标记是否通过 stdio MCP 桥调用工具；默认仅使用本地实现。
USE_MCP_BRIDGE = os.getenv("USE_MCP_BRIDGE", "0").lower() in {"1", "true", "yes"}
logger = logging.getLogger(__name__)


def _dispatch(tool_name: str, payload: Dict[str, Any], local: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    """
    功能说明:
        桥接模式下把调用转发给 MCP 服务，否则直接执行本地服务函数。
    参数:
        tool_name (str): MCP 侧注册的工具名称。
        payload (Dict[str, Any]): 发送给 MCP 工具的参数字典。
        local (Callable[[], Dict[str, Any]]): 本地执行函数。
    返回:
        Dict[str, Any]: 工具结果。
    """
    if not USE_MCP_BRIDGE:
        return local()
    logger.debug("调用 MCP 工具 %s，参数：%s", tool_name, payload)
    remote = call_mcp_tool(tool_name, payload)
    if not isinstance(remote, dict):
        raise RuntimeError(f"{tool_name} via MCP returned an invalid payload")
    return remote


def build_profitability_agent(
    config: AppConfig,
    *,
    context: Optional[ServiceContext] = None,
) -> tuple:
    """
    功能说明:
        构建具备利润分析能力的 LangGraph Agent，并注册所有领域工具。
    参数:
        config (AppConfig): 全局配置。
        context (Optional[ServiceContext]): 预构建的服务上下文，可避免重复初始化。
    返回:
        tuple: `(graph, tools)`，其中 `graph` 为已组装好的智能体，`tools` 为工具列表。
    """
    if not config.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY 未配置，无法构建智能体。")
    context = context or create_service_context(config)
    llm = ChatOpenAI(
        api_key=config.openai_api_key,
        model=config.openai_model,
        temperature=config.openai_temperature,
    )

    @tool("compute_profitability")
    def compute_profitability_tool(
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        marketplace: Optional[str] = None,
        top_n: Optional[int] = None,
        levels: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        函数说明:
            计算 SKU/商品/父体/类目四级利润汇总。
        参数:
            start (Optional[str]): ISO 8601 起始日期，默认使用配置中的最近窗口。
            end (Optional[str]): ISO 8601 结束日期。
            window_days (Optional[int]): 未提供时间范围时使用的天数跨度。
            marketplace (Optional[str]): 站点代码，ALL 表示全部站点。
            top_n (Optional[int]): 每个层级返回的实体数量。
            levels (Optional[List[str]]): 需要的层级，可选 sku/product/parent/category。
        返回:
            Dict[str, Any]: 利润报告。
        """
        payload = {
            "start": start,
            "end": end,
            "window_days": window_days,
            "marketplace": marketplace,
            "top_n": top_n,
            "levels": levels,
        }
        return _dispatch("compute_profitability", payload, lambda: compute_profitability(context, **payload))

    @tool("compare_countries")
    def compare_countries_tool(
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        product: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        函数说明:
            对比商品在各站点的利润率，返回最佳与最差国家。
        参数:
            product (Optional[str]): 商品名称，缺省时返回全部商品。
            threshold (Optional[float]): 参与排名的最低销售额。
        返回:
            Dict[str, Any]: 国家对比结果。
        """
        payload = {
            "start": start,
            "end": end,
            "window_days": window_days,
            "product": product,
            "threshold": threshold,
        }
        return _dispatch("compare_countries", payload, lambda: compare_countries(context, **payload))

    @tool("run_profitability_query")
    def run_profitability_query_tool(
        query: Optional[Dict[str, Any]] = None,
        template_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        函数说明:
            执行声明式查询。query 示例：
            {"metric": "profit", "group_by": "product", "filters": {"marketplaces": ["DE"]},
             "date_range": {"preset": "last3months"}, "sort": "asc", "limit": 10}
        参数:
            query (Optional[Dict[str, Any]]): 查询结构。
            template_id (Optional[str]): 预置模板 ID，可先调用 list_query_templates 查看。
        返回:
            Dict[str, Any]: 查询结果与汇总。
        """
        payload = {"query": query, "template_id": template_id}
        return _dispatch("run_profitability_query", payload, lambda: run_profitability_query(context, **payload))

    @tool("list_query_templates")
    def list_query_templates_tool() -> Dict[str, Any]:
        """列出可直接执行的预置查询模板。"""
        return _dispatch("list_query_templates", {}, list_query_templates)

    @tool("export_pricing")
    def export_pricing_tool(
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        marketplace: Optional[str] = None,
        bulk: bool = False,
        path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        函数说明:
            导出按类目与履约方式划分的费用百分比结构，供定价工具使用。
        参数:
            marketplace (Optional[str]): 站点代码。
            bulk (bool): 是否按站点批量导出。
            path (Optional[str]): 可选的 JSON 输出路径。
        返回:
            Dict[str, Any]: 导出数据。
        """
        payload = {
            "start": start,
            "end": end,
            "window_days": window_days,
            "marketplace": marketplace,
            "bulk": bulk,
            "path": path,
        }
        return _dispatch("export_pricing", payload, lambda: export_pricing(context, **payload))

    @tool("generate_profitability_insights")
    def generate_profitability_insights_tool(
        focus: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        函数说明:
            自动汇总利润并生成洞察报告。
        参数:
            focus (Optional[str]): 洞察关注的重点，例如 `亏损商品`。
        返回:
            Dict[str, Any]: 洞察文本及所用的利润摘要。
        """
        payload = {"focus": focus, "start": start, "end": end, "window_days": window_days}
        return _dispatch(
            "generate_profitability_insights",
            payload,
            lambda: generate_profitability_insights(context, **payload),
        )

    @tool("analyze_profitability_history")
    def analyze_profitability_history_tool(
        limit: int = 6,
        metrics: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        函数说明:
            汇总历史利润快照，生成环比、同比与时间序列。
        参数:
            limit (int): 分析包含的历史期数。
            metrics (Optional[List[str]]): revenue/net_profit/orders/quantity/margin 中的若干项。
        返回:
            Dict[str, Any]: 历史趋势。
        """
        payload = {"limit": limit, "metrics": metrics}
        return _dispatch(
            "analyze_profitability_history",
            payload,
            lambda: analyze_profitability_history(context, **payload),
        )

    @tool("export_profitability_history")
    def export_profitability_history_tool(limit: int, path: str) -> Dict[str, Any]:
        """导出最近 limit 期利润快照到 path 指定的 CSV 文件。"""
        payload = {"limit": limit, "path": path}
        return _dispatch(
            "export_profitability_history",
            payload,
            lambda: export_profitability_history(context, **payload),
        )

    tools = [
        compute_profitability_tool,
        compare_countries_tool,
        run_profitability_query_tool,
        list_query_templates_tool,
        export_pricing_tool,
        generate_profitability_insights_tool,
        analyze_profitability_history_tool,
        export_profitability_history_tool,
    ]
    graph = create_react_agent(llm, tools=tools)
    return graph, tools


def run_agent_demo(config: AppConfig, query: str) -> Dict[str, Any]:
    """
    功能说明:
        供脚本快速体验完整 Agent 流程，执行一次问答请求。
    参数:
        config (AppConfig): 当前运行所需的配置集合。
        query (str): 用户提出的问题或分析意图。
    返回:
        Dict[str, Any]: LangGraph 执行后的完整消息与工具调用轨迹。
    """
    graph, _ = build_profitability_agent(config)
    return graph.invoke(
        {
            "messages": [
                SystemMessage(
                    content=(
                        "你是跨境电商利润分析助手。先用 compute_profitability 或 run_profitability_query 取得数据，"
                        "需要跨国对比时调用 compare_countries，最后输出结构化的利润日报，"
                        "缺少成本数据的商品需要单独标注。"
                    )
                ),
                HumanMessage(content=query),
            ]
        }
    )
