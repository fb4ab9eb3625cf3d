"""围绕利润分析场景的具体 Skill 实现。

这些 Skill 是对 ``services`` 层的薄封装，以统一接口暴露给 Agent / MCP。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .base import Skill
from ..services import (
    ServiceContext,
    analyze_profitability_history,
    compare_countries,
    compute_profitability,
    export_pricing,
    export_profitability_history,
    fetch_transactions,
    generate_profitability_insights,
    list_query_templates,
    run_profitability_query,
)


@dataclass
class _ContextBoundSkill(Skill):
    """带有 ServiceContext 依赖的技能基类。"""

    context: ServiceContext


@dataclass
class FetchTransactionsSkill(_ContextBoundSkill):
    """拉取指定时间窗口内的结算交易记录。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="fetch_transactions",
            description="拉取指定时间窗口内的订单与退款交易记录，可按站点过滤。",
            context=context,
        )

    def invoke(
        self,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        marketplace: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        return fetch_transactions(
            self.context,
            start=start,
            end=end,
            window_days=window_days,
            marketplace=marketplace,
        )


@dataclass
class ComputeProfitabilitySkill(_ContextBoundSkill):
    """汇总 SKU、商品、父体与类目四个层级的利润。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="compute_profitability",
            description="计算 SKU/商品/父体/类目四级利润汇总，未提供交易时自动取数。",
            context=context,
        )

    def invoke(
        self,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        marketplace: Optional[str] = None,
        transactions: Optional[List[Dict[str, Any]]] = None,
        source: Optional[str] = None,
        top_n: Optional[int] = None,
        levels: Optional[List[str]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        if transactions is not None and (start is None or end is None):
            raise RuntimeError("compute_profitability 传入交易记录时必须同时提供 start/end。")
        return compute_profitability(
            self.context,
            start=start,
            end=end,
            window_days=window_days,
            marketplace=marketplace,
            transactions=transactions,
            source=source,
            top_n=top_n,
            levels=levels,
        )


@dataclass
class CompareCountriesSkill(_ContextBoundSkill):
    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="compare_countries",
            description="对比同一商品在各站点的利润率，给出最佳与最差国家。",
            context=context,
        )

    def invoke(
        self,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        product: Optional[str] = None,
        threshold: Optional[float] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        return compare_countries(
            self.context,
            start=start,
            end=end,
            window_days=window_days,
            product=product,
            threshold=threshold,
        )


@dataclass
class RunProfitabilityQuerySkill(_ContextBoundSkill):
    """执行声明式查询或预置模板。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="run_profitability_query",
            description="按指标、分组维度、过滤条件与日期范围执行声明式查询，也可直接指定模板 ID。",
            context=context,
        )

    def invoke(
        self,
        *,
        query: Optional[Dict[str, Any]] = None,
        template_id: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        return run_profitability_query(self.context, query=query, template_id=template_id)


@dataclass
class ListQueryTemplatesSkill(_ContextBoundSkill):
    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="list_query_templates",
            description="列出可直接执行的预置查询模板。",
            context=context,
        )

    def invoke(self, **_: Any) -> Dict[str, Any]:
        return list_query_templates()


@dataclass
class ExportPricingSkill(_ContextBoundSkill):
    """生成供定价工具使用的费用结构导出。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="export_pricing",
            description="按类目与履约方式导出费用百分比结构，bulk=True 时按站点批量导出。",
            context=context,
        )

    def invoke(
        self,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        marketplace: Optional[str] = None,
        bulk: bool = False,
        path: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        return export_pricing(
            self.context,
            start=start,
            end=end,
            window_days=window_days,
            marketplace=marketplace,
            bulk=bulk,
            path=path,
        )


@dataclass
class GenerateProfitabilityInsightsSkill(_ContextBoundSkill):
    """基于利润汇总调用 LLM 生成结构化洞察。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="generate_profitability_insights",
            description="基于利润汇总调用 LLM 生成利润洞察与定价建议。",
            context=context,
        )

    def invoke(
        self,
        *,
        summary: Optional[Dict[str, Any]] = None,
        focus: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        window_days: Optional[int] = None,
        top_n: Optional[int] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        return generate_profitability_insights(
            self.context,
            summary=summary,
            focus=focus,
            start=start,
            end=end,
            window_days=window_days,
            top_n=top_n,
        )


@dataclass
class AnalyzeProfitabilityHistorySkill(_ContextBoundSkill):
    """分析历史利润快照，计算趋势与环比同比。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="analyze_profitability_history",
            description="基于历史利润快照计算趋势、环比和同比指标。",
            context=context,
        )

    def invoke(
        self,
        *,
        limit: int = 6,
        metrics: Optional[List[str]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        return analyze_profitability_history(self.context, limit=limit, metrics=metrics)


@dataclass
class ExportProfitabilityHistorySkill(_ContextBoundSkill):
    """将历史利润快照导出为 CSV 文件。"""

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(
            name="export_profitability_history",
            description="导出最近 N 期利润快照到受信任目录下的 CSV 文件。",
            context=context,
        )

    def invoke(
        self,
        *,
        limit: int,
        path: str,
        **_: Any,
    ) -> Dict[str, Any]:
        return export_profitability_history(self.context, limit=limit, path=path)


def build_profitability_skills(context: ServiceContext) -> List[Skill]:
    """基于给定的 ``ServiceContext`` 构建本项目所有核心技能列表。"""
    return [
        FetchTransactionsSkill(context),
        ComputeProfitabilitySkill(context),
        CompareCountriesSkill(context),
        RunProfitabilityQuerySkill(context),
        ListQueryTemplatesSkill(context),
        ExportPricingSkill(context),
        GenerateProfitabilityInsightsSkill(context),
        AnalyzeProfitabilityHistorySkill(context),
        ExportProfitabilityHistorySkill(context),
    ]
