"""Skill 抽象与具体技能实现的统一入口。

项目将所有对外暴露的“能力”（取数、利润汇总、国家对比、声明式查询、
定价导出、生成洞察、历史分析与导出 CSV）抽象为 Skill，便于：

- 在 LangGraph / LangChain / MCP 等不同 Agent 容器之间复用；
- 为后续扩展新的编排方式提供统一接口。
"""

from .base import Skill
from .profitability import (
    AnalyzeProfitabilityHistorySkill,
    CompareCountriesSkill,
    ComputeProfitabilitySkill,
    ExportPricingSkill,
    ExportProfitabilityHistorySkill,
    FetchTransactionsSkill,
    GenerateProfitabilityInsightsSkill,
    ListQueryTemplatesSkill,
    RunProfitabilityQuerySkill,
    build_profitability_skills,
)

__all__ = [
    "Skill",
    "FetchTransactionsSkill",
    "ComputeProfitabilitySkill",
    "CompareCountriesSkill",
    "RunProfitabilityQuerySkill",
    "ListQueryTemplatesSkill",
    "ExportPricingSkill",
    "GenerateProfitabilityInsightsSkill",
    "AnalyzeProfitabilityHistorySkill",
    "ExportProfitabilityHistorySkill",
    "build_profitability_skills",
]
