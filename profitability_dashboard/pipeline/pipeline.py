from __future__ import annotations

from datetime import date
from typing import List, Optional

from ..config import AppConfig
from ..data_sources.base import Marketplace, Transaction, TransactionSource
from ..metrics.calculations import ProfitabilityReport, build_profitability_report
from ..metrics.costs import CostConfiguration
from ..metrics.currency import ExchangeRateTable, RateHistory
from ..utils.dates import recent_period


class ProfitabilityPipeline:
    """调度交易采集、成本配置装载与利润汇总的主流程。"""

    def __init__(
        self,
        *,
        config: AppConfig,
        data_source: TransactionSource,
        rates: "ExchangeRateTable | RateHistory | None" = None,
    ) -> None:
        """初始化管道。

        参数:
            config: 全局配置对象，提供默认窗口、基准货币与成本默认值。
            data_source: 实际的数据源实现（可为真实或模拟）。
            rates: 汇率表，缺省时使用内置兜底汇率。
        """
        self._config = config
        self._data_source = data_source
        self._rates = rates

    def cost_configuration(self) -> CostConfiguration:
        return self._data_source.fetch_cost_configuration(self._config.costs)

    def fetch(self, start: date, end: date, marketplace: Optional[str] = None) -> List[Transaction]:
        """拉取交易并按站点过滤，ALL 或空值表示不过滤。"""
        transactions = self._data_source.fetch_transactions(start, end)
        code = (marketplace or self._config.dashboard.marketplace or "ALL").upper()
        if code == "ALL":
            return transactions
        target = Marketplace.parse(code)
        return [transaction for transaction in transactions if transaction.marketplace is target]

    def run(
        self,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        marketplace: Optional[str] = None,
    ) -> ProfitabilityReport:
        """执行一次汇总。

        参数:
            start: 自定义统计开始日期，未提供则使用配置窗口。
            end: 自定义统计结束日期。
            marketplace: 覆盖默认的站点过滤。

        返回:
            ProfitabilityReport，包含四个层级的利润实体与国家对比。
        """
        if start is None or end is None:
            window_days = self._config.dashboard.refresh_window_days
            start, end = recent_period(window_days)

        transactions = self.fetch(start, end, marketplace)
        return build_profitability_report(
            source_name=self._data_source.name,
            start=start,
            end=end,
            transactions=transactions,
            config=self.cost_configuration(),
            base_currency=self._config.dashboard.base_currency,
            rates=self._rates,
            materiality_threshold=self._config.dashboard.materiality_threshold,
        )
