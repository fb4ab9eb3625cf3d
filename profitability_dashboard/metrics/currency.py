"""把各站点本币金额换算为统一基准货币的汇率工具。"""

from __future__ import annotations

import bisect
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..data_sources.base import Marketplace

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"

# 以 USD 为基准的兜底汇率矩阵：FALLBACK_RATES[源][目标] 表示 1 单位源货币可兑换的目标货币数量。
FALLBACK_RATES: Dict[str, Dict[str, float]] = {
    "USD": {"USD": 1, "EUR": 0.95, "GBP": 0.79, "CAD": 1.40, "AUD": 1.55, "AED": 3.67, "SAR": 3.75, "TRY": 34.5},
    "EUR": {"USD": 1.05, "EUR": 1, "GBP": 0.83, "CAD": 1.47, "AUD": 1.63, "AED": 3.86, "SAR": 3.95, "TRY": 36.3},
    "GBP": {"USD": 1.27, "EUR": 1.20, "GBP": 1, "CAD": 1.77, "AUD": 1.96, "AED": 4.65, "SAR": 4.75, "TRY": 43.7},
    "CAD": {"USD": 0.71, "EUR": 0.68, "GBP": 0.56, "CAD": 1, "AUD": 1.11, "AED": 2.62, "SAR": 2.68, "TRY": 24.6},
    "AUD": {"USD": 0.65, "EUR": 0.61, "GBP": 0.51, "CAD": 0.90, "AUD": 1, "AED": 2.37, "SAR": 2.42, "TRY": 22.3},
    "AED": {"USD": 0.27, "EUR": 0.26, "GBP": 0.22, "CAD": 0.38, "AUD": 0.42, "AED": 1, "SAR": 1.02, "TRY": 9.4},
    "SAR": {"USD": 0.27, "EUR": 0.25, "GBP": 0.21, "CAD": 0.37, "AUD": 0.41, "AED": 0.98, "SAR": 1, "TRY": 9.2},
    "TRY": {"USD": 0.029, "EUR": 0.028, "GBP": 0.023, "CAD": 0.041, "AUD": 0.045, "AED": 0.106, "SAR": 0.109, "TRY": 1},
}

# AED 与 SAR 对美元实行固定汇率。
USD_PEGS: Dict[str, float] = {"AED": 3.6725, "SAR": 3.75}

MARKETPLACE_CURRENCIES: Dict[Marketplace, str] = {
    Marketplace.US: "USD",
    Marketplace.UK: "GBP",
    Marketplace.DE: "EUR",
    Marketplace.FR: "EUR",
    Marketplace.IT: "EUR",
    Marketplace.ES: "EUR",
    Marketplace.CA: "CAD",
    Marketplace.AU: "AUD",
    Marketplace.AE: "AED",
    Marketplace.SA: "SAR",
}


class ConversionError(ValueError):
    """汇率表中不存在对应货币对时抛出。"""

    def __init__(self, source: str, target: str) -> None:
        super().__init__(f"缺少汇率: {source} -> {target}")
        self.source = source
        self.target = target


@dataclass(frozen=True)
class ExchangeRateTable:
    """
    不可变的汇率矩阵。

    属性:
        rates (Mapping[str, Mapping[str, float]]): 源货币到目标货币的汇率。
        as_of (Optional[date]): 汇率生效日期，兜底表为空。
    """

    rates: Mapping[str, Mapping[str, float]] = field(default_factory=lambda: FALLBACK_RATES)
    as_of: Optional[date] = None

    def rate(self, source: str, target: str) -> float:
        """
        功能说明:
            查询 1 单位源货币折合多少目标货币。
        参数:
            source (str): 源货币代码。
            target (str): 目标货币代码。
        返回:
            float: 汇率。
        """
        source = (source or "").upper()
        target = (target or "").upper()
        if source == target and source in self.rates:
            return 1.0
        value = self.rates.get(source, {}).get(target)
        if value is None or value <= 0:
            raise ConversionError(source, target)
        return float(value)

    def convert(self, amount: float, source: str, target: str = BASE_CURRENCY) -> float:
        if amount == 0:
            # 零金额也要校验货币对，避免未知货币被悄悄放行。
            self.rate(source, target)
            return 0.0
        return amount * self.rate(source, target)


DEFAULT_RATES = ExchangeRateTable()


def build_rate_matrix(usd_rates: Mapping[str, float], as_of: Optional[date] = None) -> ExchangeRateTable:
    """
    功能说明:
        以 "1 USD 可兑换多少该货币" 的报价生成完整的交叉汇率矩阵。
    参数:
        usd_rates (Mapping[str, float]): 各货币兑美元报价，缺失的 AED/SAR 自动补上固定汇率。
        as_of (Optional[date]): 报价日期。
    返回:
        ExchangeRateTable: 交叉汇率矩阵。
    """
    quotes: Dict[str, float] = {"USD": 1.0}
    quotes.update(USD_PEGS)
    for code, value in usd_rates.items():
        if value and value > 0:
            quotes[code.upper()] = float(value)

    matrix: Dict[str, Dict[str, float]] = {}
    for source, source_quote in quotes.items():
        row = matrix.setdefault(source, {})
        for target, target_quote in quotes.items():
            row[target] = 1.0 if source == target else target_quote / source_quote
    return ExchangeRateTable(rates=matrix, as_of=as_of)


class RateHistory:
    """按日期分桶的汇率表集合，交易日取不晚于该日的最近一张表。"""

    def __init__(self, tables: List[ExchangeRateTable], fallback: ExchangeRateTable = DEFAULT_RATES) -> None:
        dated = sorted((table for table in tables if table.as_of is not None), key=lambda table: table.as_of)
        self._days: List[date] = [table.as_of for table in dated]
        self._tables: List[ExchangeRateTable] = dated
        self._fallback = fallback

    def for_date(self, day: date) -> ExchangeRateTable:
        index = bisect.bisect_right(self._days, day)
        if index == 0:
            return self._tables[0] if self._tables else self._fallback
        return self._tables[index - 1]


def load_rate_history(path: "str | Path") -> RateHistory:
    """
    功能说明:
        读取按日期分桶的美元报价文件并生成 RateHistory。
        文件格式为 ``{"2024-01-01": {"EUR": 0.92, "GBP": 0.79}, ...}``。
    参数:
        path (str | Path): JSON 文件路径。
    返回:
        RateHistory: 每个日期一张交叉汇率矩阵。
    异常:
        ValueError: 文件结构或日期格式非法时抛出。
    """
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"汇率文件必须是以日期为键的对象: {path}")
    tables = []
    for day, quotes in payload.items():
        if not isinstance(quotes, dict):
            raise ValueError(f"{day} 的汇率报价必须是对象")
        tables.append(build_rate_matrix(quotes, as_of=date.fromisoformat(day)))
    logger.info("已加载 %d 个日期的汇率表: %s", len(tables), path)
    return RateHistory(tables)


def currency_for_marketplace(marketplace: Marketplace) -> str:
    """
    功能说明:
        返回站点的本币，未知站点抛出 ConversionError。
    参数:
        marketplace (Marketplace): 站点。
    返回:
        str: 货币代码。
    """
    try:
        return MARKETPLACE_CURRENCIES[marketplace]
    except KeyError:
        raise ConversionError(str(marketplace.value), BASE_CURRENCY) from None


def normalize(
    amount: float,
    source_currency: str,
    target_currency: str = BASE_CURRENCY,
    rates: Optional[ExchangeRateTable] = None,
) -> float:
    """
    功能说明:
        将金额从源货币换算为目标货币，汇率未知时抛出 ConversionError。
    参数:
        amount (float): 原始金额。
        source_currency (str): 源货币代码。
        target_currency (str): 目标货币代码，默认 USD。
        rates (Optional[ExchangeRateTable]): 使用的汇率表，默认为兜底表。
    返回:
        float: 换算后的金额。
    """
    table = rates or DEFAULT_RATES
    return table.convert(amount, source_currency, target_currency)


def resolve_rates(rates: "ExchangeRateTable | RateHistory | None", day: date) -> ExchangeRateTable:
    """返回某交易日应使用的汇率表。"""
    if rates is None:
        return DEFAULT_RATES
    if isinstance(rates, RateHistory):
        return rates.for_date(day)
    return rates
