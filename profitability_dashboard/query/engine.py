"""声明式查询引擎：按维度分组交易记录，计算单一指标并排序截断。"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from ..data_sources.base import FulfillmentType, Marketplace, Transaction, TransactionType
from ..metrics.costs import UNCATEGORIZED, CostConfiguration, resolve_category
from ..metrics.currency import (
    BASE_CURRENCY,
    ConversionError,
    ExchangeRateTable,
    RateHistory,
    currency_for_marketplace,
    resolve_rates,
)
from ..utils.dates import parse_iso_date, resolve_preset

logger = logging.getLogger(__name__)

LABEL_MAX_LENGTH = 50
UNKNOWN = "Unknown"
UNKNOWN_SKU = "Unknown SKU"
UNKNOWN_PRODUCT = "Unknown Product"


class InvalidQueryError(ValueError):
    """查询结构不合法时抛出，查询不会被执行。"""


class Metric(str, Enum):
    REVENUE = "revenue"
    PROFIT = "profit"
    ORDERS = "orders"
    QUANTITY = "quantity"
    REFUND_RATE = "refundRate"
    AVG_ORDER_VALUE = "avgOrderValue"
    SELLING_FEES = "sellingFees"
    FBA_FEES = "fbaFees"


class GroupBy(str, Enum):
    COUNTRY = "country"
    CATEGORY = "category"
    SKU = "sku"
    PRODUCT = "product"
    FULFILLMENT = "fulfillment"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


# 每个分组维度支持的指标。
SUPPORTED_METRICS: Dict[GroupBy, frozenset] = {group_by: frozenset(Metric) for group_by in GroupBy}


@dataclass(frozen=True)
class QueryFilters:
    """
    查询过滤条件，全部条件为 AND 关系。

    属性:
        marketplaces (Tuple[Marketplace, ...]): 站点白名单，为空表示不限。
        fulfillment (Optional[FulfillmentType]): 履约方式。
        category (Optional[str]): 类目。
    """

    marketplaces: Tuple[Marketplace, ...] = ()
    fulfillment: Optional[FulfillmentType] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class DateRangeSpec:
    """
    日期范围：预设名称或自定义起止日期。

    属性:
        preset (str): 预设名称，custom 表示使用 start/end。
        start (Optional[date]): 自定义开始日期。
        end (Optional[date]): 自定义结束日期。
    """

    preset: str = "last30days"
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass(frozen=True)
class QuerySpec:
    """
    一次查询的完整描述。

    属性:
        metric (Metric): 需要计算的指标。
        group_by (GroupBy): 分组维度。
        filters (QueryFilters): 过滤条件。
        date_range (DateRangeSpec): 日期范围。
        sort (SortOrder): 排序方向。
        limit (int): 返回条数上限。
    """

    metric: Metric
    group_by: GroupBy
    filters: QueryFilters = field(default_factory=QueryFilters)
    date_range: DateRangeSpec = field(default_factory=DateRangeSpec)
    sort: SortOrder = SortOrder.DESC
    limit: int = 10

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QuerySpec":
        """
        功能说明:
            从 JSON 风格的字典构建查询，字段名兼容 groupBy/dateRange 写法。
        参数:
            payload (Mapping[str, Any]): 查询字典。
        返回:
            QuerySpec: 解析后的查询。
        异常:
            InvalidQueryError: 指标、维度、排序、过滤条件或日期格式非法时抛出。
        """
        filters_raw = payload.get("filters") or {}
        if not isinstance(filters_raw, Mapping):
            raise InvalidQueryError(f"filters 必须为对象: {filters_raw!r}")
        marketplaces_raw = filters_raw.get("marketplaces") or filters_raw.get("marketplace") or ()
        if isinstance(marketplaces_raw, str):
            marketplaces_raw = [marketplaces_raw]
        if not isinstance(marketplaces_raw, (list, tuple)):
            raise InvalidQueryError(f"marketplaces 必须为站点代码列表: {marketplaces_raw!r}")
        marketplaces = []
        for code in marketplaces_raw:
            marketplace = Marketplace.parse(str(code))
            if marketplace is Marketplace.UNKNOWN:
                raise InvalidQueryError(f"不支持的站点过滤: {code}")
            marketplaces.append(marketplace)
        fulfillment_raw = filters_raw.get("fulfillment")
        fulfillment = None
        if fulfillment_raw and str(fulfillment_raw).lower() not in {"all", "both"}:
            fulfillment = FulfillmentType.parse(str(fulfillment_raw))
            if fulfillment is FulfillmentType.UNKNOWN:
                raise InvalidQueryError(f"不支持的履约方式过滤: {fulfillment_raw}")
        category_raw = filters_raw.get("category")
        if category_raw is not None and not isinstance(category_raw, str):
            raise InvalidQueryError(f"category 必须为字符串: {category_raw!r}")

        range_raw = payload.get("date_range") or payload.get("dateRange") or {}
        if isinstance(range_raw, str):
            range_raw = {"preset": range_raw}
        if not isinstance(range_raw, Mapping):
            raise InvalidQueryError(f"date_range 必须为对象或预设名: {range_raw!r}")
        start = _parse_range_date(range_raw.get("start"), "start")
        end = _parse_range_date(range_raw.get("end"), "end")

        try:
            limit = int(payload.get("limit", 10))
        except (TypeError, ValueError) as exc:
            raise InvalidQueryError(f"limit 必须为整数: {payload.get('limit')}") from exc

        return cls(
            metric=_parse_enum(Metric, payload.get("metric"), "metric"),
            group_by=_parse_enum(GroupBy, payload.get("group_by") or payload.get("groupBy"), "group_by"),
            filters=QueryFilters(
                marketplaces=tuple(marketplaces),
                fulfillment=fulfillment,
                category=(category_raw or "").strip() or None,
            ),
            date_range=DateRangeSpec(preset=range_raw.get("preset") or "last30days", start=start, end=end),
            sort=_parse_enum(SortOrder, payload.get("sort") or "desc", "sort"),
            limit=limit,
        )


@dataclass(frozen=True)
class QueryResultItem:
    key: str
    label: str
    value: float
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class QuerySummary:
    """
    查询结果汇总，total 只统计实际返回的条目。

    属性:
        total (float): 返回条目指标值之和。
        count (int): 返回条目数。
        start (date): 解析后的开始日期。
        end (date): 解析后的结束日期。
        matched_rows (int): 通过过滤的交易行数。
        conversion_failures (int): 因缺少汇率被排除的行数。
        missing_cost_rows (int): 缺少成本数据、按零成本计入利润的订单行数。
    """

    total: float
    count: int
    start: date
    end: date
    matched_rows: int = 0
    conversion_failures: int = 0
    missing_cost_rows: int = 0


@dataclass(frozen=True)
class QueryResults:
    spec: QuerySpec
    items: Tuple[QueryResultItem, ...]
    summary: QuerySummary


class _GroupAccumulator:
    def __init__(self, key: str, label: str) -> None:
        self.key = key
        self.label = label
        self.revenue: List[float] = []
        self.selling_fees: List[float] = []
        self.fba_fees: List[float] = []
        self.cost: List[float] = []
        self.quantity = 0
        self.order_ids: Set[str] = set()
        self.refund_order_ids: Set[str] = set()
        self.skus: Set[str] = set()
        self.categories: Set[str] = set()
        self.marketplaces: Set[str] = set()

    def metrics(self) -> Dict[str, float]:
        revenue = math.fsum(self.revenue)
        selling_fees = math.fsum(self.selling_fees)
        fba_fees = math.fsum(self.fba_fees)
        cost = math.fsum(self.cost)
        orders = len(self.order_ids)
        refund_rate = min(len(self.refund_order_ids) / orders * 100, 100.0) if orders else 0.0
        return {
            Metric.REVENUE.value: revenue,
            Metric.PROFIT.value: revenue - selling_fees - fba_fees - cost,
            Metric.ORDERS.value: float(orders),
            Metric.QUANTITY.value: float(self.quantity),
            Metric.REFUND_RATE.value: refund_rate,
            Metric.AVG_ORDER_VALUE.value: revenue / orders if orders else 0.0,
            Metric.SELLING_FEES.value: selling_fees,
            Metric.FBA_FEES.value: fba_fees,
        }


def validate_spec(spec: QuerySpec) -> None:
    """校验查询结构，非法时抛出 InvalidQueryError。"""
    if not isinstance(spec.metric, Metric):
        raise InvalidQueryError(f"不支持的指标: {spec.metric!r}")
    if not isinstance(spec.group_by, GroupBy):
        raise InvalidQueryError(f"不支持的分组维度: {spec.group_by!r}")
    if spec.metric not in SUPPORTED_METRICS[spec.group_by]:
        raise InvalidQueryError(f"维度 {spec.group_by.value} 不支持指标 {spec.metric.value}")
    if not isinstance(spec.sort, SortOrder):
        raise InvalidQueryError(f"不支持的排序方向: {spec.sort!r}")
    if not isinstance(spec.limit, int) or spec.limit <= 0:
        raise InvalidQueryError(f"limit 必须为正整数: {spec.limit!r}")
    date_range = spec.date_range
    if (date_range.start is None) != (date_range.end is None):
        raise InvalidQueryError("自定义日期范围必须同时提供开始与结束日期")
    if date_range.start is not None and date_range.start > date_range.end:
        raise InvalidQueryError(f"开始日期 {date_range.start} 晚于结束日期 {date_range.end}")


def resolve_date_range(date_range: DateRangeSpec, today: Optional[date] = None) -> Tuple[date, date]:
    """
    功能说明:
        解析日期范围：custom 且提供了起止日期时直接使用，否则按预设解析，未知预设回退到最近 30 天。
    参数:
        date_range (DateRangeSpec): 日期范围描述。
        today (Optional[date]): 参考日期。
    返回:
        Tuple[date, date]: (start, end)。
    """
    if date_range.preset.lower() == "custom" and date_range.start and date_range.end:
        return date_range.start, date_range.end
    return resolve_preset(date_range.preset, today)


def group_key(transaction: Transaction, group_by: GroupBy) -> Tuple[str, str]:
    """返回交易所属分组的 (key, label)，缺失字段落入 Unknown/Uncategorized 分组。"""
    if group_by is GroupBy.COUNTRY:
        code = transaction.marketplace.value if transaction.marketplace is not Marketplace.UNKNOWN else UNKNOWN
        return code, code
    if group_by is GroupBy.CATEGORY:
        category = transaction.category.strip() if transaction.category else ""
        category = category or UNCATEGORIZED
        return category, category
    if group_by is GroupBy.SKU:
        sku = transaction.sku or UNKNOWN_SKU
        return sku, sku
    if group_by is GroupBy.PRODUCT:
        key = transaction.sku or UNKNOWN_SKU
        label = transaction.product_name or transaction.sku or UNKNOWN_PRODUCT
        if len(label) > LABEL_MAX_LENGTH:
            label = label[:LABEL_MAX_LENGTH] + "..."
        return key, label
    value = transaction.fulfillment.value
    return value, value


def _matches(transaction: Transaction, filters: QueryFilters, start: date, end: date) -> bool:
    if not start <= transaction.day <= end:
        return False
    if filters.marketplaces and transaction.marketplace not in filters.marketplaces:
        return False
    if filters.fulfillment is not None and transaction.fulfillment is not filters.fulfillment:
        return False
    if filters.category and (transaction.category or "").strip() != filters.category:
        return False
    return True


def execute(
    transactions: Iterable[Transaction],
    spec: QuerySpec,
    *,
    config: Optional[CostConfiguration] = None,
    base_currency: str = BASE_CURRENCY,
    rates: "ExchangeRateTable | RateHistory | None" = None,
    today: Optional[date] = None,
) -> QueryResults:
    """
    功能说明:
        执行声明式查询：解析日期、过滤、分组、计算单一指标、排序并截断。
        summary.total 只累计返回的条目；空结果返回空列表与 0 合计。
    参数:
        transactions (Iterable[Transaction]): 交易记录。
        spec (QuerySpec): 查询描述。
        config (Optional[CostConfiguration]): 成本配置，用于计算利润中的商品成本。
        base_currency (str): 基准货币。
        rates (ExchangeRateTable | RateHistory | None): 汇率表。
        today (Optional[date]): 解析日期预设时的参考日期。
    返回:
        QueryResults: 排序并截断后的查询结果。
    异常:
        InvalidQueryError: 查询结构不合法时抛出。
    """
    validate_spec(spec)
    start, end = resolve_date_range(spec.date_range, today)

    groups: Dict[str, _GroupAccumulator] = {}
    matched_rows = 0
    conversion_failures = 0
    missing_cost_rows = 0

    for transaction in transactions:
        if transaction.type is TransactionType.OTHER:
            continue
        if not _matches(transaction, spec.filters, start, end):
            continue
        table = resolve_rates(rates, transaction.day)
        try:
            factor = table.rate(currency_for_marketplace(transaction.marketplace), base_currency)
            unit_cost = None
            if config is not None and transaction.type is TransactionType.ORDER:
                raw_cost = config.unit_cost(transaction.sku, resolve_category(transaction.sku, transaction.category))
                if raw_cost is not None:
                    unit_cost = table.convert(raw_cost, config.cost_currency, base_currency)
        except ConversionError as exc:
            conversion_failures += 1
            logger.warning("查询跳过无法换算的交易 %s: %s", transaction.order_id, exc)
            continue

        matched_rows += 1
        key, label = group_key(transaction, spec.group_by)
        group = groups.get(key)
        if group is None:
            group = groups[key] = _GroupAccumulator(key, label)
        elif label < group.label:
            group.label = label
        if transaction.sku:
            group.skus.add(transaction.sku)
        group.categories.add(resolve_category(transaction.sku, transaction.category))
        group.marketplaces.add(transaction.marketplace.value)

        if transaction.type is TransactionType.REFUND:
            if transaction.order_id:
                group.refund_order_ids.add(transaction.order_id)
            continue

        quantity = abs(transaction.quantity)
        group.revenue.append((transaction.product_sales - abs(transaction.promotional_rebates)) * factor)
        group.selling_fees.append(abs(transaction.selling_fees) * factor)
        group.fba_fees.append(abs(transaction.fba_fees) * factor)
        if unit_cost is None:
            missing_cost_rows += 1
        else:
            group.cost.append(unit_cost * quantity)
        group.quantity += quantity
        if transaction.order_id:
            group.order_ids.add(transaction.order_id)

    metric_name = spec.metric.value
    items: List[QueryResultItem] = []
    for group in groups.values():
        values = group.metrics()
        items.append(
            QueryResultItem(
                key=group.key,
                label=group.label,
                value=values[metric_name],
                metadata={
                    "sku": min(group.skus) if group.skus else None,
                    "category": min(group.categories),
                    "marketplace": min(group.marketplaces),
                    "quantity": group.quantity,
                    "orders": len(group.order_ids),
                    "revenue": values[Metric.REVENUE.value],
                    "profit": values[Metric.PROFIT.value],
                    "refund_rate": values[Metric.REFUND_RATE.value],
                },
            )
        )

    if spec.sort is SortOrder.ASC:
        items.sort(key=lambda item: (item.value, item.key))
    else:
        items.sort(key=lambda item: (-item.value, item.key))
    limited = tuple(items[: spec.limit])

    return QueryResults(
        spec=spec,
        items=limited,
        summary=QuerySummary(
            total=math.fsum(item.value for item in limited),
            count=len(limited),
            start=start,
            end=end,
            matched_rows=matched_rows,
            conversion_failures=conversion_failures,
            missing_cost_rows=missing_cost_rows,
        ),
    )


def _parse_enum(enum_cls, raw: Any, field_name: str):
    if isinstance(raw, enum_cls):
        return raw
    if isinstance(raw, str):
        for member in enum_cls:
            if member.value.lower() == raw.strip().lower():
                return member
    raise InvalidQueryError(f"不支持的 {field_name}: {raw!r}")


def _parse_range_date(raw: Any, field_name: str) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str):
        raise InvalidQueryError(f"日期 {field_name} 必须为 YYYY-MM-DD 字符串: {raw!r}")
    try:
        return parse_iso_date(raw)
    except ValueError as exc:
        raise InvalidQueryError(f"日期格式错误: {exc}") from exc
