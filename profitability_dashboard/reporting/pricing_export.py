"""生成提供给定价工具的版本化费用结构导出数据。"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..data_sources.base import Marketplace
from ..metrics.hierarchy import roll_up, roll_up_categories, roll_up_parents, roll_up_products
from ..metrics.rollup import AggregatedEntity, EntityLevel, Fulfillment, percent_of

# 只允许追加字段，已有字段的含义在版本之间不得改变。
EXPORT_VERSION = 1
SOURCE_APP = "profitability-dashboard"

DEFAULT_REFUND_RECOVERY: Dict[str, float] = {
    "US": 0.5,
    "UK": 0.3,
    "DE": 0.3,
    "FR": 0.3,
    "IT": 0.3,
    "ES": 0.3,
    "CA": 0.4,
    "AU": 0.4,
    "AE": 0.3,
    "SA": 0.3,
}

# 导出字段名到实体费用项的映射。
PERCENT_FIELDS = (
    ("sellingFeePercent", "selling_fees"),
    ("fbaFeePercent", "fba_fees"),
    ("refundLossPercent", "refund_loss"),
    ("vatPercent", "vat"),
    ("productCostPercent", "product_cost"),
    ("shippingCostPercent", "shipping"),
    ("customsDutyPercent", "customs"),
    ("ddpFeePercent", "ddp"),
    ("warehouseCostPercent", "warehouse"),
    ("gstCostPercent", "gst"),
    ("advertisingPercent", "advertising"),
    ("fbaCostPercent", "fba_cost"),
    ("fbmCostPercent", "fbm_cost"),
)
FBA_ONLY_FIELDS = {"fbaFeePercent", "fbaCostPercent"}
FBM_ONLY_FIELDS = {"fbmCostPercent"}


def is_imported(sku: AggregatedEntity) -> bool:
    """根据是否产生关税或 DDP 推断 FBM SKU 为跨境直发，缺少明确货源标记时的近似判断。"""
    return (sku.line("customs").amount + sku.line("ddp").amount) > 0


def global_settings(skus: Sequence[AggregatedEntity], refund_recovery_rate: float) -> Dict[str, float]:
    """
    功能说明:
        从 SKU 实体反推实际生效的全局费用比例。
    参数:
        skus (Sequence[AggregatedEntity]): 单站点 SKU 实体。
        refund_recovery_rate (float): 退货成本回收比例。
    返回:
        Dict[str, float]: 全局设置字典。
    """
    revenue = math.fsum(sku.total_revenue for sku in skus)
    fba_revenue = math.fsum(sku.fba_revenue for sku in skus)
    fbm_revenue = math.fsum(sku.fbm_revenue for sku in skus)
    return {
        "advertisingPercent": percent_of(math.fsum(sku.line("advertising").amount for sku in skus), revenue),
        "fbaCostPercent": percent_of(math.fsum(sku.line("fba_cost").amount for sku in skus), fba_revenue),
        "fbmCostPercent": percent_of(math.fsum(sku.line("fbm_cost").amount for sku in skus), fbm_revenue),
        "refundRecoveryRate": refund_recovery_rate,
    }


def _category_entry(
    category: AggregatedEntity,
    sample: Sequence[AggregatedEntity],
    *,
    marketplace: str,
    fulfillment_label: str,
    fulfillment: Fulfillment,
    revenue: float,
    quantity: int,
    start: date,
    end: date,
) -> Dict[str, Any]:
    # 用样本 SKU 重新组合出该履约方式下的加权百分比，样本为空时沿用类目整体数值。
    composed = roll_up(sample, lambda entity: category.key, EntityLevel.CATEGORY)[0] if sample else category
    with_cost = [sku for sku in sample if sku.has_cost_data and sku.total_quantity > 0]
    avg_product_cost = (
        math.fsum(sku.line("product_cost").amount / sku.total_quantity for sku in with_cost) / len(with_cost)
        if with_cost
        else 0.0
    )

    entry: Dict[str, Any] = {
        "category": category.key,
        "marketplace": marketplace,
        "fulfillmentType": fulfillment_label,
        "sampleSize": sum(sku.total_orders for sku in sample) if sample else category.total_orders,
        "totalRevenue": revenue,
        "totalQuantity": quantity,
        "periodStart": start.isoformat(),
        "periodEnd": end.isoformat(),
    }
    for export_name, line_name in PERCENT_FIELDS:
        value = composed.line(line_name).percent
        if export_name in FBA_ONLY_FIELDS and fulfillment is not Fulfillment.FBA:
            value = 0.0
        if export_name in FBM_ONLY_FIELDS and fulfillment is not Fulfillment.FBM:
            value = 0.0
        entry[export_name] = value
    entry.update(
        {
            "avgProfitMargin": composed.profit_margin,
            "avgROI": composed.roi,
            "avgSalePrice": revenue / quantity if quantity else 0.0,
            "avgProductCost": avg_product_cost,
            "fbaPercent": 100.0 if fulfillment is Fulfillment.FBA else 0.0,
            "fbmPercent": 100.0 if fulfillment is Fulfillment.FBM else 0.0,
        }
    )
    return entry


def _fbm_entries(
    category: AggregatedEntity,
    sample: Sequence[AggregatedEntity],
    *,
    split_fbm_origin: bool,
    **common: Any,
) -> List[Dict[str, Any]]:
    if split_fbm_origin:
        imported = [sku for sku in sample if is_imported(sku)]
        local = [sku for sku in sample if not is_imported(sku)]
        if imported and local:
            return [
                _category_entry(
                    category,
                    group,
                    fulfillment_label=label,
                    fulfillment=Fulfillment.FBM,
                    revenue=math.fsum(sku.fbm_revenue for sku in group),
                    quantity=sum(sku.fbm_quantity for sku in group),
                    **common,
                )
                for label, group in (("FBM-IMPORT", imported), ("FBM-LOCAL", local))
            ]
    return [
        _category_entry(
            category,
            sample,
            fulfillment_label="FBM",
            fulfillment=Fulfillment.FBM,
            revenue=category.fbm_revenue,
            quantity=category.fbm_quantity,
            **common,
        )
    ]


def build_pricing_export(
    categories: Sequence[AggregatedEntity],
    skus: Sequence[AggregatedEntity],
    *,
    marketplace: str,
    start: date,
    end: date,
    refund_recovery_rate: float,
    split_fbm_origin: bool = False,
    exported_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    功能说明:
        按类目与履约方式生成费用百分比结构。Mixed 类目拆成 FBA 与 FBM 两条记录，
        split_fbm_origin 为 True 时 FBM 记录再按关税/DDP 推断拆分为直发与本地仓。
    参数:
        categories (Sequence[AggregatedEntity]): 类目实体。
        skus (Sequence[AggregatedEntity]): 与类目对应的 SKU 实体。
        marketplace (str): 站点代码，跨站点为 ALL。
        start (date): 数据开始日期。
        end (date): 数据结束日期。
        refund_recovery_rate (float): 退货成本回收比例。
        split_fbm_origin (bool): 是否拆分 FBM 货源。
        exported_at (Optional[datetime]): 导出时间，默认当前 UTC 时间。
    返回:
        Dict[str, Any]: 可直接序列化为 JSON 的导出数据。
    """
    skus_by_category: Dict[str, List[AggregatedEntity]] = {}
    for sku in skus:
        skus_by_category.setdefault(sku.category, []).append(sku)

    common = {"marketplace": marketplace, "start": start, "end": end}
    entries: List[Dict[str, Any]] = []
    for category in sorted(categories, key=lambda entity: entity.key):
        members = skus_by_category.get(category.key, [])
        fba_sample = [sku for sku in members if sku.fulfillment in (Fulfillment.FBA, Fulfillment.MIXED)]
        fbm_sample = [sku for sku in members if sku.fulfillment in (Fulfillment.FBM, Fulfillment.MIXED)]

        if category.fulfillment is Fulfillment.FBA or (
            category.fulfillment is Fulfillment.MIXED and category.fba_quantity > 0 and category.fba_revenue > 0
        ):
            entries.append(
                _category_entry(
                    category,
                    fba_sample,
                    fulfillment_label="FBA",
                    fulfillment=Fulfillment.FBA,
                    revenue=category.fba_revenue if category.fulfillment is Fulfillment.MIXED else category.total_revenue,
                    quantity=category.fba_quantity if category.fulfillment is Fulfillment.MIXED else category.total_quantity,
                    **common,
                )
            )
        if category.fulfillment is Fulfillment.FBM or (
            category.fulfillment is Fulfillment.MIXED and category.fbm_quantity > 0 and category.fbm_revenue > 0
        ):
            entries.extend(_fbm_entries(category, fbm_sample, split_fbm_origin=split_fbm_origin, **common))

    revenue = math.fsum(category.total_revenue for category in categories)
    qualifying = [category for category in categories if category.has_cost_data and category.total_revenue > 0]
    weight = math.fsum(category.total_revenue for category in qualifying)
    avg_margin = (
        math.fsum(category.profit_margin * category.total_revenue for category in qualifying) / weight
        if weight
        else 0.0
    )
    return {
        "version": EXPORT_VERSION,
        "exportedAt": (exported_at or datetime.now(timezone.utc)).isoformat(),
        "sourceApp": SOURCE_APP,
        "marketplace": marketplace,
        "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
        "globalSettings": global_settings(skus, refund_recovery_rate),
        "categories": entries,
        "summary": {
            "totalCategories": len(entries),
            "totalRevenue": revenue,
            "totalOrders": sum(category.total_orders for category in categories),
            "avgMargin": avg_margin,
        },
    }


def build_bulk_pricing_export(
    skus: Iterable[AggregatedEntity],
    *,
    start: date,
    end: date,
    refund_recovery_rates: Optional[Mapping[str, float]] = None,
    local_fbm_marketplaces: Iterable[Marketplace] = (Marketplace.US,),
    exported_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    功能说明:
        按站点拆分 SKU 实体，逐站点重建层级并生成导出数据，再附加多站点汇总。
    参数:
        skus (Iterable[AggregatedEntity]): 按站点拆分的 SKU 实体。
        start (date): 数据开始日期。
        end (date): 数据结束日期。
        refund_recovery_rates (Optional[Mapping[str, float]]): 各站点退货回收比例。
        local_fbm_marketplaces (Iterable[Marketplace]): 需要拆分 FBM 货源的站点。
        exported_at (Optional[datetime]): 导出时间。
    返回:
        Dict[str, Any]: 批量导出数据。
    """
    rates = dict(DEFAULT_REFUND_RECOVERY)
    rates.update(refund_recovery_rates or {})
    split_codes = {marketplace.value for marketplace in local_fbm_marketplaces}
    timestamp = exported_at or datetime.now(timezone.utc)

    by_marketplace: Dict[str, List[AggregatedEntity]] = {}
    for sku in skus:
        if sku.marketplace is None:
            continue
        by_marketplace.setdefault(sku.marketplace.value, []).append(sku)

    exports: Dict[str, Dict[str, Any]] = {}
    for code in sorted(by_marketplace):
        members = by_marketplace[code]
        products = roll_up_products(members)
        categories = roll_up_categories(roll_up_parents(products), products)
        exports[code] = build_pricing_export(
            categories,
            members,
            marketplace=code,
            start=start,
            end=end,
            refund_recovery_rate=rates.get(code, 0.3),
            split_fbm_origin=code in split_codes,
            exported_at=timestamp,
        )

    return {
        "version": EXPORT_VERSION,
        "exportedAt": timestamp.isoformat(),
        "sourceApp": SOURCE_APP,
        "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
        "marketplaces": exports,
        "summary": {
            "totalMarketplaces": len(exports),
            "totalCategories": sum(item["summary"]["totalCategories"] for item in exports.values()),
            "totalRevenue": math.fsum(item["summary"]["totalRevenue"] for item in exports.values()),
        },
    }


def payload_to_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)
