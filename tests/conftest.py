from datetime import date

import pytest

from profitability_dashboard.config import AppConfig, CostDefaultsConfig, DashboardConfig, StorageConfig
from profitability_dashboard.data_sources.base import FulfillmentType, Marketplace, Transaction, TransactionType
from profitability_dashboard.metrics.costs import CostConfiguration, ProductCost
from profitability_dashboard.metrics.rollup import AggregatedEntity, EntityLevel, Fulfillment

DAY = date(2024, 5, 20)


@pytest.fixture
def make_tx():
    """构造交易记录，默认是一笔美国站 FBA 订单。"""

    def _make(
        sku="A",
        *,
        marketplace=Marketplace.US,
        type=TransactionType.ORDER,
        order_id="O-1",
        quantity=1,
        sales=100.0,
        fulfillment=FulfillmentType.FBA,
        day=DAY,
        **extra,
    ):
        return Transaction(
            day=day,
            marketplace=marketplace,
            type=type,
            sku=sku,
            order_id=order_id,
            quantity=quantity,
            product_sales=sales,
            fulfillment=fulfillment,
            **extra,
        )

    return _make


@pytest.fixture
def simple_costs():
    return CostConfiguration(sku_costs={"A": ProductCost(unit_cost=40.0)})


@pytest.fixture
def make_entity():
    """构造带利润率的实体，净利润按 revenue * margin / 100 反推。"""

    def _make(
        key,
        revenue,
        margin,
        *,
        has_cost_data=True,
        fulfillment=Fulfillment.FBA,
        marketplace=Marketplace.US,
        level=EntityLevel.PRODUCT,
        parent="P",
        category="C",
        lines=None,
    ):
        return AggregatedEntity(
            level=level,
            key=key,
            name=key,
            category=category,
            parent=parent,
            marketplace=marketplace,
            fulfillment=fulfillment,
            total_revenue=revenue,
            total_orders=1,
            total_quantity=1,
            refunded_quantity=0,
            refund_orders=0,
            lines=dict(lines or {}),
            fba_revenue=revenue if fulfillment is Fulfillment.FBA else 0.0,
            fba_quantity=1 if fulfillment is Fulfillment.FBA else 0,
            fbm_revenue=revenue if fulfillment is Fulfillment.FBM else 0.0,
            fbm_quantity=1 if fulfillment is Fulfillment.FBM else 0,
            mixed_revenue=0.0,
            mixed_quantity=0,
            gross_profit=revenue,
            net_profit=revenue * margin / 100,
            profit_margin=margin,
            roi=0.0,
            has_cost_data=has_cost_data,
        )

    return _make


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        dashboard=DashboardConfig(refresh_window_days=14),
        costs=CostDefaultsConfig(advertising_percent=5.0),
        storage=StorageConfig(enabled=True, db_path=str(tmp_path / "history.sqlite3")),
    )
