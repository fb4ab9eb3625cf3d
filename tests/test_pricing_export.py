import json
from datetime import date, datetime, timezone

import pytest

from profitability_dashboard.data_sources.base import FulfillmentType, Marketplace
from profitability_dashboard.metrics.costs import CostConfiguration, ProductCost
from profitability_dashboard.metrics.hierarchy import build_hierarchy
from profitability_dashboard.metrics.rollup import Fulfillment, aggregate
from profitability_dashboard.reporting.pricing_export import (
    EXPORT_VERSION,
    build_bulk_pricing_export,
    build_pricing_export,
    payload_to_json,
)

START = date(2024, 5, 1)
END = date(2024, 5, 31)
EXPORTED_AT = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def costs():
    return CostConfiguration(
        advertising_percent=5.0,
        fbm_cost_percent=2.0,
        sku_costs={sku: ProductCost(unit_cost=20.0) for sku in ("A", "B", "C", "D")},
    )


def _export(skus, **kwargs):
    _, _, categories = build_hierarchy(skus)
    return build_pricing_export(
        categories,
        skus,
        marketplace="US",
        start=START,
        end=END,
        refund_recovery_rate=0.5,
        exported_at=EXPORTED_AT,
        **kwargs,
    )


def test_payload_shape(make_tx, costs):
    skus = aggregate([make_tx(category="Home", selling_fees=-15.0)], costs)
    payload = _export(skus)

    assert payload["version"] == EXPORT_VERSION
    assert set(payload) == {
        "version",
        "exportedAt",
        "sourceApp",
        "marketplace",
        "dateRange",
        "globalSettings",
        "categories",
        "summary",
    }
    assert payload["exportedAt"] == "2024-06-01T00:00:00+00:00"
    assert payload["dateRange"] == {"start": "2024-05-01", "end": "2024-05-31"}
    assert payload["globalSettings"]["advertisingPercent"] == pytest.approx(5.0)
    assert payload["globalSettings"]["refundRecoveryRate"] == 0.5

    [entry] = payload["categories"]
    assert entry["category"] == "Home"
    assert entry["fulfillmentType"] == "FBA"
    assert entry["sampleSize"] == 1
    assert entry["sellingFeePercent"] == pytest.approx(15.0)
    assert entry["productCostPercent"] == pytest.approx(20.0)
    assert entry["fbaPercent"] == 100.0
    assert payload["summary"] == {
        "totalCategories": 1,
        "totalRevenue": pytest.approx(100.0),
        "totalOrders": 1,
        "avgMargin": pytest.approx(100 - 15 - 5 - 20),
    }
    assert json.loads(payload_to_json(payload))["version"] == EXPORT_VERSION


def test_mixed_category_splits_into_fba_and_fbm(make_tx, costs):
    skus = aggregate(
        [
            make_tx("A", order_id="1", category="Home", sales=100.0),
            make_tx("B", order_id="2", category="Home", sales=300.0, fulfillment=FulfillmentType.FBM),
        ],
        costs,
    )
    _, _, [category] = build_hierarchy(skus)
    assert category.fulfillment is Fulfillment.MIXED

    entries = _export(skus)["categories"]
    assert [entry["fulfillmentType"] for entry in entries] == ["FBA", "FBM"]
    fba, fbm = entries
    assert fba["totalRevenue"] == pytest.approx(100.0)
    assert fbm["totalRevenue"] == pytest.approx(300.0)
    assert fba["fbmCostPercent"] == 0.0
    assert fbm["fbmCostPercent"] == pytest.approx(2.0)


def test_fbm_origin_split(make_tx, costs):
    skus = aggregate(
        [
            make_tx("C", order_id="1", category="Home", fulfillment=FulfillmentType.FBM, customs_duty=-5.0),
            make_tx("D", order_id="2", category="Home", fulfillment=FulfillmentType.FBM),
        ],
        costs,
    )

    plain = _export(skus)["categories"]
    split = _export(skus, split_fbm_origin=True)["categories"]

    assert [entry["fulfillmentType"] for entry in plain] == ["FBM"]
    assert [entry["fulfillmentType"] for entry in split] == ["FBM-IMPORT", "FBM-LOCAL"]
    assert split[0]["customsDutyPercent"] == pytest.approx(5.0)
    assert split[1]["customsDutyPercent"] == 0.0


def test_bulk_export_nests_one_payload_per_marketplace(make_tx, costs):
    skus = aggregate(
        [
            make_tx("A", order_id="1", category="Home"),
            make_tx("A", order_id="2", category="Home", marketplace=Marketplace.DE),
            make_tx("B", order_id="3", category="Garden", marketplace=Marketplace.DE),
        ],
        costs,
    )
    payload = build_bulk_pricing_export(skus, start=START, end=END, exported_at=EXPORTED_AT)

    assert list(payload["marketplaces"]) == ["DE", "US"]
    assert payload["summary"]["totalMarketplaces"] == 2
    assert payload["summary"]["totalCategories"] == 3
    assert payload["summary"]["totalRevenue"] == pytest.approx(sum(sku.total_revenue for sku in skus))
    assert payload["marketplaces"]["US"]["globalSettings"]["refundRecoveryRate"] == 0.5
    assert payload["marketplaces"]["DE"]["globalSettings"]["refundRecoveryRate"] == 0.3
    assert payload["marketplaces"]["DE"]["marketplace"] == "DE"
