from datetime import date

import pytest

from profitability_dashboard.config import CostDefaultsConfig
from profitability_dashboard.data_sources.base import FulfillmentType, Marketplace, TransactionType
from profitability_dashboard.data_sources.mock_transactions import MockTransactionSource
from profitability_dashboard.metrics.rollup import (
    EntityLevel,
    Fulfillment,
    aggregate,
    aggregate_partitions,
    aggregate_with_diagnostics,
)


@pytest.fixture
def mock_rows():
    source = MockTransactionSource()
    rows = source.fetch_transactions(date(2024, 1, 1), date(2024, 1, 21))
    return rows, source.fetch_cost_configuration(CostDefaultsConfig(advertising_percent=4.0))


def test_two_orders_roll_up_into_one_sku(make_tx, simple_costs):
    rows = [
        make_tx(order_id="O-1", sales=100.0, selling_fees=-10.0),
        make_tx(order_id="O-2", sales=200.0, selling_fees=-20.0, quantity=2),
    ]
    [entity] = aggregate(rows, simple_costs)

    assert entity.level is EntityLevel.SKU
    assert entity.key == "A"
    assert entity.marketplace is Marketplace.US
    assert entity.total_revenue == pytest.approx(300.0)
    assert entity.total_orders == 2
    assert entity.total_quantity == 3
    assert entity.line("product_cost").amount == pytest.approx(120.0)
    assert entity.net_profit == pytest.approx(150.0)
    assert entity.profit_margin == pytest.approx(50.0)
    assert entity.roi == pytest.approx(125.0)
    assert entity.line("selling_fees").percent == pytest.approx(10.0)


def test_orders_are_counted_by_distinct_id(make_tx, simple_costs):
    rows = [make_tx(order_id="O-1"), make_tx(order_id="O-1"), make_tx(order_id="O-2")]
    [entity] = aggregate(rows, simple_costs)

    assert entity.total_orders == 2
    assert entity.total_quantity == 3


@pytest.mark.parametrize(
    "tags, expected",
    [
        ([FulfillmentType.FBA, FulfillmentType.FBA], Fulfillment.FBA),
        ([FulfillmentType.FBM], Fulfillment.FBM),
        ([FulfillmentType.FBA, FulfillmentType.FBM], Fulfillment.MIXED),
    ],
)
def test_fulfillment_classification(make_tx, simple_costs, tags, expected):
    rows = [make_tx(order_id=f"O-{idx}", fulfillment=tag) for idx, tag in enumerate(tags)]
    [entity] = aggregate(rows, simple_costs)

    assert entity.fulfillment is expected
    if expected is Fulfillment.MIXED:
        assert entity.mixed_revenue == pytest.approx(entity.total_revenue)
        assert entity.fba_revenue == pytest.approx(100.0)
        assert entity.fbm_revenue == pytest.approx(100.0)


def test_refund_subtracts_revenue(make_tx, simple_costs):
    rows = [
        make_tx(order_id="O-1", sales=100.0),
        make_tx(order_id="O-2", sales=100.0),
        make_tx(order_id="O-1", type=TransactionType.REFUND, quantity=-1, sales=-100.0),
    ]
    [entity] = aggregate(rows, simple_costs)

    assert entity.total_revenue == pytest.approx(100.0)
    assert entity.refunded_quantity == 1
    assert entity.refund_orders == 1
    assert entity.total_orders == 2
    # 成本冲回 40，回收 30%，损失 28。
    assert entity.line("product_cost").amount == pytest.approx(40.0)
    assert entity.line("refund_loss").amount == pytest.approx(28.0)


def test_sku_without_cost_keeps_revenue_but_no_margin(make_tx, simple_costs):
    [entity] = aggregate([make_tx(sku="B", sales=80.0)], simple_costs)

    assert not entity.has_cost_data
    assert entity.total_revenue == pytest.approx(80.0)
    assert entity.profit_margin == 0.0
    assert entity.roi == 0.0
    assert entity.cost_coverage_percent == 0.0


def test_zero_revenue_has_zero_percentages(make_tx, simple_costs):
    [entity] = aggregate([make_tx(sales=0.0, selling_fees=-1.0)], simple_costs)

    assert entity.total_revenue == 0.0
    assert entity.profit_margin == 0.0
    assert all(line.percent == 0.0 for line in entity.lines.values())


def test_identity_fields_fall_back_to_sku(make_tx, simple_costs):
    [entity] = aggregate([make_tx(product_name="Lamp", category="")], simple_costs)

    assert entity.name == "Lamp"
    assert entity.parent == "Lamp"
    assert entity.category == "Uncategorized"


def test_grouping_without_marketplace_merges_countries(make_tx, simple_costs):
    rows = [make_tx(order_id="O-1"), make_tx(order_id="O-2", marketplace=Marketplace.CA)]

    assert len(aggregate(rows, simple_costs)) == 2
    [merged] = aggregate(rows, simple_costs, by_marketplace=False)
    assert merged.marketplace is None
    assert merged.total_orders == 2


def test_ignored_and_unconvertible_rows_are_reported(make_tx, simple_costs):
    rows = [
        make_tx(order_id="O-1"),
        make_tx(order_id="O-2", type=TransactionType.OTHER),
        make_tx(order_id="O-3", sku=""),
        make_tx(order_id="O-4", marketplace=Marketplace.UNKNOWN),
    ]
    rollup = aggregate_with_diagnostics(rows, simple_costs)

    assert len(rollup.entities) == 1
    assert rollup.entities[0].total_revenue == pytest.approx(100.0)
    assert rollup.diagnostics.processed_rows == 1
    assert rollup.diagnostics.ignored_rows == 2
    assert rollup.diagnostics.conversion_failures == 1
    assert rollup.diagnostics.failed_currencies == {"Unknown->USD": 1}


def test_result_does_not_depend_on_row_order(mock_rows):
    rows, config = mock_rows

    assert aggregate(rows, config) == aggregate(list(reversed(rows)), config)


def test_partitioned_rollup_matches_single_pass(mock_rows):
    rows, config = mock_rows
    whole = aggregate_with_diagnostics(rows, config)
    partitions = [rows[index::3] for index in range(3)]
    split = aggregate_partitions(partitions, config)

    assert split.entities == whole.entities
    assert split.diagnostics.processed_rows == whole.diagnostics.processed_rows
    assert split.diagnostics.missing_cost_skus == whole.diagnostics.missing_cost_skus


def test_entities_sorted_by_revenue(mock_rows):
    rows, config = mock_rows
    revenues = [entity.total_revenue for entity in aggregate(rows, config)]

    assert revenues == sorted(revenues, reverse=True)
