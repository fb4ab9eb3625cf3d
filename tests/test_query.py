from datetime import date

import pytest

from profitability_dashboard.data_sources.base import FulfillmentType, Marketplace, TransactionType
from profitability_dashboard.metrics.currency import ExchangeRateTable
from profitability_dashboard.query.engine import (
    DateRangeSpec,
    GroupBy,
    InvalidQueryError,
    Metric,
    QuerySpec,
    execute,
    resolve_date_range,
)
from profitability_dashboard.query.templates import QUERY_TEMPLATES, get_template
from profitability_dashboard.utils.dates import resolve_preset

TODAY = date(2024, 5, 31)
PARITY = ExchangeRateTable(rates={"USD": {"USD": 1.0}, "GBP": {"USD": 1.0, "GBP": 1.0}})


@pytest.fixture
def country_rows(make_tx):
    return [
        make_tx(order_id="US-1", sales=300.0),
        make_tx(order_id="US-2", sales=200.0),
        make_tx(order_id="UK-1", sales=300.0, marketplace=Marketplace.UK),
    ]


def _query(**overrides):
    payload = {"metric": "revenue", "group_by": "country", "limit": 10}
    payload.update(overrides)
    return QuerySpec.from_dict(payload)


def test_top_country_by_revenue(country_rows):
    results = execute(country_rows, _query(limit=1), rates=PARITY, today=TODAY)

    assert [(item.key, item.value) for item in results.items] == [("US", pytest.approx(500.0))]
    assert results.summary.total == pytest.approx(500.0)
    assert results.summary.count == 1
    assert results.summary.matched_rows == 3


def test_summary_total_only_counts_returned_items(country_rows):
    results = execute(country_rows, _query(limit=5), rates=PARITY, today=TODAY)

    assert [item.key for item in results.items] == ["US", "UK"]
    assert results.summary.total == pytest.approx(800.0)


def test_ascending_sort_breaks_ties_by_key(make_tx):
    rows = [
        make_tx(order_id="1", marketplace=Marketplace.US),
        make_tx(order_id="2", marketplace=Marketplace.UK),
    ]
    results = execute(rows, _query(sort="asc"), rates=PARITY, today=TODAY)

    assert [item.key for item in results.items] == ["UK", "US"]


def test_results_are_deterministic(country_rows):
    first = execute(country_rows, _query(), rates=PARITY, today=TODAY)
    second = execute(list(reversed(country_rows)), _query(), rates=PARITY, today=TODAY)

    assert first == second


def test_filters_are_combined(make_tx):
    rows = [
        make_tx(order_id="1", category="Toys"),
        make_tx(order_id="2", category="Toys", fulfillment=FulfillmentType.FBM),
        make_tx(order_id="3", category="Garden"),
        make_tx(order_id="4", category="Toys", marketplace=Marketplace.CA),
        make_tx(order_id="5", category="Toys", day=date(2023, 1, 1)),
    ]
    spec = _query(
        group_by="category",
        filters={"marketplaces": ["US"], "fulfillment": "FBA", "category": "Toys"},
    )
    results = execute(rows, spec, today=TODAY)

    assert [item.key for item in results.items] == ["Toys"]
    assert results.summary.matched_rows == 1


def test_category_filter_ignores_surrounding_whitespace(make_tx):
    rows = [make_tx(order_id="1", category="  Toys "), make_tx(order_id="2", category="Garden")]
    spec = _query(group_by="category", filters={"category": " Toys"})
    results = execute(rows, spec, today=TODAY)

    assert spec.filters.category == "Toys"
    assert [item.key for item in results.items] == ["Toys"]
    assert results.summary.matched_rows == 1


def test_marketplace_filter_accepts_aliases(country_rows):
    spec = _query(filters={"marketplaces": ["gb"]})
    results = execute(country_rows, spec, rates=PARITY, today=TODAY)

    assert spec.filters.marketplaces == (Marketplace.UK,)
    assert [item.key for item in results.items] == ["UK"]


def test_refund_rate_is_bounded(make_tx):
    rows = [
        make_tx(sku="A", order_id="A-1"),
        make_tx(sku="A", order_id="A-2"),
        make_tx(sku="A", order_id="A-1", type=TransactionType.REFUND, quantity=-1, sales=-100.0),
        make_tx(sku="B", order_id="B-1"),
        make_tx(sku="B", order_id="X-1", type=TransactionType.REFUND, quantity=-1, sales=-10.0),
        make_tx(sku="B", order_id="X-2", type=TransactionType.REFUND, quantity=-1, sales=-10.0),
        make_tx(sku="C", order_id="C-9", type=TransactionType.REFUND, quantity=-1, sales=-10.0),
    ]
    results = execute(rows, _query(metric="refundRate", group_by="sku"), today=TODAY)
    values = {item.key: item.value for item in results.items}

    assert values == {"A": pytest.approx(50.0), "B": 100.0, "C": 0.0}


def test_profit_and_average_order_value(make_tx, simple_costs):
    rows = [
        make_tx(order_id="1", sales=100.0, selling_fees=-10.0, fba_fees=-5.0),
        make_tx(order_id="2", sales=200.0, quantity=2, selling_fees=-20.0),
        make_tx(order_id="3", sku="B", sales=50.0),
    ]
    profit = execute(rows, _query(metric="profit", group_by="sku"), config=simple_costs, today=TODAY)
    aov = execute(rows, _query(metric="avgOrderValue", group_by="sku"), config=simple_costs, today=TODAY)

    assert {item.key: item.value for item in profit.items} == {
        "A": pytest.approx(300 - 30 - 5 - 120),
        "B": pytest.approx(50.0),
    }
    assert profit.summary.missing_cost_rows == 1
    assert {item.key: item.value for item in aov.items}["A"] == pytest.approx(150.0)


def test_missing_fields_fall_into_explicit_buckets(make_tx):
    rows = [make_tx(order_id="1", category=""), make_tx(order_id="2", marketplace=Marketplace.UNKNOWN)]
    results = execute(rows, _query(group_by="category"), today=TODAY)

    assert [item.key for item in results.items] == ["Uncategorized"]
    assert results.summary.conversion_failures == 1


def test_product_labels_are_truncated(make_tx):
    rows = [make_tx(product_name="x" * 80)]
    [item] = execute(rows, _query(group_by="product"), today=TODAY).items

    assert item.key == "A"
    assert item.label == "x" * 50 + "..."


def test_empty_result_is_not_an_error():
    results = execute([], _query(), today=TODAY)

    assert results.items == ()
    assert results.summary.total == 0
    assert results.summary.count == 0


@pytest.mark.parametrize(
    "payload",
    [
        {"metric": "margin", "group_by": "country"},
        {"metric": "revenue", "group_by": "warehouse"},
        {"metric": "revenue", "group_by": "sku", "sort": "sideways"},
        {"metric": "revenue", "group_by": "sku", "filters": {"fulfillment": "drone"}},
        {"metric": "revenue", "group_by": "sku", "date_range": {"preset": "custom", "start": "2024-13-01"}},
        {"metric": "revenue", "group_by": "sku", "date_range": {"preset": "custom", "start": 20240501, "end": 20240510}},
        {"metric": "revenue", "group_by": "sku", "date_range": {"preset": "custom", "start": "2024-05-01", "end": [2024]}},
        {"metric": "revenue", "group_by": "sku", "date_range": ["custom"]},
        {"metric": "revenue", "group_by": "sku", "filters": ["US"]},
        {"metric": "revenue", "group_by": "sku", "filters": {"marketplaces": "USA"}},
        {"metric": "revenue", "group_by": "sku", "filters": {"marketplaces": ["US", "Germany"]}},
        {"metric": "revenue", "group_by": "sku", "filters": {"category": 7}},
    ],
)
def test_malformed_queries_are_rejected(payload):
    with pytest.raises(InvalidQueryError):
        QuerySpec.from_dict(payload)


@pytest.mark.parametrize(
    "payload",
    [
        {"limit": 0},
        {"date_range": {"preset": "custom", "start": "2024-05-10", "end": "2024-05-01"}},
        {"date_range": {"preset": "custom", "start": "2024-05-10"}},
    ],
)
def test_invalid_queries_fail_before_execution(payload):
    with pytest.raises(InvalidQueryError):
        execute([], _query(**payload), today=TODAY)


def test_custom_range_is_inclusive(make_tx):
    rows = [make_tx(order_id="1", day=date(2024, 5, 1)), make_tx(order_id="2", day=date(2024, 5, 2))]
    spec = _query(date_range={"preset": "custom", "start": "2024-05-01", "end": "2024-05-01"})
    results = execute(rows, spec, today=TODAY)

    assert results.summary.total == pytest.approx(100.0)


def test_presets():
    today = date(2024, 3, 15)

    assert resolve_preset("lastMonth", today) == (date(2024, 2, 1), date(2024, 2, 29))
    assert resolve_preset("last7days", today) == (date(2024, 3, 8), today)
    assert resolve_preset("last3months", today) == (date(2023, 12, 16), today)
    assert resolve_preset("no-such-preset", today) == (date(2024, 2, 14), today)
    assert resolve_date_range(DateRangeSpec(preset="custom"), today) == (date(2024, 2, 14), today)


def test_templates_parse():
    assert len({template.template_id for template in QUERY_TEMPLATES}) == len(QUERY_TEMPLATES)
    for template in QUERY_TEMPLATES:
        spec = template.to_spec()
        assert isinstance(spec.metric, Metric)
        assert isinstance(spec.group_by, GroupBy)
    assert get_template("worst-profit-germany").to_spec().filters.marketplaces == (Marketplace.DE,)
    with pytest.raises(KeyError):
        get_template("missing")
