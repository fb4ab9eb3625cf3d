from datetime import date

import pytest

from profitability_dashboard.data_sources.base import Marketplace
from profitability_dashboard.metrics.calculations import build_profitability_report
from profitability_dashboard.query.engine import QuerySpec, execute
from profitability_dashboard.reporting.formatter import (
    format_query_results,
    format_text_report,
    query_results_to_dict,
    report_to_dict,
)

START = date(2024, 5, 1)
END = date(2024, 5, 31)


@pytest.fixture
def report(make_tx, simple_costs):
    rows = [
        make_tx("A", order_id="1", product_name="Lamp", sales=1000.0, selling_fees=-100.0),
        make_tx("A", order_id="2", product_name="Lamp", sales=1000.0, marketplace=Marketplace.CA),
        make_tx("B", order_id="3", product_name="Mug", sales=50.0),
        make_tx("B", order_id="4", marketplace=Marketplace.UNKNOWN),
    ]
    return build_profitability_report(
        source_name="unit-test",
        start=START,
        end=END,
        transactions=rows,
        config=simple_costs,
    )


def test_report_to_dict_levels(report):
    payload = report_to_dict(report, levels=["product", "category"], top_n=1)

    assert payload["source"] == "unit-test"
    assert payload["window"] == {"start": "2024-05-01", "end": "2024-05-31"}
    assert "sku_entities" not in payload
    assert [entity["key"] for entity in payload["product_entities"]] == ["Lamp"]
    assert payload["diagnostics"]["conversion_failures"] == 1
    assert payload["diagnostics"]["missing_cost_skus"] == ["B"]
    assert payload["totals"]["unknown_count"] == 1
    [comparison] = [item for item in payload["country_comparisons"] if item["product"] == "Lamp"]
    assert comparison["best_country"] == "CA"
    assert comparison["worst_country"] == "US"


def test_text_report(report):
    text = format_text_report(report, level="product", top_n=5)

    assert text.splitlines()[0] == "Window: 2024-05-01 to 2024-05-31"
    assert "Warning: 1 rows skipped (missing exchange rate)" in text
    assert "Top product entities (by revenue):" in text
    assert "Mug" in text and "Margin n/a (no cost data)" in text
    assert "- Lamp: best CA, worst US" in text


def test_text_report_without_rows(simple_costs):
    report = build_profitability_report(
        source_name="empty", start=START, end=END, transactions=[], config=simple_costs
    )

    assert format_text_report(report).endswith("No transaction records available.")


def test_query_output(make_tx):
    rows = [make_tx(order_id="1", sales=60.0), make_tx(order_id="2", sales=40.0, marketplace=Marketplace.CA)]
    spec = QuerySpec.from_dict(
        {
            "metric": "revenue",
            "group_by": "sku",
            "date_range": {"preset": "custom", "start": "2024-05-01", "end": "2024-05-31"},
        }
    )
    results = execute(rows, spec)
    payload = query_results_to_dict(results)

    assert payload["query"]["metric"] == "revenue"
    assert payload["query"]["date_range"]["preset"] == "custom"
    [item] = payload["items"]
    assert item["share"] == pytest.approx(100.0)
    assert payload["summary"]["date_range"] == {"start": "2024-05-01", "end": "2024-05-31"}
    assert format_query_results(results).startswith("Query: revenue by sku (2024-05-01 to 2024-05-31)")

    empty = execute([], spec)
    assert "No matching transactions." in format_query_results(empty)
