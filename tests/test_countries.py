import pytest

from profitability_dashboard.data_sources.base import Marketplace
from profitability_dashboard.metrics.countries import best_and_worst


def test_best_and_worst_by_margin(make_entity):
    comparisons = best_and_worst(
        [
            make_entity("Lamp", 1000.0, 20.0, marketplace=Marketplace.US),
            make_entity("Lamp", 1000.0, -5.0, marketplace=Marketplace.DE),
        ]
    )
    comparison = comparisons["Lamp"]

    assert comparison.best is Marketplace.US
    assert comparison.worst is Marketplace.DE
    assert comparison.eligible_count == 2
    assert comparison.total_revenue == pytest.approx(2000.0)
    assert comparison.avg_profit_margin == pytest.approx(7.5)
    assert [entity.marketplace for entity in comparison.countries] == [Marketplace.DE, Marketplace.US]


def test_countries_below_threshold_do_not_rank(make_entity):
    comparison = best_and_worst(
        [
            make_entity("Lamp", 1000.0, 20.0, marketplace=Marketplace.US),
            make_entity("Lamp", 50.0, 60.0, marketplace=Marketplace.UK),
            make_entity("Lamp", 900.0, 40.0, marketplace=Marketplace.FR, has_cost_data=False),
        ],
        threshold=100.0,
    )["Lamp"]

    assert comparison.eligible_count == 1
    assert comparison.best is None
    assert comparison.worst is None
    assert len(comparison.countries) == 3


def test_equal_margins_break_ties_by_country_code(make_entity):
    comparison = best_and_worst(
        [
            make_entity("Lamp", 500.0, 10.0, marketplace=Marketplace.US),
            make_entity("Lamp", 500.0, 10.0, marketplace=Marketplace.DE),
        ]
    )["Lamp"]

    assert comparison.best is Marketplace.DE
    assert comparison.worst is Marketplace.US


def test_entities_without_marketplace_are_skipped(make_entity):
    assert best_and_worst([make_entity("Lamp", 1000.0, 20.0, marketplace=None)]) == {}
