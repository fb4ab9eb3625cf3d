from datetime import date

from profitability_dashboard.metrics.calculations import build_profitability_report
from profitability_dashboard.storage.repository import SQLiteRepository


def _report(make_tx, config, start, sales):
    return build_profitability_report(
        source_name="unit-test",
        start=start,
        end=start,
        transactions=[
            make_tx("A", order_id="1", category="Home", sales=sales, day=start),
            make_tx("B", order_id="2", category="Garden", sales=10.0, day=start),
        ],
        config=config,
    )


def test_save_and_fetch_snapshots(tmp_path, make_tx, simple_costs):
    repo = SQLiteRepository(tmp_path / "nested" / "history.sqlite3")
    repo.initialize()
    first_id = repo.save_report(_report(make_tx, simple_costs, date(2024, 4, 1), 100.0))
    second_id = repo.save_report(_report(make_tx, simple_costs, date(2024, 5, 1), 200.0))

    recent = repo.fetch_recent_summaries(limit=5)

    assert [item.id for item in recent] == [second_id, first_id]
    latest = recent[0]
    assert latest.start == "2024-05-01"
    assert latest.total_revenue == 210.0
    assert latest.total_orders == 2
    assert [category.category for category in latest.categories] == ["Home", "Garden"]
    assert latest.categories[1].has_cost_data is False


def test_fetch_by_start_date(tmp_path, make_tx, simple_costs):
    repo = SQLiteRepository(tmp_path / "history.sqlite3")
    repo.initialize()
    repo.save_report(_report(make_tx, simple_costs, date(2023, 5, 1), 100.0))

    assert repo.fetch_by_start_date("2023-05-01").total_revenue == 110.0
    assert repo.fetch_by_start_date("2022-05-01") is None
