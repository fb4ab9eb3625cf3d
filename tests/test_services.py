import csv
import json
from datetime import date
from dataclasses import replace
from types import SimpleNamespace

import pytest

from profitability_dashboard import services
from profitability_dashboard.agent import build_profitability_agent
from profitability_dashboard.data_sources.base import Marketplace
from profitability_dashboard.data_sources.mock_transactions import MockTransactionSource
from profitability_dashboard.metrics.currency import RateHistory
from profitability_dashboard.mcp_bridge import _parse_args, _parse_env
from profitability_dashboard.pipeline.pipeline import ProfitabilityPipeline
from profitability_dashboard.skills import (
    ComputeProfitabilitySkill,
    FetchTransactionsSkill,
    ListQueryTemplatesSkill,
    build_profitability_skills,
)

START = "2024-03-01"
END = "2024-03-14"


class _EchoLLM:
    def __init__(self):
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        return SimpleNamespace(content="利润洞察")


@pytest.fixture
def context(app_config):
    return services.create_service_context(app_config)


def test_context_defaults(context, app_config):
    assert isinstance(context.data_source, MockTransactionSource)
    assert context.repository is not None
    assert context.llm is None


def test_fetch_transactions_window_and_filter(context):
    payload = services.fetch_transactions(context, start=START, end=END, marketplace="DE")

    assert payload["source"] == "mock_settlement_report"
    assert payload["transactions"]
    assert {row["marketplace"] for row in payload["transactions"]} == {"DE"}
    assert all(START <= row["day"] <= END for row in payload["transactions"])


def test_window_must_be_ordered(context):
    with pytest.raises(ValueError):
        services.fetch_transactions(context, start=END, end=START)


def test_dated_rates_from_config(app_config, tmp_path):
    rates_path = tmp_path / "rates.json"
    rates_path.write_text(json.dumps({"2024-01-01": {"GBP": 0.5, "EUR": 0.95}}), encoding="utf-8")
    dated = services.create_service_context(
        replace(app_config, dashboard=replace(app_config.dashboard, rates_file=str(rates_path)))
    )
    fallback = services.create_service_context(app_config)

    assert isinstance(dated.rates, RateHistory)
    assert fallback.rates is None
    dated_revenue = services.compute_profitability(dated, start=START, end=END, marketplace="UK")["report"]
    fallback_revenue = services.compute_profitability(fallback, start=START, end=END, marketplace="UK")["report"]
    assert dated_revenue["totals"]["revenue"] == pytest.approx(
        fallback_revenue["totals"]["revenue"] * 2.0 / 1.27, rel=1e-3
    )


def test_compute_profitability_from_source_and_payload(context):
    computed = services.compute_profitability(context, start=START, end=END, levels=["category"])["report"]
    rows = services.fetch_transactions(context, start=START, end=END)["transactions"]
    replayed = services.compute_profitability(
        context, start=START, end=END, transactions=rows, source="replay"
    )["report"]

    assert set(computed) >= {"totals", "category_entities", "country_comparisons", "diagnostics"}
    assert "sku_entities" not in computed
    assert replayed["source"] == "replay"
    assert replayed["totals"] == computed["totals"]
    assert computed["diagnostics"]["missing_cost_skus"] == ["PHONE-CASE-X"]


def test_history_analysis_and_export(context, tmp_path):
    services.compute_profitability(context, start="2024-03-01", end="2024-03-31")
    services.compute_profitability(context, start="2024-04-01", end="2024-04-30")

    history = services.analyze_profitability_history(context, limit=6, metrics=["revenue", "orders", "bogus"])
    assert set(history["analysis"]) == {"revenue", "orders"}
    assert history["analysis"]["revenue"]["mom"] is not None
    assert history["analysis"]["revenue"]["yoy"] is None
    assert [point["start"] for point in history["time_series"]["revenue"]] == ["2024-03-01", "2024-04-01"]

    target = tmp_path / "exports" / "history.csv"
    result = services.export_profitability_history(context, limit=5, path=str(target))
    assert str(target) in result["message"]
    with target.open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["start"] for row in rows] == ["2024-04-01", "2024-03-01"]


def test_history_without_repository(app_config):
    context = services.ServiceContext(config=app_config, data_source=MockTransactionSource())

    assert "error" in services.analyze_profitability_history(context)["analysis"]
    assert "message" in services.export_profitability_history(context, limit=1, path="unused.csv")


def test_compare_countries(context):
    result = services.compare_countries(context, start=START, end=END, product="LED Desk Lamp Black", threshold=0)

    assert result["product"]["key"] == "LED Desk Lamp Black"
    assert {row["marketplace"] for row in result["comparison"]["countries"]} == {"US", "UK", "DE"}
    assert result["comparison"]["best_country"] in {"US", "UK", "DE"}

    overview = services.compare_countries(context, start=START, end=END)
    assert overview["threshold"] == 100.0
    assert [item["product"] for item in overview["comparisons"]] == sorted(
        item["product"] for item in overview["comparisons"]
    )

    with pytest.raises(RuntimeError):
        services.compare_countries(context, start=START, end=END, product="No Such Product")


def test_queries(context):
    listed = services.list_query_templates()["templates"]
    assert "top-revenue-countries" in {template["id"] for template in listed}

    results = services.run_profitability_query(
        context, template_id="top-revenue-countries", today=date(2024, 3, 31)
    )["results"]
    values = [item["value"] for item in results["items"]]
    assert values == sorted(values, reverse=True)
    assert results["summary"]["total"] == pytest.approx(sum(values))
    assert results["summary"]["count"] == len(values)

    custom = services.run_profitability_query(
        context,
        query={"metric": "orders", "groupBy": "fulfillment", "dateRange": {"preset": "last7days"}},
        today=date(2024, 3, 31),
    )["results"]
    assert {item["key"] for item in custom["items"]} == {"FBA", "FBM"}

    with pytest.raises(RuntimeError):
        services.run_profitability_query(context)


def test_export_pricing(context, tmp_path):
    target = tmp_path / "pricing.json"
    single = services.export_pricing(context, start=START, end=END, marketplace="us", path=str(target))

    assert single["export"]["marketplace"] == "US"
    assert json.loads(target.read_text(encoding="utf-8"))["version"] == 1

    bulk = services.export_pricing(context, start=START, end=END, bulk=True)["export"]
    assert set(bulk["marketplaces"]) == {"US", "UK", "DE", "FR", "IT", "CA", "AU"}


def test_insights_require_llm(context):
    with pytest.raises(RuntimeError):
        services.generate_profitability_insights(context)

    context.llm = _EchoLLM()
    result = services.generate_profitability_insights(context, start=START, end=END, focus="亏损商品")
    assert result["report"]["insights"] == "利润洞察"
    assert "亏损商品" in context.llm.calls[0][0].content


def test_skills(context):
    skills = build_profitability_skills(context)

    assert [skill.name for skill in skills] == [
        "fetch_transactions",
        "compute_profitability",
        "compare_countries",
        "run_profitability_query",
        "list_query_templates",
        "export_pricing",
        "generate_profitability_insights",
        "analyze_profitability_history",
        "export_profitability_history",
    ]
    assert ListQueryTemplatesSkill(context).invoke()["templates"]
    assert ListQueryTemplatesSkill(context).to_descriptor() == {
        "name": "list_query_templates",
        "description": "列出可直接执行的预置查询模板。",
        "parameters": [],
    }
    assert FetchTransactionsSkill(context).parameter_names() == ["start", "end", "window_days", "marketplace"]
    with pytest.raises(RuntimeError):
        ComputeProfitabilitySkill(context).invoke(transactions=[])


def test_pipeline_marketplace_filter(app_config):
    pipeline = ProfitabilityPipeline(config=app_config, data_source=MockTransactionSource())
    report = pipeline.run(start=date(2024, 3, 1), end=date(2024, 3, 7), marketplace="de")

    assert report.skus
    assert {sku.marketplace for sku in report.skus} == {Marketplace.DE}
    assert report.country_comparisons == {}


def test_agent_requires_api_key(app_config):
    with pytest.raises(RuntimeError):
        build_profitability_agent(app_config)


def test_bridge_argument_parsing():
    assert _parse_args('["-m", "profitability_dashboard.mcp_server"]') == ["-m", "profitability_dashboard.mcp_server"]
    assert _parse_args("-m  server") == ["-m", "server"]
    assert _parse_env('{"A": "1"}') == {"A": "1"}
    assert _parse_env("[1]") is None
    assert _parse_env(None) is None
