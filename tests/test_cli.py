import json

import pytest

from profitability_dashboard.cli import parse_args, run_cli


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in ("DASHBOARD_MARKETPLACE", "STORAGE_ENABLED", "STORAGE_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_parse_report_options():
    args = parse_args(["--marketplace", "de", "report", "--level", "sku", "--top-n", "3"])

    assert args.command == "report"
    assert args.marketplace == "de"
    assert args.level == "sku"
    assert args.top_n == 3


def test_report_command_prints_and_persists(tmp_path, capsys):
    output = tmp_path / "report.json"
    db_path = tmp_path / "history.sqlite3"
    run_cli(
        [
            "--start", "2024-03-01",
            "--end", "2024-03-10",
            "--output-json", str(output),
            "report", "--level", "category", "--persist", "--db-path", str(db_path), "--history", "1",
        ]
    )
    printed = capsys.readouterr().out

    assert "Window: 2024-03-01 to 2024-03-10" in printed
    assert "Top category entities (by revenue):" in printed
    assert "Snapshot saved to" in printed
    assert db_path.exists()
    assert json.loads(output.read_text(encoding="utf-8"))["window"]["start"] == "2024-03-01"


def test_query_command(capsys):
    run_cli(["query", "--list-templates"])
    assert "top-revenue-products" in capsys.readouterr().out

    run_cli(
        [
            "--start", "2024-03-01",
            "--end", "2024-03-10",
            "query", "--metric", "revenue", "--group-by", "country", "--limit", "2",
        ]
    )
    printed = capsys.readouterr().out
    assert printed.startswith("Query: revenue by country (2024-03-01 to 2024-03-10)")
    assert "Total of shown items:" in printed


def test_export_command(tmp_path):
    output = tmp_path / "pricing.json"
    run_cli(["--start", "2024-03-01", "--end", "2024-03-10", "--output-json", str(output), "export-pricing", "--bulk"])

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert payload["summary"]["totalMarketplaces"] == len(payload["marketplaces"])
