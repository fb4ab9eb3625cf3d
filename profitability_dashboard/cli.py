"""利润看板的命令行入口，串联取数、利润汇总、声明式查询与定价导出。"""

import argparse
import json
from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from .config import AppConfig, StorageConfig
from .data_sources.mock_transactions import create_default_mock_source
from .metrics.calculations import ProfitabilityReport
from .pipeline.pipeline import ProfitabilityPipeline
from .query.engine import QuerySpec, execute, resolve_date_range, validate_spec
from .query.templates import QUERY_TEMPLATES, get_template
from .reporting.formatter import format_query_results, format_text_report, query_results_to_dict, report_to_dict
from .reporting.pricing_export import build_bulk_pricing_export, build_pricing_export, payload_to_json
from .storage.repository import SQLiteRepository

DATE_FMT = "%Y-%m-%d"
LEVELS = ["sku", "product", "parent", "category"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    功能说明:
        构建并解析命令行参数，返回解析后的命名空间。
    参数:
        argv (Optional[List[str]]): 手动传入的参数列表，默认读取 sys.argv。
    返回:
        argparse.Namespace: 包含子命令与运行选项。
    """
    parser = argparse.ArgumentParser(description="Multi-marketplace profitability dashboard")
    parser.add_argument("--marketplace", default=None, help="Marketplace code, e.g. US/UK/DE, or ALL.")
    parser.add_argument("--window-days", type=int, default=None, help="Rolling window length in days.")
    parser.add_argument("--start", type=str, help="Optional start date, format YYYY-MM-DD.")
    parser.add_argument("--end", type=str, help="Optional end date, format YYYY-MM-DD.")
    parser.add_argument("--output-json", type=Path, help="Path to save the JSON payload.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    report = subparsers.add_parser("report", help="Roll up profitability by SKU/product/parent/category.")
    report.add_argument("--level", choices=LEVELS, default="product", help="Level printed in the text report.")
    report.add_argument("--top-n", type=int, default=10, help="How many entities to surface.")
    report.add_argument("--persist", action="store_true", help="Persist the snapshot into SQLite.")
    report.add_argument("--db-path", type=Path, help="Override database path when persisting.")
    report.add_argument("--history", type=int, default=0, help="Show latest N snapshots after saving.")

    query = subparsers.add_parser("query", help="Run a declarative query or a built-in template.")
    query.add_argument("--template", help="Built-in template id.")
    query.add_argument("--metric", default="revenue")
    query.add_argument("--group-by", default="product")
    query.add_argument("--filter-marketplace", action="append", default=[], help="Repeatable marketplace filter.")
    query.add_argument("--fulfillment", help="FBA or FBM.")
    query.add_argument("--category")
    query.add_argument("--preset", default="last30days", help="Date preset, or custom with --start/--end.")
    query.add_argument("--sort", choices=["asc", "desc"], default="desc")
    query.add_argument("--limit", type=int, default=10)
    query.add_argument("--list-templates", action="store_true", help="Print available templates and exit.")

    export = subparsers.add_parser("export-pricing", help="Export fee structures for the pricing tool.")
    export.add_argument("--bulk", action="store_true", help="Export every marketplace separately.")
    export.add_argument("--split-fbm-origin", action="store_true", help="Split FBM into import and local entries.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    """
    功能说明:
        以环境变量配置为基础，叠加命令行覆盖项。
    参数:
        args (argparse.Namespace): 命令行解析得到的参数集合。
    返回:
        AppConfig: 用于后续管道运行的配置对象。
    """
    config = AppConfig.from_env()
    dashboard = config.dashboard
    if args.marketplace:
        dashboard = replace(dashboard, marketplace=args.marketplace.upper())
    if args.window_days:
        dashboard = replace(dashboard, refresh_window_days=args.window_days)
    storage = config.storage
    if getattr(args, "persist", False) or getattr(args, "db_path", None) is not None:
        storage = StorageConfig(
            enabled=True,
            db_path=str(args.db_path) if args.db_path else storage.db_path,
        )
    return replace(config, dashboard=dashboard, storage=storage)


def parse_date(value: Optional[str]) -> Optional[date]:
    """将 `YYYY-MM-DD` 字符串解析为 `date`，空值返回 None。"""
    if not value:
        return None
    return datetime.strptime(value, DATE_FMT).date()


def persist_report(config: AppConfig, report: ProfitabilityReport) -> SQLiteRepository:
    """
    功能说明:
        将利润报告快照持久化到 SQLite 数据库。
    参数:
        config (AppConfig): 提供数据库路径及启用信息。
        report (ProfitabilityReport): 利润报告。
    返回:
        SQLiteRepository: 已初始化且写入完成的仓库实例。
    """
    repo = SQLiteRepository(config.storage.db_path)
    repo.initialize()
    summary_id = repo.save_report(report)
    print(f"Snapshot saved to {config.storage.db_path} (id={summary_id}).")
    return repo


def _write_json(path: Optional[Path], text: str) -> None:
    if not path:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    print(f"JSON written to: {path}")


def _run_report(args: argparse.Namespace, config: AppConfig, pipeline: ProfitabilityPipeline) -> None:
    report = pipeline.run(start=parse_date(args.start), end=parse_date(args.end))
    print(format_text_report(report, level=args.level, top_n=args.top_n))
    _write_json(
        args.output_json,
        json.dumps(report_to_dict(report, top_n=args.top_n), indent=2, ensure_ascii=False),
    )

    repo: Optional[SQLiteRepository] = None
    if config.storage.enabled:
        repo = persist_report(config, report)

    if repo and args.history > 0:
        print(f"\n最近 {args.history} 期利润快照：")
        for stored in repo.fetch_recent_summaries(limit=args.history):
            print(
                f"[{stored.id}] {stored.start}~{stored.end} | Revenue {stored.total_revenue:,.2f} | "
                f"Net {stored.total_net_profit:,.2f} | Margin {stored.avg_profit_margin:.2f}%"
            )


def _build_query_spec(args: argparse.Namespace) -> QuerySpec:
    if args.template:
        return get_template(args.template).to_spec()
    date_range = {"preset": args.preset}
    if args.start and args.end:
        date_range = {"preset": "custom", "start": args.start, "end": args.end}
    return QuerySpec.from_dict(
        {
            "metric": args.metric,
            "group_by": args.group_by,
            "filters": {
                "marketplaces": args.filter_marketplace,
                "fulfillment": args.fulfillment,
                "category": args.category,
            },
            "date_range": date_range,
            "sort": args.sort,
            "limit": args.limit,
        }
    )


def _run_query(args: argparse.Namespace, config: AppConfig, pipeline: ProfitabilityPipeline) -> None:
    if args.list_templates:
        for template in QUERY_TEMPLATES:
            print(f"{template.template_id}: {template.title} - {template.description}")
        return
    spec = _build_query_spec(args)
    validate_spec(spec)
    start, end = resolve_date_range(spec.date_range)
    results = execute(
        pipeline.fetch(start, end, "ALL"),
        spec,
        config=pipeline.cost_configuration(),
        base_currency=config.dashboard.base_currency,
    )
    print(format_query_results(results))
    _write_json(args.output_json, json.dumps(query_results_to_dict(results), indent=2, ensure_ascii=False))


def _run_export(args: argparse.Namespace, config: AppConfig, pipeline: ProfitabilityPipeline) -> None:
    start, end = parse_date(args.start), parse_date(args.end)
    if args.bulk:
        report = pipeline.run(start=start, end=end, marketplace="ALL")
        payload = build_bulk_pricing_export(report.skus, start=report.start, end=report.end)
    else:
        report = pipeline.run(start=start, end=end)
        payload = build_pricing_export(
            report.categories,
            report.skus,
            marketplace=config.dashboard.marketplace,
            start=report.start,
            end=report.end,
            refund_recovery_rate=config.costs.refund_recovery_rate,
            split_fbm_origin=args.split_fbm_origin,
        )
    text = payload_to_json(payload)
    if args.output_json:
        _write_json(args.output_json, text)
    else:
        print(text)


def run_cli(argv: Optional[List[str]] = None) -> None:
    """
    功能说明:
        命令行主入口：读取参数、构建管道并分派到子命令。
    参数:
        argv (Optional[List[str]]): 手动传入的参数列表。
    """
    args = parse_args(argv)
    config = build_config(args)
    pipeline = ProfitabilityPipeline(config=config, data_source=create_default_mock_source(config))
    handlers = {
        "report": _run_report,
        "query": _run_query,
        "export-pricing": _run_export,
    }
    handlers[args.command](args, config, pipeline)


if __name__ == "__main__":  # pragma: no cover
    run_cli()
