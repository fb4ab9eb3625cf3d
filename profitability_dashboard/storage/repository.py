from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..metrics.calculations import ProfitabilityReport


@dataclass
class StoredCategory:
    """数据库中记录的类目利润信息。"""

    category: str
    revenue: float
    net_profit: float
    profit_margin: float
    quantity: int
    refunded_quantity: int
    has_cost_data: bool


@dataclass
class StoredSummary:
    """数据库中保存的利润汇总快照。"""

    id: int
    start: str
    end: str
    source: str
    currency: str
    total_revenue: float
    total_net_profit: float
    total_orders: int
    total_quantity: int
    avg_profit_margin: float
    cost_coverage_percent: float
    created_at: str
    categories: List[StoredCategory]


class SQLiteRepository:
    """基于 SQLite 的利润快照仓储。"""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """初始化数据库文件及表结构。"""

        if not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self._db_path) as conn:
            conn.execute("PRAGMA foreign_keys = ON;")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS summaries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    source TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    total_revenue REAL NOT NULL,
                    total_net_profit REAL NOT NULL,
                    total_orders INTEGER NOT NULL,
                    total_quantity INTEGER NOT NULL,
                    avg_profit_margin REAL NOT NULL,
                    cost_coverage_percent REAL NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    summary_id INTEGER NOT NULL,
                    category TEXT NOT NULL,
                    revenue REAL NOT NULL,
                    net_profit REAL NOT NULL,
                    profit_margin REAL NOT NULL,
                    quantity INTEGER NOT NULL,
                    refunded_quantity INTEGER NOT NULL,
                    has_cost_data INTEGER NOT NULL,
                    UNIQUE(summary_id, category),
                    FOREIGN KEY(summary_id) REFERENCES summaries(id) ON DELETE CASCADE
                );
                """
            )

    def save_report(self, report: ProfitabilityReport) -> int:
        """将 ProfitabilityReport 的顶层指标与类目结果写入数据库并返回生成的主键。"""

        created_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        totals = report.totals
        with sqlite3.connect(self._db_path) as conn:
            conn.execute("PRAGMA foreign_keys = ON;")
            cursor = conn.execute(
                """
                INSERT INTO summaries (
                    start_date, end_date, source, currency,
                    total_revenue, total_net_profit, total_orders, total_quantity,
                    avg_profit_margin, cost_coverage_percent, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    report.start.isoformat(),
                    report.end.isoformat(),
                    report.source_name,
                    report.base_currency,
                    totals.total_revenue,
                    totals.total_net_profit,
                    totals.total_orders,
                    totals.total_quantity,
                    totals.avg_profit_margin,
                    totals.cost_coverage_percent,
                    created_at,
                ),
            )
            summary_id = cursor.lastrowid

            category_rows = [
                (
                    summary_id,
                    category.key,
                    category.total_revenue,
                    category.net_profit,
                    category.profit_margin,
                    category.total_quantity,
                    category.refunded_quantity,
                    int(category.has_cost_data),
                )
                for category in report.categories
            ]
            conn.executemany(
                """
                INSERT OR REPLACE INTO categories (
                    summary_id, category, revenue, net_profit, profit_margin,
                    quantity, refunded_quantity, has_cost_data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                category_rows,
            )
        return summary_id

    def fetch_recent_summaries(self, limit: int = 10) -> List[StoredSummary]:
        """按时间逆序返回最近的汇总记录。"""

        with sqlite3.connect(self._db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = list(
                conn.execute(
                    """
                    SELECT * FROM summaries
                    ORDER BY start_date DESC, id DESC
                    LIMIT ?
                    """,
                    (limit,),
                )
            )
            return [self._to_summary(conn, row) for row in rows]

    def fetch_by_start_date(self, start: str) -> Optional[StoredSummary]:
        """根据起始日期查找单条快照，用于同比等场景。"""

        with sqlite3.connect(self._db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                """
                SELECT * FROM summaries
                WHERE start_date = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (start,),
            ).fetchone()
            if not row:
                return None
            return self._to_summary(conn, row)

    def _to_summary(self, conn: sqlite3.Connection, row: sqlite3.Row) -> StoredSummary:
        return StoredSummary(
            id=row["id"],
            start=row["start_date"],
            end=row["end_date"],
            source=row["source"],
            currency=row["currency"],
            total_revenue=row["total_revenue"],
            total_net_profit=row["total_net_profit"],
            total_orders=row["total_orders"],
            total_quantity=row["total_quantity"],
            avg_profit_margin=row["avg_profit_margin"],
            cost_coverage_percent=row["cost_coverage_percent"],
            created_at=row["created_at"],
            categories=self._fetch_categories(conn, row["id"]),
        )

    def _fetch_categories(self, conn: sqlite3.Connection, summary_id: int) -> List[StoredCategory]:
        """获取指定快照的类目列表。"""

        category_rows = conn.execute(
            """
            SELECT category, revenue, net_profit, profit_margin,
                   quantity, refunded_quantity, has_cost_data
            FROM categories
            WHERE summary_id = ?
            ORDER BY revenue DESC, category ASC
            """,
            (summary_id,),
        )
        return [
            StoredCategory(
                category=row[0],
                revenue=row[1],
                net_profit=row[2],
                profit_margin=row[3],
                quantity=row[4],
                refunded_quantity=row[5],
                has_cost_data=bool(row[6]),
            )
            for row in category_rows
        ]
