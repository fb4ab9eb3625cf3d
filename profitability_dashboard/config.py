"""利润分析项目的配置模型，支持环境变量加载。"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class DashboardConfig:
    """
    定义利润看板层面的关键调优参数。

    属性:
        marketplace (str): 目标站点代码，`ALL` 表示跨站点汇总。
        base_currency (str): 汇总使用的基准货币。
        refresh_window_days (int): 默认滚动窗口天数。
        top_n_products (int): 报告中关注的 Top 商品数量。
        materiality_threshold (float): 国家对比时参与排名的最低销售额。
        rates_file (Optional[str]): 按日期分桶的汇率 JSON 文件，缺省时使用内置兜底汇率。
    """

    marketplace: str = "ALL"
    base_currency: str = "USD"
    refresh_window_days: int = 30
    top_n_products: int = 20
    materiality_threshold: float = 100.0
    rates_file: Optional[str] = None

    @classmethod
    def from_env(cls, prefix: str = "DASHBOARD_") -> "DashboardConfig":
        """
        功能说明:
            从环境变量加载看板行为配置。
        参数:
            prefix (str): 环境变量前缀。
        返回:
            DashboardConfig: 包含窗口大小、基准货币及 TopN 等参数的实例。
        """
        return cls(
            marketplace=os.getenv(f"{prefix}MARKETPLACE", "ALL").upper(),
            base_currency=os.getenv(f"{prefix}BASE_CURRENCY", "USD").upper(),
            refresh_window_days=int(os.getenv(f"{prefix}WINDOW_DAYS", 30)),
            top_n_products=int(os.getenv(f"{prefix}TOP_N", 20)),
            materiality_threshold=float(os.getenv(f"{prefix}MATERIALITY_THRESHOLD", 100)),
            rates_file=os.getenv(f"{prefix}RATES_FILE") or None,
        )


@dataclass
class CostDefaultsConfig:
    """
    全局成本百分比的默认值，成本表由数据源另行提供。

    属性:
        advertising_percent (float): 广告费占销售额百分比。
        fba_cost_percent (float): FBA 额外运营成本百分比。
        fbm_cost_percent (float): FBM 额外运营成本百分比。
        refund_recovery_rate (float): 退货商品成本可回收比例，取值 0~1。
    """

    advertising_percent: float = 0.0
    fba_cost_percent: float = 0.0
    fbm_cost_percent: float = 0.0
    refund_recovery_rate: float = 0.3

    @classmethod
    def from_env(cls, prefix: str = "COSTS_") -> "CostDefaultsConfig":
        """
        功能说明:
            从环境变量读取全局成本百分比。
        参数:
            prefix (str): 变量名前缀。
        返回:
            CostDefaultsConfig: 成本默认值实例。
        """
        return cls(
            advertising_percent=float(os.getenv(f"{prefix}ADVERTISING_PERCENT", 0)),
            fba_cost_percent=float(os.getenv(f"{prefix}FBA_COST_PERCENT", 0)),
            fbm_cost_percent=float(os.getenv(f"{prefix}FBM_COST_PERCENT", 0)),
            refund_recovery_rate=float(os.getenv(f"{prefix}REFUND_RECOVERY_RATE", 0.3)),
        )


@dataclass
class StorageConfig:
    """
    描述利润汇总快照的持久化设置。

    属性:
        enabled (bool): 是否启用 SQLite 持久化能力。
        db_path (str): SQLite 文件路径，默认位于项目根目录。
    """

    enabled: bool = False
    db_path: str = "profitability_dashboard.sqlite3"

    @classmethod
    def from_env(cls, prefix: str = "STORAGE_") -> "StorageConfig":
        """
        功能说明:
            从环境变量读取持久化相关配置。
        参数:
            prefix (str): 变量名前缀。
        返回:
            StorageConfig: 启用标识以及数据库路径配置。
        """
        enabled_raw = os.getenv(f"{prefix}ENABLED", "0").lower()
        enabled = enabled_raw in {"1", "true", "yes"}
        db_path = os.getenv(f"{prefix}DB_PATH", "profitability_dashboard.sqlite3")
        return cls(enabled=enabled, db_path=db_path)


@dataclass
class AppConfig:
    """
    顶层组合配置，聚合看板、成本、存储与 LLM 设置。

    属性:
        dashboard (DashboardConfig): 看板运行参数。
        costs (CostDefaultsConfig): 全局成本百分比。
        storage (StorageConfig): 持久化相关设置。
        openai_api_key (Optional[str]): OpenAI API Key。
        openai_model (str): 默认模型名称。
        openai_temperature (float): 生成温度。
    """

    dashboard: DashboardConfig
    costs: CostDefaultsConfig
    storage: StorageConfig
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-5-mini"
    openai_temperature: float = 0.0

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        功能说明:
            统一从环境变量载入所有子配置。
        返回:
            AppConfig: 完整的应用配置实例。
        """
        return cls(
            dashboard=DashboardConfig.from_env(),
            costs=CostDefaultsConfig.from_env(),
            storage=StorageConfig.from_env(),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-5-mini"),
            openai_temperature=float(os.getenv("OPENAI_TEMPERATURE", "0")),
        )
