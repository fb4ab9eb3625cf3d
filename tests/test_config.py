from profitability_dashboard.config import AppConfig, CostDefaultsConfig, DashboardConfig, StorageConfig


def test_defaults_without_environment(monkeypatch):
    for name in (
        "DASHBOARD_MARKETPLACE",
        "DASHBOARD_BASE_CURRENCY",
        "DASHBOARD_WINDOW_DAYS",
        "DASHBOARD_TOP_N",
        "DASHBOARD_MATERIALITY_THRESHOLD",
        "DASHBOARD_RATES_FILE",
        "COSTS_REFUND_RECOVERY_RATE",
        "STORAGE_ENABLED",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    config = AppConfig.from_env()

    assert config.dashboard == DashboardConfig()
    assert config.costs.refund_recovery_rate == 0.3
    assert config.storage.enabled is False
    assert config.openai_api_key is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DASHBOARD_MARKETPLACE", "de")
    monkeypatch.setenv("DASHBOARD_WINDOW_DAYS", "7")
    monkeypatch.setenv("DASHBOARD_MATERIALITY_THRESHOLD", "250")
    monkeypatch.setenv("COSTS_ADVERTISING_PERCENT", "8.5")
    monkeypatch.setenv("STORAGE_ENABLED", "yes")
    monkeypatch.setenv("STORAGE_DB_PATH", "/tmp/history.sqlite3")

    assert DashboardConfig.from_env().marketplace == "DE"
    assert DashboardConfig.from_env().refresh_window_days == 7
    assert DashboardConfig.from_env().materiality_threshold == 250.0
    monkeypatch.setenv("DASHBOARD_RATES_FILE", "/tmp/rates.json")
    assert DashboardConfig.from_env().rates_file == "/tmp/rates.json"
    assert CostDefaultsConfig.from_env().advertising_percent == 8.5
    assert StorageConfig.from_env() == StorageConfig(enabled=True, db_path="/tmp/history.sqlite3")


def test_custom_prefix(monkeypatch):
    monkeypatch.setenv("ALT_BASE_CURRENCY", "eur")

    assert DashboardConfig.from_env(prefix="ALT_").base_currency == "EUR"
