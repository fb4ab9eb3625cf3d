import json
from datetime import date

import pytest

from profitability_dashboard.data_sources.base import Marketplace
from profitability_dashboard.metrics.currency import (
    DEFAULT_RATES,
    ConversionError,
    ExchangeRateTable,
    RateHistory,
    build_rate_matrix,
    currency_for_marketplace,
    load_rate_history,
    normalize,
    resolve_rates,
)


def test_same_currency_rate_is_one():
    assert DEFAULT_RATES.rate("EUR", "EUR") == 1.0
    assert normalize(42.5, "usd", "USD") == pytest.approx(42.5)


def test_normalize_uses_fallback_matrix():
    assert normalize(100, "GBP") == pytest.approx(127.0)
    assert normalize(10.0, "EUR") == pytest.approx(10.5)


def test_missing_pair_raises_even_for_zero_amount():
    table = ExchangeRateTable(rates={"USD": {"USD": 1}})
    with pytest.raises(ConversionError) as excinfo:
        table.convert(0, "JPY", "USD")
    assert excinfo.value.source == "JPY"
    assert excinfo.value.target == "USD"


def test_unknown_marketplace_has_no_currency():
    assert currency_for_marketplace(Marketplace.UK) == "GBP"
    with pytest.raises(ConversionError):
        currency_for_marketplace(Marketplace.UNKNOWN)


def test_build_rate_matrix_crosses_usd_quotes():
    table = build_rate_matrix({"EUR": 0.9, "GBP": 0.8})
    assert table.rate("EUR", "USD") == pytest.approx(1 / 0.9)
    assert table.rate("EUR", "GBP") == pytest.approx(0.8 / 0.9)
    # 固定汇率自动补齐。
    assert table.rate("USD", "AED") == pytest.approx(3.6725)


def test_rate_history_picks_latest_table_not_after_day():
    january = build_rate_matrix({"EUR": 0.9}, as_of=date(2024, 1, 1))
    february = build_rate_matrix({"EUR": 0.8}, as_of=date(2024, 2, 1))
    history = RateHistory([february, january])

    assert history.for_date(date(2024, 1, 15)) is january
    assert history.for_date(date(2024, 2, 1)) is february
    assert history.for_date(date(2023, 12, 1)) is january
    assert resolve_rates(history, date(2024, 3, 1)) is february
    assert resolve_rates(None, date(2024, 3, 1)) is DEFAULT_RATES


def test_load_rate_history_from_file(tmp_path):
    path = tmp_path / "rates.json"
    path.write_text(json.dumps({"2024-02-01": {"GBP": 0.5}, "2024-01-01": {"GBP": 0.8, "EUR": 0.9}}), encoding="utf-8")

    history = load_rate_history(path)

    assert history.for_date(date(2024, 1, 20)).rate("GBP", "USD") == pytest.approx(1.25)
    assert history.for_date(date(2024, 2, 10)).rate("GBP", "USD") == pytest.approx(2.0)
    assert history.for_date(date(2024, 2, 10)).rate("AED", "USD") == pytest.approx(1 / 3.6725)


def test_load_rate_history_rejects_bad_layout(tmp_path):
    path = tmp_path / "rates.json"
    path.write_text(json.dumps({"2024-02-01": 0.5}), encoding="utf-8")

    with pytest.raises(ValueError):
        load_rate_history(path)
