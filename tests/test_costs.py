import pytest

from profitability_dashboard.data_sources.base import FulfillmentType, Marketplace, TransactionType
from profitability_dashboard.metrics.costs import (
    GRADE_AND_RESELL,
    UNCATEGORIZED,
    CostConfiguration,
    ProductCost,
    ShippingBracket,
    ShippingRateTable,
    ShippingRoute,
    allocate,
    default_country_rules,
    resolve_category,
)
from profitability_dashboard.metrics.currency import ConversionError


@pytest.fixture
def us_costs():
    return CostConfiguration(
        advertising_percent=10.0,
        fba_cost_percent=2.0,
        fbm_cost_percent=5.0,
        refund_recovery_rate=0.3,
        sku_costs={"A": ProductCost(unit_cost=30.0, weight_class=1.0)},
        countries=default_country_rules(),
    )


def test_fba_order_gets_fba_only_costs(make_tx, us_costs):
    breakdown = allocate(make_tx(selling_fees=-15.0, fba_fees=-3.2), us_costs)

    assert breakdown.revenue == pytest.approx(100.0)
    assert breakdown.selling_fees == pytest.approx(15.0)
    assert breakdown.fba_fees == pytest.approx(3.2)
    assert breakdown.advertising == pytest.approx(10.0)
    assert breakdown.fba_cost == pytest.approx(2.0)
    assert breakdown.fbm_cost == 0.0
    assert breakdown.product_cost == pytest.approx(30.0)
    assert breakdown.shipping == pytest.approx(1.0)
    assert breakdown.customs == 0.0
    assert breakdown.ddp == 0.0
    assert breakdown.net_profit == pytest.approx(100 - 15 - 3.2 - 10 - 2 - 30 - 1)


def test_fbm_order_never_carries_fba_fees(make_tx, us_costs):
    breakdown = allocate(make_tx(fulfillment=FulfillmentType.FBM, fba_fees=-3.2), us_costs)

    assert breakdown.fba_fees == 0.0
    assert breakdown.fba_cost == 0.0
    assert breakdown.fbm_cost == pytest.approx(5.0)
    # 美国站直发与本地仓并存时，关税、DDP 与仓储费各计一半。
    assert breakdown.customs == pytest.approx(4.25)
    assert breakdown.ddp == pytest.approx(1.25)
    assert breakdown.warehouse == pytest.approx(1.5)
    assert breakdown.shipping == pytest.approx(1.0)


def test_fbm_import_uses_shipping_table(make_tx):
    config = CostConfiguration(
        sku_costs={"A": ProductCost(unit_cost=10.0, weight_class=0.8)},
        shipping_rates=ShippingRateTable(
            routes={
                "EU": ShippingRoute(
                    currency="USD",
                    brackets=(ShippingBracket(0.5, 3.0), ShippingBracket(1.0, 5.0)),
                )
            }
        ),
    )
    tx = make_tx(marketplace=Marketplace.DE, fulfillment=FulfillmentType.FBM, quantity=2, sales=50.0)
    breakdown = allocate(tx, config)

    assert breakdown.shipping == pytest.approx(10.0)
    assert breakdown.has_shipping_data


def test_refund_reverses_product_cost_and_records_loss(make_tx, us_costs):
    refund = make_tx(type=TransactionType.REFUND, quantity=-1, sales=-100.0, selling_fees=5.0)
    breakdown = allocate(refund, us_costs)

    assert breakdown.revenue == pytest.approx(-100.0)
    assert breakdown.quantity == 0
    assert breakdown.refunded_quantity == 1
    assert breakdown.product_cost == pytest.approx(-30.0)
    assert breakdown.refund_loss == pytest.approx(21.0)
    assert breakdown.selling_fees == 0.0


def test_missing_cost_entry_flags_row(make_tx, us_costs):
    breakdown = allocate(make_tx(sku="UNKNOWN-SKU"), us_costs)

    assert not breakdown.has_cost_data
    assert breakdown.product_cost == 0.0
    assert breakdown.revenue == pytest.approx(100.0)


def test_category_cost_is_used_when_sku_missing():
    config = CostConfiguration(category_costs={"Toys": 5.0}, sku_costs={"A": ProductCost(unit_cost=1.0)})

    assert config.unit_cost("A", "Toys") == 1.0
    assert config.unit_cost("B", "Toys") == 5.0
    assert config.unit_cost("B", "Garden") is None


def test_fba_without_weight_has_no_shipping_data(make_tx):
    config = CostConfiguration(sku_costs={"A": ProductCost(unit_cost=10.0)}, countries=default_country_rules())
    breakdown = allocate(make_tx(), config)

    assert breakdown.shipping == 0.0
    assert not breakdown.has_shipping_data


def test_unknown_marketplace_raises(make_tx, us_costs):
    with pytest.raises(ConversionError):
        allocate(make_tx(marketplace=Marketplace.UNKNOWN), us_costs)


@pytest.mark.parametrize("rate", [-0.1, 1.5])
def test_recovery_rate_must_be_a_fraction(rate):
    with pytest.raises(ValueError):
        CostConfiguration(refund_recovery_rate=rate)


def test_negative_percent_rejected():
    with pytest.raises(ValueError):
        CostConfiguration(advertising_percent=-1)


def test_resolve_category():
    assert resolve_category("A", " Toys ") == "Toys"
    assert resolve_category("amzn.gr.123", "") == GRADE_AND_RESELL
    assert resolve_category("A", None) == UNCATEGORIZED
