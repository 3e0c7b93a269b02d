from datetime import date
from decimal import Decimal

import pytest

from positionflow.core.models import Position
from positionflow.services.pnl import (
    average_price,
    market_value,
    quantize_money,
    realized_leg,
    unrealized_leg,
    value_position,
)


def _position(**overrides) -> Position:
    return Position(
        position_key=overrides.get("position_key", "key"),
        user_id=overrides.get("user_id", "alice"),
        symbol=overrides.get("symbol", "AAPL"),
        asset_type=overrides.get("asset_type", "option"),
        side=overrides.get("side", "long"),
        multiplier=overrides.get("multiplier", Decimal("100")),
        opened_at=overrides.get("opened_at", date(2024, 1, 2)),
        strike_price=overrides.get("strike_price", Decimal("100")),
        expiration_date=overrides.get("expiration_date", date(2024, 2, 16)),
        option_type=overrides.get("option_type", "call"),
        opening_quantity=overrides.get("opening_quantity", Decimal("1")),
        current_quantity=overrides.get("current_quantity", Decimal("1")),
        average_opening_price=overrides.get("average_opening_price", Decimal("5")),
        total_cost_basis=overrides.get("total_cost_basis", Decimal("-500")),
        open_cost_basis=overrides.get("open_cost_basis", Decimal("-500")),
        unrealized_pl=overrides.get("unrealized_pl", Decimal("0")),
    )


def test_realized_leg_sign_follows_side():
    assert realized_leg(
        Decimal("5"), Decimal("7"), Decimal("1"), Decimal("100"), True
    ) == Decimal("200.00")
    assert realized_leg(
        Decimal("5"), Decimal("7"), Decimal("1"), Decimal("100"), False
    ) == Decimal("-200.00")
    # Quantity sign is ignored; sides carry direction.
    assert realized_leg(
        Decimal("150"), Decimal("160"), Decimal("-4"), Decimal("1"), True
    ) == Decimal("40.00")


def test_market_value_longs_are_assets_and_shorts_liabilities():
    assert market_value("option", Decimal("2"), Decimal("3"), Decimal("100"), True) == Decimal(
        "600.00"
    )
    assert market_value("option", Decimal("2"), Decimal("3"), Decimal("100"), False) == Decimal(
        "-600.00"
    )
    # Stocks are never scaled by the contract multiplier.
    assert market_value("stock", Decimal("10"), Decimal("12.5"), Decimal("100"), True) == Decimal(
        "125.00"
    )


def test_market_value_of_futures_is_unrealized_pl_only():
    assert market_value(
        "futures",
        Decimal("1"),
        Decimal("5000"),
        Decimal("50"),
        True,
        unrealized_pl=Decimal("250"),
    ) == Decimal("250.00")
    with pytest.raises(ValueError):
        market_value("futures", Decimal("1"), Decimal("5000"), Decimal("50"), True)


def test_unrealized_leg_uses_cost_basis():
    long_value = unrealized_leg(
        Decimal("7"), Decimal("5"), Decimal("1"), Decimal("100"), True, Decimal("-500")
    )
    short_value = unrealized_leg(
        Decimal("1"), Decimal("2"), Decimal("1"), Decimal("100"), False, Decimal("200")
    )
    derived = unrealized_leg(
        Decimal("110"), Decimal("100"), Decimal("10"), Decimal("1"), True, asset_type="stock"
    )

    assert long_value == Decimal("200.00")
    assert short_value == Decimal("100.00")
    assert derived == Decimal("100.00")


def test_unrealized_leg_for_futures_uses_point_value():
    value = unrealized_leg(
        Decimal("5010"),
        Decimal("5000"),
        Decimal("2"),
        Decimal("50"),
        False,
        asset_type="futures",
    )

    assert value == Decimal("-1000.00")


def test_value_position_at_live_price():
    valuation = value_position(_position(), Decimal("7"))

    assert valuation.stale is False
    assert valuation.market_value == Decimal("700.00")
    assert valuation.unrealized_pl == Decimal("200.00")


def test_value_position_accepts_zero_option_price():
    valuation = value_position(_position(), Decimal("0"))

    assert valuation.stale is False
    assert valuation.market_value == Decimal("0.00")
    assert valuation.unrealized_pl == Decimal("-500.00")


def test_value_position_without_quote_falls_back_to_stored_pl():
    long_stale = value_position(_position(unrealized_pl=Decimal("120")), None)
    short_stale = value_position(
        _position(
            side="short",
            total_cost_basis=Decimal("200"),
            open_cost_basis=Decimal("200"),
            unrealized_pl=Decimal("50"),
        ),
        None,
    )
    stock_zero = value_position(
        _position(
            asset_type="stock",
            multiplier=Decimal("1"),
            strike_price=None,
            expiration_date=None,
            option_type=None,
            open_cost_basis=Decimal("-1500"),
            unrealized_pl=Decimal("-30"),
        ),
        Decimal("0"),
    )

    assert long_stale.stale is True
    assert long_stale.market_value == Decimal("620.00")
    assert long_stale.unrealized_pl == Decimal("120.00")
    assert short_stale.market_value == Decimal("-150.00")
    assert stock_zero.stale is True
    assert stock_zero.market_value == Decimal("1470.00")


def test_average_price_and_quantize_helpers():
    assert average_price(Decimal("1550"), Decimal("10")) == Decimal("155.0000")
    assert average_price(Decimal("10"), Decimal("0")) == Decimal("0")
    assert quantize_money(Decimal("-1.005")) == Decimal("-1.00")
    assert quantize_money(2.5) == Decimal("2.50")
