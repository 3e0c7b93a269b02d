"""Unit tests for display and JSON serialization helpers."""

import unittest
from datetime import date
from decimal import Decimal

from positionflow.core.models import Position, PositionMatch, Strategy, StrategyLeg
from positionflow.services.display import (
    format_breakevens,
    format_currency,
    format_dte,
    format_instrument,
    format_legs,
    format_percent,
    format_quantity,
)
from positionflow.services.json_serializer import (
    serialize_decimal,
    serialize_match,
    serialize_position,
    serialize_strategy,
)


def _option_position(**overrides) -> Position:
    return Position(
        position_key=overrides.get("position_key", "alice|option|AAPL|2024-02-16|C|10000|0"),
        user_id="alice",
        symbol="AAPL",
        asset_type=overrides.get("asset_type", "option"),
        side="long",
        multiplier=Decimal("100"),
        opened_at=date(2024, 1, 2),
        strike_price=overrides.get("strike_price", Decimal("100.00")),
        expiration_date=date(2024, 2, 16),
        option_type="call",
        contract_month=overrides.get("contract_month"),
        opening_quantity=Decimal("2"),
        current_quantity=Decimal("2"),
        total_cost_basis=Decimal("-1000.00"),
        id=7,
    )


def _leg(side, strike, option_type="call") -> StrategyLeg:
    return StrategyLeg(
        position_key=f"{side}-{strike}",
        asset_type="option",
        side=side,
        quantity=Decimal("1"),
        opening_price=Decimal("2"),
        status="open",
        strike=Decimal(strike),
        expiration=date(2024, 2, 16),
        option_type=option_type,
    )


class TestDisplayFormatting(unittest.TestCase):
    def test_format_currency(self):
        self.assertEqual(format_currency(Decimal("1234.5")), "$1,234.50")
        self.assertEqual(format_currency(Decimal("-0.005")), "-$0.01")
        self.assertEqual(format_currency(None), "--")

    def test_format_percent(self):
        self.assertEqual(format_percent(Decimal("9.2307")), "9.23%")
        self.assertEqual(format_percent(None), "--")

    def test_format_quantity(self):
        self.assertEqual(format_quantity(Decimal("10.000")), "10")
        self.assertEqual(format_quantity(Decimal("1500")), "1,500")
        self.assertEqual(format_quantity(Decimal("0.50")), "0.5")

    def test_format_instrument(self):
        self.assertEqual(format_instrument(_option_position()), "AAPL 2024-02-16 100 CALL")
        futures = _option_position(asset_type="futures", strike_price=None, contract_month="DEC24")
        self.assertEqual(format_instrument(futures), "AAPL DEC24")
        stock = _option_position(asset_type="stock", strike_price=None)
        self.assertEqual(format_instrument(stock), "AAPL")

    def test_format_dte_only_for_open_positions(self):
        position = _option_position()
        closed = _option_position()
        closed.status = "closed"

        self.assertEqual(format_dte(position, as_of=date(2024, 2, 6)), "10")
        self.assertEqual(format_dte(position, as_of=date(2024, 3, 1)), "0")
        self.assertEqual(format_dte(closed, as_of=date(2024, 2, 6)), "--")

    def test_format_legs_and_breakevens(self):
        strategy = Strategy(
            strategy_key="k",
            user_id="alice",
            strategy_type="vertical_spread",
            underlying_symbol="AAPL",
            opened_at=date(2024, 1, 2),
            legs=(_leg("long", "100"), _leg("short", "105")),
            breakeven_points=(Decimal("103"),),
        )

        self.assertEqual(format_legs(strategy.legs), "+1 100C / -1 105C")
        self.assertEqual(format_breakevens(strategy), "$103.00")


class TestJsonSerializer(unittest.TestCase):
    def test_serialize_decimal_strips_exponent_and_zeros(self):
        self.assertEqual(serialize_decimal(Decimal("1350.00")), "1350")
        self.assertEqual(serialize_decimal(Decimal("-0.50")), "-0.5")
        self.assertEqual(serialize_decimal("text"), "text")

    def test_serialize_position(self):
        data = serialize_position(_option_position())

        self.assertEqual(data["id"], 7)
        self.assertEqual(data["strike_price"], "100")
        self.assertEqual(data["expiration_date"], "2024-02-16")
        self.assertEqual(data["total_cost_basis"], "-1000")
        self.assertIsNone(data["closed_at"])

    def test_serialize_match_and_strategy(self):
        match = PositionMatch(
            position_key="k",
            opening_transaction_id=1,
            closing_transaction_id=2,
            matched_quantity=Decimal("4"),
            opening_price=Decimal("150"),
            closing_price=Decimal("160"),
            realized_pl=Decimal("40.00"),
            matched_at=date(2024, 1, 5),
        )
        strategy = Strategy(
            strategy_key="k",
            user_id="alice",
            strategy_type="straddle",
            underlying_symbol="AAPL",
            opened_at=date(2024, 1, 2),
            legs=(_leg("long", "100"), _leg("long", "100", option_type="put")),
            confidence=Decimal("0.90"),
        )

        self.assertEqual(serialize_match(match)["realized_pl"], "40")
        self.assertEqual(serialize_match(match)["matched_at"], "2024-01-05")
        data = serialize_strategy(strategy)
        self.assertEqual(data["confidence"], "0.9")
        self.assertEqual([leg["option_type"] for leg in data["legs"]], ["call", "put"])
        self.assertIsNone(data["max_risk"])
