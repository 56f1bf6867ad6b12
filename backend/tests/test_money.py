"""
Money helpers
"""
from decimal import Decimal

import pytest

from delivery_core.money import (
    MoneyError, amounts_match, from_minor_units, to_float, to_minor_units, totals_consistent,
)


class TestMoney:
    def test_tolerance_is_one_pesewa(self):
        assert amounts_match(25.0, 25.01)
        assert not amounts_match(25.0, 25.02)

    def test_float_artefacts_do_not_break_totals(self):
        assert totals_consistent(0.1, 0.2, 0.3)

    def test_minor_unit_conversion(self):
        assert to_minor_units(25.5) == 2550
        assert to_minor_units("19.999") == 2000
        assert from_minor_units(2550) == Decimal("25.50")

    def test_storage_rounding(self):
        assert to_float(Decimal("10.005")) == 10.01

    def test_bool_is_not_money(self):
        with pytest.raises(MoneyError):
            to_float(True)
