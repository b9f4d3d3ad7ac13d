"""
Open Bookkeeping Payroll - Money Helper Tests
"""

from decimal import Decimal

import pytest

from app.utils.money import format_minor, from_minor, percent_of, round_half_up, to_minor


class TestConversion:
    def test_to_minor(self):
        assert to_minor("5000.00") == 500000
        assert to_minor(Decimal("0.05")) == 5
        assert to_minor(12) == 1200

    @pytest.mark.parametrize("value", ["abc", "1.005", "NaN"])
    def test_to_minor_rejects_bad_amounts(self, value):
        with pytest.raises(ValueError):
            to_minor(value)

    def test_from_minor_and_format(self):
        assert from_minor(430675) == Decimal("4306.75")
        assert format_minor(550000) == "5500.00"
        assert format_minor(5) == "0.05"


class TestRounding:
    def test_half_up(self):
        assert round_half_up(Decimal("246.5")) == 247
        assert round_half_up(Decimal("246.49")) == 246

    def test_percent_of(self):
        assert percent_of(500000, Decimal("11")) == 55000
        assert percent_of(123425, Decimal("0.2")) == 247
        assert percent_of(0, Decimal("13")) == 0
