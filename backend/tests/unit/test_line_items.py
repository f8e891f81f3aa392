"""Unit tests for line item parsing"""

from decimal import Decimal

import pytest

from matching.ports import InvalidLineItemError, WholesaleLineItem, parse_price


class TestFromRow:
    """Test building line items from submitted rows"""

    def test_english_keys(self):
        """Test the plain English column names"""
        item = WholesaleLineItem.from_row({"name": " 中华(软) ", "price": "45", "quantity": "2", "unit": "条"})
        assert item.name == "中华(软)"
        assert item.price == Decimal("45")
        assert item.quantity == 2
        assert item.unit == "条"

    def test_chinese_keys(self):
        """Test the usual Chinese sheet headers"""
        item = WholesaleLineItem.from_row({"批发名": "玉溪硬", "批发价格": "¥23.50", "数量": 10})
        assert item.name == "玉溪硬"
        assert item.price == Decimal("23.50")
        assert item.quantity == 10

    def test_defaults(self):
        """Test missing optional fields"""
        item = WholesaleLineItem.from_row({"name": "黄鹤楼"})
        assert item.price is None
        assert item.quantity == 1
        assert item.supplier is None
        assert item.raw == {"name": "黄鹤楼"}

    def test_missing_name(self):
        """Test a row without a name is rejected"""
        with pytest.raises(InvalidLineItemError):
            WholesaleLineItem.from_row({"price": 10})

    def test_blank_name(self):
        """Test a whitespace-only name counts as missing"""
        with pytest.raises(InvalidLineItemError):
            WholesaleLineItem.from_row({"name": "   "})

    def test_negative_quantity(self):
        """Test quantities below zero are rejected"""
        with pytest.raises(InvalidLineItemError):
            WholesaleLineItem.from_row({"name": "中华", "quantity": -1})

    def test_not_an_object(self):
        """Test non-dict rows are rejected"""
        with pytest.raises(InvalidLineItemError):
            WholesaleLineItem.from_row(["中华", 45])


class TestParsePrice:
    """Test price cell parsing"""

    def test_currency_noise_removed(self):
        """Test currency symbols, separators and 元 are stripped"""
        assert parse_price("¥1,250.00") == Decimal("1250.00")
        assert parse_price("95元") == Decimal("95")

    def test_empty(self):
        """Test empty cells mean no price"""
        assert parse_price(None) is None
        assert parse_price(" ") is None

    def test_invalid(self):
        """Test malformed and negative prices are rejected"""
        with pytest.raises(InvalidLineItemError):
            parse_price("abc")
        with pytest.raises(InvalidLineItemError):
            parse_price("-5")
        with pytest.raises(InvalidLineItemError):
            parse_price(True)

    @pytest.mark.parametrize("value", ["NaN", "nan", "inf", "-Infinity", "sNaN"])
    def test_non_finite(self, value):
        """Test NaN and infinite prices are rejected as invalid line items"""
        with pytest.raises(InvalidLineItemError):
            parse_price(value)


class TestNonFiniteRows:
    """Test rows carrying non-finite numbers"""

    @pytest.mark.parametrize("row", [
        {"name": "中华(软)", "price": "NaN"},
        {"name": "中华(软)", "price": "sNaN"},
        {"name": "中华(软)", "price": "inf"},
        {"name": "中华(软)", "quantity": "inf"},
        {"name": "中华(软)", "quantity": "NaN"},
        {"name": "中华(软)", "quantity": "sNaN"},
    ])
    def test_rejected(self, row):
        """Test non-finite prices and quantities raise InvalidLineItemError"""
        with pytest.raises(InvalidLineItemError):
            WholesaleLineItem.from_row(row)
