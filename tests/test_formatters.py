from __future__ import annotations

from decimal import Decimal

from facturador.utils.formatters import format_amount, format_crc


class TestFormatCrc:
    def test_simple(self):
        assert format_crc("1000") == "₡1 000,00"

    def test_with_decimals(self):
        assert format_crc("1234.5") == "₡1 234,50"

    def test_small(self):
        assert format_crc("5.5") == "₡5,50"

    def test_zero(self):
        assert format_crc("0") == "₡0,00"

    def test_large(self):
        assert format_crc("1234567.89") == "₡1 234 567,89"

    def test_rounds_half_up(self):
        assert format_crc(Decimal("0.125")) == "₡0,13"


class TestFormatAmount:
    def test_crc(self):
        assert format_amount("295.5", "CRC") == "₡295,50"

    def test_usd(self):
        assert format_amount("3640.5", "USD") == "US$ 3,640.50"

    def test_eur(self):
        assert format_amount("10", "EUR") == "€ 10.00"

    def test_unknown_currency_uses_code(self):
        assert format_amount("10", "MXN") == "MXN 10.00"
