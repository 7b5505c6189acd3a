from __future__ import annotations

from datetime import date

import pytest

from facturador.services.exceptions import InvalidFormat, KeyLengthError
from facturador.utils.document_key import (
    build_consecutive,
    build_document_key,
    parse_consecutive,
    parse_document_key,
)


class TestBuildConsecutive:
    def test_format(self):
        assert build_consecutive("01", "01", "002", 1) == "01010020000000000001"

    def test_length(self):
        assert len(build_consecutive("04", "99", "999", 9999999999999)) == 20

    def test_prefix_is_type_terminal_branch(self):
        value = build_consecutive("01", "01", "002", 1)
        assert value[:7] == "0101002"
        assert value[7:] == "0000000000001"

    def test_terminal_not_padded(self):
        with pytest.raises(InvalidFormat, match="terminal"):
            build_consecutive("01", "1", "001", 1)

    def test_branch_not_padded(self):
        with pytest.raises(InvalidFormat, match="sucursal"):
            build_consecutive("01", "01", "1", 1)

    def test_branch_not_truncated(self):
        with pytest.raises(InvalidFormat, match="sucursal"):
            build_consecutive("01", "01", "0001", 1)

    def test_non_numeric_type(self):
        with pytest.raises(InvalidFormat, match="tipo_documento"):
            build_consecutive("FE", "01", "001", 1)

    def test_sequence_overflow(self):
        with pytest.raises(InvalidFormat):
            build_consecutive("01", "01", "001", 10**13)

    def test_negative_sequence(self):
        with pytest.raises(InvalidFormat):
            build_consecutive("01", "01", "001", -1)


class TestBuildDocumentKey:
    CONSECUTIVO = "01010010000000000001"

    def test_layout(self):
        key = build_document_key(
            "506", date(2024, 3, 5), "1", "3101123456", self.CONSECUTIVO, "12345678"
        )
        assert len(key) == 50
        assert key.isdigit()
        assert key.startswith("506")
        assert key[3:9] == "050324"
        assert key[9] == "1"
        assert key[10:22] == "003101123456"
        assert key[22:42] == self.CONSECUTIVO
        assert key.endswith("12345678")

    def test_issuer_left_padded(self):
        key = build_document_key("506", date(2024, 1, 1), "1", "123456789", self.CONSECUTIVO, "00000000")
        assert key[10:22] == "000123456789"

    def test_contingency_situation(self):
        key = build_document_key("506", date(2024, 1, 1), "2", "123456789", self.CONSECUTIVO, "00000000")
        assert key[9] == "2"

    def test_invalid_situation(self):
        with pytest.raises(InvalidFormat, match="situacion"):
            build_document_key("506", date(2024, 1, 1), "4", "123456789", self.CONSECUTIVO, "00000000")

    def test_short_security_code(self):
        with pytest.raises(InvalidFormat, match="codigo_seguridad"):
            build_document_key("506", date(2024, 1, 1), "1", "123456789", self.CONSECUTIVO, "1234")

    def test_issuer_too_long(self):
        with pytest.raises(InvalidFormat):
            build_document_key("506", date(2024, 1, 1), "1", "1234567890123", self.CONSECUTIVO, "12345678")

    def test_short_consecutive_is_not_padded(self):
        with pytest.raises(KeyLengthError) as exc_info:
            build_document_key("506", date(2024, 1, 1), "1", "123456789", "0101001000000001", "12345678")
        assert exc_info.value.expected == 50
        assert exc_info.value.actual == 46

    def test_long_consecutive_is_not_truncated(self):
        with pytest.raises(KeyLengthError):
            build_document_key("506", date(2024, 1, 1), "1", "123456789", self.CONSECUTIVO + "1", "12345678")


class TestParse:
    def test_parse_consecutive(self):
        parts = parse_consecutive("04010020000000000042")
        assert parts.tipo_documento == "04"
        assert parts.terminal == "01"
        assert parts.sucursal == "002"
        assert parts.sequence_value == 42

    def test_parse_consecutive_wrong_length(self):
        with pytest.raises(KeyLengthError):
            parse_consecutive("0401002")

    def test_parse_document_key(self):
        key = build_document_key(
            "506", date(2024, 3, 5), "3", "3101123456", "01010010000000000007", "87654321"
        )
        parts = parse_document_key(key)
        assert parts.country_code == "506"
        assert parts.emission_date == date(2024, 3, 5)
        assert parts.situation == "3"
        assert parts.issuer_id == "3101123456"
        assert parts.consecutive.sequence_value == 7
        assert parts.security_code == "87654321"

    def test_parse_document_key_non_digits(self):
        with pytest.raises(InvalidFormat):
            parse_document_key("X" * 50)

    def test_parse_document_key_bad_date(self):
        key = "506" + "320124" + "1" + "0" * 12 + "0" * 20 + "0" * 8
        with pytest.raises(InvalidFormat):
            parse_document_key(key)
