from __future__ import annotations

from fiscalbridge.utils.formatters import format_amount, format_timestamp


class TestFormatAmount:
    def test_simple(self):
        assert format_amount(1999) == "19.99"

    def test_thousands(self):
        assert format_amount(123456789) == "1,234,567.89"

    def test_small(self):
        assert format_amount(5) == "0.05"

    def test_whole(self):
        assert format_amount(100000) == "1,000.00"


class TestFormatTimestamp:
    def test_trims_to_seconds(self):
        assert format_timestamp("2026-03-01T10:15:30.123456+00:00") == "2026-03-01 10:15:30"

    def test_empty(self):
        assert format_timestamp(None) == "-"
        assert format_timestamp("") == "-"
