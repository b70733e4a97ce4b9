"""
Tests for value normalization utilities.
"""

import pytest

from relsync.utils.normalization import (
    name_completeness,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_string,
    normalize_title,
    phone_digits,
)


class TestNormalizeString:
    """Tests for normalize_string."""

    def test_empty_values(self):
        assert normalize_string(None) == ""
        assert normalize_string("") == ""

    def test_lowercases_and_removes_spaces(self):
        assert normalize_string("John Doe") == "johndoe"

    def test_keeps_single_spaces_when_requested(self):
        assert normalize_string("  John   Doe ", remove_spaces=False) == "john doe"

    def test_strips_accents(self):
        assert normalize_string("José Müller") == "josemuller"

    def test_strips_punctuation(self):
        assert normalize_string("O'Brien-Smith, Jr.") == "obriensmithjr"

    def test_keeps_punctuation_when_requested(self):
        assert normalize_string("a.b", strip_punctuation=False) == "a.b"

    def test_sort_words_handles_name_order(self):
        assert normalize_string("Doe John", sort_words=True) == normalize_string(
            "John Doe", sort_words=True
        )


class TestNormalizeEmail:
    """Tests for normalize_email."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Jane@X.com", "jane@x.com"),
            ("  jane@x.com  ", "jane@x.com"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize_email(self, raw, expected):
        assert normalize_email(raw) == expected


class TestNormalizePhone:
    """Tests for phone normalization."""

    def test_phone_digits(self):
        assert phone_digits("(555) 123-4567") == "5551234567"
        assert phone_digits(None) == ""

    def test_national_number_gets_country_code(self):
        assert normalize_phone("(555) 123-4567") == "+15551234567"

    def test_international_number_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_eleven_digits_with_country_code(self):
        assert normalize_phone("1-555-123-4567") == "+15551234567"

    def test_formats_converge(self):
        assert normalize_phone("555.123.4567") == normalize_phone("+1 555 123 4567")

    def test_no_digits(self):
        assert normalize_phone("ext.") == ""
        assert normalize_phone(None) == ""


class TestNames:
    """Tests for name and title normalization."""

    def test_normalize_name_trims_only(self):
        assert normalize_name("  Jane Smith ") == "Jane Smith"
        assert normalize_name("jane smith") != normalize_name("Jane Smith")

    def test_normalize_name_empty(self):
        assert normalize_name(None) == ""
        assert normalize_name("   ") == ""

    def test_normalize_title_casefolds(self):
        assert normalize_title("  Team SYNC ") == normalize_title("team sync")

    def test_name_completeness_prefers_tokens(self):
        assert name_completeness("Jane Smith") > name_completeness("Jane S.")
        assert name_completeness("J R Smith") > name_completeness("Jane Smithson")

    def test_name_completeness_breaks_ties_by_length(self):
        assert name_completeness("Jane Smith") > name_completeness("Jane Smit")

    def test_name_completeness_empty(self):
        assert name_completeness(None) == (0, 0)
