"""
Tests for scalar grammars and attribute-list escaping.
"""

from decimal import Decimal
from enum import Enum

import pytest

from treestate import DecodeError, Text
from treestate.scalars import (
    escape, unescape, join_escaped, split_escaped, format_scalar, parse_scalar,
)


class Mood(Enum):
    CALM = 1
    ANGRY = 2


class TestEscaping:
    """Test the ; separated list encoding."""

    @pytest.mark.parametrize("text", ["", "plain", "a;b", "back`tick", "`;`;", ";;", "``"])
    def test_unescape_inverts_escape(self, text):
        """Unescape restores the original text."""
        assert unescape(escape(text)) == text

    def test_escape_marks_separator_and_escape(self):
        """Separator and escape characters are escaped."""
        assert escape("a;b") == "a`;b"
        assert escape("c`") == "c``"

    def test_join_and_split(self):
        """Split inverts join."""
        joined = join_escaped(["a;b", "c`", "d"])

        assert joined == "a`;b;c``;d"
        assert split_escaped(joined) == ["a;b", "c`", "d"]

    def test_empty_string_is_empty_list(self):
        """Empty text is the empty list."""
        assert split_escaped("") == []

    def test_single_empty_element_is_not_representable(self):
        """[""] joins to the same text as []."""
        assert join_escaped([""]) == ""
        assert split_escaped(join_escaped([""])) == []

    def test_empty_elements_between_separators(self):
        """Adjacent separators give empty elements."""
        assert split_escaped(";a;") == ["", "a", ""]

    def test_trailing_escape_kept(self):
        """Lone trailing escape is kept literally."""
        assert unescape("abc`") == "abc`"
        assert split_escaped("abc`") == ["abc`"]


class TestScalars:
    """Test scalar formatting and parsing."""

    def test_bool_round_trip(self):
        """Booleans format and parse."""
        assert format_scalar(True, bool) == "true"
        assert format_scalar(False, bool) == "false"
        assert parse_scalar("true", bool) is True
        assert parse_scalar("No", bool) is False
        assert parse_scalar("1", bool) is True

    def test_bool_rejects_garbage(self):
        """Unknown boolean text is rejected."""
        with pytest.raises(DecodeError):
            parse_scalar("maybe", bool)

    def test_enum_by_name(self):
        """Enums use member names."""
        assert format_scalar(Mood.ANGRY, Mood) == "ANGRY"
        assert parse_scalar("CALM", Mood) is Mood.CALM
        with pytest.raises(DecodeError):
            parse_scalar("HAPPY", Mood)

    def test_int(self):
        """Integers format and parse."""
        assert parse_scalar(" -12 ", int) == -12
        with pytest.raises(DecodeError) as exc_info:
            parse_scalar("1.5", int, "Root@count")
        assert exc_info.value.path == "Root@count"

    def test_float_uses_repr(self):
        """Floats keep full precision."""
        assert format_scalar(0.1, float) == "0.1"
        assert parse_scalar("2.5", float) == 2.5

    def test_decimal(self):
        """Decimals parse exactly."""
        assert parse_scalar("12.50", Decimal) == Decimal("12.50")
        with pytest.raises(DecodeError):
            parse_scalar("twelve", Decimal)

    def test_text_keeps_whitespace(self):
        """Text is not stripped."""
        value = parse_scalar("  two  spaces ", Text)

        assert isinstance(value, Text)
        assert value == "  two  spaces "
