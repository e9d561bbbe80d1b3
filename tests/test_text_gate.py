"""
Tests for the Japanese-only text gate.

The gate is total: every string gets an answer and nothing raises.
"""

import pytest

from kanji_daisuki.core import GateResult, TextGate
from kanji_daisuki.core.text_gate import strip_whitespace


GRINNING_FACE = chr(0x1F600)      # astral emoji
ROCKET = chr(0x1F680)
ZWJ = chr(0x200D)
VS16 = chr(0xFE0F)
KANJI_EXT_B = chr(0x20B9F)        # 𠮟, outside the BMP


class TestAcceptable:
    """Text made only of allowed classes passes."""

    @pytest.mark.parametrize("text", [
        "こんにちは",
        "カタカナ",
        "漢字",
        "今日はいい天気ですね。",
        "「引用」、そして。",
        "全角！？",
        "ｶﾀｶﾅ",
        "ＡＢＣ１２３",
        "東京タワー\n行きたい",
        "ひらがな　カタカナ",
        "晴れ☀️",
        "猫❤",
    ])
    def test_japanese_text(self, text):
        assert TextGate.is_acceptable(text) is True

    def test_empty_and_whitespace(self):
        assert TextGate.is_acceptable("") is True
        assert TextGate.is_acceptable("   \n") is True
        assert TextGate.is_acceptable("\t\r\n") is True

    def test_astral_emoji_alone(self):
        """A non-BMP emoji is one character and must not be split."""
        assert TextGate.is_acceptable(GRINNING_FACE) is True
        assert TextGate.invalid_characters(GRINNING_FACE) == []
        assert TextGate.check(GRINNING_FACE) == GateResult(acceptable=True)

    def test_astral_emoji_in_text(self):
        assert TextGate.is_acceptable(f"ロケット{ROCKET}発射") is True

    def test_emoji_sequences(self):
        """Joiners and presentation selectors inside emoji sequences pass."""
        family = f"{chr(0x1F468)}{ZWJ}{chr(0x1F469)}{ZWJ}{chr(0x1F467)}"
        assert TextGate.is_acceptable(f"家族{family}") is True
        assert TextGate.is_acceptable(f"{chr(0x2764)}{VS16}") is True

    def test_kanji_outside_bmp(self):
        assert TextGate.is_acceptable(f"{KANJI_EXT_B}る") is True


class TestRejected:
    """Forbidden ASCII and foreign scripts fail."""

    @pytest.mark.parametrize("text", [
        "hello",
        "こんにちは world",
        "2024年",
        "a",
        "テストx",
    ])
    def test_ascii_letters_and_digits(self, text):
        assert TextGate.is_acceptable(text) is False

    @pytest.mark.parametrize("text", [
        "Привет",
        "مرحبا",
        "안녕하세요",
        "café",
        "日本語!",
        "日本語.",
        "価格は$",
    ])
    def test_other_scripts_and_ascii_symbols(self, text):
        assert TextGate.is_acceptable(text) is False

    def test_forbidden_inside_allowed_span(self):
        assert TextGate.is_acceptable("あいうえおAかきくけこ") is False


class TestInvalidCharacters:
    """Diagnostics report only ASCII letters/digits."""

    def test_distinct_in_first_occurrence_order(self):
        text = "こんにちは world 123"
        assert TextGate.is_acceptable(text) is False
        assert TextGate.invalid_characters(text) == ["w", "o", "r", "l", "d", "1", "2", "3"]

    def test_deduplicated(self):
        assert TextGate.invalid_characters("aAbBaa11") == ["a", "A", "b", "B", "1"]

    def test_case_is_significant(self):
        assert TextGate.invalid_characters("Hh") == ["H", "h"]

    def test_clean_text(self):
        assert TextGate.invalid_characters("") == []
        assert TextGate.invalid_characters("ひらがな") == []

    def test_other_scripts_not_reported(self):
        """Cyrillic fails the gate but is not listed."""
        assert TextGate.is_acceptable("Привет") is False
        assert TextGate.invalid_characters("Привет") == []

    def test_mixed_foreign_and_ascii(self):
        assert TextGate.invalid_characters("Привет x") == ["x"]

    def test_fullwidth_alphanumerics_not_reported(self):
        assert TextGate.invalid_characters("ＡＢＣ１") == []


class TestCheck:
    def test_acceptable_result(self):
        result = TextGate.check("ありがとう")
        assert result.acceptable is True
        assert result.invalid_characters == []
        assert result.message == ""

    def test_message_lists_characters(self):
        result = TextGate.check("今日はsunny")
        assert result.acceptable is False
        assert result.invalid_characters == ["s", "u", "n", "y"]
        assert result.message == "Japanese only! Invalid characters: s, u, n, y"

    def test_message_without_reportable_characters(self):
        result = TextGate.check("Привет")
        assert result.acceptable is False
        assert result.message == "Japanese only!"


class TestWhitespace:
    """Only the ECMAScript whitespace set counts as whitespace."""

    @pytest.mark.parametrize("text", [
        chr(0x1C),
        chr(0x1F),
        f"あ{chr(0x85)}い",
        f"こんにちは{chr(0x1E)}",
        f"{chr(0x1D)}   ",
    ])
    def test_separator_controls_rejected(self, text):
        assert TextGate.is_acceptable(text) is False
        assert TextGate.check(text).message == "Japanese only!"

    @pytest.mark.parametrize("codepoint", [0x0B, 0x0C, 0xA0, 0x1680, 0x2003, 0x2028, 0x202F, 0xFEFF])
    def test_other_whitespace_accepted(self, codepoint):
        assert TextGate.is_acceptable(f"ねこ{chr(codepoint)}いぬ") is True
        assert TextGate.is_acceptable(chr(codepoint)) is True

    def test_strip_keeps_control_characters(self):
        assert strip_whitespace(f"  ねこ{chr(0x3000)}\n") == "ねこ"
        assert strip_whitespace(f"ねこ{chr(0x1E)} ") == f"ねこ{chr(0x1E)}"
