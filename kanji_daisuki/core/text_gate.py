"""
Japanese-Only Text Gate

Decides whether a piece of user text is acceptable as a post body.

ACCEPTANCE RULES (in this order):
1. Empty or all-whitespace text is acceptable.
2. Any ASCII letter or digit ([A-Za-z0-9]) rejects the text outright.
   This check runs first and applies everywhere, including inside
   otherwise-allowed spans.
3. Otherwise every character must belong to the allowed set:
   - Hiragana, Katakana
   - CJK Unified Ideographs (with Extension A and the supplementary
     ideographic blocks)
   - CJK symbols/punctuation and fullwidth forms
   - the emoji ranges below, plus emoji joiners and variation selectors
   - whitespace (including newlines), as listed in WHITESPACE

Python strings are sequences of code points, so astral characters
(U+1F600, U+20B9F) are matched as single characters and never split.

DIAGNOSTICS:
invalid_characters() reports only the ASCII letters/digits from rule 2.
Other rejected scripts (Cyrillic, Arabic, Latin-1 symbols) fail the gate
but are not listed. Posts and the composer rely on this exact behaviour.
"""

import re
from dataclasses import dataclass, field


HIRAGANA = "\u3040-\u309F"
KATAKANA = "\u30A0-\u30FF"
KANJI = (
    "\u4E00-\u9FFF"             # CJK Unified Ideographs
    "\u3400-\u4DBF"             # Extension A
    "\U00020000-\U0002EBEF"     # Extensions B-F
)
JAPANESE_PUNCTUATION = (
    "\u3000-\u303F"             # CJK symbols and punctuation
    "\uFF00-\uFFEF"             # Halfwidth and fullwidth forms
)
EMOJI = (
    "\U0001F300-\U0001F9FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "\U0001F600-\U0001F64F"
    "\U0001F680-\U0001F6FF"
    "\u200D"                      # zero width joiner
    "\uFE0E\uFE0F"              # text/emoji presentation selectors
)

# The ECMAScript \s set. Unlike Python's \s and str.strip(), it excludes
# U+001C-U+001F and U+0085.
WHITESPACE = (
    "\t\n\v\f\r "
    "\u00A0\u1680\u2000-\u200A\u2028\u2029\u202F\u205F\u3000\uFEFF"
)

_ALLOWED_PATTERN = re.compile(
    f"[{HIRAGANA}{KATAKANA}{KANJI}{JAPANESE_PUNCTUATION}{EMOJI}{WHITESPACE}]*"
)
_BLANK_PATTERN = re.compile(f"[{WHITESPACE}]*")
_EDGE_WHITESPACE = re.compile(f"^[{WHITESPACE}]+|[{WHITESPACE}]+$")
_FORBIDDEN_PATTERN = re.compile(r"[A-Za-z0-9]")


def strip_whitespace(text: str) -> str:
    """Trim leading/trailing WHITESPACE only (not other control characters)."""
    return _EDGE_WHITESPACE.sub("", text)


@dataclass(frozen=True)
class GateResult:
    """Outcome of running text through the gate."""
    acceptable: bool
    invalid_characters: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.acceptable:
            return ""
        if self.invalid_characters:
            return "Japanese only! Invalid characters: " + ", ".join(self.invalid_characters)
        return "Japanese only!"


class TextGate:
    """
    Japanese-only classifier.

    Stateless and total: every string input yields an answer, nothing
    raises.
    """

    @classmethod
    def is_acceptable(cls, text: str) -> bool:
        if not text or _BLANK_PATTERN.fullmatch(text):
            return True

        # Short-circuit before the full scan
        if _FORBIDDEN_PATTERN.search(text):
            return False

        return _ALLOWED_PATTERN.fullmatch(text) is not None

    @classmethod
    def invalid_characters(cls, text: str) -> list[str]:
        """
        Distinct ASCII letters/digits in order of first occurrence.

        >>> TextGate.invalid_characters("こんにちは world 123")
        ['w', 'o', 'r', 'l', 'd', '1', '2', '3']
        """
        if not text:
            return []
        seen = dict.fromkeys(ch for ch in text if _FORBIDDEN_PATTERN.fullmatch(ch))
        return list(seen)

    @classmethod
    def check(cls, text: str) -> GateResult:
        """Run both checks and return a result the composer can render."""
        if cls.is_acceptable(text):
            return GateResult(acceptable=True)
        return GateResult(
            acceptable=False,
            invalid_characters=cls.invalid_characters(text),
        )
