"""Kanji search for the selection grid."""

from typing import Iterable, Optional

from ..schemas import CAPACITY_LIMIT, Kanji
from .text_gate import strip_whitespace


def _contains(value: Optional[str], query: str) -> bool:
    return value is not None and query in value.lower()


def search_kanjis(
    kanjis: Iterable[Kanji],
    query: Optional[str] = None,
    jlpt_level: int = 0,
    available_only: bool = False,
    limit: int = CAPACITY_LIMIT,
) -> list[Kanji]:
    """
    Filter kanji, keeping input order.

    `query` is a case-insensitive substring of the character, either
    reading or the English meaning. A `jlpt_level` of 0 matches every
    level. `available_only` drops kanji with no slot left under `limit`.

    >>> [k.char for k in search_kanjis([Kanji(id=1, char="猫", meaning_en="Cat")], "cat")]
    ['猫']
    """
    query = strip_whitespace(query or "").lower()
    results = []
    for kanji in kanjis:
        if query and not (
            query in kanji.char
            or _contains(kanji.reading_kun, query)
            or _contains(kanji.reading_on, query)
            or _contains(kanji.meaning_en, query)
        ):
            continue
        if jlpt_level and kanji.jlpt_level != jlpt_level:
            continue
        if available_only and kanji.current_users >= limit:
            continue
        results.append(kanji)
    return results
