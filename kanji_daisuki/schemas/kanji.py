"""
Canonical Kanji Schema

A kanji is a shared, scarce emblem.
At most CAPACITY_LIMIT members may hold the same one.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# Fixed maximum number of holders per kanji
CAPACITY_LIMIT = 10


class Kanji(BaseModel):
    """
    A claimable kanji.

    `current_users` is the only shared mutable value in the selection
    flow. It is changed exclusively through the store's conditional
    increment (and the admin release path), never by read-modify-write.
    """
    id: int = Field(
        ...,
        description="Stable numeric identifier"
    )

    char: str = Field(
        ...,
        min_length=1,
        max_length=1,
        description="The kanji itself (one code point)"
    )

    reading_kun: Optional[str] = Field(
        default=None,
        description="Native Japanese reading",
        examples=["はる"]
    )

    reading_on: Optional[str] = Field(
        default=None,
        description="Sino-Japanese reading",
        examples=["シュン"]
    )

    meaning_en: Optional[str] = Field(default=None, examples=["spring"])
    meaning_ja: Optional[str] = Field(default=None, examples=["はる"])

    stroke_count: Optional[int] = Field(default=None, ge=1)
    jlpt_level: Optional[int] = Field(default=None, ge=1, le=5)

    current_users: int = Field(
        default=0,
        ge=0,
        description="Number of members who have finalized this kanji"
    )

    created_at: Optional[datetime] = None

    @field_validator("char")
    @classmethod
    def _single_code_point(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("char must be exactly one character")
        return v

    def remaining_slots(self, limit: int = CAPACITY_LIMIT) -> int:
        return max(0, limit - self.current_users)

    def is_full(self, limit: int = CAPACITY_LIMIT) -> bool:
        return self.current_users >= limit

    class Config:
        json_schema_extra = {
            "example": {
                "id": 1,
                "char": "春",
                "reading_kun": "はる",
                "reading_on": "シュン",
                "meaning_en": "spring",
                "stroke_count": 9,
                "jlpt_level": 4,
                "current_users": 3,
            }
        }
