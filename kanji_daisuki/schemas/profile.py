"""
Canonical Profile Schema

The claimant: a member in the context of kanji selection.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Profile(BaseModel):
    """
    A member profile.

    The user id is supplied by the external auth provider and treated
    as opaque. A member holds at most one kanji at a time; once
    `has_finalized_claim` is set the binding is permanent and posting
    is unlocked.
    """
    id: str = Field(
        ...,
        min_length=1,
        description="Opaque user id from the auth provider"
    )

    username: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    country: Optional[str] = None
    age_group: Optional[str] = None

    selected_kanji_id: Optional[int] = Field(
        default=None,
        description="Kanji currently bound to this member (tentative until finalized)"
    )

    has_finalized_claim: bool = Field(
        default=False,
        description="Set once the kanji slot has been claimed"
    )

    is_admin: bool = False

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
