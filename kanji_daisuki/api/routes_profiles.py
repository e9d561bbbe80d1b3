"""
Profiles API

- GET /api/profiles/{username}   - Public profile page with held kanji and posts
- PUT /api/me/settings           - Update the current member's settings
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from kanji_daisuki.core import MAX_BIO_LENGTH, ProfileService
from kanji_daisuki.schemas import Kanji, Post, Profile
from kanji_daisuki.web.deps import require_profile
from kanji_daisuki.web.shared_store import get_profile_service


router = APIRouter(prefix="/api", tags=["Profiles"])


class ProfilePageResponse(BaseModel):
    profile: Profile
    kanji: Optional[Kanji] = None
    reason: Optional[str] = None
    selected_at: Optional[datetime] = None
    posts: list[Post]


class SettingsRequest(BaseModel):
    """Every field is replaced; omitted or blank fields are cleared."""
    display_name: Optional[str] = None
    bio: Optional[str] = Field(default=None, description=f"At most {MAX_BIO_LENGTH} characters")
    avatar_url: Optional[str] = None
    country: Optional[str] = None
    age_group: Optional[str] = None


@router.get(
    "/profiles/{username}",
    response_model=ProfilePageResponse,
    summary="Profile page",
)
def profile_page(
    username: str,
    limit: int = Query(default=50, ge=1, le=200),
    profiles: ProfileService = Depends(get_profile_service),
):
    page = profiles.profile_page(username, post_limit=limit)
    return ProfilePageResponse(
        profile=page.profile,
        kanji=page.kanji,
        reason=page.reason,
        selected_at=page.selected_at,
        posts=page.posts,
    )


@router.put("/me/settings", response_model=Profile, summary="Update settings")
def update_settings(
    body: SettingsRequest,
    profile: Profile = Depends(require_profile),
    profiles: ProfileService = Depends(get_profile_service),
):
    return profiles.update_settings(profile.id, **body.model_dump())
