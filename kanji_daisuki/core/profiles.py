"""
Profile Service

Public profile pages and the member's own settings.

Rules (enforced in code):
- Profiles are looked up by username; an unknown username is not found
- A page shows the kanji only once the claim is finalized, with the
  reason from the finalized selection attempt
- Settings replace all five fields at once; blank values are stored as
  None. display_name and bio are trimmed, bio is at most MAX_BIO_LENGTH
  characters, country and age_group must come from their fixed lists
- Bios and display names are free text, never script-gated
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, TYPE_CHECKING

from ..observability import get_logger
from ..schemas import Kanji, Post, Profile
from .posting import ValidationRejected
from .text_gate import strip_whitespace

if TYPE_CHECKING:
    from ..db.store import Store


logger = get_logger(__name__)

MAX_BIO_LENGTH = 200

COUNTRIES = (
    "japan", "usa", "china", "korea", "taiwan", "uk",
    "france", "germany", "brazil", "canada", "australia", "other",
)
AGE_GROUPS = ("10s", "20s", "30s", "40s", "50+")


class ProfileNotFound(Exception):
    pass


@dataclass
class ProfilePage:
    profile: Profile
    kanji: Optional[Kanji] = None
    reason: Optional[str] = None
    selected_at: Optional[datetime] = None
    posts: list[Post] = field(default_factory=list)


def _blank_to_none(value: Optional[str], trim: bool = False) -> Optional[str]:
    if value is None:
        return None
    if trim:
        value = strip_whitespace(value)
    return value or None


class ProfileService:
    """Reads profile pages and writes member settings through a Store."""

    def __init__(self, store: "Store"):
        self._store = store

    def profile_page(self, username: str, post_limit: int = 50) -> ProfilePage:
        profile = self._store.get_profile_by_username(username)
        if profile is None:
            raise ProfileNotFound(f"No member named {username}")

        page = ProfilePage(
            profile=profile,
            posts=self._store.list_posts(limit=post_limit, user_id=profile.id),
        )
        if profile.has_finalized_claim and profile.selected_kanji_id is not None:
            page.kanji = self._store.get_kanji(profile.selected_kanji_id)
            for attempt in self._store.list_selection_attempts(profile.id):
                if attempt.is_finalized and attempt.kanji_id == profile.selected_kanji_id:
                    page.reason = attempt.reason
                    page.selected_at = attempt.selected_at
        return page

    def update_settings(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar_url: Optional[str] = None,
        country: Optional[str] = None,
        age_group: Optional[str] = None,
    ) -> Profile:
        if self._store.get_profile(user_id) is None:
            raise ProfileNotFound(f"Profile {user_id} does not exist")

        bio = _blank_to_none(bio, trim=True)
        if bio is not None and len(bio) > MAX_BIO_LENGTH:
            raise ValidationRejected(f"Bio must be under {MAX_BIO_LENGTH} characters")

        country = _blank_to_none(country)
        if country is not None and country not in COUNTRIES:
            raise ValidationRejected(f"Unknown country: {country}")

        age_group = _blank_to_none(age_group)
        if age_group is not None and age_group not in AGE_GROUPS:
            raise ValidationRejected(f"Unknown age group: {age_group}")

        profile = self._store.upsert_profile(
            user_id,
            display_name=_blank_to_none(display_name, trim=True),
            bio=bio,
            avatar_url=_blank_to_none(avatar_url),
            country=country,
            age_group=age_group,
        )
        logger.info("Settings updated", user_id=user_id)
        return profile
