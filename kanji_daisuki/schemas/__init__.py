# Canonical Schemas for Kanji Daisuki
# Kanji are scarce; posts are Japanese-only.

from .kanji import Kanji, CAPACITY_LIMIT
from .profile import Profile
from .selection import SelectionAttempt, WizardStep, WizardState
from .post import Post, Comment

__all__ = [
    # Kanji
    "Kanji",
    "CAPACITY_LIMIT",
    # Profile
    "Profile",
    # Selection
    "SelectionAttempt",
    "WizardStep",
    "WizardState",
    # Posts
    "Post",
    "Comment",
]
