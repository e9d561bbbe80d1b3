"""
Posting Service

Posts are the one place the Japanese-only rule is enforced. Everything
else (comments, selection reasons, bios) is free text.

Rules (enforced in code):
- Post bodies are trimmed, must be non-empty, must pass TextGate and
  must be at most MAX_POST_LENGTH characters
- Only members with a finalized kanji claim may post, unless open
  posting is enabled (KANJI_DAISUKI_OPEN_POSTING=1)
- Only the author may edit a post; the author or an admin may delete it
- Comments are trimmed, non-empty and length-limited, never script-gated
"""

import os
from typing import Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import Comment, Post, Profile
from .text_gate import GateResult, TextGate, strip_whitespace

if TYPE_CHECKING:
    from ..db.store import Store


logger = get_logger(__name__)

MAX_POST_LENGTH = 500
MAX_COMMENT_LENGTH = 500


class PostingError(Exception):
    """Base exception for posting errors."""
    pass


class ValidationRejected(PostingError):
    """
    Content failed validation.

    `invalid_characters` lists the offending ASCII letters/digits when the
    Japanese-only gate rejected the text; it is empty for length and
    emptiness failures.
    """

    def __init__(self, message: str, invalid_characters: Optional[list[str]] = None):
        super().__init__(message)
        self.invalid_characters = invalid_characters or []


class PostingLocked(PostingError):
    """Raised when a member without a finalized claim tries to post."""
    pass


class PostNotFound(PostingError):
    pass


class NotPermitted(PostingError):
    """Raised when a member acts on a post they do not own."""
    pass


def open_posting_enabled() -> bool:
    return os.getenv("KANJI_DAISUKI_OPEN_POSTING", "").lower() in ("1", "true", "yes")


class PostService:
    """
    Creates, edits and deletes posts; records comments and likes.

    Storage is delegated to a Store; the service owns validation and
    permission checks.
    """

    def __init__(self, store: "Store", open_posting: Optional[bool] = None):
        self._store = store
        self._open_posting = open_posting_enabled() if open_posting is None else open_posting

    # ================================================================
    # VALIDATION
    # ================================================================

    @staticmethod
    def check_text(content: str) -> GateResult:
        """The live composer diagnostic."""
        return TextGate.check(content)

    def _validate_post_content(self, content: str) -> str:
        content = strip_whitespace(content or "")
        if not content:
            raise ValidationRejected("Please enter your post content")

        result = TextGate.check(content)
        if not result.acceptable:
            raise ValidationRejected(
                result.message if result.invalid_characters
                else "Posts must be written in Japanese only",
                invalid_characters=result.invalid_characters,
            )

        if len(content) > MAX_POST_LENGTH:
            raise ValidationRejected(
                f"Posts are limited to {MAX_POST_LENGTH} characters ({len(content)} given)"
            )
        return content

    def _require_profile(self, user_id: str) -> Profile:
        profile = self._store.get_profile(user_id)
        if profile is None:
            raise NotPermitted(f"Profile {user_id} does not exist")
        return profile

    def _require_post(self, post_id: int) -> Post:
        post = self._store.get_post(post_id)
        if post is None:
            raise PostNotFound(f"Post {post_id} does not exist")
        return post

    # ================================================================
    # POSTS
    # ================================================================

    def create_post(self, user_id: str, content: str, image_url: Optional[str] = None) -> Post:
        profile = self._require_profile(user_id)
        if not (profile.has_finalized_claim or self._open_posting):
            raise PostingLocked("Choose your kanji before posting")

        try:
            content = self._validate_post_content(content)
        except ValidationRejected as e:
            get_metrics().record_post(accepted=False)
            logger.info(
                "Post rejected",
                user_id=user_id,
                reason=str(e),
                invalid_characters=e.invalid_characters,
            )
            raise

        post = self._store.create_post(user_id, content, image_url)
        get_metrics().record_post(accepted=True)
        logger.info("Post created", user_id=user_id, post_id=post.id)
        return post

    def edit_post(self, user_id: str, post_id: int, content: str) -> Post:
        post = self._require_post(post_id)
        if post.user_id != user_id:
            raise NotPermitted("Only the author can edit this post")

        content = self._validate_post_content(content)
        updated = self._store.update_post_content(post_id, content)
        if updated is None:
            raise PostNotFound(f"Post {post_id} does not exist")
        return updated

    def delete_post(self, user_id: str, post_id: int) -> None:
        """Delete a post with its likes and comments. Author or admin only."""
        post = self._require_post(post_id)
        if post.user_id != user_id:
            actor = self._require_profile(user_id)
            if not actor.is_admin:
                raise NotPermitted("Only the author or an admin can delete this post")

        if not self._store.delete_post(post_id):
            raise PostNotFound(f"Post {post_id} does not exist")
        logger.info("Post deleted", user_id=user_id, post_id=post_id)

    def get_post(self, post_id: int) -> Post:
        return self._require_post(post_id)

    def timeline(
        self, limit: int = 50, offset: int = 0, user_id: Optional[str] = None
    ) -> list[Post]:
        return self._store.list_posts(limit=limit, offset=offset, user_id=user_id)

    # ================================================================
    # COMMENTS AND LIKES
    # ================================================================

    def add_comment(self, user_id: str, post_id: int, content: str) -> Comment:
        self._require_profile(user_id)
        content = strip_whitespace(content or "")
        if not content:
            raise ValidationRejected("Please enter your comment")
        if len(content) > MAX_COMMENT_LENGTH:
            raise ValidationRejected(
                f"Comments are limited to {MAX_COMMENT_LENGTH} characters"
            )

        comment = self._store.add_comment(post_id, user_id, content)
        if comment is None:
            raise PostNotFound(f"Post {post_id} does not exist")
        return comment

    def comments(self, post_id: int) -> list[Comment]:
        self._require_post(post_id)
        return self._store.list_comments(post_id)

    def toggle_like(self, user_id: str, post_id: int) -> tuple[bool, int]:
        """Returns (liked, likes_count)."""
        self._require_profile(user_id)
        result = self._store.toggle_like(user_id, post_id)
        if result is None:
            raise PostNotFound(f"Post {post_id} does not exist")
        return result
