"""
Posts API

- POST   /api/posts/check            - Live Japanese-only diagnostic
- POST   /api/posts                  - Create a post
- GET    /api/posts                  - Timeline (newest first, ?user_id=)
- GET    /api/posts/{id}             - One post
- PUT    /api/posts/{id}             - Edit (author only)
- DELETE /api/posts/{id}             - Delete (author or admin)
- GET    /api/posts/{id}/comments    - Comments (oldest first)
- POST   /api/posts/{id}/comments    - Add a comment
- POST   /api/posts/{id}/like        - Like / unlike
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from kanji_daisuki.core import MAX_POST_LENGTH, PostService
from kanji_daisuki.core.text_gate import strip_whitespace
from kanji_daisuki.schemas import Comment, Post, Profile
from kanji_daisuki.web.deps import require_profile
from kanji_daisuki.web.shared_store import get_post_service


router = APIRouter(prefix="/api/posts", tags=["Posts"])


# ============================================================
# Request/Response Models
# ============================================================

class CheckTextRequest(BaseModel):
    content: str = ""


class CheckTextResponse(BaseModel):
    acceptable: bool
    invalid_characters: list[str]
    message: str
    length: int
    max_length: int = MAX_POST_LENGTH


class PostRequest(BaseModel):
    content: str
    image_url: Optional[str] = Field(
        default=None,
        description="Public URL of an already uploaded image"
    )


class EditPostRequest(BaseModel):
    content: str


class CommentRequest(BaseModel):
    content: str


class LikeResponse(BaseModel):
    liked: bool
    likes_count: int


# ============================================================
# Endpoints
# ============================================================

@router.post("/check", response_model=CheckTextResponse, summary="Check post text")
def check_text(body: CheckTextRequest):
    """Does not require a session; the composer calls it as the member types."""
    result = PostService.check_text(body.content)
    return CheckTextResponse(
        acceptable=result.acceptable,
        invalid_characters=result.invalid_characters,
        message=result.message,
        length=len(strip_whitespace(body.content)),
    )


@router.post(
    "",
    response_model=Post,
    status_code=status.HTTP_201_CREATED,
    summary="Create a post",
)
def create_post(
    body: PostRequest,
    profile: Profile = Depends(require_profile),
    posts: PostService = Depends(get_post_service),
):
    return posts.create_post(profile.id, body.content, image_url=body.image_url)


@router.get("", response_model=list[Post], summary="Timeline")
def timeline(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: Optional[str] = Query(default=None, description="Only this member's posts"),
    posts: PostService = Depends(get_post_service),
):
    return posts.timeline(limit=limit, offset=offset, user_id=user_id)


@router.get("/{post_id}", response_model=Post, summary="Get a post")
def get_post(post_id: int, posts: PostService = Depends(get_post_service)):
    return posts.get_post(post_id)


@router.put("/{post_id}", response_model=Post, summary="Edit a post")
def edit_post(
    post_id: int,
    body: EditPostRequest,
    profile: Profile = Depends(require_profile),
    posts: PostService = Depends(get_post_service),
):
    return posts.edit_post(profile.id, post_id, body.content)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a post")
def delete_post(
    post_id: int,
    profile: Profile = Depends(require_profile),
    posts: PostService = Depends(get_post_service),
):
    posts.delete_post(profile.id, post_id)


@router.get("/{post_id}/comments", response_model=list[Comment], summary="List comments")
def list_comments(post_id: int, posts: PostService = Depends(get_post_service)):
    return posts.comments(post_id)


@router.post(
    "/{post_id}/comments",
    response_model=Comment,
    status_code=status.HTTP_201_CREATED,
    summary="Add a comment",
)
def add_comment(
    post_id: int,
    body: CommentRequest,
    profile: Profile = Depends(require_profile),
    posts: PostService = Depends(get_post_service),
):
    return posts.add_comment(profile.id, post_id, body.content)


@router.post("/{post_id}/like", response_model=LikeResponse, summary="Like or unlike")
def toggle_like(
    post_id: int,
    profile: Profile = Depends(require_profile),
    posts: PostService = Depends(get_post_service),
):
    liked, count = posts.toggle_like(profile.id, post_id)
    return LikeResponse(liked=liked, likes_count=count)
