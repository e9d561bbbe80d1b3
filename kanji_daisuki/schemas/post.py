"""
Post and Comment Schemas
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Post(BaseModel):
    """A Japanese-only post. Counters are maintained by the store."""
    id: int
    user_id: str
    content: str
    image_url: Optional[str] = None
    likes_count: int = Field(default=0, ge=0)
    comments_count: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime


class Comment(BaseModel):
    id: int
    post_id: int
    user_id: str
    content: str
    created_at: datetime
