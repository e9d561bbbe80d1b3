"""
Development session endpoints.

In production the hosted auth provider signs members in and issues the
kd_session cookie. Outside production these endpoints stand in for it,
so the app can be driven locally and from tests.

- POST   /api/session   - Create/reuse a profile and set the session cookie
- DELETE /api/session   - Sign out
- GET    /api/me        - The current profile
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kanji_daisuki.observability import get_logger, is_production
from kanji_daisuki.schemas import Profile
from kanji_daisuki.web.auth import (
    SESSION_COOKIE,
    SessionUser,
    clear_wizard_cookie_response,
    set_session_cookie_response,
)
from kanji_daisuki.web.deps import require_profile
from kanji_daisuki.web.shared_store import get_store


logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["Session"])


class SessionRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    display_name: Optional[str] = None


@router.post("/session", response_model=Profile, summary="Sign in (development only)")
def create_session(body: SessionRequest):
    if is_production():
        raise HTTPException(status_code=404, detail="Not found")

    store = get_store()
    profile = store.get_profile(body.user_id)
    if profile is None:
        profile = store.upsert_profile(
            body.user_id,
            username=body.username,
            display_name=body.display_name,
        )
        logger.info("Profile created", user_id=profile.id, username=profile.username)

    resp = JSONResponse(content=profile.model_dump(mode="json"))
    return set_session_cookie_response(resp, SessionUser(user_id=profile.id))


@router.delete("/session", summary="Sign out")
def delete_session():
    resp = JSONResponse(content={"ok": True})
    resp.delete_cookie(SESSION_COOKIE, path="/")
    return clear_wizard_cookie_response(resp)


@router.get("/me", response_model=Profile, summary="Current profile")
def me(profile: Profile = Depends(require_profile)):
    return profile
