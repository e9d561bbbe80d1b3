"""
Dependency injection for API routes.

Gets the current member from the session cookie and validates it
against the store.
"""

from fastapi import HTTPException, Request

from kanji_daisuki.schemas import Profile
from kanji_daisuki.web.auth import SESSION_COOKIE, SessionUser, read_session_cookie
from kanji_daisuki.web.shared_store import get_store


def get_session_user(request: Request) -> SessionUser:
    """Get the current session user from cookie."""
    user = read_session_cookie(request.cookies.get(SESSION_COOKIE))
    if not user:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user


def require_profile(request: Request) -> Profile:
    """The session user must have a profile in the store."""
    user = get_session_user(request)
    profile = get_store().get_profile(user.user_id)
    if profile is None:
        raise HTTPException(status_code=401, detail="Profile not found")
    return profile


def require_admin(request: Request) -> Profile:
    """Require admin flag (read from the store, not the cookie)."""
    profile = require_profile(request)
    if not profile.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return profile
