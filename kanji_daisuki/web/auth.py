"""
Session helpers.

Authentication itself is done by the external auth provider; this module
only reads the signed session cookie it leaves behind, and carries the
selection wizard's state between requests.

Security Features:
- Signed session cookies (itsdangerous)
- Signed wizard-state cookies, bound to the session user
- Production-ready cookie settings

For production:
- Set KANJI_DAISUKI_SESSION_SECRET to a 32+ character random string
- Set KANJI_DAISUKI_PRODUCTION=1 for secure cookie settings
"""

import os
import warnings
from dataclasses import dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import ValidationError

from kanji_daisuki.observability import is_production
from kanji_daisuki.schemas import WizardState


# ============================================================
# CONFIGURATION
# ============================================================

SESSION_COOKIE = "kd_session"
WIZARD_COOKIE = "kd_wizard"

SESSION_SALT = "kanji-daisuki-session-v1"
WIZARD_SALT = "kanji-daisuki-wizard-v1"


def _secret() -> str:
    secret = os.environ.get("KANJI_DAISUKI_SESSION_SECRET", "")
    if not secret or len(secret) < 16:
        if is_production():
            raise RuntimeError(
                "KANJI_DAISUKI_SESSION_SECRET must be set in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        warnings.warn(
            "KANJI_DAISUKI_SESSION_SECRET not set. Using insecure default.",
            stacklevel=3
        )
        secret = "dev-insecure-secret-do-not-use-in-production-12345678"
    return secret


def _serializer(salt: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key=_secret(), salt=salt)


# ============================================================
# SESSION COOKIES
# ============================================================

@dataclass(frozen=True)
class SessionUser:
    user_id: str  # opaque id from the auth provider


def create_session_cookie(user: SessionUser) -> str:
    return _serializer(SESSION_SALT).dumps({"uid": user.user_id})


def read_session_cookie(cookie_value: Optional[str]) -> Optional[SessionUser]:
    if not cookie_value:
        return None
    try:
        data = _serializer(SESSION_SALT).loads(cookie_value)
        return SessionUser(user_id=str(data["uid"]))
    except (BadSignature, KeyError, TypeError):
        return None


def _cookie_settings() -> dict:
    is_prod = is_production()
    return {
        "httponly": True,
        "samesite": "strict" if is_prod else "lax",
        "secure": is_prod,  # HTTPS only in production
        "path": "/",
    }


def set_session_cookie_response(resp, user: SessionUser):
    """Set session cookie on response with proper security settings."""
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=create_session_cookie(user),
        max_age=86400 * 7,  # 7 days
        **_cookie_settings(),
    )
    return resp


# ============================================================
# WIZARD STATE COOKIES
# ============================================================

def create_wizard_cookie(state: WizardState) -> str:
    return _serializer(WIZARD_SALT).dumps(state.model_dump(mode="json"))


def read_wizard_cookie(cookie_value: Optional[str], user_id: str) -> Optional[WizardState]:
    """
    Decode the wizard state.

    Returns None for a missing, tampered or malformed cookie, or one that
    belongs to a different member.
    """
    if not cookie_value:
        return None
    try:
        state = WizardState.model_validate(_serializer(WIZARD_SALT).loads(cookie_value))
    except (BadSignature, ValidationError):
        return None
    if state.user_id != user_id:
        return None
    return state


def set_wizard_cookie_response(resp, state: WizardState):
    resp.set_cookie(
        key=WIZARD_COOKIE,
        value=create_wizard_cookie(state),
        max_age=86400,  # abandoned flows simply expire
        **_cookie_settings(),
    )
    return resp


def clear_wizard_cookie_response(resp):
    resp.delete_cookie(WIZARD_COOKIE, path="/")
    return resp
