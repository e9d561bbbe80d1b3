"""
Selection Wizard API

Query endpoints:
- GET  /api/kanjis               - Kanji with remaining slots (?q=, jlpt=, available=)
- GET  /api/kanjis/{id}          - One kanji
- GET  /api/select/state         - Current wizard state

Command endpoints (drive the SlotAllocator):
- POST /api/select/start         - Enter (or resume) the flow
- POST /api/select/tentative     - Choose a kanji locally
- POST /api/select/confirm       - Re-check capacity and advance
- POST /api/select/reason        - Record the reason (persists attempt)
- POST /api/select/finalize      - Claim the slot

The wizard state travels in the signed kd_wizard cookie and is echoed
in every response body.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kanji_daisuki.core import ResourceNotFound, SlotAllocator, search_kanjis
from kanji_daisuki.schemas import Kanji, Profile, WizardState
from kanji_daisuki.web.auth import (
    WIZARD_COOKIE,
    clear_wizard_cookie_response,
    read_wizard_cookie,
    set_wizard_cookie_response,
)
from kanji_daisuki.web.deps import require_profile
from kanji_daisuki.web.shared_store import get_allocator


router = APIRouter(prefix="/api")


# ============================================================
# Request/Response Models
# ============================================================

class KanjiResponse(BaseModel):
    """A kanji as shown in the selection grid."""
    id: int
    char: str
    reading_kun: Optional[str] = None
    reading_on: Optional[str] = None
    meaning_en: Optional[str] = None
    meaning_ja: Optional[str] = None
    stroke_count: Optional[int] = None
    jlpt_level: Optional[int] = None
    current_users: int
    remaining_slots: int
    is_full: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_kanji(cls, kanji: Kanji, limit: int) -> "KanjiResponse":
        return cls(
            **kanji.model_dump(),
            remaining_slots=kanji.remaining_slots(limit),
            is_full=kanji.is_full(limit),
        )


class TentativeRequest(BaseModel):
    kanji_id: int


class ReasonRequest(BaseModel):
    """Why this kanji. Any language, no length limit."""
    reason: Optional[str] = Field(default=None)


class WizardResponse(BaseModel):
    state: WizardState
    kanji: Optional[KanjiResponse] = None
    redirect: Optional[str] = None


# ============================================================
# Helpers
# ============================================================

def _current_state(request: Request, allocator: SlotAllocator, profile: Profile) -> WizardState:
    """
    Cookie state if valid for this member, else resume from the store.

    begin() runs first so finalized members are rejected whatever the
    cookie says.
    """
    resumed = allocator.begin(profile.id)
    state = read_wizard_cookie(request.cookies.get(WIZARD_COOKIE), profile.id)
    if state is None or state.is_terminal:
        return resumed
    return state


def _respond(allocator: SlotAllocator, state: WizardState) -> JSONResponse:
    kanji = None
    if state.kanji_id is not None:
        found = allocator.store.get_kanji(state.kanji_id)
        if found is not None:
            kanji = KanjiResponse.from_kanji(found, allocator.capacity_limit)

    body = WizardResponse(
        state=state,
        kanji=kanji,
        redirect="/" if state.is_terminal else None,
    )
    resp = JSONResponse(content=body.model_dump(mode="json"))
    if state.is_terminal:
        return clear_wizard_cookie_response(resp)
    return set_wizard_cookie_response(resp, state)


# ============================================================
# Query Endpoints
# ============================================================

@router.get(
    "/kanjis",
    response_model=list[KanjiResponse],
    tags=["Kanji"],
    summary="List kanji with remaining slots",
)
def list_kanjis(
    q: Optional[str] = Query(default=None, max_length=50, description="Character, reading or meaning"),
    jlpt: int = Query(default=0, ge=0, le=5, description="JLPT level, 0 for all"),
    available: bool = Query(default=False, description="Only kanji with a free slot"),
    allocator: SlotAllocator = Depends(get_allocator),
):
    kanjis = search_kanjis(
        allocator.store.list_kanjis(),
        query=q,
        jlpt_level=jlpt,
        available_only=available,
        limit=allocator.capacity_limit,
    )
    return [KanjiResponse.from_kanji(k, allocator.capacity_limit) for k in kanjis]


@router.get(
    "/kanjis/{kanji_id}",
    response_model=KanjiResponse,
    tags=["Kanji"],
    summary="Get one kanji",
)
def get_kanji(kanji_id: int, allocator: SlotAllocator = Depends(get_allocator)):
    kanji = allocator.store.get_kanji(kanji_id)
    if kanji is None:
        raise ResourceNotFound(f"Kanji {kanji_id} does not exist")
    return KanjiResponse.from_kanji(kanji, allocator.capacity_limit)


@router.get(
    "/select/state",
    response_model=WizardResponse,
    tags=["Selection"],
    summary="Current wizard state",
)
def get_state(
    request: Request,
    profile: Profile = Depends(require_profile),
    allocator: SlotAllocator = Depends(get_allocator),
):
    return _respond(allocator, _current_state(request, allocator, profile))


# ============================================================
# Command Endpoints
# ============================================================

@router.post(
    "/select/start",
    response_model=WizardResponse,
    tags=["Selection"],
    summary="Enter the selection flow",
)
def start(
    profile: Profile = Depends(require_profile),
    allocator: SlotAllocator = Depends(get_allocator),
):
    """
    Start or resume the flow.

    Members who already hold a kanji get 409 already_finalized.
    """
    return _respond(allocator, allocator.begin(profile.id))


@router.post(
    "/select/tentative",
    response_model=WizardResponse,
    tags=["Selection"],
    summary="Choose a kanji",
)
def select_tentative(
    body: TentativeRequest,
    request: Request,
    profile: Profile = Depends(require_profile),
    allocator: SlotAllocator = Depends(get_allocator),
):
    state = _current_state(request, allocator, profile)
    return _respond(allocator, allocator.select_tentative(state, body.kanji_id))


@router.post(
    "/select/confirm",
    response_model=WizardResponse,
    tags=["Selection"],
    summary="Re-check capacity and advance",
)
def confirm(
    request: Request,
    profile: Profile = Depends(require_profile),
    allocator: SlotAllocator = Depends(get_allocator),
):
    state = _current_state(request, allocator, profile)
    return _respond(allocator, allocator.confirm_tentative(state))


@router.post(
    "/select/reason",
    response_model=WizardResponse,
    tags=["Selection"],
    summary="Record the reason for choosing",
)
def record_reason(
    body: ReasonRequest,
    request: Request,
    profile: Profile = Depends(require_profile),
    allocator: SlotAllocator = Depends(get_allocator),
):
    state = _current_state(request, allocator, profile)
    return _respond(allocator, allocator.record_reason(state, body.reason))


@router.post(
    "/select/finalize",
    response_model=WizardResponse,
    tags=["Selection"],
    summary="Claim the kanji",
)
def finalize(
    request: Request,
    profile: Profile = Depends(require_profile),
    allocator: SlotAllocator = Depends(get_allocator),
):
    """
    Claim the slot.

    Returns 409 capacity_exceeded if the last slot went to someone else;
    the wizard is then back at browsing.
    """
    state = _current_state(request, allocator, profile)
    return _respond(allocator, allocator.finalize(state))
