"""
Admin API

All endpoints require a profile with is_admin set (read from the store).

- GET  /api/admin/capacity                       - Holders per kanji
- POST /api/admin/claimants/{user_id}/revoke     - Return a member's slot
- POST /api/admin/profiles/{user_id}/admin       - Toggle admin flag

Deleting posts goes through DELETE /api/posts/{id}, which admins may
call on any post.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from kanji_daisuki.core import ResourceNotFound, SlotAllocator
from kanji_daisuki.observability import get_logger
from kanji_daisuki.schemas import Profile
from kanji_daisuki.web.deps import require_admin
from kanji_daisuki.web.shared_store import get_allocator


logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class CapacityRow(BaseModel):
    kanji_id: int
    char: str
    current_users: int
    remaining_slots: int


class RevokeResponse(BaseModel):
    user_id: str
    released_kanji_id: int
    current_users: int


class AdminToggleResponse(BaseModel):
    user_id: str
    is_admin: bool


@router.get("/capacity", response_model=list[CapacityRow], summary="Holders per kanji")
def capacity_report(
    admin: Profile = Depends(require_admin),
    allocator: SlotAllocator = Depends(get_allocator),
):
    return [
        CapacityRow(
            kanji_id=k.id,
            char=k.char,
            current_users=k.current_users,
            remaining_slots=k.remaining_slots(allocator.capacity_limit),
        )
        for k in allocator.store.list_kanjis()
    ]


@router.post(
    "/claimants/{user_id}/revoke",
    response_model=RevokeResponse,
    summary="Return a member's kanji slot to the pool",
)
def revoke_claim(
    user_id: str,
    admin: Profile = Depends(require_admin),
    allocator: SlotAllocator = Depends(get_allocator),
):
    """409 invariant_violation if the member holds no finalized claim."""
    if allocator.store.get_profile(user_id) is None:
        raise ResourceNotFound(f"Profile {user_id} does not exist")

    kanji_id = allocator.revoke_claim(user_id)
    kanji = allocator.store.get_kanji(kanji_id)
    logger.info("Admin revoked claim", admin_id=admin.id, target_id=user_id, kanji_id=kanji_id)
    return RevokeResponse(
        user_id=user_id,
        released_kanji_id=kanji_id,
        current_users=kanji.current_users if kanji else 0,
    )


@router.post(
    "/profiles/{user_id}/admin",
    response_model=AdminToggleResponse,
    summary="Toggle a member's admin flag",
)
def toggle_admin(
    user_id: str,
    admin: Profile = Depends(require_admin),
    allocator: SlotAllocator = Depends(get_allocator),
):
    target = allocator.store.get_profile(user_id)
    if target is None:
        raise ResourceNotFound(f"Profile {user_id} does not exist")

    updated = allocator.store.upsert_profile(user_id, is_admin=not target.is_admin)
    logger.info(
        "Admin flag changed",
        admin_id=admin.id,
        target_id=user_id,
        is_admin=updated.is_admin,
    )
    return AdminToggleResponse(user_id=user_id, is_admin=updated.is_admin)
