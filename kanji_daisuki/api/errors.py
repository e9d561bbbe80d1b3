"""
Domain error -> HTTP response mapping.

Selection errors:
- CapacityExceeded    409 capacity_exceeded (wizard reset to browsing)
- AlreadyFinalized    409 already_finalized (redirect home)
- InvariantViolation  409 invariant_violation
- IllegalTransition   400 illegal_transition
- ResourceNotFound    404 not_found

Posting errors:
- ValidationRejected  422 validation_rejected (with invalid_characters)
- PostingLocked       403 posting_locked
- NotPermitted        403 not_permitted
- PostNotFound        404 not_found

Profile errors:
- ProfileNotFound     404 not_found

Storage:
- StorageUnavailable  503 storage_unavailable (generic retry message)
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kanji_daisuki.core import (
    AlreadyFinalized,
    CapacityExceeded,
    IllegalTransition,
    InvariantViolation,
    NotPermitted,
    PostingLocked,
    PostNotFound,
    ProfileNotFound,
    ResourceNotFound,
    ValidationRejected,
)
from kanji_daisuki.db.store import StorageUnavailable
from kanji_daisuki.observability import get_logger
from kanji_daisuki.web.auth import clear_wizard_cookie_response, set_wizard_cookie_response


logger = get_logger(__name__)

RETRY_MESSAGE = "Something went wrong. Please try again."


def error_body(code: str, message: str, **extra: Any) -> dict:
    return {"error": code, "message": message, **extra}


def _json(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, **extra))


async def _capacity_exceeded(request: Request, exc: CapacityExceeded) -> JSONResponse:
    resp = _json(
        409,
        "capacity_exceeded",
        str(exc),
        kanji_id=exc.kanji_id,
        state=exc.state.model_dump(mode="json"),
    )
    return set_wizard_cookie_response(resp, exc.state)


async def _already_finalized(request: Request, exc: AlreadyFinalized) -> JSONResponse:
    resp = _json(409, "already_finalized", "You have already chosen your kanji.", redirect="/")
    return clear_wizard_cookie_response(resp)


async def _invariant_violation(request: Request, exc: InvariantViolation) -> JSONResponse:
    logger.error("Invariant violation", path=request.url.path, error=str(exc))
    return _json(409, "invariant_violation", str(exc))


async def _illegal_transition(request: Request, exc: IllegalTransition) -> JSONResponse:
    return _json(400, "illegal_transition", str(exc))


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return _json(404, "not_found", str(exc))


async def _validation_rejected(request: Request, exc: ValidationRejected) -> JSONResponse:
    return _json(
        422,
        "validation_rejected",
        str(exc),
        invalid_characters=exc.invalid_characters,
    )


async def _posting_locked(request: Request, exc: PostingLocked) -> JSONResponse:
    return _json(403, "posting_locked", str(exc), redirect="/select")


async def _not_permitted(request: Request, exc: NotPermitted) -> JSONResponse:
    return _json(403, "not_permitted", str(exc))


async def _storage_unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
    logger.error(
        "Storage unavailable",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return _json(503, "storage_unavailable", RETRY_MESSAGE)


def register_error_handlers(app: FastAPI) -> None:
    """Install the domain error handlers on the app."""
    app.add_exception_handler(CapacityExceeded, _capacity_exceeded)
    app.add_exception_handler(AlreadyFinalized, _already_finalized)
    app.add_exception_handler(InvariantViolation, _invariant_violation)
    app.add_exception_handler(IllegalTransition, _illegal_transition)
    app.add_exception_handler(ResourceNotFound, _not_found)
    app.add_exception_handler(PostNotFound, _not_found)
    app.add_exception_handler(ProfileNotFound, _not_found)
    app.add_exception_handler(ValidationRejected, _validation_rejected)
    app.add_exception_handler(PostingLocked, _posting_locked)
    app.add_exception_handler(NotPermitted, _not_permitted)
    app.add_exception_handler(StorageUnavailable, _storage_unavailable)
