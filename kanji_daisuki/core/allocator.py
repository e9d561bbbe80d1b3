"""
Slot Allocator - Claiming Scarce Kanji

Each kanji admits at most CAPACITY_LIMIT holders. A member claims one
through an explicit state machine:

    BROWSING --select_tentative--> TENTATIVE
    TENTATIVE --confirm_tentative--> TENTATIVE (confirmed)
    TENTATIVE (confirmed) --record_reason--> ANNOTATED
    ANNOTATED --finalize--> FINALIZED

Rules (enforced in code):
- Nothing is written before record_reason
- Capacity is consumed only by finalize, through the store's atomic
  conditional increment (the single point of admission)
- confirm_tentative re-reads capacity, but only as early feedback
- The three finalize writes commit together or not at all
- A member with a finalized claim cannot start over

ARCHITECTURE NOTE:
- SlotAllocator: state machine, preconditions, error translation
- Store: atomic check-and-increment, transactions, durability

WizardState values are immutable snapshots; every transition returns a
new one. The web layer carries them between requests.
"""

import time
from typing import Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import CAPACITY_LIMIT, Profile, WizardState, WizardStep

if TYPE_CHECKING:
    from ..db.store import Store


logger = get_logger(__name__)


class AllocatorError(Exception):
    """Base exception for allocator errors."""
    pass


class CapacityExceeded(AllocatorError):
    """
    The kanji has no free slot. Retryable by choosing another kanji.

    `state` is the BROWSING state the member is returned to.
    """

    def __init__(self, message: str, state: WizardState, kanji_id: int):
        super().__init__(message)
        self.state = state
        self.kanji_id = kanji_id


class InvariantViolation(AllocatorError):
    """Raised when a call would break a claim invariant. Nothing is written."""
    pass


class AlreadyFinalized(InvariantViolation):
    """Raised when a member who already holds a claim tries to claim again."""
    pass


class IllegalTransition(AllocatorError):
    """Raised when an operation is invoked from the wrong state."""
    pass


class ResourceNotFound(AllocatorError):
    """Raised when the kanji or member does not exist."""
    pass


class SlotAllocator:
    """
    Drives members through selection and claiming of a kanji.

    CONCURRENCY GUARANTEES (with Store):
    - At most `capacity_limit` finalize calls succeed per kanji,
      regardless of interleaving
    - A failed finalize leaves profile, kanji and attempt untouched
    - No lock or slot is held before finalize, so abandoning the flow
      needs no cleanup
    """

    def __init__(self, store: "Store", capacity_limit: int = CAPACITY_LIMIT):
        self._store = store
        self._capacity_limit = capacity_limit

    @property
    def store(self) -> "Store":
        return self._store

    @property
    def capacity_limit(self) -> int:
        return self._capacity_limit

    # ================================================================
    # PRECONDITIONS
    # ================================================================

    def _require_step(self, state: WizardState, *allowed: WizardStep) -> None:
        if state.step not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise IllegalTransition(
                f"Cannot do this from '{state.step.value}'; expected one of: {names}"
            )

    def _require_not_finalized(self, user_id: str) -> Profile:
        profile = self._store.get_profile(user_id)
        if profile is None:
            raise ResourceNotFound(f"Profile {user_id} does not exist")
        if profile.has_finalized_claim:
            raise AlreadyFinalized(
                f"Profile {user_id} already holds kanji {profile.selected_kanji_id}"
            )
        return profile

    def _capacity_exceeded(self, user_id: str, kanji_id: int, stage: str) -> CapacityExceeded:
        get_metrics().record_capacity_rejection(stage)
        logger.warning(
            "Capacity exceeded",
            user_id=user_id,
            kanji_id=kanji_id,
            stage=stage,
        )
        return CapacityExceeded(
            "This kanji is no longer available.",
            state=WizardState.browsing(user_id),
            kanji_id=kanji_id,
        )

    # ================================================================
    # TRANSITIONS
    # ================================================================

    def begin(self, user_id: str) -> WizardState:
        """
        Enter the flow.

        Resumes at ANNOTATED when the member has a pending attempt for the
        kanji bound to their profile, otherwise starts at BROWSING.
        Finalized members are rejected.
        """
        profile = self._require_not_finalized(user_id)
        if profile.selected_kanji_id is not None:
            pending = [
                a for a in self._store.list_selection_attempts(user_id)
                if a.kanji_id == profile.selected_kanji_id and not a.is_finalized
            ]
            if pending:
                latest = pending[-1]
                return WizardState(
                    step=WizardStep.ANNOTATED,
                    user_id=user_id,
                    kanji_id=latest.kanji_id,
                    confirmed=True,
                    attempt_id=latest.id,
                    reason=latest.reason,
                )

        return WizardState.browsing(user_id)

    def select_tentative(self, state: WizardState, kanji_id: int) -> WizardState:
        """
        Choose a kanji locally. Reads only; nothing is persisted.

        Allowed from BROWSING, TENTATIVE and ANNOTATED (starting over).
        """
        self._require_step(
            state, WizardStep.BROWSING, WizardStep.TENTATIVE, WizardStep.ANNOTATED
        )
        self._require_not_finalized(state.user_id)

        if self._store.get_kanji(kanji_id) is None:
            raise ResourceNotFound(f"Kanji {kanji_id} does not exist")

        return WizardState(
            step=WizardStep.TENTATIVE,
            user_id=state.user_id,
            kanji_id=kanji_id,
        )

    def confirm_tentative(self, state: WizardState) -> WizardState:
        """
        Re-read the kanji's current capacity and advance if a slot is free.

        Advisory only: a slot free now may be gone by finalize.

        Raises:
            AlreadyFinalized: member already holds a claim
            CapacityExceeded: with `state` reset to BROWSING
        """
        self._require_step(state, WizardStep.TENTATIVE)
        self._require_not_finalized(state.user_id)

        kanji = self._store.get_kanji(state.kanji_id)
        if kanji is None:
            raise ResourceNotFound(f"Kanji {state.kanji_id} does not exist")

        if kanji.current_users >= self._capacity_limit:
            raise self._capacity_exceeded(state.user_id, kanji.id, stage="confirm")

        return state.model_copy(update={"confirmed": True})

    def record_reason(self, state: WizardState, reason: Optional[str] = None) -> WizardState:
        """
        Persist an unfinalized attempt and bind the kanji to the profile.

        The reason is free text in any language; it is not gated.
        """
        self._require_step(state, WizardStep.TENTATIVE)
        if not state.confirmed:
            raise IllegalTransition("Tentative choice must be confirmed before annotating")
        self._require_not_finalized(state.user_id)

        attempt = self._store.insert_selection_attempt(
            user_id=state.user_id,
            kanji_id=state.kanji_id,
            reason=reason,
        )
        self._store.upsert_profile(state.user_id, selected_kanji_id=state.kanji_id)

        logger.info(
            "Selection attempt recorded",
            user_id=state.user_id,
            kanji_id=state.kanji_id,
            attempt_id=attempt.id,
        )

        return WizardState(
            step=WizardStep.ANNOTATED,
            user_id=state.user_id,
            kanji_id=state.kanji_id,
            confirmed=True,
            attempt_id=attempt.id,
            reason=reason,
        )

    def finalize(self, state: WizardState) -> WizardState:
        """
        Claim the slot.

        Preconditions are checked before any write. The three writes
        (capacity, profile, attempt) then run in one store transaction.

        Raises:
            IllegalTransition: not ANNOTATED
            AlreadyFinalized: member already holds a claim
            InvariantViolation: profile or attempt no longer match the state
            CapacityExceeded: no slot left; `state` reset to BROWSING
            StorageUnavailable: from the store; nothing is assumed written
        """
        self._require_step(state, WizardStep.ANNOTATED)
        user_id = state.user_id
        kanji_id = state.kanji_id

        profile = self._require_not_finalized(user_id)
        if profile.selected_kanji_id != kanji_id:
            raise InvariantViolation(
                f"Profile {user_id} is bound to kanji {profile.selected_kanji_id}, "
                f"not {kanji_id}"
            )

        start = time.perf_counter()
        with self._store.begin_claim() as tx:
            new_count = tx.increment_capacity_if_below(kanji_id, self._capacity_limit)
            if new_count is None:
                raise self._capacity_exceeded(user_id, kanji_id, stage="finalize")
            if new_count > self._capacity_limit:
                raise InvariantViolation(
                    f"Kanji {kanji_id} reached {new_count} holders "
                    f"(limit {self._capacity_limit})"
                )

            if not tx.mark_claimant_finalized(user_id, kanji_id):
                raise AlreadyFinalized(f"Profile {user_id} was finalized concurrently")

            if not tx.finalize_selection_attempt(state.attempt_id, user_id, kanji_id):
                raise InvariantViolation(
                    f"Selection attempt {state.attempt_id} does not belong to "
                    f"({user_id}, kanji {kanji_id})"
                )

            tx.commit()

        latency_ms = (time.perf_counter() - start) * 1000
        get_metrics().record_finalize(latency_ms)
        logger.info(
            "Claim finalized",
            user_id=user_id,
            kanji_id=kanji_id,
            attempt_id=state.attempt_id,
            current_users=new_count,
            duration_ms=round(latency_ms, 2),
        )

        return state.model_copy(update={"step": WizardStep.FINALIZED})

    # ================================================================
    # ADMIN
    # ================================================================

    def revoke_claim(self, user_id: str) -> int:
        """
        Return a member's slot to the pool (admin action).

        Clears the profile binding, un-finalizes the attempt and decrements
        the counter, all in one transaction.

        Returns:
            The id of the released kanji.
        """
        with self._store.begin_claim() as tx:
            kanji_id = tx.release_claim(user_id)
            if kanji_id is None:
                raise InvariantViolation(f"Profile {user_id} holds no finalized claim")
            tx.commit()

        get_metrics().claims_revoked += 1
        logger.warning("Claim revoked", user_id=user_id, kanji_id=kanji_id)
        return kanji_id
