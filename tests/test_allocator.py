"""
Tests for the kanji slot allocator.

Covers the selection state machine:
1. Browsing -> Tentative -> (confirmed) -> Annotated -> Finalized
2. Capacity checks at confirm (advisory) and finalize (authoritative)
3. All-or-nothing finalize
4. Rejection of finalized members
5. Concurrent claims for the last slot
6. Admin release
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from kanji_daisuki.core import (
    AlreadyFinalized,
    CapacityExceeded,
    IllegalTransition,
    InvariantViolation,
    ResourceNotFound,
    SlotAllocator,
)
from kanji_daisuki.db.store import InMemoryStore, StorageUnavailable
from kanji_daisuki.observability import get_metrics
from kanji_daisuki.schemas import CAPACITY_LIMIT, Kanji, WizardState, WizardStep


YUME = 1
SORA = 2


@pytest.fixture
def store():
    s = InMemoryStore()
    s.upsert_kanji(Kanji(id=YUME, char="夢", reading_kun="ゆめ", meaning_en="dream"))
    s.upsert_kanji(Kanji(id=SORA, char="空", reading_kun="そら", meaning_en="sky"))
    return s


@pytest.fixture
def allocator(store):
    return SlotAllocator(store)


def make_member(store, user_id):
    store.upsert_profile(user_id, username=user_id)
    return user_id


def annotate(allocator, user_id, kanji_id, reason="好きだから"):
    """Drive a member up to ANNOTATED."""
    state = allocator.select_tentative(allocator.begin(user_id), kanji_id)
    state = allocator.confirm_tentative(state)
    return allocator.record_reason(state, reason)


def fill(store, kanji_id, users):
    """Set a kanji's holder count directly (test setup only)."""
    kanji = store.get_kanji(kanji_id)
    store._kanjis[kanji_id] = kanji.model_copy(update={"current_users": users})


class TestHappyPath:
    """One member through the whole flow."""

    def test_begin_is_browsing(self, store, allocator):
        make_member(store, "hana")
        state = allocator.begin("hana")
        assert state.step == WizardStep.BROWSING
        assert state.kanji_id is None

    def test_full_flow(self, store, allocator):
        make_member(store, "hana")

        state = allocator.begin("hana")
        state = allocator.select_tentative(state, YUME)
        assert state.step == WizardStep.TENTATIVE
        assert state.confirmed is False

        state = allocator.confirm_tentative(state)
        assert state.step == WizardStep.TENTATIVE
        assert state.confirmed is True

        state = allocator.record_reason(state, "夢を見るのが好き")
        assert state.step == WizardStep.ANNOTATED
        assert state.attempt_id is not None

        # Annotated: attempt persisted, capacity untouched
        assert store.get_kanji(YUME).current_users == 0
        profile = store.get_profile("hana")
        assert profile.selected_kanji_id == YUME
        assert profile.has_finalized_claim is False

        state = allocator.finalize(state)
        assert state.step == WizardStep.FINALIZED
        assert state.is_terminal

        assert store.get_kanji(YUME).current_users == 1
        profile = store.get_profile("hana")
        assert profile.has_finalized_claim is True
        assert profile.selected_kanji_id == YUME
        attempts = store.list_selection_attempts("hana")
        assert [a.is_finalized for a in attempts] == [True]
        assert attempts[0].reason == "夢を見るのが好き"

    def test_reason_is_optional_and_any_language(self, store, allocator):
        make_member(store, "alex")
        state = annotate(allocator, "alex", YUME, reason="Because I like dreams, 100%")
        assert store.get_selection_attempt(state.attempt_id).reason == "Because I like dreams, 100%"

        make_member(store, "kai")
        state = annotate(allocator, "kai", YUME, reason=None)
        assert store.get_selection_attempt(state.attempt_id).reason is None

    def test_finalize_records_metrics(self, store, allocator):
        before = get_metrics().claims_finalized
        make_member(store, "hana")
        allocator.finalize(annotate(allocator, "hana", YUME))
        assert get_metrics().claims_finalized == before + 1


class TestTentative:
    """Selecting is local: nothing is written."""

    def test_repeated_select_writes_nothing(self, store, allocator):
        make_member(store, "hana")
        state = allocator.begin("hana")
        for _ in range(5):
            state = allocator.select_tentative(state, YUME)

        assert state.step == WizardStep.TENTATIVE
        assert state.kanji_id == YUME
        assert store.list_selection_attempts("hana") == []
        assert store.get_kanji(YUME).current_users == 0
        assert store.get_profile("hana").selected_kanji_id is None

    def test_switching_kanji(self, store, allocator):
        make_member(store, "hana")
        state = allocator.select_tentative(allocator.begin("hana"), YUME)
        state = allocator.select_tentative(state, SORA)
        assert state.kanji_id == SORA
        assert state.confirmed is False

    def test_unknown_kanji(self, store, allocator):
        make_member(store, "hana")
        with pytest.raises(ResourceNotFound, match="does not exist"):
            allocator.select_tentative(allocator.begin("hana"), 999)

    def test_unknown_member(self, allocator):
        with pytest.raises(ResourceNotFound, match="Profile ghost"):
            allocator.begin("ghost")

    def test_select_full_kanji_is_allowed(self, store, allocator):
        """Fullness is only checked at confirm."""
        make_member(store, "hana")
        fill(store, YUME, CAPACITY_LIMIT)
        state = allocator.select_tentative(allocator.begin("hana"), YUME)
        assert state.step == WizardStep.TENTATIVE


class TestConfirm:
    def test_full_kanji_returns_to_browsing(self, store, allocator):
        make_member(store, "hana")
        fill(store, YUME, CAPACITY_LIMIT)
        state = allocator.select_tentative(allocator.begin("hana"), YUME)

        with pytest.raises(CapacityExceeded, match="no longer available") as exc_info:
            allocator.confirm_tentative(state)

        assert exc_info.value.state == WizardState.browsing("hana")
        assert exc_info.value.state.kanji_id is None
        assert exc_info.value.kanji_id == YUME
        assert store.get_kanji(YUME).current_users == CAPACITY_LIMIT

    def test_rereads_current_capacity(self, store, allocator):
        """A kanji that filled up after selection is caught at confirm."""
        make_member(store, "hana")
        state = allocator.select_tentative(allocator.begin("hana"), YUME)
        fill(store, YUME, CAPACITY_LIMIT)
        with pytest.raises(CapacityExceeded):
            allocator.confirm_tentative(state)

    def test_last_slot_confirms(self, store, allocator):
        make_member(store, "hana")
        fill(store, YUME, CAPACITY_LIMIT - 1)
        state = allocator.select_tentative(allocator.begin("hana"), YUME)
        assert allocator.confirm_tentative(state).confirmed is True

    def test_confirm_from_browsing(self, store, allocator):
        make_member(store, "hana")
        with pytest.raises(IllegalTransition):
            allocator.confirm_tentative(allocator.begin("hana"))

    def test_confirm_counts_rejection(self, store, allocator):
        before = get_metrics().capacity_rejections_confirm
        make_member(store, "hana")
        fill(store, YUME, CAPACITY_LIMIT)
        with pytest.raises(CapacityExceeded):
            allocator.confirm_tentative(allocator.select_tentative(allocator.begin("hana"), YUME))
        assert get_metrics().capacity_rejections_confirm == before + 1


class TestRecordReason:
    def test_requires_confirmation(self, store, allocator):
        make_member(store, "hana")
        state = allocator.select_tentative(allocator.begin("hana"), YUME)
        with pytest.raises(IllegalTransition, match="confirmed"):
            allocator.record_reason(state, "理由")
        assert store.list_selection_attempts("hana") == []

    def test_restart_leaves_history(self, store, allocator):
        """Starting over before finalize keeps earlier attempts."""
        make_member(store, "hana")
        first = annotate(allocator, "hana", YUME)
        second = allocator.record_reason(
            allocator.confirm_tentative(allocator.select_tentative(first, SORA)),
            "空が好き",
        )
        attempts = store.list_selection_attempts("hana")
        assert [a.kanji_id for a in attempts] == [YUME, SORA]
        assert not any(a.is_finalized for a in attempts)
        assert store.get_profile("hana").selected_kanji_id == SORA
        assert second.attempt_id == attempts[-1].id

    def test_begin_resumes_annotated(self, store, allocator):
        make_member(store, "hana")
        annotated = annotate(allocator, "hana", YUME)
        resumed = allocator.begin("hana")
        assert resumed == annotated


class TestFinalize:
    def test_from_browsing_is_illegal(self, store, allocator):
        make_member(store, "hana")
        with pytest.raises(IllegalTransition):
            allocator.finalize(allocator.begin("hana"))
        assert store.get_kanji(YUME).current_users == 0

    def test_from_tentative_is_illegal(self, store, allocator):
        make_member(store, "hana")
        state = allocator.confirm_tentative(allocator.select_tentative(allocator.begin("hana"), YUME))
        with pytest.raises(IllegalTransition):
            allocator.finalize(state)

    def test_full_at_finalize_returns_to_browsing(self, store, allocator):
        make_member(store, "hana")
        state = annotate(allocator, "hana", YUME)
        fill(store, YUME, CAPACITY_LIMIT)

        with pytest.raises(CapacityExceeded) as exc_info:
            allocator.finalize(state)

        assert exc_info.value.state.step == WizardStep.BROWSING
        assert store.get_kanji(YUME).current_users == CAPACITY_LIMIT
        profile = store.get_profile("hana")
        assert profile.has_finalized_claim is False
        assert not store.get_selection_attempt(state.attempt_id).is_finalized

    def test_twice_is_rejected(self, store, allocator):
        make_member(store, "hana")
        state = annotate(allocator, "hana", YUME)
        allocator.finalize(state)

        with pytest.raises(AlreadyFinalized):
            allocator.finalize(state)
        assert store.get_kanji(YUME).current_users == 1

    def test_stale_state_after_switch(self, store, allocator):
        """An old ANNOTATED state no longer matches the profile binding."""
        make_member(store, "hana")
        old = annotate(allocator, "hana", YUME)
        annotate(allocator, "hana", SORA)

        with pytest.raises(InvariantViolation, match="bound to kanji"):
            allocator.finalize(old)
        assert store.get_kanji(YUME).current_users == 0
        assert store.get_kanji(SORA).current_users == 0

    def test_failed_write_rolls_back_everything(self, store, allocator):
        """Attempt mismatch after increment + profile update: nothing sticks."""
        make_member(store, "hana")
        make_member(store, "ren")
        other = annotate(allocator, "ren", YUME)
        state = annotate(allocator, "hana", YUME)
        forged = state.model_copy(update={"attempt_id": other.attempt_id})

        with pytest.raises(InvariantViolation, match="does not belong"):
            allocator.finalize(forged)

        assert store.get_kanji(YUME).current_users == 0
        assert store.get_profile("hana").has_finalized_claim is False
        assert not any(a.is_finalized for a in store.list_selection_attempts("ren"))

        # Store lock was released; the real claim still works
        allocator.finalize(state)
        assert store.get_kanji(YUME).current_users == 1

    def test_storage_failure_writes_nothing(self, store):
        class FlakyStore(InMemoryStore):
            def _do_finalize_attempt(self, ctx, attempt_id, user_id, kanji_id):
                raise StorageUnavailable("connection reset")

        flaky = FlakyStore()
        flaky.upsert_kanji(Kanji(id=YUME, char="夢"))
        allocator = SlotAllocator(flaky)
        make_member(flaky, "hana")
        state = annotate(allocator, "hana", YUME)

        with pytest.raises(StorageUnavailable):
            allocator.finalize(state)

        assert flaky.get_kanji(YUME).current_users == 0
        assert flaky.get_profile("hana").has_finalized_claim is False

    def test_capacity_limit_is_configurable(self, store):
        allocator = SlotAllocator(store, capacity_limit=1)
        make_member(store, "hana")
        make_member(store, "ren")
        first = annotate(allocator, "hana", YUME)
        second = annotate(allocator, "ren", YUME)
        allocator.finalize(first)
        with pytest.raises(CapacityExceeded):
            allocator.finalize(second)


class TestFinalizedMembers:
    """A member with a claim cannot re-enter the flow."""

    @pytest.fixture
    def finalized(self, store, allocator):
        make_member(store, "hana")
        allocator.finalize(annotate(allocator, "hana", YUME))
        return "hana"

    def test_begin_rejected(self, allocator, finalized):
        with pytest.raises(AlreadyFinalized):
            allocator.begin(finalized)

    def test_select_rejected_without_mutation(self, store, allocator, finalized):
        with pytest.raises(AlreadyFinalized):
            allocator.select_tentative(WizardState.browsing(finalized), SORA)

        profile = store.get_profile(finalized)
        assert profile.selected_kanji_id == YUME
        assert profile.has_finalized_claim is True
        assert store.get_kanji(SORA).current_users == 0

    def test_record_reason_rejected(self, store, allocator, finalized):
        forged = WizardState(
            step=WizardStep.TENTATIVE, user_id=finalized, kanji_id=SORA, confirmed=True
        )
        with pytest.raises(AlreadyFinalized):
            allocator.record_reason(forged, "もう一つ")
        assert len(store.list_selection_attempts(finalized)) == 1

    def test_confirm_rejected(self, store, allocator, finalized):
        forged = WizardState(step=WizardStep.TENTATIVE, user_id=finalized, kanji_id=SORA)
        with pytest.raises(AlreadyFinalized):
            allocator.confirm_tentative(forged)
        assert store.get_kanji(SORA).current_users == 0

    def test_finalize_rejected_from_stale_state(self, store, allocator, finalized):
        stale = WizardState(
            step=WizardStep.ANNOTATED, user_id=finalized, kanji_id=YUME,
            confirmed=True, attempt_id=1,
        )
        with pytest.raises(AlreadyFinalized):
            allocator.finalize(stale)
        assert store.get_kanji(YUME).current_users == 1


class TestConcurrentClaims:
    """At most CAPACITY_LIMIT finalize calls ever succeed per kanji."""

    def _race(self, store, allocator, user_ids, kanji_id):
        states = [annotate(allocator, make_member(store, u), kanji_id) for u in user_ids]
        barrier = threading.Barrier(len(states))

        def claim(state):
            barrier.wait()
            try:
                allocator.finalize(state)
                return "ok"
            except CapacityExceeded:
                return "full"

        with ThreadPoolExecutor(max_workers=len(states)) as pool:
            return list(pool.map(claim, states))

    @pytest.mark.parametrize("n", [2, 5, 20])
    def test_last_slot(self, store, allocator, n):
        fill(store, YUME, CAPACITY_LIMIT - 1)
        results = self._race(store, allocator, [f"user-{i}" for i in range(n)], YUME)

        assert results.count("ok") == 1
        assert results.count("full") == n - 1
        assert store.get_kanji(YUME).current_users == CAPACITY_LIMIT

        finalized = [
            u for u in (f"user-{i}" for i in range(n))
            if store.get_profile(u).has_finalized_claim
        ]
        assert len(finalized) == 1

    def test_empty_kanji_many_claimants(self, store, allocator):
        results = self._race(store, allocator, [f"user-{i}" for i in range(25)], YUME)
        assert results.count("ok") == CAPACITY_LIMIT
        assert results.count("full") == 25 - CAPACITY_LIMIT
        assert store.get_kanji(YUME).current_users == CAPACITY_LIMIT


class TestRevokeClaim:
    def test_releases_slot(self, store, allocator):
        make_member(store, "hana")
        state = allocator.finalize(annotate(allocator, "hana", YUME))

        assert allocator.revoke_claim("hana") == YUME

        assert store.get_kanji(YUME).current_users == 0
        profile = store.get_profile("hana")
        assert profile.has_finalized_claim is False
        assert profile.selected_kanji_id is None
        assert not store.get_selection_attempt(state.attempt_id).is_finalized

    def test_member_can_choose_again(self, store, allocator):
        make_member(store, "hana")
        allocator.finalize(annotate(allocator, "hana", YUME))
        allocator.revoke_claim("hana")

        allocator.finalize(annotate(allocator, "hana", SORA))
        assert store.get_kanji(SORA).current_users == 1
        finalized = [a for a in store.list_selection_attempts("hana") if a.is_finalized]
        assert [a.kanji_id for a in finalized] == [SORA]

    def test_without_claim(self, store, allocator):
        make_member(store, "hana")
        annotate(allocator, "hana", YUME)
        with pytest.raises(InvariantViolation, match="no finalized claim"):
            allocator.revoke_claim("hana")
        assert store.get_profile("hana").selected_kanji_id == YUME

    def test_frees_slot_for_others(self, store, allocator):
        fill(store, YUME, CAPACITY_LIMIT - 1)
        make_member(store, "hana")
        make_member(store, "ren")
        allocator.finalize(annotate(allocator, "hana", YUME))
        with pytest.raises(CapacityExceeded):
            annotate(allocator, "ren", YUME)

        allocator.revoke_claim("hana")
        allocator.finalize(annotate(allocator, "ren", YUME))
        assert store.get_kanji(YUME).current_users == CAPACITY_LIMIT
