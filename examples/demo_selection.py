"""
Demonstration: Claiming a Kanji and Posting

This example walks one member through the selection wizard, shows the
last-slot race between two members, and runs a few posts through the
Japanese-only gate.

Run with: python -m examples.demo_selection
"""

from kanji_daisuki.core import (
    CapacityExceeded,
    PostingLocked,
    PostService,
    SlotAllocator,
    TextGate,
    ValidationRejected,
)
from kanji_daisuki.db.store import InMemoryStore
from reference.loader import load_reference_kanjis


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    banner("Kanji Daisuki - Selection Demonstration")
    print()

    store = InMemoryStore()
    load_reference_kanjis(store)
    allocator = SlotAllocator(store)
    posts = PostService(store, open_posting=False)

    kanji = store.get_kanji_by_char("夢")
    print(f"Kanji: {kanji.char} ({kanji.meaning_en}), {kanji.remaining_slots()} slots left")
    print()

    # ================================================================
    # STEP 1: ONE MEMBER THROUGH THE WIZARD
    # ================================================================
    banner("STEP 1: SELECT, CONFIRM, ANNOTATE, FINALIZE")

    store.upsert_profile("hana", username="hana")
    state = allocator.begin("hana")
    print(f"  {state.step.value}")
    state = allocator.select_tentative(state, kanji.id)
    print(f"  {state.step.value} -> kanji {state.kanji_id}")
    state = allocator.confirm_tentative(state)
    print(f"  {state.step.value} (confirmed)")
    state = allocator.record_reason(state, "いつも夢を見ているから")
    print(f"  {state.step.value} -> attempt {state.attempt_id}")
    state = allocator.finalize(state)
    print(f"  {state.step.value}")
    print(f"[OK] {kanji.char} now has {store.get_kanji(kanji.id).current_users} holder(s)")
    print()

    # ================================================================
    # STEP 2: THE LAST SLOT
    # ================================================================
    banner("STEP 2: TWO MEMBERS, ONE SLOT")

    # Fill up to one remaining slot
    for i in range(allocator.capacity_limit - 2):
        user_id = f"filler-{i}"
        store.upsert_profile(user_id, username=user_id)
        s = allocator.select_tentative(allocator.begin(user_id), kanji.id)
        s = allocator.record_reason(allocator.confirm_tentative(s))
        allocator.finalize(s)

    racers = {}
    for user_id in ("ren", "sora"):
        store.upsert_profile(user_id, username=user_id)
        s = allocator.select_tentative(allocator.begin(user_id), kanji.id)
        racers[user_id] = allocator.record_reason(allocator.confirm_tentative(s))
    print(f"  Both annotated with {store.get_kanji(kanji.id).remaining_slots()} slot left")

    for user_id, s in racers.items():
        try:
            allocator.finalize(s)
            print(f"  [OK] {user_id} claimed the last slot")
        except CapacityExceeded as e:
            print(f"  [FULL] {user_id}: {e} (back to {e.state.step.value})")

    print(f"  {kanji.char}: {store.get_kanji(kanji.id).current_users}/{allocator.capacity_limit}")
    print()

    # ================================================================
    # STEP 3: POSTING
    # ================================================================
    banner("STEP 3: JAPANESE-ONLY POSTS")

    for text in ("今日はいい天気ですね☀️", "こんにちは world 123", "Привет"):
        result = TextGate.check(text)
        print(f"  {text!r}: {'OK' if result.acceptable else result.message or 'rejected'}")

    post = posts.create_post("hana", "夢を追いかけよう！")
    print(f"[OK] Post {post.id} created: {post.content}")

    try:
        posts.create_post("sora", "やった")
    except PostingLocked as e:
        print(f"  sora cannot post yet: {e}")

    try:
        posts.create_post("hana", "hello")
    except ValidationRejected as e:
        print(f"  rejected: {e}")
    print()

    banner("Demonstration complete")


if __name__ == "__main__":
    main()
