"""
Store Abstraction

This module defines the Store interface and provides two implementations:
- InMemoryStore: For development and testing
- PostgresStore: For production with full durability and concurrency safety

The Store is responsible for:
- Persisting kanji, profiles, selection attempts, posts, comments and likes
- The atomic conditional capacity increment (single point of admission)
- Running the three claim writes as one transaction

The SlotAllocator retains responsibility for:
- The selection state machine
- Precondition checks
- Interpreting "zero rows affected" as capacity exceeded

TRANSACTION CONTRACT:
All claim writes MUST use the begin_claim() context manager:

    with store.begin_claim() as ctx:
        if ctx.increment_capacity_if_below(kanji_id, limit) is None:
            raise CapacityExceeded(...)
        ctx.mark_claimant_finalized(user_id, kanji_id)
        ctx.finalize_selection_attempt(attempt_id, user_id, kanji_id)
        ctx.commit()

Leaving the block without commit() discards every write made inside it.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Generator, Optional

import psycopg2
import psycopg2.extras

from ..schemas import Comment, Kanji, Post, Profile, SelectionAttempt


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


class StorageUnavailable(StoreError):
    """Raised when the backing store cannot be reached or times out. Retryable."""
    pass


class LockTimeoutError(StorageUnavailable):
    """Raised when a row lock could not be acquired in time."""
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


PROFILE_FIELDS = (
    "username",
    "display_name",
    "avatar_url",
    "bio",
    "country",
    "age_group",
    "selected_kanji_id",
    "has_finalized_claim",
    "is_admin",
)


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ClaimContext:
    """
    Transaction context for a claim (or release).

    Holds the connection and cursor for the duration of the transaction,
    so every write lands on the SAME connection.

    Usage:
        with store.begin_claim() as ctx:
            ctx.increment_capacity_if_below(kanji_id, limit)
            ...
            ctx.commit()
    """
    _store: "Store"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _staged: list = field(default_factory=list)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def _require_open(self) -> None:
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")

    def increment_capacity_if_below(self, kanji_id: int, limit: int) -> Optional[int]:
        """
        Increment current_users only if it is below `limit`.

        Returns the new value, or None when no row was affected
        (kanji missing or already at the limit).
        """
        self._require_open()
        return self._store._do_increment(self, kanji_id, limit)

    def mark_claimant_finalized(self, user_id: str, kanji_id: int) -> bool:
        """Bind the kanji and set has_finalized_claim, only if not already set."""
        self._require_open()
        return self._store._do_mark_finalized(self, user_id, kanji_id)

    def finalize_selection_attempt(self, attempt_id: int, user_id: str, kanji_id: int) -> bool:
        """Flag the attempt as finalized; it must belong to (user_id, kanji_id)."""
        self._require_open()
        return self._store._do_finalize_attempt(self, attempt_id, user_id, kanji_id)

    def release_claim(self, user_id: str) -> Optional[int]:
        """
        Undo a finalized claim: clear the profile binding, un-finalize the
        attempt and decrement the kanji counter (never below zero).

        Returns the released kanji id, or None if the member held no claim.
        """
        self._require_open()
        return self._store._do_release(self, user_id)

    def commit(self) -> None:
        self._require_open()
        self._store._do_commit(self)
        self._committed = True

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class Store(ABC):
    """
    Abstract base class for persistence.

    Implementations must ensure:
    1. increment_capacity_if_below is a single atomic check-and-increment
    2. begin_claim writes are all-or-nothing
    3. current_users never exceeds the limit passed by the caller

    All calls may raise StorageUnavailable independently of business logic.
    """

    # ---------------- kanji ----------------

    @abstractmethod
    def get_kanji(self, kanji_id: int) -> Optional[Kanji]:
        pass

    @abstractmethod
    def get_kanji_by_char(self, char: str) -> Optional[Kanji]:
        pass

    @abstractmethod
    def list_kanjis(self) -> list[Kanji]:
        """All kanji ordered by id."""
        pass

    @abstractmethod
    def upsert_kanji(self, kanji: Kanji) -> Kanji:
        """
        Insert or update kanji metadata (seeding).

        Never touches current_users of an existing row.
        """
        pass

    # ---------------- profiles ----------------

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Profile]:
        pass

    @abstractmethod
    def get_profile_by_username(self, username: str) -> Optional[Profile]:
        pass

    @abstractmethod
    def upsert_profile(self, user_id: str, **fields: Any) -> Profile:
        """
        Create or update a profile.

        A new profile needs `username`. Only PROFILE_FIELDS are accepted.
        """
        pass

    # ---------------- selection attempts ----------------

    @abstractmethod
    def insert_selection_attempt(
        self,
        user_id: str,
        kanji_id: int,
        reason: Optional[str],
    ) -> SelectionAttempt:
        pass

    @abstractmethod
    def get_selection_attempt(self, attempt_id: int) -> Optional[SelectionAttempt]:
        pass

    @abstractmethod
    def list_selection_attempts(self, user_id: str) -> list[SelectionAttempt]:
        """Attempts for a member, oldest first."""
        pass

    # ---------------- claim transaction ----------------

    @contextmanager
    @abstractmethod
    def begin_claim(self) -> Generator[ClaimContext, None, None]:
        """
        Begin an atomic claim transaction.

        Yields:
            ClaimContext. Auto-rollbacks on exception or missing commit().
        """
        pass

    @abstractmethod
    def _do_increment(self, ctx: ClaimContext, kanji_id: int, limit: int) -> Optional[int]:
        pass

    @abstractmethod
    def _do_mark_finalized(self, ctx: ClaimContext, user_id: str, kanji_id: int) -> bool:
        pass

    @abstractmethod
    def _do_finalize_attempt(
        self, ctx: ClaimContext, attempt_id: int, user_id: str, kanji_id: int
    ) -> bool:
        pass

    @abstractmethod
    def _do_release(self, ctx: ClaimContext, user_id: str) -> Optional[int]:
        pass

    @abstractmethod
    def _do_commit(self, ctx: ClaimContext) -> None:
        """Internal: commit current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: ClaimContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    # ---------------- posts ----------------

    @abstractmethod
    def create_post(self, user_id: str, content: str, image_url: Optional[str]) -> Post:
        pass

    @abstractmethod
    def get_post(self, post_id: int) -> Optional[Post]:
        pass

    @abstractmethod
    def update_post_content(self, post_id: int, content: str) -> Optional[Post]:
        pass

    @abstractmethod
    def delete_post(self, post_id: int) -> bool:
        """Delete a post together with its likes and comments."""
        pass

    @abstractmethod
    def list_posts(
        self, limit: int = 50, offset: int = 0, user_id: Optional[str] = None
    ) -> list[Post]:
        """Newest first, optionally only one member's posts."""
        pass

    @abstractmethod
    def add_comment(self, post_id: int, user_id: str, content: str) -> Optional[Comment]:
        """Returns None if the post does not exist."""
        pass

    @abstractmethod
    def list_comments(self, post_id: int) -> list[Comment]:
        """Oldest first."""
        pass

    @abstractmethod
    def toggle_like(self, user_id: str, post_id: int) -> Optional[tuple[bool, int]]:
        """
        Like or unlike a post.

        Returns (liked, likes_count), or None if the post does not exist.
        """
        pass

    # ---------------- health ----------------

    @abstractmethod
    def get_counts(self) -> dict[str, int]:
        """Row counts for health checks."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryStore(Store):
    """
    In-memory implementation of Store.

    Suitable for:
    - Development
    - Testing (including concurrent claim tests)

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    A claim transaction holds the store lock from begin_claim() until
    commit/rollback. Writes are staged and applied only on commit, so a
    failed transaction leaves no trace.
    """

    def __init__(self):
        self._kanjis: dict[int, Kanji] = {}
        self._profiles: dict[str, Profile] = {}
        self._attempts: dict[int, SelectionAttempt] = {}
        self._posts: dict[int, Post] = {}
        self._comments: dict[int, Comment] = {}
        self._likes: set[tuple[str, int]] = set()
        self._next_attempt_id = 1
        self._next_post_id = 1
        self._next_comment_id = 1
        self._lock = Lock()

    # ---------------- kanji ----------------

    def get_kanji(self, kanji_id: int) -> Optional[Kanji]:
        with self._lock:
            kanji = self._kanjis.get(kanji_id)
            return kanji.model_copy() if kanji else None

    def get_kanji_by_char(self, char: str) -> Optional[Kanji]:
        with self._lock:
            for kanji in self._kanjis.values():
                if kanji.char == char:
                    return kanji.model_copy()
            return None

    def list_kanjis(self) -> list[Kanji]:
        with self._lock:
            return [self._kanjis[k].model_copy() for k in sorted(self._kanjis)]

    def upsert_kanji(self, kanji: Kanji) -> Kanji:
        with self._lock:
            existing = self._kanjis.get(kanji.id)
            if existing is not None:
                kanji = kanji.model_copy(update={
                    "current_users": existing.current_users,
                    "created_at": existing.created_at,
                })
            elif kanji.created_at is None:
                kanji = kanji.model_copy(update={"created_at": _now()})
            self._kanjis[kanji.id] = kanji
            return kanji.model_copy()

    # ---------------- profiles ----------------

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            profile = self._profiles.get(user_id)
            return profile.model_copy() if profile else None

    def get_profile_by_username(self, username: str) -> Optional[Profile]:
        with self._lock:
            for profile in self._profiles.values():
                if profile.username == username:
                    return profile.model_copy()
            return None

    def upsert_profile(self, user_id: str, **fields: Any) -> Profile:
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise StoreError(f"Unknown profile fields: {sorted(unknown)}")

        with self._lock:
            now = _now()
            existing = self._profiles.get(user_id)
            if existing is None:
                if "username" not in fields:
                    raise StoreError(f"Cannot create profile {user_id} without username")
                profile = Profile(id=user_id, created_at=now, updated_at=now, **fields)
            else:
                profile = existing.model_copy(update={**fields, "updated_at": now})
            self._profiles[user_id] = profile
            return profile.model_copy()

    # ---------------- selection attempts ----------------

    def insert_selection_attempt(
        self,
        user_id: str,
        kanji_id: int,
        reason: Optional[str],
    ) -> SelectionAttempt:
        with self._lock:
            attempt = SelectionAttempt(
                id=self._next_attempt_id,
                user_id=user_id,
                kanji_id=kanji_id,
                reason=reason,
                selected_at=_now(),
            )
            self._attempts[attempt.id] = attempt
            self._next_attempt_id += 1
            return attempt.model_copy()

    def get_selection_attempt(self, attempt_id: int) -> Optional[SelectionAttempt]:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            return attempt.model_copy() if attempt else None

    def list_selection_attempts(self, user_id: str) -> list[SelectionAttempt]:
        with self._lock:
            return [
                a.model_copy() for a in sorted(self._attempts.values(), key=lambda a: a.id)
                if a.user_id == user_id
            ]

    # ---------------- claim transaction ----------------

    @contextmanager
    def begin_claim(self) -> Generator[ClaimContext, None, None]:
        """Begin claim transaction with the store lock held."""
        self._lock.acquire()
        ctx = ClaimContext(_store=self, _conn="in_memory_lock")

        try:
            yield ctx
        except Exception:
            if not ctx._committed:
                ctx.rollback()
            raise
        finally:
            if not ctx._committed and not ctx._rolled_back:
                ctx.rollback()

    def _staged_value(self, ctx: ClaimContext, key: tuple, default: Any) -> Any:
        """Latest staged value for key within this transaction."""
        value = default
        for staged_key, staged_value in ctx._staged:
            if staged_key == key:
                value = staged_value
        return value

    def _do_increment(self, ctx: ClaimContext, kanji_id: int, limit: int) -> Optional[int]:
        kanji = self._kanjis.get(kanji_id)
        if kanji is None:
            return None
        current = self._staged_value(ctx, ("kanji", kanji_id), kanji.current_users)
        if current >= limit:
            return None
        ctx._staged.append((("kanji", kanji_id), current + 1))
        return current + 1

    def _do_mark_finalized(self, ctx: ClaimContext, user_id: str, kanji_id: int) -> bool:
        profile = self._staged_value(ctx, ("profile", user_id), self._profiles.get(user_id))
        if profile is None or profile.has_finalized_claim:
            return False
        ctx._staged.append((
            ("profile", user_id),
            profile.model_copy(update={
                "selected_kanji_id": kanji_id,
                "has_finalized_claim": True,
                "updated_at": _now(),
            }),
        ))
        return True

    def _do_finalize_attempt(
        self, ctx: ClaimContext, attempt_id: int, user_id: str, kanji_id: int
    ) -> bool:
        attempt = self._staged_value(ctx, ("attempt", attempt_id), self._attempts.get(attempt_id))
        if attempt is None or attempt.user_id != user_id or attempt.kanji_id != kanji_id:
            return False
        ctx._staged.append((
            ("attempt", attempt_id),
            attempt.model_copy(update={"is_finalized": True}),
        ))
        return True

    def _do_release(self, ctx: ClaimContext, user_id: str) -> Optional[int]:
        profile = self._staged_value(ctx, ("profile", user_id), self._profiles.get(user_id))
        if profile is None or not profile.has_finalized_claim or profile.selected_kanji_id is None:
            return None

        kanji_id = profile.selected_kanji_id
        ctx._staged.append((
            ("profile", user_id),
            profile.model_copy(update={
                "selected_kanji_id": None,
                "has_finalized_claim": False,
                "updated_at": _now(),
            }),
        ))

        kanji = self._kanjis.get(kanji_id)
        if kanji is not None:
            current = self._staged_value(ctx, ("kanji", kanji_id), kanji.current_users)
            ctx._staged.append((("kanji", kanji_id), max(0, current - 1)))

        for attempt in self._attempts.values():
            if attempt.user_id == user_id and attempt.is_finalized:
                ctx._staged.append((
                    ("attempt", attempt.id),
                    attempt.model_copy(update={"is_finalized": False}),
                ))
        return kanji_id

    def _do_commit(self, ctx: ClaimContext) -> None:
        if ctx._conn != "in_memory_lock":
            raise StoreError("_do_commit called outside transaction")

        try:
            for (kind, key), value in ctx._staged:
                if kind == "kanji":
                    self._kanjis[key] = self._kanjis[key].model_copy(
                        update={"current_users": value}
                    )
                elif kind == "profile":
                    self._profiles[key] = value
                elif kind == "attempt":
                    self._attempts[key] = value
        finally:
            ctx._staged.clear()
            ctx._conn = None
            self._lock.release()

    def _do_rollback(self, ctx: ClaimContext) -> None:
        """Discard staged writes and release the lock."""
        ctx._staged.clear()
        if ctx._conn == "in_memory_lock":
            ctx._conn = None
            self._lock.release()

    # ---------------- posts ----------------

    def create_post(self, user_id: str, content: str, image_url: Optional[str]) -> Post:
        with self._lock:
            now = _now()
            post = Post(
                id=self._next_post_id,
                user_id=user_id,
                content=content,
                image_url=image_url,
                created_at=now,
                updated_at=now,
            )
            self._posts[post.id] = post
            self._next_post_id += 1
            return post.model_copy()

    def get_post(self, post_id: int) -> Optional[Post]:
        with self._lock:
            post = self._posts.get(post_id)
            return post.model_copy() if post else None

    def update_post_content(self, post_id: int, content: str) -> Optional[Post]:
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                return None
            post = post.model_copy(update={"content": content, "updated_at": _now()})
            self._posts[post_id] = post
            return post.model_copy()

    def delete_post(self, post_id: int) -> bool:
        with self._lock:
            if post_id not in self._posts:
                return False
            self._likes = {like for like in self._likes if like[1] != post_id}
            self._comments = {
                cid: c for cid, c in self._comments.items() if c.post_id != post_id
            }
            del self._posts[post_id]
            return True

    def list_posts(
        self, limit: int = 50, offset: int = 0, user_id: Optional[str] = None
    ) -> list[Post]:
        with self._lock:
            posts = sorted(
                (p for p in self._posts.values() if user_id is None or p.user_id == user_id),
                key=lambda p: (p.created_at, p.id),
                reverse=True,
            )
            return [p.model_copy() for p in posts[offset:offset + limit]]

    def add_comment(self, post_id: int, user_id: str, content: str) -> Optional[Comment]:
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                return None
            comment = Comment(
                id=self._next_comment_id,
                post_id=post_id,
                user_id=user_id,
                content=content,
                created_at=_now(),
            )
            self._comments[comment.id] = comment
            self._next_comment_id += 1
            self._posts[post_id] = post.model_copy(
                update={"comments_count": post.comments_count + 1}
            )
            return comment.model_copy()

    def list_comments(self, post_id: int) -> list[Comment]:
        with self._lock:
            return [
                c.model_copy() for c in sorted(self._comments.values(), key=lambda c: c.id)
                if c.post_id == post_id
            ]

    def toggle_like(self, user_id: str, post_id: int) -> Optional[tuple[bool, int]]:
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                return None
            key = (user_id, post_id)
            if key in self._likes:
                self._likes.discard(key)
                liked = False
                count = max(0, post.likes_count - 1)
            else:
                self._likes.add(key)
                liked = True
                count = post.likes_count + 1
            self._posts[post_id] = post.model_copy(update={"likes_count": count})
            return liked, count

    # ---------------- health ----------------

    def get_counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "kanjis": len(self._kanjis),
                "profiles": len(self._profiles),
                "selection_attempts": len(self._attempts),
                "posts": len(self._posts),
            }

    def clear(self) -> None:
        """Clear all data (for testing only)."""
        with self._lock:
            self._kanjis.clear()
            self._profiles.clear()
            self._attempts.clear()
            self._posts.clear()
            self._comments.clear()
            self._likes.clear()
            self._next_attempt_id = 1
            self._next_post_id = 1
            self._next_comment_id = 1


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

KANJI_COLUMNS = (
    "id, char, reading_kun, reading_on, meaning_en, meaning_ja, "
    "stroke_count, jlpt_level, current_users, created_at"
)
PROFILE_COLUMNS = (
    "id, username, display_name, avatar_url, bio, country, age_group, "
    "selected_kanji_id, has_finalized_claim, is_admin, created_at, updated_at"
)
ATTEMPT_COLUMNS = "id, user_id, kanji_id, reason, selected_at, is_finalized"
POST_COLUMNS = (
    "id, user_id, content, image_url, likes_count, comments_count, "
    "created_at, updated_at"
)
COMMENT_COLUMNS = "id, post_id, user_id, content, created_at"


class PostgresStore(Store):
    """
    PostgreSQL implementation of Store.

    Provides:
    - Full ACID guarantees
    - Admission control via a server-side conditional UPDATE
      (no read-modify-write in application code)
    - Durability and multi-instance support
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Transaction state (conn, cursor) lives in ClaimContext, not on the
    store, so one store instance can be shared across threads.

    Requirements:
    - Tables created from schema.sql
    - psycopg2 for connections

    Usage:
        store = PostgresStore(connection_factory)
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for a row lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    # ---------------- plumbing ----------------

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.OperationalError as e:
            raise StorageUnavailable(f"Could not connect to database: {e}") from e

    def _translate(self, e: Exception) -> Exception:
        """Map driver errors to store errors."""
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return LockTimeoutError("Row busy - could not acquire lock. Try again.")
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg:
                return LockTimeoutError("Row busy - lock wait timed out. Try again.")
            return StorageUnavailable("Query timed out - statement took too long.")
        if isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return StorageUnavailable(f"Database unavailable: {e}")
        return StoreError(str(e))

    @contextmanager
    def _cursor(self, commit: bool = False):
        """Short-lived connection for a single read or write."""
        conn = self._connect()
        cursor = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cursor
            if commit:
                conn.commit()
        except psycopg2.Error as e:
            try:
                conn.rollback()
            except psycopg2.Error:
                pass  # Connection might be broken
            raise self._translate(e) from e
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    # ---------------- kanji ----------------

    def get_kanji(self, kanji_id: int) -> Optional[Kanji]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {KANJI_COLUMNS} FROM kanjis WHERE id = %s", (kanji_id,))
            row = cur.fetchone()
            return Kanji(**row) if row else None

    def get_kanji_by_char(self, char: str) -> Optional[Kanji]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {KANJI_COLUMNS} FROM kanjis WHERE char = %s", (char,))
            row = cur.fetchone()
            return Kanji(**row) if row else None

    def list_kanjis(self) -> list[Kanji]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {KANJI_COLUMNS} FROM kanjis ORDER BY id")
            return [Kanji(**row) for row in cur.fetchall()]

    def upsert_kanji(self, kanji: Kanji) -> Kanji:
        with self._cursor(commit=True) as cur:
            cur.execute(f"""
                INSERT INTO kanjis (
                    id, char, reading_kun, reading_on, meaning_en, meaning_ja,
                    stroke_count, jlpt_level
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    char = EXCLUDED.char,
                    reading_kun = EXCLUDED.reading_kun,
                    reading_on = EXCLUDED.reading_on,
                    meaning_en = EXCLUDED.meaning_en,
                    meaning_ja = EXCLUDED.meaning_ja,
                    stroke_count = EXCLUDED.stroke_count,
                    jlpt_level = EXCLUDED.jlpt_level
                RETURNING {KANJI_COLUMNS}
            """, (
                kanji.id,
                kanji.char,
                kanji.reading_kun,
                kanji.reading_on,
                kanji.meaning_en,
                kanji.meaning_ja,
                kanji.stroke_count,
                kanji.jlpt_level,
            ))
            return Kanji(**cur.fetchone())

    # ---------------- profiles ----------------

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = %s", (user_id,))
            row = cur.fetchone()
            return Profile(**row) if row else None

    def get_profile_by_username(self, username: str) -> Optional[Profile]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE username = %s", (username,)
            )
            row = cur.fetchone()
            return Profile(**row) if row else None

    def upsert_profile(self, user_id: str, **fields: Any) -> Profile:
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise StoreError(f"Unknown profile fields: {sorted(unknown)}")

        with self._cursor(commit=True) as cur:
            if fields:
                # Column names come from PROFILE_FIELDS only
                assignments = ", ".join(f"{name} = %s" for name in fields)
                cur.execute(
                    f"UPDATE profiles SET {assignments}, updated_at = now() "
                    f"WHERE id = %s RETURNING {PROFILE_COLUMNS}",
                    (*fields.values(), user_id),
                )
                row = cur.fetchone()
            else:
                cur.execute(
                    f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = %s", (user_id,)
                )
                row = cur.fetchone()

            if row is None:
                if "username" not in fields:
                    raise StoreError(f"Cannot create profile {user_id} without username")
                columns = ", ".join(("id", *fields))
                placeholders = ", ".join(["%s"] * (len(fields) + 1))
                cur.execute(
                    f"INSERT INTO profiles ({columns}) VALUES ({placeholders}) "
                    f"RETURNING {PROFILE_COLUMNS}",
                    (user_id, *fields.values()),
                )
                row = cur.fetchone()
            return Profile(**row)

    # ---------------- selection attempts ----------------

    def insert_selection_attempt(
        self,
        user_id: str,
        kanji_id: int,
        reason: Optional[str],
    ) -> SelectionAttempt:
        with self._cursor(commit=True) as cur:
            cur.execute(f"""
                INSERT INTO kanji_selections (user_id, kanji_id, reason)
                VALUES (%s, %s, %s)
                RETURNING {ATTEMPT_COLUMNS}
            """, (user_id, kanji_id, reason))
            return SelectionAttempt(**cur.fetchone())

    def get_selection_attempt(self, attempt_id: int) -> Optional[SelectionAttempt]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {ATTEMPT_COLUMNS} FROM kanji_selections WHERE id = %s",
                (attempt_id,),
            )
            row = cur.fetchone()
            return SelectionAttempt(**row) if row else None

    def list_selection_attempts(self, user_id: str) -> list[SelectionAttempt]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {ATTEMPT_COLUMNS} FROM kanji_selections "
                f"WHERE user_id = %s ORDER BY id",
                (user_id,),
            )
            return [SelectionAttempt(**row) for row in cur.fetchall()]

    # ---------------- claim transaction ----------------

    @contextmanager
    def begin_claim(self) -> Generator[ClaimContext, None, None]:
        """
        Begin a claim transaction on a dedicated connection.

        THREAD SAFETY: Connection/cursor stored in ctx, not on self.
        """
        conn = self._connect()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            try:
                # SET LOCAL keeps the timeouts transaction-scoped
                cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            except psycopg2.Error as e:
                raise self._translate(e) from e

            ctx = ClaimContext(_store=self, _conn=conn, _cursor=cursor)
            yield ctx

        finally:
            # Single rollback path: anything not committed is rolled back
            if ctx is None or not ctx._committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _execute(self, ctx: ClaimContext, sql: str, params: tuple):
        if ctx._cursor is None:
            raise StoreError("Claim write called outside begin_claim context")
        try:
            ctx._cursor.execute(sql, params)
        except psycopg2.Error as e:
            raise self._translate(e) from e
        return ctx._cursor

    def _do_increment(self, ctx: ClaimContext, kanji_id: int, limit: int) -> Optional[int]:
        cur = self._execute(ctx, """
            UPDATE kanjis
            SET current_users = current_users + 1
            WHERE id = %s AND current_users < %s
            RETURNING current_users
        """, (kanji_id, limit))
        row = cur.fetchone()
        return row[0] if row else None

    def _do_mark_finalized(self, ctx: ClaimContext, user_id: str, kanji_id: int) -> bool:
        cur = self._execute(ctx, """
            UPDATE profiles
            SET has_finalized_claim = TRUE, selected_kanji_id = %s, updated_at = now()
            WHERE id = %s AND has_finalized_claim = FALSE
        """, (kanji_id, user_id))
        return cur.rowcount == 1

    def _do_finalize_attempt(
        self, ctx: ClaimContext, attempt_id: int, user_id: str, kanji_id: int
    ) -> bool:
        cur = self._execute(ctx, """
            UPDATE kanji_selections
            SET is_finalized = TRUE
            WHERE id = %s AND user_id = %s AND kanji_id = %s
        """, (attempt_id, user_id, kanji_id))
        return cur.rowcount == 1

    def _do_release(self, ctx: ClaimContext, user_id: str) -> Optional[int]:
        cur = self._execute(ctx, """
            SELECT selected_kanji_id
            FROM profiles
            WHERE id = %s AND has_finalized_claim = TRUE
            FOR UPDATE
        """, (user_id,))
        row = cur.fetchone()
        if row is None or row[0] is None:
            return None
        kanji_id = row[0]

        self._execute(ctx, """
            UPDATE profiles
            SET has_finalized_claim = FALSE, selected_kanji_id = NULL, updated_at = now()
            WHERE id = %s
        """, (user_id,))
        self._execute(ctx, """
            UPDATE kanjis
            SET current_users = current_users - 1
            WHERE id = %s AND current_users > 0
        """, (kanji_id,))
        self._execute(ctx, """
            UPDATE kanji_selections
            SET is_finalized = FALSE
            WHERE user_id = %s AND is_finalized = TRUE
        """, (user_id,))
        return kanji_id

    def _do_commit(self, ctx: ClaimContext) -> None:
        if ctx._conn is None:
            raise StoreError("_do_commit called outside begin_claim context")
        try:
            ctx._conn.commit()
        except psycopg2.Error as e:
            # The transaction outcome is unknown to us; never assume success
            raise self._translate(e) from e

    def _do_rollback(self, ctx: ClaimContext) -> None:
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except psycopg2.Error:
                pass

    # ---------------- posts ----------------

    def create_post(self, user_id: str, content: str, image_url: Optional[str]) -> Post:
        with self._cursor(commit=True) as cur:
            cur.execute(f"""
                INSERT INTO posts (user_id, content, image_url)
                VALUES (%s, %s, %s)
                RETURNING {POST_COLUMNS}
            """, (user_id, content, image_url))
            return Post(**cur.fetchone())

    def get_post(self, post_id: int) -> Optional[Post]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {POST_COLUMNS} FROM posts WHERE id = %s", (post_id,))
            row = cur.fetchone()
            return Post(**row) if row else None

    def update_post_content(self, post_id: int, content: str) -> Optional[Post]:
        with self._cursor(commit=True) as cur:
            cur.execute(f"""
                UPDATE posts SET content = %s, updated_at = now()
                WHERE id = %s
                RETURNING {POST_COLUMNS}
            """, (content, post_id))
            row = cur.fetchone()
            return Post(**row) if row else None

    def delete_post(self, post_id: int) -> bool:
        with self._cursor(commit=True) as cur:
            cur.execute("DELETE FROM likes WHERE post_id = %s", (post_id,))
            cur.execute("DELETE FROM comments WHERE post_id = %s", (post_id,))
            cur.execute("DELETE FROM posts WHERE id = %s", (post_id,))
            return cur.rowcount == 1

    def list_posts(
        self, limit: int = 50, offset: int = 0, user_id: Optional[str] = None
    ) -> list[Post]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {POST_COLUMNS} FROM posts "
                f"WHERE %s IS NULL OR user_id = %s "
                f"ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
                (user_id, user_id, limit, offset),
            )
            return [Post(**row) for row in cur.fetchall()]

    def add_comment(self, post_id: int, user_id: str, content: str) -> Optional[Comment]:
        with self._cursor(commit=True) as cur:
            cur.execute(
                "UPDATE posts SET comments_count = comments_count + 1 WHERE id = %s",
                (post_id,),
            )
            if cur.rowcount != 1:
                return None
            cur.execute(f"""
                INSERT INTO comments (post_id, user_id, content)
                VALUES (%s, %s, %s)
                RETURNING {COMMENT_COLUMNS}
            """, (post_id, user_id, content))
            return Comment(**cur.fetchone())

    def list_comments(self, post_id: int) -> list[Comment]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {COMMENT_COLUMNS} FROM comments WHERE post_id = %s ORDER BY id",
                (post_id,),
            )
            return [Comment(**row) for row in cur.fetchall()]

    def toggle_like(self, user_id: str, post_id: int) -> Optional[tuple[bool, int]]:
        with self._cursor(commit=True) as cur:
            # Lock the post row so like/unlike pairs serialise per post
            cur.execute("SELECT likes_count FROM posts WHERE id = %s FOR UPDATE", (post_id,))
            if cur.fetchone() is None:
                return None

            cur.execute(
                "DELETE FROM likes WHERE user_id = %s AND post_id = %s",
                (user_id, post_id),
            )
            if cur.rowcount:
                liked = False
                cur.execute("""
                    UPDATE posts SET likes_count = GREATEST(likes_count - 1, 0)
                    WHERE id = %s RETURNING likes_count
                """, (post_id,))
            else:
                liked = True
                cur.execute(
                    "INSERT INTO likes (user_id, post_id) VALUES (%s, %s)",
                    (user_id, post_id),
                )
                cur.execute("""
                    UPDATE posts SET likes_count = likes_count + 1
                    WHERE id = %s RETURNING likes_count
                """, (post_id,))
            return liked, cur.fetchone()["likes_count"]

    # ---------------- health ----------------

    def get_counts(self) -> dict[str, int]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT
                    (SELECT COUNT(*) FROM kanjis) AS kanjis,
                    (SELECT COUNT(*) FROM profiles) AS profiles,
                    (SELECT COUNT(*) FROM kanji_selections) AS selection_attempts,
                    (SELECT COUNT(*) FROM posts) AS posts
            """)
            return dict(cur.fetchone())
