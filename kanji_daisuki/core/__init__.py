# Core domain logic: the Japanese-only gate, slot allocation, posting and profiles

from .text_gate import TextGate, GateResult
from .allocator import (
    SlotAllocator,
    AllocatorError,
    CapacityExceeded,
    InvariantViolation,
    AlreadyFinalized,
    IllegalTransition,
    ResourceNotFound,
)
from .posting import (
    PostService,
    PostingError,
    ValidationRejected,
    PostingLocked,
    PostNotFound,
    NotPermitted,
    MAX_POST_LENGTH,
)
from .profiles import (
    ProfileService,
    ProfilePage,
    ProfileNotFound,
    MAX_BIO_LENGTH,
    COUNTRIES,
    AGE_GROUPS,
)
from .catalog import search_kanjis

__all__ = [
    "TextGate",
    "GateResult",
    "SlotAllocator",
    "AllocatorError",
    "CapacityExceeded",
    "InvariantViolation",
    "AlreadyFinalized",
    "IllegalTransition",
    "ResourceNotFound",
    "PostService",
    "PostingError",
    "ValidationRejected",
    "PostingLocked",
    "PostNotFound",
    "NotPermitted",
    "MAX_POST_LENGTH",
    "ProfileService",
    "ProfilePage",
    "ProfileNotFound",
    "MAX_BIO_LENGTH",
    "COUNTRIES",
    "AGE_GROUPS",
    "search_kanjis",
]
