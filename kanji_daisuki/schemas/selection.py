"""
Selection Schemas

A SelectionAttempt is the persisted record of a member choosing a kanji.
WizardState is the explicit, tagged state of the selection flow:

    BROWSING -> TENTATIVE -> ANNOTATED -> FINALIZED

Nothing is written to the store before ANNOTATED, and capacity is only
consumed on the way into FINALIZED.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SelectionAttempt(BaseModel):
    """
    One pass through the selection wizard.

    A member may leave several unfinalized attempts behind. At most one
    is finalized, and it references the member's selected kanji.
    """
    id: int
    user_id: str
    kanji_id: int
    reason: Optional[str] = Field(
        default=None,
        description="Free text, any language, no length limit"
    )
    selected_at: datetime
    is_finalized: bool = False


class WizardStep(str, Enum):
    """Tags of the selection state machine."""
    BROWSING = "browsing"      # nothing chosen
    TENTATIVE = "tentative"    # kanji chosen locally, nothing persisted
    ANNOTATED = "annotated"    # attempt persisted, capacity untouched
    FINALIZED = "finalized"    # terminal: slot claimed


class WizardState(BaseModel):
    """
    Where a member is in the selection flow.

    `confirmed` marks a TENTATIVE choice that passed the advisory
    capacity check and may be annotated.
    """
    step: WizardStep
    user_id: str
    kanji_id: Optional[int] = None
    confirmed: bool = False
    attempt_id: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def browsing(cls, user_id: str) -> "WizardState":
        return cls(step=WizardStep.BROWSING, user_id=user_id)

    @property
    def is_terminal(self) -> bool:
        return self.step == WizardStep.FINALIZED
