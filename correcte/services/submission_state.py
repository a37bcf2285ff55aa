"""Submission lifecycle transitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Set

from correcte.models.enums import SubmissionStatus


# Pipeline-driven transitions. ERROR -> SUBMITTED/OCR_COMPLETE and
# REVIEW_NEEDED -> OCR_COMPLETE are only taken on explicit human action.
_ALLOWED_TRANSITIONS: Dict[SubmissionStatus, Set[SubmissionStatus]] = {
    SubmissionStatus.SUBMITTED: {
        SubmissionStatus.PROCESSING,
        SubmissionStatus.ERROR,
    },
    SubmissionStatus.PROCESSING: {
        SubmissionStatus.OCR_COMPLETE,
        SubmissionStatus.REVIEW_NEEDED,
        SubmissionStatus.ERROR,
    },
    SubmissionStatus.OCR_COMPLETE: {
        SubmissionStatus.GRADING,
        SubmissionStatus.ERROR,
    },
    SubmissionStatus.GRADING: {
        SubmissionStatus.GRADED,
        SubmissionStatus.ERROR,
    },
    SubmissionStatus.GRADED: {
        SubmissionStatus.REVIEWED,
        SubmissionStatus.ERROR,
    },
    SubmissionStatus.REVIEW_NEEDED: {
        SubmissionStatus.OCR_COMPLETE,
        SubmissionStatus.ERROR,
    },
    SubmissionStatus.REVIEWED: set(),
    SubmissionStatus.ERROR: {
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.OCR_COMPLETE,
    },
}

# Forward progress order; ERROR is outside the order.
_STAGE_RANK: Dict[SubmissionStatus, int] = {
    SubmissionStatus.SUBMITTED: 0,
    SubmissionStatus.PROCESSING: 1,
    SubmissionStatus.OCR_COMPLETE: 2,
    SubmissionStatus.REVIEW_NEEDED: 2,
    SubmissionStatus.GRADING: 3,
    SubmissionStatus.GRADED: 4,
    SubmissionStatus.REVIEWED: 5,
}

# States a submission waits in for the next queue delivery.
IN_FLIGHT: Set[SubmissionStatus] = {
    SubmissionStatus.PROCESSING,
    SubmissionStatus.OCR_COMPLETE,
    SubmissionStatus.GRADING,
}


@dataclass
class TransitionResult:
    previous: SubmissionStatus
    current: SubmissionStatus
    valid: bool


def allowed_next(status: SubmissionStatus) -> Set[SubmissionStatus]:
    return set(_ALLOWED_TRANSITIONS.get(status, set()))


def can_transition(current: SubmissionStatus, next_state: SubmissionStatus) -> bool:
    return next_state == current or next_state in _ALLOWED_TRANSITIONS.get(current, set())


def check_transition(current: SubmissionStatus, next_state: SubmissionStatus) -> TransitionResult:
    """Validate a transition; invalid transitions keep the current state."""
    if can_transition(current, next_state):
        return TransitionResult(previous=current, current=next_state, valid=True)
    return TransitionResult(previous=current, current=current, valid=False)


def stage_rank(status: SubmissionStatus) -> Optional[int]:
    return _STAGE_RANK.get(status)


def is_regression(previous: SubmissionStatus, current: SubmissionStatus) -> bool:
    """True when `current` is an earlier pipeline stage than `previous`."""
    before = stage_rank(previous)
    after = stage_rank(current)
    if before is None or after is None:
        return False
    return after < before
