"""
Change State Machine

Legal status transitions for a change:

- DRAFT -> PENDING (submitted) or FAILED (withdrawn)
- PENDING -> APPLIED or FAILED (rejected, expired, withdrawn, effector error)
- APPLIED -> ROLLED_BACK

FAILED and ROLLED_BACK are terminal.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from changegate.datastore.models import Change, ChangeStatus, FailureReason
from changegate.errors import ConflictError


VALID_TRANSITIONS: Dict[ChangeStatus, List[ChangeStatus]] = {
    ChangeStatus.DRAFT: [
        ChangeStatus.PENDING,
        ChangeStatus.FAILED
    ],
    ChangeStatus.PENDING: [
        ChangeStatus.APPLIED,
        ChangeStatus.FAILED
    ],
    ChangeStatus.APPLIED: [
        ChangeStatus.ROLLED_BACK
    ],
    ChangeStatus.FAILED: [],
    ChangeStatus.ROLLED_BACK: []
}

TERMINAL_STATES = frozenset({ChangeStatus.FAILED, ChangeStatus.ROLLED_BACK})


def can_transition(from_status: ChangeStatus, to_status: ChangeStatus) -> bool:
    """Check whether a transition is legal"""
    return to_status in VALID_TRANSITIONS[from_status]


def transition(
    change: Change,
    to_status: ChangeStatus,
    reason: Optional[FailureReason] = None,
    error: Optional[str] = None
) -> Change:
    """
    Move a change (in memory) to a new status.

    The caller persists the result with an optimistic-locked write.

    Raises:
        ConflictError: If the transition is not legal from the current status
    """
    if not can_transition(change.status, to_status):
        raise ConflictError(
            f"Change {change.change_id} cannot move from "
            f"{change.status.value} to {to_status.value}"
        )

    if to_status == ChangeStatus.FAILED and reason is None:
        raise ValueError("A failed change must carry a failure reason")

    now = datetime.now(timezone.utc)
    change.status = to_status
    change.reason = reason

    if error is not None:
        change.error = error

    if to_status == ChangeStatus.PENDING:
        change.submitted_at = now
    elif to_status == ChangeStatus.APPLIED:
        change.applied_at = now
    elif to_status == ChangeStatus.ROLLED_BACK:
        change.rollback_data = None

    return change
