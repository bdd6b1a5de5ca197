"""
Return Record State Machine

This module is the SINGLE SOURCE OF TRUTH for return record status changes.
All status changes must go through this module.

Two tracks share one record:

    Collection:  Requested -> PickupScheduled -> COL_JobAccepted -> COL_BranchReceived
                 -> COL_Consolidated -> COL_InTransit -> COL_HubReceived -> Completed
                 Requested -> ReturnToSupplier -> Completed
    NCR / hub:   Requested -> NCR_InTransit -> NCR_HubReceived -> NCR_QCCompleted
                 -> [Documented] -> Completed

DirectReturn, Settled_OnField and record-only Completed are assigned at
creation and never entered by a transition. Canceled is reachable from every
non-terminal status.

The apply_* functions operate on raw store documents and are meant to run
inside DocumentStore.run_atomic, so the status check and the write happen
in one atomic step.
"""

import copy
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from app.schemas.return_record import Disposition, ReturnStatus


class TransitionAction(str, Enum):
    SUBMIT = "submit"
    SCHEDULE_PICKUP = "schedule_pickup"
    ACCEPT_JOB = "accept_job"
    RECEIVE_AT_BRANCH = "receive_at_branch"
    CONSOLIDATE = "consolidate"
    DISPATCH = "dispatch"
    RECEIVE_AT_HUB = "receive_at_hub"
    RETURN_TO_SUPPLIER = "return_to_supplier"
    SHIP_TO_HUB = "ship_to_hub"
    COMPLETE_QC = "complete_qc"
    DOCUMENT = "document"
    COMPLETE = "complete"
    CANCEL = "cancel"


class InvalidTransitionError(Exception):
    """Raised when a record is not in a state that allows the requested change."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class DispositionError(ValueError):
    """Raised when a disposition cannot be set on a record."""
    pass


S = ReturnStatus
A = TransitionAction


# =============================================================================
# STATUS SETS
# =============================================================================

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.DIRECT_RETURN, S.SETTLED_ON_FIELD, S.CANCELED})

# Statuses at which the disposition may be decided
DISPOSITION_STATUSES = frozenset({
    S.NCR_HUB_RECEIVED,
    S.NCR_QC_COMPLETED,
    S.DOCUMENTED,
    S.COL_CONSOLIDATED,
    S.COL_IN_TRANSIT,
    S.COL_HUB_RECEIVED,
    S.RETURN_TO_SUPPLIER,
})


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: (action, current_status) -> next_status
TRANSITIONS: Dict[Tuple[TransitionAction, ReturnStatus], ReturnStatus] = {
    (A.SUBMIT, S.DRAFT): S.REQUESTED,
    (A.SCHEDULE_PICKUP, S.REQUESTED): S.PICKUP_SCHEDULED,
    (A.ACCEPT_JOB, S.PICKUP_SCHEDULED): S.COL_JOB_ACCEPTED,
    (A.RECEIVE_AT_BRANCH, S.COL_JOB_ACCEPTED): S.COL_BRANCH_RECEIVED,
    (A.CONSOLIDATE, S.COL_BRANCH_RECEIVED): S.COL_CONSOLIDATED,
    (A.DISPATCH, S.COL_CONSOLIDATED): S.COL_IN_TRANSIT,
    (A.RECEIVE_AT_HUB, S.COL_IN_TRANSIT): S.COL_HUB_RECEIVED,
    (A.RETURN_TO_SUPPLIER, S.REQUESTED): S.RETURN_TO_SUPPLIER,
    (A.SHIP_TO_HUB, S.REQUESTED): S.NCR_IN_TRANSIT,
    (A.RECEIVE_AT_HUB, S.NCR_IN_TRANSIT): S.NCR_HUB_RECEIVED,
    (A.COMPLETE_QC, S.NCR_HUB_RECEIVED): S.NCR_QC_COMPLETED,
    (A.DOCUMENT, S.NCR_QC_COMPLETED): S.DOCUMENTED,
    (A.COMPLETE, S.COL_HUB_RECEIVED): S.COMPLETED,
    (A.COMPLETE, S.RETURN_TO_SUPPLIER): S.COMPLETED,
    (A.COMPLETE, S.NCR_QC_COMPLETED): S.COMPLETED,
    (A.COMPLETE, S.DOCUMENTED): S.COMPLETED,
}
TRANSITIONS.update({
    (A.CANCEL, status): S.CANCELED for status in ReturnStatus if status not in TERMINAL_STATUSES
})

# Human-readable action names
ACTION_LABELS: Dict[TransitionAction, str] = {
    A.SUBMIT: "Submit Request",
    A.SCHEDULE_PICKUP: "Schedule Pickup",
    A.ACCEPT_JOB: "Accept Collection Job",
    A.RECEIVE_AT_BRANCH: "Receive at Branch",
    A.CONSOLIDATE: "Consolidate",
    A.DISPATCH: "Dispatch to Hub",
    A.RECEIVE_AT_HUB: "Receive at Hub",
    A.RETURN_TO_SUPPLIER: "Return Directly to Supplier",
    A.SHIP_TO_HUB: "Ship to Hub",
    A.COMPLETE_QC: "Complete QC",
    A.DOCUMENT: "Issue Documents",
    A.COMPLETE: "Complete",
    A.CANCEL: "Cancel",
}

# Single step backwards, only with the shared secret
UNDO_TARGETS: Dict[ReturnStatus, ReturnStatus] = {
    S.PICKUP_SCHEDULED: S.COL_JOB_ACCEPTED,
    S.COL_JOB_ACCEPTED: S.PICKUP_SCHEDULED,
    S.COL_BRANCH_RECEIVED: S.COL_JOB_ACCEPTED,
    S.COL_CONSOLIDATED: S.COL_BRANCH_RECEIVED,
    S.COL_IN_TRANSIT: S.COL_CONSOLIDATED,
    S.COL_HUB_RECEIVED: S.COL_IN_TRANSIT,
    S.NCR_IN_TRANSIT: S.COL_JOB_ACCEPTED,
    S.NCR_HUB_RECEIVED: S.NCR_IN_TRANSIT,
    S.NCR_QC_COMPLETED: S.NCR_HUB_RECEIVED,
    S.DOCUMENTED: S.NCR_QC_COMPLETED,
}

# Date field stamped when entering a status (only if absent)
STATUS_DATE_FIELDS: Dict[ReturnStatus, str] = {
    S.COL_IN_TRANSIT: "dateInTransit",
    S.NCR_IN_TRANSIT: "dateInTransit",
    S.COL_HUB_RECEIVED: "dateReceived",
    S.NCR_HUB_RECEIVED: "dateReceived",
    S.NCR_QC_COMPLETED: "dateGraded",
    S.DOCUMENTED: "dateDocumented",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _status(value: Union[ReturnStatus, str, None]) -> Optional[ReturnStatus]:
    try:
        return ReturnStatus(value)
    except ValueError:
        return None


def get_target_status(current_status: str, action: Union[TransitionAction, str]) -> Optional[ReturnStatus]:
    """Status reached by `action` from `current_status`, or None if illegal."""
    status = _status(current_status)
    try:
        action = TransitionAction(action)
    except ValueError:
        return None
    if status is None:
        return None
    return TRANSITIONS.get((action, status))


def get_allowed_actions(current_status: str) -> List[TransitionAction]:
    """Actions that are legal from the current status."""
    status = _status(current_status)
    return [action for (action, source) in TRANSITIONS if source == status]


def get_action_label(action: Union[TransitionAction, str]) -> str:
    return ACTION_LABELS.get(TransitionAction(action), str(action))


def validate_transition(current_status: str, action: Union[TransitionAction, str]) -> ReturnStatus:
    """
    Validate an action against the current status.

    Returns:
        The target status

    Raises:
        InvalidTransitionError: If the action is not allowed
    """
    target = get_target_status(current_status, action)
    if target is not None:
        return target

    if is_terminal(current_status):
        raise InvalidTransitionError(
            f"Record in '{current_status}' status cannot be changed. This is a terminal state.",
            current_status,
        )
    allowed = [a.value for a in get_allowed_actions(current_status)]
    raise InvalidTransitionError(
        f"Cannot '{action}' a record in '{current_status}' status. "
        f"Allowed actions: {', '.join(allowed) or 'none'}",
        current_status,
    )


# =============================================================================
# STATUS CHECK HELPERS
# =============================================================================

def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return _status(status) in TERMINAL_STATUSES


def can_cancel(status: str) -> bool:
    return _status(status) is not None and not is_terminal(status)


def can_split(status: str) -> bool:
    return can_cancel(status)


def get_undo_target(status: str) -> Optional[ReturnStatus]:
    """Previous status for a single-step undo, or None."""
    return UNDO_TARGETS.get(_status(status))


def can_set_disposition(status: str, current_disposition: Optional[str]) -> bool:
    """Disposition is set once, at or after QC / consolidation."""
    if current_disposition not in (None, "", Disposition.PENDING.value):
        return False
    return _status(status) in DISPOSITION_STATUSES


# =============================================================================
# TRANSITION EXECUTORS (run inside run_atomic)
# =============================================================================

def _check_expected(doc: Dict[str, Any], expected_status: Optional[str]) -> str:
    current = doc.get("status")
    if expected_status is not None and current != expected_status:
        raise InvalidTransitionError(
            f"Record {doc.get('id')} is '{current}', expected '{expected_status}'. Refresh and try again.",
            current,
        )
    return current


def apply_disposition(
    doc: Dict[str, Any],
    disposition: Union[Disposition, str],
    details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Return a copy of `doc` with the disposition set.

    Raises:
        DispositionError: If the status or current disposition does not allow it
    """
    disposition = Disposition(disposition).value
    if not can_set_disposition(doc.get("status"), doc.get("disposition")):
        raise DispositionError(
            f"Disposition of record {doc.get('id')} cannot be set in status "
            f"'{doc.get('status')}' (current: {doc.get('disposition') or 'unset'})"
        )
    updated = copy.deepcopy(doc)
    updated["disposition"] = disposition
    for key, value in (details or {}).items():
        if value is not None and key not in ("id", "status", "disposition"):
            updated[key] = value
    return updated


def apply_transition(
    doc: Optional[Dict[str, Any]],
    action: Union[TransitionAction, str],
    expected_status: Optional[str],
    stamp: str,
    disposition: Optional[Union[Disposition, str]] = None,
    notes: Optional[str] = None
) -> Dict[str, Any]:
    """
    Apply an action to a stored return record document.

    This function:
    1. Rejects the change if the stored status differs from expected_status
    2. Validates the action against the transition table
    3. Stamps the stage date (dateCompleted always, others only if absent)
    4. Applies action side effects (RTV disposition, QC disposition, notes)

    Args:
        doc: Current store document (None if it no longer exists)
        action: Transition action
        expected_status: Status the caller saw; None skips the check
        stamp: ISO timestamp used for date fields
        disposition: Optional disposition decided with QC
        notes: Optional operator note

    Returns:
        New document to write

    Raises:
        InvalidTransitionError: Stale status or illegal action
        DispositionError: Disposition not allowed
    """
    if doc is None:
        raise InvalidTransitionError("Record no longer exists")

    current = _check_expected(doc, expected_status)
    action = TransitionAction(action)
    target = validate_transition(current, action)

    updated = copy.deepcopy(doc)
    if disposition is not None:
        if action != A.COMPLETE_QC:
            raise DispositionError(f"Disposition can only be decided with '{A.COMPLETE_QC.value}'")
        updated = apply_disposition(updated, disposition)

    updated["status"] = target.value

    date_field = STATUS_DATE_FIELDS.get(target)
    if date_field and not updated.get(date_field):
        updated[date_field] = stamp
    if target == S.COMPLETED:
        updated["dateCompleted"] = stamp

    if action == A.RETURN_TO_SUPPLIER:
        updated["disposition"] = Disposition.RTV.value
    if notes:
        updated["notes"] = notes

    return updated


def apply_undo(doc: Optional[Dict[str, Any]], expected_status: Optional[str] = None) -> Dict[str, Any]:
    """
    Move a record one step back. Stage dates are kept.

    Raises:
        InvalidTransitionError: Terminal, initial, or stale status
    """
    if doc is None:
        raise InvalidTransitionError("Record no longer exists")

    current = _check_expected(doc, expected_status)
    target = get_undo_target(current)
    if target is None:
        raise InvalidTransitionError(f"Status '{current}' cannot be undone", current)

    updated = copy.deepcopy(doc)
    updated["status"] = target.value
    return updated


# =============================================================================
# VISUALIZATION (for debugging/documentation)
# =============================================================================

def print_state_diagram():
    """Print a text representation of the state machine."""
    print("\n=== Return Record State Machine ===\n")
    for status in ReturnStatus:
        actions = [a for a in get_allowed_actions(status) if a != A.CANCEL]
        if is_terminal(status):
            print(f"{status.value}: [TERMINAL STATE]")
        else:
            print(f"{status.value}:")
            for action in actions:
                target = TRANSITIONS[(action, status)]
                print(f"  -> {target.value} ({get_action_label(action)})")
            undo = get_undo_target(status)
            if undo:
                print(f"  <- {undo.value} (Undo)")
        print()


if __name__ == "__main__":
    # Run this file directly to see the state diagram
    print_state_diagram()
