from complaint_desk.service.errors import StateTransitionError, ValidationError

STATUS_ORDER = {
    "pending": 0,
    "assigned": 1,
    "in-progress": 2,
    "resolved": 3,
}

STATUS_LABELS = {
    "pending": "Pending",
    "assigned": "Assigned",
    "in-progress": "In Progress",
    "resolved": "Resolved",
}

# pending -> assigned is reserved for assign()
_ALLOWED = {
    "pending": frozenset({"assigned"}),
    "assigned": frozenset({"in-progress", "resolved"}),
    "in-progress": frozenset({"resolved"}),
    "resolved": frozenset(),
}


def ensure_known_status(status: str) -> None:
    if status not in STATUS_ORDER:
        raise ValidationError(f"unknown status: {status!r}", details={"status": status})


def is_terminal(status: str) -> bool:
    return not _ALLOWED.get(status)


def check_transition(current: str, new: str, *, via_assign: bool = False) -> None:
    ensure_known_status(new)
    details = {"from": current, "to": new}

    if current == "resolved":
        raise StateTransitionError("complaint is resolved and can no longer change", details=details)
    if new == "assigned" and not via_assign:
        raise StateTransitionError("complaints become assigned only through assignment", details=details)
    if current == "pending" and not via_assign:
        raise StateTransitionError(
            f"cannot move an unassigned complaint to {new}; assign an agent first",
            details=details,
        )
    if new not in _ALLOWED.get(current, frozenset()):
        raise StateTransitionError(f"illegal status transition {current} -> {new}", details=details)
