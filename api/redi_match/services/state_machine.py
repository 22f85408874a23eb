from .errors import CycleStateError


def transition_cycle_status(current: str, action: str) -> str:
    if action == "activate":
        if current in {"scheduled", "active"}:
            return "active"
        raise CycleStateError(f"cannot activate a cycle that is {current}")

    if action == "complete":
        if current in {"active", "completed"}:
            return "completed"
        raise CycleStateError(f"cannot complete a cycle that is {current}")

    raise CycleStateError(f"unknown cycle action {action!r}")
