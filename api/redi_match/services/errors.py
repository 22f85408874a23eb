class MatchingError(Exception):
    """Base class for matching pipeline failures."""


class CapExceededError(MatchingError):
    """A match record would hold more entries than the cap allows."""


class CycleBoundaryError(MatchingError):
    """A scheduled run was invoked on a day that is not the cycle's boundary."""


class CycleStateError(MatchingError):
    """A cycle status transition is not allowed from its current status."""
