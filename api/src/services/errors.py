"""
Errors raised by the deployment orchestration services.
"""

from typing import List, Dict, Any, Optional

class ValidationFailedError(Exception):
    """Raised when a request is rejected before any upstream call."""
    pass

class BranchPreconditionError(Exception):
    """Raised when a branch is not present on every project of a module."""

    def __init__(
        self,
        branch: str,
        missing: List[str],
        unreachable: Optional[Dict[str, Any]] = None,
    ):
        self.branch = branch
        self.missing = missing
        self.unreachable = unreachable or {}
        parts = []
        if missing:
            parts.append(f"The branch '{branch}' does not exist in: {', '.join(missing)}")
        if self.unreachable:
            parts.append(
                f"Could not list branches for: {', '.join(self.unreachable)}"
            )
        super().__init__("; ".join(parts))

class PromotionBlockedError(Exception):
    """Raised when an earlier environment stage is not cleared on every project."""

    def __init__(self, stage: str, blocked_by: List[str], reason: str):
        self.stage = stage
        self.blocked_by = blocked_by
        super().__init__(reason)

class OperationInProgressError(Exception):
    """Raised when another operation holds the lock for a group and branch."""
    pass

class GroupRevisionConflictError(Exception):
    """Raised when the group document changed since the client read it."""

    def __init__(self, expected: int, current: int):
        self.expected = expected
        self.current = current
        super().__init__(
            f"Groups were modified by someone else (revision {current}, expected {expected})"
        )
