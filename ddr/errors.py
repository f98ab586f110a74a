from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for errors raised by the reconciliation core."""

    def __init__(self, message: str, workload: str | None = None):
        super().__init__(message)
        self.workload = workload


class TransientInfraError(ReconcilerError):
    """The executor or another collaborator failed in a way worth retrying."""


class SpecConflictError(ReconcilerError):
    """No valid binding/placement exists for what was declared."""


class NoMatchingVolume(SpecConflictError):
    pass


class BudgetExceededError(ReconcilerError):
    """A rollout or replacement budget is exhausted; remediation stops."""


class InvariantViolation(ReconcilerError):
    """Shared state is inconsistent. The current pass must not continue."""
