"""Workflow and approval error types."""

from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base error for workflow operations."""


class WorkflowNotFoundError(WorkflowError):
    """Referenced task, workflow or execution does not exist."""


class WorkflowForbiddenError(WorkflowError):
    """Actor is neither an admin nor the task owner."""


class WorkflowStateError(WorkflowError):
    """Operation is not allowed in the current execution/task state."""


class WorkflowDefinitionError(ValueError):
    """Workflow definition payload is malformed."""


class ConditionError(ValueError):
    """Step condition uses syntax outside the allowed expression subset."""


class ApprovalError(WorkflowError):
    """Base error for approval resolution."""


class ApprovalNotFoundError(ApprovalError):
    """No approval record with the given id."""


class ApprovalForbiddenError(ApprovalError):
    """Actor may not resolve approvals of this task."""


class ApprovalConflictError(ApprovalError):
    """Approval is no longer pending or was resolved concurrently."""


class ApprovalValidationError(ApprovalError, ValueError):
    """Decision payload is invalid for this approval."""


class ApprovalResolutionError(ApprovalError):
    """Downstream writes failed; the approval was reverted to pending."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
