"""Custom exception hierarchy for the devflow plan engine.

This module defines the errors raised while parsing, validating, executing
and rolling back plans. Validation-time errors are raised synchronously to
the caller and halt all progress. Run-time step errors are absorbed by the
execution engine and recorded as step transitions instead of escaping.

Exception Hierarchy:
    DevflowError (base)
    ├── ConfigurationError
    ├── PlanValidationError
    │   └── CycleError
    ├── UnknownCapabilityError
    ├── CapabilityError
    ├── RollbackFailure
    └── WorkflowError
        ├── PlanNotFoundError
        ├── PlanStateError
        ├── ApprovalRequiredError
        └── PlanLockedError

Example Usage:
    >>> from devflow.exceptions import PlanValidationError
    >>> try:
    ...     plan = parse_plan(document)
    ... except PlanValidationError as e:
    ...     print(e.fields)
"""

from typing import Any


class DevflowError(Exception):
    """Base exception for all devflow errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(DevflowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Invalid configuration values
    """

    pass


# =============================================================================
# Plan Validation Errors
# =============================================================================


class PlanValidationError(DevflowError):
    """A plan document is malformed.

    Raised before any step executes: duplicate step ids, dangling
    ``dependsOn`` references, malformed parameters, more than one rollback
    action on a step. Never retried.

    Attributes:
        message: Human-readable error description
        fields: Paths of the offending document fields (e.g. ``steps[1].id``)
    """

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            fields: Offending field paths
        """
        self.fields = list(fields or [])

        full_message = message
        if self.fields:
            full_message = f"{message} (fields: {', '.join(self.fields)})"

        super().__init__(full_message)
        # Preserve original message (super sets self.message to full_message)
        self.message = message


class CycleError(PlanValidationError):
    """The step dependency graph contains a cycle.

    Attributes:
        unresolved: Step ids that could not be assigned an execution layer
        cycles: Concrete cycle paths, each closed (first id repeated last)
    """

    def __init__(self, unresolved: list[str], cycles: list[list[str]] | None = None) -> None:
        """Initialize exception.

        Args:
            unresolved: Step ids left without a layer
            cycles: Cycle paths found in the graph
        """
        self.unresolved = sorted(unresolved)
        self.cycles = [list(c) for c in (cycles or [])]

        message = f"Dependency cycle among steps: {', '.join(self.unresolved)}"
        if self.cycles:
            message = f"{message}; {'; '.join(describe_cycle(c) for c in self.cycles)}"

        super().__init__(message, fields=[f"steps.{step_id}.dependsOn" for step_id in self.unresolved])


def describe_cycle(path: list[str]) -> str:
    """Describe a closed cycle path for display.

    Args:
        path: Cycle path with the first id repeated at the end

    Returns:
        A one-line description of the cycle
    """
    if len(path) == 3 and path[0] == path[-1]:
        return f"Mutual dependency: {path[0]} <-> {path[1]}"
    return f"Circular dependency chain: {' -> '.join(path)}"


# =============================================================================
# Capability Errors
# =============================================================================


class UnknownCapabilityError(DevflowError):
    """No handler is registered for a (skill, action) pair.

    Fatal during the validating phase.

    Attributes:
        skill: Skill name that was looked up
        action: Action name that was looked up
        step_id: Step that referenced the capability, when known
    """

    def __init__(self, skill: str, action: str, step_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            skill: Skill name
            action: Action name
            step_id: Step referencing the capability
        """
        self.skill = skill
        self.action = action
        self.step_id = step_id

        message = f"Unknown capability: {skill}/{action}"
        if step_id:
            message = f"{message} (step: {step_id})"
        super().__init__(message)


class CapabilityError(DevflowError):
    """A step handler failed.

    Handlers raise this to report a failure with a machine-readable reason.
    ``retryable=True`` makes the step eligible for a single automatic retry.

    Attributes:
        reason: Machine-readable failure reason (e.g. ``"conflict"``)
        retryable: Whether one bounded retry should be attempted
        details: Optional structured data about the failure
    """

    def __init__(
        self,
        reason: str,
        message: str | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            reason: Machine-readable failure reason
            message: Human-readable description, defaults to the reason
            retryable: Whether the failure is transient
            details: Structured failure data
        """
        self.reason = reason
        self.retryable = retryable
        self.details = details or {}
        super().__init__(message or reason)


class RollbackFailure(DevflowError):
    """A compensating action failed.

    Recorded per step by the rollback coordinator and aggregated into the
    ``abort_failed`` plan status. Never silently swallowed: every instance
    ends up in the rollback report.

    Attributes:
        step_id: Step whose compensation failed
        reason: Machine-readable failure reason
    """

    def __init__(self, step_id: str, reason: str, message: str | None = None) -> None:
        """Initialize exception.

        Args:
            step_id: Step whose compensation failed
            reason: Machine-readable failure reason
            message: Human-readable description
        """
        self.step_id = step_id
        self.reason = reason
        super().__init__(message or f"Rollback of step {step_id} failed: {reason}")

    def to_dict(self) -> dict[str, str]:
        """Serialize for persistence and reports."""
        return {"step_id": self.step_id, "reason": self.reason, "message": self.message}


# =============================================================================
# Workflow Errors
# =============================================================================


class WorkflowError(DevflowError):
    """Plan lifecycle errors.

    Raised when a control operation does not fit the plan's current state.
    """

    pass


class PlanNotFoundError(WorkflowError):
    """No persisted record exists for a plan id."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Plan '{plan_id}' not found")


class PlanStateError(WorkflowError):
    """The requested operation is illegal in the plan's current status.

    Attributes:
        plan_id: Plan the operation targeted
        status: Plan status at the time of the request
    """

    def __init__(self, message: str, plan_id: str | None = None, status: str | None = None) -> None:
        self.plan_id = plan_id
        self.status = status

        full_message = message
        if plan_id and status:
            full_message = f"{message} (plan: {plan_id}, status: {status})"

        super().__init__(full_message)
        self.message = message


class ApprovalRequiredError(WorkflowError):
    """The plan has not been approved yet."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Plan '{plan_id}' requires approval before it can proceed")


class PlanLockedError(WorkflowError):
    """Another engine instance is already driving this plan."""

    def __init__(self, plan_id: str, holder: str | None = None) -> None:
        self.plan_id = plan_id
        self.holder = holder

        message = f"Plan '{plan_id}' is locked by another run"
        if holder:
            message = f"{message} (holder: {holder})"
        super().__init__(message)
