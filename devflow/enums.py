"""Enumerations for plan and step lifecycle states."""

from enum import Enum


class PlanStatus(str, Enum):
    """Lifecycle status of a plan run.

    The happy path is:
    DRAFT -> PLANNED -> VALIDATING -> VALIDATED -> EXECUTING -> COMPLETED

    On failure or cancellation:
    EXECUTING -> ABORTING -> ROLLED_BACK | ABORT_FAILED
    """

    DRAFT = "draft"
    PLANNED = "planned"
    VALIDATING = "validating"
    VALIDATED = "validated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    ABORT_FAILED = "abort_failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further step execution may occur."""
        return self in (
            PlanStatus.COMPLETED,
            PlanStatus.ABORTED,
            PlanStatus.ROLLED_BACK,
            PlanStatus.ABORT_FAILED,
        )

    @property
    def is_resumable(self) -> bool:
        """Check if an interrupted run can be picked up again."""
        return self in (PlanStatus.EXECUTING, PlanStatus.ABORTING)


class StepStatus(str, Enum):
    """Execution status of a single step."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"

    def __str__(self) -> str:
        return self.value

    @property
    def is_settled(self) -> bool:
        """Check if the step will not be dispatched again in this run."""
        return self in (
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.ROLLED_BACK,
        )


class FailurePolicy(str, Enum):
    """What the engine does when a step fails.

    - abort: stop dispatching and roll back completed steps (default)
    - continue: mark the step failed, skip its dependents, keep going
    """

    ABORT = "abort"
    CONTINUE = "continue"

    def __str__(self) -> str:
        return self.value


class RiskMarker(str, Enum):
    """Planning-time annotations describing a step's blast radius."""

    IRREVERSIBLE = "irreversible"
    HIGH_FAN_OUT = "high_fan_out"
    CRITICAL_FAN_OUT = "critical_fan_out"
    PARALLEL = "parallel"

    def __str__(self) -> str:
        return self.value
