"""Type definitions for persisted execution state.

This module provides TypedDict definitions for the JSON documents written by
the :class:`~devflow.engine.state_manager.StateManager`, one per plan id, in
the state directory (``.devflow/state/`` by default).

Example:
    A plan run halfway through::

        state: ExecutionRecordState = {
            "plan_id": "p1",
            "status": "executing",
            "plan": {"id": "p1", "name": "", "steps": [...], "options": {...}},
            "created_at": "2024-01-15T10:30:00+00:00",
            "updated_at": "2024-01-15T10:31:02+00:00",
            "approved": True,
            "position": 1,
            "steps": {
                "s1": {"step_id": "s1", "status": "succeeded", "attempts": 1, ...},
                "s2": {"step_id": "s2", "status": "pending", "attempts": 0, ...},
            },
            "transitions": [...],
            "completion_order": ["s1"],
        }
"""

from typing import Any, NotRequired, TypedDict


class TransitionState(TypedDict):
    """One persisted status change, for a step or for the plan itself."""

    sequence: int
    """Monotonic position of this transition within the plan run.

    Transitions are persisted in the order they occur; a resumed run
    continues numbering from the last persisted value.
    """

    step_id: str | None
    """Step that changed status, or None for a plan-level transition."""

    from_status: str | None
    """Status before the change. None for the first plan transition."""

    to_status: str
    """Status after the change."""

    at: str
    """ISO 8601 timestamp (UTC) of the change."""

    detail: NotRequired[str]
    """Short machine-readable note, e.g. ``"retry"``, ``"interrupted"``,
    ``"dependency_failed:s2"``."""


class StepRecordState(TypedDict):
    """Execution state of one step."""

    step_id: str
    status: str
    """One of the :class:`~devflow.enums.StepStatus` values."""

    attempts: int
    """Number of handler calls made for this step (retries included)."""

    started_at: NotRequired[str]
    completed_at: NotRequired[str]
    """Set when the step reaches succeeded or failed. Rollback orders
    compensations by this timestamp, newest first."""

    completion_sequence: NotRequired[int]
    """Transition sequence of the completion; breaks timestamp ties."""

    output: NotRequired[Any]
    """JSON-compatible handler result."""

    error: NotRequired[str]
    error_reason: NotRequired[str]
    retryable: NotRequired[bool]


class RollbackFailureState(TypedDict):
    step_id: str
    reason: str
    message: str


class RollbackReportState(TypedDict):
    """Outcome of a rollback pass."""

    plan_id: str
    status: str
    """rolled_back, abort_failed, or aborted when nothing had run."""

    reason: NotRequired[str]
    compensated: list[str]
    unrecoverable: list[str]
    failures: list[RollbackFailureState]
    started_at: NotRequired[str]
    finished_at: NotRequired[str]


class ExecutionRecordState(TypedDict):
    """Complete persisted record for a plan id."""

    plan_id: str
    status: str
    """One of the :class:`~devflow.enums.PlanStatus` values."""

    plan: dict[str, Any]
    """The plan document, with options resolved, so the run can be rebuilt
    after a process restart."""

    created_at: str
    updated_at: str
    approved: bool
    approved_at: NotRequired[str]
    started_at: NotRequired[str]
    finished_at: NotRequired[str]
    position: int
    """Index of the next dependency layer to dispatch."""

    abort_reason: NotRequired[str]
    steps: dict[str, StepRecordState]
    transitions: list[TransitionState]
    completion_order: list[str]
    rollback: NotRequired[RollbackReportState]
