"""
Execution record and report models.

The :class:`ExecutionRecord` is the mutable, durable view of a plan run. It
is owned by the execution engine while a run is active and is persisted by
the state manager after every state-changing transition. Reports are the
read-only summaries handed back to callers once a run reaches a terminal
status.

Example:
    Recording a step completion::

        record = ExecutionRecord.new(plan)
        record.transition_step("s1", StepStatus.RUNNING)
        record.transition_step("s1", StepStatus.SUCCEEDED)
        record.step("s1").completion_sequence  # 2
"""

from __future__ import annotations

import copy
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from devflow.enums import PlanStatus, StepStatus
from devflow.engine.types import (
    ExecutionRecordState,
    RollbackReportState,
    StepRecordState,
    TransitionState,
)

if TYPE_CHECKING:
    from devflow.models.plan import Plan


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(UTC).isoformat()


def to_jsonable(value: Any) -> Any:
    """Coerce a handler result into something the state file can hold."""
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return repr(value)


@dataclass
class Transition:
    """A single persisted status change."""

    sequence: int
    step_id: str | None
    from_status: str | None
    to_status: str
    at: str
    detail: str | None = None

    def to_dict(self) -> TransitionState:
        data: TransitionState = {
            "sequence": self.sequence,
            "step_id": self.step_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "at": self.at,
        }
        if self.detail:
            data["detail"] = self.detail
        return data

    @classmethod
    def from_dict(cls, data: TransitionState) -> Transition:
        return cls(
            sequence=data["sequence"],
            step_id=data.get("step_id"),
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            at=data["at"],
            detail=data.get("detail"),
        )


@dataclass
class StepRecord:
    """Execution state of one step within a run."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    completion_sequence: int | None = None
    output: Any = None
    error: str | None = None
    error_reason: str | None = None
    retryable: bool | None = None

    def to_dict(self) -> StepRecordState:
        data: StepRecordState = {
            "step_id": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        optional = {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "completion_sequence": self.completion_sequence,
            "output": self.output,
            "error": self.error,
            "error_reason": self.error_reason,
            "retryable": self.retryable,
        }
        for key, value in optional.items():
            if value is not None:
                data[key] = value  # type: ignore[literal-required]
        return data

    @classmethod
    def from_dict(cls, data: StepRecordState) -> StepRecord:
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data["status"]),
            attempts=data.get("attempts", 0),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            completion_sequence=data.get("completion_sequence"),
            output=data.get("output"),
            error=data.get("error"),
            error_reason=data.get("error_reason"),
            retryable=data.get("retryable"),
        )


@dataclass
class RollbackReport:
    """Outcome of a rollback pass.

    Attributes:
        plan_id: Plan that was rolled back.
        status: Final plan status: ``rolled_back``, ``abort_failed``, or
            ``aborted`` when the plan was stopped before any step ran.
        compensated: Steps whose rollback action succeeded, in the order
            the compensations ran.
        unrecoverable: Succeeded steps that declare no rollback action.
        failures: One entry per failed compensation (step id, reason, message).
        reason: Why the plan was aborted.
    """

    plan_id: str
    status: PlanStatus
    compensated: list[str] = field(default_factory=list)
    unrecoverable: list[str] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)
    reason: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def failed_steps(self) -> list[str]:
        return [failure["step_id"] for failure in self.failures]

    def to_dict(self) -> RollbackReportState:
        data: RollbackReportState = {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "compensated": list(self.compensated),
            "unrecoverable": list(self.unrecoverable),
            "failures": [dict(f) for f in self.failures],  # type: ignore[misc]
        }
        if self.reason:
            data["reason"] = self.reason
        if self.started_at:
            data["started_at"] = self.started_at
        if self.finished_at:
            data["finished_at"] = self.finished_at
        return data

    @classmethod
    def from_dict(cls, data: RollbackReportState) -> RollbackReport:
        return cls(
            plan_id=data["plan_id"],
            status=PlanStatus(data["status"]),
            compensated=list(data.get("compensated", [])),
            unrecoverable=list(data.get("unrecoverable", [])),
            failures=[dict(f) for f in data.get("failures", [])],
            reason=data.get("reason"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass
class ExecutionRecord:
    """Durable state of a plan run.

    Status changes go through :meth:`transition_step` and
    :meth:`transition_plan` so every change is also appended to the ordered
    transition log. The record itself never touches disk; the engine hands
    it to the state manager after each change.
    """

    plan_id: str
    status: PlanStatus
    plan: dict[str, Any]
    created_at: str
    updated_at: str
    approved: bool = False
    approved_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    position: int = 0
    abort_reason: str | None = None
    steps: dict[str, StepRecord] = field(default_factory=dict)
    transitions: list[Transition] = field(default_factory=list)
    completion_order: list[str] = field(default_factory=list)
    rollback: RollbackReport | None = None

    @classmethod
    def new(cls, plan: Plan) -> ExecutionRecord:
        """Create the record for a freshly parsed plan, in ``draft`` status."""
        now = utc_now()
        record = cls(
            plan_id=plan.id,
            status=PlanStatus.DRAFT,
            plan=plan.to_document(),
            created_at=now,
            updated_at=now,
            steps={step.id: StepRecord(step_id=step.id) for step in plan.steps},
        )
        record.transitions.append(
            Transition(sequence=1, step_id=None, from_status=None, to_status=PlanStatus.DRAFT.value, at=now)
        )
        return record

    @property
    def last_sequence(self) -> int:
        return self.transitions[-1].sequence if self.transitions else 0

    def step(self, step_id: str) -> StepRecord:
        return self.steps[step_id]

    def step_statuses(self) -> dict[str, StepStatus]:
        return {step_id: rec.status for step_id, rec in self.steps.items()}

    def transition_plan(self, status: PlanStatus, detail: str | None = None) -> Transition:
        """Move the plan to a new status and log the transition."""
        transition = Transition(
            sequence=self.last_sequence + 1,
            step_id=None,
            from_status=self.status.value,
            to_status=status.value,
            at=utc_now(),
            detail=detail,
        )
        self.status = status
        self.transitions.append(transition)
        return transition

    def transition_step(self, step_id: str, status: StepStatus, detail: str | None = None) -> Transition:
        """Move a step to a new status and log the transition.

        Reaching ``succeeded`` or ``failed`` stamps the completion time and
        sequence; reaching ``succeeded`` also appends to the completion order.
        A transition to the status the step already has is only logged.
        """
        rec = self.steps[step_id]
        changed = rec.status != status
        transition = Transition(
            sequence=self.last_sequence + 1,
            step_id=step_id,
            from_status=rec.status.value,
            to_status=status.value,
            at=utc_now(),
            detail=detail,
        )
        rec.status = status

        if status == StepStatus.RUNNING and rec.started_at is None:
            rec.started_at = transition.at
        elif changed and status in (StepStatus.SUCCEEDED, StepStatus.FAILED):
            rec.completed_at = transition.at
            rec.completion_sequence = transition.sequence
            if status == StepStatus.SUCCEEDED:
                self.completion_order.append(step_id)

        self.transitions.append(transition)
        return transition

    def snapshot(self) -> ExecutionRecord:
        """Deep copy safe to hand to callers."""
        return copy.deepcopy(self)

    def to_dict(self) -> ExecutionRecordState:
        data: ExecutionRecordState = {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "plan": self.plan,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "approved": self.approved,
            "position": self.position,
            "steps": {step_id: rec.to_dict() for step_id, rec in self.steps.items()},
            "transitions": [t.to_dict() for t in self.transitions],
            "completion_order": list(self.completion_order),
        }
        if self.approved_at:
            data["approved_at"] = self.approved_at
        if self.started_at:
            data["started_at"] = self.started_at
        if self.finished_at:
            data["finished_at"] = self.finished_at
        if self.abort_reason:
            data["abort_reason"] = self.abort_reason
        if self.rollback is not None:
            data["rollback"] = self.rollback.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: ExecutionRecordState) -> ExecutionRecord:
        rollback = data.get("rollback")
        return cls(
            plan_id=data["plan_id"],
            status=PlanStatus(data["status"]),
            plan=data["plan"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            approved=data.get("approved", False),
            approved_at=data.get("approved_at"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            position=data.get("position", 0),
            abort_reason=data.get("abort_reason"),
            steps={step_id: StepRecord.from_dict(rec) for step_id, rec in data.get("steps", {}).items()},
            transitions=[Transition.from_dict(t) for t in data.get("transitions", [])],
            completion_order=list(data.get("completion_order", [])),
            rollback=RollbackReport.from_dict(rollback) if rollback else None,
        )


@dataclass
class StepOutcomeSummary:
    """Final status of one step as listed in an execution report."""

    step_id: str
    status: StepStatus
    attempts: int = 0
    output: Any = None
    error: str | None = None
    error_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"step_id": self.step_id, "status": self.status.value, "attempts": self.attempts}
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
            data["error_reason"] = self.error_reason
        return data


@dataclass
class ExecutionReport:
    """Summary returned by ``execute()`` and ``resume()``.

    Every terminal status comes with the final status of every step and,
    for failures, the captured reason. Under the ``continue`` failure policy
    a run can complete with some steps failed or skipped; :attr:`outcome`
    distinguishes that from a clean run.
    """

    plan_id: str
    status: PlanStatus
    steps: list[StepOutcomeSummary]
    rollback: RollbackReport | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @classmethod
    def from_record(cls, record: ExecutionRecord, plan_order: list[str] | None = None) -> ExecutionReport:
        order = plan_order or list(record.steps)
        steps = [
            StepOutcomeSummary(
                step_id=step_id,
                status=record.steps[step_id].status,
                attempts=record.steps[step_id].attempts,
                output=record.steps[step_id].output,
                error=record.steps[step_id].error,
                error_reason=record.steps[step_id].error_reason,
            )
            for step_id in order
        ]
        return cls(
            plan_id=record.plan_id,
            status=record.status,
            steps=steps,
            rollback=record.rollback,
            started_at=record.started_at,
            finished_at=record.finished_at,
        )

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(step.status.value for step in self.steps)
        return {status.value: counter.get(status.value, 0) for status in StepStatus}

    @property
    def outcome(self) -> str:
        """``success``, ``partial`` (completed with failures) or ``failed``."""
        if self.status != PlanStatus.COMPLETED:
            return "failed"
        # Disabled steps are skipped on purpose; only failures make a run partial
        if any(step.status == StepStatus.FAILED for step in self.steps):
            return "partial"
        return "success"

    def step_status(self, step_id: str) -> StepStatus:
        for step in self.steps:
            if step.step_id == step_id:
                return step.status
        raise KeyError(step_id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "outcome": self.outcome,
            "counts": self.counts,
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.rollback is not None:
            data["rollback"] = self.rollback.to_dict()
        if self.started_at:
            data["started_at"] = self.started_at
        if self.finished_at:
            data["finished_at"] = self.finished_at
        return data
