"""
Plan orchestrator: the control surface of the engine.

The orchestrator owns the plan lifecycle and enforces its gates::

    plan() -> approve() -> validate() -> execute()
                                           |-> resume() after a crash
                                           |-> abort() / cancel()

Every operation reloads the persisted record, so a fresh process can pick
up any plan from the state directory. At most one run per plan id is active
at a time: runs started by this orchestrator are tracked in memory and every
run holds the state manager's advisory file lock.

Example:
    >>> orchestrator = PlanOrchestrator(EngineSettings(), registry)
    >>> plan_id = await orchestrator.plan(load_plan_document("plan.yaml"))
    >>> await orchestrator.approve(plan_id)
    >>> report = await orchestrator.execute(plan_id)
    >>> report.status
    <PlanStatus.COMPLETED: 'completed'>
"""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from devflow.config.settings import EngineSettings
from devflow.engine.dispatcher import StepDispatcher
from devflow.engine.execution import ExecutionEngine
from devflow.engine.planning import PlanSummary, summarize_plan
from devflow.engine.registry import CapabilityRegistry
from devflow.engine.resolver import DependencyResolver
from devflow.engine.state_manager import StateManager
from devflow.enums import PlanStatus
from devflow.exceptions import (
    ApprovalRequiredError,
    PlanLockedError,
    PlanStateError,
    PlanValidationError,
)
from devflow.models.execution import ExecutionRecord, ExecutionReport, RollbackReport, utc_now
from devflow.models.plan import Plan, parse_plan

log = structlog.get_logger(__name__)

# Dry runs have no side effects, so an interrupted validation is simply repeated
_VALIDATABLE = (PlanStatus.PLANNED, PlanStatus.VALIDATING, PlanStatus.VALIDATED)


@dataclass
class _ActiveRun:
    cancel_event: asyncio.Event
    task: "asyncio.Task[ExecutionReport]"


class PlanOrchestrator:
    """Plan lifecycle operations.

    Attributes:
        settings: Engine configuration.
        registry: Capability lookup shared by every run.
        state: Execution record store.
        engine: Validation and execution driver.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        registry: CapabilityRegistry | None = None,
        state: StateManager | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.registry = registry or CapabilityRegistry()
        self.state = state or StateManager(self.settings.state_dir)
        self.resolver = DependencyResolver()
        self.dispatcher = StepDispatcher(
            backoff_seconds=self.settings.retry.backoff_seconds,
            max_backoff_seconds=self.settings.retry.max_backoff_seconds,
        )
        self.engine = ExecutionEngine(
            self.registry,
            self.state,
            dispatcher=self.dispatcher,
            resolver=self.resolver,
            step_timeout=self.settings.workflow.step_timeout,
        )
        self._active: dict[str, _ActiveRun] = {}

    async def plan(self, document: Mapping[str, Any]) -> str:
        """Register a plan document and move it to ``planned``.

        Unset plan options are filled from the workflow configuration and
        stored with the plan.

        Raises:
            PlanValidationError: If the document is invalid, or a non-terminal
                record already exists for its id.
            CycleError: If the dependency graph contains a cycle.
        """
        plan = parse_plan(document).with_defaults(self.settings.workflow)

        if plan.id in self._active:
            raise PlanValidationError(f"Plan id '{plan.id}' is already running", fields=["id"])
        if self.state.exists(plan.id):
            existing = await self.state.load_record(plan.id)
            if not existing.status.is_terminal:
                raise PlanValidationError(
                    f"Plan id '{plan.id}' already exists with status {existing.status.value}",
                    fields=["id"],
                )
            log.info("replacing_finished_plan", plan_id=plan.id, previous_status=existing.status.value)

        summary = summarize_plan(plan, self.resolver)
        record = ExecutionRecord.new(plan)
        record.transition_plan(PlanStatus.PLANNED)
        await self.state.create_record(record)

        log.info(
            "plan_registered",
            plan_id=plan.id,
            steps=len(plan.steps),
            layers=len(summary.groups),
            risky_steps=summary.risky_steps,
        )
        return plan.id

    async def summary(self, plan_id: str) -> PlanSummary:
        record = await self.state.load_record(plan_id)
        return summarize_plan(self._plan_of(record), self.resolver, approved=record.approved)

    async def approve(self, plan_id: str) -> None:
        """Persist the approval flag. Approving twice is a no-op.

        Raises:
            PlanStateError: If the plan has already finished.
        """
        async with self.state.run_lock(plan_id):
            record = await self.state.load_record(plan_id)
            if record.status.is_terminal:
                raise PlanStateError("Cannot approve a finished plan", plan_id, record.status.value)
            if record.approved:
                return

            record.approved = True
            record.approved_at = utc_now()
            record.transition_plan(record.status, detail="approved")
            await self.state.save_record(record)
        log.info("plan_approved", plan_id=plan_id)

    async def validate(self, plan_id: str) -> None:
        """Run the validating phase.

        Raises:
            ApprovalRequiredError: If the plan is not approved.
            PlanStateError: If the plan is not ``planned``, ``validated``, or
                ``validating`` (a validation interrupted by a crash, run again).
            UnknownCapabilityError: If a capability is missing (plan aborted).
            CapabilityError: If a dry run failed (plan aborted).
        """
        self._ensure_idle(plan_id)
        async with self.state.run_lock(plan_id):
            record = await self.state.load_record(plan_id)
            self._ensure_approved(record)
            if record.status not in _VALIDATABLE:
                raise PlanStateError("Plan cannot be validated", plan_id, record.status.value)
            await self.engine.validate(self._plan_of(record), record)

    async def execute(self, plan_id: str) -> ExecutionReport:
        """Validate if needed, then execute the plan to a terminal status.

        Raises:
            ApprovalRequiredError: If the plan is not approved.
            PlanStateError: If the plan has finished or its run was
                interrupted (use :meth:`resume`).
            PlanLockedError: If another run holds the plan.
        """
        self._ensure_idle(plan_id)
        record = await self.state.load_record(plan_id)

        if record.status.is_terminal:
            raise PlanStateError("Plan has already finished", plan_id, record.status.value)
        self._ensure_approved(record)
        if record.status.is_resumable:
            raise PlanStateError("Plan run was interrupted; resume it instead", plan_id, record.status.value)

        if record.status in (PlanStatus.PLANNED, PlanStatus.VALIDATING):
            await self.validate(plan_id)
            record = await self.state.load_record(plan_id)

        if record.status != PlanStatus.VALIDATED:
            raise PlanStateError("Plan is not ready to execute", plan_id, record.status.value)

        return await self._run(record)

    async def resume(self, plan_id: str) -> ExecutionReport:
        """Continue an interrupted run from its persisted state.

        A ``validated`` plan simply executes; a plan whose validation was
        interrupted is validated again first.

        Raises:
            PlanStateError: If there is nothing to resume.
            PlanLockedError: If another run holds the plan.
        """
        self._ensure_idle(plan_id)
        record = await self.state.load_record(plan_id)

        if record.status in (PlanStatus.VALIDATING, PlanStatus.VALIDATED):
            return await self.execute(plan_id)
        if not record.status.is_resumable:
            raise PlanStateError("Plan has no interrupted run to resume", plan_id, record.status.value)

        log.info("plan_resuming", plan_id=plan_id, status=record.status.value, position=record.position)
        return await self._run(record)

    async def abort(self, plan_id: str, reason: str = "Aborted by operator") -> RollbackReport:
        """Stop a plan and compensate whatever it completed.

        A live run in this process is cancelled and its rollback awaited. A
        plan that never started executing is simply marked ``aborted``. An
        interrupted run is rolled back directly.

        Raises:
            PlanStateError: If the plan already finished.
            PlanLockedError: If another process is running the plan.
        """
        active = self._active.get(plan_id)
        if active is not None:
            active.cancel_event.set()
            report = await asyncio.shield(active.task)
            if report.rollback is None:
                raise PlanStateError("Plan finished before it could be aborted", plan_id, report.status.value)
            return report.rollback

        async with self.state.run_lock(plan_id):
            record = await self.state.load_record(plan_id)

            if record.status.is_terminal:
                raise PlanStateError("Plan has already finished", plan_id, record.status.value)

            if record.status.is_resumable:
                return await self.engine.rollback_coordinator.rollback(self._plan_of(record), record, reason=reason)

            now = utc_now()
            record.abort_reason = reason
            record.finished_at = now
            record.rollback = RollbackReport(
                plan_id=plan_id,
                status=PlanStatus.ABORTED,
                reason=reason,
                started_at=now,
                finished_at=now,
            )
            record.transition_plan(PlanStatus.ABORTED, detail=reason)
            await self.state.save_record(record)

        log.info("plan_aborted_before_execution", plan_id=plan_id, reason=reason)
        return record.rollback

    def cancel(self, plan_id: str) -> bool:
        """Signal a live run to stop dispatching and roll back.

        Returns:
            True if a run in this process was signalled.
        """
        active = self._active.get(plan_id)
        if active is None:
            return False
        active.cancel_event.set()
        log.info("plan_cancel_requested", plan_id=plan_id)
        return True

    async def status(self, plan_id: str) -> ExecutionRecord:
        """Snapshot of the persisted record."""
        record = await self.state.load_record(plan_id)
        return record.snapshot()

    async def list_plans(self, active: bool = False, resumable: bool = False) -> list[ExecutionRecord]:
        """Persisted records, optionally only unfinished plans or only interrupted runs."""
        if resumable:
            return await self.state.get_resumable_plans()
        if active:
            return await self.state.get_active_plans()
        return await self.state.list_records()

    def is_running(self, plan_id: str) -> bool:
        return plan_id in self._active

    async def _run(self, record: ExecutionRecord) -> ExecutionReport:
        plan = self._plan_of(record)
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._drive(plan, record, cancel_event))
        self._active[plan.id] = _ActiveRun(cancel_event=cancel_event, task=task)
        try:
            return await task
        finally:
            self._active.pop(plan.id, None)

    async def _drive(self, plan: Plan, record: ExecutionRecord, cancel_event: asyncio.Event) -> ExecutionReport:
        async with self.state.run_lock(plan.id):
            # Another process may have moved the plan on before the lock was taken
            current = await self.state.load_record(plan.id)
            if current.status != record.status:
                raise PlanStateError("Plan changed while waiting to run", plan.id, current.status.value)
            report = await self.engine.run(plan, current, cancel_event)
        log.info("plan_run_finished", plan_id=plan.id, status=report.status.value, outcome=report.outcome)
        return report

    def _ensure_idle(self, plan_id: str) -> None:
        if plan_id in self._active:
            raise PlanLockedError(plan_id, holder="this process")

    def _ensure_approved(self, record: ExecutionRecord) -> None:
        if not record.approved:
            raise ApprovalRequiredError(record.plan_id)

    def _plan_of(self, record: ExecutionRecord) -> Plan:
        # Options were resolved against the configuration when the plan was registered
        return parse_plan(record.plan)
