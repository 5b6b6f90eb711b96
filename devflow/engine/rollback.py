"""
Rollback coordinator: compensate completed steps after an abort.

Compensation walks the steps whose status is ``succeeded`` in reverse order
of completion (completion timestamp, then transition sequence), never in
declaration order. For each step:

- a declared rollback action is invoked; on success the step becomes
  ``rolled_back``
- a step with no rollback action is reported as unrecoverable
- a failing compensation is recorded and the remaining compensations are
  still attempted

The plan ends ``abort_failed`` if any compensation failed, otherwise
``rolled_back``. Progress is persisted after every compensation, so an
interrupted rollback resumes where it stopped.
"""

import structlog

from devflow.engine.dispatcher import StepDispatcher
from devflow.engine.registry import CapabilityRegistry, HandlerContext
from devflow.engine.state_manager import StateManager
from devflow.enums import PlanStatus, StepStatus
from devflow.exceptions import RollbackFailure, UnknownCapabilityError
from devflow.models.execution import ExecutionRecord, RollbackReport, StepRecord, utc_now
from devflow.models.plan import Plan

log = structlog.get_logger(__name__)


class RollbackCoordinator:
    """Replay compensating actions for a plan run.

    Attributes:
        registry: Capability lookup for rollback handlers.
        state: Store the record is persisted to.
        dispatcher: Invokes handlers (timeouts, single retry).
        step_timeout: Handler timeout for steps that do not set their own.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        state: StateManager,
        dispatcher: StepDispatcher | None = None,
        step_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.state = state
        self.dispatcher = dispatcher or StepDispatcher()
        self.step_timeout = step_timeout

    async def rollback(self, plan: Plan, record: ExecutionRecord, reason: str | None = None) -> RollbackReport:
        """Compensate every succeeded step of a run.

        Args:
            plan: The plan being aborted.
            record: Its execution record; updated and persisted in place.
            reason: Why the plan is being aborted.

        Returns:
            The rollback report, also stored on ``record.rollback``.
        """
        if record.status != PlanStatus.ABORTING:
            record.transition_plan(PlanStatus.ABORTING, detail=reason)
        if reason and not record.abort_reason:
            record.abort_reason = reason

        # A resumed rollback continues the report of the interrupted one
        report = record.rollback or RollbackReport(
            plan_id=plan.id,
            status=PlanStatus.ABORTING,
            reason=record.abort_reason,
            started_at=utc_now(),
        )
        record.rollback = report
        await self.state.save_record(record)

        accounted = set(report.unrecoverable) | set(report.failed_steps)
        candidates = [
            rec
            for rec in record.steps.values()
            if rec.status == StepStatus.SUCCEEDED and rec.step_id not in accounted
        ]
        candidates.sort(key=_completion_key, reverse=True)

        log.info(
            "rollback_started",
            plan_id=plan.id,
            steps=[rec.step_id for rec in candidates],
            reason=record.abort_reason,
        )

        for rec in candidates:
            await self._compensate(plan, record, report, rec)
            await self.state.save_record(record)

        final_status = PlanStatus.ABORT_FAILED if report.failures else PlanStatus.ROLLED_BACK
        report.status = final_status
        report.finished_at = utc_now()
        record.finished_at = report.finished_at
        record.transition_plan(final_status)
        await self.state.save_record(record)

        if final_status == PlanStatus.ABORT_FAILED:
            log.error(
                "rollback_incomplete_manual_intervention_required",
                plan_id=plan.id,
                failures=report.failures,
            )
        else:
            log.info(
                "rollback_completed",
                plan_id=plan.id,
                compensated=report.compensated,
                unrecoverable=report.unrecoverable,
            )

        return report

    async def _compensate(self, plan: Plan, record: ExecutionRecord, report: RollbackReport, rec: StepRecord) -> None:
        step = plan.get_step(rec.step_id)

        if step.rollback is None:
            log.warning("step_unrecoverable", plan_id=plan.id, step_id=step.id)
            report.unrecoverable.append(step.id)
            return

        try:
            capability = self.registry.resolve(step.rollback.skill, step.rollback.action, step_id=step.id)
        except UnknownCapabilityError as e:
            self._record_failure(record, report, RollbackFailure(step.id, "unknown_capability", e.message))
            return

        log.info("compensating_step", plan_id=plan.id, step_id=step.id, capability=capability.key)

        def make_context(attempt: int) -> HandlerContext:
            return HandlerContext(plan_id=plan.id, step_id=step.id, compensating=True, attempt=attempt)

        outcome = await self.dispatcher.invoke(
            capability, step.rollback.params, make_context, timeout=step.timeout or self.step_timeout
        )

        if outcome.success:
            record.transition_step(step.id, StepStatus.ROLLED_BACK)
            report.compensated.append(step.id)
            log.info("step_rolled_back", plan_id=plan.id, step_id=step.id)
        else:
            error = outcome.error
            reason = error.reason if error else "unknown"
            message = error.message if error else "Rollback failed"
            self._record_failure(record, report, RollbackFailure(step.id, reason, message))

    def _record_failure(
        self,
        record: ExecutionRecord,
        report: RollbackReport,
        failure: RollbackFailure,
    ) -> None:
        # The step keeps its succeeded status; the log shows the attempt
        record.transition_step(failure.step_id, StepStatus.SUCCEEDED, detail=f"rollback_failed:{failure.reason}")
        report.failures.append(failure.to_dict())
        log.error(
            "step_rollback_failed",
            plan_id=record.plan_id,
            step_id=failure.step_id,
            reason=failure.reason,
            error=failure.message,
        )


def _completion_key(rec: StepRecord) -> tuple[str, int]:
    return (rec.completed_at or "", rec.completion_sequence or 0)
