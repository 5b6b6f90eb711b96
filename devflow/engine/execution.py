"""
Execution engine: drive one plan run through validation and execution.

By default steps run one at a time: the ready step with the smallest id
goes next, so a step never waits for unrelated steps of its layer. In a plan
with ``parallel: true`` the engine walks the dependency layers instead; the
steps of a layer marked ``parallelSafe`` are dispatched concurrently first
(bounded by ``maxConcurrency``) and the rest follow one at a time.

Every transition is persisted through the state manager before the engine
advances, so a crash at any point leaves a record that :meth:`run` can pick
up again:

- steps left ``ready`` or ``running`` revert to ``pending``
- ``succeeded`` steps are never dispatched again
- a record caught in ``aborting`` resumes its rollback

Step failures never escape the engine. Under the ``abort`` policy the first
failure stops dispatching and hands the run to the rollback coordinator;
under ``continue`` the failed step's transitive dependents are skipped and
independent branches keep going.
"""

import asyncio

import structlog

from devflow.engine.dispatcher import StepDispatcher
from devflow.engine.registry import Capability, CapabilityRegistry, HandlerContext
from devflow.engine.resolver import DependencyResolver
from devflow.engine.rollback import RollbackCoordinator
from devflow.engine.state_manager import StateManager
from devflow.enums import FailurePolicy, PlanStatus, StepStatus
from devflow.exceptions import CapabilityError, PlanStateError, UnknownCapabilityError
from devflow.models.execution import ExecutionRecord, ExecutionReport, to_jsonable, utc_now
from devflow.models.plan import Plan, Step

log = structlog.get_logger(__name__)


class ExecutionEngine:
    """Validate and execute plans against a capability registry.

    Attributes:
        registry: Capability lookup.
        state: Store every transition is persisted to.
        dispatcher: Handler invocation (timeouts, single retry, bounded concurrency).
        resolver: Dependency ordering.
        rollback_coordinator: Compensation after an abort.
        step_timeout: Handler timeout for steps that do not set their own.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        state: StateManager,
        dispatcher: StepDispatcher | None = None,
        resolver: DependencyResolver | None = None,
        step_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.state = state
        self.dispatcher = dispatcher or StepDispatcher()
        self.resolver = resolver or DependencyResolver()
        self.rollback_coordinator = RollbackCoordinator(registry, state, self.dispatcher, step_timeout=step_timeout)
        self.step_timeout = step_timeout

    # -------------------------------------------------------------------------
    # Validating
    # -------------------------------------------------------------------------

    async def validate(self, plan: Plan, record: ExecutionRecord) -> None:
        """Resolve every capability and dry-run the handlers that support it.

        On success the plan becomes ``validated``. On any failure it becomes
        ``aborted`` (no step has run, so there is nothing to roll back) and
        the error is re-raised.

        Raises:
            UnknownCapabilityError: A step or rollback references an
                unregistered capability.
            CapabilityError: A dry run failed.
        """
        record.transition_plan(PlanStatus.VALIDATING)
        await self.state.save_record(record)
        log.info("plan_validation_started", plan_id=plan.id)

        try:
            capabilities: list[tuple[Step, Capability]] = []
            for step in plan.steps:
                if step.skip:
                    continue
                capabilities.append((step, self.registry.resolve(step.skill, step.action, step_id=step.id)))
                if step.rollback is not None:
                    self.registry.resolve(step.rollback.skill, step.rollback.action, step_id=step.id)

            for step, capability in capabilities:
                if capability.supports_dry_run:
                    await self._dry_run(plan, step, capability)
        except (UnknownCapabilityError, CapabilityError) as e:
            record.abort_reason = e.message
            record.finished_at = utc_now()
            record.transition_plan(PlanStatus.ABORTED, detail="validation_failed")
            await self.state.save_record(record)
            log.error("plan_validation_failed", plan_id=plan.id, error=e.message)
            raise

        record.transition_plan(PlanStatus.VALIDATED)
        await self.state.save_record(record)
        log.info("plan_validated", plan_id=plan.id, steps=len(plan.steps))

    async def _dry_run(self, plan: Plan, step: Step, capability: Capability) -> None:
        def make_context(attempt: int) -> HandlerContext:
            return HandlerContext(plan_id=plan.id, step_id=step.id, dry_run=True, attempt=attempt)

        outcome = await self.dispatcher.invoke(
            capability, step.params, make_context, timeout=step.timeout or self.step_timeout
        )
        if not outcome.success and outcome.error is not None:
            log.warning("dry_run_failed", plan_id=plan.id, step_id=step.id, reason=outcome.error.reason)
            raise outcome.error
        log.debug("dry_run_succeeded", plan_id=plan.id, step_id=step.id)

    # -------------------------------------------------------------------------
    # Executing
    # -------------------------------------------------------------------------

    async def run(
        self,
        plan: Plan,
        record: ExecutionRecord,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionReport:
        """Execute a validated plan, or resume an interrupted run.

        Args:
            plan: The plan to run.
            record: Its execution record in ``validated``, ``executing`` or
                ``aborting`` status. Updated and persisted in place.
            cancel_event: Once set, no further step is dispatched and the
                run is rolled back after in-flight handlers finish.

        Returns:
            The execution report for the terminal status reached.

        Raises:
            PlanStateError: If the record is in any other status.
        """
        cancel_event = cancel_event or asyncio.Event()
        structlog.contextvars.bind_contextvars(plan_id=plan.id)
        try:
            if record.status == PlanStatus.ABORTING:
                log.info("resuming_rollback", plan_id=plan.id)
                await self.rollback_coordinator.rollback(plan, record)
            else:
                await self._execute(plan, record, cancel_event)
        finally:
            structlog.contextvars.unbind_contextvars("plan_id")

        order = [step_id for step_ids, _ in self.dispatch_batches(plan) for step_id in step_ids]
        return ExecutionReport.from_record(record, plan_order=order)

    async def _execute(self, plan: Plan, record: ExecutionRecord, cancel_event: asyncio.Event) -> None:
        policy = plan.options.effective_failure_policy

        if record.status == PlanStatus.VALIDATED:
            self._start(plan, record)
        elif record.status == PlanStatus.EXECUTING:
            self._recover(record)
        else:
            raise PlanStateError("Plan is not ready to execute", plan.id, record.status.value)
        await self.state.save_record(record)

        batches = self.dispatch_batches(plan)
        log.info(
            "plan_execution_started",
            plan_id=plan.id,
            batches=len(batches),
            position=record.position,
            failure_policy=policy.value,
        )

        abort_reason = None
        if policy == FailurePolicy.ABORT:
            # A crash between a failure and the switch to aborting
            failed = [rec.step_id for rec in record.steps.values() if rec.status == StepStatus.FAILED]
            if failed:
                abort_reason = f"Step {failed[0]} failed"

        while abort_reason is None and record.position < len(batches):
            if cancel_event.is_set():
                abort_reason = "Cancelled"
                break

            step_ids, concurrent = batches[record.position]
            failed_step = await self._run_batch(plan, record, step_ids, concurrent, cancel_event)

            if failed_step is not None and policy == FailurePolicy.ABORT:
                abort_reason = f"Step {failed_step} failed"
            elif cancel_event.is_set():
                abort_reason = "Cancelled"
            else:
                record.position += 1
                await self.state.save_record(record)

        if abort_reason is not None:
            log.warning("plan_aborting", plan_id=plan.id, reason=abort_reason)
            await self.rollback_coordinator.rollback(plan, record, reason=abort_reason)
            return

        record.finished_at = utc_now()
        record.transition_plan(PlanStatus.COMPLETED)
        await self.state.save_record(record)
        log.info("plan_completed", plan_id=plan.id, steps=record.step_statuses())

    def _start(self, plan: Plan, record: ExecutionRecord) -> None:
        record.started_at = utc_now()
        record.position = 0
        record.transition_plan(PlanStatus.EXECUTING)
        for step in plan.steps:
            if step.skip:
                record.transition_step(step.id, StepStatus.SKIPPED, detail="disabled")

    def _recover(self, record: ExecutionRecord) -> None:
        for rec in record.steps.values():
            if rec.status in (StepStatus.READY, StepStatus.RUNNING):
                log.warning("step_interrupted", plan_id=record.plan_id, step_id=rec.step_id, status=rec.status.value)
                record.transition_step(rec.step_id, StepStatus.PENDING, detail="interrupted")

    def dispatch_batches(self, plan: Plan) -> list[tuple[tuple[str, ...], bool]]:
        """Split a plan into the batches the engine dispatches in order.

        Each batch is ``(step_ids, concurrent)``. Without parallelism every
        step is its own batch, in :meth:`DependencyResolver.sequential_order`.
        In a parallel plan each layer yields one concurrent batch of its
        parallel-safe steps followed by one batch per remaining step.
        ``ExecutionRecord.position`` indexes this list.
        """
        if not plan.options.parallel:
            return [((step_id,), False) for step_id in self.resolver.sequential_order(plan)]

        batches: list[tuple[tuple[str, ...], bool]] = []
        for group in self.resolver.order(plan):
            concurrent = tuple(s for s in group if plan.get_step(s).parallel_safe)
            if concurrent:
                batches.append((concurrent, True))
            batches.extend(((s,), False) for s in group if s not in concurrent)
        return batches

    async def _run_batch(
        self,
        plan: Plan,
        record: ExecutionRecord,
        step_ids: tuple[str, ...],
        concurrent: bool,
        cancel_event: asyncio.Event,
    ) -> str | None:
        """Run the unsettled steps of one batch.

        Returns:
            The first step that failed in this batch, if any.
        """
        runnable: list[str] = []
        for step_id in step_ids:
            if record.step(step_id).status.is_settled:
                continue
            blocker = self._blocking_dependency(plan, record, plan.get_step(step_id))
            if blocker is not None:
                record.transition_step(step_id, StepStatus.SKIPPED, detail=f"dependency_unsatisfied:{blocker}")
                await self.state.save_record(record)
                log.info("step_skipped", plan_id=plan.id, step_id=step_id, dependency=blocker)
                continue
            runnable.append(step_id)

        abort_on_failure = plan.options.effective_failure_policy == FailurePolicy.ABORT
        failed: list[str] = []

        async def dispatch(step_id: str) -> None:
            # Nothing new starts once the run is stopping
            if cancel_event.is_set() or (failed and abort_on_failure):
                return
            if not await self._run_step(plan, record, step_id, cancel_event):
                failed.append(step_id)

        if concurrent:
            await self.dispatcher.run_bounded(runnable, dispatch, plan.options.effective_max_concurrency)
        else:
            for step_id in runnable:
                await dispatch(step_id)

        return failed[0] if failed else None

    def _blocking_dependency(self, plan: Plan, record: ExecutionRecord, step: Step) -> str | None:
        """Return the first dependency that keeps ``step`` from running."""
        for dep_id in step.depends_on:
            status = record.step(dep_id).status
            if status == StepStatus.SUCCEEDED:
                continue
            if (
                status == StepStatus.SKIPPED
                and plan.get_step(dep_id).skip
                and plan.options.skipped_satisfies_dependencies
            ):
                continue
            return dep_id
        return None

    async def _run_step(
        self,
        plan: Plan,
        record: ExecutionRecord,
        step_id: str,
        cancel_event: asyncio.Event,
    ) -> bool:
        """Dispatch one step and persist its outcome. Returns True on success."""
        step = plan.get_step(step_id)
        rec = record.step(step_id)

        record.transition_step(step_id, StepStatus.READY)
        await self.state.save_record(record)

        try:
            capability = self.registry.resolve(step.skill, step.action, step_id=step.id)
        except UnknownCapabilityError as e:
            # Registry changed since validation (e.g. resumed without a plugin)
            await self._fail_step(plan, record, step, CapabilityError("unknown_capability", e.message))
            return False

        rec.attempts = 1
        record.transition_step(step_id, StepStatus.RUNNING)
        await self.state.save_record(record)
        log.info("step_started", plan_id=plan.id, step_id=step_id, capability=capability.key)

        def make_context(attempt: int) -> HandlerContext:
            return HandlerContext(plan_id=plan.id, step_id=step_id, attempt=attempt, cancel_event=cancel_event)

        async def on_retry(attempt: int, error: Exception, delay: float) -> None:
            rec.attempts = attempt + 1
            reason = error.reason if isinstance(error, CapabilityError) else "error"
            record.transition_step(step_id, StepStatus.RUNNING, detail=f"retry:{reason}")
            await self.state.save_record(record)

        outcome = await self.dispatcher.invoke(
            capability,
            step.params,
            make_context,
            timeout=step.timeout or self.step_timeout,
            on_retry=on_retry,
        )
        rec.attempts = outcome.attempts

        if not outcome.success:
            error = outcome.error or CapabilityError("unknown", "Step failed without an error")
            await self._fail_step(plan, record, step, error)
            return False

        rec.output = to_jsonable(outcome.output)
        record.transition_step(step_id, StepStatus.SUCCEEDED)
        await self.state.save_record(record)
        log.info(
            "step_succeeded",
            plan_id=plan.id,
            step_id=step_id,
            attempts=outcome.attempts,
            execution_time=round(outcome.execution_time, 3),
        )
        return True

    async def _fail_step(self, plan: Plan, record: ExecutionRecord, step: Step, error: CapabilityError) -> None:
        rec = record.step(step.id)
        rec.error = error.message
        rec.error_reason = error.reason
        rec.retryable = error.retryable
        record.transition_step(step.id, StepStatus.FAILED, detail=error.reason)

        skipped: list[str] = []
        if plan.options.effective_failure_policy == FailurePolicy.CONTINUE:
            for dep_id in sorted(self.resolver.dependents(plan, step.id)):
                if record.step(dep_id).status == StepStatus.PENDING:
                    record.transition_step(dep_id, StepStatus.SKIPPED, detail=f"dependency_failed:{step.id}")
                    skipped.append(dep_id)

        await self.state.save_record(record)
        log.error(
            "step_failed",
            plan_id=plan.id,
            step_id=step.id,
            reason=error.reason,
            error=error.message,
            retryable=error.retryable,
            skipped_dependents=skipped,
        )
