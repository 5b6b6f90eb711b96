"""Plan validation and execution engine.

This package turns an approved plan into a sequence of capability calls,
persisting every transition and compensating completed work when a run is
aborted.

Key Components:
    - PlanOrchestrator: Control surface (plan, approve, validate, execute,
      resume, abort, cancel, status)
    - ExecutionEngine: Dependency-ordered step dispatch with failure policies
    - DependencyResolver: Layered topological ordering and cycle detection
    - CapabilityRegistry: (skill, action) to handler lookup
    - StepDispatcher: Handler invocation with timeout and a single retry
    - RollbackCoordinator: Reverse-completion-order compensation
    - StateManager: Atomic JSON persistence and advisory run locks

Type Definitions:
    - ExecutionRecordState: TypedDict for a persisted execution record
    - StepRecordState: TypedDict for one step's persisted state
    - TransitionState: TypedDict for one transition log entry
    - RollbackReportState: TypedDict for a persisted rollback report

Example:
    >>> from devflow.engine.orchestrator import PlanOrchestrator
    >>> orchestrator = PlanOrchestrator(settings, registry)
    >>> report = await orchestrator.execute("p1")

    >>> from devflow.engine.types import ExecutionRecordState
    >>> state: ExecutionRecordState = await state_manager.load_state("p1")
"""

from devflow.engine.types import (
    ExecutionRecordState,
    RollbackFailureState,
    RollbackReportState,
    StepRecordState,
    TransitionState,
)

__all__ = [
    "ExecutionRecordState",
    "RollbackFailureState",
    "RollbackReportState",
    "StepRecordState",
    "TransitionState",
]
