"""Core domain models for the plan engine.

Key Models:
    - Plan: Immutable plan value (steps, options)
    - Step: One capability call with dependencies and optional rollback
    - RollbackAction: Compensating action of a step
    - PlanOptions: Per-plan failure and concurrency policy
    - ExecutionRecord: Durable, mutable state of a plan run
    - ExecutionReport / RollbackReport: Results handed back to callers

Example:
    >>> from devflow.models import parse_plan
    >>> plan = parse_plan({"id": "p1", "steps": [{"id": "s1", "skill": "core", "action": "noop"}]})
"""

from devflow.models.execution import (
    ExecutionRecord,
    ExecutionReport,
    RollbackReport,
    StepRecord,
    Transition,
)
from devflow.models.plan import Plan, PlanOptions, RollbackAction, Step, parse_plan

__all__ = [
    "ExecutionRecord",
    "ExecutionReport",
    "Plan",
    "PlanOptions",
    "RollbackAction",
    "RollbackReport",
    "Step",
    "StepRecord",
    "Transition",
    "parse_plan",
]
