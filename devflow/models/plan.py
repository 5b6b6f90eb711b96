"""
Plan model: the immutable representation of a declarative execution plan.

A plan document is a mapping with ``id``, ``name``, ``steps[]`` and optional
``options``. Each step binds a capability (``skill`` + ``action``) to an opaque
``params`` mapping, lists the steps it depends on, and may carry one
compensating ``rollback`` action. Unknown fields are ignored so newer
documents remain loadable.

Example:
    Parsing a two-step plan::

        plan = parse_plan({
            "id": "p1",
            "name": "Start feature",
            "steps": [
                {"id": "s1", "skill": "git", "action": "create-branch", "dependsOn": []},
                {"id": "s2", "skill": "jira", "action": "transition", "dependsOn": ["s1"]},
            ],
        })
        plan.get_step("s2").depends_on  # ("s1",)

The Plan value never changes once parsed. Execution status lives in the
separate :class:`~devflow.models.execution.ExecutionRecord`.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from devflow.enums import FailurePolicy
from devflow.exceptions import PlanValidationError

if TYPE_CHECKING:
    from devflow.config.settings import WorkflowConfig

PLAN_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


class RollbackAction(BaseModel):
    """Compensating action that semantically undoes a succeeded step."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    skill: str = Field(..., min_length=1, description="Skill providing the compensation")
    action: str = Field(..., min_length=1, description="Action to invoke")
    params: dict[str, Any] = Field(default_factory=dict, description="Opaque handler parameters")

    @property
    def capability_key(self) -> str:
        return f"{self.skill}/{self.action}"


class Step(BaseModel):
    """A single unit of work bound to a capability.

    Attributes:
        id: Unique identifier within the plan.
        skill: Skill name of the capability (e.g. ``"git"``).
        action: Action name of the capability (e.g. ``"create-branch"``).
        params: Opaque mapping handed to the handler.
        depends_on: Ids of steps that must succeed first.
        rollback: Optional compensating action.
        parallel_safe: Step may run concurrently with other parallel-safe
            steps of the same layer when the plan opts into parallelism.
        timeout: Per-call handler timeout in seconds.
        skip: Step is disabled and starts out skipped.
        description: Free text shown in the planning summary.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1)
    skill: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = Field(default=(), alias="dependsOn")
    rollback: RollbackAction | None = None
    parallel_safe: bool = Field(default=False, alias="parallelSafe")
    timeout: float | None = Field(default=None, gt=0)
    skip: bool = False
    description: str = ""

    @field_validator("depends_on", mode="before")
    @classmethod
    def _dedupe_dependencies(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            raise ValueError("dependsOn must be a list of step ids")
        if isinstance(value, list | tuple):
            # Preserve declaration order, drop repeats
            return tuple(dict.fromkeys(value))
        return value

    @field_validator("rollback", mode="before")
    @classmethod
    def _single_rollback(cls, value: Any) -> Any:
        if isinstance(value, list | tuple):
            if len(value) > 1:
                raise ValueError("at most one rollback action per step")
            return value[0] if value else None
        return value

    @property
    def capability_key(self) -> str:
        return f"{self.skill}/{self.action}"


class PlanOptions(BaseModel):
    """Per-plan execution policy.

    Unset values are filled from :class:`~devflow.config.settings.WorkflowConfig`
    when the plan is registered, so a resumed run keeps the policy it started
    with even if the engine configuration changed in between.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    failure_policy: FailurePolicy | None = Field(default=None, alias="failurePolicy")
    parallel: bool = False
    max_concurrency: int | None = Field(default=None, ge=1, alias="maxConcurrency")
    skipped_satisfies_dependencies: bool | None = Field(default=None, alias="skippedSatisfiesDependencies")

    def with_defaults(self, workflow: WorkflowConfig) -> PlanOptions:
        """Return a copy with unset options taken from engine configuration."""
        return self.model_copy(
            update={
                "failure_policy": self.failure_policy or workflow.failure_policy,
                "max_concurrency": self.max_concurrency or workflow.max_concurrency,
                "skipped_satisfies_dependencies": (
                    self.skipped_satisfies_dependencies
                    if self.skipped_satisfies_dependencies is not None
                    else workflow.skipped_satisfies_dependencies
                ),
            }
        )

    @property
    def effective_failure_policy(self) -> FailurePolicy:
        return self.failure_policy or FailurePolicy.ABORT

    @property
    def effective_max_concurrency(self) -> int:
        # Concurrency only applies when the plan opts in
        if not self.parallel:
            return 1
        return self.max_concurrency or 1


class Plan(BaseModel):
    """Immutable plan value.

    Use :func:`parse_plan` to build one from a document; constructing a Plan
    directly skips reference and cycle validation.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1, pattern=PLAN_ID_PATTERN)
    name: str = ""
    steps: tuple[Step, ...] = Field(..., min_length=1)
    options: PlanOptions = Field(default_factory=PlanOptions)

    @property
    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def get_step(self, step_id: str) -> Step:
        """Look up a step by id.

        Raises:
            KeyError: If no step has this id.
        """
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def with_defaults(self, workflow: WorkflowConfig) -> Plan:
        return self.model_copy(update={"options": self.options.with_defaults(workflow)})

    def to_document(self) -> dict[str, Any]:
        """Serialize back into a plan document that :func:`parse_plan` accepts."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_plan(document: Mapping[str, Any]) -> Plan:
    """Parse and validate a plan document.

    Checks, in order: document shape and field types, unique step ids,
    JSON-serializable parameters, ``dependsOn`` references and
    self-dependencies, and finally dependency cycles.

    Args:
        document: Plan document mapping.

    Returns:
        The immutable Plan.

    Raises:
        PlanValidationError: If the document is malformed.
        CycleError: If the dependency graph contains a cycle.
    """
    # Imported here: the resolver depends on this module for its types
    from devflow.engine.resolver import DependencyResolver

    if not isinstance(document, Mapping):
        raise PlanValidationError("Plan document must be a mapping")

    try:
        plan = Plan.model_validate(dict(document))
    except pydantic.ValidationError as e:
        fields = [_format_location(err["loc"]) for err in e.errors()]
        messages = "; ".join(f"{_format_location(err['loc'])}: {err['msg']}" for err in e.errors())
        raise PlanValidationError(f"Invalid plan document: {messages}", fields=fields) from e

    problems: list[tuple[str, str]] = []

    counts = Counter(plan.step_ids)
    for index, step in enumerate(plan.steps):
        if counts[step.id] > 1:
            problems.append((f"steps[{index}].id", f"duplicate step id '{step.id}'"))

    for index, step in enumerate(plan.steps):
        try:
            json.dumps(step.params)
            if step.rollback is not None:
                json.dumps(step.rollback.params)
        except (TypeError, ValueError):
            problems.append((f"steps[{index}].params", "params must be JSON-serializable"))

    if problems:
        raise PlanValidationError(
            "Invalid plan document: " + "; ".join(message for _, message in problems),
            fields=[field for field, _ in problems],
        )

    resolver = DependencyResolver()
    resolver.validate_references(plan)
    resolver.order(plan)

    return plan


def _format_location(loc: tuple[Any, ...]) -> str:
    """Render a pydantic error location as ``steps[0].dependsOn``."""
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            if parts:
                parts[-1] = f"{parts[-1]}[{item}]"
            else:
                parts.append(f"[{item}]")
        else:
            parts.append(str(item))
    return ".".join(parts) or "<root>"
