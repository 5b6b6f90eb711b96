"""Planning phase: the side-effect free summary presented for approval."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from devflow.engine.resolver import DependencyResolver, StepGroup
from devflow.enums import RiskMarker
from devflow.models.plan import Plan

# Transitive dependents at which a step is flagged
HIGH_FAN_OUT = 2
CRITICAL_FAN_OUT = 5


@dataclass
class StepSummary:
    step_id: str
    capability: str
    depends_on: list[str]
    layer: int
    rollback: str | None
    dependents: int
    risks: list[RiskMarker] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "capability": self.capability,
            "depends_on": self.depends_on,
            "layer": self.layer,
            "rollback": self.rollback,
            "dependents": self.dependents,
            "risks": [risk.value for risk in self.risks],
            "description": self.description,
        }


@dataclass
class PlanSummary:
    """Everything a reviewer needs to approve a plan.

    Attributes:
        plan_id: Plan being summarised.
        name: Plan name.
        groups: Execution layers in order.
        steps: Per-step summary in execution order.
        capabilities: Sorted ``skill/action`` keys the plan needs, rollback
            actions included.
        options: Resolved plan options.
        approved: Whether approval has already been given.
    """

    plan_id: str
    name: str
    groups: list[StepGroup]
    steps: list[StepSummary]
    capabilities: list[str]
    options: dict[str, Any]
    approved: bool = False

    @property
    def risky_steps(self) -> list[str]:
        return [step.step_id for step in self.steps if step.risks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "name": self.name,
            "approved": self.approved,
            "groups": [list(group) for group in self.groups],
            "capabilities": self.capabilities,
            "options": self.options,
            "steps": [step.to_dict() for step in self.steps],
        }


def summarize_plan(plan: Plan, resolver: DependencyResolver | None = None, approved: bool = False) -> PlanSummary:
    """Build the approval summary for a plan.

    Risk markers:
        - irreversible: the step declares no rollback action
        - high_fan_out / critical_fan_out: the step has at least 2 / 5
          transitive dependents that a failure would block
        - parallel: the step may run concurrently in a parallel plan
    """
    resolver = resolver or DependencyResolver()
    groups = resolver.order(plan)
    layer_of = {step_id: index for index, group in enumerate(groups) for step_id in group}
    fan_out = resolver.dependents_count(plan)

    capabilities: set[str] = set()
    steps: list[StepSummary] = []

    for group in groups:
        for step_id in group:
            step = plan.get_step(step_id)
            capabilities.add(step.capability_key)
            if step.rollback is not None:
                capabilities.add(step.rollback.capability_key)

            risks: list[RiskMarker] = []
            if step.rollback is None and not step.skip:
                risks.append(RiskMarker.IRREVERSIBLE)
            if fan_out[step_id] >= CRITICAL_FAN_OUT:
                risks.append(RiskMarker.CRITICAL_FAN_OUT)
            elif fan_out[step_id] >= HIGH_FAN_OUT:
                risks.append(RiskMarker.HIGH_FAN_OUT)
            if plan.options.parallel and step.parallel_safe:
                risks.append(RiskMarker.PARALLEL)

            steps.append(
                StepSummary(
                    step_id=step_id,
                    capability=step.capability_key,
                    depends_on=list(step.depends_on),
                    layer=layer_of[step_id],
                    rollback=step.rollback.capability_key if step.rollback else None,
                    dependents=fan_out[step_id],
                    risks=risks,
                    description=step.description,
                )
            )

    return PlanSummary(
        plan_id=plan.id,
        name=plan.name,
        groups=groups,
        steps=steps,
        capabilities=sorted(capabilities),
        options=plan.options.model_dump(mode="json", by_alias=True, exclude_none=True),
        approved=approved,
    )
