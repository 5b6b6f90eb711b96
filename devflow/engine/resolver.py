"""Dependency resolution for plan steps.

Computes the layered execution order of a plan (a topological sort in which
each layer holds steps with no ordering between them), the single-file
dispatch order used when a plan does not opt into parallelism, validates
``dependsOn`` references, and detects cycles.
"""

from __future__ import annotations

import heapq
from collections import deque
from typing import TYPE_CHECKING

import structlog

from devflow.exceptions import CycleError, PlanValidationError

if TYPE_CHECKING:
    from devflow.models.plan import Plan

log = structlog.get_logger(__name__)

StepGroup = tuple[str, ...]


class DependencyResolver:
    """Order plan steps and validate the dependency graph.

    Layers are built in passes: each pass collects every unassigned step
    whose dependencies are all assigned to earlier layers. Steps inside a
    layer are sorted by id so execution order is reproducible.

    Example:
        >>> resolver = DependencyResolver()
        >>> resolver.order(plan)
        [('s1',), ('s2', 's3'), ('s4',)]
    """

    def validate_references(self, plan: Plan) -> None:
        """Check that every dependency names a different step of the plan.

        Raises:
            PlanValidationError: On a dangling reference or a self-dependency.
        """
        known = set(plan.step_ids)
        problems: list[tuple[str, str]] = []

        for index, step in enumerate(plan.steps):
            for dep_id in step.depends_on:
                if dep_id == step.id:
                    problems.append((f"steps[{index}].dependsOn", f"step '{step.id}' depends on itself"))
                elif dep_id not in known:
                    problems.append(
                        (f"steps[{index}].dependsOn", f"step '{step.id}' depends on unknown step '{dep_id}'")
                    )

        if problems:
            log.error("invalid_dependency_references", plan_id=plan.id, problems=[m for _, m in problems])
            raise PlanValidationError(
                "Invalid dependencies: " + "; ".join(message for _, message in problems),
                fields=[field for field, _ in problems],
            )

    def order(self, plan: Plan) -> list[StepGroup]:
        """Compute the execution layers of a plan.

        Args:
            plan: Plan whose references are valid.

        Returns:
            Layers in execution order. Their concatenation holds every step
            exactly once, and every step comes after all its dependencies.

        Raises:
            CycleError: If some steps cannot be placed after as many passes
                as there are steps.
        """
        dependencies = {step.id: set(step.depends_on) for step in plan.steps}
        remaining = set(dependencies)
        assigned: set[str] = set()
        groups: list[StepGroup] = []

        for _ in range(len(dependencies)):
            if not remaining:
                break

            layer = sorted(step_id for step_id in remaining if dependencies[step_id] <= assigned)
            if not layer:
                break

            groups.append(tuple(layer))
            assigned.update(layer)
            remaining.difference_update(layer)

        if remaining:
            cycles = self.find_cycles(plan)
            log.error("dependency_cycle_detected", plan_id=plan.id, unresolved=sorted(remaining), cycles=cycles)
            raise CycleError(sorted(remaining), cycles)

        log.debug("execution_order_calculated", plan_id=plan.id, layers=len(groups))
        return groups

    def sequential_order(self, plan: Plan) -> list[str]:
        """Compute the single-file dispatch order of a plan.

        A topological order in which, at every point, the ready step with the
        smallest id goes next. A step therefore runs as soon as its
        dependencies are done rather than waiting for its whole layer.

        Raises:
            CycleError: If the dependency graph contains a cycle.
        """
        waiting = {step.id: len(step.depends_on) for step in plan.steps}
        reverse: dict[str, list[str]] = {step.id: [] for step in plan.steps}
        for step in plan.steps:
            for dep_id in step.depends_on:
                reverse[dep_id].append(step.id)

        ready = [step_id for step_id, count in waiting.items() if count == 0]
        heapq.heapify(ready)
        ordered: list[str] = []

        while ready:
            step_id = heapq.heappop(ready)
            ordered.append(step_id)
            for dependent in reverse[step_id]:
                waiting[dependent] -= 1
                if waiting[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(ordered) < len(waiting):
            unresolved = sorted(set(waiting) - set(ordered))
            raise CycleError(unresolved, self.find_cycles(plan))

        return ordered

    def find_cycles(self, plan: Plan) -> list[list[str]]:
        """Find dependency cycles with a three-colour depth-first search.

        The search keeps its own stack, so chains of any length are walked
        without recursion.

        Returns:
            Closed cycle paths (first id repeated last), shortest first.
            Each distinct set of steps is reported once.
        """
        known = set(plan.step_ids)
        adjacency = {step.id: [dep for dep in step.depends_on if dep in known] for step in plan.steps}
        colors = dict.fromkeys(adjacency, "white")
        position: dict[str, int] = {}
        cycles: list[list[str]] = []
        seen: set[tuple[str, ...]] = set()

        for root in sorted(adjacency):
            if colors[root] != "white":
                continue
            path = [root]
            colors[root] = "gray"
            position[root] = 0
            stack = [iter(adjacency[root])]

            while stack:
                neighbor = next(stack[-1], None)
                if neighbor is None:
                    # Every dependency of the node on top has been explored
                    node = path.pop()
                    stack.pop()
                    colors[node] = "black"
                    del position[node]
                elif colors[neighbor] == "white":
                    colors[neighbor] = "gray"
                    position[neighbor] = len(path)
                    path.append(neighbor)
                    stack.append(iter(adjacency[neighbor]))
                elif colors[neighbor] == "gray":
                    cycle = [*path[position[neighbor] :], neighbor]
                    key = tuple(sorted(set(cycle)))
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)

        return sorted(cycles, key=len)

    def dependents(self, plan: Plan, step_id: str) -> set[str]:
        """Return every step that transitively depends on ``step_id``."""
        reverse: dict[str, set[str]] = {sid: set() for sid in plan.step_ids}
        for step in plan.steps:
            for dep_id in step.depends_on:
                if dep_id in reverse:
                    reverse[dep_id].add(step.id)

        found: set[str] = set()
        queue = deque(reverse.get(step_id, ()))
        while queue:
            current = queue.popleft()
            if current in found:
                continue
            found.add(current)
            queue.extend(reverse[current] - found)

        return found

    def dependents_count(self, plan: Plan) -> dict[str, int]:
        """Number of transitive dependents for every step."""
        return {step_id: len(self.dependents(plan, step_id)) for step_id in plan.step_ids}
