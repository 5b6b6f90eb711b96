"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import structlog

from devflow.config.settings import EngineSettings
from devflow.engine.orchestrator import PlanOrchestrator
from devflow.engine.registry import CapabilityRegistry, HandlerContext
from devflow.engine.state_manager import StateManager
from devflow.exceptions import CapabilityError


@dataclass
class Call:
    """One recorded handler invocation."""

    capability: str
    step_id: str
    params: dict[str, Any]
    dry_run: bool
    compensating: bool
    attempt: int


@dataclass
class CallLog:
    """Handler invocations in the order they happened."""

    calls: list[Call] = field(default_factory=list)

    def executed(self) -> list[str]:
        """Step ids of real (not dry-run, not compensating) calls."""
        return [c.step_id for c in self.calls if not c.dry_run and not c.compensating]

    def compensated(self) -> list[str]:
        return [c.step_id for c in self.calls if c.compensating]

    def dry_runs(self) -> list[str]:
        return [c.step_id for c in self.calls if c.dry_run]


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """Undo logging configuration done by CLI tests."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_manager(temp_state_dir: Path) -> StateManager:
    """StateManager instance with temp directory."""
    return StateManager(str(temp_state_dir))


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def registry(call_log: CallLog) -> CapabilityRegistry:
    """Registry with recording test handlers.

    Capabilities (skill ``test``):
        ok: returns ``{"step": step_id}``; supports dry run
        fail: raises a non-retryable CapabilityError
        flaky: fails with a retryable error on the first attempt only
        always_retryable: fails with a retryable error every time
        crash: raises RuntimeError
        slow: sleeps ``params["seconds"]``
        undo: rollback handler that succeeds
        undo_fail: rollback handler that fails
        dry_fail: fails only in dry-run mode
    """
    registry = CapabilityRegistry()

    def recording(name: str, behaviour: Any, supports_dry_run: bool = False) -> None:
        async def handler(params: dict[str, Any], context: HandlerContext) -> Any:
            call_log.calls.append(
                Call(
                    capability=f"test/{name}",
                    step_id=context.step_id,
                    params=params,
                    dry_run=context.dry_run,
                    compensating=context.compensating,
                    attempt=context.attempt,
                )
            )
            return await behaviour(params, context)

        registry.register("test", name, handler, supports_dry_run=supports_dry_run)

    async def ok(params: dict[str, Any], context: HandlerContext) -> Any:
        return {"step": context.step_id}

    async def fail(params: dict[str, Any], context: HandlerContext) -> Any:
        raise CapabilityError("boom", f"Step {context.step_id} exploded")

    async def flaky(params: dict[str, Any], context: HandlerContext) -> Any:
        if context.attempt == 1:
            raise CapabilityError("rate_limited", "Try again", retryable=True)
        return {"attempt": context.attempt}

    async def always_retryable(params: dict[str, Any], context: HandlerContext) -> Any:
        raise CapabilityError("unavailable", "Service unavailable", retryable=True)

    async def crash(params: dict[str, Any], context: HandlerContext) -> Any:
        raise RuntimeError("handler bug")

    async def slow(params: dict[str, Any], context: HandlerContext) -> Any:
        await asyncio.sleep(params.get("seconds", 1))
        return {"slept": params.get("seconds", 1)}

    async def undo_fail(params: dict[str, Any], context: HandlerContext) -> Any:
        raise CapabilityError("conflict", "Cannot undo")

    async def dry_fail(params: dict[str, Any], context: HandlerContext) -> Any:
        if context.dry_run:
            raise CapabilityError("precondition_failed", "Dry run rejected the step")
        return {}

    recording("ok", ok, supports_dry_run=True)
    recording("fail", fail)
    recording("flaky", flaky)
    recording("always_retryable", always_retryable)
    recording("crash", crash)
    recording("slow", slow)
    recording("undo", ok)
    recording("undo_fail", undo_fail)
    recording("dry_fail", dry_fail, supports_dry_run=True)
    return registry


@pytest.fixture
def settings(temp_state_dir: Path) -> EngineSettings:
    """Settings with no retry backoff."""
    return EngineSettings(
        workflow={"state_directory": str(temp_state_dir)},
        retry={"backoff_seconds": 0, "max_backoff_seconds": 0},
    )


@pytest.fixture
def orchestrator(
    settings: EngineSettings,
    registry: CapabilityRegistry,
    state_manager: StateManager,
) -> PlanOrchestrator:
    return PlanOrchestrator(settings, registry, state_manager)


def make_step(
    step_id: str,
    action: str = "ok",
    depends_on: list[str] | None = None,
    rollback: str | None = "undo",
    **extra: Any,
) -> dict[str, Any]:
    """Build a step document using the ``test`` skill."""
    step: dict[str, Any] = {
        "id": step_id,
        "skill": "test",
        "action": action,
        "params": extra.pop("params", {}),
        "dependsOn": depends_on or [],
    }
    if rollback:
        step["rollback"] = {"skill": "test", "action": rollback, "params": {"undo": step_id}}
    step.update(extra)
    return step


def make_plan(plan_id: str, steps: list[dict[str, Any]], **options: Any) -> dict[str, Any]:
    document: dict[str, Any] = {"id": plan_id, "name": f"Plan {plan_id}", "steps": steps}
    if options:
        document["options"] = options
    return document


@pytest.fixture
def sample_plan_document() -> dict[str, Any]:
    """Two-step plan: create a branch, then transition the ticket."""
    return {
        "id": "p1",
        "name": "Start feature",
        "steps": [
            {"id": "s1", "skill": "git", "action": "create-branch", "params": {"name": "feature/x"}, "dependsOn": []},
            {"id": "s2", "skill": "jira", "action": "transition", "params": {"to": "In Progress"}, "dependsOn": ["s1"]},
        ],
    }
