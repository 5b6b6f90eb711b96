"""Step executor registry.

Maps ``(skill, action)`` pairs to capability handlers. The registry is a pure
lookup: it never runs handlers itself. New skills are added by registering
handlers, without any change to the engine.

A handler is an async callable taking the step's parameters and a
:class:`HandlerContext`::

    registry = CapabilityRegistry()

    @registry.capability("git", "create-branch", supports_dry_run=True)
    async def create_branch(params: dict[str, Any], context: HandlerContext) -> dict[str, Any]:
        if context.dry_run:
            return {"would_create": params["name"]}
        ...
        return {"branch": params["name"]}

Failures are reported by raising :class:`~devflow.exceptions.CapabilityError`
with a machine-readable ``reason`` and a ``retryable`` flag.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog

from devflow.exceptions import UnknownCapabilityError
from devflow.models.execution import utc_now

log = structlog.get_logger(__name__)

Handler = Callable[[dict[str, Any], "HandlerContext"], Awaitable[Any]]


@dataclass(frozen=True)
class HandlerContext:
    """Per-call information handed to a capability handler.

    Attributes:
        plan_id: Plan being executed.
        step_id: Step being executed or compensated.
        dry_run: True during the validating phase; handlers must not
            produce side effects.
        compensating: True when the call is a rollback action.
        attempt: 1 for the first call, 2 for the retry.
        cancel_event: Set when the plan run has been cancelled. The engine
            never interrupts a running handler; long handlers may poll it.
        request_id: Unique id of this call, for correlating external logs.
        timestamp: ISO 8601 time the call was issued.
    """

    plan_id: str
    step_id: str
    dry_run: bool = False
    compensating: bool = False
    attempt: int = 1
    cancel_event: asyncio.Event | None = None
    request_id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=utc_now)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass(frozen=True, slots=True)
class Capability:
    """A registered handler and its metadata."""

    skill: str
    action: str
    handler: Handler
    supports_dry_run: bool = False
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.skill}/{self.action}"

    async def invoke(self, params: dict[str, Any], context: HandlerContext) -> Any:
        """Call the handler, awaiting its result if it returns an awaitable."""
        result = self.handler(params, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class CapabilityRegistry:
    """Registry of capability handlers keyed by ``(skill, action)``.

    Example:
        >>> registry = CapabilityRegistry()
        >>> registry.register("jira", "transition", transition_issue)
        >>> registry.resolve("jira", "transition").key
        'jira/transition'
    """

    def __init__(self) -> None:
        self._capabilities: dict[tuple[str, str], Capability] = {}

    def register(
        self,
        skill: str,
        action: str,
        handler: Handler,
        *,
        supports_dry_run: bool = False,
        description: str = "",
        replace: bool = False,
    ) -> Capability:
        """Register a handler for a capability.

        Args:
            skill: Skill name.
            action: Action name.
            handler: Callable ``(params, context) -> result``.
            supports_dry_run: Whether the handler honours ``context.dry_run``;
                only such handlers are invoked during validation.
            description: Human-readable summary.
            replace: Overwrite an existing registration instead of failing.

        Returns:
            The registered Capability.

        Raises:
            ValueError: If the pair is already registered and ``replace`` is False.
            TypeError: If the handler is not callable.
        """
        if not skill or not action:
            raise ValueError("skill and action must be non-empty")
        if not callable(handler):
            raise TypeError(f"Handler for {skill}/{action} is not callable")

        key = (skill, action)
        if key in self._capabilities and not replace:
            raise ValueError(f"Capability already registered: {skill}/{action}")

        capability = Capability(
            skill=skill,
            action=action,
            handler=handler,
            supports_dry_run=supports_dry_run,
            description=description,
        )
        self._capabilities[key] = capability
        log.debug("capability_registered", capability=capability.key, supports_dry_run=supports_dry_run)
        return capability

    def capability(
        self,
        skill: str,
        action: str,
        *,
        supports_dry_run: bool = False,
        description: str = "",
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(
                skill,
                action,
                handler,
                supports_dry_run=supports_dry_run,
                description=description or (inspect.getdoc(handler) or "").split("\n")[0],
            )
            return handler

        return decorator

    def unregister(self, skill: str, action: str) -> None:
        self._capabilities.pop((skill, action), None)

    def resolve(self, skill: str, action: str, step_id: str | None = None) -> Capability:
        """Look up the capability for a pair.

        Raises:
            UnknownCapabilityError: If nothing is registered for the pair.
        """
        try:
            return self._capabilities[(skill, action)]
        except KeyError:
            raise UnknownCapabilityError(skill, action, step_id=step_id) from None

    def list_capabilities(self) -> list[Capability]:
        return [self._capabilities[key] for key in sorted(self._capabilities)]

    def __contains__(self, key: object) -> bool:
        return key in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
