"""
Built-in ``core`` skill.

These capabilities have no external side effects and are always
registered, so that plans can be exercised end to end without plugins:

- ``core/noop``: does nothing, returns ``{}``
- ``core/echo``: returns its parameters unchanged
- ``core/wait``: sleeps ``seconds`` (default 0), stopping early if the run
  is cancelled

Plugins register their own skills the same way: a module exposing
``register(registry)``.
"""

import asyncio
from typing import Any

from devflow.engine.registry import CapabilityRegistry, HandlerContext
from devflow.exceptions import CapabilityError

SKILL = "core"


async def noop(params: dict[str, Any], context: HandlerContext) -> dict[str, Any]:
    return {}


async def echo(params: dict[str, Any], context: HandlerContext) -> dict[str, Any]:
    return params


async def wait(params: dict[str, Any], context: HandlerContext) -> dict[str, Any]:
    """Sleep for ``params["seconds"]``, polling the run's cancel event."""
    try:
        seconds = float(params.get("seconds", 0))
    except (TypeError, ValueError) as e:
        raise CapabilityError("invalid_params", f"seconds must be a number: {e}") from e
    if seconds < 0:
        raise CapabilityError("invalid_params", "seconds must not be negative")

    if context.dry_run:
        return {"would_wait": seconds}

    if context.cancel_event is None:
        await asyncio.sleep(seconds)
        return {"waited": seconds, "cancelled": False}

    try:
        await asyncio.wait_for(context.cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return {"waited": seconds, "cancelled": False}
    return {"cancelled": True}


def register(registry: CapabilityRegistry) -> None:
    """Register the ``core`` skill."""
    registry.register(SKILL, "noop", noop, supports_dry_run=True, description="Do nothing")
    registry.register(SKILL, "echo", echo, supports_dry_run=True, description="Return the parameters")
    registry.register(SKILL, "wait", wait, supports_dry_run=True, description="Sleep for params.seconds")
