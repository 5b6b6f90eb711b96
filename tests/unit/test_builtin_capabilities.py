"""Tests for the built-in core skill."""

import asyncio

import pytest

from devflow.capabilities import builtin
from devflow.engine.registry import CapabilityRegistry, HandlerContext
from devflow.exceptions import CapabilityError


@pytest.fixture
def core_registry() -> CapabilityRegistry:
    registry = CapabilityRegistry()
    builtin.register(registry)
    return registry


def _context(**kwargs) -> HandlerContext:
    return HandlerContext(plan_id="p", step_id="s", **kwargs)


class TestRegistration:
    def test_core_skill_registered(self, core_registry):
        keys = [c.key for c in core_registry.list_capabilities()]

        assert keys == ["core/echo", "core/noop", "core/wait"]
        assert all(c.supports_dry_run for c in core_registry.list_capabilities())


class TestHandlers:
    """Tests for the core handlers."""

    @pytest.mark.asyncio
    async def test_noop_and_echo(self):
        assert await builtin.noop({"x": 1}, _context()) == {}
        assert await builtin.echo({"x": 1}, _context()) == {"x": 1}

    @pytest.mark.asyncio
    async def test_wait(self):
        result = await builtin.wait({"seconds": 0.01}, _context())

        assert result == {"waited": 0.01, "cancelled": False}

    @pytest.mark.asyncio
    async def test_wait_dry_run_does_not_sleep(self):
        result = await builtin.wait({"seconds": 3600}, _context(dry_run=True))

        assert result == {"would_wait": 3600.0}

    @pytest.mark.asyncio
    async def test_wait_stops_on_cancel(self):
        """Test a cancelled run cuts the wait short."""
        event = asyncio.Event()
        event.set()

        result = await builtin.wait({"seconds": 3600}, _context(cancel_event=event))

        assert result == {"cancelled": True}

    @pytest.mark.asyncio
    async def test_wait_runs_full_time_without_cancel(self):
        result = await builtin.wait({"seconds": 0.01}, _context(cancel_event=asyncio.Event()))

        assert result["cancelled"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seconds", ["soon", -1])
    async def test_wait_rejects_bad_seconds(self, seconds):
        with pytest.raises(CapabilityError) as exc_info:
            await builtin.wait({"seconds": seconds}, _context())

        assert exc_info.value.reason == "invalid_params"
