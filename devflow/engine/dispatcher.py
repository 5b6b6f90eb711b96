"""
Step dispatch with bounded concurrency, timeouts and a single retry.

The dispatcher is the only place where capability handlers are called. It
normalises every handler failure into a
:class:`~devflow.exceptions.CapabilityError` so that a misbehaving handler
can never crash the coordinating process:

- ``CapabilityError`` raised by the handler is kept as is
- a handler exceeding its timeout becomes ``CapabilityError("timeout", retryable=True)``
- any other exception becomes ``CapabilityError("unhandled_exception")``

Retryable errors get exactly one more attempt after a capped backoff.
``asyncio.CancelledError`` is never caught.

Example:
    >>> dispatcher = StepDispatcher(backoff_seconds=1.0)
    >>> outcome = await dispatcher.invoke(capability, {"name": "feature/x"}, make_context)
    >>> outcome.success
    True
"""

import asyncio
import copy
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from devflow.engine.registry import Capability, HandlerContext
from devflow.exceptions import CapabilityError
from devflow.utils.retry import async_retry

log = structlog.get_logger(__name__)

ContextFactory = Callable[[int], HandlerContext]
RetryCallback = Callable[[int, Exception, float], Any]


@dataclass
class StepOutcome:
    """Result of dispatching one handler call (retries included).

    Attributes:
        success: True if the handler eventually returned.
        output: Handler return value on success.
        error: Normalised failure on error.
        attempts: Number of handler calls made.
        execution_time: Wall time in seconds, backoff included.
    """

    success: bool
    output: Any = None
    error: CapabilityError | None = None
    attempts: int = 0
    execution_time: float = 0.0


class StepDispatcher:
    """Invoke capability handlers on behalf of the engine.

    Attributes:
        max_attempts: Handler calls allowed per step (one retry by default).
        backoff_seconds: Delay before the retry.
        max_backoff_seconds: Upper bound on the delay.
    """

    def __init__(
        self,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 10.0,
        max_attempts: int = 2,
    ) -> None:
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.max_attempts = max_attempts

    async def invoke(
        self,
        capability: Capability,
        params: dict[str, Any],
        context_factory: ContextFactory,
        timeout: float | None = None,
        on_retry: RetryCallback | None = None,
    ) -> StepOutcome:
        """Call a handler, retrying once on a retryable failure.

        Args:
            capability: Resolved capability to call.
            params: Step parameters. Each attempt receives its own deep copy
                so handlers cannot mutate the plan.
            context_factory: Builds the HandlerContext for attempt N.
            timeout: Per-attempt timeout in seconds.
            on_retry: Called with ``(attempt, error, delay)`` before the retry.

        Returns:
            StepOutcome describing success or the final failure. Never raises
            for handler errors.
        """
        attempts = 0
        start_time = time.monotonic()

        async def attempt_call() -> Any:
            nonlocal attempts
            attempts += 1
            context = context_factory(attempts)

            try:
                call = capability.invoke(copy.deepcopy(params), context)
                if timeout is not None:
                    return await asyncio.wait_for(call, timeout=timeout)
                return await call
            except CapabilityError:
                raise
            except TimeoutError as e:
                log.error("handler_timeout", capability=capability.key, step_id=context.step_id, timeout=timeout)
                raise CapabilityError(
                    "timeout",
                    f"Handler {capability.key} timed out after {timeout}s",
                    retryable=True,
                ) from e
            except Exception as e:
                log.error(
                    "handler_exception",
                    capability=capability.key,
                    step_id=context.step_id,
                    error=str(e),
                    exc_info=True,
                )
                raise CapabilityError(
                    "unhandled_exception",
                    f"{type(e).__name__}: {e}",
                    retryable=False,
                ) from e

        call_with_retry = async_retry(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_seconds,
            max_delay=self.max_backoff_seconds,
            exceptions=(CapabilityError,),
            retry_if=lambda e: isinstance(e, CapabilityError) and e.retryable,
            on_retry=on_retry,
        )(attempt_call)

        try:
            output = await call_with_retry()
        except CapabilityError as e:
            return StepOutcome(
                success=False,
                error=e,
                attempts=attempts,
                execution_time=time.monotonic() - start_time,
            )

        return StepOutcome(
            success=True,
            output=output,
            attempts=attempts,
            execution_time=time.monotonic() - start_time,
        )

    async def run_bounded(
        self,
        items: list[str],
        worker: Callable[[str], Awaitable[None]],
        max_concurrency: int,
    ) -> None:
        """Run ``worker(item)`` for every item, at most ``max_concurrency`` at once.

        Waits for every started worker before returning, even if one of
        them raises; the first such exception is then re-raised.

        Args:
            items: Work items (step ids), started in list order.
            worker: Coroutine function processing one item.
            max_concurrency: Upper bound on simultaneously running workers.
        """
        if not items:
            return

        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def guarded(item: str) -> None:
            async with semaphore:
                await worker(item)

        log.debug("bounded_dispatch_started", items=len(items), max_concurrency=max_concurrency)
        tasks = [asyncio.create_task(guarded(item)) for item in items]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException):
                raise result
