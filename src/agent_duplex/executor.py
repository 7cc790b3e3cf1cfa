"""
Tool execution strategies.

An executor takes the tool calls from one model response and produces exactly
one terminal ``ToolResult`` per call. Failures never escape: an unknown tool,
a raising handler or a timeout all become ``status="error"`` results.

Example:
    executor = ConcurrentToolExecutor(timeout=30)
    results = await executor.execute(
        requests,
        registry,
        ToolCallbacks(on_progress=lambda p: print(p.data)),
    )
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from agent_duplex.errors import TurnCancelledError
from agent_duplex.logging import get_logger
from agent_duplex.messages import ToolInvocationRequest, ToolProgress, ToolResult
from agent_duplex.tools import ToolDefinition, ToolRegistry

if TYPE_CHECKING:
    from agent_duplex.config import ExecutorConfig

logger = get_logger("executor")

Gate = Callable[[], Awaitable[None]]

_NOTHING = object()


@dataclass
class ToolCallbacks:
    """Observers for tool execution. Each may be sync or async."""

    on_dispatch: Callable[[ToolInvocationRequest], Any] | None = None
    on_progress: Callable[[ToolProgress], Any] | None = None
    on_result: Callable[[ToolResult], Any] | None = None


async def _notify(callback: Callable[[Any], Any] | None, value: Any) -> None:
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


def _as_result(tool_call_id: str, value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        if value.tool_call_id != tool_call_id:
            return replace(value, tool_call_id=tool_call_id)
        return value
    return ToolResult.success(tool_call_id, value)


def cancelled_result(request: ToolInvocationRequest) -> ToolResult:
    return ToolResult.error(
        request.tool_call_id, f"Tool '{request.tool_name}' was cancelled before it started"
    )


# ---------------------------------------------------------------------------
# Invoking a single handler
# ---------------------------------------------------------------------------


async def _drain_async(
    gen: AsyncIterator[Any],
    request: ToolInvocationRequest,
    on_progress: Callable[[ToolProgress], Any] | None,
) -> ToolResult:
    last: Any = _NOTHING
    final: ToolResult | None = None
    try:
        async for item in gen:
            if isinstance(item, ToolResult):
                final = item
                break
            data = item.data if isinstance(item, ToolProgress) else item
            await _notify(on_progress, ToolProgress(request.tool_call_id, data))
            last = data
    finally:
        await gen.aclose()  # type: ignore[attr-defined]
    if final is not None:
        return _as_result(request.tool_call_id, final)
    return _as_result(request.tool_call_id, None if last is _NOTHING else last)


async def _drain_sync(
    gen: Iterator[Any],
    request: ToolInvocationRequest,
    on_progress: Callable[[ToolProgress], Any] | None,
) -> ToolResult:
    last: Any = _NOTHING
    try:
        while True:
            item = await asyncio.to_thread(next, gen, _NOTHING)
            if item is _NOTHING:
                break
            if isinstance(item, ToolResult):
                return _as_result(request.tool_call_id, item)
            data = item.data if isinstance(item, ToolProgress) else item
            await _notify(on_progress, ToolProgress(request.tool_call_id, data))
            last = data
    finally:
        # Raises ValueError while a timed-out next() is still running in its thread
        with contextlib.suppress(ValueError):
            gen.close()  # type: ignore[attr-defined]
    return _as_result(request.tool_call_id, None if last is _NOTHING else last)


async def invoke_tool(
    tool: ToolDefinition,
    request: ToolInvocationRequest,
    on_progress: Callable[[ToolProgress], Any] | None = None,
) -> ToolResult:
    """
    Run one tool handler to completion.

    Sync handlers run in a worker thread so they cannot stall other tools.
    """
    handler = tool.handler
    if handler is None:
        raise RuntimeError(f"Tool '{tool.name}' has no handler")
    args = dict(request.input)

    if inspect.isasyncgenfunction(handler):
        return await _drain_async(handler(args), request, on_progress)
    if inspect.isgeneratorfunction(handler):
        return await _drain_sync(handler(args), request, on_progress)
    if inspect.iscoroutinefunction(handler):
        value = await handler(args)
    else:
        value = await asyncio.to_thread(handler, args)

    if inspect.isasyncgen(value):
        return await _drain_async(value, request, on_progress)
    if inspect.isgenerator(value):
        return await _drain_sync(value, request, on_progress)
    if inspect.isawaitable(value):
        value = await value
    return _as_result(request.tool_call_id, value)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class ToolExecutor(ABC):
    """Base class for dispatch strategies."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    @abstractmethod
    async def execute(
        self,
        requests: list[ToolInvocationRequest],
        registry: ToolRegistry,
        callbacks: ToolCallbacks | None = None,
        gate: Gate | None = None,
    ) -> list[ToolResult]:
        """
        Run *requests* and return their results in request order.

        Args:
            requests: Tool calls from one model response
            registry: Where tool names are resolved
            callbacks: Observers for dispatch, progress and results
            gate: Awaited before dispatching; raising ``TurnCancelledError``
                stops further dispatch and yields cancelled results for the
                requests that never started
        """
        ...

    async def run_one(
        self,
        request: ToolInvocationRequest,
        registry: ToolRegistry,
        callbacks: ToolCallbacks,
    ) -> ToolResult:
        """Dispatch a single request and convert any failure into a result."""
        await _notify(callbacks.on_dispatch, request)
        tool = registry.get(request.tool_name)

        if tool is None:
            result = ToolResult.error(request.tool_call_id, f"Unknown tool: {request.tool_name}")
        elif tool.human:
            result = ToolResult.error(
                request.tool_call_id,
                f"Tool '{request.tool_name}' requires input from the client",
            )
        else:
            try:
                call = invoke_tool(tool, request, callbacks.on_progress)
                if self.timeout is not None:
                    result = await asyncio.wait_for(call, self.timeout)
                else:
                    result = await call
            except asyncio.TimeoutError:
                logger.warning("Tool %s timed out after %ss", request.tool_name, self.timeout)
                result = ToolResult.error(
                    request.tool_call_id,
                    f"Tool '{request.tool_name}' timed out after {self.timeout}s",
                )
            except Exception as e:
                logger.warning("Tool %s failed: %s", request.tool_name, e, exc_info=True)
                result = ToolResult.error(
                    request.tool_call_id,
                    f"Tool '{request.tool_name}' failed: {type(e).__name__}: {e}",
                )

        await _notify(callbacks.on_result, result)
        return result


class ConcurrentToolExecutor(ToolExecutor):
    """
    Dispatch every request at once and wait for all of them.

    Results are reported through ``on_result`` in completion order and
    returned in request order. ``max_concurrency`` bounds how many run at the
    same time.
    """

    def __init__(self, timeout: float | None = None, max_concurrency: int | None = None) -> None:
        super().__init__(timeout)
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.max_concurrency = max_concurrency

    async def execute(
        self,
        requests: list[ToolInvocationRequest],
        registry: ToolRegistry,
        callbacks: ToolCallbacks | None = None,
        gate: Gate | None = None,
    ) -> list[ToolResult]:
        if not requests:
            return []
        callbacks = callbacks or ToolCallbacks()
        if gate is not None:
            try:
                await gate()
            except TurnCancelledError:
                return [cancelled_result(r) for r in requests]

        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def guarded(request: ToolInvocationRequest) -> ToolResult:
            if semaphore is None:
                return await self.run_one(request, registry, callbacks)
            async with semaphore:
                return await self.run_one(request, registry, callbacks)

        return list(await asyncio.gather(*(guarded(r) for r in requests)))


class SequentialToolExecutor(ToolExecutor):
    """
    Dispatch requests one at a time, in the order the model emitted them.

    A request starts only after the previous one produced its result.
    """

    async def execute(
        self,
        requests: list[ToolInvocationRequest],
        registry: ToolRegistry,
        callbacks: ToolCallbacks | None = None,
        gate: Gate | None = None,
    ) -> list[ToolResult]:
        callbacks = callbacks or ToolCallbacks()
        results: list[ToolResult] = []
        for index, request in enumerate(requests):
            if gate is not None:
                try:
                    await gate()
                except TurnCancelledError:
                    results.extend(cancelled_result(r) for r in requests[index:])
                    break
            results.append(await self.run_one(request, registry, callbacks))
        return results


def create_executor(config: ExecutorConfig) -> ToolExecutor:
    """Build the executor selected by *config*."""
    if config.mode == "sequential":
        return SequentialToolExecutor(timeout=config.tool_timeout)
    return ConcurrentToolExecutor(
        timeout=config.tool_timeout,
        max_concurrency=config.max_concurrency,
    )
