"""
The turn loop: model call, tool dispatch, repeat.

One call to ``TurnLoop.run_turn()`` handles one user message. It streams
envelopes (``content``, ``tool_use``, ``progress``, ``tool_result``,
``error``) and always finishes with exactly one ``end`` envelope.

Example:
    loop = TurnLoop(model, registry)
    control = TurnControl()

    async for envelope in loop.run_turn("What is 2+2?", control):
        print(envelope.type, dict(envelope.payload))

Cancellation and pausing are cooperative. ``TurnControl.checkpoint()`` is
awaited before each model call, before each emitted content chunk, before
tool dispatch and after each tool completion.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agent_duplex import envelope as env
from agent_duplex.config import LoopConfig
from agent_duplex.context import (
    ContextManager,
    ManagementCadence,
    SlidingWindowContextManager,
    create_context_manager,
)
from agent_duplex.envelope import Envelope
from agent_duplex.errors import (
    AgentDuplexError,
    ContextWindowOverflowError,
    ErrorCode,
    ModelError,
    ModelThrottledError,
    ModelTimeoutError,
    TurnCancelledError,
)
from agent_duplex.events import (
    AFTER_TOOL_RESULT,
    BEFORE_TOOL_CALL,
    CONTEXT_REDUCED,
    MODEL_RETRY,
    TURN_END,
    TURN_START,
    AfterToolResultEvent,
    BeforeToolCallEvent,
    ContextReducedEvent,
    EventBus,
    ModelRetryEvent,
    TurnEndEvent,
    TurnStartEvent,
)
from agent_duplex.executor import (
    ConcurrentToolExecutor,
    ToolCallbacks,
    ToolExecutor,
    create_executor,
)
from agent_duplex.logging import get_logger
from agent_duplex.messages import (
    Message,
    ToolInvocationRequest,
    ToolProgress,
    ToolResult,
    ToolUseBlock,
)
from agent_duplex.model import ContentDelta, ModelChunk, ModelClient, ModelStop, ToolCallRequest
from agent_duplex.throttle import CircuitBreaker, RetryPolicy, TokenBucket, create_throttling
from agent_duplex.tools import ToolRegistry

if TYPE_CHECKING:
    from agent_duplex.config import AgentDuplexConfig
    from agent_duplex.repository import SessionRepository

logger = get_logger("loop")


# ---------------------------------------------------------------------------
# Turn control
# ---------------------------------------------------------------------------


class TurnControl:
    """
    Per-turn cancel flag and pause gate.

    The session flips these from its reader task; the loop observes them at
    its checkpoints.
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._running = asyncio.Event()
        self._running.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        # A paused turn must wake up to notice the cancel
        self._running.set()

    def pause(self) -> None:
        if not self._cancelled.is_set():
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def reset(self) -> None:
        """Clear both flags so the control can drive another turn."""
        self._cancelled.clear()
        self._running.set()

    async def checkpoint(self) -> None:
        """
        Wait while paused.

        Raises:
            TurnCancelledError: if the turn was cancelled.
        """
        if not self._running.is_set():
            await self._running.wait()
        if self._cancelled.is_set():
            raise TurnCancelledError("Turn cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, waking early on cancel."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), delay)
        except asyncio.TimeoutError:
            pass
        await self.checkpoint()


# ---------------------------------------------------------------------------
# Suspended turns
# ---------------------------------------------------------------------------


@dataclass
class PendingTurn:
    """
    A turn suspended until the client answers one or more tool calls.

    Nothing of the suspended iteration is in the history yet: the assistant
    message and all of its results are committed together on resume.
    """

    turn_id: str
    assistant: Message
    results: dict[str, ToolResult] = field(default_factory=dict)
    outstanding: list[str] = field(default_factory=list)
    iterations: int = 0

    @property
    def resolved(self) -> bool:
        return not self.outstanding

    def resolve(self, result: ToolResult) -> bool:
        """
        Record a client-supplied result. Returns True once nothing is
        outstanding.

        Raises:
            KeyError: if the id is not awaiting input.
        """
        if result.tool_call_id not in self.outstanding:
            raise KeyError(result.tool_call_id)
        self.outstanding.remove(result.tool_call_id)
        self.results[result.tool_call_id] = result
        return self.resolved

    def ordered_results(self) -> list[ToolResult]:
        return [self.results[tu.tool_call_id] for tu in self.assistant.tool_uses]


@dataclass
class _ModelResponse:
    """Accumulates one model response across retries."""

    text: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    stop_reason: str = "end_turn"
    reduced: bool = False
    emitted: bool = False  # content already streamed to the client

    def reset(self) -> None:
        self.text.clear()
        self.tool_calls.clear()
        self.stop_reason = "end_turn"

    def to_message(self) -> Message:
        return Message.assistant(
            "".join(self.text),
            [ToolUseBlock(c.tool_call_id, c.name, dict(c.input)) for c in self.tool_calls],
        )


# ---------------------------------------------------------------------------
# TurnLoop
# ---------------------------------------------------------------------------


class TurnLoop:
    """
    Drives one conversation: owns its history and runs turns against it.

    Args:
        model: Model collaborator
        registry: Tools the model may call
        executor: Dispatch strategy (concurrent by default)
        context_manager: History budget policy (sliding window by default)
        config: Iteration and timeout limits
        history: Existing history to continue
        system_prompt: Passed to the model on every call
        hooks: Lifecycle observers
        retry_policy: Backoff for throttled or overflowing model calls
        rate_limiter: Token bucket gating model calls
        circuit_breaker: Rejects model calls after repeated failures
        cadence: Proactive context management inside a turn
        repository: Persists history after each turn
        session_id: Key used with *repository*
    """

    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry | None = None,
        executor: ToolExecutor | None = None,
        context_manager: ContextManager | None = None,
        config: LoopConfig | None = None,
        history: list[Message] | None = None,
        system_prompt: str | None = None,
        hooks: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limiter: TokenBucket | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        cadence: ManagementCadence | None = None,
        repository: SessionRepository | None = None,
        session_id: str | None = None,
    ) -> None:
        self.model = model
        self.registry = registry or ToolRegistry()
        self.executor = executor or ConcurrentToolExecutor()
        self.context_manager = context_manager or SlidingWindowContextManager()
        self.config = config or LoopConfig()
        self.history: list[Message] = history if history is not None else []
        self.system_prompt = system_prompt or None
        self.hooks = hooks or EventBus()
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.cadence = cadence or ManagementCadence.disabled()
        self.repository = repository
        self.session_id = session_id
        self.pending: PendingTurn | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        content: str,
        control: TurnControl | None = None,
        turn_id: str | None = None,
        **metadata: Any,
    ) -> AsyncIterator[Envelope]:
        """
        Append *content* as a user message and run it to an ``end``.

        If the model calls a client-side tool, the turn ends with
        ``end{reason: awaiting_input}`` and ``self.pending`` holds the
        suspended state for ``resume_turn``.
        """
        if self.pending is not None:
            self.abandon_pending("Superseded by a new message")
        control = control or TurnControl()
        turn_id = turn_id or uuid.uuid4().hex

        self.history.append(Message.user(content, **metadata))
        await self.hooks.emit(
            TURN_START,
            TurnStartEvent(turn_id=turn_id, user_input=content, message_count=len(self.history)),
        )
        async for envelope in self._drive(turn_id, control, None):
            yield envelope.with_metadata(turn_id=turn_id)

    async def resume_turn(
        self,
        pending: PendingTurn,
        results: Iterable[ToolResult] = (),
        control: TurnControl | None = None,
    ) -> AsyncIterator[Envelope]:
        """
        Continue a suspended turn once every outstanding call has a result.

        Raises:
            ValueError: if results are still missing.
        """
        for result in results:
            if result.tool_call_id in pending.outstanding:
                pending.resolve(result)
        if not pending.resolved:
            raise ValueError(f"Still awaiting results for: {', '.join(pending.outstanding)}")
        if self.pending is pending:
            self.pending = None
        control = control or TurnControl()

        async for envelope in self._drive(pending.turn_id, control, pending):
            yield envelope.with_metadata(turn_id=pending.turn_id)

    def abandon_pending(self, reason: str = "No result was provided") -> PendingTurn | None:
        """Resolve outstanding client-side calls with errors and commit them."""
        pending = self.pending
        if pending is None:
            return None
        for tool_call_id in list(pending.outstanding):
            pending.resolve(ToolResult.error(tool_call_id, reason))
        self._commit(pending.assistant, pending.ordered_results())
        self.pending = None
        return pending

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    async def _drive(
        self,
        turn_id: str,
        control: TurnControl,
        resumed: PendingTurn | None,
    ) -> AsyncIterator[Envelope]:
        iterations = resumed.iterations if resumed else 0
        reason = env.END_COMPLETE
        error_text: str | None = None

        try:
            if resumed is not None:
                self._commit(resumed.assistant, resumed.ordered_results())

            while True:
                if iterations >= self.config.max_iterations:
                    error_text = f"Reached the limit of {self.config.max_iterations} model calls"
                    yield env.error(ErrorCode.MAX_ITERATIONS, error_text, True)
                    reason = env.END_ERROR
                    break
                iterations += 1

                # --- model call ---
                await control.checkpoint()
                response = _ModelResponse()
                async for envelope in self._call_model(turn_id, control, response):
                    yield envelope

                assistant = response.to_message()
                if not response.tool_calls:
                    self.history.append(assistant)
                    break

                # --- tool dispatch ---
                requests = [
                    ToolInvocationRequest(c.tool_call_id, c.name, dict(c.input))
                    for c in response.tool_calls
                ]
                machine = [r for r in requests if not self.registry.is_human(r.tool_name)]
                human = [r for r in requests if self.registry.is_human(r.tool_name)]

                results: list[ToolResult] = []
                async for item in self._dispatch(turn_id, control, machine):
                    if isinstance(item, Envelope):
                        yield item
                    else:
                        results = item

                if control.cancelled:
                    results.extend(
                        ToolResult.error(r.tool_call_id, "Turn cancelled before input arrived")
                        for r in human
                    )
                    self._commit(assistant, _in_request_order(requests, results))
                    raise TurnCancelledError("Turn cancelled")

                if human:
                    await control.checkpoint()
                    self.pending = PendingTurn(
                        turn_id=turn_id,
                        assistant=assistant,
                        results={r.tool_call_id: r for r in results},
                        outstanding=[r.tool_call_id for r in human],
                        iterations=iterations,
                    )
                    for request in human:
                        yield env.tool_use(request.tool_name, request.tool_call_id, request.input)
                    yield env.control(
                        "awaiting_input", tool_ids=[r.tool_call_id for r in human]
                    )
                    reason = env.END_AWAITING_INPUT
                    break

                self._commit(assistant, _in_request_order(requests, results))

                # --- proactive management ---
                if self.cadence.should_manage(iterations) and not response.reduced:
                    await self._manage()

        except TurnCancelledError:
            reason = env.END_CANCELLED
        except AgentDuplexError as e:
            logger.warning("Turn %s failed: %s", turn_id, e)
            error_text = e.message
            reason = env.END_ERROR
            yield env.error_from(e)

        if reason == env.END_COMPLETE:
            await self._manage()
        await self._save()

        await self.hooks.emit(
            TURN_END,
            TurnEndEvent(turn_id=turn_id, reason=reason, iterations=iterations, error=error_text),
        )
        yield env.end(reason)

    def _commit(self, assistant: Message, results: list[ToolResult]) -> None:
        """Append an assistant message and its results with no await in between."""
        self.history.append(assistant)
        self.history.extend(r.to_message() for r in results)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _call_model(
        self,
        turn_id: str,
        control: TurnControl,
        response: _ModelResponse,
    ) -> AsyncIterator[Envelope]:
        """
        Stream one model response into *response*, retrying when allowed.

        A failed call is only retried while none of its content has reached
        the client. After that the error ends the turn.
        """
        attempt = 0
        while True:
            response.reset()
            try:
                trial = (
                    self.circuit_breaker.before_call()
                    if self.circuit_breaker is not None
                    else False
                )
                try:
                    if self.rate_limiter is not None:
                        await self.rate_limiter.acquire()

                    async with contextlib.aclosing(self._stream()) as stream:
                        async for chunk in stream:
                            if isinstance(chunk, ContentDelta):
                                if not chunk.text:
                                    continue
                                await control.checkpoint()
                                response.text.append(chunk.text)
                                response.emitted = True
                                yield env.content(chunk.text)
                            elif isinstance(chunk, ToolCallRequest):
                                response.tool_calls.append(chunk)
                            elif isinstance(chunk, ModelStop):
                                response.stop_reason = chunk.reason
                except ContextWindowOverflowError:
                    raise
                except ModelError:
                    if self.circuit_breaker is not None:
                        self.circuit_breaker.record_failure()
                    raise
                finally:
                    # Cancelled or overflowed trial calls record no outcome.
                    if trial:
                        self.circuit_breaker.release_trial()

                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_success()
                return

            except ModelThrottledError:
                attempt += 1
                if response.emitted or not self.retry_policy.should_retry(attempt):
                    raise
                delay = self.retry_policy.delay(attempt)
                logger.warning(
                    "Model throttled, retrying in %.1fs (%d/%d)",
                    delay,
                    attempt,
                    self.retry_policy.max_retries,
                )
                yield await self._retry_notice(turn_id, attempt, "rate limited", delay)
                await control.sleep(delay)

            except ContextWindowOverflowError:
                attempt += 1
                if response.emitted or not self.retry_policy.should_retry(attempt):
                    raise
                logger.warning(
                    "Context window overflow, reducing history (%d/%d)",
                    attempt,
                    self.retry_policy.max_retries,
                )
                await self._reduce()
                response.reduced = True
                yield await self._retry_notice(turn_id, attempt, "context window overflow", 0.0)
                await control.checkpoint()

    async def _retry_notice(
        self, turn_id: str, attempt: int, reason: str, delay: float
    ) -> Envelope:
        await self.hooks.emit(
            MODEL_RETRY,
            ModelRetryEvent(turn_id=turn_id, attempt=attempt, reason=reason, delay=delay),
        )
        return env.retry(attempt, self.retry_policy.max_retries, reason, delay)

    async def _stream(self) -> AsyncIterator[ModelChunk]:
        """
        Invoke the model, enforcing ``model_timeout``.

        The timeout bounds the time spent waiting on the model, not the time
        the consumer spends paused between chunks.
        """
        stream = self.model.invoke(
            list(self.history), self.registry.get_specs(), self.system_prompt
        )
        timeout = self.config.model_timeout
        if timeout is None:
            async for chunk in stream:
                yield chunk
            return

        loop = asyncio.get_running_loop()
        remaining = timeout
        iterator = stream.__aiter__()
        try:
            while True:
                started = loop.time()
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), max(remaining, 0))
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    raise ModelTimeoutError(f"Model call exceeded {timeout}s") from e
                remaining -= loop.time() - started
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        turn_id: str,
        control: TurnControl,
        requests: list[ToolInvocationRequest],
    ) -> AsyncIterator[Envelope | list[ToolResult]]:
        """
        Run *requests* through the executor, streaming its events.

        Yields envelopes while tools run and finally the result list. Once
        the turn is cancelled, events are swallowed but the fan-in is still
        awaited so every request gets its result.
        """
        if not requests:
            yield []
            return

        queue: asyncio.Queue[Envelope | None] = asyncio.Queue()

        async def on_dispatch(request: ToolInvocationRequest) -> None:
            queue.put_nowait(env.tool_use(request.tool_name, request.tool_call_id, request.input))
            await self.hooks.emit(
                BEFORE_TOOL_CALL,
                BeforeToolCallEvent(
                    turn_id=turn_id,
                    tool_call_id=request.tool_call_id,
                    tool_name=request.tool_name,
                    input=dict(request.input),
                ),
            )

        def on_progress(item: ToolProgress) -> None:
            queue.put_nowait(env.progress(item.tool_call_id, item.data))

        async def on_result(result: ToolResult) -> None:
            queue.put_nowait(env.tool_result(result.tool_call_id, result.output(), result.status))
            await self.hooks.emit(
                AFTER_TOOL_RESULT,
                AfterToolResultEvent(
                    turn_id=turn_id, tool_call_id=result.tool_call_id, status=result.status
                ),
            )

        async def execute() -> list[ToolResult]:
            try:
                return await self.executor.execute(
                    requests,
                    self.registry,
                    ToolCallbacks(on_dispatch, on_progress, on_result),
                    control.checkpoint,
                )
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(execute())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                if control.cancelled:
                    continue
                try:
                    await control.checkpoint()
                except TurnCancelledError:
                    continue
                yield item
            yield await task
        finally:
            if not task.done():
                task.cancel()

    # ------------------------------------------------------------------
    # Context and persistence
    # ------------------------------------------------------------------

    async def _reduce(self) -> None:
        before = len(self.history)
        await self.context_manager.reduce_context(self.history, self.model)
        await self.hooks.emit(
            CONTEXT_REDUCED,
            ContextReducedEvent(
                reactive=True,
                messages_before=before,
                messages_after=len(self.history),
                removed_message_count=self.context_manager.removed_message_count,
            ),
        )

    async def _manage(self) -> None:
        before = len(self.history)
        try:
            await self.context_manager.apply_management(self.history, self.model)
        except AgentDuplexError as e:
            logger.warning("Context management failed: %s", e)
            return
        if len(self.history) != before:
            await self.hooks.emit(
                CONTEXT_REDUCED,
                ContextReducedEvent(
                    reactive=False,
                    messages_before=before,
                    messages_after=len(self.history),
                    removed_message_count=self.context_manager.removed_message_count,
                ),
            )

    async def _save(self) -> None:
        if self.repository is None or self.session_id is None:
            return
        try:
            await self.repository.save(
                self.session_id, self.history, self.context_manager.removed_message_count
            )
        except Exception as e:
            logger.error("Failed to persist session %s: %s", self.session_id, e, exc_info=True)


def _in_request_order(
    requests: list[ToolInvocationRequest], results: list[ToolResult]
) -> list[ToolResult]:
    by_id = {r.tool_call_id: r for r in results}
    return [by_id[r.tool_call_id] for r in requests]


def create_loop_factory(
    config: AgentDuplexConfig,
    model: ModelClient,
    tools: ToolRegistry | None = None,
    hooks: EventBus | None = None,
    repository: SessionRepository | None = None,
) -> Callable[[str], TurnLoop]:
    """
    Build a ``session_id -> TurnLoop`` factory from *config*.

    Every loop gets its own executor and context manager. The token bucket
    and circuit breaker are created once and shared, so they limit the
    process as a whole.
    """
    retry_policy, rate_limiter, circuit_breaker = create_throttling(config.throttle)
    cadence = ManagementCadence.parse(config.context.cadence)
    tools = tools or ToolRegistry()
    hooks = hooks or EventBus()

    def factory(session_id: str) -> TurnLoop:
        history: list[Message] = []
        if config.model.system_prompt:
            history.append(Message.system(config.model.system_prompt))
        return TurnLoop(
            model,
            tools,
            executor=create_executor(config.executor),
            context_manager=create_context_manager(config.context, model),
            config=config.loop,
            history=history,
            hooks=hooks,
            retry_policy=retry_policy,
            rate_limiter=rate_limiter,
            circuit_breaker=circuit_breaker,
            cadence=cadence,
            repository=repository,
            session_id=session_id,
        )

    return factory
