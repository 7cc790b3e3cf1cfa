"""
Lifecycle hooks for sessions and turns.

The ``EventBus`` lets applications observe the runtime (metrics, audit logs,
tracing) without touching the turn loop. Handlers may be sync or async; a
failing handler is logged and skipped.

Example:
    from agent_duplex.events import EventBus, TURN_END

    bus = EventBus()

    @bus.on(TURN_END)
    async def record(event):
        print(f"turn {event.turn_id} ended: {event.reason}")
"""

from __future__ import annotations

import bisect
import inspect
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agent_duplex.logging import get_logger

logger = get_logger("events")


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

SESSION_OPEN = "session_open"
SESSION_CLOSE = "session_close"
TURN_START = "turn_start"
TURN_END = "turn_end"
BEFORE_TOOL_CALL = "before_tool_call"
AFTER_TOOL_RESULT = "after_tool_result"
CONTEXT_REDUCED = "context_reduced"
MODEL_RETRY = "model_retry"


@dataclass
class SessionOpenEvent:
    """Emitted once the handshake completes."""

    session_id: str
    resumed: bool = False


@dataclass
class SessionCloseEvent:
    """Emitted when a session reaches ``closed``."""

    session_id: str
    code: int
    reason: str = ""


@dataclass
class TurnStartEvent:
    """Emitted before the first model call of a turn."""

    turn_id: str
    user_input: str
    message_count: int


@dataclass
class TurnEndEvent:
    """Emitted just before the terminal ``end`` envelope of a turn."""

    turn_id: str
    reason: str  # complete, cancelled, error, awaiting_input
    iterations: int = 0
    error: str | None = None


@dataclass
class BeforeToolCallEvent:
    """Emitted as a tool request is dispatched."""

    turn_id: str
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class AfterToolResultEvent:
    """Emitted as a terminal tool result is produced."""

    turn_id: str
    tool_call_id: str
    status: str


@dataclass
class ContextReducedEvent:
    """Emitted after the context manager shrank the history."""

    reactive: bool
    messages_before: int
    messages_after: int
    removed_message_count: int


@dataclass
class ModelRetryEvent:
    """Emitted before a model call is retried."""

    turn_id: str
    attempt: int
    reason: str
    delay: float


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

EVENTS = frozenset(
    {
        SESSION_OPEN,
        SESSION_CLOSE,
        TURN_START,
        TURN_END,
        BEFORE_TOOL_CALL,
        AFTER_TOOL_RESULT,
        CONTEXT_REDUCED,
        MODEL_RETRY,
    }
)

EventHandler = Callable[[Any], Any]


@dataclass(order=True)
class _Subscription:
    priority: int
    seq: int
    handler: EventHandler = field(compare=False)


class EventBus:
    """
    Observers for the lifecycle events above.

    Handlers only observe: whatever they return is ignored and nothing they
    do can alter the turn. Lower ``priority`` runs first, ties in
    subscription order.

        bus = EventBus()

        @bus.on(SESSION_OPEN)
        def opened(event: SessionOpenEvent): ...

        unsubscribe = bus.on(TURN_END, record_metrics)
        unsubscribe()
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[_Subscription]] = {}
        self._seq = itertools.count()

    def on(
        self, event: str, handler: EventHandler | None = None, priority: int = 0
    ) -> Callable[[], None] | Callable[[EventHandler], EventHandler]:
        """
        Subscribe *handler* to *event*, or return a decorator that does.

        Raises:
            ValueError: for an event name the runtime never emits.
        """
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}")
        if handler is None:

            def decorator(fn: EventHandler) -> EventHandler:
                self.on(event, fn, priority)
                return fn

            return decorator

        subscription = _Subscription(priority, next(self._seq), handler)
        bisect.insort(self._subscriptions.setdefault(event, []), subscription)

        def unsubscribe() -> None:
            subscriptions = self._subscriptions.get(event, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)

        return unsubscribe

    def off(self, event: str, handler: EventHandler) -> None:
        """Drop every subscription of *handler* to *event*."""
        subscriptions = self._subscriptions.get(event)
        if subscriptions:
            subscriptions[:] = [s for s in subscriptions if s.handler is not handler]

    async def emit(self, event: str, data: Any) -> None:
        """Call each subscriber of *event* in turn; failures are logged and skipped."""
        for subscription in list(self._subscriptions.get(event, ())):
            try:
                result = subscription.handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    "%s handler %s failed: %s",
                    event,
                    getattr(subscription.handler, "__qualname__", subscription.handler),
                    e,
                )
