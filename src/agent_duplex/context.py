"""
Context window management.

Keeps the conversation history within a budget without ever separating a tool
use from its result. Three policies are provided:

- ``NullContextManager``: leaves history alone.
- ``SlidingWindowContextManager``: keeps the most recent ``window_size``
  messages.
- ``SummarizingContextManager``: folds the oldest part of the history into a
  single summary message produced by a model.

Example:
    from agent_duplex.context import SlidingWindowContextManager

    manager = SlidingWindowContextManager(window_size=20)

    # After each completed turn:
    await manager.apply_management(history)

    # When the model reports a context overflow:
    await manager.reduce_context(history)
"""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agent_duplex.errors import ContextWindowOverflowError
from agent_duplex.logging import get_logger
from agent_duplex.messages import (
    JsonBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    estimate_message_tokens,
    estimate_messages_tokens,
)

if TYPE_CHECKING:
    from agent_duplex.config import ContextConfig
    from agent_duplex.model import ModelClient

logger = get_logger("context")

DEFAULT_SUMMARIZATION_PROMPT = (
    "You are a conversation summarizer. Summarize the conversation transcript "
    "you are given so that an assistant can continue it without the original. "
    "Keep every fact, decision, open question, file name, identifier and tool "
    "outcome that may matter later. Write in the third person, as bullet points."
)


# ---------------------------------------------------------------------------
# Boundary helpers
# ---------------------------------------------------------------------------


def _system_offset(history: list[Message]) -> int:
    """Index of the first message that may be reduced."""
    return 1 if history and history[0].role == "system" else 0


def _advance_past_tool_results(history: list[Message], index: int) -> int:
    """Move *index* forward until it no longer points at a tool result."""
    while index < len(history) and history[index].is_tool_result:
        index += 1
    return index


def _retreat_to_tool_use(history: list[Message], index: int) -> int:
    """Move *index* back onto the message that issued the tool calls."""
    while index > 0 and index < len(history) and history[index].is_tool_result:
        index -= 1
    return index


# ---------------------------------------------------------------------------
# Cadence
# ---------------------------------------------------------------------------

_EVERY_N = re.compile(r"^every[-_ ](\d+)[-_ ]iterations?$")


@dataclass(frozen=True)
class ManagementCadence:
    """How often proactive management runs inside a turn."""

    every: int | None = None  # None = only at the end of a turn

    def __post_init__(self) -> None:
        if self.every is not None and self.every <= 0:
            raise ValueError("Cadence interval must be positive")

    @classmethod
    def disabled(cls) -> ManagementCadence:
        return cls(None)

    @classmethod
    def every_iteration(cls) -> ManagementCadence:
        return cls(1)

    @classmethod
    def every_n(cls, n: int) -> ManagementCadence:
        return cls(n)

    @classmethod
    def parse(cls, value: str | int | None) -> ManagementCadence:
        """
        Parse ``disabled``, ``every-iteration`` or ``every-N-iterations``.

        Integers are taken as N.
        """
        if value is None:
            return cls.disabled()
        if isinstance(value, int):
            return cls.every_n(value)
        text = value.strip().lower()
        if text in ("", "disabled", "off", "none"):
            return cls.disabled()
        if text in ("every-iteration", "every_iteration", "every iteration"):
            return cls.every_iteration()
        match = _EVERY_N.match(text)
        if match:
            return cls.every_n(int(match.group(1)))
        raise ValueError(f"Unknown management cadence: {value!r}")

    @property
    def enabled(self) -> bool:
        return self.every is not None

    def should_manage(self, iteration: int) -> bool:
        """True if management runs after *iteration* (1-based)."""
        return self.every is not None and iteration % self.every == 0


# ---------------------------------------------------------------------------
# Managers
# ---------------------------------------------------------------------------


class ContextManager(ABC):
    """
    Base class for context management policies.

    Both operations mutate *history* in place and return it.
    ``removed_message_count`` only ever grows; a persistence layer uses it to
    know how many leading messages it already dropped.
    """

    def __init__(self) -> None:
        self.removed_message_count = 0

    @abstractmethod
    async def apply_management(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        """Proactively bound the history. Called after completed turns."""
        ...

    @abstractmethod
    async def reduce_context(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        """
        Shrink the history after the model reported an overflow.

        Raises:
            ContextWindowOverflowError: if nothing can be reduced.
        """
        ...

    def restore(self, removed_message_count: int) -> None:
        """Resume counting from a persisted value."""
        self.removed_message_count = max(self.removed_message_count, removed_message_count)

    def _drop(self, history: list[Message], start: int, end: int) -> None:
        dropped = history[start:end]
        del history[start:end]
        self.removed_message_count += sum(
            1 for m in dropped if not m.metadata.get("summary")
        )


class NullContextManager(ContextManager):
    """Does nothing. For short-lived or manually managed conversations."""

    async def apply_management(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        return history

    async def reduce_context(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        raise ContextWindowOverflowError(
            "Context window overflow and context management is disabled"
        )


class SlidingWindowContextManager(ContextManager):
    """
    Keep the most recent ``window_size`` messages.

    A leading system message is never dropped. After trimming, any tool result
    whose tool use fell off the window is dropped too, so the window may end
    up smaller than ``window_size``.
    """

    def __init__(self, window_size: int = 40, overflow_trim: int = 2) -> None:
        super().__init__()
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        self.window_size = window_size
        self.overflow_trim = max(1, overflow_trim)

    async def apply_management(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        if len(history) <= self.window_size:
            return history
        return await self.reduce_context(history, model)

    async def reduce_context(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        start = _system_offset(history)
        if len(history) > self.window_size:
            count = len(history) - self.window_size
        else:
            count = self.overflow_trim
        end = _advance_past_tool_results(history, start + count)
        if end >= len(history):
            raise ContextWindowOverflowError("Unable to trim conversation context")

        self._drop(history, start, end)
        logger.debug("Sliding window dropped %d messages", end - start)
        return history


class SummarizingContextManager(ContextManager):
    """
    Replace the oldest messages with a model-written summary.

    ``summary_ratio`` (clamped to [0.1, 0.8]) of the history is summarized,
    the last ``preserve_recent_messages`` are never touched, and the boundary
    never falls between a tool use and its result. If the summarizer fails,
    the same span is dropped instead.
    """

    def __init__(
        self,
        summary_ratio: float = 0.3,
        preserve_recent_messages: int = 10,
        max_tokens: int | None = None,
        summarization_model: ModelClient | None = None,
        summarization_prompt: str | None = None,
    ) -> None:
        super().__init__()
        self.summary_ratio = max(0.1, min(0.8, summary_ratio))
        self.preserve_recent_messages = max(0, preserve_recent_messages)
        self.max_tokens = max_tokens
        self.summarization_model = summarization_model
        self.summarization_prompt = summarization_prompt or DEFAULT_SUMMARIZATION_PROMPT

    async def apply_management(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        if self.max_tokens is None:
            return history
        current = estimate_messages_tokens(history)
        while current > self.max_tokens:
            try:
                await self.reduce_context(history, model)
            except ContextWindowOverflowError as e:
                logger.warning("Context still over budget (%d tokens): %s", current, e)
                break
            reduced = estimate_messages_tokens(history)
            if reduced >= current:
                break
            current = reduced
        return history

    async def reduce_context(
        self, history: list[Message], model: ModelClient | None = None
    ) -> list[Message]:
        start = _system_offset(history)
        end = self._split_point(history, start)
        span = history[start:end]

        summarizer = self.summarization_model or model
        summary: Message | None = None
        if summarizer is None:
            logger.warning("No summarization model available; trimming instead")
        else:
            try:
                summary = await self._summarize(span, summarizer)
            except Exception as e:
                logger.warning("Summarization failed, falling back to trimming: %s", e)

        shrinks = summary is not None and (
            estimate_message_tokens(summary) < estimate_messages_tokens(span)
        )
        if summary is not None and shrinks:
            history[start:end] = [summary]
            logger.debug("Summarized %d messages", len(span))
        else:
            self._drop(history, start, end)
            logger.debug("Dropped %d messages", len(span))
        return history

    def _split_point(self, history: list[Message], start: int) -> int:
        count = math.ceil(self.summary_ratio * len(history))
        limit = len(history) - self.preserve_recent_messages
        end = min(start + count, limit)
        if end <= start:
            raise ContextWindowOverflowError(
                "Cannot summarize: not enough messages outside the preserved window"
            )

        adjusted = _advance_past_tool_results(history, end)
        if adjusted > limit or adjusted >= len(history):
            adjusted = _retreat_to_tool_use(history, end)
        if adjusted <= start or adjusted >= len(history):
            raise ContextWindowOverflowError(
                "Cannot summarize without splitting a tool use from its result"
            )
        return adjusted

    async def _summarize(self, span: list[Message], model: ModelClient) -> Message | None:
        transcript = render_transcript(span)
        text = await model.complete(
            [Message.user(f"Summarize this conversation:\n\n{transcript}")],
            system_prompt=self.summarization_prompt,
        )
        text = text.strip()
        if not text:
            return None
        return Message(
            role="user",
            content=[TextBlock(f"[Summary of earlier conversation]\n{text}")],
            metadata={"summary": True},
        )


def render_transcript(messages: list[Message]) -> str:
    """Flatten messages into plain text for a summarizer."""
    lines: list[str] = []
    for msg in messages:
        for block in msg.content:
            if isinstance(block, TextBlock):
                lines.append(f"[{msg.role}] {block.text}")
            elif isinstance(block, JsonBlock):
                lines.append(f"[{msg.role}] {block.data!r}")
            elif isinstance(block, ToolUseBlock):
                lines.append(f"[tool_use {block.name}] {block.input!r}")
            elif isinstance(block, ToolResultBlock):
                body = " ".join(
                    b.text if isinstance(b, TextBlock) else repr(b.data)
                    for b in block.content
                )
                lines.append(f"[tool_result {block.status}] {body}")
    return "\n".join(lines)


def create_context_manager(
    config: ContextConfig,
    summarization_model: ModelClient | None = None,
) -> ContextManager:
    """Build the context manager selected by *config*."""
    if config.policy == "null":
        return NullContextManager()
    if config.policy == "summarizing":
        return SummarizingContextManager(
            summary_ratio=config.summary_ratio,
            preserve_recent_messages=config.preserve_recent_messages,
            max_tokens=config.max_tokens,
            summarization_model=summarization_model,
            summarization_prompt=config.summarization_prompt,
        )
    return SlidingWindowContextManager(
        window_size=config.window_size,
        overflow_trim=config.overflow_trim,
    )
