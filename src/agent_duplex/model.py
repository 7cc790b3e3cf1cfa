"""
Model collaborator interface.

The turn loop never talks to an inference API directly. It calls
``ModelClient.invoke()`` and consumes a stream of chunks: text deltas, tool
call requests and a final stop marker. Implementations signal recoverable
conditions by raising ``ModelThrottledError`` or
``ContextWindowOverflowError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union

from agent_duplex.messages import Message


@dataclass
class ContentDelta:
    """A chunk of assistant text."""

    text: str


@dataclass
class ToolCallRequest:
    """A complete tool call parsed from the model output."""

    tool_call_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelStop:
    """Terminal chunk of a model response."""

    reason: str = "end_turn"
    usage: dict[str, int] = field(default_factory=dict)


ModelChunk = Union[ContentDelta, ToolCallRequest, ModelStop]


class ModelClient(ABC):
    """
    Abstract base class for model collaborators.

    Example implementation:

        class EchoModel(ModelClient):
            async def invoke(self, history, tool_specs, system_prompt=None):
                yield ContentDelta(history[-1].text)
                yield ModelStop()
    """

    @abstractmethod
    def invoke(
        self,
        history: list[Message],
        tool_specs: list[dict[str, Any]],
        system_prompt: str | None = None,
    ) -> AsyncIterator[ModelChunk]:
        """
        Stream a response for the given history.

        Args:
            history: Conversation so far (may start with a system message)
            tool_specs: Tool definitions the model may call
            system_prompt: Optional system prompt

        Yields:
            ContentDelta, ToolCallRequest and finally ModelStop
        """
        ...

    async def complete(
        self,
        history: list[Message],
        system_prompt: str | None = None,
    ) -> str:
        """Collect the text of a tool-free response. Used for summarization."""
        parts: list[str] = []
        async for chunk in self.invoke(history, [], system_prompt):
            if isinstance(chunk, ContentDelta):
                parts.append(chunk.text)
        return "".join(parts)
