"""
Conversation messages, tool invocation types and token estimation.

A ``Message`` holds an ordered list of content blocks. An assistant message
that asks for tools carries ``ToolUseBlock`` entries; each result comes back
as its own ``tool`` message holding one ``ToolResultBlock`` with the same
``tool_call_id``. The two halves of a pair must live or die together.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Union

Role = Literal["system", "user", "assistant", "tool"]
ToolStatus = Literal["success", "error"]


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    """Plain text content."""

    text: str
    type: str = "text"


@dataclass
class JsonBlock:
    """Structured JSON content."""

    data: Any
    type: str = "json"


@dataclass
class ToolUseBlock:
    """A model request to invoke a tool."""

    tool_call_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = "tool_use"


@dataclass
class ToolResultBlock:
    """The outcome of a tool invocation."""

    tool_call_id: str
    status: ToolStatus = "success"
    content: list[TextBlock | JsonBlock] = field(default_factory=list)
    type: str = "tool_result"


ContentBlock = Union[TextBlock, JsonBlock, ToolUseBlock, ToolResultBlock]


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, JsonBlock):
        return {"type": "json", "data": block.data}
    if isinstance(block, ToolUseBlock):
        return {
            "type": "tool_use",
            "tool_call_id": block.tool_call_id,
            "name": block.name,
            "input": block.input,
        }
    return {
        "type": "tool_result",
        "tool_call_id": block.tool_call_id,
        "status": block.status,
        "content": [block_to_dict(b) for b in block.content],
    }


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data.get("text", ""))
    if kind == "json":
        return JsonBlock(data=data.get("data"))
    if kind == "tool_use":
        return ToolUseBlock(
            tool_call_id=data["tool_call_id"],
            name=data.get("name", ""),
            input=data.get("input") or {},
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_call_id=data["tool_call_id"],
            status=data.get("status", "success"),
            content=[block_from_dict(b) for b in data.get("content", [])],  # type: ignore[misc]
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A message in the conversation history."""

    role: Role
    content: list[ContentBlock] = field(default_factory=list)
    tool_call_id: str | None = None  # set on tool messages
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, text: str, **metadata: Any) -> Message:
        return cls(role="user", content=[TextBlock(text)], metadata=dict(metadata))

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", content=[TextBlock(text)])

    @classmethod
    def assistant(
        cls, text: str = "", tool_uses: list[ToolUseBlock] | None = None
    ) -> Message:
        blocks: list[ContentBlock] = [TextBlock(text)] if text else []
        blocks.extend(tool_uses or [])
        return cls(role="assistant", content=blocks)

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_result_ids(self) -> list[str]:
        return [b.tool_call_id for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def is_tool_use(self) -> bool:
        return any(isinstance(b, ToolUseBlock) for b in self.content)

    @property
    def is_tool_result(self) -> bool:
        return any(isinstance(b, ToolResultBlock) for b in self.content)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": [block_to_dict(b) for b in self.content],
        }
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=[block_from_dict(b) for b in data.get("content", [])],
            tool_call_id=data.get("tool_call_id"),
            metadata=data.get("metadata") or {},
        )


# ---------------------------------------------------------------------------
# Tool invocation
# ---------------------------------------------------------------------------


@dataclass
class ToolInvocationRequest:
    """One tool call requested by the model. Consumed once by an executor."""

    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    requested_at: float = field(default_factory=time.time)

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(
            tool_call_id=self.tool_call_id, name=self.tool_name, input=self.input
        )


@dataclass
class ToolResult:
    """Terminal outcome of a tool call. Exactly one per request."""

    tool_call_id: str
    status: ToolStatus = "success"
    content: list[TextBlock | JsonBlock] = field(default_factory=list)
    produced_at: float = field(default_factory=time.time)

    @classmethod
    def success(cls, tool_call_id: str, value: Any = None) -> ToolResult:
        return cls(tool_call_id=tool_call_id, status="success", content=to_blocks(value))

    @classmethod
    def error(cls, tool_call_id: str, message: str) -> ToolResult:
        return cls(
            tool_call_id=tool_call_id, status="error", content=[TextBlock(message)]
        )

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(
            tool_call_id=self.tool_call_id,
            status=self.status,
            content=list(self.content),
        )

    def to_message(self) -> Message:
        return Message(
            role="tool", content=[self.to_block()], tool_call_id=self.tool_call_id
        )

    def output(self) -> list[dict[str, Any]]:
        """Content blocks as plain dicts, for the wire."""
        return [block_to_dict(b) for b in self.content]


@dataclass
class ToolProgress:
    """Intermediate, non-terminal output from a streaming tool."""

    tool_call_id: str
    data: Any = None
    produced_at: float = field(default_factory=time.time)


def to_blocks(value: Any) -> list[TextBlock | JsonBlock]:
    """Normalise a tool return value into content blocks."""
    if value is None:
        return []
    if isinstance(value, (TextBlock, JsonBlock)):
        return [value]
    if isinstance(value, str):
        return [TextBlock(value)]
    if isinstance(value, list) and value and all(
        isinstance(v, (TextBlock, JsonBlock)) for v in value
    ):
        return list(value)
    return [JsonBlock(value)]


# ---------------------------------------------------------------------------
# Pairing checks
# ---------------------------------------------------------------------------


def dangling_tool_calls(history: list[Message]) -> set[str]:
    """Ids of tool uses with no matching tool result anywhere after them."""
    pending: set[str] = set()
    for msg in history:
        for tu in msg.tool_uses:
            pending.add(tu.tool_call_id)
        for rid in msg.tool_result_ids:
            pending.discard(rid)
    return pending


def orphaned_tool_results(history: list[Message]) -> set[str]:
    """Ids of tool results with no preceding tool use."""
    seen: set[str] = set()
    orphans: set[str] = set()
    for msg in history:
        for tu in msg.tool_uses:
            seen.add(tu.tool_call_id)
        for rid in msg.tool_result_ids:
            if rid not in seen:
                orphans.add(rid)
    return orphans


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """
    Estimate token count from text using chars/4 heuristic.

    This is a conservative overestimate suitable for budget checks.
    """
    return max(1, len(text) // 4)


def _block_tokens(block: ContentBlock) -> int:
    if isinstance(block, TextBlock):
        return estimate_tokens(block.text)
    if isinstance(block, JsonBlock):
        return estimate_tokens(json.dumps(block.data, default=str))
    if isinstance(block, ToolUseBlock):
        args = json.dumps(block.input, default=str)
        return 4 + estimate_tokens(block.name) + estimate_tokens(args)
    return 4 + sum(_block_tokens(b) for b in block.content)


def estimate_message_tokens(message: Message) -> int:
    """Estimate token count for a single message, including role overhead."""
    return 4 + sum(_block_tokens(b) for b in message.content)


def estimate_messages_tokens(messages: list[Message]) -> int:
    """Estimate total tokens for a list of messages."""
    return sum(estimate_message_tokens(m) for m in messages)
