"""
OpenAI-compatible model client.

Works with any endpoint that speaks the chat completions API (OpenAI,
Azure-compatible gateways, local servers).

Example:
    from openai import AsyncOpenAI
    from agent_duplex.adapters import OpenAIModelClient

    model = OpenAIModelClient(AsyncOpenAI(), model="gpt-4o-mini")
    loop = TurnLoop(model, registry)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import openai
from openai import AsyncOpenAI

from agent_duplex.errors import (
    ContextWindowOverflowError,
    ModelError,
    ModelThrottledError,
    ModelTimeoutError,
)
from agent_duplex.logging import get_logger
from agent_duplex.messages import JsonBlock, Message, TextBlock, ToolResultBlock
from agent_duplex.model import ContentDelta, ModelChunk, ModelClient, ModelStop, ToolCallRequest

if TYPE_CHECKING:
    from agent_duplex.config import ModelConfig

logger = get_logger("adapters.openai")

_STOP_REASONS = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
    "content_filter": "content_filter",
}


def _block_text(block: TextBlock | JsonBlock) -> str:
    if isinstance(block, TextBlock):
        return block.text
    return json.dumps(block.data, default=str)


def to_openai_messages(
    history: list[Message], system_prompt: str | None = None
) -> list[dict[str, Any]]:
    """Convert history into chat completion messages."""
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    for msg in history:
        if msg.role == "tool":
            for block in msg.content:
                if isinstance(block, ToolResultBlock):
                    text = "".join(_block_text(b) for b in block.content)
                    if block.status == "error":
                        text = f"Error: {text}"
                    result.append(
                        {"role": "tool", "tool_call_id": block.tool_call_id, "content": text}
                    )
            continue

        text = "".join(
            _block_text(b) for b in msg.content if isinstance(b, (TextBlock, JsonBlock))
        )
        if msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            if msg.tool_uses:
                entry["tool_calls"] = [
                    {
                        "id": tu.tool_call_id,
                        "type": "function",
                        "function": {"name": tu.name, "arguments": json.dumps(tu.input)},
                    }
                    for tu in msg.tool_uses
                ]
            result.append(entry)
        else:
            result.append({"role": msg.role, "content": text})
    return result


def to_openai_tools(tool_specs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert tool specs to OpenAI function definitions."""
    return [
        {
            "type": "function",
            "function": {
                "name": spec["name"],
                "description": spec.get("description", ""),
                "parameters": spec.get("input_schema") or {"type": "object", "properties": {}},
            },
        }
        for spec in tool_specs
    ]


def _is_context_overflow(e: openai.BadRequestError) -> bool:
    code = getattr(e, "code", None)
    return code == "context_length_exceeded" or "context_length_exceeded" in str(e)


class OpenAIModelClient(ModelClient):
    """
    Streams chat completions and reassembles tool call arguments.

    Provider failures are mapped onto the runtime's error types so the turn
    loop can decide what to retry.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str = "gpt-4o-mini",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.client = client or AsyncOpenAI()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_config(cls, config: ModelConfig) -> OpenAIModelClient:
        client = AsyncOpenAI(base_url=config.base_url, api_key=config.api_key)
        return cls(
            client,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    async def invoke(
        self,
        history: list[Message],
        tool_specs: list[dict[str, Any]],
        system_prompt: str | None = None,
    ) -> AsyncIterator[ModelChunk]:
        request_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(history, system_prompt),
            "stream": True,
        }
        if tool_specs:
            request_kwargs["tools"] = to_openai_tools(tool_specs)
        if self.temperature is not None:
            request_kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            request_kwargs["max_tokens"] = self.max_tokens

        try:
            async for chunk in self._stream(request_kwargs):
                yield chunk
        except openai.RateLimitError as e:
            raise ModelThrottledError(f"Rate limited by provider: {e}") from e
        except openai.APITimeoutError as e:
            raise ModelTimeoutError(f"Provider request timed out: {e}") from e
        except openai.BadRequestError as e:
            if _is_context_overflow(e):
                raise ContextWindowOverflowError(str(e)) from e
            raise ModelError(f"Provider rejected the request: {e}") from e
        except openai.APIError as e:
            raise ModelError(f"Provider error: {e}") from e

    async def _stream(self, request_kwargs: dict[str, Any]) -> AsyncIterator[ModelChunk]:
        stream = await self.client.chat.completions.create(**request_kwargs)

        # index -> {id, name, args}
        active_tool_calls: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None

        async for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            # --- Text content ---
            if delta.content:
                yield ContentDelta(delta.content)

            # --- Tool calls ---
            if delta.tool_calls:
                for tc_delta in delta.tool_calls:
                    entry = active_tool_calls.setdefault(
                        tc_delta.index, {"id": "", "name": "", "args": ""}
                    )
                    if tc_delta.id:
                        entry["id"] = tc_delta.id
                    if tc_delta.function and tc_delta.function.name:
                        entry["name"] = tc_delta.function.name
                    if tc_delta.function and tc_delta.function.arguments:
                        entry["args"] += tc_delta.function.arguments

            if choice.finish_reason is not None:
                finish_reason = choice.finish_reason

        for idx in sorted(active_tool_calls):
            info = active_tool_calls[idx]
            try:
                args = json.loads(info["args"]) if info["args"] else {}
            except json.JSONDecodeError:
                logger.warning("Invalid JSON arguments for tool %s: %r", info["name"], info["args"])
                args = {}
            if not isinstance(args, dict):
                args = {"value": args}
            yield ToolCallRequest(tool_call_id=info["id"], name=info["name"], input=args)

        reason = finish_reason or "stop"
        yield ModelStop(reason=_STOP_REASONS.get(reason, reason))
