"""Anthropic Messages API adapter (also used for Kimi for Coding)."""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from pocketcoder.llm.base import (
    ChatMessage,
    CompletionConfig,
    Done,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolDefinition,
    Usage,
)
from pocketcoder.llm.sse import SSEProvider
from pocketcoder.logging import get_logger
from pocketcoder.models import ToolCall

log = get_logger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192
VALIDATION_MODEL = "claude-haiku-4-5"


@dataclass
class _PendingToolUse:
    id: str
    name: str
    arguments: list[str] = field(default_factory=list)


def _parse_tool_input(arguments: str) -> dict[str, Any]:
    try:
        value = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


class AnthropicProvider(SSEProvider):
    """Anthropic-style streaming provider."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_BASE_URL,
        extra_headers: dict[str, str] | None = None,
        skip_validation: bool = False,
        registry_id: str = "anthropic",
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            api_key=api_key,
            base_url=base_url,
            extra_headers=extra_headers,
            skip_validation=skip_validation,
            registry_id=registry_id,
            client=client,
        )

    def _chat_url(self) -> str:
        return f"{self.base_url}/messages"

    def _headers(self) -> dict[str, str]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        headers.update(self.extra_headers)
        return headers

    @staticmethod
    def _convert_messages(messages: list[ChatMessage]) -> tuple[list[str], list[dict[str, Any]]]:
        """Split system text out and convert the rest to Messages API turns.

        Consecutive tool results are merged into one user turn, which the API
        requires after an assistant turn with several ``tool_use`` blocks.
        """
        system_parts: list[str] = []
        result: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                if msg.content:
                    system_parts.append(msg.content)
                continue

            if msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content,
                }
                previous = result[-1] if result else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(item.get("type") == "tool_result" for item in previous["content"])
                ):
                    previous["content"].append(block)
                else:
                    result.append({"role": "user", "content": [block]})
                continue

            if msg.role == "assistant" and msg.tool_calls:
                content: list[dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": _parse_tool_input(tc.arguments),
                    })
                result.append({"role": "assistant", "content": content})
                continue

            role = "assistant" if msg.role == "assistant" else "user"
            result.append({"role": role, "content": msg.content})

        return system_parts, result

    def _build_request_body(
        self,
        messages: list[ChatMessage],
        model_id: str,
        tools: list[ToolDefinition] | None,
        config: CompletionConfig,
    ) -> dict[str, Any]:
        system_parts, converted = self._convert_messages(messages)
        if config.system_prompt:
            system_parts.insert(0, config.system_prompt)

        body: dict[str, Any] = {
            "model": model_id,
            "stream": True,
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": converted,
            "temperature": config.temperature,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if config.stop:
            body["stop_sequences"] = config.stop
        if tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in tools
            ]
        return body

    async def _parse_stream(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        """Translate Messages API events into stream events.

        ``Done`` is emitted once at the end even when the backend never sends
        ``message_stop``; thinking deltas are not surfaced.
        """
        pending: dict[int, _PendingToolUse] = {}
        reported_output = 0

        async for data in payloads:
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                yield StreamError(f"Invalid JSON from API: {data[:200]}")
                return
            if not isinstance(event, dict):
                continue

            event_type = event.get("type", "")

            if event_type == "message_start":
                usage = (event.get("message") or {}).get("usage") or {}
                input_tokens = int(usage.get("input_tokens") or 0)
                if input_tokens:
                    yield Usage(input_tokens=input_tokens)

            elif event_type == "content_block_start":
                block = event.get("content_block") or {}
                if block.get("type") == "tool_use":
                    index = int(event.get("index") or 0)
                    pending[index] = _PendingToolUse(
                        id=str(block.get("id") or ""), name=str(block.get("name") or "")
                    )

            elif event_type == "content_block_delta":
                delta = event.get("delta") or {}
                delta_type = delta.get("type")
                if delta_type == "text_delta":
                    if delta.get("text"):
                        yield TextDelta(delta["text"])
                elif delta_type == "input_json_delta":
                    slot = pending.get(int(event.get("index") or 0))
                    if slot is not None:
                        slot.arguments.append(delta.get("partial_json") or "")
                elif delta_type in ("thinking_delta", "signature_delta"):
                    continue
                else:
                    fallback = delta.get("text") or delta.get("reasoning_content")
                    if fallback:
                        yield TextDelta(fallback)

            elif event_type == "content_block_stop":
                slot = pending.pop(int(event.get("index") or 0), None)
                if slot is not None and slot.id and slot.name:
                    yield ToolCallComplete(
                        ToolCall(id=slot.id, name=slot.name, arguments="".join(slot.arguments) or "{}")
                    )

            elif event_type == "message_delta":
                # output_tokens is cumulative for the message
                output_tokens = int((event.get("usage") or {}).get("output_tokens") or 0)
                if output_tokens > reported_output:
                    yield Usage(output_tokens=output_tokens - reported_output)
                    reported_output = output_tokens

            elif event_type == "message_stop":
                break

            elif event_type == "error":
                error = event.get("error") or {}
                message = str(error.get("message") or "Anthropic API error")
                if error.get("type"):
                    message = f"{error['type']}: {message}"
                yield StreamError(message)
                return

        yield Done()

    async def validate_credentials(self) -> bool:
        """Send a one-token request to confirm the key is accepted."""
        if self.skip_validation:
            return True
        body = {
            "model": VALIDATION_MODEL,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "hi"}],
        }
        try:
            response = await self.client.post(self._chat_url(), json=body, headers=self._headers())
            return response.is_success
        except httpx.HTTPError as e:
            log.info("Credential validation failed", registry=self.registry_id, error=str(e))
            return False
