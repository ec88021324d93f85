"""OpenAI chat-completions adapter.

Also serves OpenAI-compatible backends, Google's OpenAI-compatible endpoint,
GitHub Copilot and ChatGPT (Codex) OAuth via header and endpoint overrides.
"""

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from pocketcoder.catalog import ModelDef, find_model
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

OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class _PendingToolCall:
    id: str | None = None
    name: str | None = None
    arguments: list[str] = field(default_factory=list)


class OpenAIProvider(SSEProvider):
    """OpenAI-style streaming provider."""

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENAI_BASE_URL,
        extra_headers: dict[str, str] | None = None,
        chat_endpoint_override: str | None = None,
        skip_validation: bool = False,
        supports_stream_options: bool = False,
        supports_tools: bool = True,
        registry_id: str = "openai",
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            api_key: API key or OAuth access token, sent as a bearer token
            base_url: API base URL
            extra_headers: Vendor headers added to every request
            chat_endpoint_override: Full URL replacing ``{base_url}/chat/completions``
            skip_validation: Treat credentials as valid without a network call
            supports_stream_options: Send ``stream_options.include_usage``
            supports_tools: Whether tool definitions may be offered
            registry_id: Catalog id used for model fallbacks
            client: Optional shared HTTP client
        """
        super().__init__(
            api_key=api_key,
            base_url=base_url,
            extra_headers=extra_headers,
            skip_validation=skip_validation,
            registry_id=registry_id,
            client=client,
        )
        self.chat_endpoint_override = chat_endpoint_override
        self.supports_stream_options = supports_stream_options
        self.supports_tools = supports_tools

    def _chat_url(self) -> str:
        return self.chat_endpoint_override or f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.extra_headers)
        return headers

    def _convert_messages(
        self, messages: list[ChatMessage], system_prompt: str | None
    ) -> list[dict[str, Any]]:
        """Convert messages to chat-completions format."""
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments},
                    }
                    for tc in msg.tool_calls
                ]
            if msg.tool_call_id:
                entry["tool_call_id"] = msg.tool_call_id
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_request_body(
        self,
        messages: list[ChatMessage],
        model_id: str,
        tools: list[ToolDefinition] | None,
        config: CompletionConfig,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model_id,
            "stream": True,
            "messages": self._convert_messages(messages, config.system_prompt),
            "temperature": config.temperature,
        }
        if self.supports_stream_options:
            body["stream_options"] = {"include_usage": True}
        if config.max_tokens:
            body["max_tokens"] = config.max_tokens
        if config.top_p is not None:
            body["top_p"] = config.top_p
        if config.stop:
            body["stop"] = config.stop
        if tools and self.supports_tools:
            body["tools"] = self._convert_tools(tools)
        return body

    async def _parse_stream(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        """Translate chat-completion chunks into stream events.

        Tool-call fragments are assembled per ``index`` and emitted once the
        stream ends, followed by a single ``Done``.
        """
        pending: dict[int, _PendingToolCall] = {}

        async for data in payloads:
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                yield StreamError(f"Invalid JSON from API: {data[:200]}")
                return
            if not isinstance(chunk, dict):
                continue

            if isinstance(chunk.get("error"), dict):
                yield StreamError(str(chunk["error"].get("message") or chunk["error"]))
                return

            usage = chunk.get("usage")
            if isinstance(usage, dict):
                yield Usage(
                    input_tokens=int(usage.get("prompt_tokens") or 0),
                    output_tokens=int(usage.get("completion_tokens") or 0),
                )

            choices = chunk.get("choices") or []
            if not choices:
                continue
            delta = choices[0].get("delta") or {}

            content = delta.get("content")
            if content:
                yield TextDelta(content)

            for fragment in delta.get("tool_calls") or []:
                index = int(fragment.get("index") or 0)
                slot = pending.setdefault(index, _PendingToolCall())
                if fragment.get("id"):
                    slot.id = fragment["id"]
                function = fragment.get("function") or {}
                if function.get("name"):
                    slot.name = function["name"]
                if function.get("arguments"):
                    slot.arguments.append(function["arguments"])

        for index in sorted(pending):
            slot = pending[index]
            if slot.id and slot.name:
                yield ToolCallComplete(
                    ToolCall(id=slot.id, name=slot.name, arguments="".join(slot.arguments) or "{}")
                )
            else:
                log.warning("Dropping incomplete tool call", index=index, name=slot.name)
        yield Done()

    async def list_models(self) -> list[ModelDef]:
        """List models from ``/models``, falling back to the catalog."""
        if self.skip_validation or self.chat_endpoint_override:
            return await super().list_models()
        try:
            response = await self.client.get(f"{self.base_url}/models", headers=self._headers())
            if not response.is_success:
                return await super().list_models()
            data = response.json().get("data") or []
        except (httpx.HTTPError, ValueError) as e:
            log.debug("Model listing failed; using catalog", registry=self.registry_id, error=str(e))
            return await super().list_models()

        models: list[ModelDef] = []
        for item in data:
            model_id = str(item.get("id") or "").strip()
            if not model_id:
                continue
            models.append(find_model(self.registry_id, model_id) or ModelDef(id=model_id, name=model_id))
        return models or await super().list_models()

    async def validate_credentials(self) -> bool:
        """Make a minimal authenticated call against ``/models``."""
        if self.skip_validation:
            return True
        try:
            response = await self.client.get(f"{self.base_url}/models", headers=self._headers())
            return response.is_success
        except httpx.HTTPError as e:
            log.info("Credential validation failed", registry=self.registry_id, error=str(e))
            return False
