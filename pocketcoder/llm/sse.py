"""Server-sent-events transport shared by the HTTP adapters."""

import asyncio
from abc import abstractmethod
from contextlib import aclosing
from typing import Any, AsyncIterator

import httpx

from pocketcoder.exceptions import ProviderAPIError
from pocketcoder.llm.base import (
    ChatMessage,
    CompletionConfig,
    LLMProvider,
    StreamError,
    StreamEvent,
    ToolDefinition,
)
from pocketcoder.logging import get_logger

log = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield ``data:`` payloads from an open streaming response.

    Stops at the ``[DONE]`` sentinel. Other SSE fields (``event:``, ``id:``,
    ``retry:``) are ignored.

    Raises:
        ProviderAPIError: the response status is not 2xx
    """
    if not response.is_success:
        body = (await response.aread()).decode("utf-8", errors="replace").strip()
        raise ProviderAPIError(
            f"HTTP {response.status_code}: {body or 'Unknown error'}",
            status_code=response.status_code,
        )

    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == DONE_SENTINEL:
            return
        if data:
            yield data


class SSEProvider(LLMProvider):
    """Base for adapters that POST a JSON body and read an SSE response.

    Subclasses supply the URL, headers, request body and the payload parser;
    this class owns the HTTP client, cancellation and error folding.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        extra_headers: dict[str, str] | None = None,
        skip_validation: bool = False,
        registry_id: str = "",
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.extra_headers = dict(extra_headers or {})
        self.skip_validation = skip_validation
        self.registry_id = registry_id
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(120.0, connect=30.0),
            follow_redirects=True,
        )
        self._active_response: httpx.Response | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._cancel_requested = False

    @abstractmethod
    def _chat_url(self) -> str:
        pass

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        pass

    @abstractmethod
    def _build_request_body(
        self,
        messages: list[ChatMessage],
        model_id: str,
        tools: list[ToolDefinition] | None,
        config: CompletionConfig,
    ) -> dict[str, Any]:
        pass

    @abstractmethod
    def _parse_stream(self, payloads: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        pass

    async def stream_completion(
        self,
        messages: list[ChatMessage],
        model_id: str,
        tools: list[ToolDefinition] | None = None,
        config: CompletionConfig | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one round from the backend."""
        config = config or CompletionConfig()
        body = self._build_request_body(messages, model_id, tools, config)
        self._cancel_requested = False

        log.debug(
            "Opening completion stream",
            registry=self.registry_id,
            model=model_id,
            msg_count=len(messages),
            tool_count=len(tools or []),
        )
        try:
            async with self.client.stream(
                "POST", self._chat_url(), json=body, headers=self._headers()
            ) as response:
                self._active_response = response
                async with aclosing(self._parse_stream(iter_sse_data(response))) as events:
                    async for event in events:
                        if self._cancel_requested:
                            return
                        yield event
                        if isinstance(event, StreamError):
                            return
        except ProviderAPIError as e:
            log.warning("Provider rejected request", registry=self.registry_id, status=e.status_code)
            yield StreamError(str(e), e.status_code)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if self._cancel_requested:
                return
            log.warning("Provider stream failed", registry=self.registry_id, error=str(e))
            yield StreamError(str(e) or e.__class__.__name__)
        finally:
            self._active_response = None

    def cancel(self) -> None:
        """Stop the current stream; safe to call repeatedly or while idle."""
        self._cancel_requested = True
        response = self._active_response
        self._active_response = None
        if response is None or response.is_closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        log.debug("Cancelling in-flight request", registry=self.registry_id)
        self._close_task = loop.create_task(response.aclose())

    async def close(self) -> None:
        """Close the HTTP client unless it was supplied by the caller.

        A response close started by ``cancel`` is awaited first.
        """
        close_task, self._close_task = self._close_task, None
        if close_task is not None and not close_task.cancelled():
            try:
                await close_task
            except (httpx.HTTPError, httpx.StreamError) as e:
                log.warning("Closing cancelled response failed", registry=self.registry_id, error=str(e))
        if self._owns_client:
            await self.client.aclose()
