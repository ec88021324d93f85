"""Provider adapters and the factory that builds them from configurations."""

import httpx

from pocketcoder.catalog import ApiType, get_provider_def
from pocketcoder.credentials import ProviderCredentials
from pocketcoder.exceptions import ProviderInstantiationError
from pocketcoder.llm.anthropic import AnthropicProvider
from pocketcoder.llm.base import (
    ChatMessage,
    CompletionConfig,
    Done,
    LLMProvider,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallComplete,
    ToolDefinition,
    Usage,
)
from pocketcoder.llm.openai import OpenAIProvider
from pocketcoder.logging import get_logger
from pocketcoder.models import ProviderConfiguration

log = get_logger(__name__)

CODEX_API_ENDPOINT = "https://chatgpt.com/backend-api/codex/responses"
CLIENT_USER_AGENT = "PocketCoder/1.0"
CLIENT_ORIGINATOR = "pocketcoder"

COPILOT_REGISTRIES = frozenset({"github-copilot", "github-copilot-enterprise"})


def copilot_headers() -> dict[str, str]:
    """Headers GitHub Copilot expects from an agentic client."""
    return {
        "Openai-Intent": "conversation-edits",
        "User-Agent": CLIENT_USER_AGENT,
        "x-initiator": "agent",
        "Copilot-Vision-Request": "true",
        "originator": CLIENT_ORIGINATOR,
    }


def codex_headers(account_id: str | None = None) -> dict[str, str]:
    """Headers for the ChatGPT (Codex) backend."""
    headers = {"originator": CLIENT_ORIGINATOR, "User-Agent": CLIENT_USER_AGENT}
    if account_id:
        headers["ChatGPT-Account-Id"] = account_id
    return headers


def kimi_coding_headers() -> dict[str, str]:
    """Kimi for Coding only streams when SSE is requested explicitly."""
    return {"Accept": "text/event-stream"}


def is_codex_configuration(configuration: ProviderConfiguration) -> bool:
    return configuration.is_oauth and configuration.registry_id == "openai"


def create_provider(
    configuration: ProviderConfiguration,
    credentials: ProviderCredentials,
    client: httpx.AsyncClient | None = None,
) -> LLMProvider:
    """Create an adapter for a provider configuration.

    The adapter family comes from the catalog ``api_type`` of the
    configuration's registry id.

    Args:
        configuration: Provider configuration to instantiate
        credentials: Secrets loaded for that configuration
        client: Optional shared HTTP client

    Returns:
        Configured LLMProvider instance

    Raises:
        ProviderInstantiationError: unknown registry, missing credentials or base URL
    """
    definition = get_provider_def(configuration.registry_id)
    if definition is None:
        raise ProviderInstantiationError(
            configuration.id, f"Unknown provider registry '{configuration.registry_id}'"
        )

    if configuration.is_oauth:
        secret = credentials.access_token or credentials.oauth_token
        if not secret:
            raise ProviderInstantiationError(
                configuration.id,
                f"No OAuth token for {configuration.display_name}. Please authenticate.",
            )
    else:
        secret = credentials.api_key
        if not secret and definition.requires_api_key:
            raise ProviderInstantiationError(
                configuration.id, f"No API key configured for {configuration.display_name}"
            )

    base_url = configuration.base_url or definition.api_base_url
    if not base_url:
        raise ProviderInstantiationError(
            configuration.id, f"No base URL configured for {configuration.display_name}"
        )

    log.debug(
        "Creating provider",
        config_id=configuration.id,
        registry=definition.id,
        api_type=definition.api_type.value,
    )

    if definition.api_type == ApiType.ANTHROPIC:
        headers = kimi_coding_headers() if definition.id == "kimi-coding" else {}
        return AnthropicProvider(
            api_key=secret or "",
            base_url=base_url,
            extra_headers=headers,
            skip_validation=definition.skip_validation,
            registry_id=definition.id,
            client=client,
        )

    headers: dict[str, str] = {}
    endpoint: str | None = None
    supports_tools = True
    if definition.id in COPILOT_REGISTRIES:
        headers = copilot_headers()
    elif is_codex_configuration(configuration):
        headers = codex_headers(credentials.account_id)
        endpoint = CODEX_API_ENDPOINT
        supports_tools = False

    return OpenAIProvider(
        api_key=secret or "",
        base_url=base_url,
        extra_headers=headers,
        chat_endpoint_override=endpoint,
        skip_validation=definition.skip_validation,
        supports_stream_options=(
            definition.api_type == ApiType.OPENAI or definition.id in COPILOT_REGISTRIES
        ),
        supports_tools=supports_tools,
        registry_id=definition.id,
        client=client,
    )


__all__ = [
    "AnthropicProvider",
    "ChatMessage",
    "CODEX_API_ENDPOINT",
    "CompletionConfig",
    "Done",
    "LLMProvider",
    "OpenAIProvider",
    "StreamError",
    "StreamEvent",
    "TextDelta",
    "ToolCallComplete",
    "ToolDefinition",
    "Usage",
    "codex_headers",
    "copilot_headers",
    "create_provider",
    "kimi_coding_headers",
]
