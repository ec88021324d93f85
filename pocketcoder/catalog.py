"""Static catalog of known providers and models.

The catalog is read-only data loaded once per process. Adapters are chosen
from a provider's ``api_type``; nothing else in the core inspects vendor ids
except the header sets in :mod:`pocketcoder.llm`.
"""

from dataclasses import dataclass, field
from enum import Enum


class ApiType(str, Enum):
    """Wire protocol family spoken by a provider."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENAI_COMPATIBLE = "openai_compatible"
    GOOGLE = "google"


class AuthMethod(str, Enum):
    """How a provider's credentials are acquired."""

    API_KEY = "api_key"
    OAUTH_GITHUB = "oauth_github"
    OAUTH_BROWSER = "oauth_browser"
    OAUTH_OPENAI_CODEX = "oauth_openai_codex"


@dataclass(frozen=True)
class ModelDef:
    """Known model descriptor."""

    id: str
    name: str
    family: str = ""
    context_window: int = 128_000
    max_output: int = 8_192
    supports_tools: bool = True
    supports_vision: bool = False
    supports_reasoning: bool = False
    cost_input_per_1m: float = 0.0
    cost_output_per_1m: float = 0.0


@dataclass(frozen=True)
class ProviderDef:
    """Known provider descriptor."""

    id: str
    name: str
    api_base_url: str
    auth_methods: tuple[AuthMethod, ...] = (AuthMethod.API_KEY,)
    api_type: ApiType = ApiType.OPENAI_COMPATIBLE
    models: tuple[ModelDef, ...] = field(default_factory=tuple)
    # No models endpoint to validate against
    skip_validation: bool = False
    requires_api_key: bool = True


_PROVIDERS: tuple[ProviderDef, ...] = (
    ProviderDef(
        id="anthropic",
        name="Anthropic",
        api_base_url="https://api.anthropic.com/v1",
        api_type=ApiType.ANTHROPIC,
        models=(
            ModelDef(
                id="claude-sonnet-4-5", name="Claude Sonnet 4.5", family="claude-sonnet",
                context_window=200_000, max_output=64_000, supports_vision=True,
                supports_reasoning=True, cost_input_per_1m=3.0, cost_output_per_1m=15.0,
            ),
            ModelDef(
                id="claude-haiku-4-5", name="Claude Haiku 4.5", family="claude-haiku",
                context_window=200_000, max_output=64_000, supports_vision=True,
                cost_input_per_1m=1.0, cost_output_per_1m=5.0,
            ),
            ModelDef(
                id="claude-opus-4-1", name="Claude Opus 4.1", family="claude-opus",
                context_window=200_000, max_output=32_000, supports_vision=True,
                supports_reasoning=True, cost_input_per_1m=15.0, cost_output_per_1m=75.0,
            ),
        ),
    ),
    ProviderDef(
        id="github-copilot",
        name="GitHub Copilot",
        api_base_url="https://api.githubcopilot.com",
        auth_methods=(AuthMethod.OAUTH_GITHUB,),
        skip_validation=True,
        models=(
            ModelDef(id="claude-sonnet-4-5", name="Claude Sonnet 4.5", family="claude-sonnet",
                     context_window=200_000, max_output=64_000, supports_vision=True),
            ModelDef(id="gpt-5", name="GPT-5", family="gpt", context_window=400_000,
                     max_output=128_000, supports_vision=True, supports_reasoning=True),
            ModelDef(id="gpt-5-mini", name="GPT-5 Mini", family="gpt-mini",
                     context_window=400_000, max_output=128_000, supports_vision=True),
            ModelDef(id="gemini-3-flash", name="Gemini 3 Flash", family="gemini-flash",
                     context_window=1_048_576, max_output=65_536, supports_vision=True),
        ),
    ),
    ProviderDef(
        id="openai",
        name="OpenAI",
        api_base_url="https://api.openai.com/v1",
        auth_methods=(AuthMethod.OAUTH_OPENAI_CODEX, AuthMethod.API_KEY),
        api_type=ApiType.OPENAI,
        models=(
            ModelDef(id="gpt-5", name="GPT-5", family="gpt", context_window=400_000,
                     max_output=128_000, supports_vision=True, supports_reasoning=True,
                     cost_input_per_1m=1.25, cost_output_per_1m=10.0),
            ModelDef(id="gpt-5-mini", name="GPT-5 Mini", family="gpt-mini",
                     context_window=400_000, max_output=128_000, supports_vision=True,
                     cost_input_per_1m=0.25, cost_output_per_1m=2.0),
            ModelDef(id="gpt-5.1-codex", name="GPT-5.1 Codex", family="gpt-codex",
                     context_window=400_000, max_output=128_000, supports_reasoning=True,
                     cost_input_per_1m=1.25, cost_output_per_1m=10.0),
        ),
    ),
    ProviderDef(
        id="google",
        name="Google",
        api_base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        api_type=ApiType.GOOGLE,
        models=(
            ModelDef(id="gemini-3-flash", name="Gemini 3 Flash", family="gemini-flash",
                     context_window=1_048_576, max_output=65_536, supports_vision=True,
                     supports_reasoning=True, cost_input_per_1m=0.5, cost_output_per_1m=3.0),
            ModelDef(id="gemini-2.5-flash", name="Gemini 2.5 Flash", family="gemini-flash",
                     context_window=1_048_576, max_output=65_536, supports_vision=True,
                     cost_input_per_1m=0.3, cost_output_per_1m=2.5),
        ),
    ),
    ProviderDef(
        id="openrouter",
        name="OpenRouter",
        api_base_url="https://openrouter.ai/api/v1",
        models=(
            ModelDef(id="anthropic/claude-sonnet-4-5", name="Claude Sonnet 4.5", family="claude-sonnet",
                     context_window=200_000, max_output=64_000, supports_vision=True),
            ModelDef(id="openai/gpt-5", name="GPT-5", family="gpt", context_window=400_000,
                     max_output=128_000, supports_vision=True),
            ModelDef(id="moonshotai/kimi-k2", name="Kimi K2", family="kimi",
                     context_window=131_072, max_output=65_536),
        ),
    ),
    ProviderDef(
        id="deepseek",
        name="DeepSeek",
        api_base_url="https://api.deepseek.com",
        models=(
            ModelDef(id="deepseek-chat", name="DeepSeek V3", family="deepseek",
                     max_output=32_000, cost_input_per_1m=0.14, cost_output_per_1m=0.28),
            ModelDef(id="deepseek-reasoner", name="DeepSeek Reasoner", family="deepseek-thinking",
                     max_output=32_000, supports_reasoning=True,
                     cost_input_per_1m=0.55, cost_output_per_1m=2.19),
        ),
    ),
    ProviderDef(
        id="groq",
        name="Groq",
        api_base_url="https://api.groq.com/openai/v1",
        models=(
            ModelDef(id="llama-3.3-70b-versatile", name="Llama 3.3 70B", family="llama",
                     max_output=32_768, cost_input_per_1m=0.59, cost_output_per_1m=0.79),
        ),
    ),
    ProviderDef(
        id="xai",
        name="xAI",
        api_base_url="https://api.x.ai/v1",
        models=(
            ModelDef(id="grok-4", name="Grok 4", family="grok", context_window=256_000,
                     max_output=64_000, supports_reasoning=True,
                     cost_input_per_1m=3.0, cost_output_per_1m=15.0),
        ),
    ),
    ProviderDef(
        id="mistral",
        name="Mistral",
        api_base_url="https://api.mistral.ai/v1",
        models=(
            ModelDef(id="devstral-2512", name="Devstral 2", family="devstral",
                     context_window=262_144, max_output=262_144,
                     cost_input_per_1m=0.4, cost_output_per_1m=2.0),
        ),
    ),
    ProviderDef(
        id="moonshot",
        name="Moonshot AI",
        api_base_url="https://api.moonshot.ai/v1",
        skip_validation=True,
        models=(
            ModelDef(id="kimi-k2", name="Kimi K2", family="kimi", context_window=131_072,
                     max_output=65_536, supports_reasoning=True,
                     cost_input_per_1m=0.6, cost_output_per_1m=2.5),
            ModelDef(id="moonshot-v1-128k", name="Moonshot V1 128K", family="moonshot",
                     cost_input_per_1m=0.6, cost_output_per_1m=0.6),
        ),
    ),
    ProviderDef(
        id="kimi-coding",
        name="Kimi for Coding",
        api_base_url="https://api.kimi.com/coding/v1",
        api_type=ApiType.ANTHROPIC,
        skip_validation=True,
        models=(
            ModelDef(id="kimi-for-coding", name="Kimi for Coding", family="kimi-coding",
                     context_window=262_144, max_output=32_768, supports_reasoning=True,
                     cost_input_per_1m=0.6, cost_output_per_1m=3.0),
        ),
    ),
    ProviderDef(
        id="minimax",
        name="MiniMax",
        api_base_url="https://api.minimax.io/v1",
        skip_validation=True,
        models=(
            ModelDef(id="MiniMax-M1", name="MiniMax M1", family="minimax",
                     context_window=1_000_000, max_output=128_000, supports_reasoning=True),
        ),
    ),
    ProviderDef(
        id="cohere",
        name="Cohere",
        api_base_url="https://api.cohere.com/v2",
        skip_validation=True,
        models=(
            ModelDef(id="command-r-plus", name="Command R+", family="command"),
        ),
    ),
    ProviderDef(
        id="ollama",
        name="Ollama",
        api_base_url="http://localhost:11434/v1",
        requires_api_key=False,
        models=(
            ModelDef(id="qwen2.5-coder", name="Qwen 2.5 Coder", family="qwen", context_window=32_768),
            ModelDef(id="llama3.2", name="Llama 3.2", family="llama"),
        ),
    ),
    ProviderDef(
        id="lmstudio",
        name="LM Studio",
        api_base_url="http://localhost:1234/v1",
        requires_api_key=False,
    ),
    ProviderDef(
        id="custom",
        name="Custom",
        api_base_url="",
        skip_validation=True,
    ),
)

_BY_ID: dict[str, ProviderDef] = {provider.id: provider for provider in _PROVIDERS}


def all_providers() -> tuple[ProviderDef, ...]:
    """Return every known provider definition."""
    return _PROVIDERS


def get_provider_def(registry_id: str) -> ProviderDef | None:
    """Look up a provider definition by registry id."""
    return _BY_ID.get((registry_id or "").strip())


def models_for(registry_id: str) -> tuple[ModelDef, ...]:
    """Return known models for a registry id (empty when unknown)."""
    provider = get_provider_def(registry_id)
    return provider.models if provider else ()


def find_model(registry_id: str, model_id: str) -> ModelDef | None:
    """Return the catalog entry for a model, if known."""
    for model in models_for(registry_id):
        if model.id == model_id:
            return model
    return None
