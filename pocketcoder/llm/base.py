"""Provider adapter contract and the streaming event union."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from pocketcoder.catalog import ModelDef, models_for
from pocketcoder.models import ToolCall


@dataclass
class ChatMessage:
    """A message in the normalized form adapters consume."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class CompletionConfig:
    """Per-request generation settings."""

    temperature: float = 0.7
    max_tokens: int = 8192
    top_p: float | None = None
    system_prompt: str | None = None
    stop: list[str] | None = None


@dataclass(frozen=True)
class TextDelta:
    text: str
    kind: Literal["text_delta"] = "text_delta"


@dataclass(frozen=True)
class ToolCallComplete:
    tool_call: ToolCall
    kind: Literal["tool_call_complete"] = "tool_call_complete"


@dataclass(frozen=True)
class Usage:
    """Token counts for part of a round; repeated events are additive."""

    input_tokens: int = 0
    output_tokens: int = 0
    kind: Literal["usage"] = "usage"


@dataclass(frozen=True)
class StreamError:
    """Terminal failure of a stream. No ``Done`` follows."""

    message: str
    code: int | None = None
    kind: Literal["error"] = "error"


@dataclass(frozen=True)
class Done:
    kind: Literal["done"] = "done"


StreamEvent = TextDelta | ToolCallComplete | Usage | StreamError | Done


class LLMProvider(ABC):
    """Abstract base class for provider adapters.

    One implementation exists per wire protocol family. A stream yields events
    in emission order; a successful stream ends with exactly one ``Done`` and
    a failed one yields exactly one ``StreamError`` and stops.
    """

    registry_id: str = ""
    supports_tools: bool = True

    @abstractmethod
    def stream_completion(
        self,
        messages: list[ChatMessage],
        model_id: str,
        tools: list[ToolDefinition] | None = None,
        config: CompletionConfig | None = None,
    ) -> AsyncIterator[StreamEvent]:
        pass

    async def list_models(self) -> list[ModelDef]:
        """Best-effort model listing; defaults to the static catalog."""
        return list(models_for(self.registry_id))

    @abstractmethod
    async def validate_credentials(self) -> bool:
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Abort the in-flight request. Idempotent."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
