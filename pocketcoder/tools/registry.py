"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from pocketcoder.config import ToolsConfig, get_config
from pocketcoder.exceptions import ToolError, ToolExecutionError, ToolNotFoundError
from pocketcoder.logging import get_logger

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    @property
    def output(self) -> str:
        """Text handed back to the model as the tool message."""
        if self.success or self.content:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None

    def __init__(self, config: ToolsConfig | None = None):
        self.config = config or get_config().tools

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments plus ``_project_root`` and
                ``_abort_event`` injected by the registry

        Returns:
            ToolResult with success status and content
        """
        pass

    def effective_timeout(self, arguments: dict[str, Any]) -> float | None:
        """Upper bound the registry waits for one call, None for no limit."""
        return self.timeout_seconds

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            Function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check that required arguments are present.

        Raises:
            ToolExecutionError: a required argument is missing
        """
        for field in self.parameters.get("required", []):
            if arguments.get(field) is None:
                raise ToolExecutionError(self.name, f"'{field}' parameter is required.")


class ToolRegistry:
    """Registry of tools bound to one project root."""

    def __init__(self, base_path: Path | str):
        self._tools: dict[str, Tool] = {}
        self._project_root = Path(base_path).expanduser().resolve()

    @property
    def project_root(self) -> Path:
        return self._project_root

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Definitions of every registered tool, in registration order."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Parsed tool arguments
            abort_event: Optional event that aborts the call when set

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolError subclasses raised by the tool itself
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=sorted(arguments))
            timeout_seconds = tool.effective_timeout(arguments)
            if timeout_seconds is not None:
                timeout_seconds = max(1.0, float(timeout_seconds))

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(
                    **arguments,
                    _project_root=self._project_root,
                    _abort_event=tool_abort_event,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)
