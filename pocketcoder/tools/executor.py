"""Project-scoped tool executor used by the orchestrator."""

import asyncio
from pathlib import Path
from typing import Any

from pocketcoder.config import ToolsConfig, get_config
from pocketcoder.exceptions import ToolError, ToolNotFoundError, ToolTimeoutError
from pocketcoder.llm.base import ToolDefinition
from pocketcoder.logging import get_logger
from pocketcoder.models import ToolCall
from pocketcoder.tools.delete import DeleteFileTool
from pocketcoder.tools.edit import EditFileTool
from pocketcoder.tools.listing import ListDirectoryTool
from pocketcoder.tools.read import ReadFileTool
from pocketcoder.tools.registry import ToolRegistry, ToolResult
from pocketcoder.tools.search import SearchFilesTool
from pocketcoder.tools.shell import RunCommandTool
from pocketcoder.tools.write import WriteFileTool

log = get_logger(__name__)


class ToolExecutor:
    """Runs model-requested tool calls against one project root.

    Tool-level failures (bad arguments, missing files, path escapes, command
    timeouts) come back as ``ToolResult(success=False)`` so the model can
    react to them; :meth:`execute` never raises for them.
    """

    def __init__(self, project_root: Path | str, config: ToolsConfig | None = None):
        self.config = config or get_config().tools
        self.registry = ToolRegistry(project_root)
        for tool_cls in (
            ReadFileTool,
            WriteFileTool,
            EditFileTool,
            DeleteFileTool,
            ListDirectoryTool,
            RunCommandTool,
            SearchFilesTool,
        ):
            self.registry.register(tool_cls(self.config))

    @property
    def project_root(self) -> Path:
        return self.registry.project_root

    def definitions(self) -> list[ToolDefinition]:
        """Tool vocabulary offered to adapters."""
        return [
            ToolDefinition(
                name=definition["name"],
                description=definition["description"],
                parameters=definition["parameters"],
            )
            for definition in self.registry.get_definitions()
        ]

    async def execute(self, tool_call: ToolCall, abort_event: asyncio.Event | None = None) -> ToolResult:
        """Parse arguments, dispatch by name and fold failures into the result."""
        try:
            arguments = tool_call.parsed_arguments()
        except ValueError:
            preview = tool_call.arguments[:200]
            return ToolResult(success=False, content=f"Error: Invalid tool arguments JSON: {preview}")

        return await self.call(tool_call.name, arguments, abort_event=abort_event)

    async def call(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        try:
            return await self.registry.execute(name, arguments, abort_event=abort_event)
        except ToolNotFoundError as e:
            log.warning("Model requested unknown tool", tool=name)
            return ToolResult(success=False, error=f"{e}.")
        except ToolTimeoutError as e:
            return ToolResult(success=False, error=str(e), metadata={"timed_out": True})
        except ToolError as e:
            log.warning("Tool failed", tool=name, error=str(e))
            return ToolResult(success=False, error=str(e))

    # Direct entry points

    async def read(self, path: str, start_line: int | None = None, end_line: int | None = None) -> ToolResult:
        return await self.call(
            ReadFileTool.name,
            _without_none(path=path, start_line=start_line, end_line=end_line),
        )

    async def write(self, path: str, content: str) -> ToolResult:
        return await self.call(WriteFileTool.name, {"path": path, "content": content})

    async def edit(self, path: str, old_string: str, new_string: str) -> ToolResult:
        return await self.call(
            EditFileTool.name,
            {"path": path, "old_string": old_string, "new_string": new_string},
        )

    async def delete(self, path: str) -> ToolResult:
        return await self.call(DeleteFileTool.name, {"path": path})

    async def run(self, command: str, timeout_seconds: float | None = None, cwd: str | None = None) -> ToolResult:
        return await self.call(
            RunCommandTool.name,
            _without_none(command=command, timeout=timeout_seconds, cwd=cwd),
        )

    async def list(self, path: str = ".", recursive: bool = False) -> ToolResult:
        return await self.call(ListDirectoryTool.name, {"path": path, "recursive": recursive})

    async def search(self, query: str, path: str | None = None, file_pattern: str | None = None) -> ToolResult:
        return await self.call(
            SearchFilesTool.name,
            _without_none(pattern=query, path=path, file_pattern=file_pattern),
        )


def _without_none(**kwargs: Any) -> dict[str, Any]:
    return {key: value for key, value in kwargs.items() if value is not None}
