import asyncio
from pathlib import Path

import pytest

from pocketcoder.config import ToolsConfig
from pocketcoder.exceptions import ToolExecutionError
from pocketcoder.models import ToolCall
from pocketcoder.tools import ToolExecutor
from pocketcoder.tools.registry import Tool, ToolRegistry, ToolResult


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {"type": "object", "properties": {}, "required": []}

    def __init__(self):
        super().__init__(ToolsConfig())
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class EchoRootTool(Tool):
    name = "echo_root"
    description = "Echo the injected project root"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return ToolResult(success=True, content=str(kwargs["_project_root"]))


@pytest.fixture
def executor(tmp_path: Path) -> ToolExecutor:
    return ToolExecutor(tmp_path, config=ToolsConfig())


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"


def test_tool_result_output_prefers_content_and_falls_back_to_error() -> None:
    assert ToolResult(success=False, error="boom").output == "Error: boom"
    assert ToolResult(success=False, content="Exit code: 1\nx", error="x").output == "Exit code: 1\nx"
    assert ToolResult(success=True, content="ok").output == "ok"


def test_executor_offers_the_seven_project_tools(executor: ToolExecutor):
    names = [definition.name for definition in executor.definitions()]

    assert names == [
        "read_file",
        "write_file",
        "edit_file",
        "delete_file",
        "list_directory",
        "run_command",
        "search_files",
    ]
    for definition in executor.definitions():
        assert definition.parameters["type"] == "object"


@pytest.mark.asyncio
async def test_execute_reports_invalid_json_arguments(executor: ToolExecutor):
    result = await executor.execute(ToolCall(id="c1", name="read_file", arguments="{not json"))

    assert result.success is False
    assert result.output == "Error: Invalid tool arguments JSON: {not json"


@pytest.mark.asyncio
async def test_execute_reports_unknown_tool(executor: ToolExecutor):
    result = await executor.execute(ToolCall(id="c1", name="teleport", arguments="{}"))

    assert result.success is False
    assert result.output == "Error: Unknown tool 'teleport'."


@pytest.mark.asyncio
async def test_execute_reports_missing_required_argument(executor: ToolExecutor):
    result = await executor.execute(ToolCall(id="c1", name="read_file", arguments="{}"))

    assert result.success is False
    assert "'path' parameter is required." in result.error


@pytest.mark.asyncio
async def test_execute_dispatches_parsed_arguments(tmp_path: Path, executor: ToolExecutor):
    call = ToolCall(id="c1", name="write_file", arguments='{"path": "a.txt", "content": "hi"}')

    result = await executor.execute(call)

    assert result.success is True
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "hi"


@pytest.mark.asyncio
async def test_registry_injects_project_root(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    registry.register(EchoRootTool(ToolsConfig()))

    result = await registry.execute("echo_root", {})

    assert result.content == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_registry_timeout_raises_execution_error(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    registry.register(SlowTool(ToolsConfig()))

    with pytest.raises(ToolExecutionError, match="timed out after 1s"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_registry_abort_event_cancels_running_tool(tmp_path: Path):
    registry = ToolRegistry(tmp_path)
    tool = CancellableTool()
    registry.register(tool)
    abort_event = asyncio.Event()

    async def _abort_soon() -> None:
        await asyncio.sleep(0.05)
        abort_event.set()

    aborter = asyncio.create_task(_abort_soon())
    with pytest.raises(ToolExecutionError, match="Execution aborted"):
        await registry.execute("cancellable", {}, abort_event=abort_event)
    await aborter

    assert tool.cancelled is True


def test_registry_lookup_helpers(executor: ToolExecutor):
    registry = executor.registry

    assert registry.has_tool("run_command") is True
    assert registry.has_tool("teleport") is False
    assert len(registry.list_tools()) == 7
    assert registry.get("read_file").name == "read_file"
