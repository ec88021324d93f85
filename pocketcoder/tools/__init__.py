"""Tools package for pocketcoder."""

from pocketcoder.tools.delete import DeleteFileTool
from pocketcoder.tools.edit import EditFileTool
from pocketcoder.tools.executor import ToolExecutor
from pocketcoder.tools.listing import ListDirectoryTool
from pocketcoder.tools.read import ReadFileTool
from pocketcoder.tools.registry import Tool, ToolRegistry, ToolResult
from pocketcoder.tools.search import SearchFilesTool
from pocketcoder.tools.shell import RunCommandTool
from pocketcoder.tools.write import WriteFileTool

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "ToolExecutor",
    "ReadFileTool",
    "WriteFileTool",
    "EditFileTool",
    "DeleteFileTool",
    "ListDirectoryTool",
    "RunCommandTool",
    "SearchFilesTool",
]
