"""Read tool for reading file contents."""

from typing import Any

from pocketcoder.logging import get_logger
from pocketcoder.tools.paths import project_root_from, resolve_in_project
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def count_lines(content: str) -> int:
    """Newline count plus one for a non-empty trailing line."""
    if not content:
        return 0
    return content.count("\n") + 1


def format_read_result(path: str, content: str, start_line: int | None, end_line: int | None) -> str:
    """Render file content with a header, honoring an optional 1-based line range."""
    lines = content.split("\n") if content else []
    total = len(lines)
    if total == 0:
        return f"File: {path} (0 lines)\n"

    start = min(max(start_line or 1, 1), total)
    end = min(max(end_line or total, start), total)
    selected = "\n".join(lines[start - 1:end])

    if start_line is not None or end_line is not None:
        header = f"File: {path} (lines {start}-{end} of {total})\n"
    else:
        header = f"File: {path} ({total} lines)\n"
    return header + selected


class ReadFileTool(Tool):
    """Read file contents inside the project."""

    name = "read_file"
    description = (
        "Read the contents of a file at the given path. Use this to examine existing code, "
        "configuration files, or any text file in the project."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path or path relative to the project root.",
            },
            "start_line": {
                "type": "integer",
                "description": "Optional 1-based start line to read from. Omit to read from the beginning.",
            },
            "end_line": {
                "type": "integer",
                "description": "Optional 1-based end line (inclusive). Omit to read to the end.",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            start_line: Optional first line (1-based)
            end_line: Optional last line (inclusive)

        Returns:
            ToolResult with the headed file contents
        """
        file_path = resolve_in_project(project_root_from(kwargs), path)

        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(
                success=False,
                error=f"'{path}' is a directory, use list_directory instead.",
            )

        try:
            file_size = file_path.stat().st_size
            if file_size > self.config.max_file_size:
                return ToolResult(
                    success=False,
                    error=f"File too large ({file_size} bytes). Use start_line/end_line to read a portion.",
                )
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        return ToolResult(
            success=True,
            content=format_read_result(
                path,
                content,
                int(start_line) if start_line is not None else None,
                int(end_line) if end_line is not None else None,
            ),
            metadata={"path": str(file_path), "lines": count_lines(content)},
        )
