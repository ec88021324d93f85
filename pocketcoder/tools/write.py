"""Write tool for creating or overwriting files."""

from typing import Any

from pocketcoder.logging import get_logger
from pocketcoder.tools.paths import project_root_from, resolve_in_project
from pocketcoder.tools.read import count_lines
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Write content to files inside the project."""

    name = "write_file"
    description = (
        "Create a new file or completely overwrite an existing file with the provided content. "
        "Use this when you need to create a new file or replace all contents of an existing file."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path or path relative to the project root.",
            },
            "content": {
                "type": "string",
                "description": "The full content to write to the file.",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        The previous content, when the file existed, is returned in
        ``metadata["previous_content"]`` so callers can show a diff.
        """
        file_path = resolve_in_project(project_root_from(kwargs), path)
        if file_path.is_dir():
            return ToolResult(success=False, error=f"'{path}' is a directory.")

        try:
            existed = file_path.exists()
            previous = file_path.read_text(encoding="utf-8", errors="replace") if existed else None
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        verb = "Updated" if existed else "Created"
        metadata: dict[str, Any] = {"path": str(file_path), "new_content": content}
        if previous is not None:
            metadata["previous_content"] = previous
        return ToolResult(
            success=True,
            content=f"{verb} file: {path} ({count_lines(content)} lines written)",
            metadata=metadata,
        )
