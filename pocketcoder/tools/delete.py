"""Delete tool for files and empty directories."""

from typing import Any

from pocketcoder.logging import get_logger
from pocketcoder.tools.paths import project_root_from, resolve_in_project
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class DeleteFileTool(Tool):
    """Delete a file or an empty directory."""

    name = "delete_file"
    description = "Delete a file or empty directory at the given path."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path or path relative to the project root.",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        root = project_root_from(kwargs)
        target = resolve_in_project(root, path)
        if target == root:
            return ToolResult(success=False, error="Cannot delete the project root.")
        if not target.exists():
            return ToolResult(success=False, error=f"File not found: {path}")

        try:
            if target.is_dir():
                if any(target.iterdir()):
                    return ToolResult(
                        success=False,
                        error="Directory is not empty. Delete contents first.",
                    )
                target.rmdir()
                return ToolResult(success=True, content=f"Deleted directory: {path}")

            previous = target.read_text(encoding="utf-8", errors="replace")
            target.unlink()
        except OSError as e:
            log.error("Delete failed", path=path, error=str(e))
            return ToolResult(success=False, error=f"Failed to delete {path}: {e}")

        return ToolResult(
            success=True,
            content=f"Deleted file: {path}",
            metadata={"path": str(target), "previous_content": previous},
        )
