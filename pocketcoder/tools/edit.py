"""Edit tool: exact single-occurrence string replacement."""

from typing import Any

from pocketcoder.logging import get_logger
from pocketcoder.tools.paths import project_root_from, resolve_in_project
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def count_occurrences(text: str, search: str) -> int:
    """Count matches of ``search`` in ``text``, overlapping ones included."""
    if not search:
        return 0
    count = 0
    index = text.find(search)
    while index >= 0:
        count += 1
        index = text.find(search, index + 1)
    return count


class EditFileTool(Tool):
    """Replace one exact occurrence of a string in a file."""

    name = "edit_file"
    description = (
        "Edit an existing file by replacing a specific string with new content. The old_string "
        "must match exactly (including whitespace and indentation). Include enough context lines "
        "to make the match unique."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path or path relative to the project root.",
            },
            "old_string": {
                "type": "string",
                "description": "The exact text to find and replace. Must match exactly including whitespace.",
            },
            "new_string": {
                "type": "string",
                "description": "The replacement text. Use empty string to delete the old_string.",
            },
        },
        "required": ["path", "old_string", "new_string"],
    }

    async def execute(self, path: str, old_string: str, new_string: str, **kwargs: Any) -> ToolResult:
        file_path = resolve_in_project(project_root_from(kwargs), path)
        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"'{path}' is not a file.")

        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.error("Edit read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        occurrences = count_occurrences(content, old_string)
        if occurrences == 0:
            return ToolResult(
                success=False,
                error=(
                    f"Could not find the specified text in {path}. Make sure old_string matches "
                    "exactly including whitespace and indentation."
                ),
            )
        if occurrences > 1:
            return ToolResult(
                success=False,
                error=(
                    f"Found {occurrences} occurrences of old_string in {path}. "
                    "Include more context to make the match unique."
                ),
            )

        updated = content.replace(old_string, new_string, 1)
        try:
            file_path.write_text(updated, encoding="utf-8")
        except OSError as e:
            log.error("Edit write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        return ToolResult(
            success=True,
            content=f"Edited file: {path} (replaced 1 occurrence)",
            metadata={"path": str(file_path), "previous_content": content, "new_content": updated},
        )
