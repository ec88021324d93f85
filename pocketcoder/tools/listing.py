"""Directory listing tool."""

from pathlib import Path
from typing import Any

from pocketcoder.logging import get_logger
from pocketcoder.tools.paths import project_root_from, resolve_in_project
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)


def is_skipped(entry: Path, excluded_dirs: set[str]) -> bool:
    """Hidden entries and well-known build/vendor directories are never shown."""
    if entry.name.startswith("."):
        return True
    return entry.name in excluded_dirs and entry.is_dir()


def sorted_children(directory: Path, excluded_dirs: set[str]) -> list[Path]:
    """Visible children, directories first, then case-insensitive by name."""
    children = [child for child in directory.iterdir() if not is_skipped(child, excluded_dirs)]
    return sorted(children, key=lambda child: (not child.is_dir(), child.name.lower()))


class ListDirectoryTool(Tool):
    """List directory entries, flat or as a tree."""

    name = "list_directory"
    description = (
        "List all files and directories in the given directory. "
        "Returns names with '/' suffix for directories."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Absolute path or path relative to the project root. Use '.' or '' for project root.",
            },
            "recursive": {
                "type": "boolean",
                "description": "If true, list recursively as a tree. Default false.",
            },
        },
        "required": [],
    }

    def _build_tree(
        self,
        directory: Path,
        out: list[str],
        prefix: str,
        excluded: set[str],
        count: list[int],
    ) -> None:
        children = sorted_children(directory, excluded)
        for idx, child in enumerate(children):
            if count[0] >= self.config.max_list_entries:
                out.append(f"{prefix}... (truncated)")
                return
            count[0] += 1

            is_last = idx == len(children) - 1
            connector = "\\-- " if is_last else "|-- "
            is_dir = child.is_dir()
            out.append(f"{prefix}{connector}{child.name}{'/' if is_dir else ''}")

            if is_dir:
                extension = "    " if is_last else "|   "
                self._build_tree(child, out, prefix + extension, excluded, count)

    async def execute(self, path: str = ".", recursive: bool = False, **kwargs: Any) -> ToolResult:
        """List a directory.

        Args:
            path: Directory to list, relative to the project root
            recursive: Render the whole subtree with ``|--`` connectors

        Returns:
            ToolResult with one entry per line
        """
        directory = resolve_in_project(project_root_from(kwargs), path)
        label = path or "."
        if not directory.exists():
            return ToolResult(success=False, error=f"Directory not found: {label}")
        if not directory.is_dir():
            return ToolResult(success=False, error=f"'{label}' is a file, not a directory.")

        excluded = set(self.config.excluded_dirs)
        lines: list[str] = []
        try:
            if recursive:
                self._build_tree(directory, lines, "", excluded, [0])
            else:
                for child in sorted_children(directory, excluded)[: self.config.max_list_entries]:
                    lines.append(f"{child.name}{'/' if child.is_dir() else ''}")
        except OSError as e:
            log.error("Listing failed", path=label, error=str(e))
            return ToolResult(success=False, error=str(e))

        if not lines:
            return ToolResult(success=True, content=f"Directory is empty: {label}")
        return ToolResult(success=True, content="\n".join(lines), metadata={"entries": len(lines)})
