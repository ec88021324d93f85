"""Search tool: regex grep across project files."""

import asyncio
import fnmatch
import re
from pathlib import Path
from typing import Any

from pocketcoder.logging import get_logger
from pocketcoder.tools.listing import is_skipped
from pocketcoder.tools.paths import display_path, project_root_from, resolve_in_project
from pocketcoder.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_LINE_PREVIEW = 120


def compile_query(pattern: str) -> re.Pattern[str]:
    """Compile a case-insensitive regex, falling back to a literal match."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(pattern), re.IGNORECASE)


def matches_file_pattern(name: str, file_pattern: str | None) -> bool:
    if not file_pattern:
        return True
    return fnmatch.fnmatchcase(name.lower(), file_pattern.lower())


class SearchFilesTool(Tool):
    """Search file contents for a pattern."""

    name = "search_files"
    description = (
        "Search for a text pattern (regex, case-insensitive) in files under a directory. "
        "Returns matching lines as path:line: text."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Regular expression or literal text to search for.",
            },
            "path": {
                "type": "string",
                "description": "Directory to search, relative to the project root. Defaults to the root.",
            },
            "file_pattern": {
                "type": "string",
                "description": "Optional glob on file names, e.g. '*.py'.",
            },
        },
        "required": ["pattern"],
    }

    def _scan(
        self,
        directory: Path,
        root: Path,
        query: re.Pattern[str],
        file_pattern: str | None,
        results: list[str],
        limit: int,
    ) -> bool:
        """Collect matches depth-first; returns True once ``limit`` is exceeded."""
        excluded = set(self.config.excluded_dirs)
        try:
            children = sorted(directory.iterdir(), key=lambda child: child.name.lower())
        except OSError:
            return False

        for child in children:
            if is_skipped(child, excluded):
                continue
            if child.is_dir():
                if self._scan(child, root, query, file_pattern, results, limit):
                    return True
                continue
            if not matches_file_pattern(child.name, file_pattern):
                continue
            try:
                if child.stat().st_size > self.config.max_file_size:
                    continue
                text = child.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                # Binary or unreadable
                continue

            relative = display_path(root, child)
            for line_number, line in enumerate(text.splitlines(), start=1):
                if query.search(line):
                    if len(results) >= limit:
                        return True
                    results.append(f"{relative}:{line_number}: {line.strip()[:MAX_LINE_PREVIEW]}")
        return False

    async def execute(
        self,
        pattern: str,
        path: str | None = None,
        file_pattern: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Search files under ``path`` for ``pattern``.

        Args:
            pattern: Regex (case-insensitive); invalid regexes match literally
            path: Directory to search
            file_pattern: Optional file name glob

        Returns:
            ToolResult listing ``path:line: text`` matches
        """
        root = project_root_from(kwargs)
        directory = resolve_in_project(root, path)
        if not directory.is_dir():
            return ToolResult(success=False, error=f"Directory not found: {path or '.'}")

        limit = self.config.max_search_results
        results: list[str] = []
        query = compile_query(pattern)
        truncated = await asyncio.to_thread(
            self._scan, directory, root, query, file_pattern, results, limit
        )

        if not results:
            return ToolResult(success=True, content=f"No matches found for '{pattern}'.")

        suffix = "es" if len(results) > 1 else ""
        content = f"Found {len(results)} match{suffix}:\n" + "\n".join(results)
        if truncated:
            content += f"\n... (results truncated, showing first {limit})"
        return ToolResult(
            success=True,
            content=content,
            metadata={"matches": len(results), "truncated": truncated},
        )
