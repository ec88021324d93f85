"""System prompt assembly from instruction templates.

Templates live in ``pocketcoder/instructions/``. A file with the same name
in the personal directory (``~/.pocketcoder/instructions/`` by default)
overrides the packaged one, so prompts can be tuned without editing the
installation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pocketcoder.config import get_config
from pocketcoder.models import MODE_BUILD, MODE_PLAN

_PACKAGE_DIR = Path(__file__).resolve().parent / "instructions"

MAX_MODIFIED_FILES = 15
MAX_FILE_PREVIEW_CHARS = 2000
MAX_FILE_TREE_CHARS = 1500

# Sections shared by every mode, in prompt order after the mode block.
_COMMON_SECTIONS = (
    "code_formatting.md",
    "professional_standards.md",
    "proactiveness.md",
    "context_awareness.md",
    "safety.md",
)


class InstructionLoader:
    """Read instruction templates with personal-override support.

    Resolution order for every template:
      1. ``personal_dir / name``
      2. ``base_dir / name`` (packaged defaults)
    """

    def __init__(self, base_dir: Path | str | None = None, personal_dir: Path | str | None = None):
        self.base_dir = Path(base_dir).expanduser().resolve() if base_dir else _PACKAGE_DIR
        if personal_dir is None:
            personal_dir = get_config().agent.instructions_dir
        self.personal_dir = Path(personal_dir).expanduser()
        self._cache: dict[str, str] = {}

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        """Load template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content


@dataclass
class SystemPromptBuilder:
    """Composes the system prompt for one turn.

    Usage::

        prompt = SystemPromptBuilder(
            mode="build",
            project_name="demo",
            project_path="/work/demo",
            modified_files=["src/app.py"],
        ).build()
    """

    mode: str = MODE_BUILD
    project_name: str | None = None
    project_path: str | None = None
    open_file_path: str | None = None
    open_file_content: str | None = None
    modified_files: list[str] = field(default_factory=list)
    file_tree: str | None = None
    custom_instructions: str | None = None
    loader: InstructionLoader | None = None

    def build(self) -> str:
        loader = self.loader or InstructionLoader()
        sections = [loader.load("identity.md"), loader.load("tone_and_style.md")]

        if self.mode == MODE_PLAN:
            sections.append(loader.load("plan_mode.md"))
        else:
            sections.append(loader.load("build_mode.md"))
            sections.append(loader.load("tool_usage.md"))

        sections.extend(loader.load(name) for name in _COMMON_SECTIONS)

        project_context = self._project_context()
        if project_context:
            sections.append(project_context)

        if self.custom_instructions and self.custom_instructions.strip():
            sections.append(f"## Custom Instructions\n{self.custom_instructions.strip()}")

        return "\n\n".join(section.strip() for section in sections)

    def _project_context(self) -> str:
        if not any(
            (self.project_name, self.project_path, self.modified_files, self.open_file_path, self.file_tree)
        ):
            return ""

        parts = ["## Project Context"]
        if self.project_name:
            parts.append(f"- Project: {self.project_name}")
        if self.project_path:
            parts.append(f"- Root: {self.project_path}")

        if self.modified_files:
            shown = ", ".join(self.modified_files[:MAX_MODIFIED_FILES])
            extra = len(self.modified_files) - MAX_MODIFIED_FILES
            suffix = f" (+{extra} more)" if extra > 0 else ""
            parts.append(f"- Recently modified: {shown}{suffix}")

        if self.open_file_path:
            parts.append(f"- Currently viewing: {self.open_file_path}")
            if self.open_file_content is not None:
                preview = self.open_file_content
                if len(preview) > MAX_FILE_PREVIEW_CHARS:
                    preview = preview[:MAX_FILE_PREVIEW_CHARS] + "\n... truncated ..."
                parts.append(f"```\n{preview}\n```")

        if self.file_tree:
            tree = self.file_tree
            if len(tree) > MAX_FILE_TREE_CHARS:
                tree = tree[:MAX_FILE_TREE_CHARS] + "\n... (truncated)"
            parts.append(f"- File structure:\n```\n{tree}\n```")

        return "\n".join(parts)
