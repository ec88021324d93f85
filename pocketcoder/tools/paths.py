"""Path confinement for project-scoped tools."""

from pathlib import Path
from typing import Any

from pocketcoder.exceptions import PathOutsideProjectError


def project_root_from(kwargs: dict[str, Any]) -> Path:
    """Project root injected by the registry, or the working directory."""
    raw = kwargs.get("_project_root")
    if raw is None:
        return Path.cwd().resolve()
    return Path(raw).expanduser().resolve()


def resolve_in_project(root: Path, path: str | None) -> Path:
    """Resolve ``path`` against ``root`` and refuse anything that escapes it.

    Relative paths are taken from the root; absolute paths are accepted when
    they land inside it. Symlinks are followed before the check.

    Raises:
        PathOutsideProjectError: the resolved path is not under ``root``
    """
    raw = (path or "").strip() or "."
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if resolved != root and root not in resolved.parents:
        raise PathOutsideProjectError(raw)
    return resolved


def display_path(root: Path, path: Path) -> str:
    """Root-relative path with forward slashes, ``.`` for the root itself."""
    try:
        relative = path.relative_to(root)
    except ValueError:
        return str(path)
    text = relative.as_posix()
    return text or "."
