"""Project context: file tree, git detection and mentioned-file matching."""

import os
import subprocess
from pathlib import Path, PurePosixPath

IGNORED_DIRS = {
    ".git",
    "node_modules",
    "dist",
    "build",
    "__pycache__",
    ".venv",
    "venv",
    ".prab",
    ".mypy_cache",
    ".pytest_cache",
}
IGNORED_FILES = {".env", ".DS_Store"}
MAX_TREE_FILES = 5000
MAX_CONTEXT_FILES = 300


def get_file_tree(base_dir: str | Path, limit: int = MAX_TREE_FILES) -> list[str]:
    """Relative POSIX paths of project files, sorted, skipping build and VCS dirs."""
    root = Path(base_dir)
    paths: list[str] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
        rel_dir = Path(dirpath).relative_to(root)
        for name in sorted(files):
            if name in IGNORED_FILES or name.endswith(".lock"):
                continue
            paths.append((rel_dir / name).as_posix())
            if len(paths) >= limit:
                return sorted(paths)
    return sorted(paths)


def is_git_repo(base_dir: str | Path) -> bool:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=base_dir,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def find_mentioned_files(text: str, files: list[str]) -> list[str]:
    """Paths whose basename (longer than 2 chars) or full path occurs in ``text``.

    Each path is reported once, in tree order.
    """
    found: list[str] = []
    seen: set[str] = set()
    for path in files:
        if path in seen:
            continue
        base = PurePosixPath(path).name
        if (len(base) > 2 and base in text) or path in text:
            found.append(path)
            seen.add(path)
    return found


def build_context_message(base_dir: str | Path, files: list[str] | None = None) -> str:
    """Short description of the working directory for the system prompt."""
    base = Path(base_dir).resolve()
    lines = [f"Working directory: {base}"]
    if not is_git_repo(base):
        lines.append("This directory is not a git repository.")
        return "\n".join(lines)

    files = get_file_tree(base) if files is None else files
    lines.append("This directory is a git repository.")
    lines.append(f"Project files ({len(files)}):")
    lines.extend(f"  {p}" for p in files[:MAX_CONTEXT_FILES])
    if len(files) > MAX_CONTEXT_FILES:
        lines.append(f"  ... and {len(files) - MAX_CONTEXT_FILES} more")
    return "\n".join(lines)
