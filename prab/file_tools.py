"""File tools: read_file, write_file, edit_file, glob, grep.

Relative paths resolve against the session's base directory.
"""

import fnmatch
import os
import re
from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import BaseModel, Field

from .edit import SearchNotFound, apply_edit, unified_diff
from .tools import Tool, ToolResult

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
DEFAULT_READ_LIMIT = 2000
MAX_GLOB_RESULTS = 200
MAX_GREP_MATCHES = 200

IGNORED_DIRS = {"node_modules", ".git", "dist"}
_IGNORED_FILE_GLOBS = (".env", "*.lock")


def _is_ignored_file(name: str) -> bool:
    return any(fnmatch.fnmatch(name, g) for g in _IGNORED_FILE_GLOBS)


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        chunk = f.read(BINARY_CHECK_BYTES)
    return b"\x00" in chunk


class _FileTool(Tool):
    def __init__(self, base_dir: str | Path = "."):
        self.base_dir = Path(base_dir).resolve()

    def resolve(self, file_path: str) -> Path:
        p = Path(file_path).expanduser()
        if not p.is_absolute():
            p = self.base_dir / p
        return p.resolve()

    def display(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.base_dir))
        except ValueError:
            return str(path)


# ---------------------------------------------------------------------------
# read_file
# ---------------------------------------------------------------------------


class ReadFileParams(BaseModel):
    file_path: str = Field(description="Absolute or relative path to the file to read")
    offset: int | None = Field(
        default=None, ge=1, description="Line number to start reading from (1-indexed)"
    )
    limit: int | None = Field(
        default=None, ge=1, description="Maximum number of lines to read"
    )


class ReadFileTool(_FileTool):
    name = "read_file"
    description = (
        "Read the contents of a file with line numbers. "
        "Supports pagination for large files."
    )
    Params = ReadFileParams

    def execute(self, params: ReadFileParams) -> ToolResult:
        path = self.resolve(params.file_path)
        if not path.exists():
            return ToolResult.fail(f"File not found: {params.file_path}")
        if path.is_dir():
            return ToolResult.fail(f"Path is a directory: {params.file_path}")

        try:
            if _is_binary(path):
                return ToolResult.fail(f"Binary file detected: {params.file_path}")
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            return ToolResult.fail(f"Failed to decode {params.file_path} as UTF-8: {e}")
        except OSError as e:
            return ToolResult.fail(f"Failed to read file: {e}")

        lines = text.splitlines()
        total = len(lines)
        if total == 0:
            return ToolResult.ok(f"{params.file_path}\n(empty file)", total_lines=0)

        start = (params.offset or 1) - 1
        if start >= total:
            return ToolResult.fail(
                f"Offset {params.offset} is past the end of the file ({total} lines)"
            )
        end = min(start + (params.limit or DEFAULT_READ_LIMIT), total)

        numbered = []
        used = 0
        for lineno in range(start + 1, end + 1):
            line = lines[lineno - 1]
            if len(line) > MAX_LINE_LENGTH:
                line = line[:MAX_LINE_LENGTH]
            entry = f"{lineno:>6}→{line}"
            used += len(entry.encode("utf-8")) + 1
            if used > MAX_OUTPUT_BYTES:
                end = lineno - 1
                break
            numbered.append(entry)

        header = f"{params.file_path}\nShowing lines {start + 1}-{end} of {total}"
        body = "\n".join(numbered)
        output = f"{header}\n\n{body}"
        if end < total:
            output += f"\n\n[{total - end} more lines, use offset={end + 1} to continue]"
        return ToolResult.ok(output, total_lines=total, start_line=start + 1, end_line=end)


# ---------------------------------------------------------------------------
# write_file
# ---------------------------------------------------------------------------


class WriteFileParams(BaseModel):
    file_path: str = Field(description="Absolute or relative path to the file to write")
    content: str = Field(description="Content to write to the file")


class WriteFileTool(_FileTool):
    name = "write_file"
    description = (
        "Write content to a file. Creates the file if it doesn't exist, "
        "overwrites if it does. Creates parent directories as needed."
    )
    Params = WriteFileParams
    requires_confirmation = True
    destructive = True

    def execute(self, params: WriteFileParams) -> ToolResult:
        path = self.resolve(params.file_path)
        if path.is_dir():
            return ToolResult.fail(f"Path is a directory: {params.file_path}")
        existed = path.exists()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(params.content, encoding="utf-8")
        except OSError as e:
            return ToolResult.fail(f"Failed to write file: {e}")

        action = "Updated" if existed else "Created"
        lines = params.content.count("\n") + 1
        return ToolResult.ok(
            f"{action} {params.file_path} ({lines} lines)",
            action=action.lower(),
            path=str(path),
            lines=lines,
            bytes=len(params.content.encode("utf-8")),
        )


# ---------------------------------------------------------------------------
# edit_file
# ---------------------------------------------------------------------------


class EditFileParams(BaseModel):
    file_path: str = Field(description="Absolute or relative path to the file to edit")
    search: str = Field(description="Text to search for (exact match preferred)")
    replace: str = Field(description="Text to replace with")
    replace_all: bool = Field(
        default=False, description="Replace all occurrences (default: false)"
    )


class EditFileTool(_FileTool):
    name = "edit_file"
    description = (
        "Edit a file by finding and replacing text. Shows a diff of the change. "
        "Supports a replace-all option."
    )
    Params = EditFileParams
    requires_confirmation = True
    destructive = True

    def execute(self, params: EditFileParams) -> ToolResult:
        path = self.resolve(params.file_path)
        if not path.is_file():
            return ToolResult.fail(f"File not found: {params.file_path}")
        if params.search == params.replace:
            return ToolResult.fail("search and replace are identical, nothing to change")

        try:
            before = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return ToolResult.fail(f"Failed to read file: {e}")

        try:
            outcome = apply_edit(before, params.search, params.replace, params.replace_all)
        except SearchNotFound as e:
            return ToolResult.fail(f"{e}: {params.file_path}")
        except ValueError as e:
            return ToolResult.fail(str(e))

        try:
            path.write_text(outcome.content, encoding="utf-8")
        except OSError as e:
            return ToolResult.fail(f"Failed to write file: {e}")

        n = outcome.replacements
        diff = unified_diff(before, outcome.content, self.display(path))
        return ToolResult.ok(
            f"Edited {params.file_path} ({n} replacement{'s' if n != 1 else ''})"
            f"\n\nDiff:\n{diff}",
            path=str(path),
            occurrences=n,
            strategy=outcome.strategy,
        )


# ---------------------------------------------------------------------------
# glob
# ---------------------------------------------------------------------------


class GlobParams(BaseModel):
    pattern: str = Field(description='Glob pattern to match files (e.g. "**/*.py")')
    path: str | None = Field(
        default=None, description="Directory to search in (default: working directory)"
    )


class GlobTool(_FileTool):
    name = "glob"
    description = (
        'Find files matching a glob pattern (e.g. "**/*.py", "src/**/*.ts"). '
        "Returns paths sorted by modification time, newest first."
    )
    Params = GlobParams

    def execute(self, params: GlobParams) -> ToolResult:
        root = self.resolve(params.path) if params.path else self.base_dir
        if not root.is_dir():
            return ToolResult.fail(f"Not a directory: {params.path}")
        if PurePosixPath(params.pattern).is_absolute():
            return ToolResult.fail("Pattern must be relative; use the path parameter for the root")

        try:
            candidates = list(root.glob(params.pattern))
        except (ValueError, OSError) as e:
            return ToolResult.fail(f"Glob search failed: {e}")

        found = []
        for p in candidates:
            try:
                rel_parts = p.relative_to(root).parts
            except ValueError:
                continue
            if any(part in IGNORED_DIRS for part in rel_parts[:-1]):
                continue
            if _is_ignored_file(p.name) or not p.is_file():
                continue
            found.append(p)

        if not found:
            return ToolResult.ok(f"No files found matching pattern: {params.pattern}", count=0)

        found.sort(key=lambda f: f.stat().st_mtime, reverse=True)
        total = len(found)
        shown = [self.display(f) for f in found[:MAX_GLOB_RESULTS]]
        output = f'Found {total} file(s) matching "{params.pattern}":\n' + "\n".join(shown)
        if total > MAX_GLOB_RESULTS:
            output += f"\n(Showing the {MAX_GLOB_RESULTS} most recent. Narrow the pattern.)"
        return ToolResult.ok(output, count=total, files=shown)


# ---------------------------------------------------------------------------
# grep
# ---------------------------------------------------------------------------


class GrepParams(BaseModel):
    pattern: str = Field(description="Regular expression pattern to search for")
    path: str | None = Field(
        default=None, description="Directory or file to search in (default: working directory)"
    )
    glob_filter: str | None = Field(
        default=None, description='Glob pattern to filter files (e.g. "*.py")'
    )
    output_mode: Literal["content", "files", "count"] = Field(
        default="files",
        description="content (matching lines), files (file paths), count (match counts)",
    )
    case_insensitive: bool = Field(default=False, description="Case insensitive search")
    context_lines: int = Field(
        default=0, ge=0, description="Lines of context before and after each match (content mode)"
    )


class GrepTool(_FileTool):
    name = "grep"
    description = (
        "Search file contents using regex patterns. "
        "Supports multiple output modes and context lines."
    )
    Params = GrepParams

    def _candidates(self, root: Path, glob_filter: str | None):
        for dirpath, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
            for filename in sorted(files):
                filepath = Path(dirpath) / filename
                if glob_filter and not PurePosixPath(
                    filepath.relative_to(root).as_posix()
                ).match(glob_filter):
                    continue
                yield filepath

    def execute(self, params: GrepParams) -> ToolResult:
        try:
            regex = re.compile(params.pattern, re.IGNORECASE if params.case_insensitive else 0)
        except re.error as e:
            return ToolResult.fail(f"Invalid regex {params.pattern!r}: {e}")

        root = self.resolve(params.path) if params.path else self.base_dir
        if not root.exists():
            return ToolResult.fail(f"Path does not exist: {params.path}")
        files = [root] if root.is_file() else self._candidates(root, params.glob_filter)

        results: list[tuple[Path, list[str], list[int]]] = []
        for filepath in files:
            try:
                if _is_binary(filepath):
                    continue
                lines = filepath.read_text(encoding="utf-8").splitlines()
            except (UnicodeDecodeError, OSError):
                continue
            hits = [i for i, line in enumerate(lines) if regex.search(line)]
            if hits:
                results.append((filepath, lines, hits))

        total = sum(len(hits) for _, _, hits in results)
        if params.output_mode == "files":
            names = [self.display(p) for p, _, _ in results]
            return ToolResult.ok(
                f"Found matches in {len(names)} file(s):\n" + "\n".join(names),
                count=len(names),
                files=names,
            )
        if params.output_mode == "count":
            breakdown = [f"{self.display(p)}: {len(hits)} matches" for p, _, hits in results]
            return ToolResult.ok(
                f"Total matches: {total}\n" + "\n".join(breakdown), total=total
            )
        return self._content(results, total, params.context_lines)

    def _content(self, results, total: int, context: int) -> ToolResult:
        parts = [f"Found {total} match(es) across {len(results)} file(s):"]
        used = len(parts[0])
        emitted = 0
        truncated = False
        for filepath, lines, hits in results:
            parts.append(f"\n{self.display(filepath)}:")
            shown: set[int] = set()
            for i in hits:
                if emitted >= MAX_GREP_MATCHES:
                    truncated = True
                    break
                lo, hi = max(0, i - context), min(len(lines), i + context + 1)
                if context and shown and lo > max(shown) + 1:
                    parts.append("  --")
                for j in range(lo, hi):
                    if j in shown:
                        continue
                    shown.add(j)
                    sep = ":" if j == i or j in hits else "-"
                    entry = f"  {j + 1}{sep} {lines[j][:MAX_LINE_LENGTH]}"
                    used += len(entry) + 1
                    parts.append(entry)
                emitted += 1
                if used > MAX_OUTPUT_BYTES:
                    truncated = True
                    break
            if truncated:
                break
        output = "\n".join(parts)
        if truncated:
            output += "\n(Results truncated. Use a more specific pattern or path.)"
        return ToolResult.ok(output, match_count=total, file_count=len(results))
