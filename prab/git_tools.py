"""Git tools backed by the git binary.

Every tool runs ``git`` in the session's base directory and turns a
non-zero exit into a failed ToolResult carrying git's own message.
"""

import subprocess
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from .tools import Tool, ToolResult

GIT_TIMEOUT = 60  # seconds
PROTECTED_BRANCHES = ("main", "master")
DEFAULT_REMOTE = "origin"


class GitError(Exception):
    def __init__(self, args: list[str], returncode: int, output: str):
        self.returncode = returncode
        self.output = output
        super().__init__(output or f"git {' '.join(args)} exited with {returncode}")


def run_git(args: list[str], cwd: Path, *, timeout: float = GIT_TIMEOUT) -> str:
    """Run git and return stdout. Raises GitError on non-zero exit."""
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise GitError(args, 127, "git executable not found")
    except subprocess.TimeoutExpired:
        raise GitError(args, -1, f"git {args[0]} timed out after {timeout}s")
    if proc.returncode != 0:
        raise GitError(args, proc.returncode, (proc.stderr or proc.stdout).strip())
    return proc.stdout


def current_branch(cwd: Path) -> str | None:
    """Return the checked-out branch name, or None on a detached HEAD."""
    name = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd).strip()
    return None if name == "HEAD" else name


class _GitTool(Tool):
    def __init__(self, base_dir: str | Path = "."):
        self.base_dir = Path(base_dir).resolve()

    def git(self, *args: str) -> str:
        return run_git(list(args), self.base_dir)


class NoParams(BaseModel):
    pass


# ---------------------------------------------------------------------------
# git_status
# ---------------------------------------------------------------------------


def parse_status(porcelain: str) -> dict:
    """Parse ``git status --porcelain=v1 --branch`` output."""
    info = {
        "branch": None,
        "ahead": 0,
        "behind": 0,
        "staged": [],
        "modified": [],
        "deleted": [],
        "untracked": [],
    }
    for line in porcelain.splitlines():
        if line.startswith("## "):
            head = line[3:]
            if head.startswith("No commits yet on "):
                branch = head[len("No commits yet on "):]
            else:
                branch = head.split("...", 1)[0].split(" ", 1)[0]
            info["branch"] = None if branch.startswith("HEAD") else branch
            if "[" in head:
                for part in head[head.index("[") + 1 : head.rindex("]")].split(", "):
                    kind, _, n = part.partition(" ")
                    if kind in ("ahead", "behind") and n.isdigit():
                        info[kind] = int(n)
            continue
        if len(line) < 4:
            continue
        x, y, path = line[0], line[1], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if x == "?" and y == "?":
            info["untracked"].append(path)
            continue
        if x not in (" ", "?"):
            info["staged"].append(path)
        if y == "M":
            info["modified"].append(path)
        elif y == "D":
            info["deleted"].append(path)
    return info


class GitStatusTool(_GitTool):
    name = "git_status"
    description = "Show the working tree status: staged, unstaged, and untracked files."
    Params = NoParams

    def execute(self, params: NoParams) -> ToolResult:
        try:
            raw = self.git("status", "--porcelain=v1", "--branch")
        except GitError as e:
            return ToolResult.fail(f"Git status failed: {e}")

        st = parse_status(raw)
        out = [
            f"Branch: {st['branch'] or '(detached HEAD)'}",
            f"Ahead: {st['ahead']}, Behind: {st['behind']}",
        ]
        if not (st["staged"] or st["modified"] or st["deleted"] or st["untracked"]):
            out.append("\nWorking tree clean")
        else:
            if st["staged"]:
                out.append("\nStaged files:")
                out.extend(f"  + {f}" for f in st["staged"])
            if st["modified"] or st["deleted"]:
                out.append("\nUnstaged changes:")
                out.extend(f"  M {f}" for f in st["modified"])
                out.extend(f"  D {f}" for f in st["deleted"])
            if st["untracked"]:
                out.append("\nUntracked files:")
                out.extend(f"  ? {f}" for f in st["untracked"])
        return ToolResult.ok("\n".join(out), status=st)


# ---------------------------------------------------------------------------
# git_add
# ---------------------------------------------------------------------------


class GitAddParams(BaseModel):
    files: list[str] = Field(
        min_length=1, description='Files to stage. Use ["."] to stage all changes.'
    )


def stage_paths(tool: _GitTool, files: list[str]) -> tuple[list[str], dict[str, str]]:
    """Stage paths one at a time so a bad path does not hide the others.

    Returns (staged, failures) where failures maps path to git's error.
    """
    staged, failures = [], {}
    for path in files:
        try:
            tool.git("add", "--", path)
        except GitError as e:
            failures[path] = str(e)
        else:
            staged.append(path)
    return staged, failures


def _failure_lines(failures: dict[str, str]) -> str:
    return "\n".join(f"  ! {path}: {err}" for path, err in failures.items())


class GitAddTool(_GitTool):
    name = "git_add"
    description = 'Stage files for commit. Use "." to stage all changes, or list specific files.'
    Params = GitAddParams

    def execute(self, params: GitAddParams) -> ToolResult:
        staged, failures = stage_paths(self, params.files)
        try:
            index = parse_status(self.git("status", "--porcelain=v1", "--branch"))["staged"]
        except GitError:
            index = []

        if failures:
            return ToolResult.fail(
                f"Git add failed: staged {len(staged)} of {len(params.files)} path(s)\n"
                + _failure_lines(failures),
                staged=staged,
                failed=list(failures),
                index=index,
            )
        listing = "\n".join(f"  + {f}" for f in index)
        return ToolResult.ok(
            f"Staged {len(staged)} of {len(params.files)} path(s). "
            f"Index now holds {len(index)} file(s):\n{listing}",
            staged=staged,
            index=index,
        )


# ---------------------------------------------------------------------------
# git_diff
# ---------------------------------------------------------------------------


class GitDiffParams(BaseModel):
    files: list[str] | None = Field(default=None, description="Specific files to show diff for")
    staged: bool = Field(
        default=False, description="Show staged changes (default: false, shows unstaged)"
    )


class GitDiffTool(_GitTool):
    name = "git_diff"
    description = (
        "Show changes in files. Can show staged or unstaged changes, "
        "or changes for specific files."
    )
    Params = GitDiffParams

    def execute(self, params: GitDiffParams) -> ToolResult:
        args = ["diff"]
        if params.staged:
            args.append("--cached")
        if params.files:
            args.extend(["--", *params.files])
        try:
            diff = self.git(*args)
        except GitError as e:
            return ToolResult.fail(f"Git diff failed: {e}")
        if not diff.strip():
            return ToolResult.ok("No changes to show", staged=params.staged)
        return ToolResult.ok(diff.rstrip("\n"), staged=params.staged)


# ---------------------------------------------------------------------------
# git_log
# ---------------------------------------------------------------------------


class GitLogParams(BaseModel):
    limit: int = Field(
        default=10, ge=1, description="Maximum number of commits to show (default: 10)"
    )
    branch: str | None = Field(
        default=None, description="Branch to show log for (default: current branch)"
    )


class GitLogTool(_GitTool):
    name = "git_log"
    description = "Show commit history with messages, authors, and dates."
    Params = GitLogParams

    def execute(self, params: GitLogParams) -> ToolResult:
        args = ["log", f"-n{params.limit}", "--format=%h%x1f%an%x1f%ad%x1f%s", "--date=iso"]
        if params.branch:
            args.extend([params.branch, "--"])
        try:
            raw = self.git(*args)
        except GitError as e:
            return ToolResult.fail(f"Git log failed: {e}")

        commits = []
        for line in raw.splitlines():
            sha, author, date, subject = line.split("\x1f", 3)
            commits.append({"hash": sha, "author": author, "date": date, "message": subject})
        if not commits:
            return ToolResult.ok("No commits found", count=0)
        text = "\n\n".join(
            f"{c['hash']} {c['date']} ({c['author']})\n  {c['message']}" for c in commits
        )
        return ToolResult.ok(text, count=len(commits), commits=commits)


# ---------------------------------------------------------------------------
# git_commit
# ---------------------------------------------------------------------------


class GitCommitParams(BaseModel):
    message: str = Field(min_length=1, description="Commit message")
    files: list[str] | None = Field(
        default=None, description="Files to stage before committing (if not already staged)"
    )


class GitCommitTool(_GitTool):
    name = "git_commit"
    description = "Create a git commit with staged changes, optionally staging files first."
    Params = GitCommitParams
    requires_confirmation = True
    destructive = True

    def execute(self, params: GitCommitParams) -> ToolResult:
        staged, failures = [], {}
        if params.files:
            staged, failures = stage_paths(self, params.files)
            if failures:
                # The index was still changed for the paths that did stage.
                return ToolResult.fail(
                    f"Git commit aborted: staged {len(staged)} of {len(params.files)} "
                    f"path(s), nothing committed\n" + _failure_lines(failures),
                    staged=staged,
                    failed=list(failures),
                )

        try:
            self.git("commit", "-m", params.message)
            sha = self.git("rev-parse", "--short", "HEAD").strip()
            stat = self.git("show", "--shortstat", "--format=", "HEAD").strip()
        except GitError as e:
            msg = f"Git commit failed: {e}"
            if staged:
                msg += f"\n(staged before failing: {', '.join(staged)})"
            return ToolResult.fail(msg, staged=staged)

        return ToolResult.ok(
            f"Created commit: {sha}\n{stat or 'no file changes'}",
            commit=sha,
            staged=staged,
        )


# ---------------------------------------------------------------------------
# git_branch
# ---------------------------------------------------------------------------


class GitBranchParams(BaseModel):
    action: Literal["list", "create", "switch", "delete"] = Field(
        description="Action to perform"
    )
    name: str | None = Field(
        default=None, description="Branch name (required for create, switch, delete)"
    )


class GitBranchTool(_GitTool):
    name = "git_branch"
    description = "List, create, switch, or delete git branches."
    Params = GitBranchParams
    requires_confirmation = True
    destructive = True

    def execute(self, params: GitBranchParams) -> ToolResult:
        if params.action != "list" and not params.name:
            return ToolResult.fail(f"Branch name is required for {params.action} action")
        try:
            if params.action == "list":
                return self._list()
            if params.action == "create":
                self.git("checkout", "-b", params.name)
                return ToolResult.ok(f"Created and switched to branch: {params.name}")
            if params.action == "switch":
                self.git("checkout", params.name)
                return ToolResult.ok(f"Switched to branch: {params.name}")
            self.git("branch", "-d", params.name)
            return ToolResult.ok(f"Deleted branch: {params.name}")
        except GitError as e:
            return ToolResult.fail(f"Git branch {params.action} failed: {e}")

    def _list(self) -> ToolResult:
        raw = self.git("branch", "--format=%(HEAD)%(refname:short)")
        branches, current = [], None
        for line in raw.splitlines():
            is_current, name = line[:1] == "*", line[1:]
            branches.append(name)
            if is_current:
                current = name
        lines = "\n".join(f"* {b}" if b == current else f"  {b}" for b in branches)
        return ToolResult.ok(
            f"Branches:\n{lines}" if branches else "No branches yet",
            current=current,
            all=branches,
        )


# ---------------------------------------------------------------------------
# git_push
# ---------------------------------------------------------------------------


class GitPushParams(BaseModel):
    branch: str | None = Field(
        default=None, description="Branch to push (default: current branch)"
    )
    force: bool = Field(
        default=False, description="Force push (use with extreme caution, default: false)"
    )
    set_upstream: bool = Field(default=False, description="Set upstream tracking (default: false)")


def force_push_blocked(branch: str | None, force: bool) -> bool:
    return force and branch in PROTECTED_BRANCHES


class GitPushTool(_GitTool):
    name = "git_push"
    description = (
        "Push commits to the remote repository. "
        "Use with caution, especially with the force flag."
    )
    Params = GitPushParams
    requires_confirmation = True
    destructive = True

    def execute(self, params: GitPushParams) -> ToolResult:
        blocked_msg = (
            "Force push to main/master branch is blocked for safety. "
            "Please run this manually if absolutely necessary."
        )
        if force_push_blocked(params.branch, params.force):
            return ToolResult.fail(blocked_msg, branch=params.branch, blocked=True)

        try:
            branch = params.branch or current_branch(self.base_dir)
        except GitError as e:
            return ToolResult.fail(f"Git push failed: {e}")
        if branch is None:
            return ToolResult.fail("Git push failed: HEAD is detached, specify a branch")
        if force_push_blocked(branch, params.force):
            return ToolResult.fail(blocked_msg, branch=branch, blocked=True)

        args = ["push"]
        if params.force:
            args.append("--force")
        if params.set_upstream:
            args.append("--set-upstream")
        args.extend([DEFAULT_REMOTE, branch])
        try:
            self.git(*args)
        except GitError as e:
            return ToolResult.fail(f"Git push failed: {e}", branch=branch)

        return ToolResult.ok(
            f"Pushed {branch} to {DEFAULT_REMOTE}{' (force)' if params.force else ''}",
            remote=DEFAULT_REMOTE,
            branch=branch,
            force=params.force,
        )
