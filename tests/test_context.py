"""Tests for project context: file tree, mentions and the context message."""

import shutil
import subprocess

import pytest

from prab.context import build_context_message, find_mentioned_files, get_file_tree, is_git_repo


def _tree(root):
    (root / "src").mkdir()
    (root / "src" / "utils.ts").write_text("")
    (root / "src" / "app.ts").write_text("")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("")
    (root / ".env").write_text("SECRET=1")
    (root / "yarn.lock").write_text("")
    (root / "README.md").write_text("")


class TestFileTree:
    def test_sorted_and_filtered(self, tmp_path):
        _tree(tmp_path)
        assert get_file_tree(tmp_path) == ["README.md", "src/app.ts", "src/utils.ts"]

    def test_limit(self, tmp_path):
        _tree(tmp_path)
        assert len(get_file_tree(tmp_path, limit=2)) == 2


class TestMentions:
    FILES = ["README.md", "src/app.ts", "src/utils.ts", "lib/utils.ts", "x/go"]

    def test_basename(self):
        assert find_mentioned_files("explain utils.ts", self.FILES) == [
            "src/utils.ts",
            "lib/utils.ts",
        ]

    def test_full_path(self):
        assert find_mentioned_files("open src/app.ts", self.FILES) == ["src/app.ts"]

    def test_short_basename_needs_full_path(self):
        assert find_mentioned_files("let's go", self.FILES) == []
        assert find_mentioned_files("run x/go", self.FILES) == ["x/go"]

    def test_nothing(self):
        assert find_mentioned_files("hello", self.FILES) == []


class TestContextMessage:
    def test_not_a_repo(self, tmp_path, monkeypatch):
        monkeypatch.setattr("prab.context.is_git_repo", lambda base: False)
        msg = build_context_message(tmp_path)
        assert msg.splitlines() == [
            f"Working directory: {tmp_path.resolve()}",
            "This directory is not a git repository.",
        ]

    def test_repo_lists_files(self, tmp_path, monkeypatch):
        _tree(tmp_path)
        monkeypatch.setattr("prab.context.is_git_repo", lambda base: True)
        msg = build_context_message(tmp_path)
        assert "This directory is a git repository." in msg
        assert "Project files (3):" in msg
        assert "  src/utils.ts" in msg

    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    def test_is_git_repo(self, tmp_path):
        assert not is_git_repo(tmp_path)
        subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
        assert is_git_repo(tmp_path)
