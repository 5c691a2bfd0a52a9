"""Tests for the search/replace engine."""

import pytest

from prab.edit import SearchNotFound, apply_edit, unified_diff


class TestApplyEdit:
    def test_exact_first_only(self):
        out = apply_edit("a b a", "a", "c")
        assert out.content == "c b a"
        assert out.replacements == 1
        assert out.strategy == "exact"

    def test_exact_replace_all(self):
        out = apply_edit("a b a", "a", "c", replace_all=True)
        assert out.content == "c b c"
        assert out.replacements == 2

    def test_empty_search_rejected(self):
        with pytest.raises(ValueError):
            apply_edit("abc", "", "x")

    def test_not_found(self):
        with pytest.raises(SearchNotFound, match="Search text not found in file"):
            apply_edit("abc", "zzz", "x")

    def test_trimmed_multiline(self):
        content = "if x:\n\tcall(1)\n\tcall(2)\nend\n"
        out = apply_edit(content, "call(1)\ncall(2)", "\tdone()")
        assert out.strategy == "trimmed"
        assert out.content == "if x:\n\tdone()\nend\n"

    def test_trimmed_with_trailing_newline(self):
        content = "a\n  b \nc\n"
        out = apply_edit(content, "b\n", "B\n")
        assert out.content == "a\nB\nc\n"

    def test_normalized_punctuation(self):
        content = "msg = \u201chello\u201d \u2014 world\n"
        out = apply_edit(content, 'msg = "hello" - world', "msg = 'hi'")
        assert out.strategy == "normalized"
        assert out.content == "msg = 'hi'\n"

    def test_exact_pass_wins_over_trimmed(self):
        content = "  x\ny\n    x\n"
        out = apply_edit(content, "x", "z", replace_all=True)
        assert out.strategy == "exact"
        assert out.content == "  z\ny\n    z\n"


class TestUnifiedDiff:
    def test_headers_and_lines(self):
        diff = unified_diff("a\nb\n", "a\nc\n", "f.txt")
        lines = diff.splitlines()
        assert lines[0] == "--- a/f.txt"
        assert lines[1] == "+++ b/f.txt"
        assert "-b" in lines
        assert "+c" in lines

    def test_no_change(self):
        assert unified_diff("same\n", "same\n", "f.txt") == ""
