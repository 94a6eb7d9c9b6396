"""
Tests for structural and unified diffs between documents.
"""

import pytest

from screenhub.schemas.configuration import DiffType
from screenhub.utils.diff_generator import DiffGenerator


@pytest.fixture
def diff_generator():
    return DiffGenerator()


class TestStructuralDiff:
    """Path-level change detection"""

    def test_identical_documents(self, diff_generator):
        assert diff_generator.generate_structural_diff({"a": 1}, {"a": 1}) == []

    def test_added_removed_modified(self, diff_generator):
        old = {"a": 1, "b": {"c": 2, "d": 3}, "gone": True}
        new = {"a": 1, "b": {"c": 5, "d": 3}, "fresh": [1]}
        changes = diff_generator.generate_structural_diff(old, new)

        assert [(c.type, c.path) for c in changes] == [
            (DiffType.MODIFIED, "b.c"),
            (DiffType.ADDED, "fresh"),
            (DiffType.REMOVED, "gone"),
        ]
        assert changes[0].old_value == 2
        assert changes[0].new_value == 5

    def test_lists_are_leaves(self, diff_generator):
        changes = diff_generator.generate_structural_diff({"a": [1, 2]}, {"a": [1, 3]})
        assert len(changes) == 1
        assert changes[0].path == "a"
        assert changes[0].new_value == [1, 3]

    def test_type_change_is_modification(self, diff_generator):
        changes = diff_generator.generate_structural_diff({"a": {"x": 1}}, {"a": 1})
        assert changes[0].type is DiffType.MODIFIED

    def test_bool_and_number_differ(self, diff_generator):
        assert len(diff_generator.generate_structural_diff({"a": True}, {"a": 1})) == 1

    def test_non_map_top_level(self, diff_generator):
        changes = diff_generator.generate_structural_diff([1], [2])
        assert len(changes) == 1
        assert changes[0].path == ""

    def test_swapping_arguments_mirrors_result(self, diff_generator):
        old = {"a": 1, "b": 2}
        new = {"b": 3, "c": 4}
        forward = diff_generator.generate_structural_diff(old, new)
        backward = diff_generator.generate_structural_diff(new, old)

        mirror = {DiffType.ADDED: DiffType.REMOVED, DiffType.REMOVED: DiffType.ADDED, DiffType.MODIFIED: DiffType.MODIFIED}
        assert [(mirror[c.type], c.path, c.new_value, c.old_value) for c in forward] == [
            (c.type, c.path, c.old_value, c.new_value) for c in backward
        ]


class TestUnifiedDiff:
    def test_unified_diff_and_statistics(self, diff_generator):
        diff = diff_generator.generate_unified_diff({"a": 1}, {"a": 2}, "v1", "v2")
        assert diff.startswith("--- v1")
        assert '-  "a": 1' in diff
        assert '+  "a": 2' in diff

        stats = diff_generator.get_text_statistics(diff)
        assert stats["lines_modified"] == 1
        assert stats["total_changes"] == 1

    def test_no_changes_gives_empty_diff(self, diff_generator):
        assert diff_generator.generate_unified_diff({"a": 1}, {"a": 1}) == ""


def test_diff_summary(diff_generator):
    changes = diff_generator.generate_structural_diff({"a": 1, "b": 1}, {"a": 2, "c": 1})
    summary = diff_generator.get_diff_summary(changes)
    assert (summary.added, summary.removed, summary.modified, summary.total) == (1, 1, 1, 3)
