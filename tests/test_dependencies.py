"""Tests for issue dependency parsing and ordering."""

from phaseflow.lib.dependencies import parse_dependencies, sort_by_dependencies


class TestParseDependencies:

    def test_body_reference(self):
        assert parse_dependencies("Depends on: #12\nDepends on #15", []) == [12, 15]

    def test_bold_markdown(self):
        assert parse_dependencies("**Depends on:** #3", []) == [3]

    def test_label(self):
        assert parse_dependencies("", ["depends-on-7", "bug"]) == [7]

    def test_deduplicated(self):
        assert parse_dependencies("depends on #4", ["depends-on-4"]) == [4]

    def test_none(self):
        assert parse_dependencies("No deps here, see #9", []) == []


class TestSortByDependencies:

    def test_dependency_first(self):
        assert sort_by_dependencies([1, 2, 3], {1: [3]}) == [2, 3, 1]

    def test_chain(self):
        assert sort_by_dependencies([3, 2, 1], {3: [2], 2: [1]}) == [1, 2, 3]

    def test_outside_dependencies_ignored(self):
        assert sort_by_dependencies([5, 6], {5: [99]}) == [5, 6]

    def test_cycle_keeps_input_order(self):
        assert sort_by_dependencies([1, 2, 3], {1: [2], 2: [1]}) == [3, 1, 2]

    def test_self_dependency_ignored(self):
        assert sort_by_dependencies([4], {4: [4]}) == [4]
