#!/usr/bin/env python3
"""
Tests for carrying a file's ground truth from a parent commit to its child.
"""

import pytest

from conftest import artifact_line
from groundtruth import (
    CommitGroundTruth,
    CompleteFileGroundTruth,
    Condition,
    InvariantViolation,
    LineAnnotation,
    MutableFileGroundTruth,
    RemovedFileGroundTruth,
)
from reconcile import EditedFileGroundTruth, IncompleteFileGroundTruth, reconcile, resolve_pending


def _conditions(file_gt):
    return [line.presence_condition.text for line in file_gt]


def _line_numbers(file_gt):
    return [line.line_number for line in file_gt]


class TestReconcile:
    def test_identity(self, three_line_gt):
        """An empty edit reproduces the old ground truth"""
        result = reconcile(three_line_gt, EditedFileGroundTruth("a.c"))

        assert result.size() == 3
        assert result.csv_pc_lines() == three_line_gt.csv_pc_lines()
        assert result.matching == [0, 1, 2, 3]

    def test_insertion(self, three_line_gt):
        """Inserting at line 2 shifts the old lines 2 and 3 to 3 and 4"""
        edited = EditedFileGroundTruth("a.c").insert(artifact_line(2, "A", variables=["A"]))
        result = reconcile(three_line_gt, edited)

        assert result.size() == 4
        assert _line_numbers(result) == [1, 2, 3, 4]
        assert _conditions(result) == ["True", "A", "True", "True"]
        assert result.matching == [0, 1, -1, 2, 3]
        assert result.variables == frozenset({"A"})

    def test_consecutive_insertions(self, three_line_gt):
        edited = EditedFileGroundTruth("a.c")
        edited.insert(artifact_line(1, "A")).insert(artifact_line(2, "B"))
        result = reconcile(three_line_gt, edited)

        assert _conditions(result) == ["A", "B", "True", "True", "True"]
        assert result.matching == [0, -1, -1, 1, 2, 3]

    def test_removal(self, three_line_gt):
        """Removing line 2 leaves two lines"""
        result = reconcile(three_line_gt, EditedFileGroundTruth("a.c").mark_removed(2))

        assert result.size() == 2
        assert _line_numbers(result) == [1, 2]
        assert result.matching == [0, 1, 3]

    def test_full_removal(self, three_line_gt):
        edited = EditedFileGroundTruth("a.c").mark_removed(1).mark_removed(2).mark_removed(3)
        result = reconcile(three_line_gt, edited)

        assert result.size() == 0
        assert result.aggregated_blocks == []

    def test_update_replaces_old_line(self, three_line_gt):
        edited = EditedFileGroundTruth("a.c")
        edited.update(LineAnnotation(2, Condition("B"), Condition("A & B"), "artifact", frozenset({"A", "B"})))
        result = reconcile(three_line_gt, edited)

        assert result.size() == 3
        assert _conditions(result) == ["True", "A & B", "True"]
        assert result.matching == [0, 1, 2, 3]

    def test_removal_and_insertion_at_same_position(self, three_line_gt):
        """Replacing line 2 by two new lines"""
        edited = EditedFileGroundTruth("a.c").mark_removed(2)
        edited.insert(artifact_line(2, "A")).insert(artifact_line(3, "A"))
        result = reconcile(three_line_gt, edited)

        assert _conditions(result) == ["True", "A", "A", "True"]
        assert result.matching == [0, 1, -1, -1, 3]

    def test_wrapping_lines_into_annotation(self, three_line_gt):
        """#ifdef A inserted around old line 2, which is updated to condition A"""
        edited = EditedFileGroundTruth("a.c")
        if_a = LineAnnotation(2, Condition("A"), Condition("A"), "if", frozenset({"A"}))
        edited.insert(if_a).insert(if_a.with_offset(2))
        edited.update(artifact_line(3, "A", variables=["A"]))
        result = reconcile(three_line_gt, edited)

        assert [line.node_type for line in result] == ["artifact", "if", "artifact", "if", "artifact"]
        assert _conditions(result) == ["True", "A", "A", "A", "True"]
        assert result.matching == [0, 1, -1, 2, -1, 3]

    def test_unfilled_slots_become_root_lines(self):
        """Lines beyond the old file that no edit covers get the root annotation"""
        edited = EditedFileGroundTruth("a.c").insert(artifact_line(3, "A"))
        result = reconcile(CompleteFileGroundTruth.empty("a.c"), edited)

        assert [line.node_type for line in result] == ["root", "root", "artifact"]

    def test_old_ground_truth_is_not_modified(self, three_line_gt):
        before = three_line_gt.csv_pc_lines()
        reconcile(three_line_gt, EditedFileGroundTruth("a.c").insert(artifact_line(1, "A")).mark_removed(3))
        assert three_line_gt.csv_pc_lines() == before
        assert three_line_gt.size() == 3


class TestOneShotStages:
    def test_edit_is_consumed_by_finish_editing(self):
        edited = EditedFileGroundTruth("a.c")
        edited.finish_editing()
        with pytest.raises(InvariantViolation):
            edited.insert(artifact_line(1))
        with pytest.raises(InvariantViolation):
            edited.mark_removed(1)
        with pytest.raises(InvariantViolation):
            edited.finish_editing()

    def test_incomplete_is_consumed_by_combine(self, three_line_gt):
        incomplete = EditedFileGroundTruth("a.c").finish_editing()
        incomplete.combine(three_line_gt)
        with pytest.raises(InvariantViolation):
            incomplete.combine(three_line_gt)

    def test_incomplete_requires_finished_edit(self):
        with pytest.raises(InvariantViolation):
            IncompleteFileGroundTruth(EditedFileGroundTruth("a.c"))

    def test_complete_requires_finished_mutation(self):
        with pytest.raises(InvariantViolation):
            CompleteFileGroundTruth(MutableFileGroundTruth("a.c"))


class TestIncompleteConversion:
    def test_dict_conversion(self, three_line_gt):
        edited = EditedFileGroundTruth("a.c")
        edited.insert(artifact_line(1, "A")).update(artifact_line(3, "B")).mark_removed(2)
        incomplete = edited.finish_editing()

        data = incomplete.to_dict()
        assert data["kind"] == "incomplete"
        assert data["annotations"][1] is None
        assert data["updated"] == [2]
        assert data["removed"] == [1]

        restored = IncompleteFileGroundTruth.from_dict(data)
        assert restored.combine(three_line_gt).csv_pc_lines() == incomplete.combine(three_line_gt).csv_pc_lines()


class TestResolvePending:
    def test_pending_edits_are_combined_with_base(self, three_line_gt):
        base = CommitGroundTruth(file_gts={"a.c": three_line_gt})
        update = CommitGroundTruth()
        update.file_gts["a.c"] = (
            EditedFileGroundTruth("a.c").insert(artifact_line(1, "A", variables=["A"])).finish_editing()
        )
        update.file_gts["b.c"] = EditedFileGroundTruth("b.c").insert(artifact_line(1, "B")).finish_editing()
        update.mark_removed("c.c")

        resolve_pending(update, base)

        assert isinstance(update.file_gts["a.c"], CompleteFileGroundTruth)
        assert update.file_gts["a.c"].size() == 4
        # No previous version of b.c: combined with an empty one
        assert update.file_gts["b.c"].size() == 1
        assert isinstance(update.file_gts["c.c"], RemovedFileGroundTruth)
        assert update.variables == {"A"}
        # The base is only read
        assert base.file_gts["a.c"] is three_line_gt
        assert three_line_gt.size() == 3
