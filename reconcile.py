"""
Carry a file's ground truth forward from one commit to the next.

When history is processed commit by commit, diff events only describe the
lines that changed. The lines an edit did not touch keep the annotation they
had in the parent commit, shifted by the number of lines inserted or removed
in front of them. The stages below collect the edit and then combine it with
the parent's complete ground truth:

    EditedFileGroundTruth --finish_editing()--> IncompleteFileGroundTruth
    IncompleteFileGroundTruth --combine(old)--> CompleteFileGroundTruth

Each stage can be consumed exactly once.
"""

import logging
from typing import Dict, Optional, Set

from groundtruth import (
    CommitGroundTruth,
    CompleteFileGroundTruth,
    FileGroundTruth,
    LineAnnotation,
    LineRange,
    MutableFileGroundTruth,
    check_invariant,
)

logger = logging.getLogger(__name__)


class _EditStage(FileGroundTruth):
    """Sparse annotations of an edited file: unfilled slots are None."""

    def __init__(self, path: str):
        super().__init__(path)
        self._updated_indices: Set[int] = set()
        self._removed_indices: Set[int] = set()

    def get_or_none(self, index: int) -> Optional[LineAnnotation]:
        if 0 <= index < len(self._annotations):
            return self._annotations[index]
        return None

    def is_inserted(self, index: int) -> bool:
        return self.get_or_none(index) is not None and index not in self._updated_indices

    def is_updated(self, index: int) -> bool:
        return index in self._updated_indices

    @property
    def removed_line_numbers(self) -> Set[int]:
        return {index + 1 for index in self._removed_indices}

    def _set(self, index: int, annotation: LineAnnotation) -> Optional[LineAnnotation]:
        while index >= len(self._annotations):
            self._annotations.append(None)
        previous = self._annotations[index]
        self._annotations[index] = annotation
        self._variables.update(annotation.contained_variables)
        return previous


class EditedFileGroundTruth(_EditStage):
    """Collects the lines an edit inserted, updated or removed."""

    def insert(self, annotation: LineAnnotation) -> "EditedFileGroundTruth":
        """Place a newly written line; it will never be overwritten by an older annotation."""
        self._check_not_consumed("insert")
        self._set(annotation.index(), annotation)
        # The innermost node decides, an enclosing node may have updated this slot
        self._updated_indices.discard(annotation.index())
        return self

    def update(self, annotation: LineAnnotation) -> "EditedFileGroundTruth":
        """Place a line that replaces an existing line of the parent version."""
        self._check_not_consumed("update")
        self._set(annotation.index(), annotation)
        self._updated_indices.add(annotation.index())
        return self

    def mark_removed(self, line_number: int) -> "EditedFileGroundTruth":
        """Mark a line of the parent version (parent numbering) as deleted."""
        self._check_not_consumed("mark_removed")
        self._removed_indices.add(line_number - 1)
        return self

    def finish_editing(self) -> "IncompleteFileGroundTruth":
        self._check_not_consumed("finish_editing")
        self.consumed = True
        return IncompleteFileGroundTruth(self)


class IncompleteFileGroundTruth(_EditStage):
    """A finished edit waiting for the parent version it applies to."""

    def __init__(self, edited: _EditStage):
        check_invariant(edited.consumed, "An edit must be finished before it can be combined")
        super().__init__(edited.path)
        self._annotations = list(edited._annotations)
        self._variables = set(edited._variables)
        self._updated_indices = set(edited._updated_indices)
        self._removed_indices = set(edited._removed_indices)

    def combine(self, old: CompleteFileGroundTruth) -> CompleteFileGroundTruth:
        """
        Merge the parent's annotations into the unfilled slots of this edit.

        The offset tracks the difference between a line's index in the old
        and in the new version: removed lines decrease it, inserted lines
        increase it. `old` is only read.

        Returns:
            A new complete ground truth of the edited file
        """
        self._check_not_consumed("combine")
        self.consumed = True

        counterparts: Dict[int, int] = {}
        offset = 0
        for index in range(old.size()):
            if index in self._removed_indices:
                offset -= 1
                continue
            offset = self._find_position_and_insert(old.get(index), index, offset, counterparts)

        mutable = MutableFileGroundTruth(self.path)
        for index, annotation in enumerate(self._annotations):
            if annotation is None:
                # Lines no event covered and no old line landed on
                annotation = LineAnnotation.root(index + 1)
            mutable.insert(annotation)
        for line_number in sorted(counterparts):
            mutable.set_matching(
                LineRange.single(line_number), LineRange.single(counterparts[line_number])
            )
        return mutable.finish_mutation()

    def _find_position_and_insert(
        self, annotation: LineAnnotation, index: int, offset: int, counterparts: Dict[int, int]
    ) -> int:
        j = index + offset
        while True:
            if self.get_or_none(j) is not None:
                if j in self._updated_indices:
                    # The old line was replaced by an updated one
                    counterparts[j + 1] = index + 1
                    break
                offset += 1
                j += 1
                continue
            carried = annotation.with_offset(offset)
            check_invariant(
                carried.index() == j,
                f"Carried line {carried.line_number} of {self.path} landed at index {j}",
            )
            self._set(j, carried)
            counterparts[j + 1] = index + 1
            break
        return offset

    def to_dict(self) -> dict:
        return {
            "kind": "incomplete",
            "path": self.path,
            "annotations": [
                None if line is None else line.to_list() for line in self._annotations
            ],
            "updated": sorted(self._updated_indices),
            "removed": sorted(self._removed_indices),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IncompleteFileGroundTruth":
        edited = EditedFileGroundTruth(data["path"])
        updated = set(data.get("updated", []))
        for values in data["annotations"]:
            if values is None:
                continue
            annotation = LineAnnotation.from_list(values)
            if annotation.index() in updated:
                edited.update(annotation)
            else:
                edited.insert(annotation)
        for index in data.get("removed", []):
            edited.mark_removed(index + 1)
        return edited.finish_editing()


def reconcile(old: CompleteFileGroundTruth, edited: EditedFileGroundTruth) -> CompleteFileGroundTruth:
    return edited.finish_editing().combine(old)


def resolve_pending(update: CommitGroundTruth, base: CommitGroundTruth):
    """
    Replace every pending edit of `update` by its combination with `base`.

    Files without a complete ground truth in `base` are combined with an
    empty one. Variables of the resulting files are added to `update`.
    """
    for path, file_gt in list(update.file_gts.items()):
        if not isinstance(file_gt, IncompleteFileGroundTruth):
            continue
        old = base.get(path)
        if not isinstance(old, CompleteFileGroundTruth):
            logger.debug("No previous ground truth for %s, combining with an empty one", path)
            old = CompleteFileGroundTruth.empty(path)
        complete = file_gt.combine(old)
        update.variables.update(complete.variables)
        update.file_gts[path] = complete
