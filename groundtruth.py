"""
Variability ground truth for a single commit.

Holds the per-line annotations of every file touched by a commit, the staged
file ground truths (mutable while diff events are applied, complete and
immutable afterwards), the aggregation of lines into exportable blocks and the
KernelHaven-style CSV rendering of the result.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Set

logger = logging.getLogger(__name__)

ROOT_NODE_TYPE = "root"
ARTIFACT_NODE_TYPE = "artifact"
NO_MATCH = -1
DEV_NULL = "/dev/null"

PC_CSV_HEADER = "Path;File Condition;Block Condition;Presence Condition;Line Type;start;end"
MATCHING_CSV_HEADER = "Path;Line Number;Counterpart"


class MatchingException(Exception):
    """Two regions claimed to correspond, but their sizes differ."""


class InvariantViolation(AssertionError):
    """A ground truth was used in a way that is only possible through a logic error."""


def check_invariant(condition: bool, message: str):
    if not condition:
        raise InvariantViolation(message)


# ============================================================================
# LINE & BLOCK ANNOTATIONS
# ============================================================================


@dataclass(frozen=True)
class Condition:
    """An opaque logical expression as rendered by the diff parser."""

    text: str

    def __str__(self) -> str:
        return self.text


TRUE_CONDITION = Condition("True")
FALSE_CONDITION = Condition("False")


@dataclass(frozen=True)
class LineAnnotation:
    """The ground truth annotation of a single line."""

    line_number: int
    feature_mapping: Condition
    presence_condition: Condition
    node_type: str
    contained_variables: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if self.line_number < 1:
            raise ValueError(f"Line numbers start at 1, got {self.line_number}")

    @classmethod
    def root(cls, line_number: int) -> "LineAnnotation":
        """Annotation of a line that no diff event has mapped."""
        return cls(line_number, TRUE_CONDITION, TRUE_CONDITION, ROOT_NODE_TYPE)

    def index(self) -> int:
        return self.line_number - 1

    def with_offset(self, offset: int) -> "LineAnnotation":
        return LineAnnotation(
            self.line_number + offset,
            self.feature_mapping,
            self.presence_condition,
            self.node_type,
            self.contained_variables,
        )

    def annotation_equals(self, other: "LineAnnotation") -> bool:
        return (
            self.feature_mapping == other.feature_mapping
            and self.presence_condition == other.presence_condition
            and self.node_type == other.node_type
        )

    def to_list(self) -> list:
        return [
            self.line_number,
            self.feature_mapping.text,
            self.presence_condition.text,
            self.node_type,
            sorted(self.contained_variables),
        ]

    @classmethod
    def from_list(cls, values: list) -> "LineAnnotation":
        line_number, mapping, condition, node_type, variables = values
        return cls(
            int(line_number),
            Condition(mapping),
            Condition(condition),
            node_type,
            frozenset(variables),
        )

    def __str__(self) -> str:
        return (
            f"{self.line_number}, {self.node_type}, "
            f"FM = {self.feature_mapping}, PC = {self.presence_condition}"
        )


@dataclass(frozen=True)
class LineRange:
    """Lines [from_inclusive, to_exclusive); (-1, -1) if a node does not exist at a time."""

    from_inclusive: int
    to_exclusive: int

    @classmethod
    def invalid(cls) -> "LineRange":
        return cls(NO_MATCH, NO_MATCH)

    @classmethod
    def from_value(cls, value) -> "LineRange":
        """
        Parse a `[from, to)` pair as exported by the diff parser.

        Raises:
            ValueError: If the range starts before line 1 or ends before it starts
        """
        if value is None:
            return cls.invalid()
        start, end = (int(bound) for bound in value)
        if (start, end) == (NO_MATCH, NO_MATCH):
            return cls.invalid()
        if start < 1 or end < start:
            raise ValueError(f"Invalid line range [{start}, {end})")
        return cls(start, end)

    @classmethod
    def single(cls, line_number: int) -> "LineRange":
        return cls(line_number, line_number + 1)

    def is_valid(self) -> bool:
        return self.from_inclusive >= 0

    def __len__(self) -> int:
        return max(0, self.to_exclusive - self.from_inclusive)


# Replacements turning a condition into KernelHaven's notation, applied in order
_CONDITION_REWRITES = [
    (re.compile(r"True"), "1"),
    (re.compile(r"False"), "0"),
    (re.compile(r"^-"), "!"),
    (re.compile(r" -"), " !"),
    (re.compile(r"\(-"), "(!"),
    (re.compile(r" & "), " && "),
    (re.compile(r" \| "), " || "),
]
_VARIABLE_REWRITES = [
    (re.compile(r"\$\{"), ""),
    (re.compile(r"\}"), ""),
    (re.compile(r"\""), ""),
    (re.compile(r";"), "SEMICOLON"),
]


def normalize_variable(name: str) -> str:
    """Strip template delimiters and escape the CSV field separator."""
    for pattern, replacement in _VARIABLE_REWRITES:
        name = pattern.sub(replacement, name)
    return name


def normalize_condition(condition: str) -> str:
    """
    Normalize a feature mapping or presence condition to KernelHaven's format.

    Boolean literals become 1/0, negation, conjunction and disjunction are
    rewritten to C operators and the variable cleanup of normalize_variable
    is applied on top.
    """
    for pattern, replacement in _CONDITION_REWRITES:
        condition = pattern.sub(replacement, condition)
    return normalize_variable(condition)


@dataclass
class BlockAnnotation:
    """A maximal run of lines that share the same annotation."""

    line_start_inclusive: int
    line_end_inclusive: int
    feature_mapping: Condition
    presence_condition: Condition
    node_type: str

    def annotation_equals(self, line: LineAnnotation) -> bool:
        return (
            self.feature_mapping == line.feature_mapping
            and self.presence_condition == line.presence_condition
            and self.node_type == line.node_type
        )

    def as_csv_line(self) -> str:
        return "%s;%s;%s;%d;%d" % (
            normalize_condition(self.feature_mapping.text),
            normalize_condition(self.presence_condition.text),
            self.node_type,
            self.line_start_inclusive,
            self.line_end_inclusive,
        )


class _VirtualRootBlock(BlockAnnotation):
    """Bottom of the aggregation stack; never equal to a line, never emitted."""

    def annotation_equals(self, line: LineAnnotation) -> bool:
        return False


def aggregate_blocks(lines: Iterable[Optional[LineAnnotation]], size: int) -> List[BlockAnnotation]:
    """
    Collapse a file's line annotations into ordered, non-overlapping blocks.

    Lines are visited in file order while an explicit stack holds the open
    block. A line whose annotation differs from the open block closes it at
    the previous line; a new block is opened whenever the line is not covered
    by the block left on top of the stack.

    Args:
        lines: Annotations for lines 1..size in order
        size: Number of lines in the file

    Returns:
        Blocks sorted by start line (ties: larger end first), covering [1, size]
    """
    root_block = _VirtualRootBlock(1, size, TRUE_CONDITION, TRUE_CONDITION, ROOT_NODE_TYPE)
    blocks: List[BlockAnnotation] = []
    stack: List[BlockAnnotation] = [root_block]

    for line in lines:
        check_invariant(
            line is not None,
            "Encountered an unmapped line; the whole file should have been annotated",
        )
        top = stack[-1]
        if top is not root_block and not top.annotation_equals(line):
            block = stack.pop()
            block.line_end_inclusive = line.line_number - 1
            blocks.append(block)

        if not stack[-1].annotation_equals(line):
            stack.append(
                BlockAnnotation(
                    line.line_number,
                    line.line_number,
                    line.feature_mapping,
                    line.presence_condition,
                    line.node_type,
                )
            )

    while stack:
        block = stack.pop()
        if block is root_block:
            continue
        block.line_end_inclusive = size
        blocks.append(block)

    blocks.sort(key=lambda b: (b.line_start_inclusive, -b.line_end_inclusive))
    return blocks


# ============================================================================
# FILE GROUND TRUTH STAGES
# ============================================================================


class FileGroundTruth:
    """
    The ground truth for a single file at a specific commit.

    Annotation index i holds the annotation of line i+1. The matching list is
    indexed by line number; slot 0 stands for the virtual root line and each
    other slot holds the counterpart line in the complementary before/after
    version of the file, or -1 if there is none.
    """

    def __init__(self, path: str):
        self.path = path
        self._annotations: list = []
        self._matching: List[int] = []
        self._variables: Set[str] = set()
        self.consumed = False

    def size(self) -> int:
        return len(self._annotations)

    def __len__(self) -> int:
        return len(self._annotations)

    def get(self, index: int):
        return self._annotations[index]

    def __iter__(self) -> Iterator:
        return iter(self._annotations)

    @property
    def variables(self) -> FrozenSet[str]:
        return frozenset(self._variables)

    @property
    def matching(self) -> List[int]:
        return list(self._matching)

    def matching_of(self, line_number: int) -> int:
        return self._matching[line_number]

    def _check_not_consumed(self, operation: str):
        check_invariant(
            not self.consumed,
            f"{operation} on consumed {type(self).__name__} of {self.path}",
        )

    def __str__(self) -> str:
        lines = [f"File: {self.path}"]
        lines.extend(str(line) for line in self._annotations)
        lines.append("+++")
        return "\n".join(lines) + "\n"


class MutableFileGroundTruth(FileGroundTruth):
    """A file ground truth that is still being filled from diff events."""

    def __init__(self, path: str):
        super().__init__(path)
        self.matching_conflicts = 0

    def insert(self, annotation: LineAnnotation) -> "MutableFileGroundTruth":
        """Set the annotation of its line, replacing whatever was there before."""
        self._check_not_consumed("insert")
        self.grow_if_required(annotation.line_number)
        self._variables.update(annotation.contained_variables)
        self._annotations[annotation.index()] = annotation
        return self

    def grow_if_required(self, size: int):
        """Grow to at least `size` lines; new lines get the root annotation and no match."""
        self._check_not_consumed("grow_if_required")
        if size > 0 and not self._matching:
            self._matching.append(NO_MATCH)
        while len(self._annotations) < size:
            self._annotations.append(LineAnnotation.root(len(self._annotations) + 1))
            self._matching.append(NO_MATCH)

    def set_matching(self, current_range, counterpart_range):
        """
        Record the counterpart line of every line in current_range.

        Both ranges expose from_inclusive/to_exclusive. A counterpart starting
        at -1 means the region has no counterpart.

        Raises:
            MatchingException: If the two ranges span a different number of lines
        """
        self._check_not_consumed("set_matching")
        line_number = current_range.from_inclusive
        end = current_range.to_exclusive
        matched_line = counterpart_range.from_inclusive
        match_end = counterpart_range.to_exclusive

        if matched_line == NO_MATCH:
            return
        if end - line_number != match_end - matched_line:
            raise MatchingException(
                f"line number mismatch for file {self.path}: ranges have different size "
                f"{end - line_number} : {match_end - matched_line}"
            )

        self.grow_if_required(end - 1)
        while line_number < end:
            self._set_match(line_number, matched_line)
            line_number += 1
            matched_line += 1

    def _set_match(self, line_number: int, matched_line: int):
        if self.path == DEV_NULL:
            return
        existing = self._matching[line_number]
        if existing != NO_MATCH and existing != matched_line:
            # First match wins
            self.matching_conflicts += 1
            logger.warning(
                "line number mismatch for %s -- %d : (%d vs. %d), keeping %d",
                self.path, line_number, existing, matched_line, existing,
            )
            return
        self._matching[line_number] = matched_line

    def finish_mutation(self) -> "CompleteFileGroundTruth":
        """Freeze this ground truth. The mutable instance can not be used afterwards."""
        self._check_not_consumed("finish_mutation")
        self.consumed = True
        if self._matching:
            self._matching[0] = 0
        return CompleteFileGroundTruth(self)


class CompleteFileGroundTruth(FileGroundTruth):
    """An immutable file ground truth with its aggregated blocks and CSV text."""

    def __init__(self, mutable: MutableFileGroundTruth):
        check_invariant(
            isinstance(mutable, MutableFileGroundTruth) and mutable.consumed,
            "A complete ground truth can only be created by finish_mutation()",
        )
        super().__init__(mutable.path)
        self._annotations = tuple(mutable._annotations)
        self._matching = tuple(mutable._matching)
        self._variables = frozenset(mutable._variables)
        self._aggregated_blocks = tuple(aggregate_blocks(self._annotations, len(self._annotations)))
        self._csv_pc_text = "".join(
            f"{self.path};1;{block.as_csv_line()}\n" for block in self._aggregated_blocks
        )
        self._csv_matching_text = "".join(
            f"{self.path};{line_number};{match}\n"
            for line_number, match in enumerate(self._matching)
        )

    @classmethod
    def empty(cls, path: str) -> "CompleteFileGroundTruth":
        return MutableFileGroundTruth(path).finish_mutation()

    @property
    def aggregated_blocks(self) -> List[BlockAnnotation]:
        return list(self._aggregated_blocks)

    def csv_pc_lines(self) -> str:
        return self._csv_pc_text

    def csv_matching_lines(self) -> str:
        return self._csv_matching_text

    def to_dict(self) -> dict:
        return {
            "kind": "complete",
            "path": self.path,
            "annotations": [line.to_list() for line in self._annotations],
            "matching": list(self._matching),
            "variables": sorted(self._variables),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompleteFileGroundTruth":
        mutable = MutableFileGroundTruth(data["path"])
        for values in data["annotations"]:
            mutable.insert(LineAnnotation.from_list(values))
        mutable._variables.update(data.get("variables", []))
        if data.get("matching"):
            mutable._matching = list(data["matching"])
        return mutable.finish_mutation()


class RemovedFileGroundTruth(FileGroundTruth):
    """Marks a file that was deleted, or renamed away from, at this commit."""

    def to_dict(self) -> dict:
        return {"kind": "removed", "path": self.path}


# ============================================================================
# COMMIT GROUND TRUTH
# ============================================================================


def variables_list_as_string(variables: Iterable[str]) -> str:
    names = []
    for name in sorted(set(variables)):
        if name in ("True", "False"):
            continue
        names.append(normalize_variable(name))
    return "".join(f"{name}\n" for name in names)


@dataclass
class CommitGroundTruth:
    """The ground truths of all files of a repository at one commit."""

    file_gts: Dict[str, FileGroundTruth] = field(default_factory=dict)
    variables: Set[str] = field(default_factory=set)

    def compute_if_absent(
        self, path: str, factory: Callable[[str], FileGroundTruth]
    ) -> FileGroundTruth:
        if path not in self.file_gts:
            self.file_gts[path] = factory(path)
        return self.file_gts[path]

    def get(self, path: str) -> Optional[FileGroundTruth]:
        return self.file_gts.get(path)

    def __contains__(self, path: str) -> bool:
        return path in self.file_gts

    def __len__(self) -> int:
        return len(self.file_gts)

    def is_empty(self) -> bool:
        return not self.file_gts

    def mutable_for(self, path: str) -> MutableFileGroundTruth:
        file_gt = self.compute_if_absent(path, MutableFileGroundTruth)
        check_invariant(
            isinstance(file_gt, MutableFileGroundTruth),
            f"Expected a mutable ground truth for {path}, found {type(file_gt).__name__}",
        )
        return file_gt

    def mark_removed(self, path: str):
        self.file_gts[path] = RemovedFileGroundTruth(path)

    def make_complete(self):
        """Finish every mutable file ground truth and collect its variables."""
        for path, file_gt in list(self.file_gts.items()):
            if isinstance(file_gt, MutableFileGroundTruth):
                complete = file_gt.finish_mutation()
                self.variables.update(complete.variables)
                self.file_gts[path] = complete

    def update_with(self, update: "CommitGroundTruth"):
        """Fold the changes of a later commit into this ground truth."""
        self.variables.update(update.variables)
        for path, file_gt in update.file_gts.items():
            if isinstance(file_gt, RemovedFileGroundTruth):
                self.file_gts.pop(path, None)
            elif isinstance(file_gt, CompleteFileGroundTruth):
                self.file_gts[path] = file_gt
            else:
                raise InvariantViolation(
                    f"Unexpected incomplete ground truth for {path}: {type(file_gt).__name__}"
                )

    def variables_list_as_string(self) -> str:
        return variables_list_as_string(self.variables)

    def combined_variables_list_as_string(self, other: "CommitGroundTruth") -> str:
        return variables_list_as_string(self.variables | other.variables)

    def as_pc_csv_string(self) -> str:
        return self._generate_csv(PC_CSV_HEADER, CompleteFileGroundTruth.csv_pc_lines)

    def as_matching_csv_string(self) -> str:
        return self._generate_csv(MATCHING_CSV_HEADER, CompleteFileGroundTruth.csv_matching_lines)

    def _generate_csv(self, header: str, line_generator) -> str:
        parts = [header, "\n"]
        for path in sorted(self.file_gts):
            file_gt = self.file_gts[path]
            if isinstance(file_gt, RemovedFileGroundTruth):
                continue
            check_invariant(
                isinstance(file_gt, CompleteFileGroundTruth),
                f"Not possible to create CSV lines for incomplete ground truth of {path}",
            )
            parts.append(line_generator(file_gt))
        return "".join(parts)

    def __str__(self) -> str:
        return "".join(str(self.file_gts[path]) for path in sorted(self.file_gts))
