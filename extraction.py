"""
Ground truth extraction over the history of a repository.

The diff parser is an external collaborator: it turns every commit into
structured diff events (one per node of a variation diff) which are read here
through a DiffEventSource. Two drivers turn those events into ground truths:

- FastExtraction computes the ground truth before and after each commit,
  independently of all other commits.
- FullExtraction computes the complete ground truth of every commit by
  folding each commit's changes into the ground truth of its first parent.

Results are written below a results root, one directory per commit, plus
append-only logs of succeeded, failed and empty commits.
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Union

import psutil

from groundtruth import (
    ARTIFACT_NODE_TYPE,
    ROOT_NODE_TYPE,
    CommitGroundTruth,
    CompleteFileGroundTruth,
    Condition,
    FileGroundTruth,
    InvariantViolation,
    LineAnnotation,
    LineRange,
    MatchingException,
    MutableFileGroundTruth,
    RemovedFileGroundTruth,
)
from reconcile import EditedFileGroundTruth, IncompleteFileGroundTruth, resolve_pending

logger = logging.getLogger(__name__)

# Result file names
SUCCESS_COMMIT_FILE = "SUCCESS_COMMITS.txt"
ERROR_COMMIT_FILE = "ERROR_COMMITS.txt"
EMPTY_COMMIT_FILE = "EMPTY_COMMITS.txt"
COMMIT_PARENTS_FILE = "PARENTS.txt"
COMMIT_MESSAGE_FILE = "MESSAGE.txt"
VARIABLES_FILE = "VARIABLES.txt"
# Full extraction: one ground truth per commit
CODE_VARIABILITY_CSV = "code-variability.spl.csv"
CODE_MATCHING_CSV = "code-matching.spl.csv"
# Fast extraction: ground truths before and after the changes of a commit
CODE_VARIABILITY_CSV_BEFORE = "code-variability.before.spl.csv"
CODE_VARIABILITY_CSV_AFTER = "code-variability.after.spl.csv"
CODE_MATCHING_CSV_BEFORE = "code-matching.before.spl.csv"
CODE_MATCHING_CSV_AFTER = "code-matching.after.spl.csv"

SENTINEL_FILES = (SUCCESS_COMMIT_FILE, ERROR_COMMIT_FILE, EMPTY_COMMIT_FILE)

ANNOTATION_NODE_TYPES = {ROOT_NODE_TYPE, "if", "elif", "else"}
MACRO_CONDITION = Condition("0")


# ============================================================================
# DIFF EVENTS (external collaborator boundary)
# ============================================================================


class Time(Enum):
    BEFORE = "before"
    AFTER = "after"

    def other(self) -> "Time":
        return Time.AFTER if self is Time.BEFORE else Time.BEFORE


class DiffType(Enum):
    ADD = "ADD"
    REM = "REM"
    NON = "NON"


class ChangeType(Enum):
    ADD = "ADD"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    RENAME = "RENAME"
    COPY = "COPY"


def _per_time(value, default):
    """Accept either one value for both times or a {"before": .., "after": ..} mapping."""
    if value is None:
        return default, default
    if isinstance(value, dict):
        return value.get("before", default), value.get("after", default)
    return value, value


@dataclass(frozen=True)
class DiffEvent:
    """One node of a variation diff, as delivered by the diff parser."""

    diff_type: DiffType
    node_type: str
    lines_before: LineRange
    lines_after: LineRange
    feature_mapping_before: Condition = Condition("True")
    feature_mapping_after: Condition = Condition("True")
    presence_condition_before: Condition = Condition("True")
    presence_condition_after: Condition = Condition("True")
    variables_before: FrozenSet[str] = frozenset()
    variables_after: FrozenSet[str] = frozenset()

    @property
    def is_root(self) -> bool:
        return self.node_type == ROOT_NODE_TYPE

    @property
    def is_annotation(self) -> bool:
        return self.node_type in ANNOTATION_NODE_TYPES

    @property
    def is_artifact(self) -> bool:
        return self.node_type == ARTIFACT_NODE_TYPE

    def lines_at(self, at: Time) -> LineRange:
        return self.lines_before if at is Time.BEFORE else self.lines_after

    def feature_mapping_at(self, at: Time) -> Condition:
        return self.feature_mapping_before if at is Time.BEFORE else self.feature_mapping_after

    def presence_condition_at(self, at: Time) -> Condition:
        return self.presence_condition_before if at is Time.BEFORE else self.presence_condition_after

    def variables_at(self, at: Time) -> FrozenSet[str]:
        return self.variables_before if at is Time.BEFORE else self.variables_after

    def conditions_changed(self) -> bool:
        return (
            self.feature_mapping_before != self.feature_mapping_after
            or self.presence_condition_before != self.presence_condition_after
        )

    @classmethod
    def from_dict(cls, data: dict) -> "DiffEvent":
        mapping_before, mapping_after = _per_time(data.get("feature_mapping"), "True")
        condition_before, condition_after = _per_time(data.get("presence_condition"), "True")
        variables_before, variables_after = _per_time(data.get("variables"), [])
        return cls(
            diff_type=DiffType(data["diff_type"]),
            node_type=data["node_type"],
            lines_before=LineRange.from_value(data.get("before")),
            lines_after=LineRange.from_value(data.get("after")),
            feature_mapping_before=Condition(mapping_before),
            feature_mapping_after=Condition(mapping_after),
            presence_condition_before=Condition(condition_before),
            presence_condition_after=Condition(condition_after),
            variables_before=frozenset(variables_before),
            variables_after=frozenset(variables_after),
        )


@dataclass
class FilePatch:
    change_type: ChangeType
    path_before: str
    path_after: str
    events: List[DiffEvent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "FilePatch":
        path_before = data.get("path_before") or data.get("path")
        path_after = data.get("path_after") or data.get("path")
        return cls(
            change_type=ChangeType(data["change_type"]),
            path_before=path_before,
            path_after=path_after,
            events=[DiffEvent.from_dict(event) for event in data.get("events", [])],
        )


@dataclass
class CommitRecord:
    commit_hash: str
    parents: List[str] = field(default_factory=list)
    message: str = ""
    patches: List[FilePatch] = field(default_factory=list)
    parse_failed: bool = False

    @property
    def first_parent(self) -> Optional[str]:
        return self.parents[0] if self.parents else None

    @classmethod
    def from_dict(cls, data: dict) -> "CommitRecord":
        return cls(
            commit_hash=data["commit"],
            parents=list(data.get("parents", [])),
            message=data.get("message", ""),
            patches=[FilePatch.from_dict(patch) for patch in data.get("patches", [])],
            parse_failed=bool(data.get("parse_failed", False)),
        )


class DiffEventSource(ABC):
    """Supplies the commits of one repository, oldest first, with their diff events."""

    @abstractmethod
    def commits(self) -> Iterator[CommitRecord]:
        ...


class JsonlDiffEventSource(DiffEventSource):
    """
    Reads diff events exported by the diff parser as JSON lines.

    Each line holds one commit:
        {"commit": "<hash>", "parents": [...], "message": "...",
         "patches": [{"change_type": "MODIFY", "path_before": .., "path_after": ..,
                      "events": [{"diff_type": "ADD", "node_type": "artifact",
                                  "before": [from, to], "after": [from, to],
                                  "feature_mapping": .., "presence_condition": ..,
                                  "variables": [..]}]}]}
    Malformed lines are recorded in `errors`. A line that still names its
    commit yields that commit with `parse_failed` set, so it is logged as
    failed; all other malformed lines are skipped.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.errors: List[str] = []

    def commits(self) -> Iterator[CommitRecord]:
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                record = self._parse(line, line_number)
                if record is not None:
                    yield record

    def _parse(self, line: str, line_number: int) -> Optional[CommitRecord]:
        data = None
        try:
            data = json.loads(line)
            return CommitRecord.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            self.errors.append(f"Failed to parse commit on line {line_number} of {self.path}: {e}")
        if isinstance(data, dict) and isinstance(data.get("commit"), str):
            parents = data.get("parents")
            return CommitRecord(
                commit_hash=data["commit"],
                parents=[p for p in parents if isinstance(p, str)] if isinstance(parents, list) else [],
                message=str(data.get("message", "")),
                parse_failed=True,
            )
        return None


# ============================================================================
# NODE ANALYSIS
# ============================================================================


def _annotated_range(event: DiffEvent, at: Time):
    current = event.lines_at(at)
    to_line = current.to_exclusive
    # Annotations also own their closing #endif line
    if event.is_annotation and not event.is_root:
        to_line += 1
    return current.from_inclusive, to_line


def analyze_event(
    file_gt: MutableFileGroundTruth,
    event: DiffEvent,
    at: Time,
    ignore_pc_changes: bool = False,
):
    """
    Apply a diff event to the ground truth of the file version at `at`.

    Raises:
        MatchingException: If the event's before and after regions differ in size
    """
    if at is Time.BEFORE and event.diff_type is DiffType.ADD:
        return
    if at is Time.AFTER and event.diff_type is DiffType.REM:
        return

    if event.is_artifact and ignore_pc_changes and event.diff_type is DiffType.NON:
        # Keep the old condition of an artifact whose code did not change
        feature_mapping = event.feature_mapping_at(Time.BEFORE)
        presence_condition = event.presence_condition_at(Time.BEFORE)
    else:
        feature_mapping = event.feature_mapping_at(at)
        presence_condition = event.presence_condition_at(at)

    from_line, to_line = _annotated_range(event, at)
    file_gt.grow_if_required(to_line - 1)

    if not event.is_annotation:
        file_gt.set_matching(event.lines_at(at), event.lines_at(at.other()))

    if event.is_annotation and ignore_pc_changes:
        feature_mapping = presence_condition = MACRO_CONDITION

    variables = event.variables_at(at)
    for line_number in range(from_line, to_line):
        if file_gt.get(line_number - 1).node_type == ARTIFACT_NODE_TYPE:
            # Never overwrite artifact conditions with annotation conditions
            continue
        file_gt.insert(
            LineAnnotation(line_number, feature_mapping, presence_condition, event.node_type, variables)
        )


def edit_event(edited: EditedFileGroundTruth, event: DiffEvent, ignore_pc_changes: bool = False):
    """
    Record an event as an edit that is later combined with the parent's ground truth.

    Removed nodes delete their lines of the parent version (for annotations
    only the opening and closing lines, their content is covered by the child
    nodes). Added nodes insert their lines, unchanged nodes with changed
    conditions update them. Everything else is carried over from the parent.

    With `ignore_pc_changes`, unchanged nodes always update their lines with
    the conditions `analyze_event` gives them: artifacts keep their old
    conditions and annotations get the macro condition. An added annotation
    may have claimed these lines as inserted, so the parent's line has to be
    marked as replaced here.
    """
    if event.is_root:
        return

    if event.diff_type is DiffType.REM:
        lines = event.lines_before
        if event.is_annotation:
            edited.mark_removed(lines.from_inclusive)
            edited.mark_removed(lines.to_exclusive)
        else:
            for line_number in range(lines.from_inclusive, lines.to_exclusive):
                edited.mark_removed(line_number)
        return

    if event.diff_type is DiffType.NON and not ignore_pc_changes and not event.conditions_changed():
        return

    if event.is_artifact and ignore_pc_changes and event.diff_type is DiffType.NON:
        feature_mapping = event.feature_mapping_before
        presence_condition = event.presence_condition_before
    else:
        feature_mapping = event.feature_mapping_after
        presence_condition = event.presence_condition_after
    if event.is_annotation and ignore_pc_changes:
        feature_mapping = presence_condition = MACRO_CONDITION

    from_line, to_line = _annotated_range(event, Time.AFTER)
    for line_number in range(from_line, to_line):
        existing = edited.get_or_none(line_number - 1)
        if event.is_annotation and existing is not None and existing.node_type == ARTIFACT_NODE_TYPE:
            continue
        annotation = LineAnnotation(
            line_number, feature_mapping, presence_condition, event.node_type, event.variables_after
        )
        if event.diff_type is DiffType.ADD:
            edited.insert(annotation)
        else:
            edited.update(annotation)


# ============================================================================
# RESULT SINK & CACHE
# ============================================================================


class ResultSink:
    """
    Writes extraction results below a results root.

    Appends to the commit logs are serialized by one lock shared by all
    worker threads. Failing writes are logged and recorded in `errors`; they
    never abort the worker that issued them.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self.errors: List[str] = []

    def commit_dir(self, commit_hash: str) -> Path:
        return self.root / "data" / commit_hash

    def write_text(self, path: Path, text: str) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(text)
            return True
        except OSError as e:
            logger.error("Was not able to write %s: %s", path, e)
            with self.lock:
                self.errors.append(f"Failed to write {path}: {e}")
            return False

    def write_commit_file(self, commit_hash: str, name: str, text: str) -> bool:
        return self.write_text(self.commit_dir(commit_hash) / name, text)

    def append_sentinel(self, name: str, commit_hash: str):
        with self.lock:
            try:
                with open(self.root / name, "a", encoding="utf-8") as f:
                    f.write(commit_hash + "\n")
            except OSError as e:
                logger.error("Was not able to append %s to %s: %s", commit_hash, name, e)
                self.errors.append(f"Failed to append {commit_hash} to {name}: {e}")

    def read_sentinel(self, name: str) -> Set[str]:
        path = self.root / name
        if not path.exists():
            return set()
        with open(path, "r", encoding="utf-8") as f:
            return {line.strip() for line in f if line.strip()}

    def processed_commits(self) -> Set[str]:
        processed = set()
        for name in SENTINEL_FILES:
            processed |= self.read_sentinel(name)
        return processed

    def write_commit_metadata(self, commit: CommitRecord):
        self.write_commit_file(commit.commit_hash, COMMIT_MESSAGE_FILE, commit.message)
        self.write_commit_file(commit.commit_hash, COMMIT_PARENTS_FILE, " ".join(commit.parents))


def file_gt_to_dict(file_gt: FileGroundTruth) -> dict:
    if isinstance(file_gt, (CompleteFileGroundTruth, RemovedFileGroundTruth, IncompleteFileGroundTruth)):
        return file_gt.to_dict()
    raise InvariantViolation(
        f"Can not persist {type(file_gt).__name__} of {file_gt.path}; finish it first"
    )


def file_gt_from_dict(data: dict) -> FileGroundTruth:
    kind = data["kind"]
    if kind == "complete":
        return CompleteFileGroundTruth.from_dict(data)
    if kind == "removed":
        return RemovedFileGroundTruth(data["path"])
    if kind == "incomplete":
        return IncompleteFileGroundTruth.from_dict(data)
    raise ValueError(f"Unknown ground truth kind: {kind}")


def save_ground_truth(path: Path, ground_truth: CommitGroundTruth):
    data = {
        "variables": sorted(ground_truth.variables),
        "files": [file_gt_to_dict(ground_truth.file_gts[name]) for name in sorted(ground_truth.file_gts)],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)


def load_ground_truth(path: Path) -> CommitGroundTruth:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    ground_truth = CommitGroundTruth(variables=set(data.get("variables", [])))
    for file_data in data.get("files", []):
        file_gt = file_gt_from_dict(file_data)
        ground_truth.file_gts[file_gt.path] = file_gt
    return ground_truth


# ============================================================================
# METRICS & RESOURCES
# ============================================================================


@dataclass
class ExtractionMetrics:
    commits_total: int = 0
    commits_processed: int = 0
    commits_succeeded: int = 0
    commits_failed: int = 0
    commits_empty: int = 0
    commits_skipped: int = 0
    files_analyzed: int = 0
    state_reloads: int = 0
    memory_peak_mb: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "commits_total": self.commits_total,
            "commits_processed": self.commits_processed,
            "commits_succeeded": self.commits_succeeded,
            "commits_failed": self.commits_failed,
            "commits_empty": self.commits_empty,
            "commits_skipped": self.commits_skipped,
            "files_analyzed": self.files_analyzed,
            "state_reloads": self.state_reloads,
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
        }


class MemoryMonitor:
    """Monitor memory usage and enforce limits"""

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0

    def check_memory(self) -> float:
        """Get current memory usage in MB"""
        process = psutil.Process(os.getpid())
        memory_mb = process.memory_info().rss / 1024 / 1024
        self.peak_mb = max(self.peak_mb, memory_mb)

        if self.limit_mb and memory_mb > self.limit_mb:
            raise MemoryError(f"Memory limit exceeded: {memory_mb:.1f}MB > {self.limit_mb}MB")

        return memory_mb


def chunk_iterator(items: List, chunk_size: int = 256):
    for i in range(0, len(items), chunk_size):
        yield items[i : i + chunk_size]


@dataclass
class BatchContext:
    """Ground truths under construction by one worker for the commits of its batch."""

    before: Dict[str, CommitGroundTruth] = field(default_factory=dict)
    after: Dict[str, CommitGroundTruth] = field(default_factory=dict)

    def ground_truth_before(self, commit_hash: str) -> CommitGroundTruth:
        return self.before.setdefault(commit_hash, CommitGroundTruth())

    def ground_truth_after(self, commit_hash: str) -> CommitGroundTruth:
        return self.after.setdefault(commit_hash, CommitGroundTruth())


# ============================================================================
# EXTRACTION DRIVERS
# ============================================================================


@dataclass
class ExtractionOptions:
    num_threads: int = 4
    batch_size: int = 256
    ignore_pc_changes: bool = False
    extract_code_matching: bool = False
    print_enabled: bool = False
    carry_forward: bool = True
    memory_limit_mb: Optional[float] = None
    cache_dir: Optional[Union[str, Path]] = None


class GroundTruthExtraction(ABC):
    """Common scheduling of commits over a fixed-size pool of worker threads."""

    def __init__(self, results_root: Union[str, Path], options: Optional[ExtractionOptions] = None, reporter=None):
        self.options = options or ExtractionOptions()
        self.sink = ResultSink(results_root)
        self.reporter = reporter
        self.metrics = ExtractionMetrics()
        self.memory_monitor = MemoryMonitor(limit_mb=self.options.memory_limit_mb)
        self.failed_commits: Set[str] = set()
        self.errors: List[str] = []
        self._state_lock = threading.Lock()
        self._progress_bar = None

    def run(self, source: DiffEventSource) -> ExtractionMetrics:
        start_time = time.time()
        commits = list(source.commits())
        self.errors.extend(getattr(source, "errors", []))
        self.metrics.commits_total = len(commits)
        try:
            self._run(commits)
        finally:
            self.errors.extend(self.sink.errors)
            self.metrics.total_time = time.time() - start_time
            self.metrics.memory_peak_mb = self.memory_monitor.peak_mb
        return self.metrics

    @abstractmethod
    def _run(self, commits: List[CommitRecord]):
        ...

    @abstractmethod
    def _process_commit(self, commit: CommitRecord, context: BatchContext):
        ...

    def _process_in_batches(self, commits: List[CommitRecord], description: str):
        """Process commits batch-wise on the worker pool; invariant violations propagate."""
        if not commits:
            return
        self._progress_bar = self.reporter.create_progress_bar(len(commits), description) if self.reporter else None
        try:
            with ThreadPoolExecutor(max_workers=self.options.num_threads) as pool:
                futures = [
                    pool.submit(self._process_batch, batch)
                    for batch in chunk_iterator(commits, self.options.batch_size)
                ]
                for future in as_completed(futures):
                    future.result()
        finally:
            if self._progress_bar:
                self._progress_bar.close()
                self._progress_bar = None

    def _process_batch(self, batch: List[CommitRecord]):
        context = BatchContext()
        for commit in batch:
            self._process_commit(commit, context)
            with self._state_lock:
                self.metrics.commits_processed += 1
                if self.reporter:
                    self.reporter.advance(self._progress_bar, self.metrics)
                if self.metrics.commits_processed % 1_000 == 0:
                    logger.info("Processed commit (%d): %s", self.metrics.commits_processed, commit.commit_hash)

    def _extraction_failed(self, commit: CommitRecord, reason: str):
        with self._state_lock:
            if commit.commit_hash in self.failed_commits:
                return
            self.failed_commits.add(commit.commit_hash)
            self.metrics.commits_failed += 1
        logger.warning("Was not able to extract ground truth for commit %s", commit.commit_hash)
        self.sink.append_sentinel(ERROR_COMMIT_FILE, commit.commit_hash)
        if self.reporter:
            self.reporter.commit_failed(commit.commit_hash, reason)

    def _is_failed(self, commit: CommitRecord) -> bool:
        with self._state_lock:
            return commit.commit_hash in self.failed_commits

    def _print(self, ground_truth: CommitGroundTruth, commit_hash: str):
        if self.options.print_enabled:
            logger.info("*****************   %s   ******************\n%s", commit_hash, ground_truth)

    def _pending(self, commits: List[CommitRecord]) -> List[CommitRecord]:
        processed = self.sink.processed_commits()
        pending = [commit for commit in commits if commit.commit_hash not in processed]
        self.metrics.commits_skipped = len(commits) - len(pending)
        if self.metrics.commits_skipped:
            logger.info("Skipping %d already processed commits", self.metrics.commits_skipped)
        return pending


class FastExtraction(GroundTruthExtraction):
    """Ground truths before and after each commit, computed independently per commit."""

    def _run(self, commits: List[CommitRecord]):
        self._process_in_batches(self._pending(commits), "Extracting commits")

    def _process_commit(self, commit: CommitRecord, context: BatchContext):
        if commit.parse_failed:
            self._extraction_failed(commit, "diff events could not be parsed")
        else:
            self._analyze_commit(commit, context)
        self._end_commit(commit, context)

    def _analyze_commit(self, commit: CommitRecord, context: BatchContext):
        before = context.ground_truth_before(commit.commit_hash)
        after = context.ground_truth_after(commit.commit_hash)
        for patch in commit.patches:
            file_before = None if patch.change_type is ChangeType.ADD else before.mutable_for(patch.path_before)
            file_after = None if patch.change_type is ChangeType.DELETE else after.mutable_for(patch.path_after)
            with self._state_lock:
                self.metrics.files_analyzed += 1
            try:
                for event in patch.events:
                    if file_before is not None:
                        analyze_event(file_before, event, Time.BEFORE, self.options.ignore_pc_changes)
                    if file_after is not None:
                        analyze_event(file_after, event, Time.AFTER, self.options.ignore_pc_changes)
            except (MatchingException, ValueError) as e:
                logger.error(
                    "unhandled exception while analyzing %s -> %s for commit %s: %s",
                    patch.path_before, patch.path_after, commit.commit_hash, e,
                )
                self._extraction_failed(commit, str(e))

    def _end_commit(self, commit: CommitRecord, context: BatchContext):
        before = context.before.pop(commit.commit_hash, CommitGroundTruth())
        after = context.after.pop(commit.commit_hash, CommitGroundTruth())

        if self._is_failed(commit):
            logger.warning("Skip writing ground truth for %s", commit.commit_hash)
            return

        if before.is_empty() and after.is_empty():
            logger.debug("No code changes for %s", commit.commit_hash)
            with self._state_lock:
                self.metrics.commits_empty += 1
            self.sink.append_sentinel(EMPTY_COMMIT_FILE, commit.commit_hash)
            return

        before.make_complete()
        after.make_complete()
        self._print(before, commit.commit_hash)
        self._print(after, commit.commit_hash)

        sink = self.sink
        sink.write_commit_file(commit.commit_hash, VARIABLES_FILE, before.combined_variables_list_as_string(after))
        sink.write_commit_file(commit.commit_hash, CODE_VARIABILITY_CSV_BEFORE, before.as_pc_csv_string())
        sink.write_commit_file(commit.commit_hash, CODE_VARIABILITY_CSV_AFTER, after.as_pc_csv_string())
        if self.options.extract_code_matching:
            sink.write_commit_file(commit.commit_hash, CODE_MATCHING_CSV_BEFORE, before.as_matching_csv_string())
            sink.write_commit_file(commit.commit_hash, CODE_MATCHING_CSV_AFTER, after.as_matching_csv_string())
        sink.write_commit_metadata(commit)

        with self._state_lock:
            self.metrics.commits_succeeded += 1
        sink.append_sentinel(SUCCESS_COMMIT_FILE, commit.commit_hash)


class FullExtraction(GroundTruthExtraction):
    """
    The complete ground truth of every commit.

    Phase one analyzes the changes of all commits in parallel and caches them.
    Phase two walks the commits in order and folds each commit's changes into
    the ground truth of its first parent, which is kept in memory while the
    history is linear and loaded from the cache otherwise.
    """

    def __init__(self, results_root: Union[str, Path], options: Optional[ExtractionOptions] = None, reporter=None):
        super().__init__(results_root, options, reporter)
        self.cache_dir = Path(self.options.cache_dir) if self.options.cache_dir else self.sink.root / "cache"

    def partial_path(self, commit_hash: str) -> Path:
        return self.cache_dir / "partial" / f"{commit_hash}.json"

    def complete_path(self, commit_hash: str) -> Path:
        return self.cache_dir / "complete" / f"{commit_hash}.json"

    def _run(self, commits: List[CommitRecord]):
        failed_before = self.sink.read_sentinel(ERROR_COMMIT_FILE)
        self.failed_commits.update(failed_before)
        to_analyze = [
            commit
            for commit in commits
            if commit.commit_hash not in failed_before and not self.partial_path(commit.commit_hash).exists()
        ]
        self._process_in_batches(to_analyze, "Analyzing changes")
        self._postprocess(commits)

    def _process_commit(self, commit: CommitRecord, context: BatchContext):
        ground_truth = context.ground_truth_after(commit.commit_hash)
        if commit.parse_failed:
            self._extraction_failed(commit, "diff events could not be parsed")
        else:
            for patch in commit.patches:
                self._analyze_patch(commit, patch, ground_truth)
        self._end_commit(commit, context)

    def _analyze_patch(self, commit: CommitRecord, patch: FilePatch, ground_truth: CommitGroundTruth):
        with self._state_lock:
            self.metrics.files_analyzed += 1
        renamed = patch.change_type is not ChangeType.ADD and patch.path_before != patch.path_after
        if patch.change_type is ChangeType.DELETE or renamed:
            ground_truth.mark_removed(patch.path_before)
        if patch.change_type is ChangeType.DELETE:
            return

        path = patch.path_after
        carry = self.options.carry_forward and patch.change_type is ChangeType.MODIFY and not renamed
        try:
            if carry:
                edited = ground_truth.compute_if_absent(path, EditedFileGroundTruth)
                for event in patch.events:
                    edit_event(edited, event, self.options.ignore_pc_changes)
            else:
                file_gt = ground_truth.mutable_for(path)
                for event in patch.events:
                    analyze_event(file_gt, event, Time.AFTER, self.options.ignore_pc_changes)
        except (MatchingException, ValueError) as e:
            logger.error(
                "unhandled exception while analyzing %s -> %s for commit %s: %s",
                patch.path_before, path, commit.commit_hash, e,
            )
            self._extraction_failed(commit, str(e))

    def _end_commit(self, commit: CommitRecord, context: BatchContext):
        ground_truth = context.after.pop(commit.commit_hash, CommitGroundTruth())
        if self._is_failed(commit):
            return
        for path, file_gt in list(ground_truth.file_gts.items()):
            if isinstance(file_gt, EditedFileGroundTruth):
                ground_truth.file_gts[path] = file_gt.finish_editing()
        ground_truth.make_complete()
        save_ground_truth(self.partial_path(commit.commit_hash), ground_truth)

    def _load_parent_state(self, commit: CommitRecord) -> CommitGroundTruth:
        parent_path = self.complete_path(commit.first_parent)
        if not parent_path.exists():
            logger.warning(
                "No ground truth of parent %s for commit %s, starting from an empty one",
                commit.first_parent, commit.commit_hash,
            )
            return CommitGroundTruth()
        self.metrics.state_reloads += 1
        return load_ground_truth(parent_path)

    def _postprocess(self, commits: List[CommitRecord]):
        """Incrementally combine the ground truths from the first to the last commit."""
        processed = self.sink.processed_commits()
        self.metrics.commits_skipped = sum(1 for commit in commits if commit.commit_hash in processed)
        state = CommitGroundTruth()
        last_commit: Optional[CommitRecord] = None

        if self.reporter:
            self.reporter.stage_start("Completing ground truths", f"{len(commits):,} commits")
        # Fire-and-forget writers; tasks are bounded by the number of commits
        with ThreadPoolExecutor(max_workers=self.options.num_threads) as writers:
            for count, commit in enumerate(commits):
                first_parent = commit.first_parent
                if first_parent is None:
                    state = CommitGroundTruth()
                elif last_commit is None or first_parent != last_commit.commit_hash:
                    state = self._load_parent_state(commit)

                partial_path = self.partial_path(commit.commit_hash)
                if partial_path.exists():
                    update = load_ground_truth(partial_path)
                    resolve_pending(update, state)
                    state.update_with(update)
                    self._print(state, commit.commit_hash)

                save_ground_truth(self.complete_path(commit.commit_hash), state)
                last_commit = commit

                if count % 1_000 == 0:
                    memory_mb = self.memory_monitor.check_memory()
                    logger.info(
                        "Completed ground truth for commit %d of %d (%.1f MB)", count + 1, len(commits), memory_mb
                    )

                if commit.commit_hash in processed or self._is_failed(commit):
                    continue
                self._submit_outputs(writers, commit, state)
        if self.reporter:
            self.reporter.stage_complete("Completing ground truths", self.metrics.to_dict())

    def _submit_outputs(self, writers: ThreadPoolExecutor, commit: CommitRecord, state: CommitGroundTruth):
        # Render now, the state keeps changing while the writers run
        outputs = {
            VARIABLES_FILE: state.variables_list_as_string(),
            CODE_VARIABILITY_CSV: state.as_pc_csv_string(),
        }
        if self.options.extract_code_matching:
            outputs[CODE_MATCHING_CSV] = state.as_matching_csv_string()
        writers.submit(self._write_outputs, commit, outputs)
        self.metrics.commits_succeeded += 1

    def _write_outputs(self, commit: CommitRecord, outputs: Dict[str, str]):
        for name, text in outputs.items():
            self.sink.write_commit_file(commit.commit_hash, name, text)
        self.sink.write_commit_metadata(commit)
        # Logged last: resume skips every commit in the log
        self.sink.append_sentinel(SUCCESS_COMMIT_FILE, commit.commit_hash)
