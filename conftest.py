import json

import pytest

from groundtruth import Condition, LineAnnotation, MutableFileGroundTruth
from reporting import ProgressReporter


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


def artifact_line(line_number, condition="True", variables=()):
    return LineAnnotation(
        line_number, Condition(condition), Condition(condition), "artifact", frozenset(variables)
    )


def event(diff_type, node_type, before=None, after=None, fm="True", pc="True", variables=()):
    """A diff event as exported by the diff parser."""
    return {
        "diff_type": diff_type,
        "node_type": node_type,
        "before": before,
        "after": after,
        "feature_mapping": fm,
        "presence_condition": pc,
        "variables": list(variables),
    }


def patch(change_type, path, events, path_after=None):
    return {
        "change_type": change_type,
        "path_before": path,
        "path_after": path_after or path,
        "events": events,
    }


def commit(commit_hash, parents, patches, message="", parse_failed=False):
    return {
        "commit": commit_hash,
        "parents": parents,
        "message": message or f"commit {commit_hash}",
        "patches": patches,
        "parse_failed": parse_failed,
    }


@pytest.fixture
def three_line_gt():
    """Complete ground truth of a.c with three artifact lines under True."""
    mutable = MutableFileGroundTruth("a.c")
    for line_number in (1, 2, 3):
        mutable.insert(artifact_line(line_number))
    return mutable.finish_mutation()


@pytest.fixture
def worked_history():
    """
    Four commits of a.c (and b.c):

    c1 adds a.c with three lines.
    c2 wraps a new line after line 1 into #ifdef A ... #endif (6 lines).
    c3 removes the #ifdef block again (3 lines).
    c4 branches off c2 and adds b.c with two lines.
    """
    c1 = commit("c1", [], [
        patch("ADD", "a.c", [
            event("NON", "root", before=[1, 1], after=[1, 4]),
            event("ADD", "artifact", after=[1, 4]),
        ]),
    ])
    c2 = commit("c2", ["c1"], [
        patch("MODIFY", "a.c", [
            event("NON", "root", before=[1, 4], after=[1, 7]),
            event("NON", "artifact", before=[1, 2], after=[1, 2]),
            event("ADD", "if", after=[2, 4], fm="A", pc="A", variables=["A"]),
            event("ADD", "artifact", after=[3, 4], fm="A", pc="A", variables=["A"]),
            event("NON", "artifact", before=[2, 4], after=[5, 7]),
        ]),
    ])
    c3 = commit("c3", ["c2"], [
        patch("MODIFY", "a.c", [
            event("NON", "root", before=[1, 7], after=[1, 4]),
            event("NON", "artifact", before=[1, 2], after=[1, 2]),
            event("REM", "if", before=[2, 4], fm="A", pc="A", variables=["A"]),
            event("REM", "artifact", before=[3, 4], fm="A", pc="A", variables=["A"]),
            event("NON", "artifact", before=[5, 7], after=[2, 4]),
        ]),
    ])
    c4 = commit("c4", ["c2"], [
        patch("ADD", "b.c", [
            event("NON", "root", before=[1, 1], after=[1, 3]),
            event("ADD", "artifact", after=[1, 3], fm="B", pc="B", variables=["B"]),
        ]),
    ])
    return [c1, c2, c3, c4]


@pytest.fixture
def write_events(tmp_path):
    """Write commits as a JSON lines events file and return its path."""

    def _write(commits, name="events.jsonl", extra_lines=()):
        path = tmp_path / name
        with open(path, "w", encoding="utf-8") as f:
            for data in commits:
                f.write(json.dumps(data) + "\n")
            for line in extra_lines:
                f.write(line + "\n")
        return path

    return _write
