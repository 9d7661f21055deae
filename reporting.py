"""
User-facing output of an extraction run: console progress, the manifest of
produced result files and a Markdown summary of the extracted ground truths.
"""

import hashlib
import json
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from extraction import (
    CODE_VARIABILITY_CSV,
    CODE_VARIABILITY_CSV_AFTER,
    EMPTY_COMMIT_FILE,
    ERROR_COMMIT_FILE,
    SENTINEL_FILES,
    SUCCESS_COMMIT_FILE,
    ExtractionMetrics,
)

VERSION = "1.0.0"
MANIFEST_SCHEMA_VERSION = "1.0.0"

colorama_init(autoreset=True)


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console output of an extraction run.

    The progress bar counts commits and carries the number of failed and
    empty commits seen so far. In verbose mode every failed commit is
    reported on its own line above the bar.
    """

    OUTCOME_COLORS = {
        "succeeded": Fore.GREEN,
        "failed": Fore.RED,
        "empty": Fore.YELLOW,
        "skipped": Fore.BLUE,
    }

    def __init__(self, quiet: bool = False, verbose: bool = False, use_colors: bool = True):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        print(f"\n{separator}")
        print(self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT))
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Dict = None):
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())
        print(self._colorize(f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT))

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(self, total: int, desc: str = "Extracting commits") -> Optional[tqdm]:
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=" commits",
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}{postfix}]",
        )

    def advance(self, progress_bar: Optional[tqdm], metrics: ExtractionMetrics):
        """Count one more processed commit on the bar."""
        if progress_bar is None:
            return
        progress_bar.set_postfix(failed=metrics.commits_failed, empty=metrics.commits_empty, refresh=False)
        progress_bar.update(1)

    def commit_failed(self, commit_hash: str, reason: str):
        if self.quiet or not self.verbose:
            return
        # tqdm.write keeps a running bar intact
        tqdm.write(self._colorize(f"✖ {commit_hash}: {reason}", Fore.RED))

    def info(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('ℹ️  ', Fore.BLUE)}{message}")

    def warning(self, message: str):
        if not self.quiet:
            print(f"{self._colorize('⚠️  ', Fore.YELLOW + Style.BRIGHT)}{message}")

    def error(self, message: str):
        """Always shown, on stderr."""
        print(self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT), file=sys.stderr)

    def success(self, message: str):
        if not self.quiet:
            print(self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, details: Dict[str, Any], metrics: ExtractionMetrics):
        """Run details followed by the outcome of every commit."""
        if self.quiet:
            return
        separator = self._colorize("=" * 70, Fore.CYAN)

        print(f"\n{separator}")
        print(self._colorize("📊 EXTRACTION SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        print(separator)
        for key, value in details.items():
            print(f"   {key}: {value}")

        print(f"\n   Commits: {metrics.commits_total:,}")
        outcomes = {
            "succeeded": metrics.commits_succeeded,
            "failed": metrics.commits_failed,
            "empty": metrics.commits_empty,
            "skipped": metrics.commits_skipped,
        }
        for outcome, count in outcomes.items():
            line = f"{outcome}: {count:,}"
            # Zero counts stay uncolored
            print(f"     {self._colorize(line, self.OUTCOME_COLORS[outcome]) if count else line}")
        print(f"   Files analyzed: {metrics.files_analyzed:,}")
        if metrics.memory_peak_mb:
            print(f"   Peak memory: {metrics.memory_peak_mb:.1f} MB")

        elapsed = time.time() - self.start_time
        print(f"\n{self._colorize(f'⏱️  Total time: {elapsed:.2f}s', Fore.YELLOW)}")
        print(f"{separator}\n")


# ============================================================================
# MANIFEST & REPORT
# ============================================================================


def _count_lines(path: str) -> int:
    with open(path, "r", encoding="utf-8") as f:
        return sum(1 for line in f if line.strip())


def generate_manifest(output_dir: str, mode: str, events_file: str, metrics: ExtractionMetrics) -> Dict:
    """Generate manifest.json describing the commit logs of an extraction run"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": MANIFEST_SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "events_file": str(events_file),
        "mode": mode,
        "metrics": metrics.to_dict(),
        "commit_logs": {},
    }

    for name in SENTINEL_FILES:
        full_path = os.path.join(output_dir, name)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()
                sha256 = hashlib.sha256(data).hexdigest()

            manifest["commit_logs"][name] = {
                "file": name,
                "commits": _count_lines(full_path),
                "file_size_bytes": len(data),
                "sha256": sha256,
            }

    manifest_path = os.path.join(output_dir, "manifest.json")
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)

    return manifest


class ExtractionReportGenerator:
    """
    Generates a Markdown report summarizing the extracted ground truths.

    The block CSVs of all successful commits are loaded with pandas to count
    blocks, annotated lines and files per line type.
    """

    def __init__(self, output_dir: str, mode: str, metrics: ExtractionMetrics):
        self.output_dir = Path(output_dir)
        self.mode = mode
        self.metrics = metrics
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def _read_log(self, name: str) -> List[str]:
        path = self.output_dir / name
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip()]

    def load_blocks(self) -> pd.DataFrame:
        """All blocks of the successful commits, one row per block with its commit hash."""
        csv_name = CODE_VARIABILITY_CSV if self.mode == "full" else CODE_VARIABILITY_CSV_AFTER
        frames = []
        for commit_hash in self._read_log(SUCCESS_COMMIT_FILE):
            csv_path = self.output_dir / "data" / commit_hash / csv_name
            if not csv_path.exists():
                continue
            frame = pd.read_csv(csv_path, sep=";", dtype=str, keep_default_na=False)
            frame["commit"] = commit_hash
            frames.append(frame)
        if not frames:
            return pd.DataFrame(
                columns=["Path", "File Condition", "Block Condition", "Presence Condition", "Line Type", "start", "end", "commit"]
            )
        blocks = pd.concat(frames, ignore_index=True)
        blocks["lines"] = blocks["end"].astype(int) - blocks["start"].astype(int) + 1
        return blocks

    def generate(self, output_filename: str = "extraction_report.md") -> Path:
        report_path = self.output_dir / output_filename
        blocks = self.load_blocks()

        lines = [
            "# Variability Ground Truth - Extraction Report",
            "",
            f"**Generated:** {self.timestamp}",
            f"**Mode:** {self.mode}",
            f"**Generator Version:** {VERSION}",
            "",
            "---",
            "",
            "## 📊 Commits",
            "",
            f"- **Total Commits:** {self.metrics.commits_total:,}",
            f"- **Succeeded:** {len(self._read_log(SUCCESS_COMMIT_FILE)):,}",
            f"- **Failed:** {len(self._read_log(ERROR_COMMIT_FILE)):,}",
            f"- **Empty:** {len(self._read_log(EMPTY_COMMIT_FILE)):,}",
            f"- **Skipped (already processed):** {self.metrics.commits_skipped:,}",
            "",
            "### Performance Metrics",
            "",
            f"- **Execution Time:** {self.metrics.total_time:.2f}s",
            f"- **Peak Memory:** {self.metrics.memory_peak_mb:.1f} MB",
            "",
            "---",
            "",
            "## 🧱 Blocks",
            "",
        ]

        if blocks.empty:
            lines.append("No ground truth blocks were extracted.")
            lines.append("")
        else:
            lines.append(f"- **Blocks:** {len(blocks):,}")
            lines.append(f"- **Files:** {blocks['Path'].nunique():,}")
            lines.append(f"- **Annotated lines:** {int(blocks['lines'].sum()):,}")
            lines.append("")
            lines.append("| Line Type | Blocks | Lines |")
            lines.append("|---|---|---|")
            by_type = blocks.groupby("Line Type")["lines"].agg(["count", "sum"]).sort_index()
            for line_type, row in by_type.iterrows():
                lines.append(f"| {line_type} | {int(row['count']):,} | {int(row['sum']):,} |")
            lines.append("")

        with open(report_path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines))

        return report_path
