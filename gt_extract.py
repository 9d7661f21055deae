#!/usr/bin/env python3
"""
Variability Ground Truth Extractor

Reads the diff events of a repository's history (as exported by the diff
parser) and writes the variability ground truth of every commit:

- fast mode: ground truth before and after each commit, commits in parallel
- full mode: complete ground truth of every commit, carried along the
  first-parent history
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml

from extraction import (
    ExtractionOptions,
    FastExtraction,
    FullExtraction,
    JsonlDiffEventSource,
)
from groundtruth import InvariantViolation
from reporting import VERSION, ExtractionReportGenerator, ProgressReporter, generate_manifest

logger = logging.getLogger(__name__)

CONFIG_FILE_NAMES = [
    ".vevos-extraction.yaml",
    ".vevos-extraction.yml",
    ".vevos-extraction.json",
]

DEFAULTS = {
    "mode": "fast",
    "num_threads": os.cpu_count() or 4,
    "batch_size": 256,
    "ignore_pc_changes": False,
    "extract_code_matching": False,
    "carry_forward": True,
    "print_enabled": False,
    "report": True,
}


def configure_logging(quiet: bool = False, verbose: bool = False):
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.
    Supports .vevos-extraction.yaml and .vevos-extraction.json
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            return yaml.safe_load(f) or {}
        elif file_ext == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")


def find_config_file(events_dir: str) -> Optional[str]:
    """
    Auto-discover configuration file next to the events file or in the current directory.
    """
    search_paths = [
        events_dir,
        os.getcwd(),
    ]

    for search_dir in search_paths:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Preset > Defaults
    """

    PRESETS = {
        "fast": {"mode": "fast", "extract_code_matching": True},
        "full": {"mode": "full", "carry_forward": True, "extract_code_matching": True},
        "quick": {"mode": "fast", "extract_code_matching": False, "batch_size": 1024, "report": False},
    }

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        events_dir: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.config_source = config_path

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(events_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_source = auto_path
                    logger.info("Auto-discovered configuration: %s", auto_path)
                except (OSError, ValueError, yaml.YAMLError) as e:
                    logger.warning("Found config file but failed to load: %s", e)

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

        final_preset_name = preset_name or self.config.get("preset")
        self.preset = self._get_preset(final_preset_name)

    def _get_preset(self, name: Optional[str]) -> Dict[str, Any]:
        if not name:
            return {}
        if name not in self.PRESETS:
            raise click.BadParameter(f"Unknown preset: {name}", param_hint="--preset")
        return self.PRESETS[name]

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        if key in DEFAULTS:
            return DEFAULTS[key]
        return default


def build_options(resolver: ConfigResolver, output_dir: str) -> ExtractionOptions:
    cache_dir = resolver.get("cache_dir") or os.path.join(output_dir, "cache")
    return ExtractionOptions(
        num_threads=int(resolver.get("num_threads")),
        batch_size=int(resolver.get("batch_size")),
        ignore_pc_changes=bool(resolver.get("ignore_pc_changes")),
        extract_code_matching=bool(resolver.get("extract_code_matching")),
        print_enabled=bool(resolver.get("print_enabled")),
        carry_forward=bool(resolver.get("carry_forward")),
        memory_limit_mb=resolver.get("memory_limit"),
        cache_dir=cache_dir,
    )


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, resolve_path=True))
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Results directory (default: ground_truth_output)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(["fast", "full", "quick"]),
    help="Use predefined extraction configuration",
)
@click.option("--mode", type=click.Choice(["fast", "full"]), help="Extraction mode")
# Performance
@click.option("--threads", "num_threads", type=int, help="Number of worker threads")
@click.option("--batch-size", type=int, help="Commits per worker batch")
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option("--cache-dir", type=click.Path(file_okay=False), help="Ground truth cache directory (full mode)")
# Extraction
@click.option(
    "--ignore-pc-changes",
    is_flag=True,
    default=None,
    help="Keep conditions of unchanged artifacts and mark macro lines with 0",
)
@click.option(
    "--extract-code-matching",
    is_flag=True,
    default=None,
    help="Also write the line matching between file versions",
)
@click.option(
    "--carry-forward/--no-carry-forward",
    default=None,
    help="Full mode: carry unchanged lines over from the parent commit",
)
@click.option("--print-enabled", is_flag=True, default=None, help="Log every extracted ground truth")
@click.option("--report/--no-report", default=None, help="Write extraction_report.md")
# Output Control
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress information",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be extracted without running the extraction",
)
@click.version_option(version=VERSION)
def main(events_file, output, config, preset, **kwargs):
    """
    Variability Ground Truth Extractor

    EVENTS_FILE holds one JSON object per commit (oldest first) with the
    diff events of all changed files.
    """
    events_dir = os.path.dirname(events_file)
    resolver = ConfigResolver(kwargs, config, preset, events_dir)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    dry_run = resolver.get("dry_run", False)

    configure_logging(quiet=quiet, verbose=verbose)
    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    mode = resolver.get("mode")
    output_dir = output or resolver.get("output") or "ground_truth_output"
    options = build_options(resolver, output_dir)
    write_report = resolver.get("report")

    if dry_run:
        reporter.info("DRY RUN MODE - No extraction will be performed")
        reporter.info(f"Events file: {events_file}")
        reporter.info(f"Mode: {mode}")
        reporter.info(f"Output directory: {output_dir}")
        reporter.info(f"Threads: {options.num_threads}, batch size: {options.batch_size}")
        if mode == "full":
            reporter.info(f"Cache directory: {options.cache_dir}")
            reporter.info(f"Carry forward: {options.carry_forward}")
        if options.memory_limit_mb:
            reporter.info(f"Memory limit: {options.memory_limit_mb} MB")
        reporter.info(f"Code matching: {options.extract_code_matching}")
        return

    os.makedirs(output_dir, exist_ok=True)
    reporter.info(f"Output directory: {output_dir}")

    extraction_class = FullExtraction if mode == "full" else FastExtraction
    extraction = extraction_class(output_dir, options, reporter)
    source = JsonlDiffEventSource(events_file)

    try:
        reporter.stage_start("Extraction", f"{mode} mode, events from {events_file}")
        metrics = extraction.run(source)
        reporter.stage_complete("Extraction", metrics.to_dict())
    except InvariantViolation as e:
        logger.exception("Invariant violated during extraction")
        reporter.error(f"Ground truth invariant violated: {e}")
        sys.exit(1)
    except (OSError, MemoryError) as e:
        reporter.error(f"Extraction failed: {e}")
        sys.exit(1)

    generate_manifest(output_dir, mode, events_file, metrics)

    if write_report:
        reporter.stage_start("Reporting", "Generating extraction report...")
        report_path = ExtractionReportGenerator(output_dir, mode, metrics).generate()
        reporter.stage_complete("Reporting", {"Report": str(report_path)})

    if extraction.errors:
        with open(Path(output_dir) / "extraction_errors.txt", "w", encoding="utf-8") as f:
            f.write("\n".join(extraction.errors))
        reporter.warning("Errors logged to extraction_errors.txt")

    reporter.summary(
        {
            "Events file": events_file,
            "Output directory": output_dir,
            "Mode": mode,
        },
        metrics,
    )
    reporter.success("Extraction complete")


if __name__ == "__main__":
    main()
