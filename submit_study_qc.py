#!/usr/bin/env python3

# ============================================================================
# STUDY-LEVEL BATCH SUBMISSION FOR fMRI QC
#
# Discovers every functional volume under a study's raw-data tree, writes
# one run_fmri_qc.py command per volume to a task file, submits it as a
# cluster array job, and submits an aggregation job that waits for the
# array to finish and concatenates every run's summary row into the study
# table <qc_root>/study_qc_summary.csv.
#
# Usage:
#   python submit_study_qc.py <study_root> [invivo|phantom] \
#     [--config qc.yaml] [--dry-run] [--log-file submit.log]
#
#   # Aggregation only (what the dependent job runs)
#   python submit_study_qc.py <study_root> --aggregate [--config qc.yaml]
#
# Layout (defaults, see example_qc_config.yaml):
#   <study_root>/rawdata/sub-*/ses-*/func/*_bold.nii.gz        inputs
#   <study_root>/derivatives/fmriqc/sub-*/ses-*/<name>_qc/     run dirs
#   <study_root>/derivatives/fmriqc/logs/                      recreated
#
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import csv
import glob as globmod
import stat
import time
import shlex
import shutil
import argparse

from qc_scheduler import build_qc_graph, make_scheduler, submit_graph
from qc_stats import SUMMARY_COLUMNS
from qc_utils import (
    QCError,
    ARTIFACTS,
    DONE,
    STATUS_FILENAME,
    setup_logging,
    load_qc_config,
    validate_sample_type,
    default_run_dir_name,
    read_stage_status,
)

# ---------------------------------------------------------------------------
# Module-level path resolution (jobs call these scripts by absolute path)
# ---------------------------------------------------------------------------
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_RUNNER_SCRIPT = os.path.join(_THIS_DIR, "run_fmri_qc.py")
_THIS_SCRIPT = os.path.join(_THIS_DIR, "submit_study_qc.py")

TASK_FILENAME = "qc_jobs.txt"
AGGREGATE_FILENAME = "qc_aggregate.sh"
STUDY_TABLE_FILENAME = "study_qc_summary.csv"
LOG_DIRNAME = "logs"


# ============================================================================
# Discovery
# ============================================================================

def discover_volumes(study_root, pattern, logger):
    """
    Find all functional volumes matching pattern under study_root.

    Zero-byte matches are reported and excluded.

    Parameters
    ----------
    study_root : str
    pattern : str
        Glob relative to study_root (e.g. "rawdata/sub-*/ses-*/func/*_bold.nii.gz").
    logger : logging.Logger

    Returns
    -------
    tuple of (list of str, list of str)
        (valid volume paths, invalid zero-byte paths), both sorted.

    Raises
    ------
    QCError
        If the study root does not exist or no valid volume is found.
    """
    if not os.path.isdir(study_root):
        raise QCError(f"Study root not found: {study_root}")

    full_pattern = os.path.join(os.path.abspath(study_root), pattern)
    candidates = sorted(p for p in globmod.glob(full_pattern) if os.path.isfile(p))

    valid, invalid = [], []
    for path in candidates:
        if os.path.getsize(path) == 0:
            logger.warning("Invalid (empty) functional volume - not queued: %s", path)
            invalid.append(path)
        else:
            valid.append(path)

    if not valid:
        raise QCError(
            f"No valid functional volumes found under {study_root} "
            f"(pattern: {pattern}; {len(invalid)} empty file(s))."
        )

    logger.info(
        "Discovered %d valid volume(s) (%d invalid) under %s",
        len(valid), len(invalid), study_root
    )
    return valid, invalid


def plan_runs(volumes, study_root, qc_root, suffix, logger, run_dir_namer=None):
    """
    Assign each volume its output root and run directory.

    The output root mirrors the volume's sub-*/ses-* directories under the
    QC root.

    Returns
    -------
    list of dict
        {"volume", "output_root", "run_dir"} in discovery order.

    Raises
    ------
    QCError
        If two volumes would share a run directory.
    """
    if run_dir_namer is None:
        def run_dir_namer(path):
            return default_run_dir_name(path, suffix)

    study_root = os.path.abspath(study_root)
    plans = []
    owners = {}

    for volume in volumes:
        rel = os.path.relpath(os.path.dirname(os.path.abspath(volume)), study_root)
        entities = [
            part for part in rel.split(os.sep)
            if part.startswith("sub-") or part.startswith("ses-")
        ]
        output_root = os.path.join(qc_root, *entities)
        run_dir = os.path.join(output_root, run_dir_namer(volume))

        if run_dir in owners:
            raise QCError(
                f"Run directory collision: {owners[run_dir]} and {volume} "
                f"both map to {run_dir}."
            )
        owners[run_dir] = volume
        plans.append({"volume": volume, "output_root": output_root, "run_dir": run_dir})

    logger.info("Planned %d run director(ies) under %s", len(plans), qc_root)
    return plans


# ============================================================================
# Job Scripts
# ============================================================================

def _python_cmd(script, args):
    return " ".join(shlex.quote(str(a)) for a in [sys.executable, script] + list(args))


def write_job_script(plans, sample_type, config_path, task_file, logger):
    """Write one run_fmri_qc.py command line per planned volume."""
    extra = ["--config", os.path.abspath(config_path)] if config_path else []
    with open(task_file, "w") as f:
        for plan in plans:
            args = [plan["volume"], plan["output_root"], sample_type] + extra
            f.write(_python_cmd(_RUNNER_SCRIPT, args) + "\n")
    logger.info("Task file written (%d job(s)): %s", len(plans), task_file)
    return task_file


def write_aggregate_script(study_root, config_path, script_path, logger):
    """Write the shell script the dependent aggregation job executes."""
    args = [os.path.abspath(study_root), "--aggregate"]
    if config_path:
        args += ["--config", os.path.abspath(config_path)]

    with open(script_path, "w") as f:
        f.write("#!/bin/bash\n")
        f.write("set -e\n")
        f.write(_python_cmd(_THIS_SCRIPT, args) + "\n")
    os.chmod(script_path, os.stat(script_path).st_mode | stat.S_IXUSR | stat.S_IXGRP)
    logger.info("Aggregation script written: %s", script_path)
    return script_path


# ============================================================================
# Aggregation
# ============================================================================

def find_summary_files(qc_root):
    """All run-directory summary rows under qc_root, in sorted path order."""
    pattern = os.path.join(qc_root, "**", ARTIFACTS["summary"])
    log_dir = os.path.join(qc_root, LOG_DIRNAME) + os.sep
    return sorted(
        p for p in globmod.glob(pattern, recursive=True)
        if not p.startswith(log_dir)
    )


def _report_incomplete_runs(qc_root, logger):
    """Warn about run directories whose stage record is not fully done."""
    pattern = os.path.join(qc_root, "**", STATUS_FILENAME)
    n_incomplete = 0
    for status_path in sorted(globmod.glob(pattern, recursive=True)):
        run_dir = os.path.dirname(status_path)
        try:
            status = read_stage_status(run_dir)
        except QCError as e:
            n_incomplete += 1
            logger.warning("Skipping stage record: %s", e)
            continue
        pending = [s for s, state in status.items() if state != DONE]
        if pending:
            n_incomplete += 1
            logger.warning(
                "Incomplete run %s - pending stage(s): %s", run_dir, ", ".join(pending)
            )
    return n_incomplete


def aggregate_summaries(qc_root, logger):
    """
    Build the study table: fixed header plus every run's summary row.

    Rows are copied verbatim in sorted run-directory order; a failed run
    contributes whatever summary row it left behind (possibly none).

    Returns
    -------
    tuple of (str, int)
        (study table path, number of rows appended)
    """
    if not os.path.isdir(qc_root):
        raise QCError(f"QC root not found: {qc_root}")

    out_path = os.path.join(qc_root, STUDY_TABLE_FILENAME)
    summary_files = find_summary_files(qc_root)

    n_rows = 0
    tmp = out_path + ".tmp"
    with open(tmp, "w", newline="") as out:
        csv.writer(out).writerow(SUMMARY_COLUMNS)
        for path in summary_files:
            with open(path) as f:
                for line in f:
                    if not line.strip():
                        continue
                    out.write(line if line.endswith("\n") else line + "\n")
                    n_rows += 1
    os.replace(tmp, out_path)

    n_incomplete = _report_incomplete_runs(qc_root, logger)
    logger.info(
        "Study table written: %s (%d row(s) from %d run(s); %d incomplete run(s))",
        out_path, n_rows, len(summary_files), n_incomplete
    )
    return out_path, n_rows


# ============================================================================
# Submission
# ============================================================================

def submit_study(study_root, sample_type, config, config_path, logger, scheduler=None, dry_run=False):
    """
    Discover volumes, write job scripts and submit the array + aggregation jobs.

    Parameters
    ----------
    study_root : str
    sample_type : str
    config : dict
        Validated QC config.
    config_path : str or None
        Forwarded to every job so runs use the same settings.
    logger : logging.Logger
    scheduler : qc_scheduler.Scheduler or None
        Defaults to the scheduler named in batch.scheduler.
    dry_run : bool
        Log the plan without writing or submitting anything.

    Returns
    -------
    dict
        {"plans", "invalid", "job_ids"}; job_ids is empty for dry runs.
    """
    batch = config["batch"]
    study_root = os.path.abspath(study_root)
    qc_root = os.path.join(study_root, batch["qc_dir"])

    volumes, invalid = discover_volumes(study_root, batch["raw_pattern"], logger)
    plans = plan_runs(
        volumes, study_root, qc_root, config["pipeline"]["run_dir_suffix"], logger
    )

    if dry_run:
        for plan in plans:
            logger.info("[DRY RUN] %s -> %s", plan["volume"], plan["run_dir"])
        logger.info(
            "[DRY RUN] Would submit %d array task(s) and 1 aggregation job "
            "(scheduler: %s, queue: %s, policy: %s)",
            len(plans), batch["scheduler"], batch["queue"], batch["dependency_policy"]
        )
        return {"plans": plans, "invalid": invalid, "job_ids": {}}

    # Logs are not preserved across batch submissions
    log_dir = os.path.join(qc_root, LOG_DIRNAME)
    if os.path.isdir(log_dir):
        shutil.rmtree(log_dir)
    os.makedirs(log_dir)

    task_file = write_job_script(
        plans, sample_type, config_path, os.path.join(qc_root, TASK_FILENAME), logger
    )
    aggregate_script = write_aggregate_script(
        study_root, config_path, os.path.join(qc_root, AGGREGATE_FILENAME), logger
    )

    if scheduler is None:
        scheduler = make_scheduler(batch["scheduler"], batch["queue"], log_dir, logger)

    graph = build_qc_graph(task_file, aggregate_script, batch["dependency_policy"])
    job_ids = submit_graph(graph, scheduler, logger)

    return {"plans": plans, "invalid": invalid, "job_ids": job_ids}


# ============================================================================
# Main
# ============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        description="Submit fMRI QC for every functional volume in a study.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Plan only
  python submit_study_qc.py /data/study invivo --dry-run

  # Submit phantom QC with a custom config
  python submit_study_qc.py /data/phantom_study phantom --config qc.yaml
        """,
    )
    parser.add_argument("study_root", nargs="?", help="Study root directory.")
    parser.add_argument(
        "sample_type", nargs="?", default="invivo",
        help="'invivo' (default) or 'phantom'.",
    )
    parser.add_argument("--config", default=None, help="Optional QC YAML config.")
    parser.add_argument(
        "--aggregate", action="store_true",
        help="Only build the study summary table from existing run directories.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Plan without writing or submitting.")
    parser.add_argument("--log-file", default=None, help="Optional path to a log file.")
    parser.add_argument("--verbose", action="store_true", help="Log scheduler commands.")
    return parser


def main(argv=None, scheduler=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Missing positionals: usage only, no writes, conventional success
    if args.study_root is None:
        parser.print_usage()
        return 0

    logger = setup_logging("submit_study_qc", log_file=args.log_file, verbose=args.verbose)
    start_time = time.time()

    try:
        config = load_qc_config(args.config, logger)
        qc_root = os.path.join(os.path.abspath(args.study_root), config["batch"]["qc_dir"])

        if args.aggregate:
            aggregate_summaries(qc_root, logger)
            return 0

        sample_type = validate_sample_type(args.sample_type)

        logger.info("=" * 60)
        logger.info("Study root  : %s", os.path.abspath(args.study_root))
        logger.info("QC root     : %s", qc_root)
        logger.info("Sample type : %s", sample_type)
        logger.info("Scheduler   : %s (queue %s)", config["batch"]["scheduler"], config["batch"]["queue"])
        if args.dry_run:
            logger.info("Mode        : DRY RUN")
        logger.info("=" * 60)

        result = submit_study(
            args.study_root, sample_type, config, args.config, logger,
            scheduler=scheduler, dry_run=args.dry_run,
        )

    except QCError as e:
        logger.error("Fatal: %s", e)
        return 1

    logger.info(
        "Batch submitted: %d volume(s), %d invalid, jobs: %s",
        len(result["plans"]), len(result["invalid"]), result["job_ids"] or "none (dry run)"
    )
    logger.info("Total runtime: %.2f seconds", time.time() - start_time)
    return 0


if __name__ == "__main__":
    sys.exit(main())
