#!/usr/bin/env python3

# ============================================================================
# SHARED UTILITIES FOR fMRI QUALITY-CONTROL PROCESSING
# Errors, logging, configuration, run-directory conventions and the
# per-stage status record used by run_fmri_qc.py and submit_study_qc.py.
#
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import copy
import json
import logging

import yaml


class QCError(Exception):
    """Raised for unrecoverable QC pipeline errors."""
    pass


class QCInputError(QCError):
    """Raised when a required input volume is missing or empty."""
    pass


class QCStageError(QCError):
    """Raised when a stage finishes without producing its artifacts."""
    pass


# ============================================================================
# Section A: Logging
# ============================================================================

def setup_logging(name, log_file=None, verbose=False):
    """
    Configure a named logger writing to stdout and, optionally, a log file.

    Parameters
    ----------
    name : str
        Logger name (usually the calling script).
    log_file : str or None
        If set, messages are also appended to this file.
    verbose : bool
        Emit DEBUG messages when True, INFO otherwise.

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    logger.addHandler(console)

    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    return logger


# ============================================================================
# Section B: Configuration
# ============================================================================

SAMPLE_TYPES = ("invivo", "phantom")
DEPENDENCY_POLICIES = ("all-terminal", "all-success")
SCHEDULERS = ("fsl_sub", "slurm")

# Source series and scalar summary used by each pipeline variant
VARIANTS = {
    "filtered": {"stat_source": "filtered", "tsfnr_summary": "median"},
    "unfiltered": {"stat_source": "motion", "tsfnr_summary": "mean"},
}

DEFAULT_CONFIG = {
    "pipeline": {
        "variant": "filtered",
        "highpass_sigma_s": 50.0,
        "kernel_radius_mm": 5.0,
        "threshold_percentile": 99.0,
        "threshold_fraction": 0.1,
        "run_dir_suffix": "_qc",
        "slice_ranges": {
            "tmean": [0.0, 2000.0],
            "tsd": [0.0, 20.0],
            "tsfnr": [0.0, 200.0],
            "labels": [0.0, 3.0],
        },
    },
    "batch": {
        "raw_pattern": "rawdata/sub-*/ses-*/func/*_bold.nii.gz",
        "qc_dir": "derivatives/fmriqc",
        "scheduler": "fsl_sub",
        "queue": "short.q",
        "dependency_policy": "all-terminal",
    },
}


def _merge_config(base, override, path=""):
    """Recursively merge override into a copy of base, rejecting unknown keys."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        where = f"{path}.{key}" if path else key
        if key not in base:
            raise QCError(f"Unknown config key '{where}'.")
        if isinstance(base[key], dict) and key != "slice_ranges":
            if not isinstance(value, dict):
                raise QCError(f"Config key '{where}' must be a mapping.")
            merged[key] = _merge_config(base[key], value, where)
        elif key == "slice_ranges":
            if not isinstance(value, dict):
                raise QCError(f"Config key '{where}' must be a mapping.")
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def load_qc_config(config_path, logger):
    """
    Load the QC YAML config (optional) and validate it over the defaults.

    Parameters
    ----------
    config_path : str or None
        Path to a YAML config. None uses the built-in defaults.
    logger : logging.Logger

    Returns
    -------
    dict
        Validated config dictionary with 'pipeline' and 'batch' sections.
    """
    user_config = {}
    if config_path is not None:
        if not os.path.isfile(config_path):
            raise QCError(f"QC config not found: {config_path}")

        with open(config_path, "r") as f:
            try:
                user_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise QCError(f"YAML parse error in {config_path}: {e}")

        if user_config is None:
            raise QCError(f"Config file is empty: {config_path}")
        if not isinstance(user_config, dict):
            raise QCError(f"Config file must contain a mapping: {config_path}")

    config = _merge_config(DEFAULT_CONFIG, user_config)
    pipeline = config["pipeline"]
    batch = config["batch"]

    if pipeline["variant"] not in VARIANTS:
        raise QCError(
            f"pipeline.variant must be one of {sorted(VARIANTS)}, "
            f"got '{pipeline['variant']}'."
        )

    for key in ("highpass_sigma_s", "kernel_radius_mm", "threshold_fraction"):
        val = pipeline[key]
        if not isinstance(val, (int, float)) or val <= 0:
            raise QCError(f"pipeline.{key} must be a positive number, got: {val}")

    pct = pipeline["threshold_percentile"]
    if not isinstance(pct, (int, float)) or not 0 < pct <= 100:
        raise QCError(f"pipeline.threshold_percentile must be in (0, 100], got: {pct}")

    suffix = pipeline["run_dir_suffix"]
    if not isinstance(suffix, str) or not suffix or os.sep in suffix:
        raise QCError(f"pipeline.run_dir_suffix must be a plain non-empty string, got: {suffix!r}")

    for name, rng in pipeline["slice_ranges"].items():
        if (not isinstance(rng, (list, tuple)) or len(rng) != 2
                or not all(isinstance(v, (int, float)) for v in rng)
                or rng[0] >= rng[1]):
            raise QCError(
                f"pipeline.slice_ranges.{name} must be [low, high] with low < high, got: {rng}"
            )

    if batch["scheduler"] not in SCHEDULERS:
        raise QCError(
            f"batch.scheduler must be one of {SCHEDULERS}, got '{batch['scheduler']}'."
        )
    if batch["dependency_policy"] not in DEPENDENCY_POLICIES:
        raise QCError(
            f"batch.dependency_policy must be one of {DEPENDENCY_POLICIES}, "
            f"got '{batch['dependency_policy']}'."
        )
    for key in ("raw_pattern", "qc_dir", "queue"):
        if not isinstance(batch[key], str) or not batch[key]:
            raise QCError(f"batch.{key} must be a non-empty string.")
    if os.path.isabs(batch["raw_pattern"]) or os.path.isabs(batch["qc_dir"]):
        raise QCError("batch.raw_pattern and batch.qc_dir must be relative to the study root.")

    logger.debug("QC config: %s", json.dumps(config, sort_keys=True))
    return config


def validate_sample_type(sample_type):
    """Return the normalized sample type, defaulting to in-vivo."""
    if sample_type is None:
        return "invivo"
    normalized = sample_type.strip().lower().replace("-", "").replace("_", "")
    if normalized not in SAMPLE_TYPES:
        raise QCError(
            f"Sample type must be one of {SAMPLE_TYPES}, got '{sample_type}'."
        )
    return normalized


# ============================================================================
# Section C: Numeric Conventions
# ============================================================================

def highpass_sigma_volumes(tr, sigma_seconds=50.0):
    """
    Convert the high-pass filter time constant from seconds to volumes.

    sigma_vols = sigma_seconds / TR, e.g. TR=2.0 s -> 25.0 volumes.
    """
    if tr is None or tr <= 0:
        raise QCError(f"TR must be positive to convert the filter sigma, got: {tr}")
    return sigma_seconds / tr


def foreground_threshold(p_high, fraction=0.1):
    """Intensity threshold: fraction of the high-percentile intensity (0.1 * P99)."""
    return fraction * p_high


# ============================================================================
# Section D: Run Directory Conventions
# ============================================================================

# Fixed artifact file names inside every run directory
ARTIFACTS = {
    "motion": "mcf.nii.gz",
    "motion_par": "mcf.par",
    "filtered": "mcf_filt.nii.gz",
    "tmean": "tmean.nii.gz",
    "tsd": "tsd.nii.gz",
    "tsfnr": "tsfnr.nii.gz",
    "labels": "labels.nii.gz",
    "dvars": "dvars.txt",
    "timeseries": "timeseries.txt",
    "stats": "stats.csv",
    "summary": "summary.csv",
    "report": "report.html",
    "report_figure": "report_timeseries.png",
}

# Images rendered as orthogonal slices (stage 7); png name = <key>.png
SLICE_IMAGES = ("tmean", "tsd", "tsfnr", "labels")

LABEL_FOREGROUND = 1
LABEL_GHOST = 2
LABEL_AIR = 3


def artifact_path(run_dir, key):
    return os.path.join(run_dir, ARTIFACTS[key])


def strip_nifti_ext(path):
    """Remove a .nii or .nii.gz extension from a file name or path."""
    for ext in (".nii.gz", ".nii"):
        if path.endswith(ext):
            return path[: -len(ext)]
    return path


def default_run_dir_name(volume_path, suffix="_qc"):
    """Run directory name: input basename without extension plus suffix."""
    return strip_nifti_ext(os.path.basename(volume_path)) + suffix


def is_nonempty_file(path):
    """Completion marker: the file exists and has non-zero size."""
    return os.path.isfile(path) and os.path.getsize(path) > 0


# ============================================================================
# Section E: Stage Status Record
# ============================================================================

STATUS_FILENAME = "qc_status.json"
PENDING = "pending"
DONE = "done"


class StageRecord:
    """
    Per-run JSON record of stage states (pending/done).

    Artifact presence remains the completion test; this record mirrors it so
    partially complete run directories can be inspected without re-deriving
    every artifact name.
    """

    def __init__(self, run_dir, stage_names):
        self.path = os.path.join(run_dir, STATUS_FILENAME)
        self.data = {
            "source": None,
            "sample_type": None,
            "variant": None,
            "stages": {name: PENDING for name in stage_names},
            "last_error": None,
        }
        if os.path.isfile(self.path):
            with open(self.path) as f:
                try:
                    saved = json.load(f)
                except json.JSONDecodeError:
                    saved = {}
            if not isinstance(saved, dict):
                saved = {}
            stages = saved.get("stages") or {}
            for name in stage_names:
                if stages.get(name) in (PENDING, DONE):
                    self.data["stages"][name] = stages[name]
            for key in ("source", "sample_type", "variant", "last_error"):
                self.data[key] = saved.get(key)

    @property
    def source(self):
        return self.data["source"]

    def state(self, stage):
        return self.data["stages"][stage]

    def mark(self, stage, state, error=None):
        self.data["stages"][stage] = state
        self.data["last_error"] = error
        self.save()

    def save(self):
        tmp = self.path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(self.data, f, indent=2)
        os.replace(tmp, self.path)


def read_stage_status(run_dir):
    """
    Return the saved stage states for a run directory ({} if none).

    Raises
    ------
    QCError
        If the status file is not a readable JSON mapping.
    """
    path = os.path.join(run_dir, STATUS_FILENAME)
    if not os.path.isfile(path):
        return {}
    with open(path) as f:
        try:
            saved = json.load(f)
        except json.JSONDecodeError as e:
            raise QCError(f"Unreadable stage record {path}: {e}")
    if not isinstance(saved, dict):
        raise QCError(f"Unreadable stage record {path}: not a mapping")
    return saved.get("stages", {})
