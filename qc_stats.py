#!/usr/bin/env python3

# ============================================================================
# QC STATISTICS, SUMMARY ROWS AND REPORTS
# Turns the per-run artifacts (region timecourses, DVARS, motion parameters)
# into the fixed-column statistics table, the one-line summary row and a
# simple HTML report.
#
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import csv
import html

import numpy as np
import pandas as pd

from qc_utils import QCError, ARTIFACTS, SLICE_IMAGES, artifact_path, is_nonempty_file


# Order matters: this is the column order of stats.csv and the study table
METRICS = ("foreground", "ghost", "air", "dvars", "fd", "fr")
REGION_METRICS = ("foreground", "ghost", "air")

STATS_COLUMNS = [
    f"{m}_{field}" for m in METRICS for field in ("thresh", "mean", "pct_outliers")
]
SUMMARY_COLUMNS = ["run_id", "tr_s", "n_vols", "tsfnr"] + STATS_COLUMNS


# ============================================================================
# Section A: Timecourse Metrics
# ============================================================================

def framewise_motion(params):
    """
    Framewise displacement and rotation from a motion-parameter table.

    Parameters
    ----------
    params : array-like, shape (n_vols, 6)
        mcflirt .par layout: three rotations (radians) then three
        translations (mm).

    Returns
    -------
    tuple of (np.ndarray, np.ndarray)
        (FD in mm, FR in degrees), each of length n_vols with frame 0 = 0.
    """
    params = np.atleast_2d(np.asarray(params, dtype=float))
    if params.shape[1] != 6:
        raise QCError(
            f"Motion parameter table must have 6 columns, got {params.shape[1]}."
        )

    delta = np.abs(np.diff(params, axis=0))
    fr = np.concatenate([[0.0], np.degrees(delta[:, :3].sum(axis=1))])
    fd = np.concatenate([[0.0], delta[:, 3:].sum(axis=1)])
    return fd, fr


def outlier_triple(values):
    """
    Threshold, mean and percent outliers of a timecourse.

    The threshold is the upper Tukey fence (Q3 + 1.5 * IQR); outliers are
    frames strictly above it.

    Returns
    -------
    tuple of (float, float, float)
        NaNs when the timecourse is empty or entirely missing.
    """
    x = np.asarray(values, dtype=float).ravel()
    x = x[np.isfinite(x)]
    if x.size == 0:
        return float("nan"), float("nan"), float("nan")

    q1, q3 = np.percentile(x, [25, 75])
    thresh = q3 + 1.5 * (q3 - q1)
    pct = 100.0 * np.count_nonzero(x > thresh) / x.size
    return float(thresh), float(x.mean()), float(pct)


def _load_columns(path, n_columns):
    """Load a whitespace table, padding missing columns with NaN."""
    data = np.loadtxt(path, ndmin=2)
    if data.shape[1] < n_columns:
        pad = np.full((data.shape[0], n_columns - data.shape[1]), np.nan)
        data = np.hstack([data, pad])
    return data[:, :n_columns]


def load_metric_timecourses(run_dir):
    """
    Load every per-frame metric used by the statistics table.

    Returns
    -------
    dict
        {metric: np.ndarray} for each entry in METRICS.
    """
    for key in ("timeseries", "dvars", "motion_par"):
        path = artifact_path(run_dir, key)
        if not is_nonempty_file(path):
            raise QCError(f"Statistics input missing or empty: {path}")

    regions = _load_columns(artifact_path(run_dir, "timeseries"), len(REGION_METRICS))
    dvars = np.loadtxt(artifact_path(run_dir, "dvars"), ndmin=1)
    fd, fr = framewise_motion(np.loadtxt(artifact_path(run_dir, "motion_par"), ndmin=2))

    series = {name: regions[:, i] for i, name in enumerate(REGION_METRICS)}
    series["dvars"] = dvars
    series["fd"] = fd
    series["fr"] = fr
    return series


# ============================================================================
# Section B: Statistics Table and Summary Row
# ============================================================================

def compute_statistics(run_dir, logger):
    """
    Write the one-row statistics table (stats.csv) for a run directory.

    Returns
    -------
    str
        Path to stats.csv.
    """
    series = load_metric_timecourses(run_dir)

    row = {}
    for metric in METRICS:
        thresh, mean, pct = outlier_triple(series[metric])
        row[f"{metric}_thresh"] = thresh
        row[f"{metric}_mean"] = mean
        row[f"{metric}_pct_outliers"] = pct

    out_path = artifact_path(run_dir, "stats")
    pd.DataFrame([row], columns=STATS_COLUMNS).to_csv(
        out_path, index=False, float_format="%.6g"
    )
    logger.info("Statistics table written: %s", out_path)
    return out_path


def read_statistics(run_dir):
    """Return the statistics table row as a dict keyed by STATS_COLUMNS."""
    path = artifact_path(run_dir, "stats")
    df = pd.read_csv(path)
    missing = [c for c in STATS_COLUMNS if c not in df.columns]
    if missing or df.empty:
        raise QCError(f"Statistics table {path} is malformed (missing: {missing}).")
    return df.iloc[0][STATS_COLUMNS].to_dict()


def _fmt(value):
    if value is None:
        return ""
    if isinstance(value, (float, np.floating)):
        return "" if np.isnan(value) else f"{value:.6g}"
    return str(value)


def write_summary_row(run_dir, run_id, tr, n_vols, tsfnr, logger):
    """
    Write the headerless one-line summary row (summary.csv).

    Column order matches SUMMARY_COLUMNS; the header itself is written once
    by the study-level aggregation.
    """
    stats = read_statistics(run_dir)
    values = [run_id, _fmt(float(tr)), int(n_vols), _fmt(tsfnr)]
    values += [_fmt(stats[c]) for c in STATS_COLUMNS]

    out_path = artifact_path(run_dir, "summary")
    tmp = out_path + ".tmp"
    with open(tmp, "w", newline="") as f:
        csv.writer(f).writerow(values)
    os.replace(tmp, out_path)
    logger.info("Summary row written: %s", out_path)
    return out_path


# ============================================================================
# Section C: Report
# ============================================================================

def _plot_timecourses(series, out_path):
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, axes = plt.subplots(4, 1, figsize=(10, 9), sharex=True)

    for name in REGION_METRICS:
        x = series[name]
        mean = np.nanmean(x) if np.any(np.isfinite(x)) else np.nan
        if np.isfinite(mean) and mean != 0:
            axes[0].plot(100.0 * (x - mean) / mean, linewidth=0.8, label=name)
    axes[0].set_ylabel("Signal (% of mean)")
    axes[0].legend(loc="upper right", fontsize="small")

    axes[1].plot(series["dvars"], color="black", linewidth=0.8)
    axes[1].set_ylabel("DVARS")

    axes[2].plot(series["fd"], color="black", linewidth=0.8)
    axes[2].set_ylabel("FD (mm)")

    axes[3].plot(series["fr"], color="black", linewidth=0.8)
    axes[3].set_ylabel("FR (deg)")
    axes[3].set_xlabel("Volume")

    fig.savefig(out_path, dpi=100, bbox_inches="tight")
    plt.close(fig)


def render_report(run_dir, logger):
    """
    Render the QC report: a timecourse figure plus an HTML page showing the
    slice renders and the statistics table.

    Returns
    -------
    str
        Path to report.html.
    """
    series = load_metric_timecourses(run_dir)
    figure_path = artifact_path(run_dir, "report_figure")
    _plot_timecourses(series, figure_path)

    stats_html = pd.read_csv(artifact_path(run_dir, "stats")).T.to_html(
        header=False, float_format=lambda v: f"{v:.4g}"
    )

    title = html.escape(os.path.basename(os.path.normpath(run_dir)))
    images = []
    for name in SLICE_IMAGES:
        png = f"{name}.png"
        if os.path.isfile(os.path.join(run_dir, png)):
            images.append(f'<h3>{name}</h3>\n<img src="{png}" alt="{name}">')

    page = "\n".join([
        "<!DOCTYPE html>",
        f"<html><head><meta charset=\"utf-8\"><title>QC: {title}</title></head>",
        "<body>",
        f"<h1>fMRI QC: {title}</h1>",
        "<h2>Images</h2>",
        *images,
        "<h2>Timecourses</h2>",
        f'<img src="{ARTIFACTS["report_figure"]}" alt="timecourses">',
        "<h2>Statistics</h2>",
        stats_html,
        "</body></html>",
    ])

    out_path = artifact_path(run_dir, "report")
    with open(out_path, "w") as f:
        f.write(page + "\n")
    logger.info("QC report written: %s", out_path)
    return out_path
