#!/usr/bin/env python3

# ============================================================================
# PER-VOLUME fMRI QUALITY-CONTROL PIPELINE
#
# Runs a fixed, resumable sequence of stages on one 4D functional volume:
# motion correction -> high-pass filtering -> temporal mean/SD/tSFNR ->
# foreground/Nyquist-ghost/air segmentation -> slice renders -> tSFNR
# summary -> DVARS -> per-region timecourses -> statistics -> summary row
# -> report. Every stage whose artifacts already exist (non-empty) is
# skipped; recomputing a stage first deletes everything downstream of it,
# so a failed or interrupted run is resumed by simply invoking it again.
#
# Usage:
#   python run_fmri_qc.py <volume.nii.gz> <output_root> [invivo|phantom] \
#     [--config qc.yaml] [--variant filtered|unfiltered] [--log-file qc.log]
#
# Exit codes:
#   0   - completed, or usage/missing input reported
#   1   - a stage failed or the configuration is invalid
#
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import sys
import time
import argparse

from fsl_toolkit import FSLToolkit, verify_fsl_installation
from qc_stats import write_summary_row
from qc_utils import (
    QCError,
    QCInputError,
    QCStageError,
    VARIANTS,
    SLICE_IMAGES,
    LABEL_FOREGROUND,
    LABEL_GHOST,
    LABEL_AIR,
    DONE,
    PENDING,
    StageRecord,
    setup_logging,
    load_qc_config,
    validate_sample_type,
    highpass_sigma_volumes,
    foreground_threshold,
    default_run_dir_name,
    artifact_path,
    is_nonempty_file,
)


# name, artifact keys, upstream stages whose regeneration invalidates it.
# "source" stands for the series chosen by the variant (filter or motion).
GATED_STAGES = [
    ("motion", ["motion", "motion_par"], []),
    ("filter", ["filtered"], ["motion"]),
    ("tmean", ["tmean"], ["source"]),
    ("tsd", ["tsd"], ["source"]),
    ("tsfnr", ["tsfnr"], ["tmean", "tsd"]),
    ("labels", ["labels"], ["tmean"]),
    ("dvars", ["dvars"], ["motion", "labels"]),
    ("timeseries", ["timeseries"], ["motion", "labels"]),
    ("stats", ["stats"], ["motion", "dvars", "timeseries"]),
]
STAGE_TABLE = {name: (keys, deps) for name, keys, deps in GATED_STAGES}
ALWAYS_STAGES = ["slices", "summary", "report"]
STAGE_NAMES = [s[0] for s in GATED_STAGES] + ALWAYS_STAGES

MORPH_OPS = ("erode", "dilate", "dilate")


class _StageRunner:
    """Skip-if-present execution of gated stages within one run directory."""

    def __init__(self, run_dir, record, source_stage, logger):
        self.run_dir = run_dir
        self.record = record
        self.source_stage = source_stage
        self.logger = logger
        self.rebuilt = []

    def _resolve(self, deps):
        return [self.source_stage if d == "source" else d for d in deps]

    def dependents(self, name):
        """Every gated stage downstream of name, in pipeline order."""
        upstream = {name}
        found = []
        for stage, _, deps in GATED_STAGES:
            if any(d in upstream for d in self._resolve(deps)):
                upstream.add(stage)
                found.append(stage)
        return found

    def _invalidate_dependents(self, name):
        """Delete downstream artifacts and mark those stages pending on disk."""
        removed = []
        for stage in self.dependents(name):
            for key in STAGE_TABLE[stage][0]:
                path = artifact_path(self.run_dir, key)
                if os.path.isfile(path):
                    os.remove(path)
                    removed.append(stage)
            self.record.data["stages"][stage] = PENDING
        if removed:
            self.logger.info(
                "Stage '%s' is being regenerated; invalidated downstream: %s",
                name, ", ".join(sorted(set(removed), key=STAGE_NAMES.index))
            )

    def run(self, name, fn):
        """
        Run fn() unless every artifact of the stage exists.

        Before a stage is recomputed, the artifacts of every stage that
        depends on it are deleted, so a rebuild interrupted part-way is
        resumed from the first missing artifact on the next invocation.

        Returns
        -------
        bool
            True if the stage was (re)computed.
        """
        paths = [artifact_path(self.run_dir, k) for k in STAGE_TABLE[name][0]]

        if all(is_nonempty_file(p) for p in paths):
            self.logger.info("Stage '%s' complete - skipping.", name)
            if self.record.state(name) != DONE:
                self.record.mark(name, DONE)
            return False

        self._invalidate_dependents(name)
        self.record.mark(name, PENDING)
        fn()

        missing = [p for p in paths if not is_nonempty_file(p)]
        if missing:
            msg = f"Stage '{name}' produced no output: {', '.join(missing)}"
            self.record.mark(name, PENDING, error=msg)
            raise QCStageError(msg)

        self.record.mark(name, DONE)
        self.rebuilt.append(name)
        return True


# ============================================================================
# Region Segmentation
# ============================================================================

def segment_regions(toolkit, tmean_path, labels_path, sample_type, ny, pipeline_cfg, logger):
    """
    Build the three-region label image from the temporal-mean image.

    Labels: 1 = foreground (opened mask), 2 = Nyquist ghost, 3 = air. The
    three masks are disjoint and together cover every voxel.

    Parameters
    ----------
    toolkit : fsl_toolkit.Toolkit
    tmean_path : str
        Temporal-mean image.
    labels_path : str
        Output label image.
    sample_type : str
        'invivo' (skull-strip foreground) or 'phantom' (threshold foreground).
    ny : int
        Matrix size along the phase-encode (second spatial) axis.
    pipeline_cfg : dict
        The 'pipeline' config section.
    logger : logging.Logger

    Returns
    -------
    float
        The intensity threshold (fraction of the high percentile).
    """
    run_dir = os.path.dirname(labels_path)

    def scratch(name):
        return os.path.join(run_dir, f"_seg_{name}.nii.gz")

    fg = scratch("fg")
    dilated = scratch("fg_dil")
    upper = scratch("upper")
    lower = scratch("lower")
    wrapped = scratch("wrapped")
    ghost = scratch("ghost")
    not_dilated = scratch("not_dil")
    air = scratch("air")

    try:
        p_high = toolkit.percentile(tmean_path, pipeline_cfg["threshold_percentile"])
        thresh = foreground_threshold(p_high, pipeline_cfg["threshold_fraction"])
        logger.info(
            "P%g intensity = %.4g -> foreground threshold = %.4g",
            pipeline_cfg["threshold_percentile"], p_high, thresh
        )

        if sample_type == "phantom":
            toolkit.threshold_mask(tmean_path, fg, thresh)
        else:
            toolkit.skull_strip(tmean_path, fg)

        toolkit.morphology(fg, dilated, pipeline_cfg["kernel_radius_mm"], MORPH_OPS)

        # Phase-wrapped copy: swap the halves along the phase-encode axis
        half = ny // 2
        toolkit.extract_slab(dilated, lower, axis=1, start=0, size=half)
        toolkit.extract_slab(dilated, upper, axis=1, start=half, size=ny - half)
        toolkit.concatenate([upper, lower], wrapped, axis=1)
        toolkit.set_orientation(wrapped, toolkit.get_orientation(dilated))

        toolkit.mask_difference(wrapped, dilated, ghost)
        toolkit.invert_mask(dilated, not_dilated)
        toolkit.mask_difference(not_dilated, ghost, air)

        toolkit.weighted_sum(
            [(dilated, LABEL_FOREGROUND), (ghost, LABEL_GHOST), (air, LABEL_AIR)],
            labels_path,
        )
    finally:
        for path in (fg, dilated, upper, lower, wrapped, ghost, not_dilated, air):
            if os.path.isfile(path):
                os.remove(path)

    logger.info("Region labels written: %s", labels_path)
    return thresh


# ============================================================================
# Pipeline
# ============================================================================

def process_volume(volume_path, output_root, sample_type, config, toolkit, logger, run_dir_namer=None):
    """
    Run (or resume) the QC pipeline for one 4D functional volume.

    Parameters
    ----------
    volume_path : str
        Input 4D NIfTI.
    output_root : str
        Directory under which the run directory is created.
    sample_type : str or None
        'invivo' (default) or 'phantom'.
    config : dict
        Validated QC config (see qc_utils.load_qc_config).
    toolkit : fsl_toolkit.Toolkit
    logger : logging.Logger
    run_dir_namer : callable or None
        Maps the input path to the run directory name. Defaults to the
        basename without extension plus pipeline.run_dir_suffix.

    Returns
    -------
    dict
        run_dir, run_id, tr, n_vols, sigma_vols, tsfnr, rebuilt (stages
        recomputed in this invocation).

    Raises
    ------
    QCInputError
        If the input volume is missing or empty.
    QCStageError
        If a stage finishes without producing its artifacts.
    QCError
        On run-directory collisions or other unrecoverable errors.
    """
    pipeline_cfg = config["pipeline"]
    variant = pipeline_cfg["variant"]
    variant_cfg = VARIANTS[variant]
    sample_type = validate_sample_type(sample_type)

    if not is_nonempty_file(volume_path):
        raise QCInputError(f"Input volume missing or empty: {volume_path}")
    volume_path = os.path.abspath(volume_path)

    if run_dir_namer is None:
        suffix = pipeline_cfg["run_dir_suffix"]

        def run_dir_namer(path):
            return default_run_dir_name(path, suffix)

    run_id = run_dir_namer(volume_path)
    if not run_id or os.sep in run_id or run_id in (".", ".."):
        raise QCError(f"Invalid run directory name derived from {volume_path}: {run_id!r}")

    run_dir = os.path.join(os.path.abspath(output_root), run_id)
    os.makedirs(run_dir, exist_ok=True)

    record = StageRecord(run_dir, STAGE_NAMES)
    if record.source is not None and record.source != volume_path:
        raise QCError(
            f"Run directory {run_dir} belongs to a different input "
            f"({record.source}); refusing to overwrite it with {volume_path}."
        )
    if record.data["variant"] is not None and record.data["variant"] != variant:
        raise QCError(
            f"Run directory {run_dir} was produced with variant "
            f"'{record.data['variant']}', not '{variant}'. Remove it or rerun "
            f"with the original variant."
        )
    if record.data["sample_type"] is not None and record.data["sample_type"] != sample_type:
        raise QCError(
            f"Run directory {run_dir} was produced for sample type "
            f"'{record.data['sample_type']}', not '{sample_type}'. Remove it or "
            f"rerun with the original sample type."
        )
    record.data.update({"source": volume_path, "sample_type": sample_type, "variant": variant})
    record.save()

    logger.info("Run directory: %s", run_dir)
    logger.info("Sample type: %s | Variant: %s", sample_type, variant)

    # ================================================================
    # Step 0: Read acquisition parameters
    # ================================================================
    info = toolkit.image_info(volume_path)
    tr = info["tr"]
    n_vols = info["dims"][3]
    ny = info["dims"][1]
    if n_vols < 2:
        raise QCInputError(f"Input must be a 4D series with >1 volume, got {n_vols}: {volume_path}")
    sigma_vols = highpass_sigma_volumes(tr, pipeline_cfg["highpass_sigma_s"])
    logger.info(
        "TR = %.4g s, %d volumes, high-pass sigma = %.4g volumes", tr, n_vols, sigma_vols
    )

    def p(key):
        return artifact_path(run_dir, key)

    if variant_cfg["stat_source"] == "filtered":
        source_key, source_stage = "filtered", "filter"
    else:
        source_key, source_stage = "motion", "motion"
    stages = _StageRunner(run_dir, record, source_stage, logger)
    fg_mask = os.path.join(run_dir, "_fg_mask.nii.gz")

    try:
        # ============================================================
        # Steps 1-5: Motion correction, filtering, temporal images
        # ============================================================
        logger.info("Step 1: Motion correction (reference volume 0)...")
        stages.run("motion",
                   lambda: _register(toolkit, volume_path, p("motion"), p("motion_par")))

        logger.info("Step 2: High-pass temporal filtering...")
        stages.run("filter",
                   lambda: toolkit.temporal_filter(p("motion"), p("filtered"), sigma_vols))

        logger.info("Step 3: Temporal mean image (%s series)...", source_key)
        stages.run("tmean",
                   lambda: toolkit.voxel_stat(p(source_key), p("tmean"), "mean"))

        logger.info("Step 4: Temporal SD image (%s series)...", source_key)
        stages.run("tsd",
                   lambda: toolkit.voxel_stat(p(source_key), p("tsd"), "std"))

        logger.info("Step 5: tSFNR image...")
        stages.run("tsfnr",
                   lambda: toolkit.divide(p("tmean"), p("tsd"), p("tsfnr")))

        # ============================================================
        # Step 6: Region segmentation
        # ============================================================
        logger.info("Step 6: Segmenting foreground / Nyquist ghost / air...")
        stages.run("labels",
                   lambda: segment_regions(toolkit, p("tmean"), p("labels"),
                                           sample_type, ny, pipeline_cfg, logger))

        # ============================================================
        # Step 7: Slice renders (always regenerated)
        # ============================================================
        logger.info("Step 7: Rendering orthogonal slices...")
        ranges = pipeline_cfg["slice_ranges"]
        for name in SLICE_IMAGES:
            toolkit.render_slices(p(name), os.path.join(run_dir, f"{name}.png"), ranges[name])
        record.mark("slices", DONE)

        # ============================================================
        # Step 8: Scalar tSFNR within the foreground
        # ============================================================
        toolkit.threshold_mask(p("labels"), fg_mask, LABEL_FOREGROUND, LABEL_FOREGROUND)
        summary_stat = variant_cfg["tsfnr_summary"]
        logger.info("Step 8: Foreground tSFNR (%s)...", summary_stat)
        if summary_stat == "median":
            tsfnr = toolkit.percentile(p("tsfnr"), 50, mask_path=fg_mask)
        else:
            tsfnr = toolkit.mean_value(p("tsfnr"), mask_path=fg_mask)
        logger.info("Foreground tSFNR (%s) = %.4g", summary_stat, tsfnr)

        # ============================================================
        # Steps 9-11: DVARS, region timecourses, statistics
        # ============================================================
        logger.info("Step 9: DVARS within the foreground...")
        stages.run("dvars",
                   lambda: toolkit.frame_outliers(p("motion"), fg_mask, p("dvars")))

        logger.info("Step 10: Mean timecourse per region...")
        stages.run("timeseries",
                   lambda: toolkit.labeled_timeseries(p("motion"), p("labels"), p("timeseries")))

        logger.info("Step 11: Statistics table...")
        stages.run("stats",
                   lambda: toolkit.compute_statistics(run_dir, logger))

        # ============================================================
        # Steps 12-13: Summary row and report (always rewritten)
        # ============================================================
        logger.info("Step 12: Writing summary row...")
        write_summary_row(run_dir, run_id, tr, n_vols, tsfnr, logger)
        record.mark("summary", DONE)

        logger.info("Step 13: Rendering report...")
        toolkit.render_report(run_dir, logger)
        record.mark("report", DONE)

    finally:
        if os.path.isfile(fg_mask):
            os.remove(fg_mask)

    return {
        "run_dir": run_dir,
        "run_id": run_id,
        "tr": tr,
        "n_vols": n_vols,
        "sigma_vols": sigma_vols,
        "tsfnr": tsfnr,
        "rebuilt": list(stages.rebuilt),
    }


def _register(toolkit, volume_path, out_path, par_path):
    """Motion-correct and move the parameter table to its fixed name."""
    produced = toolkit.register_series(volume_path, out_path, ref_vol=0)
    if produced and os.path.abspath(produced) != os.path.abspath(par_path) and os.path.isfile(produced):
        os.replace(produced, par_path)


# ============================================================================
# CLI
# ============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        description="Resumable QC pipeline for one 4D fMRI volume.",
    )
    parser.add_argument("volume", nargs="?", help="Input 4D NIfTI volume.")
    parser.add_argument("output_root", nargs="?", help="Directory for the run directory.")
    parser.add_argument(
        "sample_type", nargs="?", default="invivo",
        help="'invivo' (default) or 'phantom'.",
    )
    parser.add_argument("--config", default=None, help="Optional QC YAML config.")
    parser.add_argument(
        "--variant", choices=sorted(VARIANTS), default=None,
        help="Override pipeline.variant from the config.",
    )
    parser.add_argument("--log-file", default=None, help="Optional path to a log file.")
    parser.add_argument("--verbose", action="store_true", help="Log FSL commands.")
    return parser


def main(argv=None, toolkit=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Missing positionals: usage only, no writes, conventional success
    if args.volume is None or args.output_root is None:
        parser.print_usage()
        return 0

    logger = setup_logging("run_fmri_qc", log_file=args.log_file, verbose=args.verbose)

    start_time = time.time()
    logger.info("=" * 60)
    logger.info("fMRI Quality Control")
    logger.info("Volume: %s", args.volume)
    logger.info("Output root: %s", args.output_root)
    logger.info("=" * 60)

    try:
        config = load_qc_config(args.config, logger)
        if args.variant:
            config["pipeline"]["variant"] = args.variant

        if toolkit is None:
            verify_fsl_installation(logger)
            toolkit = FSLToolkit(logger)

        result = process_volume(
            args.volume, args.output_root, args.sample_type, config, toolkit, logger
        )

    except QCInputError as e:
        logger.error("%s", e)
        return 0
    except QCError as e:
        logger.error("Fatal: %s", e)
        return 1

    logger.info(
        "QC complete for %s (tSFNR = %.4g; regenerated: %s)",
        result["run_id"], result["tsfnr"], ", ".join(result["rebuilt"]) or "nothing"
    )
    logger.info("Total runtime: %.2f seconds", time.time() - start_time)
    return 0


if __name__ == "__main__":
    sys.exit(main())
