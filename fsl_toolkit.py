#!/usr/bin/env python3

# ============================================================================
# IMAGE-PROCESSING DELEGATES FOR fMRI QC
# The Toolkit interface lists every external operation the QC pipeline
# needs; FSLToolkit binds it to FSL command-line tools via subprocess.
#
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import shutil
import subprocess

import qc_stats
from qc_utils import QCError, strip_nifti_ext


# ============================================================================
# Section A: Delegate Interface
# ============================================================================

class Toolkit:
    """
    Narrow interface over the image-processing operations used by the
    pipeline. Image arguments are file paths; every method writes its result
    to the output path it is given.

    compute_statistics and render_report are implemented natively (numpy,
    pandas, matplotlib) and shared by all toolkits.
    """

    def image_info(self, path):
        """Return {'dims': (nx, ny, nz, nt), 'tr': seconds}."""
        raise NotImplementedError

    def register_series(self, in_path, out_path, ref_vol=0):
        """Motion-correct to ref_vol; return the motion-parameter table path."""
        raise NotImplementedError

    def temporal_filter(self, in_path, out_path, sigma_vols):
        """High-pass filter (sigma in volumes, no low-pass); temporal mean kept."""
        raise NotImplementedError

    def voxel_stat(self, in_path, out_path, stat):
        """Voxelwise temporal statistic: 'mean' or 'std'."""
        raise NotImplementedError

    def divide(self, num_path, den_path, out_path):
        raise NotImplementedError

    def percentile(self, in_path, pct, mask_path=None):
        raise NotImplementedError

    def mean_value(self, in_path, mask_path=None):
        raise NotImplementedError

    def skull_strip(self, in_path, out_mask_path):
        """Write a binary brain mask for in_path."""
        raise NotImplementedError

    def threshold_mask(self, in_path, out_path, lower, upper=None):
        """Binary mask of voxels with lower <= value (<= upper)."""
        raise NotImplementedError

    def morphology(self, in_path, out_path, radius_mm, ops):
        """Apply ops ('erode'/'dilate') in order with a spherical kernel."""
        raise NotImplementedError

    def extract_slab(self, in_path, out_path, axis, start, size):
        raise NotImplementedError

    def concatenate(self, in_paths, out_path, axis):
        raise NotImplementedError

    def get_orientation(self, path):
        """Return {'sform': [16 floats], 'qform': [16 floats]}."""
        raise NotImplementedError

    def set_orientation(self, path, orientation):
        raise NotImplementedError

    def mask_difference(self, a_path, b_path, out_path):
        """a AND NOT b."""
        raise NotImplementedError

    def invert_mask(self, in_path, out_path):
        raise NotImplementedError

    def weighted_sum(self, terms, out_path):
        """Sum of weight * image over terms [(path, weight), ...]."""
        raise NotImplementedError

    def frame_outliers(self, in_path, mask_path, out_path):
        """Write the per-frame DVARS values within mask_path."""
        raise NotImplementedError

    def labeled_timeseries(self, in_path, label_path, out_path):
        """Write one column of mean signal per label value, one row per frame."""
        raise NotImplementedError

    def render_slices(self, in_path, out_png, intensity_range):
        raise NotImplementedError

    def compute_statistics(self, run_dir, logger):
        return qc_stats.compute_statistics(run_dir, logger)

    def render_report(self, run_dir, logger):
        return qc_stats.render_report(run_dir, logger)


# ============================================================================
# Section B: FSL Binding
# ============================================================================

def verify_fsl_installation(logger):
    """
    Verify that FSL is installed and its tools are on PATH.
    Raises QCError if fslmaths cannot be found.
    """
    if shutil.which("fslmaths") is None:
        raise QCError(
            "FSL not found on PATH. Please install FSL, set FSLDIR and source "
            "$FSLDIR/etc/fslconf/fsl.sh."
        )

    fsldir = os.environ.get("FSLDIR")
    version = "unknown"
    if fsldir:
        version_file = os.path.join(fsldir, "etc", "fslversion")
        if os.path.isfile(version_file):
            with open(version_file) as f:
                version = f.read().strip().split(":")[0]
    logger.info("FSL version: %s (FSLDIR=%s)", version, fsldir)


_AXIS_FLAGS = {0: "-x", 1: "-y", 2: "-z", 3: "-t"}
_MORPH_FLAGS = {"erode": "-ero", "dilate": "-dilM"}


class FSLToolkit(Toolkit):
    """Toolkit backed by FSL command-line tools."""

    def __init__(self, logger, bet_fraction=0.3):
        self.logger = logger
        self.bet_fraction = bet_fraction

    def _run(self, cmd):
        """Run one FSL command, wrapping failures as QCError."""
        self.logger.debug("Running: %s", " ".join(str(c) for c in cmd))
        try:
            result = subprocess.run(
                [str(c) for c in cmd], capture_output=True, text=True, check=True,
            )
        except FileNotFoundError:
            raise QCError(f"{cmd[0]} not found on PATH.")
        except subprocess.CalledProcessError as e:
            raise QCError(
                f"{cmd[0]} failed: {e.stderr.strip() if e.stderr else str(e)}"
            )
        return result.stdout

    def _floats(self, stdout):
        try:
            return [float(tok) for tok in stdout.split()]
        except ValueError:
            raise QCError(f"Could not parse numeric FSL output: {stdout!r}")

    def image_info(self, path):
        dims = []
        for key in ("dim1", "dim2", "dim3", "dim4"):
            dims.append(int(self._floats(self._run(["fslval", path, key]))[0]))
        tr = self._floats(self._run(["fslval", path, "pixdim4"]))[0]
        return {"dims": tuple(dims), "tr": tr}

    def register_series(self, in_path, out_path, ref_vol=0):
        prefix = strip_nifti_ext(out_path)
        self._run(["mcflirt", "-in", in_path, "-out", prefix,
                   "-refvol", ref_vol, "-plots"])
        return prefix + ".par"

    def temporal_filter(self, in_path, out_path, sigma_vols):
        mean_path = strip_nifti_ext(out_path) + "_tmp_mean.nii.gz"
        try:
            self._run(["fslmaths", in_path, "-Tmean", mean_path])
            self._run(["fslmaths", in_path, "-bptf", f"{sigma_vols:.4f}", "-1",
                       "-add", mean_path, out_path])
        finally:
            if os.path.isfile(mean_path):
                os.remove(mean_path)

    def voxel_stat(self, in_path, out_path, stat):
        flags = {"mean": "-Tmean", "std": "-Tstd"}
        if stat not in flags:
            raise QCError(f"Unsupported voxel statistic: {stat}")
        self._run(["fslmaths", in_path, flags[stat], out_path])

    def divide(self, num_path, den_path, out_path):
        self._run(["fslmaths", num_path, "-div", den_path, out_path])

    def _stats(self, in_path, mask_path, opts):
        cmd = ["fslstats", in_path]
        if mask_path is not None:
            cmd += ["-k", mask_path]
        return self._floats(self._run(cmd + opts))[0]

    def percentile(self, in_path, pct, mask_path=None):
        return self._stats(in_path, mask_path, ["-P", pct])

    def mean_value(self, in_path, mask_path=None):
        return self._stats(in_path, mask_path, ["-M"])

    def skull_strip(self, in_path, out_mask_path):
        prefix = strip_nifti_ext(out_mask_path) + "_bet"
        self._run(["bet", in_path, prefix, "-m", "-n", "-f", self.bet_fraction])
        bet_mask = prefix + "_mask.nii.gz"
        if not os.path.isfile(bet_mask):
            raise QCError(f"bet produced no mask: {bet_mask}")
        shutil.move(bet_mask, out_mask_path)

    def threshold_mask(self, in_path, out_path, lower, upper=None):
        cmd = ["fslmaths", in_path, "-thr", lower]
        if upper is not None:
            cmd += ["-uthr", upper]
        self._run(cmd + ["-bin", out_path])

    def morphology(self, in_path, out_path, radius_mm, ops):
        cmd = ["fslmaths", in_path, "-kernel", "sphere", radius_mm]
        for op in ops:
            if op not in _MORPH_FLAGS:
                raise QCError(f"Unsupported morphology operation: {op}")
            cmd.append(_MORPH_FLAGS[op])
        self._run(cmd + [out_path])

    def extract_slab(self, in_path, out_path, axis, start, size):
        # fslroi takes (min, size) pairs for x, y, z; -1 keeps the full extent
        roi = [0, -1, 0, -1, 0, -1]
        roi[2 * axis] = start
        roi[2 * axis + 1] = size
        self._run(["fslroi", in_path, out_path] + roi)

    def concatenate(self, in_paths, out_path, axis):
        self._run(["fslmerge", _AXIS_FLAGS[axis], out_path] + list(in_paths))

    def get_orientation(self, path):
        return {
            "sform": self._floats(self._run(["fslorient", "-getsform", path])),
            "qform": self._floats(self._run(["fslorient", "-getqform", path])),
        }

    def set_orientation(self, path, orientation):
        self._run(["fslorient", "-setsform"] + list(orientation["sform"]) + [path])
        self._run(["fslorient", "-setqform"] + list(orientation["qform"]) + [path])

    def mask_difference(self, a_path, b_path, out_path):
        self._run(["fslmaths", a_path, "-sub", b_path, "-thr", 0, "-bin", out_path])

    def invert_mask(self, in_path, out_path):
        self._run(["fslmaths", in_path, "-binv", out_path])

    def weighted_sum(self, terms, out_path):
        scratch = []
        try:
            for i, (path, weight) in enumerate(terms):
                scaled = f"{strip_nifti_ext(out_path)}_tmp_term{i}.nii.gz"
                self._run(["fslmaths", path, "-mul", weight, scaled])
                scratch.append(scaled)
            cmd = ["fslmaths", scratch[0]]
            for scaled in scratch[1:]:
                cmd += ["-add", scaled]
            self._run(cmd + [out_path])
        finally:
            for path in scratch:
                if os.path.isfile(path):
                    os.remove(path)

    def frame_outliers(self, in_path, mask_path, out_path):
        confounds = out_path + ".confounds"
        try:
            self._run(["fsl_motion_outliers", "-i", in_path, "-o", confounds,
                       "-s", out_path, "-m", mask_path, "--dvars", "--nomoco"])
        finally:
            if os.path.isfile(confounds):
                os.remove(confounds)

    def labeled_timeseries(self, in_path, label_path, out_path):
        self._run(["fslmeants", "-i", in_path, "--label", label_path, "-o", out_path])

    def render_slices(self, in_path, out_png, intensity_range):
        lo, hi = intensity_range
        self._run(["slicer", in_path, "-i", lo, hi, "-a", out_png])
