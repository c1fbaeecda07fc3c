import os
import sys
import logging

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fsl_toolkit import Toolkit  # noqa: E402
from qc_scheduler import Scheduler  # noqa: E402
from qc_utils import load_qc_config, strip_nifti_ext  # noqa: E402


# ---------------------------------------------------------------------------
# In-memory image toolkit
# ---------------------------------------------------------------------------

def save_image(path, data, sform=None, qform=None, tr=1.0):
    eye = np.eye(4).ravel()
    with open(path, "wb") as f:
        np.savez(
            f,
            data=np.asarray(data, dtype=float),
            sform=np.asarray(eye if sform is None else sform, dtype=float),
            qform=np.asarray(eye if qform is None else qform, dtype=float),
            tr=np.asarray(tr, dtype=float),
        )


def load_image(path):
    with np.load(path) as npz:
        return {
            "data": npz["data"],
            "sform": npz["sform"],
            "qform": npz["qform"],
            "tr": float(npz["tr"]),
        }


def _neighbour_stack(mask):
    """Mask plus its six face neighbours (edge-replicated) as a stack."""
    padded = np.pad(mask, 1, mode="edge")
    nx, ny, nz = mask.shape
    views = [padded[1:-1, 1:-1, 1:-1]]
    for axis in range(3):
        for offset in (0, 2):
            sl = [slice(1, 1 + nx), slice(1, 1 + ny), slice(1, 1 + nz)]
            size = (nx, ny, nz)[axis]
            sl[axis] = slice(offset, offset + size)
            views.append(padded[tuple(sl)])
    return np.stack(views)


class ArrayToolkit(Toolkit):
    """
    Toolkit that implements every delegate with numpy on .npz payloads.

    calls records method names in order; methods listed in fail_on return
    without writing anything.
    """

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def _call(self, name):
        self.calls.append(name)
        return name not in self.fail_on

    def _like(self, path, data, src):
        save_image(path, data, sform=src["sform"], qform=src["qform"], tr=src["tr"])

    def image_info(self, path):
        self.calls.append("image_info")
        img = load_image(path)
        shape = tuple(img["data"].shape) + (1,) * (4 - img["data"].ndim)
        return {"dims": shape, "tr": img["tr"]}

    def register_series(self, in_path, out_path, ref_vol=0):
        par = strip_nifti_ext(out_path) + ".par"
        if not self._call("register_series"):
            return par
        img = load_image(in_path)
        self._like(out_path, img["data"], img)
        nt = img["data"].shape[3]
        params = np.zeros((nt, 6))
        params[:, 3] = 0.01 * np.arange(nt)
        params[:, 0] = 0.001 * np.arange(nt)
        np.savetxt(par, params)
        return par

    def temporal_filter(self, in_path, out_path, sigma_vols):
        if not self._call("temporal_filter"):
            return
        img = load_image(in_path)
        x = img["data"]
        t = np.arange(x.shape[3]) - (x.shape[3] - 1) / 2.0
        slope = (x * t).sum(axis=3, keepdims=True) / (t ** 2).sum()
        self._like(out_path, x - slope * t, img)

    def voxel_stat(self, in_path, out_path, stat):
        if not self._call("voxel_stat"):
            return
        img = load_image(in_path)
        fn = np.mean if stat == "mean" else np.std
        self._like(out_path, fn(img["data"], axis=3), img)

    def divide(self, num_path, den_path, out_path):
        if not self._call("divide"):
            return
        num = load_image(num_path)
        den = load_image(den_path)["data"]
        out = np.divide(num["data"], den, out=np.zeros_like(den), where=den != 0)
        self._like(out_path, out, num)

    def _values(self, in_path, mask_path):
        x = load_image(in_path)["data"]
        keep = x != 0
        if mask_path is not None:
            keep &= load_image(mask_path)["data"] > 0
        return x[keep]

    def percentile(self, in_path, pct, mask_path=None):
        self.calls.append("percentile")
        return float(np.percentile(self._values(in_path, mask_path), pct))

    def mean_value(self, in_path, mask_path=None):
        self.calls.append("mean_value")
        return float(np.mean(self._values(in_path, mask_path)))

    def skull_strip(self, in_path, out_mask_path):
        if not self._call("skull_strip"):
            return
        img = load_image(in_path)
        cut = 0.5 * np.percentile(img["data"][img["data"] != 0], 99)
        self._like(out_mask_path, (img["data"] > cut).astype(float), img)

    def threshold_mask(self, in_path, out_path, lower, upper=None):
        if not self._call("threshold_mask"):
            return
        img = load_image(in_path)
        x = img["data"]
        keep = x >= lower
        if upper is not None:
            keep &= x <= upper
        self._like(out_path, keep.astype(float), img)

    def morphology(self, in_path, out_path, radius_mm, ops):
        if not self._call("morphology"):
            return
        img = load_image(in_path)
        mask = img["data"] > 0
        for op in ops:
            stack = _neighbour_stack(mask)
            mask = stack.all(axis=0) if op == "erode" else stack.any(axis=0)
        self._like(out_path, mask.astype(float), img)

    def extract_slab(self, in_path, out_path, axis, start, size):
        if not self._call("extract_slab"):
            return
        img = load_image(in_path)
        index = [slice(None)] * img["data"].ndim
        index[axis] = slice(start, start + size)
        # Like fslroi, the origin moves with the first extracted index
        sform = img["sform"].reshape(4, 4).copy()
        qform = img["qform"].reshape(4, 4).copy()
        sform[:3, 3] += sform[:3, axis] * start
        qform[:3, 3] += qform[:3, axis] * start
        save_image(out_path, img["data"][tuple(index)], sform.ravel(), qform.ravel(), img["tr"])

    def concatenate(self, in_paths, out_path, axis):
        if not self._call("concatenate"):
            return
        imgs = [load_image(p) for p in in_paths]
        data = np.concatenate([i["data"] for i in imgs], axis=axis)
        self._like(out_path, data, imgs[0])

    def get_orientation(self, path):
        self.calls.append("get_orientation")
        img = load_image(path)
        return {"sform": list(img["sform"]), "qform": list(img["qform"])}

    def set_orientation(self, path, orientation):
        self.calls.append("set_orientation")
        img = load_image(path)
        save_image(path, img["data"], orientation["sform"], orientation["qform"], img["tr"])

    def mask_difference(self, a_path, b_path, out_path):
        if not self._call("mask_difference"):
            return
        a = load_image(a_path)
        b = load_image(b_path)["data"]
        self._like(out_path, ((a["data"] > 0) & ~(b > 0)).astype(float), a)

    def invert_mask(self, in_path, out_path):
        if not self._call("invert_mask"):
            return
        img = load_image(in_path)
        self._like(out_path, (~(img["data"] > 0)).astype(float), img)

    def weighted_sum(self, terms, out_path):
        if not self._call("weighted_sum"):
            return
        first = load_image(terms[0][0])
        total = sum(weight * load_image(path)["data"] for path, weight in terms)
        self._like(out_path, total, first)

    def frame_outliers(self, in_path, mask_path, out_path):
        if not self._call("frame_outliers"):
            return
        x = load_image(in_path)["data"]
        mask = load_image(mask_path)["data"] > 0
        series = x[mask]
        dvars = np.concatenate([[0.0], np.sqrt(np.mean(np.diff(series, axis=1) ** 2, axis=0))])
        np.savetxt(out_path, dvars)

    def labeled_timeseries(self, in_path, label_path, out_path):
        if not self._call("labeled_timeseries"):
            return
        x = load_image(in_path)["data"]
        labels = np.rint(load_image(label_path)["data"]).astype(int)
        columns = []
        for value in (1, 2, 3):
            sel = labels == value
            columns.append(x[sel].mean(axis=0) if sel.any() else np.zeros(x.shape[3]))
        np.savetxt(out_path, np.column_stack(columns))

    def render_slices(self, in_path, out_png, intensity_range):
        if not self._call("render_slices"):
            return
        with open(out_png, "wb") as f:
            f.write(b"\x89PNG slices " + os.path.basename(in_path).encode())


# ---------------------------------------------------------------------------
# Scheduler double
# ---------------------------------------------------------------------------

class RecordingScheduler(Scheduler):
    """Records submissions and hands out sequential job ids."""

    def __init__(self):
        super().__init__("test.q", "/nonexistent", logging.getLogger("test"))
        self.submitted = []

    def submit(self, node, dependency_ids):
        job_id = str(1000 + len(self.submitted))
        self.submitted.append((node, list(dependency_ids), job_id))
        return job_id


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_phantom_series(seed=0, shape=(12, 16, 4, 20), tr=2.0):
    """A bright box in a dim field with slow drift and noise."""
    rng = np.random.default_rng(seed)
    nx, ny, nz, nt = shape
    data = 5.0 + rng.normal(0.0, 1.0, size=shape)
    drift = np.linspace(0.0, 20.0, nt)
    data[3:9, 5:11, :, :] = 1000.0 + drift + rng.normal(0.0, 5.0, size=(6, 6, nz, nt))
    return data, tr


def write_volume(path, seed=0, tr=2.0):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    data, tr = make_phantom_series(seed=seed, tr=tr)
    save_image(path, data, tr=tr)
    return path


@pytest.fixture
def logger():
    log = logging.getLogger("qc_tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def config(logger):
    return load_qc_config(None, logger)


@pytest.fixture
def toolkit():
    return ArrayToolkit()


@pytest.fixture
def volume(tmp_path):
    return write_volume(str(tmp_path / "raw" / "sub-01_ses-1_task-rest_bold.nii.gz"))
