import subprocess

import pytest

from fsl_toolkit import FSLToolkit, verify_fsl_installation
from qc_utils import QCError


class FakeFSL:
    """Records FSL commands and answers from a per-tool table."""

    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout=self.outputs.get(cmd[0], ""), stderr="")


@pytest.fixture
def fake(monkeypatch):
    runner = FakeFSL()
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


def test_percentile_with_mask(fake, logger):
    fake.outputs["fslstats"] = "812.5 \n"
    value = FSLToolkit(logger).percentile("tmean.nii.gz", 99, mask_path="fg.nii.gz")

    assert value == 812.5
    assert fake.commands == [["fslstats", "tmean.nii.gz", "-k", "fg.nii.gz", "-P", "99"]]


def test_image_info_reads_dims_and_tr(monkeypatch, logger):
    answers = {"dim1": "64", "dim2": "64", "dim3": "32", "dim4": "200", "pixdim4": "0.800000"}

    def fslval(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout=answers[cmd[2]] + "\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fslval)
    info = FSLToolkit(logger).image_info("bold.nii.gz")
    assert info == {"dims": (64, 64, 32, 200), "tr": 0.8}


def test_morphology_applies_ops_in_order(fake, logger):
    FSLToolkit(logger).morphology("fg.nii.gz", "open.nii.gz", 5.0, ("erode", "dilate", "dilate"))
    assert fake.commands == [[
        "fslmaths", "fg.nii.gz", "-kernel", "sphere", "5.0",
        "-ero", "-dilM", "-dilM", "open.nii.gz",
    ]]
    with pytest.raises(QCError, match="Unsupported"):
        FSLToolkit(logger).morphology("fg.nii.gz", "x.nii.gz", 5.0, ("close",))


def test_extract_slab_along_y(fake, logger):
    FSLToolkit(logger).extract_slab("mask.nii.gz", "half.nii.gz", axis=1, start=32, size=32)
    assert fake.commands == [
        ["fslroi", "mask.nii.gz", "half.nii.gz", "0", "-1", "32", "32", "0", "-1"]
    ]


def test_temporal_filter_restores_mean(fake, tmp_path, logger):
    out = str(tmp_path / "mcf_filt.nii.gz")
    FSLToolkit(logger).temporal_filter("mcf.nii.gz", out, 25.0)

    mean_cmd, filt_cmd = fake.commands
    assert mean_cmd[2] == "-Tmean"
    assert filt_cmd[2:5] == ["-bptf", "25.0000", "-1"]
    assert filt_cmd[5:7] == ["-add", mean_cmd[3]]
    assert filt_cmd[-1] == out


def test_weighted_sum_builds_label_image(fake, tmp_path, logger):
    out = str(tmp_path / "labels.nii.gz")
    FSLToolkit(logger).weighted_sum([("a.nii.gz", 1), ("b.nii.gz", 2), ("c.nii.gz", 3)], out)

    assert [c[2:4] for c in fake.commands[:3]] == [["-mul", "1"], ["-mul", "2"], ["-mul", "3"]]
    final = fake.commands[-1]
    assert final.count("-add") == 2
    assert final[-1] == out


def test_dvars_command(fake, logger):
    FSLToolkit(logger).frame_outliers("mcf.nii.gz", "fg.nii.gz", "dvars.txt")
    cmd = fake.commands[0]
    assert cmd[0] == "fsl_motion_outliers"
    assert cmd[cmd.index("-s") + 1] == "dvars.txt"
    assert cmd[cmd.index("-m") + 1] == "fg.nii.gz"
    assert "--dvars" in cmd and "--nomoco" in cmd


def test_failures_carry_stderr(monkeypatch, logger):
    def failing(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, stderr="Image Exception : #22\n")

    monkeypatch.setattr(subprocess, "run", failing)
    with pytest.raises(QCError, match="Image Exception"):
        FSLToolkit(logger).divide("a.nii.gz", "b.nii.gz", "c.nii.gz")


def test_missing_tool(monkeypatch, logger):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(QCError, match="not found"):
        FSLToolkit(logger).invert_mask("a.nii.gz", "b.nii.gz")


def test_verify_fsl_installation_requires_fslmaths(monkeypatch, logger):
    monkeypatch.setattr("shutil.which", lambda name: None)
    with pytest.raises(QCError, match="FSL not found"):
        verify_fsl_installation(logger)
