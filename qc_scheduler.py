#!/usr/bin/env python3

# ============================================================================
# CLUSTER JOB GRAPH AND SCHEDULER BACK-ENDS
# The study batch is a two-node DAG: one array job (one task per volume)
# and an aggregation job that waits on it. Schedulers turn each node into
# a submission and return the scheduler-assigned job id.
#
# Version: 1.0
# Last updated: 10/19/26
# ============================================================================

import os
import re
import stat
import shlex
import subprocess

from qc_utils import QCError, DEPENDENCY_POLICIES


# ============================================================================
# Section A: Job Graph
# ============================================================================

class JobNode:
    """
    One schedulable unit.

    Parameters
    ----------
    name : str
    script : str
        For array nodes, a task file with one command per line; otherwise an
        executable script.
    array : bool
    depends_on : list of str
        Names of upstream nodes.
    policy : str
        'all-terminal' (run once upstream jobs end, whatever their status)
        or 'all-success' (run only if every upstream task succeeded).
    """

    def __init__(self, name, script, array=False, depends_on=None, policy="all-terminal"):
        if policy not in DEPENDENCY_POLICIES:
            raise QCError(f"Unknown dependency policy '{policy}'.")
        self.name = name
        self.script = script
        self.array = array
        self.depends_on = list(depends_on or [])
        self.policy = policy

    def __repr__(self):
        return (
            f"JobNode({self.name!r}, array={self.array}, "
            f"depends_on={self.depends_on}, policy={self.policy!r})"
        )


def build_qc_graph(task_file, aggregate_script, policy):
    """Array job of per-volume runs followed by the aggregation job."""
    return [
        JobNode("qc_array", task_file, array=True),
        JobNode("qc_aggregate", aggregate_script, depends_on=["qc_array"], policy=policy),
    ]


def topological_order(nodes):
    """
    Order nodes so every node follows its dependencies.

    Raises
    ------
    QCError
        On duplicate names, unknown dependencies or cycles.
    """
    by_name = {}
    for node in nodes:
        if node.name in by_name:
            raise QCError(f"Duplicate job name in graph: {node.name}")
        by_name[node.name] = node

    for node in nodes:
        for dep in node.depends_on:
            if dep not in by_name:
                raise QCError(f"Job '{node.name}' depends on unknown job '{dep}'.")

    ordered = []
    visiting = set()
    done = set()

    def visit(node):
        if node.name in done:
            return
        if node.name in visiting:
            raise QCError(f"Dependency cycle detected at job '{node.name}'.")
        visiting.add(node.name)
        for dep in node.depends_on:
            visit(by_name[dep])
        visiting.discard(node.name)
        done.add(node.name)
        ordered.append(node)

    for node in nodes:
        visit(node)
    return ordered


def count_tasks(task_file):
    """Number of non-blank command lines in an array task file."""
    with open(task_file) as f:
        return sum(1 for line in f if line.strip())


# ============================================================================
# Section B: Schedulers
# ============================================================================

class Scheduler:
    """Submission back-end: submit(node, dependency_ids) -> job id."""

    def __init__(self, queue, log_dir, logger):
        self.queue = queue
        self.log_dir = log_dir
        self.logger = logger

    def submit(self, node, dependency_ids):
        raise NotImplementedError

    def _submit_cmd(self, cmd):
        self.logger.debug("Submitting: %s", " ".join(shlex.quote(c) for c in cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except FileNotFoundError:
            raise QCError(f"{cmd[0]} not found on PATH.")
        except subprocess.CalledProcessError as e:
            raise QCError(
                f"Job submission failed ({cmd[0]}): "
                f"{e.stderr.strip() if e.stderr else str(e)}"
            )
        return result.stdout


class FslSubScheduler(Scheduler):
    """
    Grid Engine submission through fsl_sub.

    fsl_sub holds (-j) release when the upstream job leaves the queue,
    whatever its exit status, so only the 'all-terminal' policy is possible.
    """

    def submit(self, node, dependency_ids):
        if dependency_ids and node.policy != "all-terminal":
            raise QCError(
                "fsl_sub only supports the 'all-terminal' dependency policy; "
                "use the slurm scheduler for 'all-success'."
            )

        cmd = ["fsl_sub", "-q", self.queue, "-l", self.log_dir, "-N", node.name]
        if dependency_ids:
            cmd += ["-j", ",".join(dependency_ids)]
        if node.array:
            cmd += ["-t", node.script]
        else:
            cmd.append(node.script)

        stdout = self._submit_cmd(cmd)
        match = re.search(r"(\d+)", stdout)
        if not match:
            raise QCError(f"Could not parse job id from fsl_sub output: {stdout!r}")
        return match.group(1)


class SlurmScheduler(Scheduler):
    """Slurm submission through sbatch (array tasks read from the task file)."""

    def _array_wrapper(self, node):
        wrapper = os.path.splitext(node.script)[0] + "_array.sh"
        with open(wrapper, "w") as f:
            f.write("#!/bin/bash\n")
            f.write(
                f'CMD=$(grep -v "^[[:space:]]*$" {shlex.quote(node.script)} '
                f'| sed -n "${{SLURM_ARRAY_TASK_ID}}p")\n'
            )
            f.write('eval "$CMD"\n')
        os.chmod(wrapper, os.stat(wrapper).st_mode | stat.S_IXUSR | stat.S_IXGRP)
        return wrapper

    def submit(self, node, dependency_ids):
        cmd = [
            "sbatch", "--parsable",
            "--partition", self.queue,
            "--job-name", node.name,
        ]
        if dependency_ids:
            kind = "afterok" if node.policy == "all-success" else "afterany"
            cmd.append(f"--dependency={kind}:" + ":".join(dependency_ids))

        if node.array:
            n_tasks = count_tasks(node.script)
            if n_tasks == 0:
                raise QCError(f"Array task file is empty: {node.script}")
            cmd += [
                f"--array=1-{n_tasks}",
                "--output", os.path.join(self.log_dir, f"{node.name}_%A_%a.log"),
                self._array_wrapper(node),
            ]
        else:
            cmd += ["--output", os.path.join(self.log_dir, f"{node.name}_%j.log"), node.script]

        stdout = self._submit_cmd(cmd).strip()
        job_id = stdout.split(";")[0]
        if not job_id.isdigit():
            raise QCError(f"Could not parse job id from sbatch output: {stdout!r}")
        return job_id


def make_scheduler(name, queue, log_dir, logger):
    if name == "fsl_sub":
        return FslSubScheduler(queue, log_dir, logger)
    if name == "slurm":
        return SlurmScheduler(queue, log_dir, logger)
    raise QCError(f"Unknown scheduler '{name}'.")


def submit_graph(nodes, scheduler, logger):
    """
    Submit every node after its dependencies.

    Returns
    -------
    dict
        {node name: scheduler job id}
    """
    job_ids = {}
    for node in topological_order(nodes):
        dep_ids = [job_ids[d] for d in node.depends_on]
        job_ids[node.name] = scheduler.submit(node, dep_ids)
        if dep_ids:
            logger.info(
                "Submitted %s as job %s (after %s, policy %s)",
                node.name, job_ids[node.name], ",".join(dep_ids), node.policy
            )
        else:
            logger.info("Submitted %s as job %s", node.name, job_ids[node.name])
    return job_ids
