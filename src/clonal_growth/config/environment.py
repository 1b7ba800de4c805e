"""Environment detection utilities.

Provides helpers to detect the runtime platform (SLURM allocation or a
local workstation) and the number of CPU cores available for chain and
sweep worker pools.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def detect_platform() -> str:
    """Detect the runtime platform.

    Returns
    -------
    str
        ``"slurm"`` inside a SLURM job allocation, otherwise ``"local"``.
    """
    if "SLURM_JOB_ID" in os.environ:
        return "slurm"
    return "local"


def detect_cpu_count() -> int:
    """Return the number of cores this process may use.

    Honours ``SLURM_CPUS_PER_TASK`` inside an allocation, then the process
    CPU affinity mask, then :func:`os.cpu_count`.

    Returns
    -------
    int
        At least 1.
    """
    slurm_cpus = os.environ.get("SLURM_CPUS_PER_TASK")
    if slurm_cpus:
        try:
            return max(1, int(slurm_cpus))
        except ValueError:
            logger.warning(
                "Ignoring SLURM_CPUS_PER_TASK=%r: not an integer", slurm_cpus,
            )
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)))
    return max(1, os.cpu_count() or 1)
