"""Spawn worker fixtures that share one start time."""

from __future__ import annotations

import logging
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path

from panopticon.timing import now_ms

logger = logging.getLogger(__name__)

FIXTURE_MODULE = "apps.worker_fixture"


def fixture_command(start_time_ms: float | None, extra_args: Sequence[str] = ()) -> list[str]:
    """Command line for one worker; ``None`` omits the start time argument."""
    command = [sys.executable, "-m", FIXTURE_MODULE]
    if start_time_ms is not None:
        command.append(repr(start_time_ms))
    command.extend(extra_args)
    return command


def spawn_workers(
    count: int,
    start_time_ms: float | None = None,
    extra_args: Sequence[str] = (),
    cwd: Path | None = None,
    timeout_seconds: float = 30.0,
) -> list[subprocess.CompletedProcess[str]]:
    """Launch ``count`` fixture processes aligned to one start time and wait for them.

    Args:
        count: Number of worker processes
        start_time_ms: Shared origin; defaults to now
        extra_args: Additional fixture arguments (e.g. ``--journal-dir``)
        cwd: Working directory for the workers
        timeout_seconds: Per-worker wait limit

    Returns:
        Completed processes, in launch order
    """
    if count < 1:
        raise ValueError(f"count must be >= 1, got {count}")
    if start_time_ms is None:
        start_time_ms = now_ms()

    logger.info(
        "harness.spawning_workers",
        extra={"count": count, "start_time_ms": start_time_ms},
    )

    procs = [
        subprocess.Popen(
            fixture_command(start_time_ms, extra_args),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=cwd,
        )
        for _ in range(count)
    ]

    results: list[subprocess.CompletedProcess[str]] = []
    for proc in procs:
        try:
            stdout, stderr = proc.communicate(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
        results.append(
            subprocess.CompletedProcess(proc.args, proc.returncode, stdout, stderr)
        )
        if proc.returncode != 0:
            logger.warning(
                "harness.worker_failed",
                extra={"pid": proc.pid, "returncode": proc.returncode},
            )
    return results
