"""Elapsed-time and memory monitoring for self-pausing runs."""

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable
import psutil

from gallerysync.services.errors import ResourceExhaustion

logger = logging.getLogger(__name__)


def process_rss_mb() -> float:
    """Resident set size of this process in MB."""
    return round(psutil.Process(os.getpid()).memory_info().rss / (1024 ** 2), 1)


@dataclass
class ResourceSample:
    elapsed_seconds: float
    memory_used_mb: float
    memory_peak_mb: float
    memory_limit_mb: float


class ResourceMonitor:
    """
    Measures wall-clock time and memory against configured ceilings.

    ``check()`` raises ResourceExhaustion once either measure crosses
    ``threshold`` of its ceiling, so the run pauses before the host kills it.
    A ceiling of 0 disables that measure.
    """

    def __init__(
        self,
        time_limit_seconds: float,
        memory_limit_mb: float,
        threshold: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
        memory_reader: Callable[[], float] = process_rss_mb,
    ):
        self.time_limit_seconds = time_limit_seconds
        self.memory_limit_mb = memory_limit_mb
        self.threshold = threshold
        self.clock = clock
        self.memory_reader = memory_reader
        self.started = clock()
        self.peak_mb = 0.0

    def restart(self) -> None:
        self.started = self.clock()

    def sample(self) -> ResourceSample:
        used = self.memory_reader()
        self.peak_mb = max(self.peak_mb, used)
        return ResourceSample(
            elapsed_seconds=round(self.clock() - self.started, 1),
            memory_used_mb=used,
            memory_peak_mb=self.peak_mb,
            memory_limit_mb=float(self.memory_limit_mb),
        )

    def check(self) -> ResourceSample:
        sample = self.sample()

        if self.time_limit_seconds and sample.elapsed_seconds >= self.time_limit_seconds * self.threshold:
            logger.warning(
                f"Elapsed {sample.elapsed_seconds}s is near the {self.time_limit_seconds}s limit, pausing"
            )
            raise ResourceExhaustion(
                f"Time limit approaching ({sample.elapsed_seconds}s of {self.time_limit_seconds}s)",
                reason="time",
            )

        if self.memory_limit_mb and sample.memory_used_mb >= self.memory_limit_mb * self.threshold:
            logger.warning(
                f"Memory {sample.memory_used_mb}MB is near the {self.memory_limit_mb}MB limit, pausing"
            )
            raise ResourceExhaustion(
                f"Memory limit approaching ({sample.memory_used_mb}MB of {self.memory_limit_mb}MB)",
                reason="memory",
            )

        return sample
