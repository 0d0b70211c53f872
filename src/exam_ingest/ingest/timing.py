"""
Module: ingest.timing

Purpose:
    Timing instrumentation for extraction runs, to see where a run spends
    its time (capability calls versus rate-limit waits versus
    normalization).

Key Classes:
    - TimingLog: Collects run-level and per-batch timing metrics

Key Functions:
    - timed_phase: Context manager for timing code blocks

Dependencies:
    - time (std)
    - contextlib (std)
    - dataclasses (std)

Used By:
    - ingest.orchestrator: per-batch call and delay timings
    - ingest.session: normalization and duplicate-check timings
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TimingLog:
    """
    Timing metrics for one import session.

    Attributes:
        run_timings: Dict of phase_name -> duration_seconds
        batch_timings: Dict of batch label -> {phase_name -> duration_seconds}

    Example:
        >>> log = TimingLog()
        >>> log.log_run("normalize", 0.004)
        >>> log.log_batch("batch-1", "extract_call", 2.31)
        >>> print(log.summary())
    """
    run_timings: Dict[str, float] = field(default_factory=dict)
    batch_timings: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def log_run(self, phase: str, duration: float) -> None:
        """Log a run-level timing metric."""
        self.run_timings[phase] = duration

    def log_batch(self, batch: str, phase: str, duration: float) -> None:
        """Log a batch-level timing metric."""
        self.batch_timings.setdefault(batch, {})[phase] = duration

    def get_batch_total(self, batch: str) -> float:
        return sum(self.batch_timings.get(batch, {}).values())

    def get_phase_averages(self) -> Dict[str, float]:
        """Calculate average time per phase across all batches."""
        phase_totals: Dict[str, float] = {}
        phase_counts: Dict[str, int] = {}

        for phases in self.batch_timings.values():
            for phase, duration in phases.items():
                phase_totals[phase] = phase_totals.get(phase, 0.0) + duration
                phase_counts[phase] = phase_counts.get(phase, 0) + 1

        return {
            phase: phase_totals[phase] / phase_counts[phase]
            for phase in phase_totals
        }

    def get_slowest_batches(self, n: int = 3) -> List[tuple]:
        """Get the N slowest batches with their total time and slowest phase."""
        results = []
        for batch, phases in self.batch_timings.items():
            if not phases:
                continue
            slowest_phase = max(phases.items(), key=lambda x: x[1])
            results.append((batch, sum(phases.values()), slowest_phase[0], slowest_phase[1]))

        results.sort(key=lambda x: x[1], reverse=True)
        return results[:n]

    def clear(self) -> None:
        self.run_timings.clear()
        self.batch_timings.clear()

    def summary(self) -> str:
        """Generate human-readable timing summary."""
        lines = ["", "=== Extraction Timing Summary ==="]

        if self.run_timings:
            lines.append("Run-level:")
            for phase, duration in sorted(self.run_timings.items()):
                lines.append(f"  {phase:25s} {duration:.3f}s")

        averages = self.get_phase_averages()
        if averages:
            lines.append("")
            lines.append("Batch-level averages:")
            for phase, avg in sorted(averages.items(), key=lambda x: -x[1]):
                lines.append(f"  {phase:25s} {avg:.3f}s")

        slowest = self.get_slowest_batches(3)
        if slowest:
            lines.append("")
            lines.append("Slowest batches:")
            for batch, total, slow_phase, slow_duration in slowest:
                lines.append(f"  {batch}: {total:.3f}s ({slow_phase}: {slow_duration:.3f}s)")

        lines.append("")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Export timing data as dictionary."""
        return {
            "run_timings": dict(self.run_timings),
            "batch_timings": {k: dict(v) for k, v in self.batch_timings.items()},
            "phase_averages": self.get_phase_averages(),
            "slowest_batches": [
                {"batch": batch, "total": total, "slowest_phase": phase, "phase_duration": dur}
                for batch, total, phase, dur in self.get_slowest_batches(5)
            ],
        }

    def save(self, path: Path) -> None:
        """
        Save timing data to a JSON file.

        Uses an exclusive file lock so several sessions can share one
        timing file.
        """
        from .file_locking import locked_read_modify_write_json

        def replace_with_current(existing: Dict[str, Any]) -> Dict[str, Any]:
            existing.update(self.to_dict())
            return existing

        locked_read_modify_write_json(path, replace_with_current)
        logger.debug(f"Saved timing data to {path}")


@contextmanager
def timed_phase(
    log: Optional[TimingLog],
    phase: str,
    batch: Optional[str] = None,
) -> Generator[None, None, None]:
    """
    Context manager for timing a code phase.

    Args:
        log: TimingLog instance to record metrics (None disables timing)
        phase: Name of the phase being timed
        batch: If provided, records as batch-level metric;
               otherwise records as run-level metric

    Example:
        >>> log = TimingLog()
        >>> with timed_phase(log, "normalize"):
        ...     result = normalizer.normalize(raw)
        >>> with timed_phase(log, "extract_call", batch="batch-2"):
        ...     response = await capability.extract(request)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        if log is not None:
            elapsed = time.perf_counter() - start
            if batch:
                log.log_batch(batch, phase, elapsed)
            else:
                log.log_run(phase, elapsed)
