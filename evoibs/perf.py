"""Timing of scheduler phases.

The scheduler wraps its phases (synchronous sweeps, score recomputation,
asynchronous event batches, homogeneous-state skips) in
`PerfMonitor.track()`. A disabled monitor does nothing.

Usage:
    perf = PerfMonitor(enabled=True)
    sim = Simulation(populations, rng, perf=perf)
    sim.step(10.0)
    print(perf.report())
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict


@dataclass
class PhaseStats:
    """Wall-clock time and work done by one scheduler phase."""
    total_time: float = 0.0
    calls: int = 0
    events: int = 0
    max_time: float = 0.0

    @property
    def mean_time(self) -> float:
        return self.total_time / self.calls if self.calls > 0 else 0.0

    @property
    def events_per_second(self) -> float:
        return self.events / self.total_time if self.total_time > 0 else 0.0


class PerfMonitor:
    """Per-phase wall-clock timer with event throughput."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._stats: Dict[str, PhaseStats] = defaultdict(PhaseStats)

    @contextmanager
    def track(self, phase: str, events: int = 0):
        """Time the enclosed block under `phase`.

        Args:
            phase: Phase name.
            events: Elementary events the block is known to process; use
                count() when the number is only known afterwards.
        """
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.record(phase, time.perf_counter() - t0, events)

    def record(self, phase: str, elapsed: float, events: int = 0) -> None:
        if not self.enabled:
            return
        stats = self._stats[phase]
        stats.total_time += elapsed
        stats.calls += 1
        stats.events += events
        stats.max_time = max(stats.max_time, elapsed)

    def count(self, phase: str, events: int) -> None:
        """Attribute `events` elementary events to `phase`."""
        if self.enabled:
            self._stats[phase].events += events

    def get_stats(self) -> Dict[str, PhaseStats]:
        return dict(self._stats)

    def summary(self) -> dict:
        """Per-phase totals as a JSON-friendly dict."""
        total = sum(s.total_time for s in self._stats.values())
        result = {}
        for name, stats in sorted(self._stats.items(), key=lambda x: -x[1].total_time):
            result[name] = {
                'total_s': round(stats.total_time, 4),
                'calls': stats.calls,
                'events': stats.events,
                'events_per_s': round(stats.events_per_second, 1),
                'pct': round(stats.total_time / total * 100, 1) if total > 0 else 0.0,
            }
        result['_total_s'] = round(total, 4)
        return result

    def report(self, title: str = "Scheduler Phases") -> str:
        total = sum(s.total_time for s in self._stats.values())
        lines = [
            f"\n{'='*64}",
            f" {title}",
            f"{'='*64}",
            f"{'Phase':<20} {'Total (s)':>10} {'Calls':>8} {'Events':>10} {'Events/s':>10}",
            f"{'-'*20} {'-'*10} {'-'*8} {'-'*10} {'-'*10}",
        ]
        for name, stats in sorted(self._stats.items(), key=lambda x: -x[1].total_time):
            lines.append(
                f"{name:<20} {stats.total_time:>10.4f} {stats.calls:>8} "
                f"{stats.events:>10} {stats.events_per_second:>10.0f}"
            )
        lines.append(f"{'-'*20} {'-'*10} {'-'*8} {'-'*10} {'-'*10}")
        lines.append(f"{'TOTAL':<20} {total:>10.4f}")
        lines.append(f"{'='*64}\n")
        return '\n'.join(lines)

    def reset(self) -> None:
        self._stats.clear()
