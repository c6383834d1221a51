"""
Progress display for ``find_power`` runs.

``SimulationRunner`` calls ``advance`` on a ``ProgressReporter`` each time it
consumes an iteration (warm-up included). The reporter decides when an
update is worth sending and hands ``(done, nsim)`` to a sink: the console
``PrintReporter``, the ``TqdmReporter`` bar, or any user callable.

A run stopped early by the monitor (poor fit, low power) still ends with
``finish``, so sinks always see ``nsim/nsim`` exactly once.
"""

import sys
import time
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised when a run is cancelled through ``cancel_check``."""


class ProgressReporter:
    """Iteration counter that forwards every ``update_every``-th step to a sink.

    Args:
        total: ``nsim`` of the run.
        callback: Sink, called as ``callback(done, total)``.
        update_every: Minimum number of iterations between two updates;
            about a hundred updates per run by default.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
    ):
        self.total = total
        self.update_every = update_every or max(1, total // 100)
        self._sink = callback
        self._done = 0
        self._sent = -1

    @property
    def current(self) -> int:
        return self._done

    def _due(self) -> bool:
        if self._done >= self.total:
            return self._sent < self.total
        return self._done - max(self._sent, 0) >= self.update_every

    def _send(self, done: int):
        self._sent = done
        self._sink(done, self.total)

    def start(self):
        self._done = 0
        self._send(0)

    def advance(self, n: int = 1):
        self._done += n
        if self._due():
            self._send(min(self._done, self.total))

    def finish(self):
        """Close the display at ``total`` when the run stopped short of it."""
        if self._done < self.total:
            self._done = self.total
        if self._sent < self.total:
            self._send(self.total)


class PrintReporter:
    """Single-line console display with the simulation rate.

    ``Progress:  45.0% (450/1000 simulations) 12.3 sims/s``; the wall time
    is printed on its own line once the run is done.
    """

    def __init__(self, stream=None):
        self._stream = stream
        self._t0: Optional[float] = None

    def _rate(self, done: int) -> str:
        if done == 0:
            return ""
        elapsed = time.perf_counter() - self._t0
        return f" {done / elapsed:.1f} sims/s" if elapsed > 0 else ""

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        out = self._stream or sys.stderr
        if current == 0 or self._t0 is None:
            self._t0 = time.perf_counter()
        out.write(f"\rProgress: {100.0 * current / total:5.1f}% ({current}/{total} simulations){self._rate(current)}")
        if current >= total:
            out.write(f"\nSimulations complete in {time.perf_counter() - self._t0:.1f}s\n")
            self._t0 = None
        out.flush()


class TqdmReporter:
    """Progress bar sink; tqdm is only needed once the first update arrives.

    Usage::

        from crtpower.progress import TqdmReporter
        power.find_power(progress_callback=TqdmReporter(desc="cps_ma"))
    """

    def __init__(self, **tqdm_kwargs):
        self._options = tqdm_kwargs
        self._bar = None
        self._shown = 0

    def __call__(self, current: int, total: int):
        if self._bar is None:
            from tqdm import tqdm

            self._bar = tqdm(total=total, unit="sim", **self._options)
            self._shown = 0

        if current > self._shown:
            self._bar.update(current - self._shown)
            self._shown = current

        if current >= total:
            self._bar.close()
            self._bar = None
