"""
Convergence and early-stop monitoring for simulation runs.

The monitor consumes ``ModelFitResult`` objects in iteration order, keeps a
``RunState`` and decides after every iteration whether the run continues.
Halting is terminal: once a halt status is reached, further updates are
rejected.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np

# Iterations that must complete before poor-fit / low-power checks apply
MIN_ITERATIONS = 50
# Maximum tolerated share of non-convergent or singular fits
MAX_FIT_WARNING_RATE = 0.25
# Running omnibus power below which the run is abandoned
MIN_RUNNING_POWER = 0.5
# Low-power check cadence (every N completed iterations)
CHECK_EVERY = 10
# Default ceiling on projected run time, seconds
DEFAULT_TIME_LIMIT = 120.0


class RunStatus(Enum):
    RUNNING = "running"
    HALTED_POOR_FIT = "halted_poor_fit"
    HALTED_LOW_POWER = "halted_low_power"
    HALTED_TIME_BUDGET = "halted_time_budget"
    COMPLETE = "complete"

    @property
    def halted(self) -> bool:
        return self.value.startswith("halted")


@dataclass
class RunState:
    """Mutable bookkeeping for one simulation run.

    Attributes:
        nsim: Requested number of iterations.
        completed: Iterations consumed so far.
        fit_warnings: Iterations whose fit did not converge or was singular.
        null_p_values: Omnibus (model vs. null) p-value of each consumed
            iteration, in iteration order.
        status: Current run status.
    """

    nsim: int
    completed: int = 0
    fit_warnings: int = 0
    null_p_values: List[float] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING

    @property
    def fit_warning_rate(self) -> float:
        return self.fit_warnings / self.completed if self.completed else 0.0

    def running_power(self, alpha: float) -> float:
        """Share of consumed iterations whose omnibus p-value is below *alpha*.

        NaN p-values count as non-rejections.
        """
        if not self.completed:
            return 0.0
        p = np.asarray(self.null_p_values, dtype=float)
        return float(np.sum(np.nan_to_num(p, nan=1.0) < alpha)) / self.completed

    def snapshot(self) -> "RunState":
        return copy.deepcopy(self)


class SimulationAborted(RuntimeError):
    """Base class for runs halted by the convergence monitor.

    Attributes:
        status: Halting ``RunStatus``.
        iteration: Iterations completed when the halt fired.
        observed_rate: Fit-warning rate, running power or projected run
            time (seconds) that triggered the halt.
        state: Snapshot of the ``RunState`` at halt time.
        partial_report: ``PowerReport`` over the completed iterations, or
            ``None`` when none completed.
    """

    def __init__(
        self,
        message: str,
        status: RunStatus,
        iteration: int,
        observed_rate: float,
        state: Optional[RunState] = None,
        partial_report=None,
    ):
        super().__init__(message)
        self.status = status
        self.iteration = iteration
        self.observed_rate = observed_rate
        self.state = state
        self.partial_report = partial_report


class PoorFitAbort(SimulationAborted):
    """Too many non-convergent or singular fits."""


class LowPowerAbort(SimulationAborted):
    """Running omnibus power fell below the early-stop threshold."""


class TimeBudgetAbort(SimulationAborted):
    """Projected run time exceeds the configured limit."""


class ConvergenceMonitor:
    """Decides after every consumed iteration whether a run continues.

    Args:
        nsim: Requested number of iterations.
        alpha: Significance level for the running omnibus power.
        poor_fit_override: Never halt for poor fits.
        low_power_override: Never halt for low running power.
        time_limit_override: Never halt for the projected run time.
        time_limit: Ceiling on the projected run time, in seconds.
    """

    def __init__(
        self,
        nsim: int,
        alpha: float = 0.05,
        poor_fit_override: bool = False,
        low_power_override: bool = False,
        time_limit_override: bool = False,
        time_limit: float = DEFAULT_TIME_LIMIT,
    ):
        self.nsim = nsim
        self.alpha = alpha
        self.poor_fit_override = poor_fit_override
        self.low_power_override = low_power_override
        self.time_limit_override = time_limit_override
        self.time_limit = time_limit
        self.state = RunState(nsim=nsim)
        self.observed_rate = 0.0

    def reset(self) -> RunState:
        """Start a new run with a fresh ``RunState``."""
        self.state = RunState(nsim=self.nsim)
        self.observed_rate = 0.0
        return self.state

    def _ensure_running(self):
        if self.state.status is not RunStatus.RUNNING:
            raise RuntimeError(f"Run already finished with status {self.state.status.value}")

    def check_time_budget(self, projected_seconds: float) -> RunStatus:
        """Halt before the loop when the projected run time is over the limit."""
        self._ensure_running()
        if not self.time_limit_override and projected_seconds > self.time_limit:
            self.observed_rate = float(projected_seconds)
            self.state.status = RunStatus.HALTED_TIME_BUDGET
        return self.state.status

    def update(self, result) -> RunStatus:
        """Record one ``ModelFitResult`` and return the new status."""
        self._ensure_running()
        state = self.state
        state.completed += 1
        if (not result.converged) or result.singular_fit:
            state.fit_warnings += 1
        state.null_p_values.append(float(result.null_comparison.p_value))

        i = state.completed
        if i > MIN_ITERATIONS and not self.poor_fit_override:
            rate = state.fit_warning_rate
            if rate > MAX_FIT_WARNING_RATE:
                self.observed_rate = rate
                state.status = RunStatus.HALTED_POOR_FIT
                return state.status

        if i > MIN_ITERATIONS and i % CHECK_EVERY == 0 and not self.low_power_override:
            power = state.running_power(self.alpha)
            if power < MIN_RUNNING_POWER:
                self.observed_rate = power
                state.status = RunStatus.HALTED_LOW_POWER
                return state.status

        if i >= self.nsim:
            state.status = RunStatus.COMPLETE
        return state.status

    def abort_error(self, partial_report=None) -> SimulationAborted:
        """Build the exception describing the current halt."""
        state = self.state
        status = state.status
        i = state.completed
        if status is RunStatus.HALTED_POOR_FIT:
            cls = PoorFitAbort
            message = (
                f"More than {MAX_FIT_WARNING_RATE:.0%} of fits are singular or failed to converge "
                f"({state.fit_warnings}/{i}, {self.observed_rate:.1%}) at simulation {i}: check model specifications"
            )
        elif status is RunStatus.HALTED_LOW_POWER:
            cls = LowPowerAbort
            message = f"Calculated power is {self.observed_rate:.3f} (< {MIN_RUNNING_POWER}), auto stop at simulation {i}"
        elif status is RunStatus.HALTED_TIME_BUDGET:
            cls = TimeBudgetAbort
            message = (
                f"Estimated run time ({self.observed_rate:.0f}s) exceeds the time limit ({self.time_limit:.0f}s). "
                "Reduce nsim, enable parallel processing or set time_limit_override=True."
            )
        else:
            raise RuntimeError(f"Run is not halted (status {status.value})")
        return cls(message, status, i, self.observed_rate, state=state.snapshot(), partial_report=partial_report)
