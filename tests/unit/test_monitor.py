"""
Tests for the convergence and early-stop monitor.
"""

from types import SimpleNamespace

import numpy as np
import pytest

from crtpower.backends import NullComparison
from crtpower.core.monitor import (
    CHECK_EVERY,
    MIN_ITERATIONS,
    ConvergenceMonitor,
    LowPowerAbort,
    PoorFitAbort,
    RunState,
    RunStatus,
    SimulationAborted,
    TimeBudgetAbort,
)


def _result(converged=True, singular=False, p_value=0.001):
    return SimpleNamespace(
        converged=converged,
        singular_fit=singular,
        null_comparison=NullComparison(df=2, statistic=10.0, p_value=p_value),
    )


def _feed(monitor, results):
    status = None
    for r in results:
        status = monitor.update(r)
        if status is not RunStatus.RUNNING:
            break
    return status


class TestRunState:
    def test_running_power_counts_nan_as_non_rejection(self):
        state = RunState(nsim=4, completed=4, null_p_values=[0.01, np.nan, 0.2, 0.03])
        assert state.running_power(0.05) == 0.5

    def test_fit_warning_rate(self):
        state = RunState(nsim=10, completed=4, fit_warnings=1)
        assert state.fit_warning_rate == 0.25

    def test_empty_state(self):
        state = RunState(nsim=10)
        assert state.fit_warning_rate == 0.0
        assert state.running_power(0.05) == 0.0

    def test_snapshot_is_independent(self):
        state = RunState(nsim=10, completed=1, null_p_values=[0.01])
        snap = state.snapshot()
        state.null_p_values.append(0.5)
        assert snap.null_p_values == [0.01]


class TestTransitions:
    """RUNNING -> halted / complete transitions."""

    def test_complete(self):
        monitor = ConvergenceMonitor(nsim=5)
        assert _feed(monitor, [_result()] * 5) is RunStatus.COMPLETE
        assert monitor.state.completed == 5

    def test_single_iteration_run(self):
        monitor = ConvergenceMonitor(nsim=1)
        assert monitor.update(_result()) is RunStatus.COMPLETE

    def test_no_poor_fit_halt_within_first_iterations(self):
        monitor = ConvergenceMonitor(nsim=MIN_ITERATIONS)
        status = _feed(monitor, [_result(converged=False)] * MIN_ITERATIONS)
        assert status is RunStatus.COMPLETE

    def test_poor_fit_halts_after_min_iterations(self):
        monitor = ConvergenceMonitor(nsim=200)
        status = _feed(monitor, [_result(converged=False)] * 200)
        assert status is RunStatus.HALTED_POOR_FIT
        assert monitor.state.completed == MIN_ITERATIONS + 1
        assert monitor.observed_rate == 1.0

    def test_singular_fits_count_as_warnings(self):
        monitor = ConvergenceMonitor(nsim=200)
        status = _feed(monitor, [_result(singular=True)] * 200)
        assert status is RunStatus.HALTED_POOR_FIT

    def test_poor_fit_threshold_is_strict(self):
        # Exactly 25% fit warnings never halts
        results = [_result(converged=(i % 4 != 0)) for i in range(1, 101)]
        monitor = ConvergenceMonitor(nsim=100)
        assert _feed(monitor, results) is RunStatus.COMPLETE

    def test_poor_fit_override(self):
        monitor = ConvergenceMonitor(nsim=100, poor_fit_override=True)
        assert _feed(monitor, [_result(converged=False)] * 100) is RunStatus.COMPLETE

    def test_low_power_checked_on_cadence(self):
        monitor = ConvergenceMonitor(nsim=200)
        status = _feed(monitor, [_result(p_value=0.5)] * 200)
        assert status is RunStatus.HALTED_LOW_POWER
        # First i > 50 with i % 10 == 0
        assert monitor.state.completed == 60
        assert monitor.state.completed % CHECK_EVERY == 0
        assert monitor.observed_rate == 0.0

    def test_low_power_override(self):
        monitor = ConvergenceMonitor(nsim=100, low_power_override=True)
        assert _feed(monitor, [_result(p_value=0.5)] * 100) is RunStatus.COMPLETE

    def test_power_at_threshold_continues(self):
        results = [_result(p_value=0.01 if i % 2 else 0.5) for i in range(100)]
        monitor = ConvergenceMonitor(nsim=100)
        assert _feed(monitor, results) is RunStatus.COMPLETE

    def test_halting_is_terminal(self):
        monitor = ConvergenceMonitor(nsim=200)
        _feed(monitor, [_result(p_value=0.5)] * 200)
        with pytest.raises(RuntimeError, match="already finished"):
            monitor.update(_result())

    def test_reset(self):
        monitor = ConvergenceMonitor(nsim=3)
        _feed(monitor, [_result()] * 3)
        state = monitor.reset()
        assert state.completed == 0
        assert state.status is RunStatus.RUNNING


class TestTimeBudget:
    def test_over_limit_halts(self):
        monitor = ConvergenceMonitor(nsim=1000, time_limit=10)
        assert monitor.check_time_budget(50.0) is RunStatus.HALTED_TIME_BUDGET
        assert monitor.state.completed == 0

    def test_within_limit(self):
        monitor = ConvergenceMonitor(nsim=1000, time_limit=10)
        assert monitor.check_time_budget(5.0) is RunStatus.RUNNING

    def test_override(self):
        monitor = ConvergenceMonitor(nsim=1000, time_limit=10, time_limit_override=True)
        assert monitor.check_time_budget(1e6) is RunStatus.RUNNING


class TestAbortErrors:
    def test_poor_fit_error(self):
        monitor = ConvergenceMonitor(nsim=200)
        _feed(monitor, [_result(converged=False)] * 200)
        err = monitor.abort_error(partial_report="partial")
        assert isinstance(err, PoorFitAbort)
        assert isinstance(err, SimulationAborted)
        assert isinstance(err, RuntimeError)
        assert err.status is RunStatus.HALTED_POOR_FIT
        assert err.iteration == 51
        assert err.partial_report == "partial"
        assert err.state.completed == 51
        assert "check model specifications" in str(err)

    def test_low_power_error(self):
        monitor = ConvergenceMonitor(nsim=200)
        _feed(monitor, [_result(p_value=0.5)] * 200)
        err = monitor.abort_error()
        assert isinstance(err, LowPowerAbort)
        assert "auto stop at simulation 60" in str(err)

    def test_time_budget_error(self):
        monitor = ConvergenceMonitor(nsim=1000, time_limit=10)
        monitor.check_time_budget(500.0)
        err = monitor.abort_error()
        assert isinstance(err, TimeBudgetAbort)
        assert err.iteration == 0
        assert err.observed_rate == 500.0
        assert err.partial_report is None

    def test_not_halted(self):
        monitor = ConvergenceMonitor(nsim=10)
        with pytest.raises(RuntimeError, match="not halted"):
            monitor.abort_error()
