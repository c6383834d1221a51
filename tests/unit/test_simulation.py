"""
Unit tests for the simulation runner (stub fitting service).
"""

from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from crtpower.core.monitor import LowPowerAbort, PoorFitAbort, RunStatus, TimeBudgetAbort
from crtpower.core.simulation import SimulationRunner, _run_iteration
from crtpower.progress import ProgressReporter, SimulationCancelled
from crtpower.stats.fitting import ModelFitWorker
from tests.config import N_SIMS_STUB, SEED
from tests.helpers.stub_backends import MeanDifferenceBackend


def _runner(design, backend, n_simulations=N_SIMS_STUB, **kwargs):
    worker = ModelFitWorker(design.family, "glmm", backend=backend, narms=design.narms)
    kwargs.setdefault("seed", SEED)
    return SimulationRunner(design, worker, n_simulations, **kwargs)


class TestRunIteration:
    def test_returns_index_result_dataset(self, normal_design, stub_backend):
        worker = ModelFitWorker(backend=stub_backend, narms=3)
        index, result, dataset = _run_iteration(normal_design, worker, SEED, 4, True)
        assert index == 4
        assert result.iteration_index == 4
        assert dataset.iteration_index == 4

    def test_dataset_dropped_without_keep(self, normal_design, stub_backend):
        worker = ModelFitWorker(backend=stub_backend, narms=3)
        _, _, dataset = _run_iteration(normal_design, worker, SEED, 0, False)
        assert dataset is None


class TestSimulationRunner:
    """Sequential runs against the stub backend."""

    def test_complete_run(self, normal_design, stub_backend):
        report = _runner(normal_design, stub_backend).run()
        assert report.status is RunStatus.COMPLETE
        assert report.n_simulations_used == N_SIMS_STUB
        assert len(report.model_estimates) == N_SIMS_STUB
        assert list(report.power.index) == ["arm2.power", "arm3.power"]
        assert stub_backend.calls == N_SIMS_STUB

    def test_seeded_runs_identical(self, normal_design):
        first = _runner(normal_design, MeanDifferenceBackend(), n_simulations=20).run()
        second = _runner(normal_design, MeanDifferenceBackend(), n_simulations=20).run()
        pd.testing.assert_frame_equal(first.model_estimates, second.model_estimates)
        pd.testing.assert_frame_equal(first.power, second.power)

    def test_different_seeds_differ(self, normal_design):
        first = _runner(normal_design, MeanDifferenceBackend(), n_simulations=5, seed=1).run()
        second = _runner(normal_design, MeanDifferenceBackend(), n_simulations=5, seed=2).run()
        assert not first.model_estimates.equals(second.model_estimates)

    def test_entropy_seed_recorded(self, normal_design, stub_backend):
        runner = _runner(normal_design, stub_backend, n_simulations=3, seed=None)
        report = runner.run()
        assert runner.base_seed is not None
        assert report.settings["base_seed"] == runner.base_seed

    def test_single_iteration(self, normal_design, stub_backend):
        report = _runner(normal_design, stub_backend, n_simulations=1).run()
        assert report.n_simulations_used == 1
        for _, row in report.power.iterrows():
            assert row["power"] in (0.0, 1.0)
            assert row["lower_95_ci"] == row["power"] == row["upper_95_ci"]

    def test_poor_fit_abort(self, normal_design):
        backend = MeanDifferenceBackend(converged=False)
        with pytest.raises(PoorFitAbort) as exc_info:
            _runner(normal_design, backend).run()
        err = exc_info.value
        assert err.iteration == 51
        assert err.status is RunStatus.HALTED_POOR_FIT
        assert err.partial_report.n_simulations_used == 51
        assert err.partial_report.n_simulations_requested == N_SIMS_STUB
        assert err.partial_report.status is RunStatus.HALTED_POOR_FIT
        # Every dataset was fitted twice (one retry)
        assert backend.calls == 2 * 51

    def test_poor_fit_override_completes(self, normal_design):
        backend = MeanDifferenceBackend(converged=False)
        with pytest.warns(UserWarning, match="did not converge"):
            report = _runner(normal_design, backend, poor_fit_override=True).run()
        assert report.n_simulations_used == N_SIMS_STUB
        assert report.convergence_failure_rate == "100% did not converge"

    def test_low_power_abort(self, normal_design):
        backend = MeanDifferenceBackend(std_error=1000.0)
        with pytest.raises(LowPowerAbort) as exc_info:
            _runner(normal_design, backend).run()
        assert exc_info.value.iteration == 60
        assert exc_info.value.partial_report.n_simulations_used == 60

    def test_low_power_override(self, normal_design):
        backend = MeanDifferenceBackend(std_error=1000.0)
        report = _runner(normal_design, backend, low_power_override=True).run()
        assert report.overall_power < 0.5
        assert report.n_simulations_used == N_SIMS_STUB

    def test_time_budget_abort(self, normal_design, stub_backend):
        with pytest.raises(TimeBudgetAbort) as exc_info:
            _runner(normal_design, stub_backend, time_limit=1e-9).run()
        err = exc_info.value
        assert err.iteration == 0
        assert err.partial_report is None
        # Only the warm-up iteration ran
        assert stub_backend.calls == 1

    def test_time_budget_override(self, normal_design, stub_backend):
        report = _runner(normal_design, stub_backend, n_simulations=5, time_limit=1e-9, time_limit_override=True).run()
        assert report.status is RunStatus.COMPLETE

    def test_keep_raw_data(self, normal_design, stub_backend):
        report = _runner(normal_design, stub_backend, n_simulations=3, keep_raw_data=True).run()
        assert len(report.sim_data) == 3
        assert list(report.sim_data[0].columns) == ["y", "arm", "cluster"]
        np.testing.assert_array_equal(report.convergence_flags, [0, 0, 0])

    def test_progress_advanced_per_iteration(self, normal_design, stub_backend):
        callback = MagicMock()
        reporter = ProgressReporter(10, callback, update_every=1)
        _runner(normal_design, stub_backend, n_simulations=10).run(progress=reporter)
        assert reporter.current == 10
        callback.assert_called_with(10, 10)

    def test_cancel_check(self, normal_design, stub_backend):
        calls = {"n": 0}

        def cancel():
            calls["n"] += 1
            return calls["n"] > 3

        with pytest.raises(SimulationCancelled):
            _runner(normal_design, stub_backend, n_simulations=10).run(cancel_check=cancel)
        assert stub_backend.calls == 4

    def test_verbose_prints_runtime(self, normal_design, stub_backend, capsys):
        _runner(normal_design, stub_backend, n_simulations=2, verbose=True).run()
        out = capsys.readouterr().out
        assert "Estimated completion time" in out
        assert "Total Runtime" in out

    def test_single_core_is_sequential(self, normal_design, stub_backend):
        runner = _runner(normal_design, stub_backend, n_simulations=5, n_cores=1)
        assert not runner.parallel
