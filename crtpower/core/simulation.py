"""
Simulation execution for crtpower.

``SimulationRunner`` drives ``nsim`` independent (generate, fit) tasks,
either sequentially or over a joblib (loky) process pool, feeds the results
to the ``ConvergenceMonitor`` in iteration order and aggregates whatever was
consumed into a ``PowerReport``.

Every task is identified by its iteration index and the per-run base seed,
so a pooled run consumes exactly the same results as a sequential one.
"""

import time
import warnings
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..stats.data_generation import draw_base_seed, generate_dataset, iteration_seed
from ..stats.fitting import ModelFitWorker
from .design import TrialDesign
from .monitor import DEFAULT_TIME_LIMIT, ConvergenceMonitor, RunStatus
from .results import PowerReport, ResultsProcessor

# Share of non-convergent fits above which a completed run warns
CONVERGENCE_WARNING_RATE = 0.10


def _run_iteration(design: TrialDesign, worker: ModelFitWorker, base_seed: int, iteration_index: int, keep_data: bool):
    """Generate and fit one dataset. Module-level so it pickles to workers."""
    dataset = generate_dataset(design, iteration_seed(base_seed, iteration_index), iteration_index)
    result = worker.fit(dataset)
    return iteration_index, result, dataset if keep_data else None


def _format_duration(seconds: float) -> str:
    hours, rem = divmod(int(round(seconds)), 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}Hr:{minutes}Min:{secs}Sec"


class SimulationRunner:
    """Executes Monte Carlo simulations for power analysis.

    Iteration 0 doubles as the warm-up iteration: its wall time, scaled by
    ``nsim`` and the number of workers, is the projected run time checked
    against ``time_limit``. When the projection is over the limit the run
    halts before any iteration is counted.
    """

    def __init__(
        self,
        design: TrialDesign,
        worker: ModelFitWorker,
        n_simulations: int,
        seed: Optional[int] = None,
        correction: str = "bonferroni",
        n_cores: Optional[int] = None,
        poor_fit_override: bool = False,
        low_power_override: bool = False,
        time_limit_override: bool = False,
        time_limit: float = DEFAULT_TIME_LIMIT,
        keep_raw_data: bool = False,
        verbose: bool = False,
    ):
        """Initialise the simulation runner.

        Args:
            design: Validated trial design.
            worker: Configured model-fit worker.
            n_simulations: Number of Monte Carlo iterations.
            seed: Base random seed. Each iteration uses
                ``seed + 4 * iteration``. ``None`` draws a base seed from
                OS entropy once per run.
            correction: Multiplicity adjustment for per-arm p-values.
            n_cores: Worker processes. ``None`` or 1 runs sequentially.
            poor_fit_override: Do not halt on poor fits.
            low_power_override: Do not halt on low running power.
            time_limit_override: Do not halt on the projected run time.
            time_limit: Projected run time ceiling, seconds.
            keep_raw_data: Keep every simulated dataset in the report.
            verbose: Print the estimated and total run time.
        """
        self.design = design
        self.worker = worker
        self.n_simulations = n_simulations
        self.seed = seed
        self.correction = correction
        self.n_cores = n_cores if n_cores is not None else 1
        self.poor_fit_override = poor_fit_override
        self.low_power_override = low_power_override
        self.time_limit_override = time_limit_override
        self.time_limit = time_limit
        self.keep_raw_data = keep_raw_data
        self.verbose = verbose
        self.base_seed: Optional[int] = None
        self.monitor: Optional[ConvergenceMonitor] = None

    @property
    def parallel(self) -> bool:
        return self.n_cores > 1 and self.n_simulations > 1

    def _settings(self) -> Dict[str, Any]:
        return {
            "model_type": f"{self.worker.method.value.upper()} ({self.worker.family.value})",
            "formula": self.worker.formula_spec.formula,
            "narms": self.design.narms,
            "nclusters": list(self.design.nclusters),
            "n_subjects": [self.design.subjects_in_arm(a) for a in range(1, self.design.narms + 1)],
            "seed": self.seed,
            "base_seed": self.base_seed,
            "parallel": self.parallel,
            "n_cores": self.n_cores,
        }

    def _report(self, results: List, datasets: List, status: RunStatus) -> Optional[PowerReport]:
        if not results:
            return None
        processor = ResultsProcessor(alpha=self.design.alpha, correction=self.correction, method=self.worker.method.value)
        return processor.aggregate(
            results,
            self.n_simulations,
            status=status,
            datasets=datasets if self.keep_raw_data else None,
            keep_raw_data=self.keep_raw_data,
            settings=self._settings(),
        )

    def _task_results(self, start: int, halted: Callable[[], bool]) -> Iterator:
        """Yield ``(index, result, dataset)`` for iterations ``start..nsim-1`` in order."""
        if not self.parallel:
            for i in range(start, self.n_simulations):
                if halted():
                    return
                yield _run_iteration(self.design, self.worker, self.base_seed, i, self.keep_raw_data)
            return

        from joblib import Parallel, delayed

        def tasks():
            for i in range(start, self.n_simulations):
                # Stop feeding the pool once the monitor has halted
                if halted():
                    return
                yield delayed(_run_iteration)(self.design, self.worker, self.base_seed, i, self.keep_raw_data)

        yield from Parallel(n_jobs=self.n_cores, backend="loky", verbose=0, return_as="generator")(tasks())

    def run(self, progress=None, cancel_check: Optional[Callable[[], bool]] = None) -> PowerReport:
        """Run the full Monte Carlo simulation loop.

        Args:
            progress: Optional ``ProgressReporter`` (advanced by 1 per
                consumed iteration).
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            ``PowerReport`` over all ``n_simulations`` iterations.

        Raises:
            PoorFitAbort, LowPowerAbort, TimeBudgetAbort: When the monitor
                halts the run; ``partial_report`` holds the consumed
                iterations.
            SimulationCancelled: When *cancel_check* returns ``True``.
        """
        from ..progress import SimulationCancelled

        if self.parallel:
            try:
                import joblib  # noqa: F401 (availability check only)
            except ImportError:
                warnings.warn("joblib not available, running simulations sequentially. Install with: pip install joblib")
                self.n_cores = 1

        self.base_seed = self.seed if self.seed is not None else draw_base_seed()
        monitor = ConvergenceMonitor(
            self.n_simulations,
            alpha=self.design.alpha,
            poor_fit_override=self.poor_fit_override,
            low_power_override=self.low_power_override,
            time_limit_override=self.time_limit_override,
            time_limit=self.time_limit,
        )
        self.monitor = monitor
        state = monitor.reset()

        buffer: List = [None] * self.n_simulations
        datasets: List = [None] * self.n_simulations
        start_time = time.perf_counter()

        def consume(index, result, dataset):
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            buffer[index] = result
            datasets[index] = dataset
            status = monitor.update(result)
            if progress is not None:
                progress.advance(1)
            return status

        # Warm-up iteration (index 0) sizes the run
        warmup = _run_iteration(self.design, self.worker, self.base_seed, 0, self.keep_raw_data)
        elapsed = time.perf_counter() - start_time
        projected = elapsed * self.n_simulations / max(1, min(self.n_cores, self.n_simulations))
        if monitor.check_time_budget(projected).halted:
            raise monitor.abort_error(partial_report=None)
        if self.verbose:
            print(f"Begin simulations :: Estimated completion time: {_format_duration(projected)}")

        status = consume(*warmup)
        if status is RunStatus.RUNNING:
            results_iter = self._task_results(1, lambda: state.status is not RunStatus.RUNNING)
            try:
                for index, result, dataset in results_iter:
                    if consume(index, result, dataset) is not RunStatus.RUNNING:
                        break
            finally:
                # Closing the generator abandons in-flight tasks and shuts the pool down
                results_iter.close()

        consumed = state.completed
        results = buffer[:consumed]
        kept = datasets[:consumed]

        if state.status.halted:
            raise monitor.abort_error(partial_report=self._report(results, kept, state.status))

        if self.verbose:
            print(f"Simulations Complete! Total Runtime: {_format_duration(time.perf_counter() - start_time)}")

        n_failed = sum(1 for r in results if not r.converged)
        if n_failed / consumed > CONVERGENCE_WARNING_RATE:
            warnings.warn(
                f"{n_failed}/{consumed} fits ({n_failed / consumed:.1%}) did not converge. "
                "Power estimates may be unreliable; consider more clusters or larger clusters."
            )

        return self._report(results, kept, state.status)
