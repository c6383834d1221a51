"""
crtpower - Monte Carlo power for multi-arm cluster-randomized trials.

This module provides the ``ClusterTrialPower`` class and the ``cps_ma``
function for simulation-based power analysis of trials that randomize
clusters (clinics, schools, villages) to two or more arms.
"""

import dataclasses
import warnings
from typing import Callable, Optional, Union

from .backends import FittingService, get_backend
from .core import Method, PowerReport, SimulationRunner, parse_method
from .core.monitor import DEFAULT_TIME_LIMIT
from .stats.fitting import ModelFitWorker
from .utils.validators import (
    ValidationError,
    _validate_alpha,
    _validate_correction_method,
    _validate_numeric_parameter,
    _validate_parallel_settings,
    _validate_simulations,
    _validate_time_limit,
    validate_design,
)


class ClusterTrialPower:
    """Monte Carlo power analysis for a multi-arm cluster-randomized trial.

    The trial design is validated once on construction; run settings are
    changed through the ``set_*`` methods, each of which validates its
    input immediately and returns ``self`` for method chaining.

    Attributes:
        design: Validated ``TrialDesign``.
        n_simulations: Number of Monte Carlo iterations (default: 1000).
        seed: Base random seed, ``None`` for entropy seeding (default).
        method: ``"glmm"`` (default) or ``"gee"``.
        correction: Multiplicity adjustment for per-arm p-values
            (default: ``"bonferroni"``; GLMM only).
        parallel: Run iterations over a process pool (default: ``False``).
        n_cores: Worker processes when ``parallel`` is on.
        time_limit: Projected run time ceiling in seconds (default: 120).
        keep_raw_data: Attach simulated datasets to the report.

    Example:
        >>> power = ClusterTrialPower(
        ...     nsubjects=30, nclusters=10, narms=3,
        ...     outcome_param=[1, 1.5, 2], sigma_b_sq=0.1, family="poisson",
        ... )
        >>> power.set_simulations(500).set_seed(123).set_parallel(True, n_cores=4)
        >>> report = power.find_power()
        >>> report.power
    """

    def __init__(
        self,
        nsubjects,
        outcome_param,
        sigma_b_sq,
        family: str = "normal",
        narms: Optional[int] = None,
        nclusters=None,
        sigma_sq=None,
        nb_dispersion: float = 1.0,
    ):
        """Validate the trial design.

        Args:
            nsubjects: Subjects per cluster: a scalar, one value per arm, or
                one list of cluster sizes per arm.
            outcome_param: Per-arm mean (normal), probability (binary) or
                expected count (poisson / negative binomial); a scalar is
                repeated for every arm.
            sigma_b_sq: Between-cluster variance on the linear-predictor
                scale, scalar or one value per arm.
            family: ``"normal"``, ``"binary"``, ``"poisson"`` or
                ``"neg_binom"``.
            narms: Number of arms (inferred when ``nsubjects`` or
                ``nclusters`` is a per-arm list).
            nclusters: Clusters per arm, scalar or one value per arm.
            sigma_sq: Within-cluster variance (normal family only).
            nb_dispersion: Negative-binomial shape ``theta``.

        Raises:
            ValidationError: If the design is malformed.
        """
        self.design, design_warnings = validate_design(
            nsubjects,
            outcome_param,
            sigma_b_sq,
            family=family,
            narms=narms,
            nclusters=nclusters,
            sigma_sq=sigma_sq,
            nb_dispersion=nb_dispersion,
        )
        for message in design_warnings:
            warnings.warn(message)

        # Run configuration (applied immediately)
        self.n_simulations = 1000
        self.seed: Optional[int] = None
        self.method = Method.GLMM
        self.correction = "bonferroni"

        # Parallel processing
        self.parallel = False
        self.n_cores = 1

        # Early stopping
        self.poor_fit_override = False
        self.low_power_override = False
        self.time_limit_override = False
        self.time_limit = DEFAULT_TIME_LIMIT

        self.keep_raw_data = False

    @property
    def alpha(self) -> float:
        return self.design.alpha

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_simulations(self, n_simulations: int):
        """Set the number of Monte Carlo simulations.

        Args:
            n_simulations: Positive integer. Fewer than 1000 triggers a
                warning about the precision of the estimates.

        Returns:
            self: For method chaining.
        """
        n_sims, result = _validate_simulations(n_simulations)
        result.raise_if_invalid()
        for message in result.warnings:
            warnings.warn(message)
        self.n_simulations = n_sims
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level (strictly between 0 and 1)."""
        _validate_alpha(alpha).raise_if_invalid()
        self.design = dataclasses.replace(self.design, alpha=float(alpha))
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set random seed for reproducibility.

        Args:
            seed: Non-negative integer, or ``None`` to draw a fresh base seed
                from OS entropy on every run.

        Returns:
            self: For method chaining.

        Raises:
            TypeError: If *seed* is not an integer or ``None``.
            ValueError: If *seed* is negative.
        """
        if seed is not None:
            if isinstance(seed, bool) or not isinstance(seed, int):
                raise TypeError("seed must be an integer or None")
            if seed < 0:
                raise ValueError("seed must be non-negative")
        self.seed = seed
        return self

    def set_method(self, method: str):
        """Choose the analysis model: ``"glmm"`` or ``"gee"``."""
        try:
            self.method = parse_method(method)
        except ValueError as e:
            raise ValidationError(f"Validation failed:\n• {e}") from None
        return self

    def set_correction(self, correction: Optional[str]):
        """Set the multiplicity adjustment for per-arm p-values.

        Args:
            correction: ``"holm"``, ``"hochberg"``, ``"hommel"``,
                ``"bonferroni"``, ``"BH"``, ``"BY"``, ``"fdr"`` or
                ``"none"`` (``None`` is the same as ``"none"``). Only GLMM
                p-values are adjusted.

        Returns:
            self: For method chaining.
        """
        _validate_correction_method(correction).raise_if_invalid()
        self.correction = correction if correction is not None else "none"
        return self

    def set_parallel(self, enable: bool = True, n_cores: Union[int, str, None] = None):
        """Enable or disable parallel processing.

        Requires ``joblib``. Falls back to sequential processing with a
        warning if ``joblib`` is unavailable.

        Args:
            enable: ``True`` for a process pool, ``False`` for sequential.
            n_cores: Positive int, ``"all"`` for every core, or ``None``
                for ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if enable is False:
            self.parallel, self.n_cores = False, 1
            return self

        try:
            import joblib  # noqa: F401 (availability check only)
        except ImportError:
            warnings.warn("joblib not available, continuing with sequential processing. Install with: pip install joblib")
            self.parallel, self.n_cores = False, 1
            return self

        settings, result = _validate_parallel_settings(enable, n_cores)
        result.raise_if_invalid()
        self.parallel, self.n_cores = settings
        return self

    def set_overrides(
        self,
        poor_fit: Optional[bool] = None,
        low_power: Optional[bool] = None,
        time_limit: Optional[bool] = None,
    ):
        """Switch off individual early-stop rules (``None`` leaves a rule as is).

        Args:
            poor_fit: Keep going when more than 25% of fits are singular
                or non-convergent.
            low_power: Keep going when the running power drops below 0.5.
            time_limit: Keep going when the projected run time exceeds
                ``time_limit`` seconds.

        Returns:
            self: For method chaining.
        """
        for name, value in (("poor_fit", poor_fit), ("low_power", low_power), ("time_limit", time_limit)):
            if value is not None and value not in (True, False):
                raise ValidationError(f"Validation failed:\n• {name} override must be True or False, got {value!r}")
        if poor_fit is not None:
            self.poor_fit_override = bool(poor_fit)
        if low_power is not None:
            self.low_power_override = bool(low_power)
        if time_limit is not None:
            self.time_limit_override = bool(time_limit)
        return self

    def set_time_limit(self, seconds: float):
        """Set the projected run time ceiling, in seconds."""
        _validate_time_limit(seconds).raise_if_invalid()
        self.time_limit = float(seconds)
        return self

    def set_keep_raw_data(self, keep: bool = True):
        """Attach every simulated dataset and per-iteration convergence flags to the report."""
        self.keep_raw_data = bool(keep)
        return self

    def set_random_effect_distribution(self, tdist: bool = True, df: float = 3.0):
        """Draw cluster effects from a Student-t distribution.

        The t draws are rescaled so that their variance is still
        ``sigma_b_sq``; ``df`` must exceed 2. ``df=inf`` is the normal case.

        Returns:
            self: For method chaining.
        """
        if tdist:
            _validate_numeric_parameter(df, "df", min_val=2, exclusive=True).raise_if_invalid()
            self.design = dataclasses.replace(self.design, tdist=True, random_effect_df=float(df))
        else:
            self.design = dataclasses.replace(self.design, tdist=False, random_effect_df=float("inf"))
        return self

    # =========================================================================
    # Analysis
    # =========================================================================

    def _make_runner(self, backend: Optional[FittingService], verbose: bool) -> SimulationRunner:
        worker = ModelFitWorker(
            family=self.design.family,
            method=self.method,
            backend=backend if backend is not None else get_backend(),
            nb_dispersion=self.design.nb_dispersion,
            narms=self.design.narms,
        )
        return SimulationRunner(
            design=self.design,
            worker=worker,
            n_simulations=self.n_simulations,
            seed=self.seed,
            correction=self.correction,
            n_cores=self.n_cores if self.parallel else 1,
            poor_fit_override=self.poor_fit_override,
            low_power_override=self.low_power_override,
            time_limit_override=self.time_limit_override,
            time_limit=self.time_limit,
            keep_raw_data=self.keep_raw_data,
            verbose=verbose,
        )

    def find_power(
        self,
        print_results: bool = False,
        progress_callback=None,
        cancel_check: Optional[Callable[[], bool]] = None,
        backend: Optional[FittingService] = None,
    ) -> PowerReport:
        """
        Estimate power for every non-reference arm and for the omnibus test.

        Args:
            print_results: Print the estimated/total run time and the
                power table.
            progress_callback: Progress reporting control:
                - ``None`` (default): ``PrintReporter`` when
                  *print_results* is ``True``.
                - ``False``: explicitly disable progress.
                - callable ``(current, total)``: custom callback.
            cancel_check: Optional callable returning ``True`` to abort.
            backend: Fitting service for this run (default: active backend).

        Returns:
            ``PowerReport``.

        Raises:
            PoorFitAbort, LowPowerAbort, TimeBudgetAbort: Early stop; the
                exception carries the partial report.
            SimulationCancelled: When *cancel_check* returns ``True``.
        """
        from .progress import PrintReporter, ProgressReporter

        if self.method is Method.GLMM and self.design.narms < 3:
            warnings.warn("The likelihood-ratio test of all arms is not informative with fewer than 3 arms; use the per-arm power.")

        if progress_callback is None:
            effective_cb = PrintReporter() if print_results else None
        elif progress_callback is False:
            effective_cb = None
        else:
            effective_cb = progress_callback

        reporter = None
        if effective_cb is not None:
            reporter = ProgressReporter(self.n_simulations, effective_cb)
            reporter.start()

        runner = self._make_runner(backend, verbose=print_results)
        report = runner.run(progress=reporter, cancel_check=cancel_check)

        if reporter is not None:
            reporter.finish()

        if print_results:
            print(f"\n{'=' * 80}")
            print("MONTE CARLO POWER ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(f"Model: {runner._settings()['model_type']}, correction: {report.correction}")
            print(report)

        return report


def cps_ma(
    nsim: int = 1000,
    nsubjects=None,
    narms: Optional[int] = None,
    nclusters=None,
    outcome_param=None,
    sigma_b_sq=None,
    family: str = "normal",
    alpha: float = 0.05,
    method: str = "glmm",
    multi_p_method: Optional[str] = "bonferroni",
    seed: Optional[int] = None,
    cores: Union[int, str, None] = None,
    poor_fit_override: bool = False,
    low_power_override: bool = False,
    time_limit_override: bool = False,
    time_limit: float = DEFAULT_TIME_LIMIT,
    keep_raw_data: bool = False,
    tdist: bool = False,
    random_effect_df: float = float("inf"),
    sigma_sq=None,
    nb_dispersion: float = 1.0,
    quiet: bool = True,
    progress_callback=None,
    cancel_check: Optional[Callable[[], bool]] = None,
    backend: Optional[FittingService] = None,
) -> PowerReport:
    """Power of a multi-arm cluster-randomized trial, in a single call.

    Args:
        nsim: Number of simulations.
        nsubjects: Subjects per cluster (scalar, per arm, or per cluster).
        narms: Number of arms.
        nclusters: Clusters per arm (scalar or per arm).
        outcome_param: Per-arm means / probabilities / expected counts.
        sigma_b_sq: Between-cluster variance, scalar or per arm.
        family: ``"normal"``, ``"binary"``, ``"poisson"`` or ``"neg_binom"``.
        alpha: Significance level.
        method: ``"glmm"`` or ``"gee"``.
        multi_p_method: Multiplicity adjustment (GLMM only).
        seed: Base seed; ``None`` seeds from OS entropy.
        cores: ``None`` for sequential, a worker count, or ``"all"``.
        poor_fit_override: Do not stop when >25% of fits are poor.
        low_power_override: Do not stop when running power < 0.5.
        time_limit_override: Do not stop when the projected run time
            exceeds *time_limit*.
        time_limit: Projected run time ceiling, seconds.
        keep_raw_data: Attach simulated datasets and convergence flags.
        tdist: Student-t cluster effects with *random_effect_df* df.
        random_effect_df: Degrees of freedom of the t cluster effects.
        sigma_sq: Within-cluster variance (normal family).
        nb_dispersion: Negative-binomial shape ``theta``.
        quiet: When ``False``, print run-time estimates and progress.
        progress_callback: Passed to ``find_power``.
        cancel_check: Passed to ``find_power``.
        backend: Fitting service for this run.

    Returns:
        ``PowerReport``.
    """
    power = ClusterTrialPower(
        nsubjects=nsubjects,
        outcome_param=outcome_param,
        sigma_b_sq=sigma_b_sq,
        family=family,
        narms=narms,
        nclusters=nclusters,
        sigma_sq=sigma_sq,
        nb_dispersion=nb_dispersion,
    )
    power.set_simulations(nsim).set_alpha(alpha).set_seed(seed).set_method(method)
    power.set_correction(multi_p_method).set_time_limit(time_limit).set_keep_raw_data(keep_raw_data)
    power.set_overrides(poor_fit=poor_fit_override, low_power=low_power_override, time_limit=time_limit_override)
    if tdist:
        power.set_random_effect_distribution(True, random_effect_df)
    if cores is not None:
        power.set_parallel(True, n_cores=cores)

    if progress_callback is None and quiet:
        progress_callback = False
    return power.find_power(
        print_results=not quiet,
        progress_callback=progress_callback,
        cancel_check=cancel_check,
        backend=backend,
    )
