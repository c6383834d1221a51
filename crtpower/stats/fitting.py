"""
Model-fit worker: fits the analysis model to one simulated dataset.

The worker picks the model specification for the configured family and
method, asks the fitting service for a fit and a comparison with the
intercept-only null model, and normalises the outcome into an immutable
``ModelFitResult``. Numerical failures never escape: they are recorded on
the result so that the monitor can count them.
"""

import warnings
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from ..backends import FitOutcome, FittingService, NullComparison, get_backend
from ..core.design import Family, Method, build_formula_spec, parse_family, parse_method

# Total fit attempts per dataset (first try + one retry)
MAX_FIT_ATTEMPTS = 2


@dataclass(frozen=True)
class ModelFitResult:
    """Normalised output of fitting one simulated dataset.

    Attributes:
        iteration_index: Monte Carlo iteration (0-based).
        coef_names: ``["(Intercept)", "arm2", ...]``.
        estimates: One estimate per coefficient, intercept first.
        std_errors: Standard errors, same order.
        test_statistics: z statistics (GLMM) or 1-df Wald chi-square (GEE).
        p_values: Unadjusted p-values, same order.
        converged: Whether the accepted fit converged.
        singular_fit: Whether the random-intercept variance is at zero.
        null_comparison: Omnibus test of all arm effects.
        statistic_kind: ``"z"`` or ``"wald"``.
        n_attempts: Number of fits tried (1 or 2).
        failure_reason: Exception text when the fit raised, else ``None``.
    """

    iteration_index: int
    coef_names: List[str]
    estimates: np.ndarray
    std_errors: np.ndarray
    test_statistics: np.ndarray
    p_values: np.ndarray
    converged: bool
    singular_fit: bool
    null_comparison: NullComparison
    statistic_kind: str = "z"
    n_attempts: int = 1
    failure_reason: Optional[str] = field(default=None, compare=False)

    @property
    def fit_warning(self) -> bool:
        """``True`` when the fit did not converge or was singular."""
        return (not self.converged) or self.singular_fit


def _failed_result(iteration_index: int, coef_names: List[str], kind: str, n_attempts: int, reason: str) -> ModelFitResult:
    nan = np.full(len(coef_names), np.nan)
    test = "LRT" if kind == "z" else "Wald"
    return ModelFitResult(
        iteration_index=iteration_index,
        coef_names=list(coef_names),
        estimates=nan.copy(),
        std_errors=nan.copy(),
        test_statistics=nan.copy(),
        p_values=nan.copy(),
        converged=False,
        singular_fit=False,
        null_comparison=NullComparison.failed(len(coef_names) - 1, test=test),
        statistic_kind=kind,
        n_attempts=n_attempts,
        failure_reason=reason,
    )


class ModelFitWorker:
    """Fits the configured analysis model to simulated datasets.

    Instances hold only plain configuration and the fitting service, so they
    can be pickled to worker processes.

    Args:
        family: Outcome family (``Family`` or its name).
        method: ``"glmm"`` or ``"gee"`` (or a ``Method``).
        backend: Fitting service; defaults to the active backend.
        nb_dispersion: Negative-binomial shape passed to the model.
        narms: Number of arms, used to name coefficients of failed fits.
    """

    def __init__(
        self,
        family="normal",
        method="glmm",
        backend: Optional[FittingService] = None,
        nb_dispersion: float = 1.0,
        narms: int = 2,
    ):
        self.family: Family = parse_family(family)
        self.method: Method = parse_method(method)
        self.backend = backend if backend is not None else get_backend()
        self.formula_spec = build_formula_spec(self.family, self.method, nb_dispersion)
        self.null_spec = self.formula_spec.null()
        self.coef_names = ["(Intercept)"] + [f"arm{a}" for a in range(2, narms + 1)]

    @property
    def statistic_kind(self) -> str:
        return "z" if self.method is Method.GLMM else "wald"

    def _fit_once(self, dataset):
        if self.method is Method.GLMM:
            outcome = self.backend.fit_mixed_model(dataset, self.formula_spec)
        else:
            outcome = self.backend.fit_gee(dataset, self.formula_spec)
        comparison = self.backend.compare(outcome, self.null_spec)
        return outcome, comparison

    def fit(self, dataset) -> ModelFitResult:
        """Fit the analysis model to *dataset*.

        A non-convergent or raising first attempt is retried exactly once;
        the second outcome is accepted whatever it is.

        Raises:
            ImportError: If the fitting service's dependencies are missing.
        """
        iteration_index = int(getattr(dataset, "iteration_index", 0))
        failure_reason = None
        outcome: Optional[FitOutcome] = None
        comparison: Optional[NullComparison] = None
        attempts = 0

        while attempts < MAX_FIT_ATTEMPTS:
            attempts += 1
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    outcome, comparison = self._fit_once(dataset)
                failure_reason = None
            except ImportError:
                raise  # Don't swallow missing-backend errors
            except Exception as e:
                outcome, comparison = None, None
                failure_reason = f"{type(e).__name__}: {e}"
                continue
            if outcome.converged:
                break

        if outcome is None:
            return _failed_result(iteration_index, self.coef_names, self.statistic_kind, attempts, failure_reason)

        return ModelFitResult(
            iteration_index=iteration_index,
            coef_names=list(outcome.coef_names),
            estimates=np.asarray(outcome.estimates, dtype=float),
            std_errors=np.asarray(outcome.std_errors, dtype=float),
            test_statistics=np.asarray(outcome.statistics, dtype=float),
            p_values=np.asarray(outcome.p_values, dtype=float),
            converged=bool(outcome.converged),
            singular_fit=bool(outcome.singular),
            null_comparison=comparison,
            statistic_kind=self.statistic_kind,
            n_attempts=attempts,
        )
