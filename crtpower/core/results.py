"""
Results processing for crtpower.

Turns the per-iteration ``ModelFitResult`` objects of a (complete or
partial) run into a ``PowerReport``: per-arm power with normal-approximation
confidence intervals, omnibus power, the matrix of per-iteration estimates
and the convergence summary.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from ..stats.multitest import adjust_pvalues
from .monitor import RunStatus


def power_confidence_interval(power: float, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Normal-approximation CI for a rejection proportion, clamped to [0, 1].

    ``power ± z_{1-alpha/2} * sqrt(power * (1 - power) / n)``
    """
    if n <= 0 or np.isnan(power):
        return np.nan, np.nan
    z = abs(norm.ppf(alpha / 2))
    half_width = z * np.sqrt(power * (1 - power) / n)
    return float(max(0.0, power - half_width)), float(min(1.0, power + half_width))


@dataclass(frozen=True)
class PowerReport:
    """Power estimates for one simulation run.

    Attributes:
        power: One row per non-reference arm (``arm2.power``, ...) with
            columns ``power``, ``lower_95_ci``, ``upper_95_ci``.
        model_estimates: One row per iteration with ``armK.Estimate``,
            ``armK.Std.Err``, ``armK.zval`` (or ``armK.wald``) and
            ``armK.pval`` columns. The intercept is excluded.
        overall_power: Share of iterations whose omnibus test rejected.
        overall_lower_95_ci: Lower CI bound of ``overall_power``.
        overall_upper_95_ci: Upper CI bound of ``overall_power``.
        overall_tests: One row per iteration with ``Df``, ``Statistic``, ``P``.
        overall_test: Name of the omnibus test (``"LRT"`` or ``"Wald"``).
        n_simulations_used: Iterations aggregated.
        n_simulations_requested: Iterations requested.
        status: Final run status.
        sim_data: Raw simulated datasets (only with ``keep_raw_data``).
        convergence_flags: Per-iteration 1/0 non-convergence flags (only
            with ``keep_raw_data``).
        convergence_failure_rate: ``"12.5% did not converge"`` (without
            ``keep_raw_data``).
        alpha: Significance level used.
        correction: Multiplicity adjustment applied to per-arm p-values.
        settings: Run configuration echoed into ``to_dict()``.
    """

    power: pd.DataFrame
    model_estimates: pd.DataFrame
    overall_power: float
    overall_lower_95_ci: float
    overall_upper_95_ci: float
    overall_tests: pd.DataFrame
    overall_test: str
    n_simulations_used: int
    n_simulations_requested: int
    status: RunStatus
    alpha: float = 0.05
    correction: str = "none"
    sim_data: Optional[List[pd.DataFrame]] = field(default=None, repr=False)
    convergence_flags: Optional[np.ndarray] = field(default=None, repr=False)
    convergence_failure_rate: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def overall_summary(self) -> str:
        return (
            f"Proportion of {self.overall_test} significance-test rejections = {self.overall_power:.3g}, "
            f"CI: {self.overall_lower_95_ci:.3g}, {self.overall_upper_95_ci:.3g}."
        )

    @property
    def complete(self) -> bool:
        return self.status is RunStatus.COMPLETE

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict view with ``model`` (settings) and ``results`` sections."""
        model = dict(self.settings)
        model.update(
            {
                "alpha": self.alpha,
                "correction": self.correction,
                "n_simulations": self.n_simulations_used,
                "n_simulations_requested": self.n_simulations_requested,
                "status": self.status.value,
            }
        )
        results: Dict[str, Any] = {
            "individual_powers": self.power["power"].to_dict(),
            "confidence_intervals": {
                name: (row["lower_95_ci"], row["upper_95_ci"]) for name, row in self.power.iterrows()
            },
            "overall_power": self.overall_power,
            "overall_ci": (self.overall_lower_95_ci, self.overall_upper_95_ci),
            "overall_test": self.overall_test,
            "n_simulations_used": self.n_simulations_used,
        }
        if self.convergence_flags is not None:
            results["failed_to_converge"] = self.convergence_flags.tolist()
        else:
            results["proportion_failed_to_converge"] = self.convergence_failure_rate
        return {"model": model, "results": results}

    def __str__(self) -> str:
        lines = [
            self.power.to_string(float_format=lambda v: f"{v:.3f}"),
            "",
            self.overall_summary,
        ]
        if self.convergence_failure_rate is not None:
            lines.append(self.convergence_failure_rate)
        elif self.convergence_flags is not None:
            lines.append(f"{100 * float(np.mean(self.convergence_flags)):g}% did not converge")
        return "\n".join(lines)


class ResultsProcessor:
    """Aggregates per-iteration fit results into a ``PowerReport``.

    Args:
        alpha: Significance level.
        correction: Multiplicity adjustment (``p.adjust`` name). Applied to
            the full per-coefficient p-value vector of every GLMM iteration;
            GEE p-values are used unadjusted.
        method: ``"glmm"`` or ``"gee"``.
    """

    def __init__(self, alpha: float = 0.05, correction: str = "bonferroni", method: str = "glmm"):
        self.alpha = alpha
        self.correction = correction if correction is not None else "none"
        self.method = method

    def _adjusted_pvalues(self, p_values: np.ndarray) -> np.ndarray:
        if self.method != "glmm" or self.correction == "none":
            return p_values
        return np.vstack([adjust_pvalues(row, self.correction) for row in p_values])

    def aggregate(
        self,
        results: Sequence,
        n_simulations_requested: int,
        status: RunStatus = RunStatus.COMPLETE,
        datasets: Optional[Sequence] = None,
        keep_raw_data: bool = False,
        settings: Optional[Dict[str, Any]] = None,
    ) -> PowerReport:
        """Build the report for the consumed iterations.

        Args:
            results: ``ModelFitResult`` objects in iteration order.
            n_simulations_requested: Iterations originally requested.
            status: Final run status.
            datasets: Simulated datasets (same order), kept when
                *keep_raw_data*.
            keep_raw_data: Attach raw datasets and per-iteration flags.
            settings: Run configuration echoed into ``to_dict()``.

        Raises:
            ValueError: If *results* is empty.
        """
        n = len(results)
        if n == 0:
            raise ValueError("Cannot aggregate an empty result set")

        coef_names = list(results[0].coef_names)
        arm_names = coef_names[1:]
        kind = results[0].statistic_kind
        stat_suffix = "zval" if kind == "z" else "wald"

        estimates = np.vstack([r.estimates for r in results])
        std_errors = np.vstack([r.std_errors for r in results])
        statistics = np.vstack([r.test_statistics for r in results])
        p_values = np.vstack([r.p_values for r in results])
        adjusted = self._adjusted_pvalues(p_values)

        # NaN p-values (failed fits) never count as rejections
        rejections = np.nan_to_num(adjusted[:, 1:], nan=1.0) < self.alpha
        arm_power = rejections.sum(axis=0) / n

        power_rows = []
        for name, p_hat in zip(arm_names, arm_power):
            lower, upper = power_confidence_interval(float(p_hat), n, self.alpha)
            power_rows.append({"power": float(p_hat), "lower_95_ci": lower, "upper_95_ci": upper})
        power = pd.DataFrame(power_rows, index=[f"{name}.power" for name in arm_names])

        columns: Dict[str, np.ndarray] = {}
        for j, name in enumerate(arm_names, start=1):
            columns[f"{name}.Estimate"] = estimates[:, j]
            columns[f"{name}.Std.Err"] = std_errors[:, j]
            columns[f"{name}.{stat_suffix}"] = statistics[:, j]
            columns[f"{name}.pval"] = adjusted[:, j]
        model_estimates = pd.DataFrame(columns)

        overall_tests = pd.DataFrame(
            {
                "Df": [r.null_comparison.df for r in results],
                "Statistic": [r.null_comparison.statistic for r in results],
                "P": [r.null_comparison.p_value for r in results],
            }
        )
        overall_p = np.nan_to_num(overall_tests["P"].to_numpy(dtype=float), nan=1.0)
        overall_power = float(np.sum(overall_p < self.alpha)) / n
        overall_lower, overall_upper = power_confidence_interval(overall_power, n, self.alpha)
        overall_test = Counter(r.null_comparison.test for r in results).most_common(1)[0][0]

        fail_flags = np.array([0 if r.converged else 1 for r in results], dtype=int)
        sim_data = None
        convergence_flags = None
        failure_rate = None
        if keep_raw_data:
            convergence_flags = fail_flags
            if datasets is not None:
                sim_data = [d.to_frame() for d in datasets[:n]]
        else:
            failure_rate = f"{100 * fail_flags.sum() / n:g}% did not converge"

        return PowerReport(
            power=power,
            model_estimates=model_estimates,
            overall_power=overall_power,
            overall_lower_95_ci=overall_lower,
            overall_upper_95_ci=overall_upper,
            overall_tests=overall_tests,
            overall_test=overall_test,
            n_simulations_used=n,
            n_simulations_requested=int(n_simulations_requested),
            status=status,
            alpha=self.alpha,
            correction=self.correction if self.method == "glmm" else "none",
            sim_data=sim_data,
            convergence_flags=convergence_flags,
            convergence_failure_rate=failure_rate,
            settings=dict(settings or {}),
        )
