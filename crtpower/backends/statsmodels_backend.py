"""statsmodels implementation of the model fitting service.

- Normal GLMM: ``MixedLM`` fitted by REML for the coefficients; the
  comparison with the null model is a likelihood-ratio test on ML refits
  (OLS likelihoods when the random-intercept variance sits on the boundary),
  with a Wald chi-square fallback.
- Binary / count GLMM: marginal maximum likelihood by adaptive
  Gauss-Hermite quadrature (``crtpower.stats.glmm_solver``); the null
  comparison is a likelihood-ratio test against the intercept-only GLMM,
  with a Wald chi-square fallback.
- GEE: ``GEE`` with an exchangeable working correlation and robust
  covariance; the null comparison is a Wald chi-square on the arm terms.
"""

import warnings
from typing import Any, Dict, Tuple

import numpy as np
from scipy.stats import chi2, norm

from ..core.design import Family, FormulaSpec
from . import FitOutcome, NullComparison

# Random-intercept variance treated as zero (singular fit)
RE_VARIANCE_BOUNDARY = 1e-8
# Random-intercept SD treated as zero (marginal-likelihood GLMM)
RE_SD_BOUNDARY = 1e-4

_GLMM_KINDS = {
    Family.BINARY: "binomial",
    Family.POISSON: "poisson",
    Family.NEG_BINOM: "negbin",
}


def _require_statsmodels():
    try:
        import statsmodels  # noqa: F401
    except ImportError as e:
        raise ImportError("statsmodels is required for model fitting: pip install statsmodels") from e


def _design_matrix(dataset, formula_spec: FormulaSpec) -> Tuple[np.ndarray, list]:
    """Intercept plus one indicator per non-reference arm (treatment coding)."""
    n = dataset.y.shape[0]
    columns = [np.ones(n)]
    names = ["(Intercept)"]
    if formula_spec.arm_terms:
        for arm in np.unique(dataset.arm)[1:]:
            columns.append((dataset.arm == arm).astype(float))
            names.append(f"arm{int(arm)}")
    return np.column_stack(columns), names


def _cluster_codes(dataset) -> Tuple[np.ndarray, int]:
    """Map cluster ids to 0..K-1."""
    _, codes = np.unique(dataset.cluster, return_inverse=True)
    return codes, int(codes.max()) + 1


def _z_outcome(names, estimates, std_errors, converged, singular, handle) -> FitOutcome:
    """Build a ``FitOutcome`` with z statistics and two-sided normal p-values."""
    estimates = np.asarray(estimates, dtype=float)
    std_errors = np.asarray(std_errors, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = estimates / std_errors
    p = 2 * norm.sf(np.abs(z))
    if not np.all(np.isfinite(std_errors)) or np.any(std_errors <= 0):
        converged = False
    return FitOutcome(
        coef_names=list(names),
        estimates=estimates,
        std_errors=std_errors,
        statistics=z,
        p_values=p,
        converged=bool(converged),
        singular=bool(singular),
        handle=handle,
    )


def _wald_chi2(params: np.ndarray, cov: np.ndarray) -> NullComparison:
    """
    Compute Wald test for the arm coefficients.

    H0: all non-intercept coefficients = 0
    Test statistic: β' * Cov(β)^-1 * β ~ χ²(df)
    """
    beta = np.asarray(params, dtype=float)[1:]
    cov_beta = np.asarray(cov, dtype=float)[1:, 1:]
    df = len(beta)
    if df == 0:
        return NullComparison.failed(0, test="Wald")
    try:
        stat = float(beta @ np.linalg.solve(cov_beta, beta))
    except np.linalg.LinAlgError:
        return NullComparison.failed(df, test="Wald")
    if not np.isfinite(stat) or stat < 0:
        return NullComparison.failed(df, test="Wald")
    return NullComparison(df=df, statistic=stat, p_value=float(chi2.sf(stat, df)), test="Wald")


def _converged_from_warnings(caught) -> bool:
    """``False`` if any captured warning reports a convergence problem."""
    from statsmodels.tools.sm_exceptions import ConvergenceWarning

    for w in caught:
        if issubclass(w.category, ConvergenceWarning) or "converge" in str(w.message).lower():
            return False
    return True


class StatsmodelsBackend:
    """Fitting service backed by statsmodels."""

    def __init__(self, gee_maxiter: int = 60, n_agq: int = 7):
        self.gee_maxiter = gee_maxiter
        self.n_agq = n_agq

    # ------------------------------------------------------------------
    # GLMM
    # ------------------------------------------------------------------

    def fit_mixed_model(self, dataset, formula_spec: FormulaSpec) -> FitOutcome:
        _require_statsmodels()
        if formula_spec.family is Family.NORMAL:
            return self._fit_mixedlm(dataset, formula_spec)
        return self._fit_marginal_glmm(dataset, formula_spec)

    def _fit_mixedlm(self, dataset, formula_spec: FormulaSpec) -> FitOutcome:
        from statsmodels.regression.mixed_linear_model import MixedLM

        X, names = _design_matrix(dataset, formula_spec)
        y = np.asarray(dataset.y, dtype=float)
        groups = np.asarray(dataset.cluster)

        # Direct initialization (faster than from_formula)
        model = MixedLM(endog=y, exog=X, groups=groups)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = model.fit(reml=True, method="lbfgs")

        re_var = float(np.asarray(result.cov_re).flat[0])
        singular = re_var < RE_VARIANCE_BOUNDARY
        converged = bool(getattr(result, "converged", True))
        # Boundary warnings are reported through ``singular``, not as failures
        if converged and not singular:
            converged = _converged_from_warnings(caught)

        handle = {"kind": "mixedlm", "result": result, "X": X, "y": y, "groups": groups, "singular": singular}
        return _z_outcome(names, result.fe_params, result.bse_fe, converged, singular, handle)

    def _fit_marginal_glmm(self, dataset, formula_spec: FormulaSpec) -> FitOutcome:
        from ..stats.glmm_solver import glmm_fit, prepare_data

        X, names = _design_matrix(dataset, formula_spec)
        codes, n_clusters = _cluster_codes(dataset)
        data = prepare_data(
            X,
            dataset.y,
            codes,
            n_clusters,
            _GLMM_KINDS[formula_spec.family],
            theta=formula_spec.nb_dispersion,
            n_agq=self.n_agq,
        )
        result = glmm_fit(data)

        singular = np.sqrt(result.tau2) < RE_SD_BOUNDARY
        handle = {"kind": "glmm", "data": data, "llf": result.log_likelihood, "params": result.beta, "cov": result.cov_beta}
        return _z_outcome(names, result.beta, result.se_beta, result.converged, singular, handle)

    # ------------------------------------------------------------------
    # GEE
    # ------------------------------------------------------------------

    def fit_gee(self, dataset, formula_spec: FormulaSpec) -> FitOutcome:
        _require_statsmodels()
        from statsmodels.genmod import families
        from statsmodels.genmod.cov_struct import Exchangeable
        from statsmodels.genmod.generalized_estimating_equations import GEE

        family_map: Dict[Family, Any] = {
            Family.NORMAL: families.Gaussian,
            Family.BINARY: families.Binomial,
            Family.POISSON: families.Poisson,
        }
        if formula_spec.family is Family.NEG_BINOM:
            # statsmodels parameterises Var = mu + alpha * mu^2
            sm_family = families.NegativeBinomial(alpha=1.0 / formula_spec.nb_dispersion)
        else:
            sm_family = family_map[formula_spec.family]()

        X, names = _design_matrix(dataset, formula_spec)
        y = np.asarray(dataset.y, dtype=float)
        groups = np.asarray(dataset.cluster)

        model = GEE(y, X, groups=groups, family=sm_family, cov_struct=Exchangeable())
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = model.fit(maxiter=self.gee_maxiter)

        converged = bool(getattr(result, "converged", True)) and _converged_from_warnings(caught)
        params = np.asarray(result.params, dtype=float)
        bse = np.asarray(result.bse, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            wald = (params / bse) ** 2
        if not np.all(np.isfinite(bse)) or np.any(bse <= 0):
            converged = False

        handle = {"kind": "wald", "params": params, "cov": np.asarray(result.cov_params(), dtype=float)}
        return FitOutcome(
            coef_names=names,
            estimates=params,
            std_errors=bse,
            statistics=wald,
            p_values=chi2.sf(wald, 1),
            converged=converged,
            singular=False,
            handle=handle,
        )

    # ------------------------------------------------------------------
    # Model comparison
    # ------------------------------------------------------------------

    def compare(self, fitted: FitOutcome, null_formula_spec: FormulaSpec) -> NullComparison:
        df = len(fitted.coef_names) - 1
        handle = fitted.handle
        if handle is None:
            return NullComparison.failed(df)
        if handle["kind"] == "mixedlm":
            return self._likelihood_ratio(handle, df)
        if handle["kind"] == "glmm":
            return self._glmm_likelihood_ratio(handle, df)
        return _wald_chi2(handle["params"], handle["cov"])

    def _glmm_likelihood_ratio(self, handle: Dict[str, Any], df: int) -> NullComparison:
        """Likelihood-ratio test of the arm terms against the intercept-only GLMM."""
        from ..stats.glmm_solver import glmm_fit, prepare_data

        data = handle["data"]
        null_data = prepare_data(
            np.ones((data.y.shape[0], 1)),
            data.y,
            data.codes,
            data.K,
            data.kind,
            theta=data.theta,
            n_agq=data.nodes.shape[0],
        )
        null_fit = glmm_fit(null_data, compute_cov=False)

        lr_stat = 2 * (handle["llf"] - null_fit.log_likelihood)
        # Optimizer noise around a zero statistic
        if -1e-6 < lr_stat < 0:
            lr_stat = 0.0
        if np.isnan(lr_stat) or lr_stat < 0 or not np.isfinite(lr_stat):
            return _wald_chi2(handle["params"], handle["cov"])

        return NullComparison(df=df, statistic=float(lr_stat), p_value=float(chi2.sf(lr_stat, df)), test="LRT")

    def _likelihood_ratio(self, handle: Dict[str, Any], df: int) -> NullComparison:
        """Likelihood-ratio test of the arm terms for a MixedLM fit.

        Must use ML (not REML): REML likelihoods are not comparable across
        models with different fixed effects.
        """
        from statsmodels.regression.linear_model import OLS
        from statsmodels.regression.mixed_linear_model import MixedLM

        X, y, groups = handle["X"], handle["y"], handle["groups"]
        ones = np.ones((y.shape[0], 1))

        if handle["singular"]:
            # Random-intercept variance ~ 0: model is effectively OLS
            full_llf = OLS(y, X).fit().llf
            null_llf = OLS(y, ones).fit().llf
        else:
            full_llf = _fit_ml_loglike(MixedLM(endog=y, exog=X, groups=groups))
            null_llf = _fit_ml_loglike(MixedLM(endog=y, exog=ones, groups=groups))

        lr_stat = 2 * (full_llf - null_llf)
        if np.isnan(lr_stat) or lr_stat < 0 or not np.isfinite(lr_stat):
            result = handle["result"]
            p = X.shape[1]
            cov = np.asarray(result.cov_params())[:p, :p]
            return _wald_chi2(np.asarray(result.fe_params), cov)

        return NullComparison(df=df, statistic=float(lr_stat), p_value=float(chi2.sf(lr_stat, df)), test="LRT")


def _fit_ml_loglike(model) -> float:
    """Fit ML model with progressive retry strategy and return its log-likelihood.

    Uses ``model.loglike()`` rather than ``result.llf``, because statsmodels
    returns inf for ``.llf`` when the random effects variance is at the
    boundary (zero).
    """
    for max_iter in (200, 500, 1000):
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                ml_result = model.fit(reml=False, method="lbfgs", maxiter=max_iter)
            llf = model.loglike(ml_result.params)
            if np.isfinite(llf):
                return float(llf)
        except (np.linalg.LinAlgError, ValueError):
            continue
    return np.nan
