"""Marginal-likelihood solver for random-intercept GLMMs.

Fits ``g(E[y | b]) = X beta + b_cluster`` with ``b ~ N(0, tau^2)`` for
binomial (logit), Poisson (log) and negative-binomial (log, known shape
``theta``) outcomes by maximising the marginal likelihood, as
``lme4::glmer`` does.

The cluster integrals are evaluated by adaptive Gauss-Hermite quadrature:
for fixed ``(beta, tau)`` each cluster's conditional mode and curvature are
found by a vectorised Newton iteration over all clusters at once, and the
quadrature nodes are centred and scaled on them. ``n_agq=1`` is the Laplace
approximation.

Standard errors come from the numerical Hessian of the marginal
log-likelihood in ``(beta, log tau)``, or in ``beta`` alone when ``tau``
sits on the boundary, so the between-cluster variance enters the
fixed-effect covariance.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import sparse
from scipy.special import expit, gammaln, logsumexp

# log(tau) search range; tau below exp(LOG_TAU_MIN) is a singular fit
LOG_TAU_MIN = -12.0
LOG_TAU_MAX = 4.0
LOG_TAU_START = np.log(0.5)

GLMM_KINDS = ("binomial", "poisson", "negbin")

# Largest gradient entry accepted at a BFGS stop flagged as precision loss
GRAD_TOL = 1e-3


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class GLMMData:
    """Everything the marginal likelihood needs, computed once per dataset."""

    X: np.ndarray  # (N, p)
    y: np.ndarray  # (N,)
    codes: np.ndarray  # (N,) cluster index 0..K-1
    K: int
    kind: str
    theta: float  # negative-binomial shape
    const: np.ndarray  # (N,) y-only log-density terms
    Z: sparse.csr_matrix  # (K, N) cluster membership
    nodes: np.ndarray  # (Q,) Gauss-Hermite abscissae
    log_weights: np.ndarray  # (Q,) log weights + node^2


@dataclass
class GLMMResult:
    """Result of GLMM fitting."""

    beta: np.ndarray  # (p,) fixed effects incl. intercept
    cov_beta: np.ndarray  # (p, p)
    se_beta: np.ndarray  # (p,)
    tau2: float  # random intercept variance
    log_likelihood: float  # marginal, at optimum
    converged: bool
    n_iter: int = 0


def prepare_data(X, y, codes, K, kind, theta=1.0, n_agq=7) -> GLMMData:
    """Precompute the per-dataset constants of the marginal likelihood."""
    if kind not in GLMM_KINDS:
        raise ValueError(f"Unknown GLMM family {kind!r}. Choose from: {', '.join(GLMM_KINDS)}")
    if n_agq < 1:
        raise ValueError("n_agq must be >= 1")

    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    codes = np.asarray(codes, dtype=np.int64)
    n = y.shape[0]

    if kind == "binomial":
        const = np.zeros(n)
    elif kind == "poisson":
        const = -gammaln(y + 1.0)
    else:
        const = gammaln(y + theta) - gammaln(theta) - gammaln(y + 1.0) + theta * np.log(theta)

    nodes, weights = np.polynomial.hermite.hermgauss(n_agq)
    Z = sparse.csr_matrix((np.ones(n), (codes, np.arange(n))), shape=(K, n))
    return GLMMData(
        X=X,
        y=y,
        codes=codes,
        K=int(K),
        kind=kind,
        theta=float(theta),
        const=const,
        Z=Z,
        nodes=nodes,
        log_weights=np.log(weights) + nodes**2,
    )


# ---------------------------------------------------------------------------
# Conditional log-density and its eta-derivatives
# ---------------------------------------------------------------------------


def family_terms(kind, y, eta, theta=1.0, const=0.0):
    """Log-density of ``y`` given linear predictor ``eta``, with first and second eta-derivatives.

    ``y`` and ``const`` broadcast against ``eta`` (e.g. ``y[:, None]`` for a
    matrix of quadrature points).
    """
    if kind == "binomial":
        mu = expit(eta)
        ll = y * eta - np.logaddexp(0.0, eta)
        return ll + const, y - mu, -mu * (1.0 - mu)

    eta = np.clip(eta, -50.0, 50.0)
    mu = np.exp(eta)
    if kind == "poisson":
        return y * eta - mu + const, y - mu, -mu

    # Negative binomial: Var = mu + mu^2 / theta
    log_theta_mu = np.logaddexp(np.log(theta), eta)
    ll = const + y * eta - (theta + y) * log_theta_mu
    ratio = mu / (theta + mu)
    d1 = y - (theta + y) * ratio
    d2 = -(theta + y) * theta * mu / (theta + mu) ** 2
    return ll, d1, d2


def cluster_modes(data: GLMMData, eta_fixed, tau2, max_iter=50, tol=1e-10):
    """Newton iteration for every cluster's conditional mode of ``b``.

    Returns:
        (modes, curvature): ``b_hat`` and ``-d^2/db^2`` of the log joint
        density at ``b_hat``, both of shape (K,).
    """
    b = np.zeros(data.K)
    prec = 1.0 / tau2
    for _ in range(max_iter):
        _, d1, d2 = family_terms(data.kind, data.y, eta_fixed + b[data.codes], data.theta, data.const)
        grad = np.bincount(data.codes, weights=d1, minlength=data.K) - b * prec
        curv = -np.bincount(data.codes, weights=d2, minlength=data.K) + prec
        step = np.clip(grad / curv, -5.0, 5.0)
        b += step
        if np.max(np.abs(step)) < tol:
            break
    _, _, d2 = family_terms(data.kind, data.y, eta_fixed + b[data.codes], data.theta, data.const)
    curv = -np.bincount(data.codes, weights=d2, minlength=data.K) + prec
    return b, curv


def marginal_loglike(beta, log_tau, data: GLMMData) -> float:
    """Marginal log-likelihood by adaptive Gauss-Hermite quadrature."""
    log_tau = float(np.clip(log_tau, LOG_TAU_MIN, LOG_TAU_MAX))
    tau2 = np.exp(2.0 * log_tau)
    eta_fixed = data.X @ np.asarray(beta, dtype=float)

    modes, curv = cluster_modes(data, eta_fixed, tau2)
    scale = np.sqrt(2.0 / curv)
    points = modes[:, None] + scale[:, None] * data.nodes[None, :]  # (K, Q)

    ll, _, _ = family_terms(
        data.kind,
        data.y[:, None],
        eta_fixed[:, None] + points[data.codes],
        data.theta,
        data.const[:, None],
    )
    h = np.asarray(data.Z @ ll) - points**2 / (2.0 * tau2)
    log_int = logsumexp(h + data.log_weights[None, :], axis=1) + np.log(scale)
    total = np.sum(log_int) - 0.5 * data.K * np.log(2.0 * np.pi * tau2)
    return float(total) if np.isfinite(total) else -np.inf


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


def _glm_start(data: GLMMData) -> np.ndarray:
    """Fixed-effect starting values from the GLM that ignores clustering."""
    import statsmodels.api as sm

    families = {
        "binomial": sm.families.Binomial,
        "poisson": sm.families.Poisson,
    }
    if data.kind == "negbin":
        family = sm.families.NegativeBinomial(alpha=1.0 / data.theta)
    else:
        family = families[data.kind]()
    try:
        start = np.asarray(sm.GLM(data.y, data.X, family=family).fit().params, dtype=float)
    except (np.linalg.LinAlgError, ValueError):
        start = np.zeros(data.X.shape[1])
    if not np.all(np.isfinite(start)):
        start = np.zeros(data.X.shape[1])
    return start


def _covariance(objective, x_opt, p, singular):
    """Inverse numerical Hessian, restricted to the fixed effects."""
    from statsmodels.tools.numdiff import approx_hess3

    if singular:
        hess = approx_hess3(x_opt[:p], lambda beta: objective(np.append(beta, x_opt[p])))
    else:
        hess = approx_hess3(x_opt, objective)
    try:
        cov = np.linalg.inv(hess)[:p, :p]
    except np.linalg.LinAlgError:
        return np.full((p, p), np.nan)
    if not np.all(np.isfinite(np.diag(cov))) or np.any(np.diag(cov) <= 0):
        return np.full((p, p), np.nan)
    return cov


def glmm_fit(data: GLMMData, start: Optional[np.ndarray] = None, compute_cov: bool = True) -> GLMMResult:
    """Maximise the marginal likelihood over ``(beta, log tau)``.

    Args:
        data: Output of ``prepare_data``.
        start: Optional starting ``(beta, log tau)`` vector.
        compute_cov: Skip the Hessian when only the likelihood is needed
            (null models in likelihood-ratio tests).
    """
    from scipy.optimize import minimize
    from statsmodels.tools.numdiff import approx_fprime

    p = data.X.shape[1]
    if start is not None and len(start) == p + 1:
        x0 = np.asarray(start, dtype=float).copy()
    else:
        x0 = np.append(_glm_start(data), LOG_TAU_START)

    def objective(x):
        return -marginal_loglike(x[:p], x[p], data)

    def gradient(x):
        return approx_fprime(x, objective, centered=True)

    result = minimize(objective, x0, jac=gradient, method="BFGS", options={"maxiter": 200, "gtol": 1e-5})

    x_opt = result.x.copy()
    x_opt[p] = np.clip(x_opt[p], LOG_TAU_MIN, LOG_TAU_MAX)
    llf = -float(result.fun)
    grad_ok = np.all(np.isfinite(result.jac)) and np.max(np.abs(result.jac)) < GRAD_TOL
    converged = bool(np.isfinite(llf) and np.all(np.isfinite(x_opt)) and (result.success or grad_ok))

    tau2 = float(np.exp(2.0 * x_opt[p]))
    if compute_cov:
        singular = x_opt[p] <= LOG_TAU_MIN + 1.0
        cov = _covariance(objective, x_opt, p, singular)
    else:
        cov = np.full((p, p), np.nan)

    return GLMMResult(
        beta=x_opt[:p],
        cov_beta=cov,
        se_beta=np.sqrt(np.diag(cov)),
        tau2=tau2,
        log_likelihood=llf,
        converged=converged,
        n_iter=int(result.nit),
    )
