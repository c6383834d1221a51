"""
Model-fitting backends for crtpower.

This module defines the contract between the simulation engine and the
statistical model fitting service, and a small registry that picks the
service used by default.

The engine only ever needs three operations:

1. ``fit_mixed_model`` - fit a GLMM with a random cluster intercept
2. ``fit_gee`` - fit a GEE with an exchangeable working correlation
3. ``compare`` - test a fitted model against its intercept-only null

The default implementation is backed by statsmodels. Users can override the
selection via ``set_backend('statsmodels' | 'default')`` or by passing any
object implementing ``FittingService``.
"""

from dataclasses import dataclass, field
from typing import Any, List, Protocol, Union, runtime_checkable

import numpy as np


@dataclass(frozen=True)
class NullComparison:
    """Result of comparing a fitted model with its null model.

    Attributes:
        df: Degrees of freedom of the test (number of arm coefficients).
        statistic: Likelihood-ratio or Wald chi-square statistic.
        p_value: Upper-tail chi-square p-value.
        test: ``"LRT"`` or ``"Wald"``.
    """

    df: int
    statistic: float
    p_value: float
    test: str = "LRT"

    @classmethod
    def failed(cls, df: int, test: str = "LRT") -> "NullComparison":
        """Placeholder used when no valid comparison could be made."""
        return cls(df=df, statistic=np.nan, p_value=np.nan, test=test)


@dataclass
class FitOutcome:
    """Raw output of one model fit, as produced by a fitting service.

    Per-coefficient arrays are ordered intercept first, then one coefficient
    per non-reference arm. ``handle`` is an opaque object that the same
    service's ``compare`` understands; it never leaves the worker process.
    """

    coef_names: List[str]
    estimates: np.ndarray
    std_errors: np.ndarray
    statistics: np.ndarray
    p_values: np.ndarray
    converged: bool
    singular: bool = False
    handle: Any = field(default=None, repr=False)


@runtime_checkable
class FittingService(Protocol):
    """Protocol defining the model fitting service interface.

    Implementations must be picklable so that they can be shipped to worker
    processes.
    """

    def fit_mixed_model(self, dataset, formula_spec) -> FitOutcome:
        """Fit a GLMM (fixed arm effects + random cluster intercept).

        Returns:
            ``FitOutcome`` with z statistics and two-sided p-values.
        """
        ...

    def fit_gee(self, dataset, formula_spec) -> FitOutcome:
        """Fit a GEE (fixed arm effects, exchangeable within clusters).

        Returns:
            ``FitOutcome`` with Wald chi-square statistics (1 df each).
        """
        ...

    def compare(self, fitted: FitOutcome, null_formula_spec) -> NullComparison:
        """Test the fitted model against the intercept-only null model."""
        ...


# Valid backend names for set_backend()
_BACKEND_NAMES = {"default", "statsmodels"}

# Global backend instance
_backend_instance = None
_backend_forced = False


def _create_backend(name: str) -> FittingService:
    """
    Instantiate a backend by name.

    Raises:
        ImportError: If the requested backend is not available.
    """
    if name in ("statsmodels", "default"):
        from .statsmodels_backend import StatsmodelsBackend

        return StatsmodelsBackend()

    raise ValueError(f"Unknown backend: {name!r}")


def get_backend() -> FittingService:
    """
    Get the active fitting service.

    On first call, creates the statsmodels backend. Subsequent calls return
    the cached instance unless reset_backend() is called.
    """
    global _backend_instance

    if _backend_instance is not None:
        return _backend_instance

    _backend_instance = _create_backend("default")
    return _backend_instance


def set_backend(backend: Union[str, FittingService]) -> None:
    """
    Set the fitting service.

    Args:
        backend: One of:
            - 'default'     - the statsmodels backend
            - 'statsmodels' - force the statsmodels backend
            - A FittingService instance

    Raises:
        ValueError: If the string is not recognized or the object does not
            implement ``FittingService``.
    """
    global _backend_instance, _backend_forced

    if isinstance(backend, str):
        name = backend.lower().strip()
        if name not in _BACKEND_NAMES:
            raise ValueError(f"Unknown backend {backend!r}. Choose from: {', '.join(sorted(_BACKEND_NAMES))}")
        _backend_instance = _create_backend(name)
        _backend_forced = name != "default"
    else:
        if not isinstance(backend, FittingService):
            raise ValueError(f"{type(backend).__name__} does not implement fit_mixed_model / fit_gee / compare")
        _backend_instance = backend
        _backend_forced = True


def reset_backend() -> None:
    """Reset backend to automatic selection."""
    global _backend_instance, _backend_forced
    _backend_instance = None
    _backend_forced = False


def get_backend_info() -> dict:
    """
    Get information about the current backend.

    Returns:
        Dictionary with backend name, module, and whether it was forced.
    """
    backend = get_backend()
    return {
        "name": type(backend).__name__,
        "module": type(backend).__module__,
        "forced": _backend_forced,
    }


__all__ = [
    "FitOutcome",
    "FittingService",
    "NullComparison",
    "get_backend",
    "set_backend",
    "reset_backend",
    "get_backend_info",
]
