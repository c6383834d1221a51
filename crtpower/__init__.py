"""crtpower - Monte Carlo power for multi-arm cluster-randomized trials.

Simulates hierarchical trial data under the alternative hypothesis, fits a
GLMM or GEE to every dataset and reports the share of rejections per arm
and for the omnibus test, with normal-approximation confidence intervals.

Example:
    >>> from crtpower import ClusterTrialPower, cps_ma
    >>>
    >>> report = cps_ma(
    ...     nsim=500, narms=3, nsubjects=30, nclusters=10,
    ...     outcome_param=[1.0, 1.5, 2.0], sigma_b_sq=0.1,
    ...     family="poisson", seed=123, cores="all",
    ... )
    >>> report.power
    >>> print(report.overall_summary)
"""

from importlib.metadata import version as _get_version

from .backends import FittingService, get_backend, reset_backend, set_backend
from .core import (
    Family,
    LowPowerAbort,
    Method,
    PoorFitAbort,
    PowerReport,
    RunStatus,
    SimulationAborted,
    TimeBudgetAbort,
    TrialDesign,
)
from .model import ClusterTrialPower, cps_ma
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .utils.validators import ValidationError

__version__ = _get_version("crtpower")

__all__ = [
    "ClusterTrialPower",
    "cps_ma",
    "TrialDesign",
    "Family",
    "Method",
    "PowerReport",
    "RunStatus",
    "ValidationError",
    "SimulationAborted",
    "PoorFitAbort",
    "LowPowerAbort",
    "TimeBudgetAbort",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
    "FittingService",
    "get_backend",
    "set_backend",
    "reset_backend",
]
