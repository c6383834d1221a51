"""Core components for crtpower.

Re-exports the building blocks of a run:

- ``TrialDesign``, ``Family``, ``Method``, ``FormulaSpec`` - trial design
  and model specification.
- ``ConvergenceMonitor``, ``RunState``, ``RunStatus`` and the
  ``SimulationAborted`` family - convergence and early-stop monitoring.
- ``ResultsProcessor``, ``PowerReport`` - aggregation of fit results.
- ``SimulationRunner`` - Monte Carlo execution (sequential or pooled).
"""

from .design import Family, FormulaSpec, Method, TrialDesign, build_formula_spec, parse_family, parse_method
from .monitor import (
    ConvergenceMonitor,
    LowPowerAbort,
    PoorFitAbort,
    RunState,
    RunStatus,
    SimulationAborted,
    TimeBudgetAbort,
)
from .results import PowerReport, ResultsProcessor, power_confidence_interval
from .simulation import SimulationRunner

__all__ = [
    # Design
    "TrialDesign",
    "Family",
    "Method",
    "FormulaSpec",
    "build_formula_spec",
    "parse_family",
    "parse_method",
    # Monitoring
    "ConvergenceMonitor",
    "RunState",
    "RunStatus",
    "SimulationAborted",
    "PoorFitAbort",
    "LowPowerAbort",
    "TimeBudgetAbort",
    # Results
    "ResultsProcessor",
    "PowerReport",
    "power_confidence_interval",
    # Simulation
    "SimulationRunner",
]
