"""
Validation utilities for cluster-randomized trial power analysis.

This module provides validation functions for trial designs, simulation
settings and the multiplicity / parallel configuration. Every check returns
a ``_ValidationResult``; callers decide when to raise.
"""

import os
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..core.design import Family, TrialDesign, parse_family
from .parsers import coerce_per_arm, coerce_structure

__all__ = ["ValidationError", "validate_design"]

# Multiplicity methods accepted by ``adjust_pvalues`` (R ``p.adjust`` names)
VALID_CORRECTIONS = ("holm", "hochberg", "hommel", "bonferroni", "BH", "BY", "fdr", "none")


class ValidationError(ValueError):
    """Raised when a trial design or run setting is malformed.

    Always raised before any simulation starts.
    """


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self):
        """Raise ``ValidationError`` if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise ValidationError(error_msg)

    def merge(self, other: "_ValidationResult") -> "_ValidationResult":
        """Combine two results into one."""
        errors = self.errors + other.errors
        return _ValidationResult(len(errors) == 0, errors, self.warnings + other.warnings)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
        exclusive: bool = False,
    ) -> Optional[str]:
        """Check if value is within range."""
        if exclusive:
            if min_val is not None and value <= min_val:
                return f"{name} must be > {min_val}, got {value}"
            if max_val is not None and value >= max_val:
                return f"{name} must be < {max_val}, got {value}"
            return None
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float, np.integer, np.floating),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    exclusive: bool = False,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        return _ValidationResult(False, [type_error], [])

    if np.isnan(value):
        return _ValidationResult(False, [f"{name} must not be NaN"], [])

    range_error = _validator._check_range(value, min_val, max_val, name, exclusive=exclusive)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate alpha level parameter, which must lie strictly inside (0, 1)."""
    return _validate_numeric_parameter(alpha, "alpha", min_val=0, max_val=1, exclusive=True)


def _validate_simulations(n_simulations: Any) -> Tuple[int, _ValidationResult]:
    """Validate the number of simulations (positive whole number)."""
    result = _validate_numeric_parameter(n_simulations, "nsim", min_val=1)
    if not result.is_valid:
        return 0, result

    if not np.isfinite(n_simulations) or float(n_simulations) != round(float(n_simulations)):
        return 0, _ValidationResult(False, [f"nsim must be a positive integer, got {n_simulations}"], [])

    rounded = int(round(n_simulations))
    if rounded < 1000:
        result.warnings.append(f"Low simulation count ({rounded}). Consider using at least 1000 for reliable results.")
    return rounded, result


def _validate_correction_method(correction: Optional[str]) -> _ValidationResult:
    """Validate multiplicity adjustment method name (R ``p.adjust`` spelling)."""
    if correction is None:
        return _ValidationResult(True, [], [])

    if correction not in VALID_CORRECTIONS:
        return _ValidationResult(
            False,
            [f"Unknown correction method: {correction!r}. Valid options: {', '.join(repr(c) for c in VALID_CORRECTIONS)}"],
            [],
        )
    return _ValidationResult(True, [], [])


def _validate_parallel_settings(enable: Any, n_cores: Any) -> Tuple[Tuple[bool, int], _ValidationResult]:
    """Validate parallel processing settings.

    Args:
        enable: ``True`` or ``False``.
        n_cores: Positive int, ``"all"`` for every available core, or
            ``None`` for ``cpu_count // 2``.

    Returns:
        ((enable, n_cores), ValidationResult)
    """
    errors = []

    if enable not in (True, False):
        errors.append(f"enable must be True or False, got {enable!r}")
        return (False, 1), _ValidationResult(False, errors, [])

    max_cores = os.cpu_count() or 1
    validated_n_cores = max(1, max_cores // 2)

    if isinstance(n_cores, str):
        if n_cores.lower() == "all":
            validated_n_cores = max_cores
        else:
            errors.append(f"n_cores must be a positive integer or 'all', got {n_cores!r}")
    elif n_cores is not None:
        if isinstance(n_cores, bool) or not isinstance(n_cores, (int, np.integer)) or n_cores <= 0:
            errors.append(f"n_cores must be a positive integer or 'all', got {n_cores}")
        else:
            validated_n_cores = min(int(n_cores), max_cores)

    return (bool(enable), validated_n_cores), _ValidationResult(len(errors) == 0, errors, [])


def _validate_time_limit(time_limit: Any) -> _ValidationResult:
    """Validate the projected-runtime ceiling in seconds."""
    return _validate_numeric_parameter(time_limit, "time_limit", min_val=0, exclusive=True)


def _validate_outcome_params(family: Family, params: Sequence[float]) -> _ValidationResult:
    """Check that outcome parameters lie in the support of the family's link."""
    errors = []
    arr = np.asarray(params, dtype=float)
    if np.any(~np.isfinite(arr)):
        errors.append("Outcome parameters must be finite numbers")
    elif family is Family.BINARY and np.any((arr <= 0) | (arr >= 1)):
        errors.append(f"Binary outcome probabilities must lie strictly between 0 and 1, got {list(params)}")
    elif family in (Family.POISSON, Family.NEG_BINOM) and np.any(arr <= 0):
        errors.append(f"Expected counts must be positive, got {list(params)}")
    return _ValidationResult(len(errors) == 0, errors, [])


def validate_design(
    nsubjects: Any,
    outcome_param: Any,
    sigma_b_sq: Any,
    family: Any = "normal",
    narms: Optional[int] = None,
    nclusters: Any = None,
    alpha: float = 0.05,
    sigma_sq: Any = None,
    nb_dispersion: float = 1.0,
    tdist: bool = False,
    random_effect_df: float = float("inf"),
) -> Tuple[TrialDesign, List[str]]:
    """Validate user input and build a canonical ``TrialDesign``.

    Scalars are expanded to one value per arm and cluster sizes are expanded
    to one count per cluster (see ``crtpower.utils.parsers``).

    Returns:
        ``(design, warnings)``.

    Raises:
        ValidationError: With every problem found, before any simulation.
    """
    try:
        fam = parse_family(family)
    except ValueError as e:
        raise ValidationError(f"Validation failed:\n• {e}") from None

    structure, structure_errors = coerce_structure(nsubjects, narms=narms, nclusters=nclusters)
    result = _ValidationResult(not structure_errors, structure_errors, []).merge(_validate_alpha(alpha))
    result.raise_if_invalid()

    n_arms = len(structure)
    params, params_errors = coerce_per_arm(outcome_param, n_arms, "outcome parameters")
    variances, var_errors = coerce_per_arm(sigma_b_sq, n_arms, "sigma_b_sq")
    params_result = _ValidationResult(not params_errors, params_errors, [])
    var_result = _ValidationResult(not var_errors, var_errors, [])
    result = result.merge(params_result).merge(var_result)

    within = ()
    if fam is Family.NORMAL:
        within, within_errors = coerce_per_arm(1.0 if sigma_sq is None else sigma_sq, n_arms, "sigma_sq")
        within_result = _ValidationResult(not within_errors, within_errors, [])
        result = result.merge(within_result)
        if within_result.is_valid and np.any(np.asarray(within) <= 0):
            result = result.merge(_ValidationResult(False, ["Within-cluster variance sigma_sq must be positive"], []))

    if params_result.is_valid:
        result = result.merge(_validate_outcome_params(fam, params))
    if var_result.is_valid and np.any(np.asarray(variances) < 0):
        result = result.merge(_ValidationResult(False, ["Between-cluster variance sigma_b_sq must be >= 0"], []))

    if fam is Family.NEG_BINOM:
        result = result.merge(_validate_numeric_parameter(nb_dispersion, "nb_dispersion", min_val=0, exclusive=True))
    if tdist:
        result = result.merge(_validate_numeric_parameter(random_effect_df, "random_effect_df", min_val=2, exclusive=True))

    result.raise_if_invalid()

    design = TrialDesign(
        narms=n_arms,
        nclusters=tuple(len(arm) for arm in structure),
        nsubjects=tuple(tuple(arm) for arm in structure),
        outcome_param=tuple(float(p) for p in params),
        sigma_b_sq=tuple(float(v) for v in variances),
        family=fam,
        alpha=float(alpha),
        sigma_sq=tuple(float(v) for v in within),
        nb_dispersion=float(nb_dispersion),
        tdist=bool(tdist),
        random_effect_df=float(random_effect_df),
    )
    return design, result.warnings
