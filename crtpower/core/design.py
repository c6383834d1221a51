"""
Trial design definitions for crtpower.

Holds the immutable ``TrialDesign`` consumed by every simulation task, the
``Family`` / ``Method`` variants resolved once at validation time, and the
lookup table that maps each variant to its link function and model formula.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple

import numpy as np
from scipy.special import expit, logit


class Family(Enum):
    """Outcome distribution of the simulated trial."""

    NORMAL = "normal"
    BINARY = "binary"
    POISSON = "poisson"
    NEG_BINOM = "neg_binom"


class Method(Enum):
    """Analysis model fitted to every simulated dataset."""

    GLMM = "glmm"
    GEE = "gee"


# Accepted spellings, normalised with lower() and "-"/"." -> "_"
_FAMILY_ALIASES: Dict[str, Family] = {
    "normal": Family.NORMAL,
    "gaussian": Family.NORMAL,
    "continuous": Family.NORMAL,
    "binary": Family.BINARY,
    "binomial": Family.BINARY,
    "poisson": Family.POISSON,
    "count": Family.POISSON,
    "neg_bin": Family.NEG_BINOM,
    "neg_binom": Family.NEG_BINOM,
    "negative_binomial": Family.NEG_BINOM,
    "negbin": Family.NEG_BINOM,
}


def parse_family(value) -> Family:
    """Resolve a family name (or ``Family``) to a ``Family`` member.

    Raises:
        ValueError: If the name is not recognised.
    """
    if isinstance(value, Family):
        return value
    key = str(value).lower().replace("-", "_").replace(".", "_").replace(" ", "_")
    if key not in _FAMILY_ALIASES:
        raise ValueError(f"Unknown outcome family: {value!r}. Valid options: 'normal', 'binary', 'poisson', 'neg_binom'")
    return _FAMILY_ALIASES[key]


def parse_method(value) -> Method:
    """Resolve ``"glmm"`` / ``"gee"`` (or a ``Method``) to a ``Method`` member."""
    if isinstance(value, Method):
        return value
    key = str(value).lower().strip()
    for method in Method:
        if method.value == key:
            return method
    raise ValueError(f"Unknown analysis method: {value!r}. Valid options: 'glmm', 'gee'")


@dataclass(frozen=True)
class LinkFunction:
    """Forward and inverse link for one outcome family."""

    name: str

    def forward(self, mu: np.ndarray) -> np.ndarray:
        """Map outcome-scale parameters to the linear-predictor scale."""
        mu = np.asarray(mu, dtype=float)
        if self.name == "logit":
            return logit(mu)
        if self.name == "log":
            return np.log(mu)
        return mu

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        """Map linear-predictor values back to the outcome scale."""
        eta = np.asarray(eta, dtype=float)
        if self.name == "logit":
            return expit(eta)
        if self.name == "log":
            return np.exp(eta)
        return eta


LINKS: Dict[Family, LinkFunction] = {
    Family.NORMAL: LinkFunction("identity"),
    Family.BINARY: LinkFunction("logit"),
    Family.POISSON: LinkFunction("log"),
    Family.NEG_BINOM: LinkFunction("log"),
}


@dataclass(frozen=True)
class FormulaSpec:
    """Model specification handed to the fitting service.

    Attributes:
        family: Outcome family (decides the likelihood and link).
        method: ``GLMM`` (random cluster intercept) or ``GEE``
            (exchangeable working correlation within clusters).
        link: Link function name (``"identity"``, ``"logit"``, ``"log"``).
        arm_terms: Whether arm indicators enter the fixed part. ``False``
            gives the intercept-only null model.
        nb_dispersion: Negative-binomial shape ``theta`` (count families).
        formula: R-style rendering, for display and diagnostics only.
    """

    family: Family
    method: Method
    link: str
    arm_terms: bool = True
    nb_dispersion: float = 1.0
    formula: str = ""

    def null(self) -> "FormulaSpec":
        """Return the intercept-only counterpart of this specification."""
        random_part = " + (1|cluster)" if self.method is Method.GLMM else ""
        return FormulaSpec(
            family=self.family,
            method=self.method,
            link=self.link,
            arm_terms=False,
            nb_dispersion=self.nb_dispersion,
            formula=f"y ~ 1{random_part}",
        )


def build_formula_spec(family: Family, method: Method, nb_dispersion: float = 1.0) -> FormulaSpec:
    """Build the full (arm-effect) model specification for a family/method pair."""
    random_part = " + (1|cluster)" if method is Method.GLMM else ""
    return FormulaSpec(
        family=family,
        method=method,
        link=LINKS[family].name,
        arm_terms=True,
        nb_dispersion=nb_dispersion,
        formula=f"y ~ arm{random_part}",
    )


@dataclass(frozen=True)
class TrialDesign:
    """Validated, canonical description of a multi-arm cluster-randomized trial.

    Instances are created by ``crtpower.utils.validators.validate_design``
    (or ``ClusterTrialPower``); all per-arm sequences are tuples of length
    ``narms``.

    Attributes:
        narms: Number of arms (>= 2). Arm 1 is the reference arm.
        nclusters: Clusters per arm.
        nsubjects: Subjects per cluster, one tuple per arm.
        outcome_param: Per-arm mean (normal), probability (binary) or
            expected count (poisson / negative binomial).
        sigma_b_sq: Per-arm between-cluster variance on the linear-predictor
            scale.
        family: Outcome family.
        alpha: Significance level.
        sigma_sq: Per-arm within-cluster variance (normal family only).
        nb_dispersion: Negative-binomial shape ``theta``; the variance of a
            count with mean ``mu`` is ``mu + mu**2 / theta``.
        tdist: Draw cluster effects from a scaled Student-t distribution.
        random_effect_df: Degrees of freedom of the Student-t cluster
            effects. ``inf`` reproduces the normal distribution.
    """

    narms: int
    nclusters: Tuple[int, ...]
    nsubjects: Tuple[Tuple[int, ...], ...]
    outcome_param: Tuple[float, ...]
    sigma_b_sq: Tuple[float, ...]
    family: Family
    alpha: float = 0.05
    sigma_sq: Tuple[float, ...] = field(default=())
    nb_dispersion: float = 1.0
    tdist: bool = False
    random_effect_df: float = float("inf")

    @property
    def link(self) -> LinkFunction:
        return LINKS[self.family]

    @property
    def total_clusters(self) -> int:
        return int(sum(self.nclusters))

    @property
    def total_subjects(self) -> int:
        return int(sum(sum(arm) for arm in self.nsubjects))

    def subjects_in_arm(self, arm: int) -> int:
        """Total subjects in ``arm`` (1-based)."""
        return int(sum(self.nsubjects[arm - 1]))

    def arm_names(self):
        """Coefficient names in model order: intercept, then ``arm2``..``armK``."""
        return ["(Intercept)"] + [f"arm{a}" for a in range(2, self.narms + 1)]
