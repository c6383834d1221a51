"""
Data Generator for cluster-randomized trial power analysis.

Generates one synthetic hierarchical dataset per Monte Carlo iteration:

- one random intercept per cluster (normal, or scaled Student-t),
- arm parameters mapped to the linear-predictor scale through the family
  link, shifted by the cluster effect and mapped back,
- one outcome per subject drawn from the family distribution.

Every draw comes from an explicit ``numpy.random.Generator`` seeded per
iteration, so datasets do not depend on execution order or worker.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from ..core.design import Family, TrialDesign

# Seed stride between iterations (seed + 4 * sim_id)
SEED_STRIDE = 4


def iteration_seed(base_seed: int, iteration_index: int) -> int:
    """Derive the seed of one iteration from the per-run base seed."""
    return int(base_seed) + SEED_STRIDE * int(iteration_index)


def draw_base_seed() -> int:
    """Draw a fresh base seed from OS entropy (used when no seed is given)."""
    return int(np.random.SeedSequence().generate_state(1)[0])


@dataclass(frozen=True)
class SimulatedDataset:
    """One simulated trial: a record per subject.

    Attributes:
        iteration_index: Monte Carlo iteration that produced the data (0-based).
        arm: Arm of each subject, 1-based (arm 1 is the reference arm).
        cluster: Cluster of each subject. Ids run from 1 to the total number
            of clusters and are never reused across arms.
        y: Outcome of each subject.
    """

    iteration_index: int
    arm: np.ndarray
    cluster: np.ndarray
    y: np.ndarray

    def __post_init__(self):
        for arr in (self.arm, self.cluster, self.y):
            arr.flags.writeable = False

    @property
    def n_subjects(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_clusters(self) -> int:
        return int(np.unique(self.cluster).shape[0])

    def to_frame(self) -> pd.DataFrame:
        """Return the dataset as a DataFrame with columns ``y``, ``arm``, ``cluster``."""
        return pd.DataFrame(
            {
                "y": self.y,
                "arm": pd.Categorical(self.arm),
                "cluster": pd.Categorical(self.cluster),
            }
        )


def _generate_cluster_effects(
    rng: np.random.Generator,
    n_clusters: int,
    sigma_b_sq: float,
    tdist: bool = False,
    df: float = np.inf,
) -> np.ndarray:
    """Draw random cluster intercepts with mean 0 and variance ``sigma_b_sq``.

    With ``tdist`` and finite ``df`` the intercepts follow a Student-t
    distribution rescaled so that their SD is still ``sqrt(sigma_b_sq)``.
    """
    tau = np.sqrt(sigma_b_sq)
    if tdist and np.isfinite(df):
        # t(df) has variance df/(df-2); scale so SD = tau
        scale = tau / np.sqrt(df / (df - 2))
        return rng.standard_t(df, size=n_clusters) * scale
    return rng.normal(0.0, tau, size=n_clusters)


def _draw_outcomes(
    rng: np.random.Generator,
    family: Family,
    mu: np.ndarray,
    sigma_sq: float = 1.0,
    nb_dispersion: float = 1.0,
) -> np.ndarray:
    """Draw one outcome per subject given subject-level means ``mu``."""
    if family is Family.NORMAL:
        return rng.normal(mu, np.sqrt(sigma_sq))
    if family is Family.BINARY:
        return rng.binomial(1, mu).astype(float)
    if family is Family.POISSON:
        return rng.poisson(mu).astype(float)
    # Negative binomial with mean mu and shape theta: p = theta / (theta + mu)
    theta = nb_dispersion
    return rng.negative_binomial(theta, theta / (theta + mu)).astype(float)


def _check_design(design: TrialDesign) -> None:
    """Reject structures that would silently produce empty groups."""
    for arm_idx, sizes in enumerate(design.nsubjects, start=1):
        if len(sizes) == 0:
            raise ValueError(f"Arm {arm_idx} has no clusters")
        if min(sizes) < 1:
            raise ValueError(f"Arm {arm_idx} has a cluster with no subjects")


def generate_dataset(design: TrialDesign, seed: int, iteration_index: int = 0) -> SimulatedDataset:
    """Generate one simulated trial.

    Args:
        design: Validated trial design.
        seed: Seed for this dataset (see ``iteration_seed``). Identical seeds
            give bit-identical datasets.
        iteration_index: Stored on the dataset for bookkeeping.

    Returns:
        ``SimulatedDataset`` with ``design.total_subjects`` records.
    """
    _check_design(design)
    rng = np.random.default_rng(seed)
    link = design.link

    arms, clusters, outcomes = [], [], []
    next_cluster_id = 1

    for arm_idx in range(design.narms):
        sizes = np.asarray(design.nsubjects[arm_idx], dtype=np.int64)
        n_clusters = sizes.shape[0]

        effects = _generate_cluster_effects(
            rng,
            n_clusters,
            design.sigma_b_sq[arm_idx],
            tdist=design.tdist,
            df=design.random_effect_df,
        )
        eta = link.forward(design.outcome_param[arm_idx]) + effects
        mu = np.repeat(link.inverse(eta), sizes)

        y = _draw_outcomes(
            rng,
            design.family,
            mu,
            sigma_sq=design.sigma_sq[arm_idx] if design.sigma_sq else 1.0,
            nb_dispersion=design.nb_dispersion,
        )

        cluster_ids = np.arange(next_cluster_id, next_cluster_id + n_clusters)
        next_cluster_id += n_clusters

        arms.append(np.full(int(sizes.sum()), arm_idx + 1, dtype=np.int64))
        clusters.append(np.repeat(cluster_ids, sizes))
        outcomes.append(np.asarray(y, dtype=float))

    return SimulatedDataset(
        iteration_index=int(iteration_index),
        arm=np.concatenate(arms),
        cluster=np.concatenate(clusters),
        y=np.concatenate(outcomes),
    )
