"""
Parsing utilities for cluster-randomized trial designs.

Users may describe a trial with scalars ("20 subjects per cluster, 10
clusters per arm, 3 arms"), per-arm vectors, or a full list of per-cluster
subject counts for every arm. These helpers coerce any of those shapes into
the canonical nested structure used by ``TrialDesign``.
"""

from numbers import Real
from typing import Any, List, Optional, Tuple

import numpy as np

__all__ = []

_WHOLE_TOL = np.sqrt(np.finfo(float).eps)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (Real, np.number)) and not isinstance(value, bool)


def _is_whole(value: Any) -> bool:
    """``True`` for positive whole numbers (ints or integral floats)."""
    if not _is_scalar(value):
        return False
    value = float(value)
    return np.isfinite(value) and abs(value - round(value)) < _WHOLE_TOL and value >= 1


def _as_list(value: Any) -> Optional[List[Any]]:
    """Return ``value`` as a list if it is a sequence or 1-D array, else ``None``."""
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, (list, tuple)):
        return list(value)
    return None


def coerce_structure(
    nsubjects: Any,
    narms: Optional[int] = None,
    nclusters: Any = None,
) -> Tuple[List[List[int]], List[str]]:
    """Expand subject/cluster counts into one list of cluster sizes per arm.

    Accepted shapes:

    - ``nsubjects`` as a list of per-arm lists: used as is; ``narms`` and
      ``nclusters`` are inferred.
    - ``nsubjects`` as a list of per-arm scalars: every cluster in an arm has
      that size; ``nclusters`` (scalar or per-arm) is required.
    - ``nsubjects`` as a scalar: requires ``nclusters``; when ``nclusters``
      is also scalar, ``narms`` is required too.

    Args:
        nsubjects: Subjects per cluster (see above).
        narms: Number of arms.
        nclusters: Clusters per arm, scalar or one value per arm.

    Returns:
        ``(structure, errors)`` where ``structure`` is ``[[n_11, n_12, ...],
        [n_21, ...], ...]``. ``structure`` is empty whenever errors occur.
    """
    errors: List[str] = []

    if nsubjects is None:
        return [], ["nsubjects must be specified"]

    if narms is not None and (not _is_whole(narms)):
        return [], [f"narms must be a positive integer, got {narms!r}"]

    arms = _as_list(nsubjects)
    clusters = _as_list(nclusters)

    if arms is not None and len(arms) == 1 and _is_scalar(arms[0]):
        # A one-element vector behaves like a scalar
        arms = None
        nsubjects = nsubjects[0]

    if arms is not None:
        n_arms = len(arms) if narms is None else int(narms)
        if len(arms) != n_arms:
            return [], [f"nsubjects has {len(arms)} arms but narms = {narms}"]

        if all(_as_list(a) is not None for a in arms):
            structure = [list(_as_list(a)) for a in arms]
            if clusters is not None and [len(a) for a in structure] != [int(c) for c in clusters]:
                errors.append("nclusters does not match the number of cluster sizes given in nsubjects")
        elif all(_is_scalar(a) for a in arms):
            if nclusters is None:
                return [], ["nclusters must be supplied when nsubjects gives one cluster size per arm"]
            per_arm_clusters, cl_errors = _expand_clusters(nclusters, n_arms)
            if cl_errors:
                return [], cl_errors
            structure = [[a] * c for a, c in zip(arms, per_arm_clusters)]
        else:
            return [], ["nsubjects must be a scalar, a list of per-arm scalars, or a list of per-arm lists"]
    else:
        if not _is_scalar(nsubjects):
            return [], [f"nsubjects must be numeric, got {type(nsubjects).__name__}"]
        if nclusters is None:
            return [], ["When nsubjects is scalar, nclusters (clusters per arm) must be supplied"]
        if clusters is None and narms is None:
            return [], ["narms must be supplied when nsubjects and nclusters are both scalar"]
        n_arms = len(clusters) if clusters is not None and narms is None else int(narms)
        per_arm_clusters, cl_errors = _expand_clusters(nclusters, n_arms)
        if cl_errors:
            return [], cl_errors
        structure = [[nsubjects] * c for c in per_arm_clusters]

    if len(structure) < 2:
        errors.append(f"A multi-arm trial needs at least 2 arms, got {len(structure)}")

    for arm_idx, arm in enumerate(structure, start=1):
        if len(arm) == 0:
            errors.append(f"Arm {arm_idx} has no clusters")
        bad = [n for n in arm if not _is_whole(n)]
        if bad:
            errors.append(f"nsubjects must be positive integer values; arm {arm_idx} has {bad}")

    if errors:
        return [], errors
    return [[int(round(n)) for n in arm] for arm in structure], []


def _expand_clusters(nclusters: Any, n_arms: int) -> Tuple[List[int], List[str]]:
    """Expand ``nclusters`` (scalar or per-arm) to one count per arm."""
    values = _as_list(nclusters)
    if values is None:
        values = [nclusters] * n_arms
    elif len(values) == 1:
        values = values * n_arms
    if len(values) != n_arms:
        return [], [f"Length of nclusters ({len(values)}) must equal narms ({n_arms})"]
    bad = [c for c in values if not _is_whole(c)]
    if bad:
        return [], [f"nclusters must be positive integer values, got {bad}"]
    return [int(round(c)) for c in values], []


def coerce_per_arm(value: Any, n_arms: int, name: str) -> Tuple[Tuple[float, ...], List[str]]:
    """Expand a scalar (or a per-arm sequence) to exactly ``n_arms`` floats.

    Returns:
        ``(values, errors)``.
    """
    if value is None:
        return (), [f"{name} must be specified"]

    values = _as_list(value)
    if values is None:
        if not _is_scalar(value):
            return (), [f"{name} must be numeric, got {type(value).__name__}"]
        return tuple(float(value) for _ in range(n_arms)), []

    if len(values) == 1:
        values = values * n_arms
    if len(values) != n_arms:
        return (), [f"Length of {name} ({len(values)}) must equal narms ({n_arms}), or be provided as a scalar"]
    if not all(_is_scalar(v) for v in values):
        return (), [f"{name} must contain only numbers"]
    return tuple(float(v) for v in values), []

