"""
Multiple-comparison adjustment of per-coefficient p-values.

Method names follow R's ``p.adjust`` and are mapped onto
``statsmodels.stats.multitest.multipletests``.
"""

from typing import Dict

import numpy as np

# p.adjust name -> multipletests name ("none" is handled separately)
CORRECTION_METHODS: Dict[str, str] = {
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "bonferroni": "bonferroni",
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "BY": "fdr_by",
}


def adjust_pvalues(p_values, method: str = "bonferroni") -> np.ndarray:
    """Adjust a vector of p-values for multiplicity.

    NaN entries (failed fits) are left as NaN and excluded from the family
    size, as ``p.adjust`` does.

    Args:
        p_values: One p-value per coefficient.
        method: ``"holm"``, ``"hochberg"``, ``"hommel"``, ``"bonferroni"``,
            ``"BH"``, ``"BY"``, ``"fdr"`` or ``"none"``.

    Returns:
        Adjusted p-values, same shape as the input.

    Raises:
        ValueError: If *method* is not recognised.
    """
    p = np.asarray(p_values, dtype=float)
    if method == "none":
        return p.copy()
    if method not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction method: {method!r}")

    adjusted = np.full(p.shape, np.nan)
    finite = ~np.isnan(p)
    if not finite.any():
        return adjusted

    from statsmodels.stats.multitest import multipletests

    _, p_adj, _, _ = multipletests(p[finite], method=CORRECTION_METHODS[method])
    adjusted[finite] = p_adj
    return adjusted
