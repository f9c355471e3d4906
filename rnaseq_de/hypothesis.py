"""
Wald tests of log2 fold changes against a threshold.

With a threshold tau > 0 the default null hypothesis is |LFC| <= tau, so
significance requires the effect size, not just its sign, to be
established.
"""

import logging
from dataclasses import replace

import numpy as np
from scipy.stats import norm

from .config import ALT_HYPOTHESES
from .exceptions import InvalidDesignError

logger = logging.getLogger(__name__)


def wald_test(log2_fc, lfc_se, threshold=0.0, alt_hypothesis="greaterAbs"):
    """
    Wald statistics and p-values for LFC threshold testing.

    Parameters
    ----------
    log2_fc : np.ndarray
        Log2 fold change estimates.
    lfc_se : np.ndarray
        Standard errors of the log2 fold changes.
    threshold : float
        Log2 fold change threshold (non-negative).
    alt_hypothesis : str
        - 'greaterAbs': |LFC| > threshold (two-sided)
        - 'lessAbs': |LFC| < threshold
        - 'greater': LFC > threshold
        - 'less': LFC < -threshold

    Returns
    -------
    stat : np.ndarray
    pvalue : np.ndarray
        NaN where the estimate or its standard error is unusable.
    """
    if alt_hypothesis not in ALT_HYPOTHESES:
        raise ValueError(f"Unknown alt_hypothesis: {alt_hypothesis}")
    if threshold < 0:
        raise ValueError("threshold must be non-negative")
    if alt_hypothesis == "lessAbs" and threshold == 0:
        raise ValueError("alt_hypothesis='lessAbs' needs a positive threshold")

    lfc = np.asarray(log2_fc, dtype=float)
    se = np.asarray(lfc_se, dtype=float)
    valid = np.isfinite(lfc) & np.isfinite(se) & (se > 0)
    stat = np.full(lfc.shape, np.nan)
    pval = np.full(lfc.shape, np.nan)
    b = lfc[valid]
    s = se[valid]

    if alt_hypothesis == "greaterAbs":
        # H0: |LFC| <= threshold
        stat[valid] = np.sign(b) * np.fmax((np.abs(b) - threshold) / s, 0)
        pval[valid] = np.minimum(1.0, 2.0 * norm.sf((np.abs(b) - threshold) / s))
    elif alt_hypothesis == "lessAbs":
        # H0: |LFC| >= threshold
        above = (b + threshold) / s
        below = (b - threshold) / s
        stat[valid] = np.where(np.abs(above) < np.abs(below), above, below)
        pval[valid] = np.maximum(norm.sf(above), norm.cdf(below))
    elif alt_hypothesis == "greater":
        # H0: LFC <= threshold
        z = (b - threshold) / s
        stat[valid] = np.fmax(z, 0)
        pval[valid] = norm.sf(z)
    else:
        # H0: LFC >= -threshold
        z = (b + threshold) / s
        stat[valid] = np.fmin(z, 0)
        pval[valid] = norm.cdf(z)

    return stat, pval


def test_hypothesis(fits, lfc_threshold=0.0, base_level=None,
                    treatment_level=None, alt_hypothesis="greaterAbs"):
    """
    Wald test every converged gene.

    Parameters
    ----------
    fits : list of GeneFitResult
    lfc_threshold : float, default 0.0
        Null hypothesis boundary tau on the log2 scale.
    base_level, treatment_level : str
        Contrast to report. Must match the fitted contrast in either
        direction; the reversed direction flips the sign of the fold
        change.
    alt_hypothesis : str, default 'greaterAbs'

    Returns
    -------
    list of GeneFitResult
        New records with ``wald_statistic`` and ``p_value`` set.

    Raises
    ------
    InvalidDesignError
        If the requested levels are not the fitted ones.
    """
    if not fits:
        return []
    if base_level is None or treatment_level is None:
        raise InvalidDesignError("base_level and treatment_level are required",
                                 stage="hypothesis_test")

    requested = (str(treatment_level), str(base_level))
    fitted = fits[0].contrast
    if requested == fitted:
        sign = 1.0
        contrast = fitted
    elif requested == fitted[::-1]:
        sign = -1.0
        contrast = requested
    else:
        raise InvalidDesignError(
            f"contrast {requested[0]} vs {requested[1]} does not match the "
            f"fitted levels {fitted[0]} vs {fitted[1]}",
            stage="hypothesis_test")

    lfc = sign * np.array([f.log2_fold_change for f in fits], dtype=float)
    se = np.array([f.standard_error for f in fits], dtype=float)
    converged = np.array([f.converged for f in fits], dtype=bool)
    stat, pval = wald_test(np.where(converged, lfc, np.nan), se,
                           threshold=lfc_threshold, alt_hypothesis=alt_hypothesis)

    logger.info("Wald test (%s, threshold=%.3g) on %d genes", alt_hypothesis,
                lfc_threshold, int(np.isfinite(pval).sum()))
    return [
        replace(f, log2_fold_change=float(lfc[i]), contrast=contrast,
                wald_statistic=float(stat[i]), p_value=float(pval[i]),
                adjustment=None)
        for i, f in enumerate(fits)
    ]


# keep pytest from collecting this as a test when imported into test modules
test_hypothesis.__test__ = False
