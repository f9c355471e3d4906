"""
Per-gene negative binomial GLM fits.

Each gene is fitted with statsmodels' IRLS under a log link, with its
final dispersion held fixed and log size factors as offset. The design
is intercept + treatment indicator, so coefficient 1 is the natural-log
fold change of treatment over base.
"""

import logging
import warnings

import numpy as np
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from .exceptions import GeneFitNonConvergence
from .outliers import calculate_cooks_distance, cooks_cutoff, max_cooks
from .parallel import map_genes
from .records import FitStatus, GeneFitResult

logger = logging.getLogger(__name__)

LOG2 = np.log(2.0)

_FIT_ERRORS = (np.linalg.LinAlgError, PerfectSeparationError, ValueError,
               FloatingPointError, OverflowError, ZeroDivisionError)


def fit_gene_glm(y, X, offset, alpha, max_iter=100, tol=1e-8, coef_index=1,
                 cooks_eligible=None):
    """
    Fit one gene.

    Returns
    -------
    log2_fc : float
    se_log2 : float
        Standard error from the inverse Fisher information.
    status : FitStatus
    max_cooks : float
        Largest Cook's distance among ``cooks_eligible`` samples.
    """
    if y.sum() == 0:
        return np.nan, np.nan, FitStatus.ALL_ZERO, np.nan
    if not np.isfinite(alpha) or alpha <= 0:
        return np.nan, np.nan, FitStatus.NOT_CONVERGED, np.nan

    fam = sm.families.NegativeBinomial(alpha=alpha)
    with warnings.catch_warnings(), np.errstate(all="ignore"):
        warnings.simplefilter("ignore")
        try:
            res = sm.GLM(y, X, family=fam, offset=offset).fit(
                maxiter=max_iter, tol=tol)
        except _FIT_ERRORS as e:
            logger.debug("GLM fit failed: %s", e)
            return np.nan, np.nan, FitStatus.NOT_CONVERGED, np.nan
        b = res.params[coef_index]
        s = res.bse[coef_index]

    if not res.converged or not np.isfinite(b) or not np.isfinite(s) or s <= 0:
        return np.nan, np.nan, FitStatus.NOT_CONVERGED, np.nan

    cooks = np.nan
    if cooks_eligible is not None:
        with np.errstate(all="ignore"):
            cooks = max_cooks(calculate_cooks_distance(y, X, res.mu, alpha),
                              cooks_eligible)

    # GLM scale -> log2
    return b / LOG2, s / LOG2, FitStatus.CONVERGED, cooks


def fit_nb_glm(counts, size_factors, dispersions, design_matrix,
               coef_index=1, max_iter=100, tol=1e-8, cooks_eligible=None,
               n_jobs=1):
    """
    Fit every gene of a count array.

    Parameters
    ----------
    counts : (G, S) array
    size_factors : (S,) array
    dispersions : (G,) array
    design_matrix : (S, P) array
    coef_index : int
        Coefficient reported as the fold change.
    max_iter, tol : IRLS settings.
    cooks_eligible : (S,) bool array, optional
        Samples used for Cook's distance; None skips Cook's distance.
    n_jobs : int

    Returns
    -------
    dict
        'log2_fc', 'se_log2', 'status', 'max_cooks'.
    """
    Y = np.asarray(counts, dtype=float)
    sf = np.asarray(size_factors, dtype=float)
    disp = np.asarray(dispersions, dtype=float)
    X = np.asarray(design_matrix, dtype=float)

    G, S = Y.shape
    S2, P = X.shape
    if S2 != S:
        raise ValueError("design_matrix must have same number of rows as samples")
    if sf.ndim != 1 or sf.shape[0] != S:
        raise ValueError("size_factors length must equal number of samples")
    if disp.shape[0] != G:
        raise ValueError("dispersions length must equal number of genes")
    if coef_index < 0 or coef_index >= P:
        raise ValueError("coef_index out of bounds")

    offset = np.log(sf)
    logger.info("Fitting negative binomial GLMs for %d genes...", G)
    fits = map_genes(
        fit_gene_glm,
        ((Y[g], X, offset, float(disp[g]), max_iter, tol, coef_index,
          cooks_eligible) for g in range(G)),
        n_jobs=n_jobs,
    )
    log2_fc, se_log2, status, cooks = zip(*fits)
    return {
        "log2_fc": np.array(log2_fc, dtype=float),
        "se_log2": np.array(se_log2, dtype=float),
        "status": list(status),
        "max_cooks": np.array(cooks, dtype=float),
    }


def fit_models(matrix, size_factors, dispersions, design, max_iter=100,
               tol=1e-8, cooks_filter=True, cooks_quantile=0.99,
               min_replicates_cooks=3, n_jobs=1):
    """
    Negative binomial GLM per gene: treatment vs base log2 fold change.

    Parameters
    ----------
    matrix : CountMatrix
    size_factors : SizeFactors
    dispersions : list of DispersionEstimate
        In count matrix row order; ``shrunk_dispersion`` is used. Genes
        whose dispersion did not converge are still fitted, but reported
        as ``FitStatus.NOT_CONVERGED``.
    design : DesignMetadata
        Its base/treatment levels fix the direction of the fold change.
    max_iter : int, default 100
        IRLS iteration cap; genes hitting it are marked not converged.
    tol : float, default 1e-8
    cooks_filter : bool, default True
        Flag genes with a Cook's distance above the cutoff.
    cooks_quantile : float, default 0.99
    min_replicates_cooks : int, default 3
    n_jobs : int, default 1

    Returns
    -------
    list of GeneFitResult
        Untested results (p-values NaN), one per gene.
    """
    if [d.gene_id for d in dispersions] != list(matrix.gene_ids):
        raise ValueError("dispersions must list the count matrix genes in order")

    design_matrix, _ = design.design_matrix(matrix.sample_ids)
    sf = size_factors.reindex(matrix.sample_ids)
    disp = np.array([d.shrunk_dispersion for d in dispersions], dtype=float)
    disp_converged = [d.converged for d in dispersions]

    eligible = None
    cutoff = np.inf
    if cooks_filter:
        eligible = design.group_sizes(matrix.sample_ids) >= min_replicates_cooks
        cutoff = cooks_cutoff(design_matrix.shape[1], matrix.n_samples,
                              cooks_quantile)

    fit = fit_nb_glm(matrix.values, sf, disp, design_matrix, max_iter=max_iter,
                     tol=tol, cooks_eligible=eligible, n_jobs=n_jobs)

    base_means = (matrix.values / sf).mean(axis=1)
    contrast = design.contrast
    results = []
    for i, gene in enumerate(matrix.gene_ids):
        cooks = fit["max_cooks"][i]
        status = fit["status"][i]
        if status is FitStatus.CONVERGED and not disp_converged[i]:
            status = FitStatus.NOT_CONVERGED
        results.append(GeneFitResult(
            gene_id=gene,
            base_mean=float(base_means[i]),
            log2_fold_change=float(fit["log2_fc"][i]),
            standard_error=float(fit["se_log2"][i]),
            status=status,
            contrast=contrast,
            dispersion=float(disp[i]),
            max_cooks=float(cooks),
            cooks_outlier=bool(np.isfinite(cooks) and cooks > cutoff),
        ))

    n_bad = sum(r.status is FitStatus.NOT_CONVERGED for r in results)
    logger.info("GLM fits: %d converged, %d not converged, %d all-zero",
                sum(r.converged for r in results), n_bad,
                sum(r.status is FitStatus.ALL_ZERO for r in results))
    if n_bad:
        warnings.warn(f"{n_bad} genes did not converge in the GLM or "
                      f"dispersion fit",
                      GeneFitNonConvergence, stacklevel=2)
    return results
