"""
Median-of-ratios size factor estimation.

References:
    Anders S, Huber W (2010). Differential expression analysis for sequence
    count data. Genome Biology 11:R106
"""

import logging

import numpy as np

from .exceptions import DegenerateInputError
from .records import SizeFactors

logger = logging.getLogger(__name__)


def _log_geometric_means(counts, type):
    if type == "ratio":
        # any zero count sends the gene's log geometric mean to -inf
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.mean(np.log(counts), axis=1)
    if type == "poscounts":
        # zeros count as log 1 but still enter the denominator
        lc = np.log(counts, where=(counts > 0), out=np.zeros_like(counts))
        log_geomeans = np.mean(lc, axis=1)
        log_geomeans[counts.sum(axis=1) == 0] = -np.inf
        return log_geomeans
    raise ValueError(f"Unknown size factor type: {type}")


def estimate_size_factors_for_matrix(
    counts,
    loc_func=np.median,
    geo_means=None,
    control_genes=None,
    type="ratio"
):
    """
    Size factors of a raw count array.

    Parameters
    ----------
    counts : np.ndarray
        2D (genes x samples) raw counts.
    loc_func : function
        Location function applied to each sample's log ratios.
    geo_means : np.ndarray or None
        Precomputed per-gene geometric means (pseudo-reference).
    control_genes : array-like or None
        Row indices or boolean mask restricting the genes used.
    type : {"ratio", "poscounts"}

    Returns
    -------
    np.ndarray of size factors (length = num samples)

    Raises
    ------
    DegenerateInputError
        If no gene has a usable (finite, non-zero) geometric mean, or a
        sample shares no positive counts with the reference.
    """
    counts = np.asarray(counts, dtype=float)
    G, S = counts.shape

    if geo_means is None:
        recenter = type == "poscounts"
        log_geomeans = _log_geometric_means(counts, type)
    else:
        recenter = True
        geo_means = np.asarray(geo_means, dtype=float)
        if geo_means.shape[0] != G:
            raise ValueError("geo_means should be as long as number of genes")
        with np.errstate(divide="ignore"):
            log_geomeans = np.log(geo_means)

    if control_genes is not None:
        log_geomeans = log_geomeans[control_genes]
        counts = counts[control_genes, :]

    if not np.any(np.isfinite(log_geomeans)):
        raise DegenerateInputError(
            "every gene contains at least one zero; cannot compute size factors",
            stage="size_factors")

    size_factors = np.zeros(S)
    for j in range(S):
        c = counts[:, j]
        mask = np.isfinite(log_geomeans) & (c > 0)
        if not mask.any():
            raise DegenerateInputError(
                f"sample {j} has no positive counts among reference genes",
                stage="size_factors")
        vals = np.log(c[mask]) - log_geomeans[mask]
        size_factors[j] = np.exp(loc_func(vals))

    if recenter:
        size_factors = size_factors / np.exp(np.mean(np.log(size_factors)))

    return size_factors


def estimate_size_factors(matrix, type="ratio", loc_func=np.median,
                          geo_means=None, control_genes=None):
    """
    Estimate one size factor per sample of a ``CountMatrix``.

    Each sample's factor is the median, over genes with a non-zero
    geometric mean, of the ratio between its count and that geometric
    mean.

    Parameters
    ----------
    matrix : CountMatrix
    type : {"ratio", "poscounts"}, default "ratio"
    loc_func : function, default np.median
    geo_means : np.ndarray, optional
    control_genes : sequence, optional
        Gene identifiers, row indices or a boolean mask.

    Returns
    -------
    SizeFactors
    """
    if control_genes is not None:
        control_genes = _resolve_genes(matrix, control_genes)

    values = estimate_size_factors_for_matrix(
        matrix.values,
        loc_func=loc_func,
        geo_means=geo_means,
        control_genes=control_genes,
        type=type
    )
    logger.info("Size factors (%s) for %d samples: min=%.3f max=%.3f",
                type, len(values), values.min(), values.max())
    return SizeFactors(matrix.sample_ids, values)


def _resolve_genes(matrix, genes):
    genes = np.asarray(genes)
    if genes.dtype == bool:
        return genes
    if genes.dtype.kind in "iu":
        return genes
    index = {g: i for i, g in enumerate(matrix.gene_ids)}
    try:
        return np.array([index[str(g)] for g in genes], dtype=int)
    except KeyError as e:
        raise ValueError(f"control gene {e.args[0]!r} not in count matrix") from None
