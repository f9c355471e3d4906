"""
Count normalization helpers.

References:
    - Anders S, Huber W (2010). Differential expression analysis for sequence
      count data. Genome Biology 11:R106
"""

import numpy as np
import pandas as pd

from .data import CountMatrix


def normalize_counts(matrix, size_factors):
    """
    Counts divided by their sample's size factor.

    Parameters
    ----------
    matrix : CountMatrix
    size_factors : SizeFactors

    Returns
    -------
    pd.DataFrame
        Normalized counts, genes x samples.

    Examples
    --------
    >>> sf = estimate_size_factors(matrix)
    >>> normalize_counts(matrix, sf).mean(axis=1)  # base means
    """
    sf = size_factors.reindex(matrix.sample_ids)
    return pd.DataFrame(matrix.values / sf, index=list(matrix.gene_ids),
                        columns=list(matrix.sample_ids))


def fpm(matrix, size_factors=None):
    """
    Fragments (counts) per million.

    Parameters
    ----------
    matrix : CountMatrix
    size_factors : SizeFactors, optional
        If given, counts are normalized by size factors before scaling so
        that each sample sums to one million; otherwise raw library sizes
        are used.

    Returns
    -------
    pd.DataFrame

    Notes
    -----
    FPM = (count / library_size) * 1e6. Gene length is not accounted
    for, so values are only comparable across samples for the same gene.
    """
    counts = matrix.values
    if size_factors is not None:
        counts = counts / size_factors.reindex(matrix.sample_ids)
    lib_sizes = counts.sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        normalized = np.where(lib_sizes > 0, counts / lib_sizes * 1e6, 0.0)
    return pd.DataFrame(normalized, index=list(matrix.gene_ids),
                        columns=list(matrix.sample_ids))


def filter_low_counts(matrix, min_count=10, min_samples=1):
    """
    Keep genes with at least ``min_count`` reads in ``min_samples`` samples.

    Pre-filtering is optional: independent filtering already excludes
    low-count genes from multiple testing. It only saves fitting time.

    Returns
    -------
    CountMatrix
    """
    if min_samples < 1 or min_samples > matrix.n_samples:
        raise ValueError(f"min_samples must be in [1, {matrix.n_samples}]")
    keep = (matrix.values >= min_count).sum(axis=1) >= min_samples
    if not keep.any():
        raise ValueError(f"no gene has {min_count} counts in {min_samples} samples")
    genes = [g for g, k in zip(matrix.gene_ids, keep) if k]
    return CountMatrix(matrix.values[keep], gene_ids=genes,
                       sample_ids=matrix.sample_ids)
