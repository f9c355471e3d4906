"""
Cook's distance for negative binomial GLM fits.

A gene whose fit is dominated by a single sample gets a large Cook's
distance for that sample; such genes are excluded from multiple testing
instead of being reported on the strength of one count.

References:
    - Cook RD (1977). Detection of Influential Observation in Linear
      Regression. Technometrics 19:15-18
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
"""

import numpy as np
from scipy.stats import f as f_dist


def calculate_cooks_distance(y, X, mu, disp):
    """
    Cook's distance of each sample for one gene.

    Parameters
    ----------
    y : np.ndarray
        Observed counts (samples,).
    X : np.ndarray
        Design matrix (samples x parameters).
    mu : np.ndarray
        Fitted means (samples,).
    disp : float
        Dispersion.

    Returns
    -------
    np.ndarray
        Cook's distance per sample; NaN if the weighted design is singular.

    Notes
    -----
    D_i = r_i^2 * h_ii / (p * (1 - h_ii)^2), with r_i the Pearson
    residual under variance mu + disp * mu^2 and h_ii the leverage of
    the IRLS weighted hat matrix.
    """
    y = np.asarray(y, dtype=float)
    X = np.asarray(X, dtype=float)
    mu = np.asarray(mu, dtype=float)
    S, P = X.shape
    disp = max(disp, 1e-10)

    var_y = np.maximum(mu + disp * mu ** 2, 1e-10)
    pearson_resid = (y - mu) / np.sqrt(var_y)

    W = np.maximum(mu / (1 + disp * mu), 1e-10)
    XtWX = (X.T * W) @ X
    try:
        XtWX_inv = np.linalg.inv(XtWX)
    except np.linalg.LinAlgError:
        return np.full(S, np.nan)

    leverage = W * np.einsum("ij,jk,ik->i", X, XtWX_inv, X)
    with np.errstate(divide="ignore", invalid="ignore"):
        cooks_d = (pearson_resid ** 2 * leverage) / (P * (1 - leverage) ** 2)
    return np.where(np.isfinite(cooks_d), cooks_d, 0.0)


def cooks_cutoff(n_params, n_samples, quantile=0.99):
    """Quantile of F(p, m - p) used as the outlier cutoff."""
    return float(f_dist.ppf(quantile, n_params, max(n_samples - n_params, 1)))


def max_cooks(cooks_d, eligible):
    """
    Largest Cook's distance over samples eligible for outlier flagging.

    Samples in small groups cannot be judged against their replicates and
    are left out; returns NaN when no sample is eligible.
    """
    cooks_d = np.asarray(cooks_d, dtype=float)
    if not np.any(eligible) or not np.any(np.isfinite(cooks_d[eligible])):
        return np.nan
    return float(np.nanmax(cooks_d[eligible]))
