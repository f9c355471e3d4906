"""
Negative binomial dispersion estimation with empirical Bayes shrinkage.

Three phases:
    1. gene-wise maximum of the Cox-Reid adjusted profile likelihood
    2. a mean-dispersion trend fitted across genes
    3. per-gene MAP estimates under a log-normal prior centred on the trend

Phases 1 and 3 run per gene through ``map_genes``; phase 2 and the prior
width need every gene-wise estimate and run in between.

References:
    - Love MI, Huber W, Anders S (2014). Moderated estimation of fold change
      and dispersion for RNA-seq data with DESeq2. Genome Biology 15:550
    - Cleveland WS (1979). Robust Locally Weighted Regression and Smoothing
      Scatterplots. JASA 74:829-836
"""

import logging
import warnings

import numpy as np
from scipy.optimize import minimize, minimize_scalar
from scipy.special import gammaln, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from .exceptions import DispersionFitError, GeneFitNonConvergence, InvalidDesignError
from .parallel import map_genes
from .records import DispersionEstimate

logger = logging.getLogger(__name__)

# genes below this multiple of min_disp carry no information about the trend
TREND_MIN_DISP_FACTOR = 100.0


# --- objective -------------------------------------------------------------

def nbinom_loglike(counts, mu, alpha):
    """
    Log-likelihood of NBinom(mu, alpha), variance mu + alpha * mu^2.
    """
    alpha = max(alpha, 1e-10)
    r = 1.0 / alpha
    log_r_mu = np.log(r + mu)
    ll = gammaln(counts + r) - gammaln(r) - gammaln(counts + 1.0) \
        + r * (np.log(r) - log_r_mu) + counts * (np.log(mu) - log_r_mu)
    return np.sum(ll)


def cox_reid_adjustment(mu, alpha, X):
    """
    Cox-Reid bias adjustment: -0.5 * log(det(X^T W X))
    """
    alpha = max(alpha, 1e-10)
    w = mu / (1.0 + alpha * mu)
    XtWX = (X.T * w) @ X
    sign, logdet = np.linalg.slogdet(XtWX)
    if sign <= 0:
        return -np.inf
    return -0.5 * logdet


def neg_log_posterior(log_alpha, counts, mu, X, log_prior_mean=None,
                      prior_var=None):
    """Negative CR-adjusted profile likelihood, plus log-normal prior if given."""
    alpha = np.exp(log_alpha)
    value = -(nbinom_loglike(counts, mu, alpha) + cox_reid_adjustment(mu, alpha, X))
    if log_prior_mean is not None:
        value += (log_alpha - log_prior_mean) ** 2 / (2.0 * prior_var)
    if not np.isfinite(value):
        return 1e300
    return value


def fit_gene_dispersion(counts, mu, X, log_lower, log_upper, max_iter,
                        log_prior_mean=None, prior_var=None):
    """
    Maximise the (penalised) likelihood of one gene over log dispersion.

    Returns
    -------
    float
        Dispersion estimate.
    bool
        Whether the optimiser converged inside the bounds.
    """
    with np.errstate(all="ignore"):
        res = minimize_scalar(
            neg_log_posterior,
            bounds=(log_lower, log_upper),
            args=(counts, mu, X, log_prior_mean, prior_var),
            method="bounded",
            options={"maxiter": max_iter, "xatol": 1e-6},
        )
    converged = bool(res.success and np.isfinite(res.x) and res.fun < 1e300)
    return float(np.exp(res.x)), converged


# --- phase 1 ---------------------------------------------------------------

def rough_mu(counts, size_factors, design_matrix):
    """
    Fitted means from per-group averages of normalized counts.

    Exact for a single-factor design, which is all the pipeline uses.
    """
    counts = np.asarray(counts, dtype=float)
    norm_counts = counts / size_factors
    cond_col = design_matrix[:, 1]
    mu_hat = np.zeros_like(counts)
    for val in np.unique(cond_col):
        mask = cond_col == val
        mean_g = np.mean(norm_counts[:, mask], axis=1)
        mu_hat[:, mask] = mean_g[:, None] * size_factors[mask]
    return np.maximum(mu_hat, 1e-8)


def estimate_gene_wise_dispersion(counts, size_factors, design_matrix,
                                  min_disp=1e-8, max_disp=10.0, max_iter=100,
                                  n_jobs=1):
    """
    Maximum likelihood (Cox-Reid APL) dispersion of each gene.

    Genes with no counts are not fitted and get NaN. Genes whose optimum
    lies on the upper bound are reported as not converged.

    Returns
    -------
    base_means : np.ndarray
    mu_hat : np.ndarray
        Fitted means (genes x samples).
    disp_gw : np.ndarray
    converged : np.ndarray of bool
    """
    counts = np.asarray(counts, dtype=float)
    G, S = counts.shape
    base_means = (counts / size_factors).mean(axis=1)
    mu_hat = rough_mu(counts, size_factors, design_matrix)

    disp_gw = np.full(G, np.nan)
    converged = np.zeros(G, dtype=bool)
    genes_to_fit = np.where(base_means > 0)[0]

    logger.info("Fitting gene-wise dispersions (CR-APL) for %d genes...",
                len(genes_to_fit))
    log_lower, log_upper = np.log(min_disp), np.log(max_disp)
    fits = map_genes(
        fit_gene_dispersion,
        ((counts[g], mu_hat[g], design_matrix, log_lower, log_upper, max_iter)
         for g in genes_to_fit),
        n_jobs=n_jobs,
    )
    for g, (alpha, ok) in zip(genes_to_fit, fits):
        disp_gw[g] = alpha
        converged[g] = ok and alpha < max_disp * (1.0 - 1e-4)

    return base_means, mu_hat, disp_gw, converged


# --- phase 2 ---------------------------------------------------------------

def trend_fit_mask(base_means, disp_gw, min_disp=1e-8):
    """Genes informative enough to enter the trend and prior fits."""
    return (np.isfinite(disp_gw) & (base_means > 0)
            & (disp_gw >= TREND_MIN_DISP_FACTOR * min_disp))


def _require_genes(n, min_genes, what):
    if n < min_genes:
        raise DispersionFitError(
            f"{what} needs at least {min_genes} genes with usable "
            f"dispersion estimates, got {n}", stage="dispersion_trend")


def fit_parametric_dispersion_trend(base_means, disp_gw, min_disp=1e-8,
                                    min_genes=10, max_iter=10):
    """
    Fit ``disp = a / mean + b`` as a gamma-family GLM, iteratively.

    After each fit, genes whose dispersion/trend ratio lies outside
    [1e-4, 15] are dropped and the curve refitted, until the
    coefficients stop changing.

    Returns
    -------
    callable
        Trend function mean -> dispersion.
    tuple
        Coefficients (a, b).

    Raises
    ------
    DispersionFitError
        Too few genes, optimiser failure, or no convergence within
        ``max_iter`` refits.
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)
    base_use = trend_fit_mask(base_means, disp_gw, min_disp)
    use = base_use.copy()

    coefs = np.array([1.0, 0.01])
    for it in range(max_iter):
        x = base_means[use]
        y = disp_gw[use]
        _require_genes(len(x), min_genes, "parametric trend fit")

        def gamma_deviance(params):
            a, b = params
            pred = a / x + b
            dev = np.sum((y - pred) / pred - np.log(y / pred))
            # d dev / d pred = (pred - y) / pred^2
            d_pred = (pred - y) / pred ** 2
            return dev, np.array([np.sum(d_pred / x), np.sum(d_pred)])

        res = minimize(gamma_deviance, x0=coefs, jac=True, method="L-BFGS-B",
                       bounds=[(1e-8, None), (1e-8, None)])
        if not np.all(np.isfinite(res.x)) or not np.isfinite(res.fun):
            raise DispersionFitError(
                f"parametric trend optimiser failed: {res.message}",
                stage="dispersion_trend")
        if not res.success:
            logger.debug("trend optimiser stopped early: %s", res.message)
        new_coefs = res.x

        with np.errstate(divide="ignore", invalid="ignore"):
            ratio = disp_gw / (new_coefs[0] / base_means + new_coefs[1])
        use = base_use & (ratio > 1e-4) & (ratio < 15)

        change = np.sum(np.log(new_coefs / coefs) ** 2)
        coefs = new_coefs
        if change < 1e-6:
            break
    else:
        raise DispersionFitError(
            f"parametric trend did not converge in {max_iter} iterations",
            stage="dispersion_trend")

    a, b = coefs
    logger.info("Trend coefficients: a=%.4f, b=%.4f", a, b)

    def trend_fn(mu):
        return a / np.maximum(np.asarray(mu, dtype=float), 1e-8) + b

    return trend_fn, (a, b)


def fit_local_dispersion_trend(base_means, disp_gw, min_disp=1e-8,
                               min_genes=10, frac=0.2, it=3):
    """
    Fit the trend by LOWESS on the log10-log10 scale.

    Returns
    -------
    callable
        Trend function mean -> dispersion.
    np.ndarray
        Smoothed (log10 mean, log10 dispersion) pairs.
    """
    base_means = np.asarray(base_means, dtype=float)
    disp_gw = np.asarray(disp_gw, dtype=float)
    mask = trend_fit_mask(base_means, disp_gw, min_disp)
    _require_genes(int(mask.sum()), min_genes, "local trend fit")

    x = np.log10(base_means[mask])
    y = np.log10(disp_gw[mask])
    smoothed = lowess(y, x, frac=frac, it=it, return_sorted=True)
    x_smooth = smoothed[:, 0]
    y_smooth = smoothed[:, 1]
    if not np.all(np.isfinite(y_smooth)):
        raise DispersionFitError("LOWESS trend produced non-finite values",
                                 stage="dispersion_trend")

    def trend_fn(means):
        log_means = np.log10(np.maximum(np.asarray(means, dtype=float), 1e-8))
        return 10 ** np.interp(log_means, x_smooth, y_smooth,
                               left=y_smooth[0], right=y_smooth[-1])

    return trend_fn, smoothed


def fit_mean_dispersion(base_means, disp_gw, min_disp=1e-8, min_genes=10):
    """
    Constant trend: geometric mean of the usable gene-wise dispersions.

    Returns
    -------
    callable
        Trend function returning the constant.
    float
        Mean dispersion value.
    """
    disp_gw = np.asarray(disp_gw, dtype=float)
    mask = trend_fit_mask(np.asarray(base_means, dtype=float), disp_gw, min_disp)
    _require_genes(int(mask.sum()), min_genes, "mean trend fit")
    mean_disp = float(np.exp(np.mean(np.log(disp_gw[mask]))))

    def trend_fn(means):
        return np.full_like(np.asarray(means, dtype=float), mean_disp)

    return trend_fn, mean_disp


_TREND_FITTERS = {
    "parametric": fit_parametric_dispersion_trend,
    "local": fit_local_dispersion_trend,
    "mean": fit_mean_dispersion,
}

_TREND_FALLBACKS = {
    "parametric": ("parametric", "local", "mean"),
    "local": ("local", "mean"),
    "mean": ("mean",),
}


def fit_dispersion_trend(base_means, disp_gw, fit_type="parametric",
                         min_disp=1e-8, min_genes=10):
    """
    Fit the mean-dispersion trend, falling back to simpler fits on failure.

    'parametric' falls back to 'local' then 'mean'; 'local' to 'mean'.

    Returns
    -------
    callable
        Trend function.
    str
        The fit type that succeeded.

    Raises
    ------
    DispersionFitError
        If no fit in the fallback chain succeeds.
    """
    if fit_type not in _TREND_FALLBACKS:
        raise ValueError(f"Unknown fit_type: {fit_type}")

    error = None
    for candidate in _TREND_FALLBACKS[fit_type]:
        try:
            trend_fn, _ = _TREND_FITTERS[candidate](
                base_means, disp_gw, min_disp=min_disp, min_genes=min_genes)
        except DispersionFitError as e:
            logger.warning("%s dispersion trend failed: %s", candidate, e)
            error = e
            continue
        if candidate != fit_type:
            logger.warning("Using %s dispersion trend instead of %s",
                           candidate, fit_type)
        return trend_fn, candidate
    raise error


# --- phase 3 ---------------------------------------------------------------

def robust_log_residual_variance(log_resid):
    """Squared MAD (normal-consistent) of log dispersion residuals."""
    mad = np.median(np.abs(log_resid - np.median(log_resid)))
    return (1.4826 * mad) ** 2


def estimate_prior_variance(log_resid, df, min_prior_var=0.25):
    """
    Variance of the log-normal dispersion prior.

    Observed spread of the log residuals around the trend, minus the
    expected sampling variance of a log dispersion estimate with ``df``
    residual degrees of freedom.
    """
    var_log = robust_log_residual_variance(log_resid)
    expected = polygamma(1, df / 2.0)
    return max(var_log - expected, min_prior_var), var_log


def estimate_dispersions(counts, size_factors, design_matrix,
                         fit_type="parametric", min_disp=1e-8, max_disp=10.0,
                         outlier_sd=2.0, min_prior_var=0.25, min_trend_genes=10,
                         max_iter=100, n_jobs=1):
    """
    Full dispersion pipeline on arrays.

    Returns
    -------
    dict
        'base_means', 'disp_gw', 'disp_trend', 'disp_map', 'disp_final',
        'is_outlier', 'converged', 'prior_var', 'trend_fn', 'fit_type'.
    """
    counts = np.asarray(counts, dtype=float)
    size_factors = np.asarray(size_factors, dtype=float)
    S, P = design_matrix.shape
    df = S - P
    if df <= 0:
        raise InvalidDesignError(
            "no residual degrees of freedom: dispersion estimation needs "
            "replicate samples", stage="dispersion")
    max_disp = max(max_disp, float(S))

    # 1. Gene-wise estimates
    base_means, mu_hat, disp_gw, gw_converged = estimate_gene_wise_dispersion(
        counts, size_factors, design_matrix, min_disp=min_disp,
        max_disp=max_disp, max_iter=max_iter, n_jobs=n_jobs)
    fitted = np.isfinite(disp_gw)

    # 2. Trend fit (barrier: needs every gene-wise estimate)
    trend_fn, used_fit_type = fit_dispersion_trend(
        base_means, np.where(gw_converged, disp_gw, np.nan), fit_type=fit_type,
        min_disp=min_disp, min_genes=min_trend_genes)
    disp_trend = np.full_like(disp_gw, np.nan)
    disp_trend[fitted] = np.clip(trend_fn(base_means[fitted]), min_disp, max_disp)

    use = trend_fit_mask(base_means, disp_gw, min_disp) & gw_converged
    log_resid = np.log(disp_gw[use]) - np.log(disp_trend[use])
    prior_var, var_log = estimate_prior_variance(log_resid, df, min_prior_var)
    logger.info("Estimating MAP dispersions with prior width %.4f...",
                np.sqrt(prior_var))

    # 3. MAP estimates
    genes = np.where(fitted)[0]
    log_lower, log_upper = np.log(min_disp), np.log(max_disp)
    fits = map_genes(
        fit_gene_dispersion,
        ((counts[g], mu_hat[g], design_matrix, log_lower, log_upper, max_iter,
          np.log(disp_trend[g]), prior_var) for g in genes),
        n_jobs=n_jobs,
    )
    disp_map = np.full_like(disp_gw, np.nan)
    map_converged = np.zeros(len(disp_gw), dtype=bool)
    var_obs = polygamma(1, df / 2.0)
    weight = prior_var / (prior_var + var_obs)
    for g, (alpha, ok) in zip(genes, fits):
        if not ok:
            # closed-form precision-weighted average on the log scale
            alpha = np.exp(weight * np.log(max(disp_gw[g], min_disp))
                           + (1.0 - weight) * np.log(disp_trend[g]))
        disp_map[g] = alpha
        map_converged[g] = ok

    # Gene-wise estimates far above the trend are kept as they are
    with np.errstate(invalid="ignore", divide="ignore"):
        is_outlier = fitted & (
            np.log(disp_gw) > np.log(disp_trend) + outlier_sd * np.sqrt(var_log))
    disp_final = np.where(is_outlier, disp_gw, disp_map)
    disp_final = np.where(fitted, np.clip(disp_final, min_disp, max_disp), np.nan)

    converged = gw_converged & map_converged
    n_bad = int((fitted & ~converged).sum())
    logger.info("Dispersions: %d outliers, %d not converged", is_outlier.sum(), n_bad)
    if n_bad:
        warnings.warn(f"{n_bad} genes did not converge during dispersion "
                      f"estimation", GeneFitNonConvergence, stacklevel=2)

    return {
        "base_means": base_means,
        "disp_gw": disp_gw,
        "disp_trend": disp_trend,
        "disp_map": disp_map,
        "disp_final": disp_final,
        "is_outlier": is_outlier,
        "converged": converged,
        "prior_var": prior_var,
        "trend_fn": trend_fn,
        "fit_type": used_fit_type,
    }


def fit_dispersions(matrix, size_factors, design, fit_type="parametric",
                    min_disp=1e-8, max_disp=10.0, outlier_sd=2.0,
                    min_prior_var=0.25, min_trend_genes=10, max_iter=100,
                    n_jobs=1):
    """
    Per-gene dispersion estimates for a count matrix.

    Parameters
    ----------
    matrix : CountMatrix
    size_factors : SizeFactors
    design : DesignMetadata
    fit_type : {'parametric', 'local', 'mean'}
    min_disp, max_disp : float
        Dispersion search bounds.
    outlier_sd : float
        Genes whose gene-wise log dispersion exceeds the trend by this
        many standard deviations keep their gene-wise value.
    min_prior_var : float
        Floor on the log-dispersion prior variance.
    min_trend_genes : int
        Minimum usable genes for the trend fit.
    max_iter : int
        Per-gene optimiser iteration cap.
    n_jobs : int
        joblib workers.

    Returns
    -------
    list of DispersionEstimate
        One per gene, in count matrix row order.

    Raises
    ------
    DispersionFitError
        If no dispersion trend can be fitted.
    """
    design_matrix, _ = design.design_matrix(matrix.sample_ids)
    sf = size_factors.reindex(matrix.sample_ids)
    fit = estimate_dispersions(
        matrix.values, sf, design_matrix, fit_type=fit_type,
        min_disp=min_disp, max_disp=max_disp, outlier_sd=outlier_sd,
        min_prior_var=min_prior_var, min_trend_genes=min_trend_genes,
        max_iter=max_iter, n_jobs=n_jobs)
    return dispersion_records(matrix.gene_ids, fit)


def dispersion_records(gene_ids, fit):
    return [
        DispersionEstimate(
            gene_id=gene,
            base_mean=float(fit["base_means"][i]),
            raw_dispersion=float(fit["disp_gw"][i]),
            fitted_trend_dispersion=float(fit["disp_trend"][i]),
            shrunk_dispersion=float(fit["disp_final"][i]),
            outlier_flag=bool(fit["is_outlier"][i]),
            converged=bool(fit["converged"][i]),
        )
        for i, gene in enumerate(gene_ids)
    ]
